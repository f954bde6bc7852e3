import json

import pytest

from deepzoom.config import DEFAULTS, load_config, normalise_config


def test_defaults_normalise():
    cfg = normalise_config(load_config(None))
    assert cfg["escape_threshold"] == 4.0
    assert cfg["color_frequency"] == 0.1
    assert cfg["color_phases"] == [0.0, 120.0, 240.0]
    assert cfg["center"] == ["-0.75", "0"]
    assert cfg["orbit_time_budget"] is None


def test_load_overlays_defaults(tmp_path):
    path = tmp_path / "cfg.json"
    path.write_text(json.dumps({"width": 320, "center": ["-1.25", "0.0"], "guard_bits": 24}))
    cfg = normalise_config(load_config(str(path)))
    assert cfg["width"] == 320
    assert cfg["height"] == DEFAULTS["height"]
    assert cfg["guard_bits"] == 24
    assert cfg["center"] == ["-1.25", "0.0"]


def test_config_must_be_object(tmp_path):
    path = tmp_path / "cfg.json"
    path.write_text("[1, 2]")
    with pytest.raises(ValueError):
        load_config(str(path))


def test_unknown_field_rejected(tmp_path):
    path = tmp_path / "cfg.json"
    path.write_text(json.dumps({"colour": "red"}))
    with pytest.raises(ValueError, match="colour"):
        load_config(str(path))


@pytest.mark.parametrize("key,value", [
    ("width", 0),
    ("magnification", -1.0),
    ("escape_threshold", 0),
    ("zoom_factor", 1.0),
    ("center", [1.0]),
    ("color_phases", [0, 120]),
    ("orbit_dtype", "float16"),
    ("renderer", "opencl"),
    ("orbit_time_budget", 0),
    ("base_iterations", 50000),
])
def test_invalid_values(key, value):
    cfg = load_config(None)
    cfg[key] = value
    with pytest.raises(ValueError):
        normalise_config(cfg)


def test_missing_field():
    cfg = load_config(None)
    del cfg["width"]
    with pytest.raises(ValueError, match="width"):
        normalise_config(cfg)


@pytest.mark.parametrize("key", ["width", "magnification", "zoom_factor", "orbit_time_budget", "workers"])
@pytest.mark.parametrize("value", [None, "abc", [1]])
def test_non_numeric_values_name_the_field(key, value):
    cfg = load_config(None)
    cfg[key] = value
    if key == "orbit_time_budget" and value is None:
        assert normalise_config(cfg)["orbit_time_budget"] is None
        return
    with pytest.raises(ValueError, match=key):
        normalise_config(cfg)


def test_null_phase_rejected():
    cfg = load_config(None)
    cfg["color_phases"] = [0, None, 240]
    with pytest.raises(ValueError, match="color_phases"):
        normalise_config(cfg)
