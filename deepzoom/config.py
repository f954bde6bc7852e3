import json
import math
from typing import Any, Dict, Optional

DEFAULTS: Dict[str, Any] = {
    "width": 960,
    "height": 540,
    "center": ["-0.75", "0"],
    "magnification": 1.0,
    "escape_threshold": 4.0,
    "guard_bits": 32,
    "base_precision_bits": 64,
    "max_precision_bits": 4096,
    "base_iterations": 500,
    "iterations_per_decade": 100,
    "max_iterations": 20000,
    "color_frequency": 0.1,
    "color_phases": [0.0, 120.0, 240.0],
    "orbit_dtype": "float64",
    "zoom_factor": 1.15,
    "max_magnification": 1e300,
    "max_camera_offset": 0.5,
    "orbit_time_budget": None,
    "workers": 0,
    "tile_rows": 64,
    "renderer": "auto",
}

_RENDERERS = ("auto", "cpu", "gpu")
_DTYPES = ("float32", "float64")

def load_config(config_path: Optional[str]) -> Dict[str, Any]:
    cfg = dict(DEFAULTS)
    if not config_path:
        return cfg
    with open(config_path, "r", encoding="utf-8") as f:
        user = json.load(f)
    if not isinstance(user, dict):
        raise ValueError("Config JSON must be an object.")
    unknown = sorted(set(user) - set(DEFAULTS))
    if unknown:
        raise ValueError(f"Unknown config field(s): {', '.join(unknown)}")
    cfg.update(user)
    return cfg

def _coerce(cfg: Dict[str, Any], key: str, kind):
    try:
        return kind(cfg[key])
    except (TypeError, ValueError) as e:
        raise ValueError(f"{key} must be a number, got {cfg[key]!r}.") from e

def _positive_int(cfg: Dict[str, Any], key: str, *, allow_zero: bool = False) -> int:
    value = _coerce(cfg, key, int)
    if value < 0 or (value == 0 and not allow_zero):
        raise ValueError(f"{key} must be {'>= 0' if allow_zero else '> 0'}.")
    return value

def _positive_float(cfg: Dict[str, Any], key: str) -> float:
    value = _coerce(cfg, key, float)
    if not math.isfinite(value) or value <= 0:
        raise ValueError(f"{key} must be a finite number > 0.")
    return value

def normalise_config(cfg: Dict[str, Any]) -> Dict[str, Any]:
    missing = [k for k in DEFAULTS if k not in cfg]
    if missing:
        raise ValueError(f"Missing config field: {missing[0]}")

    out = dict(cfg)
    for key in ("width", "height", "guard_bits", "base_precision_bits", "max_precision_bits",
                "base_iterations", "max_iterations", "tile_rows"):
        out[key] = _positive_int(cfg, key)
    out["iterations_per_decade"] = _positive_int(cfg, "iterations_per_decade", allow_zero=True)
    out["workers"] = _positive_int(cfg, "workers", allow_zero=True)
    for key in ("magnification", "escape_threshold", "color_frequency", "max_magnification", "max_camera_offset"):
        out[key] = _positive_float(cfg, key)

    zoom_factor = _coerce(cfg, "zoom_factor", float)
    if zoom_factor <= 1.0 or not math.isfinite(zoom_factor):
        raise ValueError("zoom_factor must be > 1.")
    out["zoom_factor"] = zoom_factor
    if out["base_iterations"] > out["max_iterations"]:
        raise ValueError("base_iterations must not exceed max_iterations.")
    if out["base_precision_bits"] > out["max_precision_bits"]:
        raise ValueError("base_precision_bits must not exceed max_precision_bits.")

    center = cfg["center"]
    if not (isinstance(center, (list, tuple)) and len(center) == 2):
        raise ValueError("center must be [re, im].")
    # Kept as strings so no digits are lost before the arbitrary-precision parse.
    out["center"] = [str(center[0]), str(center[1])]

    phases = cfg["color_phases"]
    if not (isinstance(phases, (list, tuple)) and len(phases) == 3):
        raise ValueError("color_phases must be three angles in degrees.")
    try:
        out["color_phases"] = [float(p) for p in phases]
    except (TypeError, ValueError) as e:
        raise ValueError("color_phases must be three angles in degrees.") from e

    if cfg["orbit_dtype"] not in _DTYPES:
        raise ValueError(f"orbit_dtype must be one of: {', '.join(_DTYPES)}")
    if cfg["renderer"] not in _RENDERERS:
        raise ValueError(f"renderer must be one of: {', '.join(_RENDERERS)}")

    budget = cfg["orbit_time_budget"]
    if budget is not None:
        budget = _coerce(cfg, "orbit_time_budget", float)
        if budget <= 0:
            raise ValueError("orbit_time_budget must be > 0 or null.")
    out["orbit_time_budget"] = budget
    return out
