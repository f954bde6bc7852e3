import math

import numpy as np
import pytest

from deepzoom.color import INSIDE_COLOR, SinePalette, to_image, to_rgb8
from deepzoom.orbit import HighPrecisionOrbitGenerator
from deepzoom.perturbation import PerturbationEvaluator


def test_inside_is_black():
    assert SinePalette().color(False, 123) == INSIDE_COLOR == (0.0, 0.0, 0.0)


def test_phases_are_120_degrees_apart():
    r, g, b = SinePalette().color(True, 0)
    assert r == pytest.approx(0.5)
    assert g == pytest.approx(0.5 + 0.5 * math.sin(2 * math.pi / 3))
    assert b == pytest.approx(0.5 + 0.5 * math.sin(4 * math.pi / 3))


def test_colors_in_unit_range():
    palette = SinePalette()
    for n in range(0, 500, 7):
        assert all(0.0 <= ch <= 1.0 for ch in palette.color(True, n))


def test_colorize_matches_scalar():
    palette = SinePalette(frequency=0.25, phases=(10.0, 130.0, 250.0))
    iters = np.array([[0, 5, 17], [99, 1000, 3]])
    escaped = np.array([[True, False, True], [True, True, False]])
    rgb = palette.colorize(escaped, iters)
    assert rgb.shape == (2, 3, 3)
    for (row, col), n in np.ndenumerate(iters):
        assert rgb[row, col] == pytest.approx(palette.color(bool(escaped[row, col]), int(n)))


def test_color_depends_on_absolute_iteration_only():
    gen = HighPrecisionOrbitGenerator()
    evaluator = PerturbationEvaluator()
    short = gen.generate(("-0.75", "0"), 100)
    long = gen.generate(("-0.75", "0"), 2000)
    for dc in (0.1j, 1.25 + 0.25j, -1.3 + 0.3j):
        a = evaluator.evaluate(dc, short, 100)
        b = evaluator.evaluate(dc, long, 2000)
        assert a.escaped
        assert a == b
        assert evaluator.pixel_color(dc, short, 100) == evaluator.pixel_color(dc, long, 2000)


def test_to_rgb8_and_image():
    rgb = np.zeros((4, 5, 3))
    rgb[0, 0] = (1.0, 0.5, 0.0)
    out = to_rgb8(rgb)
    assert out.dtype == np.uint8
    assert tuple(out[0, 0]) == (255, 128, 0)
    img = to_image(rgb)
    assert img.size == (5, 4)
    assert img.mode == "RGB"
