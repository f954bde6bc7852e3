# color.py

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Sequence, Tuple

import numpy as np
from PIL import Image

INSIDE_COLOR = (0.0, 0.0, 0.0)


@dataclass(frozen=True)
class SinePalette:
    """Three phase-shifted sines of the absolute iteration count.

    The argument is ``frequency * n`` with no normalisation by the orbit or
    iteration budget, so a pixel escaping at iteration n keeps its colour when
    the budget grows during a zoom.
    """

    frequency: float = 0.1
    phases: Tuple[float, float, float] = (0.0, 120.0, 240.0)

    @classmethod
    def from_config(cls, cfg) -> "SinePalette":
        return cls(frequency=float(cfg["color_frequency"]), phases=tuple(float(p) for p in cfg["color_phases"]))

    def _radians(self) -> Sequence[float]:
        return [math.radians(p) for p in self.phases]

    def color(self, escaped: bool, final_iter: int) -> Tuple[float, float, float]:
        """RGB in [0, 1] for one pixel."""
        if not escaped:
            return INSIDE_COLOR
        a = self.frequency * final_iter
        r, g, b = (0.5 + 0.5 * math.sin(a + p) for p in self._radians())
        return (r, g, b)

    def colorize(self, escaped: np.ndarray, final_iter: np.ndarray) -> np.ndarray:
        """Vectorised ``color``: (..., 3) float64 array in [0, 1]."""
        a = self.frequency * final_iter.astype(np.float64)
        rgb = np.stack([0.5 + 0.5 * np.sin(a + p) for p in self._radians()], axis=-1)
        rgb[~escaped] = INSIDE_COLOR
        return rgb


def to_rgb8(rgb: np.ndarray) -> np.ndarray:
    return np.clip(np.rint(rgb * 255.0), 0.0, 255.0).astype(np.uint8)


def to_image(rgb: np.ndarray) -> Image.Image:
    if rgb.dtype != np.uint8:
        rgb = to_rgb8(rgb)
    return Image.fromarray(rgb)
