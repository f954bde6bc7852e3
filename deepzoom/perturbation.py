"""Per-pixel perturbation iteration against a reference orbit.

A pixel at ``C + dc`` is iterated as its offset ``dz`` from the reference
orbit Z of ``C``::

    dz_{i+1} = 2 * Z_i * dz_i + dz_i^2 + dc

which only ever involves small numbers and so runs in float64 no matter how
deep the view is. Escape is tested on ``Z_i + dz_{i+1}`` against the squared
threshold and the loop stops at the first escape.

Every pixel is independent. The scalar ``evaluate`` and the row-band
``evaluate_rows`` share one operation order, so they agree bit for bit.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import NamedTuple, Tuple

import numpy as np
from mpmath import mpf

from deepzoom.color import SinePalette
from deepzoom.errors import InvalidInput


class EscapeResult(NamedTuple):
    escaped: bool
    final_iter: int


@dataclass(frozen=True)
class FrameParams:
    """Immutable per-frame snapshot of everything a pixel needs.

    ``pixel_scale`` is ``1 / magnification`` already reduced to a float and
    ``camera_offset`` is the view center minus the reference center, in
    normalised screen units.
    """

    width: int
    height: int
    pixel_scale: float
    max_iter: int
    escape_threshold: float = 4.0
    camera_offset: Tuple[float, float] = (0.0, 0.0)
    aspect: float = 0.0

    def __post_init__(self):
        if self.width < 1 or self.height < 1:
            raise InvalidInput(f"surface must be at least 1x1, got {self.width}x{self.height}")
        if not np.isfinite(self.pixel_scale) or self.pixel_scale <= 0:
            raise InvalidInput(f"pixel scale {self.pixel_scale!r} is not representable as a float")
        if self.aspect <= 0:
            object.__setattr__(self, "aspect", self.width / self.height)

    @classmethod
    def for_view(cls, *, width, height, magnification, max_iter, escape_threshold=4.0,
                 camera_offset=(0.0, 0.0), aspect=None) -> "FrameParams":
        scale = float(1 / mpf(magnification))
        if scale == 0.0:
            raise InvalidInput(f"magnification {magnification} is beyond float64 pixel deltas")
        return cls(
            width=int(width),
            height=int(height),
            pixel_scale=scale,
            max_iter=int(max_iter),
            escape_threshold=float(escape_threshold),
            camera_offset=(float(camera_offset[0]), float(camera_offset[1])),
            aspect=float(aspect) if aspect else 0.0,
        )


def pixel_deltas(params: FrameParams, y0: int, y1: int) -> Tuple[np.ndarray, np.ndarray]:
    """``dc`` for every pixel in rows ``y0:y1``; row 0 is the top of the view."""
    w, h = params.width, params.height
    ndc_x = (np.arange(w, dtype=np.float64) + 0.5) / w * 2.0 - 1.0
    ndc_y = 1.0 - (np.arange(y0, y1, dtype=np.float64) + 0.5) / h * 2.0
    ox, oy = params.camera_offset
    dc_re = (ndc_x * params.aspect + ox) * params.pixel_scale
    dc_im = (ndc_y + oy) * params.pixel_scale
    rows = y1 - y0
    return (
        np.broadcast_to(dc_re, (rows, w)).copy(),
        np.broadcast_to(dc_im.reshape(rows, 1), (rows, w)).copy(),
    )


def _orbit_lists(orbit, max_iter: int):
    n = min(int(max_iter), orbit.length)
    return orbit.re[:n].astype(np.float64).tolist(), orbit.im[:n].astype(np.float64).tolist()


def evaluate(delta_c: complex, orbit, max_iter: int, escape_threshold: float = 4.0) -> EscapeResult:
    ref_re, ref_im = _orbit_lists(orbit, max_iter)
    cr = float(delta_c.real)
    ci = float(delta_c.imag)
    dzr = 0.0
    dzi = 0.0
    for i in range(len(ref_re)):
        zr = ref_re[i]
        zi = ref_im[i]
        nr = 2.0 * (zr * dzr - zi * dzi) + (dzr * dzr - dzi * dzi) + cr
        ni = 2.0 * (zr * dzi + zi * dzr) + 2.0 * dzr * dzi + ci
        dzr = nr
        dzi = ni
        xr = zr + dzr
        xi = zi + dzi
        if xr * xr + xi * xi > escape_threshold:
            return EscapeResult(True, i)
    return EscapeResult(False, len(ref_re))


def evaluate_grid(dc_re: np.ndarray, dc_im: np.ndarray, orbit, max_iter: int,
                  escape_threshold: float = 4.0) -> Tuple[np.ndarray, np.ndarray]:
    """Vectorised ``evaluate`` over arrays of ``dc``.

    Returns ``(escaped, final_iter)`` shaped like ``dc_re``. Escaped pixels are
    dropped from the working set, so the cost of an iteration shrinks with the
    number of pixels still running.
    """
    ref_re, ref_im = _orbit_lists(orbit, max_iter)
    shape = dc_re.shape
    cr = dc_re.astype(np.float64).ravel()
    ci = dc_im.astype(np.float64).ravel()
    escaped = np.zeros(cr.size, dtype=bool)
    final_iter = np.full(cr.size, len(ref_re), dtype=np.int32)

    idx = np.arange(cr.size)
    ar = np.zeros(cr.size, dtype=np.float64)
    ai = np.zeros(cr.size, dtype=np.float64)
    for i in range(len(ref_re)):
        zr = ref_re[i]
        zi = ref_im[i]
        nr = 2.0 * (zr * ar - zi * ai) + (ar * ar - ai * ai) + cr
        ni = 2.0 * (zr * ai + zi * ar) + 2.0 * ar * ai + ci
        xr = zr + nr
        xi = zi + ni
        out = xr * xr + xi * xi > escape_threshold
        if out.any():
            hit = idx[out]
            escaped[hit] = True
            final_iter[hit] = i
            keep = ~out
            idx, ar, ai, cr, ci = idx[keep], nr[keep], ni[keep], cr[keep], ci[keep]
            if idx.size == 0:
                break
        else:
            ar, ai = nr, ni
    return escaped.reshape(shape), final_iter.reshape(shape)


@dataclass(frozen=True)
class PerturbationEvaluator:
    palette: SinePalette = SinePalette()

    def evaluate(self, delta_c: complex, orbit, max_iter: int, escape_threshold: float = 4.0) -> EscapeResult:
        return evaluate(delta_c, orbit, max_iter, escape_threshold)

    def pixel_color(self, delta_c: complex, orbit, max_iter: int, escape_threshold: float = 4.0):
        escaped, final_iter = evaluate(delta_c, orbit, max_iter, escape_threshold)
        return self.palette.color(escaped, final_iter)

    def evaluate_rows(self, params: FrameParams, orbit, y0: int, y1: int) -> Tuple[np.ndarray, np.ndarray]:
        dc_re, dc_im = pixel_deltas(params, y0, y1)
        return evaluate_grid(dc_re, dc_im, orbit, params.max_iter, params.escape_threshold)

    def shade_rows(self, params: FrameParams, orbit, y0: int, y1: int) -> np.ndarray:
        """RGB float rows ``y0:y1`` of the frame."""
        escaped, final_iter = self.evaluate_rows(params, orbit, y0, y1)
        return self.palette.colorize(escaped, final_iter)
