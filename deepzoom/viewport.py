"""View state and the controller that turns input into per-frame snapshots.

The controller keeps two points: the camera (where the user is looking) and
the reference (the point whose orbit is computed). They coincide whenever the
camera's own orbit survives the whole iteration budget. Otherwise the camera
sits in an escaping region, and a nearby longer-lived reference is kept and
the difference is handed to the pixels as ``camera_offset``.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Tuple

from mpmath import mp, mpf, mpc, workprec, isfinite

from deepzoom.errors import InvalidInput
from deepzoom.orbit import escape_time, find_best_reference, parse_center
from deepzoom.perturbation import FrameParams
from deepzoom.policy import AdaptiveIterationPolicy, IterationBudget, as_magnification
from deepzoom.util.logging_setup import get_logger

_MIN_MAGNIFICATION = 0.1


@dataclass(frozen=True)
class ViewState:
    center: mpc
    magnification: mpf
    aspect_ratio: float = 1.0

    def __post_init__(self):
        m = self.magnification
        if not isinstance(m, mpf):
            try:
                m = mpf(m)
            except (TypeError, ValueError) as e:
                raise InvalidInput(f"magnification is not a number: {self.magnification!r}") from e
            object.__setattr__(self, "magnification", m)
        if not isfinite(m) or m <= 0:
            raise InvalidInput(f"magnification must be finite and > 0, got {self.magnification!r}")
        if not math.isfinite(self.aspect_ratio) or self.aspect_ratio <= 0:
            raise InvalidInput(f"aspect ratio must be > 0, got {self.aspect_ratio!r}")
        if not isinstance(self.center, mpc):
            object.__setattr__(self, "center", parse_center(self.center))
        elif not (isfinite(self.center.real) and isfinite(self.center.imag)):
            raise InvalidInput(f"center must be finite, got {self.center!r}")


@dataclass(frozen=True)
class FrameSnapshot:
    """Everything one frame is rendered from, taken atomically."""

    frame_id: int
    view: ViewState
    reference: mpc
    camera_offset: Tuple[float, float]
    budget: IterationBudget
    width: int
    height: int

    def params(self) -> FrameParams:
        return FrameParams.for_view(
            width=self.width,
            height=self.height,
            magnification=self.view.magnification,
            max_iter=self.budget.orbit_length,
            escape_threshold=self.budget.escape_threshold,
            camera_offset=self.camera_offset,
            aspect=self.view.aspect_ratio,
        )


class ViewportController:
    def __init__(
        self,
        policy: AdaptiveIterationPolicy,
        *,
        center=("-0.75", "0"),
        magnification=1.0,
        width: int = 960,
        height: int = 540,
        zoom_factor: float = 1.15,
        max_magnification: float = 1e300,
        max_camera_offset: float = 0.5,
    ):
        self.policy = policy
        self.width = int(width)
        self.height = int(height)
        self.zoom_factor = float(zoom_factor)
        self.max_magnification = mpf(max_magnification)
        self.max_camera_offset = float(max_camera_offset)
        m = self._clamp(as_magnification(magnification))
        with workprec(self._bits(m)):
            self._initial = ViewState(parse_center(center), m, self.width / self.height)
        self.view = self._initial
        self.reference: Optional[mpc] = None
        self._frame_id = 0
        self._warned_decade: Optional[int] = None
        self._logger = get_logger()

    @classmethod
    def from_config(cls, cfg, policy: AdaptiveIterationPolicy) -> "ViewportController":
        return cls(
            policy,
            center=cfg["center"],
            magnification=cfg["magnification"],
            width=cfg["width"],
            height=cfg["height"],
            zoom_factor=cfg["zoom_factor"],
            max_magnification=cfg["max_magnification"],
            max_camera_offset=cfg["max_camera_offset"],
        )

    def _bits(self, magnification) -> int:
        return self.policy.budget_for(magnification).precision_bits

    def _clamp(self, magnification: mpf) -> mpf:
        return min(max(magnification, mpf(_MIN_MAGNIFICATION)), self.max_magnification)

    def set_view(self, center, magnification) -> bool:
        """Replace the view; invalid input is logged and the last valid view kept.

        Magnification is clamped to the same range ``zoom_at`` allows.
        """
        try:
            m = self._clamp(as_magnification(magnification))
            with workprec(self._bits(m)):
                view = ViewState(parse_center(center), m, self.view.aspect_ratio)
        except InvalidInput as e:
            self._logger.warning("Rejected view update: %s", e)
            return False
        self.view = view
        return True

    def reset(self) -> None:
        self.view = ViewState(self._initial.center, self._initial.magnification, self.width / self.height)
        self.reference = None

    def resize(self, width: int, height: int) -> None:
        if width < 1 or height < 1:
            self._logger.warning("Ignoring resize to %sx%s", width, height)
            return
        self.width, self.height = int(width), int(height)
        self.view = ViewState(self.view.center, self.view.magnification, self.width / self.height)

    def normalized(self, x: float, y: float) -> Tuple[float, float]:
        """Pixel position to normalised screen units (x scaled by aspect, +y up)."""
        ndc_x = (x / self.width) * 2.0 - 1.0
        ndc_y = 1.0 - (y / self.height) * 2.0
        return ndc_x * self.view.aspect_ratio, ndc_y

    def zoom_at(self, steps: float, cursor: Optional[Tuple[float, float]] = None) -> None:
        """Zoom by ``zoom_factor ** steps``, keeping the point under ``cursor`` fixed."""
        old = self.view.magnification
        new = old * mpf(self.zoom_factor) ** steps
        new = self._clamp(new)
        with workprec(self._bits(new)):
            center = self.view.center
            if cursor is not None:
                mx, my = self.normalized(*cursor)
                zoom_diff = 1 / old - 1 / new
                center = center + mpc(mpf(mx) * zoom_diff, mpf(my) * zoom_diff)
            self.view = ViewState(center, new, self.view.aspect_ratio)
        self._logger.debug("Zoom: 10^%.2f", float(mp.log10(new)))

    def pan(self, dx: float, dy: float) -> None:
        """Move the view by a drag of ``(dx, dy)`` pixels."""
        m = self.view.magnification
        with workprec(self._bits(m)):
            shift = mpc(
                -mpf(dx) / self.width * 2 * mpf(self.view.aspect_ratio) / m,
                mpf(dy) / self.height * 2 / m,
            )
            self.view = ViewState(self.view.center + shift, m, self.view.aspect_ratio)

    def _offset(self, reference: mpc, bits: int) -> Tuple[float, float]:
        with workprec(bits):
            diff = (self.view.center - reference) * self.view.magnification
        return float(diff.real), float(diff.imag)

    def _choose_reference(self, budget: IterationBudget) -> mpc:
        target = budget.orbit_length
        bits = budget.precision_bits
        thr = budget.escape_threshold
        camera = self.view.center
        if escape_time(camera, target, precision_bits=bits, threshold=thr) == target:
            return camera

        current = self.reference
        if current is not None:
            ox, oy = self._offset(current, bits)
            near = math.hypot(ox, oy) <= self.max_camera_offset
            current_score = escape_time(current, target, precision_bits=bits, threshold=thr)
            if near and current_score == target:
                return current
        else:
            near, current_score = False, -1

        best, best_score = find_best_reference(camera, self.view.magnification, target, precision_bits=bits, threshold=thr)
        if not near or best_score > current_score:
            self._logger.info("New reference (survives %s/%s iterations)", best_score, target)
            return best
        return current

    def frame(self) -> FrameSnapshot:
        budget = self.policy.budget_for(self.view.magnification)
        if budget.precision_clamped:
            decade = int(mp.log10(self.view.magnification))
            if decade != self._warned_decade:
                self._warned_decade = decade
                self._logger.warning(
                    "Precision capped at %s bits at magnification 1e%s: expect blocky detail",
                    budget.precision_bits, decade,
                )
        self.reference = self._choose_reference(budget)
        self._frame_id += 1
        return FrameSnapshot(
            frame_id=self._frame_id,
            view=self.view,
            reference=self.reference,
            camera_offset=self._offset(self.reference, budget.precision_bits),
            budget=budget,
            width=self.width,
            height=self.height,
        )
