from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

import numpy as np
from PIL import Image
from mpmath.libmp import BACKEND

from deepzoom.color import SinePalette, to_image
from deepzoom.errors import StaleOrbit
from deepzoom.orbit import HighPrecisionOrbitGenerator, ReferenceOrbit
from deepzoom.perturbation import PerturbationEvaluator
from deepzoom.renderers.cpu_numpy import render_frame_cpu
from deepzoom.renderers.gpu import probe_cuda, render_frame_gpu
from deepzoom.util.logging_setup import get_logger
from deepzoom.viewport import FrameSnapshot

def choose_renderer(*, renderer: str) -> str:
    if renderer in ("cpu", "gpu"):
        return renderer
    if renderer != "auto":
        raise ValueError("renderer must be one of: auto, cpu, gpu")
    return "gpu" if probe_cuda().get("available") else "cpu"

def renderer_info(resolved: str) -> Dict[str, Any]:
    # "gmpy" when gmpy2 is installed, which speeds up orbit generation considerably.
    return {"resolved": resolved, "cuda": probe_cuda(), "mpmath_backend": BACKEND}

class RenderPipeline:
    """Orbit cache plus frame evaluation, one snapshot at a time.

    The orbit is regenerated when the snapshot's reference point moves, when
    the budget asks for a longer orbit than the cached one holds, or when more
    precision is needed. A frame is only ever shaded with the orbit of its own
    reference point.
    """

    def __init__(
        self,
        generator: HighPrecisionOrbitGenerator,
        evaluator: PerturbationEvaluator,
        *,
        renderer: str = "auto",
        workers: int = 0,
        band_height: int = 64,
        log_queue=None,
        log_level: int = logging.INFO,
    ):
        self.generator = generator
        self.evaluator = evaluator
        self.renderer = choose_renderer(renderer=renderer)
        self._auto = renderer == "auto"
        self.workers = workers
        self.band_height = band_height
        self.log_queue = log_queue
        self.log_level = log_level
        self.orbit: Optional[ReferenceOrbit] = None
        self._logger = get_logger()

    @classmethod
    def from_config(cls, cfg, *, log_queue=None, log_level: int = logging.INFO) -> "RenderPipeline":
        return cls(
            HighPrecisionOrbitGenerator.from_config(cfg),
            PerturbationEvaluator(SinePalette.from_config(cfg)),
            renderer=cfg["renderer"],
            workers=cfg["workers"],
            band_height=cfg["tile_rows"],
            log_queue=log_queue,
            log_level=log_level,
        )

    def orbit_for(self, snapshot: FrameSnapshot) -> ReferenceOrbit:
        budget = snapshot.budget
        cached = self.orbit
        if cached is not None and cached.serves(snapshot.reference, budget.orbit_length, budget.precision_bits):
            return cached
        started = time.perf_counter()
        orbit = self.generator.generate_for(snapshot.reference, budget)
        self._logger.info(
            "[Frame %s] Reference orbit %s/%s samples (escaped=%s, %s bits) in %.3fs",
            snapshot.frame_id, orbit.length, budget.orbit_length, orbit.escaped,
            orbit.precision_bits, time.perf_counter() - started,
        )
        self.orbit = orbit
        return orbit

    def adopt(self, orbit: ReferenceOrbit) -> None:
        """Install an orbit produced elsewhere (e.g. by a background worker)."""
        self.orbit = orbit

    def render(self, snapshot: FrameSnapshot, orbit: Optional[ReferenceOrbit] = None) -> np.ndarray:
        """Float RGB frame (height, width, 3) in [0, 1]."""
        if orbit is None:
            orbit = self.orbit_for(snapshot)
        if orbit.center != snapshot.reference:
            raise StaleOrbit(f"frame {snapshot.frame_id} was handed an orbit for a different reference")

        params = snapshot.params()
        frame_id = f"{snapshot.frame_id:06d}"
        started = time.perf_counter()
        if self.renderer == "gpu":
            try:
                rgb = render_frame_gpu(params=params, orbit=orbit, evaluator=self.evaluator, frame_id=frame_id)
            except RuntimeError as e:
                if not self._auto:
                    raise
                self._logger.warning("GPU render failed, falling back to CPU: %s", e)
                self.renderer = "cpu"
                return self.render(snapshot, orbit)
        else:
            rgb = render_frame_cpu(
                params=params, orbit=orbit, evaluator=self.evaluator, frame_id=frame_id,
                workers=self.workers, band_height=self.band_height,
                log_queue=self.log_queue, log_level=self.log_level,
            )
        self._logger.info("[Frame %s] %s render %sx%s iter=%s in %.3fs", frame_id, self.renderer,
                          params.width, params.height, min(params.max_iter, orbit.length),
                          time.perf_counter() - started)
        return rgb

    def render_image(self, snapshot: FrameSnapshot, orbit: Optional[ReferenceOrbit] = None) -> Image.Image:
        return to_image(self.render(snapshot, orbit))
