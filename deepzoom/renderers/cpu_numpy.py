from __future__ import annotations

import os
import time
from concurrent.futures import ProcessPoolExecutor
from typing import List, Tuple

import numpy as np

from deepzoom.perturbation import FrameParams, PerturbationEvaluator
from deepzoom.util.logging_setup import get_logger, logging_initialiser

# Per-process frame state, installed once by the pool initializer.
_G = {}

def _init_worker(params, orbit, evaluator, frame_id, log_queue, log_level):
    _G["params"] = params
    _G["orbit"] = orbit
    _G["evaluator"] = evaluator
    _G["frame_id"] = frame_id
    logging_initialiser(log_queue, log_level)

def _render_band(y0_y1: Tuple[int, int]):
    y0, y1 = y0_y1
    evaluator: PerturbationEvaluator = _G["evaluator"]
    rgb = evaluator.shade_rows(_G["params"], _G["orbit"], y0, y1)
    if y0 % 256 == 0:
        get_logger().debug("[Frame %s] Rendered rows %s..%s", _G["frame_id"], y0, y1)
    return y0, rgb

def _bands(height: int, band_height: int) -> List[Tuple[int, int]]:
    bands: List[Tuple[int, int]] = []
    y = 0
    while y < height:
        y1 = min(height, y + band_height)
        bands.append((y, y1))
        y = y1
    return bands

def resolve_workers(workers: int) -> int:
    return workers if workers > 0 else (os.cpu_count() or 1)

def render_frame_cpu(
    *,
    params: FrameParams,
    orbit,
    evaluator: PerturbationEvaluator,
    frame_id: str,
    workers: int = 0,
    band_height: int = 64,
    log_queue=None,
    log_level: int = 20,
) -> np.ndarray:
    """Shade a whole frame as float RGB, spreading row bands over processes.

    ``workers == 1`` renders in-process. Bands share nothing but the read-only
    orbit, so their order of completion does not affect the image.
    """
    logger = get_logger()
    workers = resolve_workers(workers)
    bands = _bands(params.height, max(1, band_height))
    buf = np.zeros((params.height, params.width, 3), dtype=np.float64)
    started = time.perf_counter()

    logger.debug("[Frame %s] CPU render start %sx%s iter=%s orbit=%s workers=%s",
                 frame_id, params.width, params.height, params.max_iter, orbit.length, workers)

    if workers == 1 or len(bands) == 1:
        for y0, y1 in bands:
            buf[y0:y1] = evaluator.shade_rows(params, orbit, y0, y1)
    else:
        with ProcessPoolExecutor(
            max_workers=min(workers, len(bands)),
            initializer=_init_worker,
            initargs=(params, orbit, evaluator, frame_id, log_queue, log_level),
        ) as pool:
            for y0, band in pool.map(_render_band, bands):
                buf[y0:y0 + band.shape[0]] = band

    logger.debug("[Frame %s] CPU render done in %.3fs", frame_id, time.perf_counter() - started)
    return buf
