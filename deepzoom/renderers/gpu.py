from __future__ import annotations

import math
from typing import Any, Dict

import numpy as np

from deepzoom.perturbation import FrameParams, PerturbationEvaluator
from deepzoom.util.logging_setup import get_logger

_KERNEL = None

def probe_cuda() -> Dict[str, Any]:
    info: Dict[str, Any] = {"available": False}
    try:
        from numba import cuda  # type: ignore
        if not cuda.is_available():
            return info
        dev = cuda.get_current_device()
        info.update({
            "available": True,
            "name": getattr(dev, "name", None),
            "compute_capability": getattr(dev, "compute_capability", None),
            "max_threads_per_block": getattr(dev, "MAX_THREADS_PER_BLOCK", None),
        })
        return info
    except Exception as e:
        info["error"] = str(e)
        return info

def _perturbation_kernel():
    """Compile the kernel on first use so importing this module never needs CUDA."""
    global _KERNEL
    if _KERNEL is not None:
        return _KERNEL
    from numba import cuda  # type: ignore

    @cuda.jit
    def perturbation_kernel(
        ref_re, ref_im,       # float64[:] reference orbit, already cut to the loop bound
        width, height,        # surface size
        aspect,               # width / height in normalised units
        pixel_scale,          # 1 / magnification
        offset_x, offset_y,   # camera offset, normalised units
        threshold,            # squared escape radius
        out_escaped,          # uint8[:, :]
        out_iters,            # int32[:, :]
    ):
        px, py = cuda.grid(2)
        if px >= width or py >= height:
            return

        ndc_x = (px + 0.5) / width * 2.0 - 1.0
        ndc_y = 1.0 - (py + 0.5) / height * 2.0
        cr = (ndc_x * aspect + offset_x) * pixel_scale
        ci = (ndc_y + offset_y) * pixel_scale

        dzr = 0.0
        dzi = 0.0
        n = ref_re.shape[0]
        for i in range(n):
            zr = ref_re[i]
            zi = ref_im[i]
            nr = 2.0 * (zr * dzr - zi * dzi) + (dzr * dzr - dzi * dzi) + cr
            ni = 2.0 * (zr * dzi + zi * dzr) + 2.0 * dzr * dzi + ci
            dzr = nr
            dzi = ni
            xr = zr + dzr
            xi = zi + dzi
            if xr * xr + xi * xi > threshold:
                out_escaped[py, px] = 1
                out_iters[py, px] = i
                return

        out_escaped[py, px] = 0
        out_iters[py, px] = n

    _KERNEL = perturbation_kernel
    return _KERNEL

def render_frame_gpu(*, params: FrameParams, orbit, evaluator: PerturbationEvaluator, frame_id: str) -> np.ndarray:
    logger = get_logger()
    try:
        from numba import cuda  # type: ignore
        kernel = _perturbation_kernel()
    except Exception as e:
        raise RuntimeError(f"GPU renderer not available: {e}") from e

    n = min(params.max_iter, orbit.length)
    d_ref_re = cuda.to_device(np.ascontiguousarray(orbit.re[:n], dtype=np.float64))
    d_ref_im = cuda.to_device(np.ascontiguousarray(orbit.im[:n], dtype=np.float64))
    d_escaped = cuda.device_array((params.height, params.width), dtype=np.uint8)
    d_iters = cuda.device_array((params.height, params.width), dtype=np.int32)

    threads_per_block = (16, 16)
    blocks_per_grid = (math.ceil(params.width / 16), math.ceil(params.height / 16))

    logger.debug("[Frame %s] GPU render start %sx%s iter=%s", frame_id, params.width, params.height, n)
    ox, oy = params.camera_offset
    kernel[blocks_per_grid, threads_per_block](
        d_ref_re, d_ref_im,
        int(params.width), int(params.height),
        float(params.aspect), float(params.pixel_scale),
        float(ox), float(oy),
        float(params.escape_threshold),
        d_escaped, d_iters,
    )
    escaped = d_escaped.copy_to_host().astype(bool)
    iters = d_iters.copy_to_host()
    logger.debug("[Frame %s] GPU render done", frame_id)
    return evaluator.palette.colorize(escaped, iters)
