from __future__ import annotations

import argparse
import json
import time
from typing import Optional

from mpmath import nstr
from tqdm import tqdm

from deepzoom.config import load_config, normalise_config
from deepzoom.errors import InvalidInput
from deepzoom.orbit import HighPrecisionOrbitGenerator, OrbitWorker
from deepzoom.pipeline import RenderPipeline, renderer_info
from deepzoom.policy import AdaptiveIterationPolicy
from deepzoom.util.logging_setup import get_logger, logging_session, parse_level
from deepzoom.viewport import ViewportController

def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="deepzoom", description="Deep-zoom Mandelbrot explorer using perturbation rendering.")
    p.add_argument("--config", type=str, default=None, help="Path to config JSON. If omitted, built-in defaults are used.")
    p.add_argument("--renderer", type=str, default=None, choices=["auto", "cpu", "gpu"], help="Override renderer selection.")
    p.add_argument("--log-level", type=str, default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Log level.")
    p.add_argument("--log-file", type=str, default="", help="Rotating log file path. Empty disables file logging.")
    p.add_argument("--center", nargs=2, metavar=("RE", "IM"), default=None, help="View center as decimal strings.")
    p.add_argument("--magnification", type=str, default=None, help="Initial magnification, e.g. 1e20.")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("view", help="Open the interactive window.")

    pr = sub.add_parser("probe", help="Render frames in memory and print orbit/frame statistics as JSON.")
    pr.add_argument("--frames", type=int, default=1, help="Number of frames, each zoomed in by --step wheel steps.")
    pr.add_argument("--step", type=float, default=10.0, help="Wheel steps of zoom between frames.")

    return p

def _probe(cfg, pipeline: RenderPipeline, controller: ViewportController, frames: int, step: float) -> dict:
    stats = []
    for i in tqdm(range(frames), desc="frames", disable=frames == 1):
        if i:
            controller.zoom_at(step)
        snapshot = controller.frame()
        started = time.perf_counter()
        rgb = pipeline.render(snapshot)
        elapsed = time.perf_counter() - started
        orbit = pipeline.orbit
        inside = float((rgb.sum(axis=-1) == 0).mean())
        stats.append({
            "frame": snapshot.frame_id,
            "magnification": nstr(snapshot.view.magnification, 6),
            "center": [nstr(snapshot.view.center.real, 30), nstr(snapshot.view.center.imag, 30)],
            "reference_is_camera": snapshot.reference == snapshot.view.center,
            "camera_offset": list(snapshot.camera_offset),
            "orbit_length": orbit.length,
            "orbit_requested": snapshot.budget.orbit_length,
            "orbit_escaped": orbit.escaped,
            "precision_bits": orbit.precision_bits,
            "precision_clamped": snapshot.budget.precision_clamped,
            "inside_fraction": round(inside, 6),
            "seconds": round(elapsed, 4),
        })
    return {"renderer": renderer_info(pipeline.renderer), "size": [cfg["width"], cfg["height"]], "frames": stats}

def main(argv: Optional[list] = None) -> int:
    args = build_arg_parser().parse_args(argv)
    log_level = parse_level(args.log_level)
    log_file = args.log_file.strip() or None

    with logging_session(level=log_level, log_file=log_file) as queue:
        logger = get_logger()
        try:
            cfg = load_config(args.config)
            if args.renderer:
                cfg["renderer"] = args.renderer
            if args.center:
                cfg["center"] = list(args.center)
            if args.magnification:
                cfg["magnification"] = args.magnification
            cfg = normalise_config(cfg)

            policy = AdaptiveIterationPolicy.from_config(cfg)
            controller = ViewportController.from_config(cfg, policy)
            pipeline = RenderPipeline.from_config(cfg, log_queue=queue, log_level=log_level)
        except (ValueError, OSError) as e:
            logger.error("Invalid configuration: %s", e)
            return 2

        if args.cmd == "view":
            from deepzoom.viewer import Viewer
            worker = OrbitWorker(HighPrecisionOrbitGenerator.from_config(cfg))
            Viewer(controller, pipeline, worker).run()
            return 0

        if args.cmd == "probe":
            if args.frames < 1:
                logger.error("--frames must be >= 1")
                return 2
            try:
                report = _probe(cfg, pipeline, controller, args.frames, args.step)
            except InvalidInput as e:
                logger.error("Probe failed: %s", e)
                return 1
            print(json.dumps(report, indent=2, default=str))
            return 0

        raise RuntimeError("Unknown command.")

if __name__ == "__main__":
    raise SystemExit(main())
