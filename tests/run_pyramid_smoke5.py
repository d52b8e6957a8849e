"""
Pyramid smoke run on video frames: per-level GPU vs CPU plane parity, edge counts and timing.
"""

from __future__ import annotations

import sys
import time
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import numpy as np

from common.config import ensure_output_dirs, load_config
from common.params import Parameters
from common.video import load_gray_frames
from cpu.pyramid import cpu_pyramid
from tests.helpers import max_abs_diff, rms, save_edge_overlay, write_csv

try:
    from gpu.pyramid import Pyramid
except Exception as exc:
    Pyramid = None
    _gpu_import_error = exc
else:
    _gpu_import_error = None


def main() -> None:
    cfg = load_config()
    ensure_output_dirs(cfg)

    if Pyramid is None:
        raise RuntimeError(f"GPU pyramid unavailable: {_gpu_import_error}")

    params = Parameters.from_config(cfg)
    frames = load_gray_frames(cfg["input"]["video_path"], range(int(cfg["input"].get("frames", 5))))
    height, width = frames[0].shape
    pyramid_cfg = cfg.get("pyramid", {})
    if pyramid_cfg.get("width") and pyramid_cfg.get("height"):
        width, height = int(pyramid_cfg["width"]), int(pyramid_cfg["height"])

    metrics_csv = Path(cfg["outputs"]["metrics_csv"])
    debug_dir = Path(params.debug_dir) if params.debug_dir else None

    rows = []
    all_passed = True

    with Pyramid(width, height, params=params) as pyr:
        for idx, gray in enumerate(frames):
            if gray.shape != (height, width):
                raise RuntimeError(f"Frame {idx} is {gray.shape}, pyramid expects {(height, width)}")

            t0 = time.perf_counter()
            pyr.process(gray)
            pyr.sync()
            cycle_ms = (time.perf_counter() - t0) * 1000.0

            expected = cpu_pyramid(gray, len(pyr))
            for k, level in enumerate(pyr):
                plane = level.download("plane")
                diff = max_abs_diff(plane, expected[k])
                passed = diff <= k + 1
                all_passed &= passed
                rows.append([
                    idx,
                    k,
                    level.width,
                    level.height,
                    level.edge_count(),
                    diff,
                    rms(plane, expected[k]),
                    cycle_ms if k == 0 else "",
                    passed,
                ])
                if debug_dir is not None:
                    save_edge_overlay(plane, level.download("edges"), debug_dir / f"frame_{idx:03d}_l{k}_edges.png")

    write_csv(
        metrics_csv,
        ["frame", "level", "width", "height", "edge_count", "plane_max_diff", "plane_rms", "cycle_ms", "passed"],
        rows,
    )

    cycle_times = np.array([r[7] for r in rows if r[7] != ""], dtype=np.float64)
    print(f"Pyramid smoke: {len(frames)} frames, {len(rows)} level results -> {metrics_csv}")
    print(f"Mean cycle time: {cycle_times.mean():.2f} ms (first cycle includes kernel compilation)")
    print(f"Plane parity: {'PASS' if all_passed else 'FAIL'}")


if __name__ == "__main__":
    main()
