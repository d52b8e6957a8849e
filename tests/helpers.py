from __future__ import annotations

import csv
from pathlib import Path
from typing import Iterable, Sequence

import cv2
import numpy as np
import pytest

try:
    import cupy as cp

    HAS_GPU = cp.cuda.runtime.getDeviceCount() > 0
except Exception as exc:
    cp = None
    HAS_GPU = False
    _gpu_import_error = exc
else:
    _gpu_import_error = None

requires_gpu = pytest.mark.skipif(not HAS_GPU, reason=f"CUDA device not available: {_gpu_import_error}")


def write_csv(path: Path, header: Sequence[str], rows: Iterable[Sequence]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(header)
        for row in rows:
            writer.writerow(row)


def save_edge_overlay(gray: np.ndarray, edges: np.ndarray, path: Path) -> None:
    """
    Draw edge pixels in green over the grayscale plane and save.
    """
    img = cv2.cvtColor(gray, cv2.COLOR_GRAY2BGR)
    img[edges != 0] = (0, 255, 0)
    path.parent.mkdir(parents=True, exist_ok=True)
    cv2.imwrite(str(path), img)


def rms(a: np.ndarray, b: np.ndarray) -> float:
    diff = a.astype(np.float32) - b.astype(np.float32)
    return float(np.sqrt(np.mean(diff * diff)))


def max_abs_diff(a: np.ndarray, b: np.ndarray) -> int:
    return int(np.max(np.abs(a.astype(np.int64) - b.astype(np.int64))))


def constant_image(width: int, height: int, value: int) -> np.ndarray:
    return np.full((height, width), value, dtype=np.uint8)


def square_image(width: int = 64, height: int = 64, top_left=(30, 30), size: int = 4, value: int = 255) -> np.ndarray:
    """Dark image with one bright size x size square; top_left is (x, y)."""
    img = np.zeros((height, width), dtype=np.uint8)
    x0, y0 = top_left
    img[y0 : y0 + size, x0 : x0 + size] = value
    return img


def random_image(width: int, height: int, seed: int = 0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    return rng.integers(0, 256, size=(height, width), dtype=np.uint8)
