"""
Diagnostic image dumps of Frame buffers. Never part of the production data path.
"""

from __future__ import annotations

import logging
from pathlib import Path

import cv2
import numpy as np

try:
    import cupy as cp
except Exception as exc:  # pragma: no cover
    cp = None
    _gpu_import_error = exc
else:
    _gpu_import_error = None

logger = logging.getLogger(__name__)


def to_debug_u8(img: np.ndarray) -> np.ndarray:
    """
    Map any 2D plane to uint8 for viewing.

    uint8 planes are written unchanged; signed planes use their absolute value; all
    other types are scaled so the maximum maps to 255.
    """
    if img.ndim != 2:
        raise ValueError(f"Expected a 2D plane, got shape {img.shape}")
    if img.dtype == np.uint8:
        return img
    vals = np.abs(img.astype(np.float64))
    peak = float(vals.max()) if vals.size else 0.0
    if peak <= 0.0:
        return np.zeros(img.shape, dtype=np.uint8)
    return np.clip(np.rint(vals * (255.0 / peak)), 0, 255).astype(np.uint8)


def write_host_plane(filename: str | Path, img: np.ndarray) -> None:
    path = Path(filename)
    path.parent.mkdir(parents=True, exist_ok=True)
    if not cv2.imwrite(str(path), to_debug_u8(np.ascontiguousarray(img))):
        raise RuntimeError(f"Failed to write debug plane: {path}")
    logger.debug("Wrote debug plane %s (%s, %s)", path, img.shape, img.dtype)


def write_debug_plane(filename: str | Path, plane, stream=None) -> None:
    """
    Download a device plane (CuPy array or PitchedPlane) and write it as an image.

    Blocks until `stream` (or the current stream) has finished the copy.
    """
    if cp is None:
        raise RuntimeError(f"CuPy not available for debug download: {_gpu_import_error}")
    view = plane.view if hasattr(plane, "view") else plane
    if stream is None:
        host = cp.asnumpy(view)
    else:
        with stream:
            host = view.get()
        stream.synchronize()
    write_host_plane(filename, host)
