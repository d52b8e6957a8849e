"""
CPU reference implementation of the per-level pyramid stages using OpenCV.
"""

from __future__ import annotations

from typing import List, Tuple

import cv2
import numpy as np

from common.gauss import active_taps, gauss_radius_for_sigma, make_gauss_table


def cpu_downscale_half(gray: np.ndarray) -> np.ndarray:
    """
    Bilinear half-size downscale with texel-centre alignment and replicated borders.

    Same sampling grid as the texture path: destination pixel x reads source
    coordinate (x + 0.5) * src_w / dst_w - 0.5.
    """
    if gray.ndim != 2:
        raise ValueError("cpu_downscale_half expects 2D grayscale image")
    h, w = gray.shape
    dst_w, dst_h = w >> 1, h >> 1
    if dst_w < 1 or dst_h < 1:
        raise ValueError(f"Cannot halve a {w}x{h} image")
    return cv2.resize(gray, (dst_w, dst_h), interpolation=cv2.INTER_LINEAR)


def cpu_pyramid(gray: np.ndarray, levels: int) -> List[np.ndarray]:
    planes = [gray]
    for _ in range(1, levels):
        planes.append(cpu_downscale_half(planes[-1]))
    return planes


def cpu_gauss(gray: np.ndarray, sigma: float = 1.0, radius: int | None = None) -> np.ndarray:
    """
    Separable Gaussian with the same taps as the device table, BORDER_REPLICATE.

    Returns float32.
    """
    if gray.ndim != 2:
        raise ValueError("cpu_gauss expects 2D grayscale image")
    if radius is None:
        radius = gauss_radius_for_sigma(sigma)
    table = make_gauss_table(sigma, radius)
    taps = active_taps(table, radius)
    return cv2.sepFilter2D(
        gray.astype(np.float32),
        cv2.CV_32F,
        taps,
        taps,
        borderType=cv2.BORDER_REPLICATE,
    )


def cpu_gradients(smooth: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    3x3 Sobel on a float plane with replicated borders.

    Returns (dx int16, dy int16, L1 magnitude uint32).
    """
    if smooth.ndim != 2:
        raise ValueError("cpu_gradients expects 2D image")
    src = smooth.astype(np.float32)
    gx = cv2.Sobel(src, cv2.CV_32F, 1, 0, ksize=3, borderType=cv2.BORDER_REPLICATE)
    gy = cv2.Sobel(src, cv2.CV_32F, 0, 1, ksize=3, borderType=cv2.BORDER_REPLICATE)
    dx = np.clip(np.rint(gx), -32768, 32767).astype(np.int16)
    dy = np.clip(np.rint(gy), -32768, 32767).astype(np.int16)
    mag = (np.abs(dx.astype(np.int32)) + np.abs(dy.astype(np.int32))).astype(np.uint32)
    return dx, dy, mag
