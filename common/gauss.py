"""
Host-side construction of the separable Gaussian filter table.
"""

from __future__ import annotations

import math

import numpy as np

# Size of the device constant table; radius is capped so the taps always fit.
GAUSS_TABLE_SIZE = 17
GAUSS_MAX_RADIUS = GAUSS_TABLE_SIZE // 2


def gauss_radius_for_sigma(sigma: float) -> int:
    return min(GAUSS_MAX_RADIUS, max(1, int(math.ceil(3.0 * sigma))))


def make_gauss_table(sigma: float = 1.0, radius: int | None = None) -> np.ndarray:
    """
    Build a normalized 1D Gaussian of 2*radius+1 taps, zero-padded to GAUSS_TABLE_SIZE.

    Tap i of the padded table holds the weight for offset i - radius, so the device
    kernels index it as table[k + radius] for k in [-radius, radius].
    """
    if sigma <= 0:
        raise ValueError(f"sigma must be positive, got {sigma}")
    if radius is None:
        radius = gauss_radius_for_sigma(sigma)
    if radius < 1 or radius > GAUSS_MAX_RADIUS:
        raise ValueError(f"radius must be in [1, {GAUSS_MAX_RADIUS}], got {radius}")

    offsets = np.arange(-radius, radius + 1, dtype=np.float64)
    taps = np.exp(-(offsets * offsets) / (2.0 * sigma * sigma))
    taps /= taps.sum()

    table = np.zeros(GAUSS_TABLE_SIZE, dtype=np.float32)
    table[: taps.size] = taps.astype(np.float32)
    return table


def active_taps(table: np.ndarray, radius: int) -> np.ndarray:
    """Return the 2*radius+1 populated taps of a padded table."""
    return np.asarray(table[: 2 * radius + 1], dtype=np.float32)
