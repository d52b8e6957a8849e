"""
Row-pitch-aligned 2D device buffers owned by a single Frame.
"""

from __future__ import annotations

import numpy as np

try:
    import cupy as cp
except Exception as exc:  # pragma: no cover
    cp = None
    _gpu_import_error = exc
else:
    _gpu_import_error = None


DEFAULT_PITCH_ALIGNMENT = 256


def device_pitch_alignment() -> int:
    """
    Row alignment in bytes for pitched allocations on the current device.

    Never below DEFAULT_PITCH_ALIGNMENT, and always a multiple of the texture pitch
    alignment so any plane can be bound as a pitch-2D texture.
    """
    if cp is None:
        raise RuntimeError(f"CuPy not available for pitched allocation: {_gpu_import_error}")
    tex_align = int(cp.cuda.Device().attributes.get("TexturePitchAlignment", 32))
    align = DEFAULT_PITCH_ALIGNMENT
    while align % tex_align:
        align += DEFAULT_PITCH_ALIGNMENT
    return align


def round_up(value: int, alignment: int) -> int:
    return ((value + alignment - 1) // alignment) * alignment


class PitchedPlane:
    """
    One owned pitched 2D device allocation.

    The backing array is (height, pitch // itemsize) elements; `view` exposes the
    logical (height, width) region, sharing memory with the backing array. Copying
    is not supported, the owning Frame calls `release()` exactly once.
    """

    def __init__(self, width: int, height: int, dtype, alignment: int, channels: int = 1):
        if cp is None:
            raise RuntimeError(f"CuPy not available for pitched allocation: {_gpu_import_error}")
        self.width = int(width)
        self.height = int(height)
        self.channels = int(channels)
        self.dtype = np.dtype(dtype)
        row_bytes = self.width * self.channels * self.dtype.itemsize
        self.pitch = round_up(row_bytes, alignment)

        elems_per_row = self.pitch // self.dtype.itemsize
        self._base = cp.empty((self.height, elems_per_row), dtype=self.dtype)
        view = self._base[:, : self.width * self.channels]
        if self.channels > 1:
            view = view.reshape(self.height, self.width, self.channels)
        self._view = view

    def __copy__(self):
        raise TypeError("PitchedPlane owns device memory and cannot be copied")

    def __deepcopy__(self, memo):
        raise TypeError("PitchedPlane owns device memory and cannot be copied")

    @property
    def released(self) -> bool:
        return self._base is None

    @property
    def ptr(self) -> int:
        return self.base.data.ptr

    @property
    def base(self):
        if self._base is None:
            raise RuntimeError("PitchedPlane used after release")
        return self._base

    @property
    def view(self):
        if self._view is None:
            raise RuntimeError("PitchedPlane used after release")
        return self._view

    @property
    def row_bytes(self) -> int:
        return self.width * self.channels * self.dtype.itemsize

    @property
    def nbytes(self) -> int:
        """Allocated size, pitch x rows."""
        return self.pitch * self.height

    def release(self) -> None:
        self._view = None
        self._base = None

    def __repr__(self) -> str:
        return (
            f"PitchedPlane({self.width}x{self.height}, dtype={self.dtype.name}, "
            f"channels={self.channels}, pitch={self.pitch})"
        )
