"""
Texture objects over Frame planes, used for bilinear rescaling between pyramid levels.
"""

from __future__ import annotations

import enum
import logging

import numpy as np

try:
    import cupy as cp
    from cupy.cuda import runtime
    from cupy.cuda import texture as cuda_texture
except Exception as exc:  # pragma: no cover
    cp = None
    runtime = None
    cuda_texture = None
    _gpu_import_error = exc
else:
    _gpu_import_error = None

from gpu.plane import PitchedPlane

logger = logging.getLogger(__name__)


class TextureKind(enum.Enum):
    NORMALIZED_UCHAR_TO_FLOAT = "normalized_uchar_to_float"


class FrameTexture:
    """
    Sampler over a uint8 plane: normalized coordinates, bilinear filtering,
    bytes read as floats in [0, 1], clamp-to-edge on both axes.

    The plane is borrowed; closing the texture leaves it untouched.
    """

    def __init__(self, plane: PitchedPlane, kind: TextureKind = TextureKind.NORMALIZED_UCHAR_TO_FLOAT):
        if cp is None:
            raise RuntimeError(f"CuPy not available for textures: {_gpu_import_error}")
        if not isinstance(kind, TextureKind):
            raise ValueError(f"Unsupported texture kind: {kind!r}")
        if plane.dtype != np.uint8 or plane.channels != 1:
            raise ValueError(f"Texture kind {kind.value} needs a single-channel uint8 plane, got {plane!r}")

        self.kind = kind
        self._plane = plane
        self._texture = None

        if kind is TextureKind.NORMALIZED_UCHAR_TO_FLOAT:
            self._make_normalized_uchar_to_float(plane)

    def _make_normalized_uchar_to_float(self, plane: PitchedPlane) -> None:
        ch_desc = cuda_texture.ChannelFormatDescriptor(
            8, 0, 0, 0, runtime.cudaChannelFormatKindUnsigned
        )
        res_desc = cuda_texture.ResourceDescriptor(
            runtime.cudaResourceTypePitch2D,
            arr=plane.base,
            chDesc=ch_desc,
            width=plane.width,
            height=plane.height,
            pitchInBytes=plane.pitch,
        )
        tex_desc = cuda_texture.TextureDescriptor(
            addressModes=(runtime.cudaAddressModeClamp, runtime.cudaAddressModeClamp),
            filterMode=runtime.cudaFilterModeLinear,
            readMode=runtime.cudaReadModeNormalizedFloat,
            normalizedCoords=1,
        )
        try:
            self._texture = cuda_texture.TextureObject(res_desc, tex_desc)
        except runtime.CUDARuntimeError as exc:
            # A device that cannot bind this descriptor is below the supported baseline.
            raise RuntimeError(
                f"Failed to create {self.kind.value} texture over {plane!r}: {exc}"
            ) from exc
        logger.debug("Created %s texture over %r", self.kind.value, plane)

    @property
    def tex(self):
        if self._texture is None:
            raise RuntimeError("FrameTexture used after close")
        return self._texture

    @property
    def plane(self) -> PitchedPlane:
        return self._plane

    @property
    def closed(self) -> bool:
        return self._texture is None

    def close(self) -> None:
        # TextureObject destroys the CUDA handle when collected.
        self._texture = None
        self._plane = None
