"""
Frame: all device buffers, the texture, the stream and the events of one pyramid level.
"""

from __future__ import annotations

import logging
import weakref
from pathlib import Path
from typing import Dict, List, Optional

import numpy as np

try:
    import cupy as cp
    import cupyx
    from cupy.cuda import runtime
except Exception as exc:  # pragma: no cover
    cp = None
    cupyx = None
    runtime = None
    _gpu_import_error = exc
else:
    _gpu_import_error = None

from common.params import Parameters
from gpu import kernels
from gpu.debug import write_host_plane
from gpu.plane import PitchedPlane, device_pitch_alignment
from gpu.sync import FrameEvent, FrameStream
from gpu.texture import FrameTexture, TextureKind

logger = logging.getLogger(__name__)


class FrameAllocationError(MemoryError):
    """Device memory for a Frame could not be allocated. Not recoverable."""


# name -> element type; every plane is width x height.
PLANE_SPECS = (
    ("plane", np.uint8),
    ("intermediate", np.float32),
    ("smooth", np.float32),
    ("dx", np.int16),
    ("dy", np.int16),
    ("magnitude", np.uint32),
    ("map", np.uint8),
    ("edges", np.uint8),
)

DEBUG_MIRRORS = ("plane", "smooth", "dx", "dy", "magnitude", "map", "edges")

STAGING_BUFFERS = 2


class Frame:
    """
    Owner of one pyramid level.

    Every operation is enqueued on the Frame's own stream and returns without
    waiting; only stream_sync(), edge_count() and the debug readbacks block.
    Work of other Frames is ordered against this one through FrameEvent tokens.
    """

    def __init__(self, width: int, height: int, label: str | None = None):
        if cp is None:
            raise RuntimeError(f"CuPy not available for Frame: {_gpu_import_error}")
        if int(width) <= 0 or int(height) <= 0:
            raise ValueError(f"Frame dimensions must be positive, got {width}x{height}")

        self._width = int(width)
        self._height = int(height)
        self.label = label or f"frame{self._width}x{self._height}"

        self._planes: Dict[str, PitchedPlane] = {}
        self._edge_points = None
        self._edge_points_4 = None
        self._edge_counter = None
        self._stream: Optional[FrameStream] = None
        self._texture: Optional[FrameTexture] = None
        self._upload_event: Optional[FrameEvent] = None
        self._done_event: Optional[FrameEvent] = None
        # Pinned upload buffers, used alternately; each has a private event that
        # marks the end of the last copy out of it.
        self._h_staging: List[Optional[np.ndarray]] = [None] * STAGING_BUFFERS
        self._staging_events: List[Optional[FrameEvent]] = [None] * STAGING_BUFFERS
        self._staging_slot = 0
        self._h_debug: Dict[str, np.ndarray] = {}
        self._pyramid = None
        self._level = 0
        self._closed = False

        try:
            alignment = device_pitch_alignment()
            for name, dtype in PLANE_SPECS:
                self._planes[name] = PitchedPlane(self._width, self._height, dtype, alignment)
            capacity = self._width * self._height
            self._edge_points = cp.empty((capacity, 2), dtype=cp.int32)
            self._edge_points_4 = cp.empty((capacity, 4), dtype=cp.int32)
            self._edge_counter = cp.zeros(1, dtype=cp.uint32)
            self._stream = FrameStream(self.label)
        except cp.cuda.memory.OutOfMemoryError as exc:
            self._release_buffers()
            raise FrameAllocationError(
                f"Out of device memory allocating {self._width}x{self._height} frame"
            ) from exc
        except Exception:
            self._release_buffers()
            raise

        logger.debug(
            "Allocated %s: pitch=%d, %d device bytes",
            self.label, self.pitch, self.allocated_bytes(),
        )

    # ------------------------------------------------------------------
    # geometry and buffer access

    @property
    def width(self) -> int:
        return self._width

    @property
    def height(self) -> int:
        return self._height

    @property
    def pitch(self) -> int:
        """Row pitch of the uint8 plane in bytes."""
        return self._buffer("plane").pitch

    @property
    def level(self) -> int:
        return self._level

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def stream(self) -> FrameStream:
        self._check_open()
        return self._stream

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError(f"{self.label} used after close")

    def _buffer(self, name: str) -> PitchedPlane:
        self._check_open()
        return self._planes[name]

    def buffers(self) -> Dict[str, PitchedPlane]:
        self._check_open()
        return dict(self._planes)

    @property
    def plane(self):
        return self._buffer("plane").view

    @property
    def intermediate(self):
        return self._buffer("intermediate").view

    @property
    def smooth(self):
        return self._buffer("smooth").view

    @property
    def dx(self):
        return self._buffer("dx").view

    @property
    def dy(self):
        return self._buffer("dy").view

    @property
    def magnitude(self):
        return self._buffer("magnitude").view

    @property
    def map(self):
        return self._buffer("map").view

    @property
    def edges(self):
        return self._buffer("edges").view

    @property
    def edge_points(self):
        """(capacity, 2) int32 device array; the first edge_count() rows are valid."""
        self._check_open()
        return self._edge_points

    @property
    def edge_points_4(self):
        """(capacity, 4) int32 device array of (x, y, dx, dy); first edge_count() rows valid."""
        self._check_open()
        return self._edge_points_4

    @property
    def edge_counter(self):
        self._check_open()
        return self._edge_counter

    def allocated_bytes(self) -> int:
        total = sum(p.nbytes for p in self._planes.values())
        for arr in (self._edge_points, self._edge_points_4, self._edge_counter):
            if arr is not None:
                total += arr.nbytes
        return total

    # ------------------------------------------------------------------
    # upload and fill

    def upload(self, host_image: np.ndarray) -> FrameEvent:
        """
        Enqueue an async host-to-device copy of a full plane and return the upload event.

        The image must hold exactly width x height uint8 values, either as (height,
        width) or flat. It is staged in one of two alternating pinned buffers, so the
        caller may reuse `host_image` as soon as this returns. The host only waits
        when the copy issued two uploads earlier has still not finished.
        """
        self._check_open()
        img = np.asarray(host_image)
        if img.dtype != np.uint8:
            raise ValueError(f"upload expects uint8 data, got {img.dtype}")
        if img.ndim == 2:
            if img.shape != (self._height, self._width):
                raise ValueError(
                    f"upload expects shape {(self._height, self._width)}, got {img.shape}"
                )
        elif img.ndim != 1 or img.size != self._width * self._height:
            raise ValueError(
                f"upload expects {self._width * self._height} bytes, got shape {img.shape}"
            )

        slot = self._staging_slot
        self._staging_slot = (slot + 1) % STAGING_BUFFERS
        staging = self._h_staging[slot]
        if staging is None:
            staging = cupyx.empty_pinned((self._height, self._width), dtype=np.uint8)
            self._h_staging[slot] = staging
            self._staging_events[slot] = FrameEvent(self._stream, f"{self.label}/staging{slot}")
        elif self._staging_events[slot].recorded and not self._staging_events[slot].done():
            # The copy issued from this buffer two uploads ago is still reading it.
            self._staging_events[slot].synchronize()
        np.copyto(staging, img.reshape(self._height, self._width))

        plane = self._planes["plane"]
        runtime.memcpy2DAsync(
            plane.ptr, plane.pitch,
            staging.ctypes.data, self._width,
            self._width, self._height,
            runtime.memcpyHostToDevice,
            self._stream.ptr,
        )
        self._staging_events[slot].record()
        return self.add_upload_event()

    def create_texture(self, kind: TextureKind = TextureKind.NORMALIZED_UCHAR_TO_FLOAT) -> FrameTexture:
        """
        Bind a texture over the plane, if none of this kind exists yet.

        The texture reads whatever the plane holds when a kernel samples it; ordering
        against the producer is the caller's job (see fill_from_texture).
        """
        self._check_open()
        if self._texture is not None:
            if self._texture.kind is kind:
                return self._texture
            self.delete_texture()
        self._texture = FrameTexture(self._planes["plane"], kind)
        return self._texture

    def delete_texture(self) -> None:
        if self._texture is not None:
            self._texture.close()
            self._texture = None

    @property
    def texture(self) -> Optional[FrameTexture]:
        return self._texture

    def get_tex(self):
        if self._texture is None:
            raise RuntimeError(f"{self.label} has no texture; call create_texture() first")
        return self._texture.tex

    def fill_from_texture(self, src: "Frame") -> None:
        """
        Downscale `src` into this plane by bilinear sampling of its texture.

        Waits (on the device) for the work enqueued so far on `src`'s stream.
        """
        self._check_open()
        if src is self:
            raise ValueError("A Frame cannot fill itself from its own texture")
        if src.texture is None:
            raise RuntimeError(f"{src.label} has no texture to sample")
        self.stream_sync(src.add_done_event())
        kernels.launch_fill_from_texture(self._stream, src.texture, self._planes["plane"])

    def fill_from_frame(self, src: "Frame") -> None:
        """Device-to-device copy of a same-sized plane, ordered after `src`'s queued work."""
        self._check_open()
        if src is self:
            raise ValueError("A Frame cannot fill itself from itself")
        if (src.width, src.height) != (self._width, self._height):
            raise ValueError(
                f"fill_from_frame needs equal sizes, got {src.width}x{src.height} "
                f"into {self._width}x{self._height}"
            )
        self.stream_sync(src.add_done_event())
        dst = self._planes["plane"]
        src_plane = src.buffers()["plane"]
        runtime.memcpy2DAsync(
            dst.ptr, dst.pitch,
            src_plane.ptr, src_plane.pitch,
            self._width, self._height,
            runtime.memcpyDeviceToDevice,
            self._stream.ptr,
        )

    # ------------------------------------------------------------------
    # events and streams

    def alloc_upload_event(self) -> None:
        self._check_open()
        if self._upload_event is None:
            self._upload_event = FrameEvent(self._stream, f"{self.label}/upload")

    def delete_upload_event(self) -> None:
        if self._upload_event is not None:
            self._upload_event.release()
            self._upload_event = None

    def add_upload_event(self) -> FrameEvent:
        """Record "upload finished" at the current end of this Frame's stream."""
        self.alloc_upload_event()
        return self._upload_event.record()

    def alloc_done_event(self) -> None:
        self._check_open()
        if self._done_event is None:
            self._done_event = FrameEvent(self._stream, f"{self.label}/done")

    def delete_done_event(self) -> None:
        if self._done_event is not None:
            self._done_event.release()
            self._done_event = None

    def add_done_event(self) -> FrameEvent:
        """Record "last enqueued stage finished" at the current end of this Frame's stream."""
        self.alloc_done_event()
        return self._done_event.record()

    @property
    def upload_event(self) -> Optional[FrameEvent]:
        return self._upload_event

    @property
    def done_event(self) -> Optional[FrameEvent]:
        return self._done_event

    def stream_sync(self, event: Optional[FrameEvent] = None) -> None:
        """
        Without an event: block until this Frame's stream has drained.
        With an event: make this Frame's stream wait for it, without blocking the host.
        """
        self._check_open()
        if event is None:
            self._stream.synchronize()
        else:
            self._stream.wait(event)

    # ------------------------------------------------------------------
    # pyramid linkage

    def _attach(self, pyramid, level: int) -> None:
        self._pyramid = weakref.ref(pyramid)
        self._level = level

    def get_scale(self, scale: int) -> "Frame":
        """Return the downscaled sibling `scale` levels below; 0 is this Frame."""
        if scale < 0:
            raise ValueError(f"scale must be >= 0, got {scale}")
        if scale == 0:
            return self
        pyramid = self._pyramid() if self._pyramid is not None else None
        if pyramid is None:
            raise IndexError(f"{self.label} is not part of a pyramid; scale {scale} does not exist")
        return pyramid.level(self._level + scale)

    # ------------------------------------------------------------------
    # filtering

    def alloc_dev_gaussian_plane(self, params: Optional[Parameters] = None) -> None:
        """
        Make sure the process-wide Gauss table on the device matches `params`.

        Raises RuntimeError if a different table was initialized earlier.
        """
        self._check_open()
        params = params or Parameters()
        kernels.init_gauss_table(params.gauss_sigma, params.gauss_radius)

    def apply_gauss(self, params: Parameters) -> FrameEvent:
        """
        Enqueue smoothing, gradients, edge classification and edge compaction.

        Returns the done event; edge_count() and the edge buffers are valid once it
        has been observed.
        """
        self.alloc_dev_gaussian_plane(params)
        p = self._planes
        kernels.launch_gauss(self._stream, p["plane"], p["intermediate"], p["smooth"])
        kernels.launch_gradients(self._stream, p["smooth"], p["dx"], p["dy"], p["magnitude"])
        kernels.launch_edges(
            self._stream, p["dx"], p["dy"], p["magnitude"], p["map"], p["edges"],
            params.canny_thr_low, params.canny_thr_high, params.hysteresis_passes,
        )
        kernels.launch_compaction(
            self._stream, p["edges"], p["dx"], p["dy"],
            self._edge_points, self._edge_points_4, self._edge_counter,
        )
        return self.add_done_event()

    def edge_count(self) -> int:
        """Number of compacted edge points. Blocks until the last stage has finished."""
        self._check_open()
        if self._done_event is not None and self._done_event.recorded:
            self._done_event.synchronize()
        with self._stream:
            count = self._edge_counter.get()
        self._stream.synchronize()
        return int(count[0])

    def download(self, name: str = "plane") -> np.ndarray:
        """Blocking copy of one buffer to the host, after all queued work on this stream."""
        buf = self._buffer(name)
        with self._stream:
            host = buf.view.get()
        self._stream.synchronize()
        return host

    # ------------------------------------------------------------------
    # host debug mirror

    def host_debug_download(self) -> None:
        """Enqueue async copies of the debug planes into pinned host buffers."""
        self._check_open()
        for name in DEBUG_MIRRORS:
            plane = self._planes[name]
            host = self._h_debug.get(name)
            if host is None:
                host = cupyx.empty_pinned((self._height, self._width), dtype=plane.dtype)
                self._h_debug[name] = host
            runtime.memcpy2DAsync(
                host.ctypes.data, plane.row_bytes,
                plane.ptr, plane.pitch,
                plane.row_bytes, self._height,
                runtime.memcpyDeviceToHost,
                self._stream.ptr,
            )

    def host_debug_plane(self, name: str = "plane") -> np.ndarray:
        """Host mirror of `name` from the last host_debug_download(), after stream_sync()."""
        if name not in self._h_debug:
            raise RuntimeError(f"No host mirror of '{name}'; call host_debug_download() first")
        return self._h_debug[name]

    def write_host_debug_plane(self, filename: str | Path, name: str = "plane") -> None:
        self.stream_sync()
        write_host_plane(filename, self.host_debug_plane(name))

    def host_debug_compare(self, pix: np.ndarray) -> int:
        """Compare the host mirror of the plane with `pix`; return the number of differing pixels."""
        self.stream_sync()
        mirror = self.host_debug_plane("plane")
        pix = np.asarray(pix, dtype=np.uint8).reshape(self._height, self._width)
        diff = np.argwhere(mirror != pix)
        if len(diff):
            y, x = diff[0]
            logger.warning(
                "%s: %d pixels differ from host, first at (%d, %d): device=%d host=%d",
                self.label, len(diff), x, y, mirror[y, x], pix[y, x],
            )
        return int(len(diff))

    # ------------------------------------------------------------------
    # teardown

    def _release_buffers(self) -> None:
        for plane in self._planes.values():
            plane.release()
        self._planes = {}
        self._edge_points = None
        self._edge_points_4 = None
        self._edge_counter = None
        for event in self._staging_events:
            if event is not None:
                event.release()
        self._h_staging = [None] * STAGING_BUFFERS
        self._staging_events = [None] * STAGING_BUFFERS
        self._h_debug = {}

    def close(self) -> None:
        """Drain the stream and release everything this Frame owns. Idempotent."""
        if self._closed:
            return
        if self._stream is not None:
            self._stream.release()
        self.delete_texture()
        self.delete_upload_event()
        self.delete_done_event()
        self._release_buffers()
        self._stream = None
        self._closed = True
        logger.debug("Released %s", self.label)

    def __enter__(self) -> "Frame":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"Frame({self.label!r}, {self._width}x{self._height}, level={self._level})"
