"""
Per-Frame stream and happens-after event tokens.

All work of one Frame is enqueued on its FrameStream. Other streams order
themselves after that work only by waiting on a FrameEvent recorded on it.
"""

from __future__ import annotations

try:
    import cupy as cp
except Exception as exc:  # pragma: no cover
    cp = None
    _gpu_import_error = exc
else:
    _gpu_import_error = None


class FrameEvent:
    """
    Happens-after token: marks a point in the timeline of the stream it was recorded on.

    Created unrecorded; `record()` captures all work enqueued so far on the owning
    stream. Waiting on an unrecorded event is a no-op, matching CUDA semantics.
    """

    def __init__(self, stream: "FrameStream", label: str):
        if cp is None:
            raise RuntimeError(f"CuPy not available for events: {_gpu_import_error}")
        self.label = label
        self._stream = stream
        self._event = cp.cuda.Event(block=False, disable_timing=True)
        self._recorded = False

    @property
    def event(self):
        if self._event is None:
            raise RuntimeError(f"Event '{self.label}' used after release")
        return self._event

    @property
    def recorded(self) -> bool:
        return self._recorded

    @property
    def released(self) -> bool:
        return self._event is None

    def record(self) -> "FrameEvent":
        self.event.record(self._stream.stream)
        self._recorded = True
        return self

    def done(self) -> bool:
        """Non-blocking query."""
        return self.event.done

    def synchronize(self) -> None:
        """Block the calling thread until the recorded work has finished."""
        self.event.synchronize()

    def release(self) -> None:
        self._event = None
        self._recorded = False

    def __repr__(self) -> str:
        return f"FrameEvent({self.label!r}, recorded={self._recorded})"


class FrameStream:
    """Dedicated non-blocking stream of one Frame."""

    def __init__(self, label: str = ""):
        if cp is None:
            raise RuntimeError(f"CuPy not available for streams: {_gpu_import_error}")
        self.label = label
        self._stream = cp.cuda.Stream(non_blocking=True)

    @property
    def stream(self):
        if self._stream is None:
            raise RuntimeError(f"Stream '{self.label}' used after release")
        return self._stream

    @property
    def ptr(self) -> int:
        return self.stream.ptr

    @property
    def released(self) -> bool:
        return self._stream is None

    def wait(self, token: FrameEvent) -> None:
        """Order all later work on this stream after `token`, without blocking the host."""
        if not isinstance(token, FrameEvent):
            raise TypeError(f"Expected FrameEvent, got {type(token).__name__}")
        self.stream.wait_event(token.event)

    def synchronize(self) -> None:
        self.stream.synchronize()

    def __enter__(self):
        # Makes this the current stream for CuPy array operations.
        return self.stream.__enter__()

    def __exit__(self, *exc):
        return self.stream.__exit__(*exc)

    def release(self) -> None:
        if self._stream is None:
            return
        self._stream.synchronize()
        self._stream = None
