"""
Scale pyramid: an ordered chain of Frames, each level half the size of its parent.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Optional

import numpy as np

from common.params import Parameters
from gpu import kernels
from gpu.frame import Frame
from gpu.texture import TextureKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LevelOutput:
    """Per-level results handed to edge linking. Device arrays, treat as read-only."""

    level: int
    width: int
    height: int
    pitch: int
    magnitude: object
    edges: object
    edge_points: object
    edge_points_4: object
    edge_count: int


def level_sizes(width: int, height: int, levels: int) -> List[tuple[int, int]]:
    sizes = []
    w, h = int(width), int(height)
    for k in range(levels):
        if w < 1 or h < 1:
            raise ValueError(f"{width}x{height} cannot be halved into {levels} levels (level {k} is empty)")
        sizes.append((w, h))
        w, h = w >> 1, h >> 1
    return sizes


class Pyramid:
    """
    Owns the Frames of all levels for a fixed input size.

    Buffers are allocated once and refilled by every process() call. Levels run on
    their own streams; a child only waits for the part of its parent's stream that
    produces the parent plane, so smoothing of different levels overlaps.
    """

    def __init__(self, width: int, height: int, levels: Optional[int] = None, params: Optional[Parameters] = None):
        self.params = params or Parameters()
        levels = self.params.levels if levels is None else int(levels)
        if levels < 1:
            raise ValueError(f"levels must be >= 1, got {levels}")

        self._frames: List[Frame] = []
        self._closed = False
        try:
            for k, (w, h) in enumerate(level_sizes(width, height, levels)):
                frame = Frame(w, h, label=f"level{k}")
                frame._attach(self, k)
                self._frames.append(frame)
            # Every level that feeds a child samples through a texture.
            for frame in self._frames[:-1]:
                frame.create_texture(TextureKind.NORMALIZED_UCHAR_TO_FLOAT)
            kernels.init_gauss_table(self.params.gauss_sigma, self.params.gauss_radius)
        except Exception:
            self.close()
            raise

        logger.info(
            "Pyramid %dx%d with %d levels, %d device bytes",
            width, height, levels, sum(f.allocated_bytes() for f in self._frames),
        )

    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._frames)

    def __iter__(self) -> Iterator[Frame]:
        return iter(self._frames)

    def __getitem__(self, k: int) -> Frame:
        return self.level(k)

    @property
    def width(self) -> int:
        return self.level(0).width

    @property
    def height(self) -> int:
        return self.level(0).height

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError("Pyramid used after close")

    def level(self, k: int) -> Frame:
        self._check_open()
        if k < 0 or k >= len(self._frames):
            raise IndexError(f"Pyramid has {len(self._frames)} levels, level {k} does not exist")
        return self._frames[k]

    # ------------------------------------------------------------------

    def process(self, host_image: np.ndarray) -> None:
        """
        Enqueue one full cycle for `host_image`: upload, downscale chain, per-level filtering.

        Returns without waiting. Call sync() before reading results.
        """
        self._check_open()
        frames = self._frames

        # A plane is overwritten only after its child finished reading it last cycle.
        self._wait_for_child(0)
        frames[0].upload(host_image)
        for k in range(1, len(frames)):
            self._wait_for_child(k)
            frames[k].fill_from_texture(frames[k - 1])

        for frame in frames:
            frame.apply_gauss(self.params)

    def _wait_for_child(self, k: int) -> None:
        if k + 1 >= len(self._frames):
            return
        child_done = self._frames[k + 1].done_event
        if child_done is not None and child_done.recorded:
            self._frames[k].stream_sync(child_done)

    def sync(self) -> None:
        """Block until every level's stream has drained. Device faults surface here."""
        self._check_open()
        for frame in self._frames:
            frame.stream_sync()

    def outputs(self) -> List[LevelOutput]:
        """Results of the last cycle, per level. Call after sync()."""
        self._check_open()
        return [
            LevelOutput(
                level=k,
                width=f.width,
                height=f.height,
                pitch=f.pitch,
                magnitude=f.magnitude,
                edges=f.edges,
                edge_points=f.edge_points,
                edge_points_4=f.edge_points_4,
                edge_count=f.edge_count(),
            )
            for k, f in enumerate(self._frames)
        ]

    # ------------------------------------------------------------------
    # debug mirroring

    def debug_download(self) -> None:
        self._check_open()
        for frame in self._frames:
            frame.host_debug_download()

    def write_debug_planes(self, directory: str | Path, prefix: str = "pyramid", names=("plane",)) -> List[Path]:
        """Write the host mirrors of every level; needs a prior debug_download()."""
        self._check_open()
        directory = Path(directory)
        written = []
        for k, frame in enumerate(self._frames):
            for name in names:
                path = directory / f"{prefix}_l{k}_{name}.png"
                frame.write_host_debug_plane(path, name)
                written.append(path)
        return written

    # ------------------------------------------------------------------

    def close(self) -> None:
        # Textures first: they borrow the planes of the Frames they belong to.
        for frame in self._frames:
            frame.delete_texture()
        for frame in reversed(self._frames):
            frame.close()
        self._frames = []
        self._closed = True

    def __enter__(self) -> "Pyramid":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
