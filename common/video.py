from __future__ import annotations

from pathlib import Path
from typing import Iterable, List

import cv2
import numpy as np


def load_gray_frames(video_path: str | Path, frame_indices: Iterable[int]) -> List[np.ndarray]:
    """
    Load specific frames from a video file as single-channel uint8 images.

    Args:
        video_path: Path to the video file.
        frame_indices: Iterable of zero-based frame indices to fetch.

    Returns:
        List of C-contiguous (H, W) uint8 arrays in the same order as requested,
        ready for Frame.upload.
    """
    path = Path(video_path)
    if not path.exists():
        raise FileNotFoundError(f"Video not found: {path}")

    cap = cv2.VideoCapture(str(path))
    if not cap.isOpened():
        raise RuntimeError(f"Failed to open video: {path}")

    frames = []
    try:
        for idx in frame_indices:
            cap.set(cv2.CAP_PROP_POS_FRAMES, idx)
            ok, frame = cap.read()
            if not ok:
                raise RuntimeError(f"Could not read frame {idx} from {path}")
            if frame.ndim == 3:
                frame = cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)
            frames.append(np.ascontiguousarray(frame, dtype=np.uint8))
    finally:
        cap.release()
    return frames
