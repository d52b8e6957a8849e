from __future__ import annotations

import cv2
import numpy as np
import pytest

from gpu.debug import to_debug_u8, write_debug_plane, write_host_plane
from tests.helpers import requires_gpu, square_image


def test_to_debug_u8_scaling():
    u8 = square_image(8, 8, top_left=(2, 2), size=2, value=40)
    assert to_debug_u8(u8) is u8

    signed = np.array([[-100, 0], [40, 25]], dtype=np.int16)
    out = to_debug_u8(signed)
    assert out.dtype == np.uint8
    assert out[0, 0] == 255 and out[0, 1] == 0 and out[1, 0] == 102

    assert not np.any(to_debug_u8(np.zeros((3, 3), dtype=np.float32)))
    with pytest.raises(ValueError):
        to_debug_u8(np.zeros((2, 2, 2), dtype=np.float32))


def test_write_host_plane(tmp_path):
    path = tmp_path / "sub" / "mag.png"
    mag = np.arange(64, dtype=np.uint32).reshape(8, 8)
    write_host_plane(path, mag)
    back = cv2.imread(str(path), cv2.IMREAD_GRAYSCALE)
    assert back.shape == (8, 8)
    assert back[7, 7] == 255 and back[0, 0] == 0


@requires_gpu
def test_write_debug_plane_from_device(tmp_path):
    from common.params import Parameters
    from gpu.frame import Frame

    with Frame(64, 64) as frame:
        frame.upload(square_image())
        frame.apply_gauss(Parameters())
        write_debug_plane(tmp_path / "mag.png", frame.buffers()["magnitude"], frame.stream)
        write_debug_plane(tmp_path / "edges.png", frame.edges, frame.stream)
        edges = frame.download("edges")

    back = cv2.imread(str(tmp_path / "edges.png"), cv2.IMREAD_GRAYSCALE)
    np.testing.assert_array_equal(back, edges)
    mag = cv2.imread(str(tmp_path / "mag.png"), cv2.IMREAD_GRAYSCALE)
    assert mag.max() == 255
