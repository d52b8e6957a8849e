"""
Pyramid construction, cross-stream ordering and per-level outputs. Need a CUDA device.
"""

from __future__ import annotations

import numpy as np
import pytest

from common.params import Parameters
from cpu.pyramid import cpu_downscale_half, cpu_gauss, cpu_gradients, cpu_pyramid
from gpu import kernels
from gpu.frame import Frame
from gpu.pyramid import Pyramid, level_sizes
from tests.helpers import max_abs_diff, random_image, requires_gpu, square_image

pytestmark = requires_gpu


def test_level_sizes():
    assert level_sizes(640, 480, 4) == [(640, 480), (320, 240), (160, 120), (80, 60)]
    assert level_sizes(5, 3, 2) == [(5, 3), (2, 1)]
    with pytest.raises(ValueError):
        level_sizes(8, 8, 5)


def test_levels_and_scale_lookup():
    with Pyramid(64, 48, levels=3) as pyr:
        assert len(pyr) == 3
        assert [(f.width, f.height) for f in pyr] == [(64, 48), (32, 24), (16, 12)]
        assert pyr.width == 64 and pyr.height == 48

        top = pyr.level(0)
        assert top.get_scale(0) is top
        assert top.get_scale(2) is pyr.level(2)
        assert pyr.level(1).get_scale(1) is pyr[2]
        with pytest.raises(IndexError):
            top.get_scale(3)
        with pytest.raises(IndexError):
            pyr.level(1).get_scale(2)
        with pytest.raises(IndexError):
            pyr.level(3)

        # Only levels that feed a child carry a texture.
        assert pyr.level(0).texture is not None
        assert pyr.level(1).texture is not None
        assert pyr.level(2).texture is None


def test_too_many_levels_rejected_without_leaks(mempool):
    before = mempool.used_bytes()
    with pytest.raises(ValueError):
        Pyramid(8, 8, levels=5)
    assert mempool.used_bytes() == before


def test_close_releases_all_levels(mempool):
    before = mempool.used_bytes()
    pyr = Pyramid(128, 96, levels=3)
    frames = list(pyr)
    pyr.close()
    assert all(f.closed for f in frames)
    del frames
    assert mempool.used_bytes() == before
    with pytest.raises(RuntimeError):
        pyr.level(0)


def test_every_operation_fails_after_close(tmp_path):
    pyr = Pyramid(64, 64, levels=2)
    pyr.process(square_image())
    pyr.close()
    pyr.close()
    for call in (
        pyr.sync,
        pyr.outputs,
        pyr.debug_download,
        lambda: pyr.write_debug_planes(tmp_path),
        lambda: pyr.process(square_image()),
    ):
        with pytest.raises(RuntimeError):
            call()


def test_child_always_sees_latest_parent_upload():
    width, height = 1024, 768
    with Frame(width, height) as parent, Frame(width >> 1, height >> 1) as child:
        parent.create_texture()
        for seed in range(5):
            a = random_image(width, height, seed=2 * seed)
            b = random_image(width, height, seed=2 * seed + 1)
            parent.upload(a)
            child.fill_from_texture(parent)
            parent.upload(b)
            child.fill_from_texture(parent)
            child.stream_sync()
            assert max_abs_diff(child.download(), cpu_downscale_half(b)) <= 1


def test_process_builds_every_level_from_latest_image():
    levels = 3
    with Pyramid(160, 120, levels=levels) as pyr:
        pyr.process(random_image(160, 120, seed=11))
        latest = random_image(160, 120, seed=12)
        pyr.process(latest)
        pyr.sync()

        expected = cpu_pyramid(latest, levels)
        for k, frame in enumerate(pyr):
            # Each level resamples the previous device level: rounding adds up.
            assert max_abs_diff(frame.download(), expected[k]) <= k + 1


def test_smoothing_and_gradients_match_cpu_reference():
    img = random_image(96, 64, seed=21)
    params = Parameters()
    with Frame(96, 64) as frame:
        frame.upload(img)
        frame.apply_gauss(params)
        frame.stream_sync()
        smooth = frame.download("smooth")
        dx = frame.download("dx")
        dy = frame.download("dy")
        mag = frame.download("magnitude")

    ref_smooth = cpu_gauss(img, params.gauss_sigma, params.gauss_radius)
    np.testing.assert_allclose(smooth, ref_smooth, atol=1e-2)
    ref_dx, ref_dy, ref_mag = cpu_gradients(ref_smooth)
    assert max_abs_diff(dx, ref_dx) <= 1
    assert max_abs_diff(dy, ref_dy) <= 1
    assert max_abs_diff(mag, ref_mag) <= 2


def test_outputs_report_consistent_edge_counts():
    img = np.zeros((128, 128), dtype=np.uint8)
    img[40:80, 30:90] = 220
    with Pyramid(128, 128, levels=3) as pyr:
        pyr.process(img)
        pyr.sync()
        outputs = pyr.outputs()

        assert [o.level for o in outputs] == [0, 1, 2]
        for out in outputs:
            edges = out.edges.get()
            assert edges.shape == (out.height, out.width)
            assert out.edge_count == int(np.count_nonzero(edges))
            assert out.edge_count > 0
            assert out.pitch >= out.width


def test_square_level0_edges_through_pyramid():
    with Pyramid(64, 64, levels=2) as pyr:
        pyr.process(square_image(64, 64, top_left=(30, 30), size=4))
        pyr.sync()
        edges = pyr.level(0).download("edges")
        ys, xs = np.nonzero(edges)
        assert pyr.level(0).edge_count() == len(xs) > 0
        assert xs.min() >= 28 and xs.max() <= 35
        assert ys.min() >= 28 and ys.max() <= 35


def test_debug_planes_are_written(tmp_path):
    with Pyramid(64, 64, levels=3) as pyr:
        pyr.process(square_image(64, 64, top_left=(20, 20), size=16))
        pyr.debug_download()
        written = pyr.write_debug_planes(tmp_path, prefix="dbg", names=("plane", "edges"))
    assert len(written) == 6
    assert all(p.exists() and p.stat().st_size > 0 for p in written)


def test_write_host_debug_plane_needs_download(tmp_path):
    with Frame(16, 16) as frame:
        with pytest.raises(RuntimeError):
            frame.write_host_debug_plane(tmp_path / "x.png")


def test_gauss_table_is_written_once():
    kernels.init_gauss_table(1.0, 3)
    assert kernels.gauss_table_initialized()
    # Same table again is fine.
    kernels.init_gauss_table(1.0, 3)
    table, radius = kernels.gauss_table()
    assert radius == 3
    assert abs(float(table.sum()) - 1.0) < 1e-6
    with pytest.raises(RuntimeError):
        kernels.init_gauss_table(2.0, 6)
    with pytest.raises(RuntimeError):
        Pyramid(64, 64, levels=2, params=Parameters(gauss_sigma=2.0))
