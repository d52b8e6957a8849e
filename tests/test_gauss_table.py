from __future__ import annotations

import numpy as np
import pytest

from common.gauss import GAUSS_MAX_RADIUS, GAUSS_TABLE_SIZE, active_taps, gauss_radius_for_sigma, make_gauss_table


def test_table_is_normalized_and_symmetric():
    table = make_gauss_table(1.0)
    radius = gauss_radius_for_sigma(1.0)
    taps = active_taps(table, radius)

    assert table.shape == (GAUSS_TABLE_SIZE,)
    assert table.dtype == np.float32
    assert taps.size == 2 * radius + 1
    assert abs(float(taps.sum()) - 1.0) < 1e-6
    np.testing.assert_allclose(taps, taps[::-1], rtol=0, atol=1e-7)
    assert int(np.argmax(taps)) == radius
    assert np.all(table[taps.size :] == 0)


def test_radius_is_capped():
    assert gauss_radius_for_sigma(10.0) == GAUSS_MAX_RADIUS
    assert gauss_radius_for_sigma(0.1) == 1


@pytest.mark.parametrize("sigma,radius", [(0.0, None), (-1.0, None), (1.0, 0), (1.0, GAUSS_MAX_RADIUS + 1)])
def test_invalid_table_requests(sigma, radius):
    with pytest.raises(ValueError):
        make_gauss_table(sigma, radius)
