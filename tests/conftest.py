from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest

from tests.helpers import HAS_GPU


@pytest.fixture
def mempool():
    """CuPy default memory pool, with cached blocks returned to the device afterwards."""
    if not HAS_GPU:
        pytest.skip("CUDA device not available")
    import cupy as cp

    pool = cp.get_default_memory_pool()
    yield pool
    pool.free_all_blocks()
