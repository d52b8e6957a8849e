"""
CUDA kernels for per-level pyramid processing, compiled once into a RawModule.

The Gaussian table lives in the module's constant memory. It is written once per
process by init_gauss_table() and is read-only afterwards, so concurrent launches on
different Frame streams share it without locking.
"""

from __future__ import annotations

import ctypes
import logging
import threading

import numpy as np

try:
    import cupy as cp
    from cupy import RawModule
except Exception as exc:  # pragma: no cover
    cp = None
    RawModule = None
    _gpu_import_error = exc
else:
    _gpu_import_error = None

from common.gauss import GAUSS_TABLE_SIZE, gauss_radius_for_sigma, make_gauss_table

logger = logging.getLogger(__name__)


_FRAME_KERNELS = r"""
#define GAUSS_TABLE_SIZE %(table_size)d

__constant__ float d_gauss_filter[GAUSS_TABLE_SIZE];

template<typename T>
__device__ __forceinline__ T* row_ptr(T* base, size_t pitch, int y) {
    return (T*)((char*)base + (size_t)y * pitch);
}

__device__ __forceinline__ int clampi(int v, int lo, int hi) {
    return v < lo ? lo : (v > hi ? hi : v);
}

extern "C" __global__
void fill_from_texture(
    cudaTextureObject_t tex,
    unsigned char* dst, size_t dst_pitch,
    int width, int height
) {
    int x = blockIdx.x * blockDim.x + threadIdx.x;
    int y = blockIdx.y * blockDim.y + threadIdx.y;
    if (x >= width || y >= height) return;

    // Texel centres of this level, normalized to the source extent.
    float u = (x + 0.5f) / width;
    float v = (y + 0.5f) / height;
    float f = tex2D<float>(tex, u, v);
    f = fminf(fmaxf(f, 0.0f), 1.0f);
    row_ptr(dst, dst_pitch, y)[x] = (unsigned char)__float2int_rn(f * 255.0f);
}

extern "C" __global__
void gauss_horiz(
    const unsigned char* src, size_t src_pitch,
    float* dst, size_t dst_pitch,
    int width, int height, int radius
) {
    int x = blockIdx.x * blockDim.x + threadIdx.x;
    int y = blockIdx.y * blockDim.y + threadIdx.y;
    if (x >= width || y >= height) return;

    const unsigned char* row = row_ptr(src, src_pitch, y);
    float sum = 0.0f;
    for (int k = -radius; k <= radius; k++) {
        sum += d_gauss_filter[k + radius] * (float)row[clampi(x + k, 0, width - 1)];
    }
    row_ptr(dst, dst_pitch, y)[x] = sum;
}

extern "C" __global__
void gauss_vert(
    const float* src, size_t src_pitch,
    float* dst, size_t dst_pitch,
    int width, int height, int radius
) {
    int x = blockIdx.x * blockDim.x + threadIdx.x;
    int y = blockIdx.y * blockDim.y + threadIdx.y;
    if (x >= width || y >= height) return;

    float sum = 0.0f;
    for (int k = -radius; k <= radius; k++) {
        sum += d_gauss_filter[k + radius] * row_ptr(src, src_pitch, clampi(y + k, 0, height - 1))[x];
    }
    row_ptr(dst, dst_pitch, y)[x] = sum;
}

extern "C" __global__
void sobel_gradients(
    const float* src, size_t src_pitch,
    short* dx, size_t dx_pitch,
    short* dy, size_t dy_pitch,
    unsigned int* mag, size_t mag_pitch,
    int width, int height
) {
    int x = blockIdx.x * blockDim.x + threadIdx.x;
    int y = blockIdx.y * blockDim.y + threadIdx.y;
    if (x >= width || y >= height) return;

    int xm = clampi(x - 1, 0, width - 1);
    int xp = clampi(x + 1, 0, width - 1);
    const float* rm = row_ptr(src, src_pitch, clampi(y - 1, 0, height - 1));
    const float* r0 = row_ptr(src, src_pitch, y);
    const float* rp = row_ptr(src, src_pitch, clampi(y + 1, 0, height - 1));

    float gx = (rm[xp] + 2.0f * r0[xp] + rp[xp]) - (rm[xm] + 2.0f * r0[xm] + rp[xm]);
    float gy = (rp[xm] + 2.0f * rp[x] + rp[xp]) - (rm[xm] + 2.0f * rm[x] + rm[xp]);

    int sx = (int)fminf(fmaxf(rintf(gx), -32768.0f), 32767.0f);
    int sy = (int)fminf(fmaxf(rintf(gy), -32768.0f), 32767.0f);

    row_ptr(dx, dx_pitch, y)[x] = (short)sx;
    row_ptr(dy, dy_pitch, y)[x] = (short)sy;
    row_ptr(mag, mag_pitch, y)[x] = (unsigned int)(abs(sx) + abs(sy));
}

extern "C" __global__
void nms_classify(
    const short* dx, size_t dx_pitch,
    const short* dy, size_t dy_pitch,
    const unsigned int* mag, size_t mag_pitch,
    unsigned char* map, size_t map_pitch,
    int width, int height,
    unsigned int low_thresh, unsigned int high_thresh
) {
    int x = blockIdx.x * blockDim.x + threadIdx.x;
    int y = blockIdx.y * blockDim.y + threadIdx.y;
    if (x >= width || y >= height) return;

    unsigned char cls = 0;
    if (x > 0 && y > 0 && x < width - 1 && y < height - 1) {
        unsigned int m = row_ptr(mag, mag_pitch, y)[x];
        if (m >= low_thresh) {
            int gx = row_ptr(dx, dx_pitch, y)[x];
            int gy = row_ptr(dy, dy_pitch, y)[x];
            int ax = abs(gx);
            int ay = abs(gy);
            int ox, oy;
            // 106 / 256 ~ tan(22.5 deg)
            if (ay * 256 <= ax * 106) {
                ox = 1; oy = 0;
            } else if (ax * 256 <= ay * 106) {
                ox = 0; oy = 1;
            } else if ((gx > 0) == (gy > 0)) {
                ox = 1; oy = 1;
            } else {
                ox = 1; oy = -1;
            }
            unsigned int fwd = row_ptr(mag, mag_pitch, y + oy)[x + ox];
            unsigned int bwd = row_ptr(mag, mag_pitch, y - oy)[x - ox];
            // Strict on one side so a two-pixel plateau yields a one-pixel edge.
            if (m > fwd && m >= bwd) {
                cls = m >= high_thresh ? 2 : 1;
            }
        }
    }
    row_ptr(map, map_pitch, y)[x] = cls;
}

extern "C" __global__
void hysteresis_seed(
    const unsigned char* map, size_t map_pitch,
    unsigned char* edges, size_t edges_pitch,
    int width, int height
) {
    int x = blockIdx.x * blockDim.x + threadIdx.x;
    int y = blockIdx.y * blockDim.y + threadIdx.y;
    if (x >= width || y >= height) return;
    row_ptr(edges, edges_pitch, y)[x] = row_ptr(map, map_pitch, y)[x] == 2 ? 255 : 0;
}

extern "C" __global__
void hysteresis_grow(
    const unsigned char* map, size_t map_pitch,
    unsigned char* edges, size_t edges_pitch,
    int width, int height
) {
    int x = blockIdx.x * blockDim.x + threadIdx.x;
    int y = blockIdx.y * blockDim.y + threadIdx.y;
    if (x >= width || y >= height) return;
    if (row_ptr(map, map_pitch, y)[x] != 1) return;
    unsigned char* out = row_ptr(edges, edges_pitch, y);
    if (out[x] != 0) return;

    // Monotonic 0 -> 255 writes, racing neighbours only speed up propagation.
    for (int oy = -1; oy <= 1; oy++) {
        int ny = y + oy;
        if (ny < 0 || ny >= height) continue;
        const unsigned char* nrow = row_ptr(edges, edges_pitch, ny);
        for (int ox = -1; ox <= 1; ox++) {
            int nx = x + ox;
            if (nx < 0 || nx >= width || (ox == 0 && oy == 0)) continue;
            if (nrow[nx] != 0) {
                out[x] = 255;
                return;
            }
        }
    }
}

extern "C" __global__
void compact_edges(
    const unsigned char* edges, size_t edges_pitch,
    int width, int height,
    int* points, unsigned int* counter
) {
    int x = blockIdx.x * blockDim.x + threadIdx.x;
    int y = blockIdx.y * blockDim.y + threadIdx.y;
    if (x >= width || y >= height) return;
    if (row_ptr(edges, edges_pitch, y)[x] == 0) return;

    unsigned int i = atomicAdd(counter, 1u);
    points[2 * i] = x;
    points[2 * i + 1] = y;
}

extern "C" __global__
void expand_edge_points(
    const int* points, const unsigned int* counter,
    const short* dx, size_t dx_pitch,
    const short* dy, size_t dy_pitch,
    int* points4, unsigned int capacity
) {
    unsigned int i = blockIdx.x * blockDim.x + threadIdx.x;
    if (i >= capacity || i >= *counter) return;

    int x = points[2 * i];
    int y = points[2 * i + 1];
    points4[4 * i] = x;
    points4[4 * i + 1] = y;
    points4[4 * i + 2] = row_ptr(dx, dx_pitch, y)[x];
    points4[4 * i + 3] = row_ptr(dy, dy_pitch, y)[x];
}
""" % {"table_size": GAUSS_TABLE_SIZE}

_BLOCK_2D = (32, 8)
_BLOCK_1D = 256

_module = None
_module_lock = threading.Lock()

# (host table, radius) once written to constant memory.
_gauss_state = None


def _get_module():
    """Compile the frame kernels once per process."""
    global _module
    if cp is None:
        raise RuntimeError(f"CuPy not available for frame kernels: {_gpu_import_error}")
    with _module_lock:
        if _module is None:
            _module = RawModule(code=_FRAME_KERNELS)
            logger.debug("Compiled frame kernel module")
        return _module


def _grid_2d(width: int, height: int) -> tuple[int, int]:
    return (
        (width + _BLOCK_2D[0] - 1) // _BLOCK_2D[0],
        (height + _BLOCK_2D[1] - 1) // _BLOCK_2D[1],
    )


def init_gauss_table(sigma: float = 1.0, radius: int | None = None) -> None:
    """
    Copy the Gaussian table to device constant memory, once per process.

    Repeating the call with the same table is a no-op. A different table after
    initialization raises, since running Frames may already be reading it.
    """
    global _gauss_state
    if radius is None:
        radius = gauss_radius_for_sigma(sigma)
    table = make_gauss_table(sigma, radius)
    module = _get_module()
    with _module_lock:
        if _gauss_state is not None:
            current, current_radius = _gauss_state
            if current_radius == radius and np.array_equal(current, table):
                return
            raise RuntimeError(
                "Gauss table already initialized with a different table "
                f"(radius {current_radius}, requested {radius})"
            )
        ptr = module.get_global("d_gauss_filter")
        ptr.copy_from_host(table.ctypes.data_as(ctypes.c_void_p), table.nbytes)
        _gauss_state = (table, radius)
    logger.info("Initialized Gauss table: sigma=%.3f radius=%d", sigma, radius)


def gauss_table_initialized() -> bool:
    return _gauss_state is not None


def gauss_table() -> tuple[np.ndarray, int]:
    """Host copy of the device table and its radius."""
    if _gauss_state is None:
        raise RuntimeError("Gauss table not initialized; call init_gauss_table() first")
    table, radius = _gauss_state
    return table.copy(), radius


def launch_fill_from_texture(stream, texture, dst) -> None:
    kernel = _get_module().get_function("fill_from_texture")
    with stream:
        kernel(
            _grid_2d(dst.width, dst.height),
            _BLOCK_2D,
            (texture.tex, dst.base, np.uint64(dst.pitch), np.int32(dst.width), np.int32(dst.height)),
        )


def launch_gauss(stream, plane, intermediate, smooth) -> None:
    if _gauss_state is None:
        raise RuntimeError("Gauss table not initialized; call init_gauss_table() first")
    radius = _gauss_state[1]
    module = _get_module()
    grid = _grid_2d(plane.width, plane.height)
    w, h, r = np.int32(plane.width), np.int32(plane.height), np.int32(radius)
    with stream:
        module.get_function("gauss_horiz")(
            grid, _BLOCK_2D,
            (plane.base, np.uint64(plane.pitch), intermediate.base, np.uint64(intermediate.pitch), w, h, r),
        )
        module.get_function("gauss_vert")(
            grid, _BLOCK_2D,
            (intermediate.base, np.uint64(intermediate.pitch), smooth.base, np.uint64(smooth.pitch), w, h, r),
        )


def launch_gradients(stream, smooth, dx, dy, mag) -> None:
    kernel = _get_module().get_function("sobel_gradients")
    with stream:
        kernel(
            _grid_2d(smooth.width, smooth.height),
            _BLOCK_2D,
            (
                smooth.base, np.uint64(smooth.pitch),
                dx.base, np.uint64(dx.pitch),
                dy.base, np.uint64(dy.pitch),
                mag.base, np.uint64(mag.pitch),
                np.int32(smooth.width), np.int32(smooth.height),
            ),
        )


def launch_edges(stream, dx, dy, mag, map_plane, edges, low_thresh: int, high_thresh: int, passes: int) -> None:
    """Non-maximum suppression with double threshold, then `passes` hysteresis sweeps."""
    module = _get_module()
    grid = _grid_2d(mag.width, mag.height)
    w, h = np.int32(mag.width), np.int32(mag.height)
    with stream:
        module.get_function("nms_classify")(
            grid, _BLOCK_2D,
            (
                dx.base, np.uint64(dx.pitch),
                dy.base, np.uint64(dy.pitch),
                mag.base, np.uint64(mag.pitch),
                map_plane.base, np.uint64(map_plane.pitch),
                w, h,
                np.uint32(low_thresh), np.uint32(high_thresh),
            ),
        )
        map_args = (map_plane.base, np.uint64(map_plane.pitch), edges.base, np.uint64(edges.pitch), w, h)
        module.get_function("hysteresis_seed")(grid, _BLOCK_2D, map_args)
        grow = module.get_function("hysteresis_grow")
        for _ in range(passes):
            grow(grid, _BLOCK_2D, map_args)


def launch_compaction(stream, edges, dx, dy, points, points4, counter) -> None:
    """Compact non-zero edge pixels into `points` and count them in `counter` (device)."""
    module = _get_module()
    capacity = points.shape[0]
    with stream:
        counter.fill(0)
        module.get_function("compact_edges")(
            _grid_2d(edges.width, edges.height),
            _BLOCK_2D,
            (edges.base, np.uint64(edges.pitch), np.int32(edges.width), np.int32(edges.height), points, counter),
        )
        module.get_function("expand_edge_points")(
            ((capacity + _BLOCK_1D - 1) // _BLOCK_1D,),
            (_BLOCK_1D,),
            (
                points, counter,
                dx.base, np.uint64(dx.pitch),
                dy.base, np.uint64(dy.pitch),
                points4, np.uint32(capacity),
            ),
        )
