"""CUDA versions of the per-pixel kernels.

Imported lazily by the accelerator session so that machines without a CUDA
toolchain never touch ``numba.cuda``.
"""
import math

import numpy as np
from numba import cuda, float32, uint8
from numba.core.errors import NumbaError
from numba.cuda.cudadrv.driver import CudaAPIError
from numba.cuda.cudadrv.error import CudaDriverError, CudaSupportError

from palq.kernels import ASSIGN_LABELS, MAP_PALETTE, KERNEL_SIGNATURES, nearest_entry

THREADS_PER_BLOCK = 256

_nearest_entry_device = cuda.jit(device=True)(nearest_entry)


def assign_labels(pixels, centroids, labels):
    pos = cuda.grid(1)
    if pos < pixels.shape[0]:
        labels[pos] = _nearest_entry_device(
            float32(pixels[pos, 0]), float32(pixels[pos, 1]), float32(pixels[pos, 2]), centroids
        )


def map_palette(pixels, palette, out):
    pos = cuda.grid(1)
    if pos < pixels.shape[0]:
        j = _nearest_entry_device(
            float32(pixels[pos, 0]), float32(pixels[pos, 1]), float32(pixels[pos, 2]), palette
        )
        out[pos, 0] = uint8(palette[j, 0])
        out[pos, 1] = uint8(palette[j, 1])
        out[pos, 2] = uint8(palette[j, 2])
        out[pos, 3] = pixels[pos, 3]


DEVICE_KERNELS = {
    ASSIGN_LABELS: assign_labels,
    MAP_PALETTE: map_palette,
}


def device_count() -> int:
    if not cuda.is_available():
        return 0
    try:
        return len(cuda.gpus)
    except CudaSupportError:
        return 0


class CudaBackend:
    kind = "cuda"
    dispatch_errors = (CudaAPIError, CudaDriverError, CudaSupportError, NumbaError, TypeError)

    def __init__(self, device_index: int = 0):
        device = cuda.select_device(device_index)
        name = device.name
        if isinstance(name, bytes):
            name = name.decode()
        self.device_index = device_index
        self.name = f"CUDA device {device_index}: {name}"

    def build(self, kernel_name: str):
        return cuda.jit(KERNEL_SIGNATURES[kernel_name], cache=True)(DEVICE_KERNELS[kernel_name])

    def to_device(self, host: np.ndarray):
        return cuda.to_device(np.ascontiguousarray(host))

    def allocate(self, host: np.ndarray):
        return cuda.device_array(host.shape, dtype=host.dtype)

    def upload(self, device_array, host: np.ndarray) -> None:
        device_array.copy_to_device(np.ascontiguousarray(host))

    def download(self, device_array, host: np.ndarray) -> None:
        device_array.copy_to_host(host)

    def launch(self, kernel, n: int, args) -> None:
        blocks_per_grid = max(1, math.ceil(n / THREADS_PER_BLOCK))
        kernel[blocks_per_grid, THREADS_PER_BLOCK](*args)

    def synchronize(self) -> None:
        cuda.synchronize()
