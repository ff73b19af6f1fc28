"""Per-pixel kernels for the host (CPU) compute device.

Both kernels treat every pixel as an independent invocation: each one reads
its own RGBA pixel plus the shared color table and writes only its own output
slot, so numba is free to run the ``prange`` loop in any order.
"""
import numpy as np
from numba import njit, prange, float32, uint8
from numba.core.errors import NumbaError

ASSIGN_LABELS = "assign_labels"
MAP_PALETTE = "map_palette"

# pixels are (N, 4) RGBA, tables are (K, 3) float RGB
KERNEL_SIGNATURES = {
    ASSIGN_LABELS: "void(uint8[:, ::1], float32[:, ::1], int32[::1])",
    MAP_PALETTE: "void(uint8[:, ::1], float32[:, ::1], uint8[:, ::1])",
}


def nearest_entry(r, g, b, table):
    """Index of the table row closest to (r, g, b) in squared RGB distance.

    Rows are scanned in order with a strict ``<`` so ties resolve to the
    lowest index. ``table`` must hold at least one row.
    """
    dr = r - table[0, 0]
    dg = g - table[0, 1]
    db = b - table[0, 2]
    best = 0
    best_d = dr * dr + dg * dg + db * db
    for j in range(1, table.shape[0]):
        dr = r - table[j, 0]
        dg = g - table[j, 1]
        db = b - table[j, 2]
        d = dr * dr + dg * dg + db * db
        if d < best_d:
            best_d = d
            best = j
    return best


_nearest_entry_host = njit(cache=True)(nearest_entry)


def assign_labels(pixels, centroids, labels):
    for i in prange(pixels.shape[0]):
        labels[i] = _nearest_entry_host(
            float32(pixels[i, 0]), float32(pixels[i, 1]), float32(pixels[i, 2]), centroids
        )


def map_palette(pixels, palette, out):
    for i in prange(pixels.shape[0]):
        j = _nearest_entry_host(
            float32(pixels[i, 0]), float32(pixels[i, 1]), float32(pixels[i, 2]), palette
        )
        out[i, 0] = uint8(palette[j, 0])
        out[i, 1] = uint8(palette[j, 1])
        out[i, 2] = uint8(palette[j, 2])
        out[i, 3] = pixels[i, 3]


HOST_KERNELS = {
    ASSIGN_LABELS: assign_labels,
    MAP_PALETTE: map_palette,
}


class HostBackend:
    """The CPU as a data-parallel device.

    Device memory is a private numpy copy, so the host array stays the only
    authoritative version exactly as it does with a discrete GPU.
    """

    kind = "cpu"
    # a signature mismatch surfaces as TypeError ("No matching definition")
    dispatch_errors = (NumbaError, TypeError)

    def __init__(self):
        self.name = "host CPU (numba parallel)"

    def build(self, kernel_name: str):
        return njit(KERNEL_SIGNATURES[kernel_name], parallel=True, cache=True)(HOST_KERNELS[kernel_name])

    def to_device(self, host: np.ndarray) -> np.ndarray:
        return np.array(host, copy=True, order="C")

    def allocate(self, host: np.ndarray) -> np.ndarray:
        return np.empty_like(host, order="C")

    def upload(self, device_array: np.ndarray, host: np.ndarray) -> None:
        np.copyto(device_array, host)

    def download(self, device_array: np.ndarray, host: np.ndarray) -> None:
        np.copyto(host, device_array)

    def launch(self, kernel, n: int, args) -> None:
        # n is implied by the pixel buffer's first axis
        kernel(*args)

    def synchronize(self) -> None:
        # the parallel region has joined by the time launch() returns
        pass
