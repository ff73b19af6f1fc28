import numpy as np
from typing import Optional

from palq.accelerator import AcceleratorSession, READ_ONLY, WRITE_ONLY
from palq.errors import InvalidParameterError
from palq.kernels import ASSIGN_LABELS

MAX_ITERATIONS = 100


def flatten_pixels(image: np.ndarray) -> np.ndarray:
    """Return an (H, W, 4) or (N, 4) RGBA image as a C-contiguous (N, 4) uint8 array."""
    if image.ndim == 3 and image.shape[2] == 4:
        image = image.reshape(-1, 4)
    if image.ndim != 2 or image.shape[1] != 4:
        raise InvalidParameterError(f"Expected an RGBA image, got array of shape {image.shape}.")
    return np.ascontiguousarray(image, dtype=np.uint8)


def centroids_to_palette(centroids: np.ndarray) -> np.ndarray:
    """Round float centroids to 8-bit palette entries."""
    return np.clip(np.rint(centroids), 0, 255).astype(np.uint8)


class KMeansEngine:
    """Lloyd's k-means over the RGB channels of an image.

    The nearest-centroid assignment runs as one accelerator dispatch per
    iteration. Summing pixels per cluster and dividing out the new centroids
    happens here, on the calling thread, once the dispatch has completed.

    Clusters that end an iteration with no members keep their previous
    centroid. They are not reseeded.
    """

    def __init__(self, session: AcceleratorSession, rng: Optional[np.random.Generator] = None,
                 max_iterations: int = MAX_ITERATIONS):
        if max_iterations < 1:
            raise InvalidParameterError(f"max_iterations must be at least 1, got {max_iterations}.")
        self.session = session
        self.rng = rng if rng is not None else np.random.default_rng()
        self.max_iterations = max_iterations
        self.k = 0
        self.pixels: Optional[np.ndarray] = None
        self.centroids: Optional[np.ndarray] = None
        self.labels: Optional[np.ndarray] = None
        self.counts: Optional[np.ndarray] = None
        self.iterations = 0
        self.converged = False
        self._image_buf = None
        self._owns_image = False
        self._centroid_buf = None
        self._label_buf = None

    @property
    def num_pixels(self) -> int:
        return 0 if self.pixels is None else self.pixels.shape[0]

    def initialize(self, image: np.ndarray, k: int) -> np.ndarray:
        """Seed ``k`` centroids from distinct randomly chosen pixels."""
        pixels = flatten_pixels(image)
        n = pixels.shape[0]
        if k < 1 or k > n:
            raise InvalidParameterError(f"Number of colors must be between 1 and the pixel count ({n}), got {k}.")
        self.release()

        self.pixels = pixels
        self.k = k
        seed_indices = self.rng.choice(n, size=k, replace=False)
        self.centroids = pixels[seed_indices, :3].astype(np.float32)
        self.labels = np.full(n, -1, dtype=np.int32)
        self.counts = np.zeros(k, dtype=np.int64)
        self.iterations = 0
        self.converged = False

        # a caller that uploaded the image first keeps ownership of it
        self._owns_image = not self.session.has_image_buffer(pixels)
        self._image_buf = self.session.image_buffer(pixels)
        self._centroid_buf = self.session.buffer(self.centroids, READ_ONLY)
        self._label_buf = self.session.buffer(np.empty(n, dtype=np.int32), WRITE_ONLY).allocate()
        return self.centroids

    def _assign(self) -> np.ndarray:
        self._centroid_buf.publish()
        self.session.dispatch(ASSIGN_LABELS, self.num_pixels, self._image_buf, self._centroid_buf, self._label_buf)
        return self._label_buf.fetch()

    def _reduce(self, labels: np.ndarray):
        rgb = self.pixels[:, :3]
        counts = np.bincount(labels, minlength=self.k).astype(np.int64)
        sums = np.empty((self.k, 3), dtype=np.float64)
        for channel in range(3):
            sums[:, channel] = np.bincount(labels, weights=rgb[:, channel], minlength=self.k)
        return sums, counts

    def iterate(self) -> bool:
        """Run one Lloyd step. Returns True if any pixel changed cluster."""
        if self.centroids is None:
            raise RuntimeError("KMeansEngine.iterate() called before initialize().")
        new_labels = self._assign()
        changed = not np.array_equal(new_labels, self.labels)
        self.labels[:] = new_labels

        sums, counts = self._reduce(self.labels)
        occupied = counts > 0
        self.centroids[occupied] = (sums[occupied] / counts[occupied, None]).astype(np.float32)
        self.counts = counts
        self.iterations += 1
        return changed

    def run(self, max_iterations: Optional[int] = None) -> np.ndarray:
        """Iterate until no label changes or the iteration cap is hit."""
        cap = self.max_iterations if max_iterations is None else max_iterations
        if cap < 1:
            raise InvalidParameterError(f"max_iterations must be at least 1, got {cap}.")
        self.converged = False
        for _ in range(cap):
            if not self.iterate():
                self.converged = True
                break
        return self.centroids.copy()

    def palette(self) -> np.ndarray:
        return centroids_to_palette(self.centroids)

    def release(self) -> None:
        """Free the centroid and label buffers, and the image buffer if this engine uploaded it."""
        bufs = [b for b in (self._centroid_buf, self._label_buf) if b is not None]
        if self._owns_image and self._image_buf is not None:
            bufs.append(self._image_buf)
        if bufs:
            self.session.release(*bufs)
        self._image_buf = None
        self._owns_image = False
        self._centroid_buf = None
        self._label_buf = None

    def __enter__(self) -> "KMeansEngine":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
