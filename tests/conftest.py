import numpy as np
import pytest

from palq.accelerator import AcceleratorSession


@pytest.fixture(scope="session")
def session():
    # CPU device keeps the suite runnable on machines without a GPU
    with AcceleratorSession(device="cpu", verbose=False) as s:
        yield s


def make_rgba(colors, width, height, alpha=255):
    """Build an (H, W, 4) image from a row-major list of RGB tuples."""
    rgb = np.array(colors, dtype=np.uint8).reshape(height, width, 3)
    a = np.full((height, width, 1), alpha, dtype=np.uint8)
    return np.concatenate([rgb, a], axis=2)
