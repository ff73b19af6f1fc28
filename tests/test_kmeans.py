# tests/test_kmeans.py
import numpy as np
import pytest

from palq.errors import InvalidParameterError
from palq.kmeans import KMeansEngine, centroids_to_palette, flatten_pixels
from conftest import make_rgba


def two_tone_image():
    return make_rgba([(0, 0, 0), (0, 0, 0), (255, 255, 255), (255, 255, 255)], 2, 2)


def random_image(width=16, height=12, seed=7):
    rng = np.random.default_rng(seed)
    rgba = rng.integers(0, 256, size=(height, width, 4), dtype=np.uint8)
    return rgba


def test_two_tone_image_converges_to_black_and_white(session):
    engine = KMeansEngine(session, rng=np.random.default_rng(0))
    engine.initialize(two_tone_image(), 2)
    centroids = engine.run()

    assert engine.converged
    found = sorted(tuple(int(c) for c in row) for row in centroids_to_palette(centroids))
    assert found == [(0, 0, 0), (255, 255, 255)]
    assert sorted(engine.counts.tolist()) == [2, 2]


@pytest.mark.parametrize("seed", range(6))
def test_two_tone_image_converges_for_any_seed(session, seed):
    # even when both seeds land on the same color the empty cluster recovers
    engine = KMeansEngine(session, rng=np.random.default_rng(seed))
    engine.initialize(two_tone_image(), 2)
    engine.run()
    assert engine.converged
    assert sorted(engine.counts.tolist()) == [2, 2]


@pytest.mark.parametrize("k", [1, 2, 5, 17, 64])
def test_run_yields_k_centroids_within_cap(session, k):
    engine = KMeansEngine(session, rng=np.random.default_rng(k), max_iterations=100)
    engine.initialize(random_image(), k)
    centroids = engine.run()

    assert centroids.shape == (k, 3)
    assert centroids.dtype == np.float32
    assert 1 <= engine.iterations <= 100


def test_counts_sum_to_pixel_count_after_every_iteration(session):
    image = random_image()
    n = image.shape[0] * image.shape[1]
    engine = KMeansEngine(session, rng=np.random.default_rng(3))
    engine.initialize(image, 6)
    for _ in range(5):
        engine.iterate()
        assert int(engine.counts.sum()) == n
        assert engine.labels.min() >= 0
        assert engine.labels.max() < 6


def test_first_iteration_always_reports_change(session):
    engine = KMeansEngine(session, rng=np.random.default_rng(1))
    engine.initialize(make_rgba([(9, 9, 9)] * 4, 2, 2), 1)
    assert engine.iterate() is True
    assert engine.iterate() is False


def test_fixed_point_is_stable(session):
    engine = KMeansEngine(session, rng=np.random.default_rng(11))
    engine.initialize(random_image(), 4)
    engine.run()
    assert engine.converged
    before = engine.centroids.copy()
    assert engine.iterate() is False
    np.testing.assert_array_equal(engine.centroids, before)


def test_k_equal_to_n_converges_immediately(session):
    colors = [(10 * i, 255 - 10 * i, (37 * i) % 256) for i in range(6)]
    image = make_rgba(colors, 3, 2)
    engine = KMeansEngine(session, rng=np.random.default_rng(5))
    engine.initialize(image, 6)

    assert engine.iterate() is True
    assert engine.counts.tolist() == [1] * 6
    pixels = flatten_pixels(image)
    for idx, label in enumerate(engine.labels):
        np.testing.assert_array_equal(engine.centroids[label], pixels[idx, :3].astype(np.float32))
    assert engine.iterate() is False


def test_empty_cluster_keeps_previous_centroid(session):
    # three identical seeds on a single-color image: clusters 1 and 2 stay empty
    image = make_rgba([(50, 60, 70)] * 4, 2, 2)
    engine = KMeansEngine(session, rng=np.random.default_rng(0))
    engine.initialize(image, 3)
    engine.run()

    assert engine.counts.tolist() == [4, 0, 0]
    np.testing.assert_array_equal(engine.centroids, np.tile(np.float32([50, 60, 70]), (3, 1)))


def test_run_stops_at_iteration_cap(session):
    engine = KMeansEngine(session, rng=np.random.default_rng(2))
    engine.initialize(random_image(32, 32), 8)
    engine.run(max_iterations=1)
    assert engine.iterations == 1
    assert engine.converged is False


def test_initialize_is_deterministic_for_a_seed(session):
    image = random_image()
    first = KMeansEngine(session, rng=np.random.default_rng(42))
    second = KMeansEngine(session, rng=np.random.default_rng(42))
    np.testing.assert_array_equal(first.initialize(image, 5), second.initialize(image, 5))
    np.testing.assert_array_equal(first.run(), second.run())


def test_input_image_is_not_modified(session):
    image = random_image()
    original = image.copy()
    engine = KMeansEngine(session, rng=np.random.default_rng(0))
    engine.initialize(image, 3)
    engine.run()
    np.testing.assert_array_equal(image, original)


@pytest.mark.parametrize("k", [0, -1, 5])
def test_initialize_rejects_k_outside_pixel_range(session, k):
    engine = KMeansEngine(session, rng=np.random.default_rng(0))
    with pytest.raises(InvalidParameterError):
        engine.initialize(two_tone_image(), k)


def test_iterate_before_initialize_raises(session):
    engine = KMeansEngine(session)
    with pytest.raises(RuntimeError):
        engine.iterate()


def test_centroids_to_palette_rounds_and_clips():
    centroids = np.array([[0.4, 127.5, 254.6], [-3.0, 300.0, 12.49]], dtype=np.float32)
    palette = centroids_to_palette(centroids)
    assert palette.dtype == np.uint8
    assert palette.tolist() == [[0, 128, 255], [0, 255, 12]]


def test_standalone_engine_releases_everything_it_uploaded(session):
    image = random_image()
    cached_before = len(session._image_buffers)
    buffers_before = len(session._buffers)

    for seed in range(3):
        with KMeansEngine(session, rng=np.random.default_rng(seed)) as engine:
            engine.initialize(image, 3)
            engine.run()

    assert len(session._image_buffers) == cached_before
    assert len(session._buffers) == buffers_before


def test_engine_leaves_a_caller_owned_image_upload_alone(session):
    pixels = flatten_pixels(random_image())
    image_buf = session.image_buffer(pixels)

    with KMeansEngine(session, rng=np.random.default_rng(0)) as engine:
        engine.initialize(pixels, 2)
        engine.run()

    assert session.image_buffer(pixels) is image_buf
    session.release_image(pixels)


def test_palette_is_rounded_centroids(session):
    engine = KMeansEngine(session, rng=np.random.default_rng(0))
    engine.initialize(two_tone_image(), 2)
    engine.run()
    palette = engine.palette()
    assert palette.dtype == np.uint8
    np.testing.assert_array_equal(palette, centroids_to_palette(engine.centroids))
    engine.release()
