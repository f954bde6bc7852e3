import threading
import time

import numpy as np
import pytest
from mpmath import mpc, mpf

from deepzoom.errors import InvalidInput, OrbitCancelled
from deepzoom.orbit import (
    HighPrecisionOrbitGenerator,
    OrbitWorker,
    escape_time,
    find_best_reference,
    parse_center,
)
from deepzoom.policy import IterationBudget

SEAHORSE = ("-0.743643887037158704752191506114774", "0.131825904205311970493132056385139")


@pytest.fixture
def generator():
    return HighPrecisionOrbitGenerator()


def test_orbit_starts_at_zero(generator):
    orbit = generator.generate(("-0.75", "0"), 50)
    assert orbit[0] == 0j
    assert orbit.length == 50
    assert not orbit.escaped


def test_origin_orbit_stays_at_zero(generator):
    orbit = generator.generate(0j, 100)
    assert orbit.length == 100
    assert not np.any(orbit.samples)


def test_escaping_orbit_is_cut_after_escape(generator):
    # 0 -> 2 -> 6: |2|^2 == 4 is not an escape, |6|^2 is.
    orbit = generator.generate((2, 0), 100)
    assert orbit.escaped
    assert orbit.length == 3
    assert orbit.re.tolist() == [0.0, 2.0, 6.0]

    orbit = generator.generate((1, 0), 100)
    assert orbit.re.tolist() == [0.0, 1.0, 2.0, 5.0]


@pytest.mark.parametrize("center", [(0.3, 0.0), (-2.1, 0.0), (0.0, 1.1), ("-0.1", "0.651"), (-1.0, 0.0), (0.25, 0.5)])
@pytest.mark.parametrize("length", [1, 7, 300])
def test_length_bounded_and_short_orbits_escape(generator, center, length):
    orbit = generator.generate(center, length)
    assert 1 <= orbit.length <= length
    if orbit.length < length:
        zr, zi = orbit.samples[-1].astype(np.float64)
        assert zr * zr + zi * zi > 4.0


def test_generation_is_deterministic(generator):
    a = generator.generate(SEAHORSE, 2000, precision_bits=160)
    b = generator.generate(SEAHORSE, 2000, precision_bits=160)
    assert a.samples.tobytes() == b.samples.tobytes()
    assert a.center == b.center


def test_precision_changes_deep_samples(generator):
    low = generator.generate(SEAHORSE, 2000, precision_bits=53)
    high = generator.generate(SEAHORSE, 2000, precision_bits=256)
    assert high.precision_bits == 256
    n = min(low.length, high.length)
    assert not np.array_equal(low.samples[:n], high.samples[:n])


def test_precision_floor(generator):
    assert generator.generate(0j, 3, precision_bits=8).precision_bits == 53


def test_samples_are_read_only_and_typed():
    orbit = HighPrecisionOrbitGenerator(dtype="float32").generate(("-0.75", "0.1"), 20)
    assert orbit.samples.dtype == np.float32
    assert orbit.samples.shape == (orbit.length, 2)
    with pytest.raises(ValueError):
        orbit.samples[0, 0] = 1.0


@pytest.mark.parametrize("length", [0, -3, 1.5, True, "10"])
def test_invalid_length(generator, length):
    with pytest.raises(InvalidInput):
        generator.generate(0j, length)


@pytest.mark.parametrize("center", [(float("nan"), 0.0), ("abc", "0"), (1.0,), None, complex(float("inf"), 0)])
def test_invalid_center(generator, center):
    with pytest.raises(InvalidInput):
        generator.generate(center, 10)


def test_center_keeps_decimal_digits(generator):
    orbit = generator.generate(SEAHORSE, 5, precision_bits=200)
    assert orbit.center.real != mpf(float(SEAHORSE[0]))
    assert isinstance(orbit.center, mpc)


def test_cancel_raises(generator):
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(OrbitCancelled):
        generator.generate((-1.0, 0.0), 5000, cancel=cancel)


def test_time_budget_returns_partial_orbit():
    gen = HighPrecisionOrbitGenerator(time_budget=1e-9)
    orbit = gen.generate((-1.0, 0.0), 5000)
    assert orbit.truncated
    assert not orbit.escaped
    assert orbit.length == 256
    assert orbit.requested_length == 5000


def test_serves(generator):
    center = parse_center(("-0.75", "0"))
    orbit = generator.generate(center, 200, precision_bits=96)
    assert orbit.serves(center, 100, 96)
    assert orbit.serves(center, 200, 64)
    assert not orbit.serves(center, 201, 96)
    assert not orbit.serves(center, 100, 128)
    assert not orbit.serves(parse_center(("-0.7", "0")), 100, 96)

    escaped = generator.generate((2, 0), 50)
    assert escaped.serves(escaped.center, 10_000, 64)


def test_escape_time():
    assert escape_time(0j, 100) == 100
    assert escape_time((2, 0), 100) == 1
    assert escape_time((1, 0), 100) == 2
    assert escape_time(("-0.75", "0.1"), 1000) < 50


def test_find_best_reference_prefers_survivor():
    center = (0.3, 0.0)
    assert escape_time(center, 500) < 500
    best, score = find_best_reference(center, 1.0, 500)
    assert score == 500
    assert escape_time(best, 500) == 500
    assert abs(complex(best) - 0.3) <= 0.3


def test_find_best_reference_keeps_surviving_center():
    best, score = find_best_reference(("-0.75", "0"), 10.0, 300)
    assert score == 300
    assert best == parse_center(("-0.75", "0"))


def _wait(worker, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        ready = worker.poll()
        if ready is not None:
            return ready
        time.sleep(0.01)
    raise AssertionError("orbit worker produced nothing")


def test_worker_delivers_latest():
    worker = OrbitWorker(HighPrecisionOrbitGenerator())
    try:
        worker.submit((-1.0, 0.0), IterationBudget(orbit_length=500_000, precision_bits=2048), tag="slow")
        generation = worker.submit(0j, IterationBudget(orbit_length=64), tag="fast")
        got_generation, tag, orbit = _wait(worker)
        assert (got_generation, tag) == (generation, "fast")
        assert orbit.length == 64
    finally:
        worker.close()


def test_worker_cancel_discards_result():
    worker = OrbitWorker(HighPrecisionOrbitGenerator())
    try:
        worker.submit(0j, IterationBudget(orbit_length=10), tag="stale")
        worker.cancel()
        time.sleep(0.2)
        assert worker.poll() is None
    finally:
        worker.close()
