"""High-precision reference orbits.

The reference orbit Z_n of the view center C is iterated at arbitrary
precision with mpmath and then reduced to machine floats, one (re, im) pair per
iteration. Pixels never see C itself, only these reduced samples plus their own
small offset from C, so the per-pixel work stays in hardware floats however
deep the zoom goes.

Arithmetic runs in a per-thread mpmath context rather than the global ``mp``,
so an orbit generating on a background thread never shares its working
precision with the thread handling the view. Values leave that context as
exact ``mp`` numbers.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional, Tuple

import numpy as np
from mpmath import mp, mpc, MPContext

from deepzoom.errors import InvalidInput, OrbitCancelled
from deepzoom.policy import IterationBudget
from deepzoom.util.logging_setup import get_logger

_CHECK_EVERY = 256
_MIN_PRECISION_BITS = 53

# Camera plus corner and cardinal probes, in units of 1/magnification.
_SEARCH_OFFSETS = (
    (0.0, 0.0),
    (0.1, 0.1), (0.1, -0.1), (-0.1, 0.1), (-0.1, -0.1),
    (0.2, 0.0), (-0.2, 0.0), (0.0, 0.2), (0.0, -0.2),
)

_local = threading.local()


def _context(precision_bits: int) -> MPContext:
    ctx = getattr(_local, "ctx", None)
    if ctx is None:
        ctx = _local.ctx = MPContext()
    ctx.prec = max(int(precision_bits), _MIN_PRECISION_BITS)
    return ctx


def parse_center(center, ctx=mp):
    """Coerce ``center`` to an mpc of ``ctx`` at its working precision.

    Accepts an mpc, a Python complex, or a ``(re, im)`` pair of strings,
    numbers or mpfs. Decimal strings keep every digit the precision allows.
    """
    try:
        if hasattr(center, "_mpc_"):
            re, im = center.real, center.imag
        elif isinstance(center, complex):
            re, im = center.real, center.imag
        elif isinstance(center, (tuple, list)) and len(center) == 2:
            re, im = center
        else:
            raise TypeError(type(center).__name__)
        c = ctx.mpc(ctx.mpf(re), ctx.mpf(im))
    except (TypeError, ValueError) as e:
        raise InvalidInput(f"malformed center: {center!r}") from e
    if not (ctx.isfinite(c.real) and ctx.isfinite(c.imag)):
        raise InvalidInput(f"center must be finite, got {center!r}")
    return c


def _check_length(length) -> int:
    if isinstance(length, bool) or not isinstance(length, (int, np.integer)):
        raise InvalidInput(f"orbit length must be an integer, got {length!r}")
    if length < 1:
        raise InvalidInput(f"orbit length must be >= 1, got {length}")
    return int(length)


@dataclass(frozen=True, eq=False)
class ReferenceOrbit:
    center: mpc
    # (length, 2) array of reduced (re, im) samples, read-only.
    samples: np.ndarray
    requested_length: int
    precision_bits: int
    escaped: bool
    truncated: bool = False

    @property
    def length(self) -> int:
        return int(self.samples.shape[0])

    @property
    def re(self) -> np.ndarray:
        return self.samples[:, 0]

    @property
    def im(self) -> np.ndarray:
        return self.samples[:, 1]

    def __len__(self) -> int:
        return self.length

    def __getitem__(self, i: int) -> complex:
        re, im = self.samples[i]
        return complex(float(re), float(im))

    def serves(self, center, length: int, precision_bits: int) -> bool:
        """True if this orbit can stand in for ``generate(center, length)``."""
        if self.truncated or self.precision_bits < precision_bits:
            return False
        if self.center != center:
            return False
        # An orbit that escaped early can never grow longer.
        return self.escaped or self.requested_length >= length


class HighPrecisionOrbitGenerator:
    def __init__(self, *, escape_threshold: float = 4.0, dtype: str = "float64", time_budget: Optional[float] = None):
        self.escape_threshold = float(escape_threshold)
        self.dtype = np.dtype(dtype)
        self.time_budget = time_budget
        self._logger = get_logger()

    @classmethod
    def from_config(cls, cfg) -> "HighPrecisionOrbitGenerator":
        return cls(
            escape_threshold=cfg["escape_threshold"],
            dtype=cfg["orbit_dtype"],
            time_budget=cfg["orbit_time_budget"],
        )

    def generate(
        self,
        center,
        length: int,
        *,
        precision_bits: int = 64,
        cancel: Optional[threading.Event] = None,
    ) -> ReferenceOrbit:
        length = _check_length(length)
        ctx = _context(precision_bits)
        precision_bits = ctx.prec
        c = parse_center(center, ctx)

        buf = np.empty((length, 2), dtype=np.float64)
        buf[0] = (0.0, 0.0)
        n = 1
        escaped = False
        truncated = False
        started = time.perf_counter()

        cr, ci = c.real, c.imag
        zr = ctx.zero
        zi = ctx.zero
        threshold = ctx.mpf(self.escape_threshold)
        while n < length:
            if n % _CHECK_EVERY == 0:
                if cancel is not None and cancel.is_set():
                    raise OrbitCancelled(f"orbit generation cancelled at {n}/{length}")
                if self.time_budget is not None and time.perf_counter() - started > self.time_budget:
                    truncated = True
                    break
            zr2 = zr * zr
            zi2 = zi * zi
            zi = 2 * zr * zi + ci
            zr = zr2 - zi2 + cr
            buf[n, 0] = float(zr)
            buf[n, 1] = float(zi)
            n += 1
            if zr * zr + zi * zi > threshold:
                escaped = True
                break

        if truncated:
            self._logger.warning(
                "Orbit time budget %.3fs exhausted: returning %s/%s samples", self.time_budget, n, length
            )
        samples = buf[:n].astype(self.dtype)
        samples.setflags(write=False)
        self._logger.debug(
            "Reference orbit length=%s/%s escaped=%s bits=%s in %.3fs",
            n, length, escaped, precision_bits, time.perf_counter() - started,
        )
        return ReferenceOrbit(
            center=mp.make_mpc(c._mpc_),
            samples=samples,
            requested_length=length,
            precision_bits=precision_bits,
            escaped=escaped,
            truncated=truncated,
        )

    def generate_for(self, center, budget: IterationBudget, *, cancel: Optional[threading.Event] = None) -> ReferenceOrbit:
        return self.generate(center, budget.orbit_length, precision_bits=budget.precision_bits, cancel=cancel)


@lru_cache(maxsize=64)
def _escape_time(c_mpc: tuple, max_iter: int, precision_bits: int, threshold: float) -> int:
    ctx = _context(precision_bits)
    c = ctx.make_mpc(c_mpc)
    cr, ci = c.real, c.imag
    zr = ctx.zero
    zi = ctx.zero
    for i in range(max_iter):
        zr2 = zr * zr
        zi2 = zi * zi
        zi = 2 * zr * zi + ci
        zr = zr2 - zi2 + cr
        if zr * zr + zi * zi > threshold:
            return i
    return max_iter


def escape_time(point, max_iter: int, *, precision_bits: int = 64, threshold: float = 4.0) -> int:
    """Iterations ``point`` survives at full precision; ``max_iter`` if it never escapes."""
    c = parse_center(point, _context(precision_bits))
    return _escape_time(c._mpc_, int(max_iter), int(precision_bits), float(threshold))


def find_best_reference(
    center,
    magnification,
    max_iter: int,
    *,
    precision_bits: int = 64,
    threshold: float = 4.0,
) -> Tuple[mpc, int]:
    """Probe around ``center`` for the point whose orbit survives longest.

    A reference that escapes early shortens every pixel's loop, so a longer
    surviving neighbour a fraction of the view away is the better anchor.
    Stops at the first probe that survives ``max_iter``.
    """
    ctx = _context(precision_bits)
    c = parse_center(center, ctx)
    radius = 1 / ctx.mpf(magnification)
    candidates = [c + ctx.mpc(ctx.mpf(ox) * radius, ctx.mpf(oy) * radius) for ox, oy in _SEARCH_OFFSETS]

    best, best_score = candidates[0], -1
    for candidate in candidates:
        score = escape_time(candidate, max_iter, precision_bits=precision_bits, threshold=threshold)
        if score > best_score:
            best, best_score = candidate, score
            if best_score == max_iter:
                break
    return mp.make_mpc(best._mpc_), best_score


class OrbitWorker:
    """Generates orbits on a background thread, newest request wins.

    Submitting a request cancels whatever generation is in flight. Only the
    result of the latest request is ever handed out by ``poll``.
    """

    def __init__(self, generator: HighPrecisionOrbitGenerator):
        self._generator = generator
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="orbit")
        self._lock = threading.Lock()
        self._generation = 0
        self._cancel: Optional[threading.Event] = None
        self._ready = None
        self._error: Optional[BaseException] = None
        self._logger = get_logger()

    @property
    def generation(self) -> int:
        return self._generation

    def submit(self, center, budget: IterationBudget, tag=None) -> int:
        with self._lock:
            if self._cancel is not None:
                self._cancel.set()
            self._generation += 1
            generation = self._generation
            cancel = threading.Event()
            self._cancel = cancel
            self._ready = None
        self._executor.submit(self._run, generation, tag, center, budget, cancel)
        return generation

    def _run(self, generation, tag, center, budget, cancel) -> None:
        try:
            orbit = self._generator.generate_for(center, budget, cancel=cancel)
        except OrbitCancelled:
            self._logger.debug("Orbit generation %s superseded", generation)
            return
        except Exception as e:
            with self._lock:
                if generation == self._generation:
                    self._error = e
            return
        with self._lock:
            if generation == self._generation:
                self._ready = (generation, tag, orbit)

    def poll(self):
        """Return ``(generation, tag, orbit)`` once the latest request finished, else None."""
        with self._lock:
            if self._error is not None:
                error, self._error = self._error, None
                raise error
            ready, self._ready = self._ready, None
        return ready

    def cancel(self) -> None:
        """Invalidate the request in flight, if any; its result will never be handed out."""
        with self._lock:
            if self._cancel is not None:
                self._cancel.set()
                self._cancel = None
            self._generation += 1
            self._ready = None

    def close(self) -> None:
        self.cancel()
        self._executor.shutdown(wait=True)
