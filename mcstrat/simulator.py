"""
Monte Carlo payoff simulator for multi-leg option structures.

Terminal prices are drawn under geometric Brownian motion and each path
is scored against the structure net of its premium. Quantiles come from a
fixed-size reservoir of terminal prices.
"""

import asyncio
import logging
import math
import numbers
import time
from dataclasses import dataclass, field, asdict
from typing import Any, Callable, Dict, Generator, List, Literal, Optional, Protocol, Tuple

import numpy as np

from .config import DEFAULT_LIMITS, SimulationLimits
from .stats import ReservoirSampler, StreamingMoments, summarize_quantiles

logger = logging.getLogger(__name__)

Uniform = Callable[[], float]
LegKind = Literal["call", "put"]


class InvalidRequestError(ValueError):
    """Simulation inputs rejected before any path is drawn."""


class SimulationCancelled(Exception):
    """Raised at a checkpoint once the caller's cancellation token is set."""


class CancelToken(Protocol):
    def is_set(self) -> bool: ...


class UniformSource:
    """
    Uniform [0, 1) draws served one at a time from numpy blocks.

    Any zero-argument callable returning floats in [0, 1) can be used in
    its place, e.g. `random.Random(7).random` in tests.
    """

    def __init__(
        self,
        seed: Optional[int] = None,
        block_size: int = 8192,
        rng: Optional[np.random.Generator] = None,
    ):
        if block_size <= 0:
            raise ValueError("block_size must be positive")
        self._rng = rng if rng is not None else np.random.default_rng(seed)
        self._block_size = block_size
        self._block: List[float] = []
        self._pos = 0

    def __call__(self) -> float:
        if self._pos >= len(self._block):
            self._block = self._rng.random(self._block_size).tolist()
            self._pos = 0
        u = self._block[self._pos]
        self._pos += 1
        return u


@dataclass(frozen=True)
class Leg:
    """One option position: strike and (unsigned) quantity."""
    strike: float
    quantity: float

    def is_valid(self) -> bool:
        return (
            math.isfinite(self.strike)
            and math.isfinite(self.quantity)
            and self.strike >= 0
            and self.quantity >= 0
        )


# (field name, option kind, sign)
_LEG_SLOTS: Tuple[Tuple[str, LegKind, int], ...] = (
    ("long_call", "call", 1),
    ("short_call", "call", -1),
    ("long_put", "put", 1),
    ("short_put", "put", -1),
)


@dataclass(frozen=True)
class StrategyLegs:
    """Up to four option legs; None means the leg is disabled."""
    long_call: Optional[Leg] = None
    short_call: Optional[Leg] = None
    long_put: Optional[Leg] = None
    short_put: Optional[Leg] = None

    def active(self) -> List[Tuple[LegKind, int, float, float]]:
        """(kind, sign, strike, quantity) for every enabled, valid leg."""
        out = []
        for name, kind, sign in _LEG_SLOTS:
            leg = getattr(self, name)
            if leg is not None and leg.is_valid():
                out.append((kind, sign, float(leg.strike), float(leg.quantity)))
        return out

    def invalid(self) -> List[str]:
        """Names of enabled legs whose strike or quantity is unusable."""
        return [
            name for name, _, _ in _LEG_SLOTS
            if getattr(self, name) is not None and not getattr(self, name).is_valid()
        ]


@dataclass(frozen=True)
class SimulationRequest:
    """Inputs of one simulation run."""
    spot: float
    drift_annual: float
    vol_annual: float
    horizon_days: float
    path_count: int
    legs: StrategyLegs = field(default_factory=StrategyLegs)
    net_premium: float = 0.0
    carry_premium_to_expiry: bool = False
    risk_free_annual: float = 0.0
    days_per_year: float = 365.0

    @property
    def horizon_years(self) -> float:
        return self.horizon_days / self.days_per_year

    @property
    def premium_carry_factor(self) -> float:
        if not self.carry_premium_to_expiry:
            return 1.0
        return math.exp(self.risk_free_annual * self.horizon_years)

    @property
    def cost_basis(self) -> float:
        """Net premium, compounded to expiry when carrying is requested."""
        return self.net_premium * self.premium_carry_factor

    def validate(self) -> None:
        if not _finite(self.spot) or self.spot <= 0:
            raise InvalidRequestError("spot must be a finite number > 0")
        if not _finite(self.horizon_days) or self.horizon_days <= 0:
            raise InvalidRequestError("horizon_days must be a finite number > 0")
        if not _finite(self.vol_annual) or self.vol_annual < 0:
            raise InvalidRequestError("vol_annual must be finite and non-negative")
        if not _finite(self.drift_annual):
            raise InvalidRequestError("drift_annual must be finite")
        if not _finite(self.net_premium):
            raise InvalidRequestError("net_premium must be finite")
        if not _finite(self.risk_free_annual):
            raise InvalidRequestError("risk_free_annual must be finite")


@dataclass(frozen=True)
class SimulationResult:
    """Summary of a finished run. Quantiles are None when no path survived."""
    mean_st: Optional[float]
    std_st: Optional[float]
    q_lo_st: Optional[float]
    q05_st: Optional[float]
    q25_st: Optional[float]
    q50_st: Optional[float]
    q75_st: Optional[float]
    q95_st: Optional[float]
    q_hi_st: Optional[float]
    p_win: Optional[float]
    ev_abs: Optional[float]
    ev_pct: Optional[float]
    paths: int
    skipped_paths: int
    reservoir_size: int
    runtime_ms: float

    def to_dict(self) -> Dict[str, Optional[float]]:
        """Wire representation of the statistics."""
        return {
            "meanST": self.mean_st,
            "stdST": self.std_st,
            "q05ST": self.q05_st,
            "q25ST": self.q25_st,
            "q50ST": self.q50_st,
            "q75ST": self.q75_st,
            "q95ST": self.q95_st,
            "qLoST": self.q_lo_st,
            "qHiST": self.q_hi_st,
            "pWin": self.p_win,
            "evAbs": self.ev_abs,
            "evPct": self.ev_pct,
        }

    def diagnostics(self) -> Dict[str, Any]:
        return {
            "paths": self.paths,
            "skippedPaths": self.skipped_paths,
            "reservoirSize": self.reservoir_size,
        }


def _finite(x: Any) -> bool:
    # numbers.Real covers numpy scalars (float32, int64, ...)
    return isinstance(x, numbers.Real) and not isinstance(x, bool) and math.isfinite(x)


def _finite_or_none(x: float) -> Optional[float]:
    return x if math.isfinite(x) else None


def standard_normal(uniform: Uniform) -> float:
    """Box-Muller: one N(0, 1) draw from two uniforms, neither exactly zero."""
    u = 0.0
    v = 0.0
    while u == 0.0:
        u = uniform()
    while v == 0.0:
        v = uniform()
    return math.sqrt(-2.0 * math.log(u)) * math.cos(2.0 * math.pi * v)


def terminal_price(spot: float, mu: float, sigma: float, T: float, z: float) -> float:
    """
    S_T = S0 * exp((mu - 0.5*sigma^2)*T + sigma*sqrt(T)*Z)

    Returns inf when the exponent overflows.
    """
    exponent = (mu - 0.5 * sigma * sigma) * T + sigma * math.sqrt(T) * z
    try:
        return spot * math.exp(exponent)
    except OverflowError:
        return math.inf


def _structure_payoff(st: float, active: List[Tuple[LegKind, int, float, float]]) -> float:
    total = 0.0
    for kind, sign, strike, qty in active:
        if kind == "call":
            intrinsic = st - strike
        else:
            intrinsic = strike - st
        if intrinsic > 0:
            total += sign * intrinsic * qty
    return total


def leg_payoff_at(st: float, legs: StrategyLegs) -> float:
    """Expiry payoff of the option legs alone, premium excluded."""
    return _structure_payoff(st, legs.active())


def payoff_at(st: float, request: SimulationRequest) -> float:
    """Expiry payoff net of the (possibly carried) premium."""
    return leg_payoff_at(st, request.legs) - request.cost_basis


def _run(
    request: SimulationRequest,
    uniform: Uniform,
    limits: SimulationLimits,
    cancel: Optional[CancelToken],
) -> Generator[None, None, SimulationResult]:
    """
    The simulation loop. Yields at every checkpoint and returns the result.

    Cancellation is checked on resuming from a checkpoint.
    """
    start_time = time.perf_counter()

    request.validate()
    paths = limits.clamp_paths(request.path_count)

    for name in request.legs.invalid():
        logger.warning("Leg %s has a non-finite or negative strike/quantity; skipping it", name)
    active = request.legs.active()

    spot = float(request.spot)
    mu = float(request.drift_annual)
    sigma = float(request.vol_annual)
    T = float(request.horizon_years)
    cost_basis = float(request.cost_basis)

    moments = StreamingMoments()
    reservoir = ReservoirSampler(min(paths, limits.reservoir_cap))
    wins = 0
    sum_payoff = 0.0
    skipped = 0
    yield_every = limits.yield_every

    for i in range(paths):
        st = terminal_price(spot, mu, sigma, T, standard_normal(uniform))
        if not math.isfinite(st):
            skipped += 1
        else:
            moments.update(st)
            reservoir.offer(st, uniform)
            payoff = _structure_payoff(st, active) - cost_basis
            if payoff > 0:
                wins += 1
            sum_payoff += payoff

        if (i + 1) % yield_every == 0:
            yield
            if cancel is not None and cancel.is_set():
                logger.info("Simulation cancelled after %d of %d paths", i + 1, paths)
                raise SimulationCancelled(f"cancelled after {i + 1} of {paths} paths")

    if skipped:
        logger.warning("Excluded %d of %d paths with non-finite terminal prices", skipped, paths)

    evaluated = moments.count
    quantiles = summarize_quantiles(reservoir.values())

    if evaluated:
        p_win = wins / evaluated
        ev_abs = sum_payoff / evaluated
        denom = abs(request.net_premium)
        if denom <= limits.premium_epsilon:
            denom = spot
        ev_pct = ev_abs / denom
        mean_st = moments.mean
        std_st = moments.std
        # finite inputs can still overflow the running sums
        overflowed = [
            name for name, value in (
                ("mean_st", mean_st), ("std_st", std_st), ("ev_abs", ev_abs), ("ev_pct", ev_pct),
            )
            if not math.isfinite(value)
        ]
        if overflowed:
            logger.warning("Statistics overflowed and are reported as None: %s", ", ".join(overflowed))
            mean_st = _finite_or_none(mean_st)
            std_st = _finite_or_none(std_st)
            ev_abs = _finite_or_none(ev_abs)
            ev_pct = _finite_or_none(ev_pct)
    else:
        p_win = ev_abs = ev_pct = mean_st = std_st = None

    runtime_ms = (time.perf_counter() - start_time) * 1000
    logger.info("Simulated %d paths (%d legs) in %.1f ms", paths, len(active), runtime_ms)

    return SimulationResult(
        mean_st=mean_st,
        std_st=std_st,
        q_lo_st=quantiles["qLoST"],
        q05_st=quantiles["q05ST"],
        q25_st=quantiles["q25ST"],
        q50_st=quantiles["q50ST"],
        q75_st=quantiles["q75ST"],
        q95_st=quantiles["q95ST"],
        q_hi_st=quantiles["qHiST"],
        p_win=p_win,
        ev_abs=ev_abs,
        ev_pct=ev_pct,
        paths=paths,
        skipped_paths=skipped,
        reservoir_size=reservoir.size,
        runtime_ms=runtime_ms,
    )


def simulate(
    request: SimulationRequest,
    uniform: Optional[Uniform] = None,
    *,
    limits: SimulationLimits = DEFAULT_LIMITS,
    cancel: Optional[CancelToken] = None,
) -> SimulationResult:
    """
    Run the simulation to completion on the calling thread.

    Parameters
    ----------
    request : SimulationRequest
        Validated before any path is drawn. `path_count` is never
        rejected: every value, including zero, negative or None, goes
        through `limits.clamp_paths`, and the executed count is reported
        in `SimulationResult.paths`.
    uniform : callable, optional
        Source of uniform [0, 1) draws. Defaults to a fresh unseeded
        `UniformSource`.
    limits : SimulationLimits
        Path-count bounds, reservoir capacity and checkpoint interval.
    cancel : object with is_set(), optional
        Checked at every checkpoint; once set the run raises
        `SimulationCancelled` instead of returning a partial result.

    Returns
    -------
    SimulationResult
    """
    steps = _run(request, uniform or UniformSource(), limits, cancel)
    while True:
        try:
            next(steps)
        except StopIteration as stop:
            return stop.value


async def simulate_async(
    request: SimulationRequest,
    uniform: Optional[Uniform] = None,
    *,
    limits: SimulationLimits = DEFAULT_LIMITS,
    cancel: Optional[CancelToken] = None,
) -> SimulationResult:
    """Same as `simulate`, handing control back to the event loop at every checkpoint."""
    steps = _run(request, uniform or UniformSource(), limits, cancel)
    while True:
        try:
            next(steps)
        except StopIteration as stop:
            return stop.value
        await asyncio.sleep(0)


@dataclass(frozen=True)
class HistogramResult:
    """Terminal price histogram: bin centres and counts scaled to [0, 1]."""
    xs: List[float]
    ys: List[float]
    paths: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def terminal_histogram(
    spot: float,
    mu: float,
    sigma: float,
    T: float,
    *,
    paths: int,
    bins: int = 120,
    lower: Optional[float] = None,
    upper: Optional[float] = None,
    seed: Optional[int] = None,
) -> HistogramResult:
    """
    Histogram of GBM terminal prices over [lower, upper].

    The range defaults to [0.6*spot, 1.4*spot]. Draws outside it are
    counted in the edge bins. Counts are divided by the largest count.
    """
    if not _finite(spot) or spot <= 0:
        raise InvalidRequestError("spot must be a finite number > 0")
    if not _finite(sigma) or sigma <= 0:
        raise InvalidRequestError("sigma must be a finite number > 0")
    if not _finite(T) or T <= 0:
        raise InvalidRequestError("T must be a finite number > 0")
    if not _finite(mu):
        raise InvalidRequestError("mu must be finite")
    if bins < 1:
        raise InvalidRequestError("bins must be at least 1")
    if paths <= 0:
        raise InvalidRequestError("paths must be positive")

    lo = lower if lower is not None and math.isfinite(lower) else spot * 0.6
    hi = upper if upper is not None and math.isfinite(upper) else spot * 1.4
    if hi <= lo:
        raise InvalidRequestError("upper bound must exceed lower bound")
    step = (hi - lo) / bins

    rng = np.random.default_rng(seed)
    # 1 - U maps [0, 1) onto (0, 1], keeping log() finite
    u = 1.0 - rng.random(paths)
    v = rng.random(paths)
    Z = np.sqrt(-2.0 * np.log(u)) * np.cos(2.0 * np.pi * v)
    ST = spot * np.exp((mu - 0.5 * sigma ** 2) * T + sigma * np.sqrt(T) * Z)

    idx = np.clip(np.floor((ST - lo) / step), 0, bins - 1).astype(np.int64)
    counts = np.bincount(idx, minlength=bins).astype(np.float64)
    peak = counts.max()
    ys = counts / peak if peak > 0 else counts

    xs = lo + (np.arange(bins) + 0.5) * step
    return HistogramResult(xs=xs.tolist(), ys=ys.tolist(), paths=int(paths))
