"""
Simulation limits.

Limits are immutable and resolved from the environment once, when the
dataclass is constructed.
"""

import math
import os
from dataclasses import dataclass, field
from typing import Any, Optional


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


@dataclass(frozen=True)
class SimulationLimits:
    """
    Bounds applied to every simulation run.

    Attributes
    ----------
    min_paths, max_paths : int
        Requested path counts are clamped into this range.
        Override with MCSTRAT_MIN_PATHS / MCSTRAT_MAX_PATHS.
    default_paths : int
        Path count used when the caller does not ask for one.
        Override with MCSTRAT_DEFAULT_PATHS.
    reservoir_cap : int
        Upper bound on retained terminal prices used for quantiles.
        Override with MCSTRAT_RESERVOIR_CAP.
    yield_every : int
        Iterations between cooperative yield / cancellation checkpoints.
        Override with MCSTRAT_YIELD_EVERY.
    """

    min_paths: int = field(default_factory=lambda: _env_int("MCSTRAT_MIN_PATHS", 1_000))
    max_paths: int = field(default_factory=lambda: _env_int("MCSTRAT_MAX_PATHS", 200_000))
    default_paths: int = field(default_factory=lambda: _env_int("MCSTRAT_DEFAULT_PATHS", 20_000))
    reservoir_cap: int = field(default_factory=lambda: _env_int("MCSTRAT_RESERVOIR_CAP", 20_000))
    yield_every: int = field(default_factory=lambda: _env_int("MCSTRAT_YIELD_EVERY", 5_000))
    premium_epsilon: float = 1e-12

    def __post_init__(self) -> None:
        if self.min_paths <= 0:
            raise ValueError("min_paths must be positive")
        if self.min_paths > self.max_paths:
            raise ValueError("min_paths must not exceed max_paths")
        if self.reservoir_cap <= 0:
            raise ValueError("reservoir_cap must be positive")
        if self.yield_every <= 0:
            raise ValueError("yield_every must be positive")

    def clamp_paths(self, value: Optional[Any]) -> int:
        """
        Floor `value` to an integer and clamp it into [min_paths, max_paths].

        None means "not supplied" and maps to `default_paths` (itself
        clamped). Anything non-numeric counts as zero.
        """
        if value is None:
            value = self.default_paths
        try:
            n = float(value)
        except (TypeError, ValueError):
            n = 0.0
        if math.isnan(n):
            n = 0.0
        elif math.isinf(n):
            return self.max_paths if n > 0 else self.min_paths
        return min(max(int(math.floor(n)), self.min_paths), self.max_paths)


DEFAULT_LIMITS = SimulationLimits()
