"""
Monte Carlo payoff simulator for multi-leg option structures.
"""

from .config import DEFAULT_LIMITS, SimulationLimits
from .simulator import (
    HistogramResult,
    InvalidRequestError,
    Leg,
    SimulationCancelled,
    SimulationRequest,
    SimulationResult,
    StrategyLegs,
    UniformSource,
    leg_payoff_at,
    payoff_at,
    simulate,
    simulate_async,
    standard_normal,
    terminal_histogram,
    terminal_price,
)
from .stats import ReservoirSampler, StreamingMoments, nearest_rank, summarize_quantiles

__version__ = "1.0.0"
