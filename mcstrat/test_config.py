"""
Tests for simulation limits.
"""

import dataclasses

import pytest

from mcstrat.config import DEFAULT_LIMITS, SimulationLimits


class TestClampPaths:

    @pytest.mark.parametrize(
        "value, expected",
        [
            (50_000, 50_000),
            (1_000_000, 200_000),
            (10, 1_000),
            (-5, 1_000),
            (12_345.9, 12_345),
            ("30000", 30_000),
            ("lots", 1_000),
            (float("nan"), 1_000),
            (float("inf"), 200_000),
            (None, 20_000),
        ],
    )
    def test_default_bounds(self, value, expected):
        assert DEFAULT_LIMITS.clamp_paths(value) == expected

    def test_default_above_maximum_is_clamped(self):
        limits = SimulationLimits(min_paths=10, max_paths=500, default_paths=20_000)
        assert limits.clamp_paths(None) == 500


class TestEnvironment:

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("MCSTRAT_MAX_PATHS", "50000")
        monkeypatch.setenv("MCSTRAT_RESERVOIR_CAP", "5000")
        limits = SimulationLimits()
        assert limits.max_paths == 50_000
        assert limits.reservoir_cap == 5_000
        assert limits.clamp_paths(1_000_000) == 50_000

    def test_bad_env_value(self, monkeypatch):
        monkeypatch.setenv("MCSTRAT_YIELD_EVERY", "often")
        with pytest.raises(ValueError, match="MCSTRAT_YIELD_EVERY must be an integer"):
            SimulationLimits()


class TestValidation:

    def test_min_above_max(self):
        with pytest.raises(ValueError, match="min_paths must not exceed max_paths"):
            SimulationLimits(min_paths=10, max_paths=5)

    def test_reservoir_cap_positive(self):
        with pytest.raises(ValueError, match="reservoir_cap must be positive"):
            SimulationLimits(reservoir_cap=0)

    def test_frozen(self):
        with pytest.raises(dataclasses.FrozenInstanceError):
            DEFAULT_LIMITS.max_paths = 1
