"""
FastAPI endpoints for the Monte Carlo strategy simulator.
"""

import asyncio
import contextlib
import logging
import math
import os
import time
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .config import DEFAULT_LIMITS
from .simulator import (
    InvalidRequestError,
    Leg,
    SimulationCancelled,
    SimulationRequest,
    StrategyLegs,
    UniformSource,
    simulate_async,
    terminal_histogram,
)

logger = logging.getLogger(__name__)

NO_STORE = {"Cache-Control": "no-store"}
DISCONNECT_POLL_SECONDS = 0.1

app = FastAPI(
    title="Monte Carlo Strategy Simulator",
    description="Expiry payoff statistics for multi-leg option structures under GBM",
    version="1.0.0",
)


def _to_num(x: Any) -> Optional[float]:
    """Finite float or None; bools and unparseable values count as missing."""
    if x is None or isinstance(x, bool):
        return None
    try:
        n = float(x)
    except (TypeError, ValueError):
        return None
    return n if math.isfinite(n) else None


class LegInput(BaseModel):
    """One leg as sent by the client."""
    enabled: bool = False
    K: Optional[float] = None
    qty: Optional[float] = None

    @field_validator("enabled", mode="before")
    @classmethod
    def _truthy(cls, v):
        return bool(v)

    @field_validator("K", "qty", mode="before")
    @classmethod
    def _numeric(cls, v):
        return _to_num(v)

    def to_leg(self) -> Optional[Leg]:
        if not self.enabled or self.K is None or self.qty is None:
            return None
        return Leg(strike=self.K, quantity=self.qty)


class LegsInput(BaseModel):
    """Long call, short call, long put, short put."""
    lc: Optional[LegInput] = None
    sc: Optional[LegInput] = None
    lp: Optional[LegInput] = None
    sp: Optional[LegInput] = None

    def to_legs(self) -> StrategyLegs:
        def leg(x: Optional[LegInput]) -> Optional[Leg]:
            return x.to_leg() if x is not None else None

        return StrategyLegs(
            long_call=leg(self.lc),
            short_call=leg(self.sc),
            long_put=leg(self.lp),
            short_put=leg(self.sp),
        )


class SimulationInput(BaseModel):
    """Request body of POST /montecarlo. Non-numeric values count as missing."""
    model_config = ConfigDict(extra="ignore")

    spot: Optional[float] = None
    mu: Optional[float] = None
    sigma: Optional[float] = None
    Tdays: Optional[float] = None
    paths: Optional[Any] = None
    legs: Optional[LegsInput] = None
    netPremium: Optional[float] = None
    carryPremium: bool = False
    riskFree: Optional[float] = None
    seed: Optional[int] = None

    @field_validator("spot", "mu", "sigma", "Tdays", "netPremium", "riskFree", mode="before")
    @classmethod
    def _numeric(cls, v):
        return _to_num(v)

    @field_validator("carryPremium", mode="before")
    @classmethod
    def _truthy(cls, v):
        return bool(v)

    def to_request(self) -> SimulationRequest:
        if not (self.spot is not None and self.spot > 0) or not (self.Tdays is not None and self.Tdays > 0):
            raise InvalidRequestError("spot>0 and Tdays>0 required")
        return SimulationRequest(
            spot=self.spot,
            drift_annual=self.mu or 0.0,
            vol_annual=max(0.0, self.sigma or 0.0),
            horizon_days=self.Tdays,
            path_count=DEFAULT_LIMITS.clamp_paths(self.paths),
            legs=self.legs.to_legs() if self.legs is not None else StrategyLegs(),
            net_premium=self.netPremium or 0.0,
            carry_premium_to_expiry=self.carryPremium,
            risk_free_annual=self.riskFree or 0.0,
        )


class HistogramInput(BaseModel):
    """Request body of POST /montecarlo/histogram."""
    model_config = ConfigDict(extra="ignore")

    spot: Optional[float] = None
    mu: Optional[float] = None
    sigma: Optional[float] = None
    Tdays: Optional[float] = None
    paths: Optional[Any] = None
    bins: int = Field(120, ge=1, le=1000)
    minX: Optional[float] = None
    maxX: Optional[float] = None
    seed: Optional[int] = None

    @field_validator("spot", "mu", "sigma", "Tdays", "minX", "maxX", mode="before")
    @classmethod
    def _numeric(cls, v):
        return _to_num(v)


def _error(status: int, code: str, message: str) -> JSONResponse:
    # `error` stays a plain string for older clients; `errorObj` is structured
    return JSONResponse(
        {"ok": False, "error": message, "errorObj": {"code": code, "message": message}},
        status_code=status,
        headers=NO_STORE,
    )


@app.exception_handler(RequestValidationError)
async def _validation_error(request: Request, exc: RequestValidationError):
    return _error(400, "BAD_INPUT", "invalid request body")


async def _watch_disconnect(request: Request, cancelled: asyncio.Event) -> None:
    while not cancelled.is_set():
        if await request.is_disconnected():
            logger.info("Client disconnected; cancelling simulation")
            cancelled.set()
            return
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)


async def _stop_watcher(watcher: "asyncio.Task[None]") -> None:
    watcher.cancel()
    try:
        with contextlib.suppress(asyncio.CancelledError):
            await watcher
    except Exception:
        logger.exception("Disconnect watcher failed")


@app.post("/montecarlo")
async def montecarlo(body: SimulationInput, request: Request):
    """
    Simulate terminal prices and score the structure on every path.
    """
    start_time = time.perf_counter()
    try:
        sim_request = body.to_request()
    except ValueError as e:
        return _error(400, "BAD_INPUT", str(e))

    cancelled = asyncio.Event()
    watcher = asyncio.create_task(_watch_disconnect(request, cancelled))
    try:
        result = await simulate_async(
            sim_request,
            UniformSource(seed=body.seed),
            limits=DEFAULT_LIMITS,
            cancel=cancelled,
        )
    except ValueError as e:
        return _error(400, "BAD_INPUT", str(e))
    except SimulationCancelled as e:
        return _error(503, "CANCELLED", str(e))
    except Exception as e:
        logger.exception("Monte Carlo simulation failed")
        return _error(500, "INTERNAL_ERROR", str(e))
    finally:
        await _stop_watcher(watcher)

    data = result.to_dict()
    try:
        # top-level copies of `data` are kept for older clients
        return JSONResponse(
            {
                "ok": True,
                "data": data,
                **data,
                "diagnostics": result.diagnostics(),
                "_ms": round((time.perf_counter() - start_time) * 1000, 3),
            },
            headers=NO_STORE,
        )
    except ValueError as e:
        # JSON rendering rejects NaN and infinities
        logger.exception("Monte Carlo result could not be serialised")
        return _error(500, "INTERNAL_ERROR", f"non-finite statistic in result: {e}")


@app.post("/montecarlo/histogram")
def histogram(body: HistogramInput):
    """
    Normalised histogram of simulated terminal prices.
    """
    if body.spot is None or body.sigma is None or body.Tdays is None:
        return _error(400, "BAD_INPUT", "spot, sigma and Tdays required")
    try:
        result = terminal_histogram(
            body.spot,
            body.mu or 0.0,
            body.sigma,
            body.Tdays / 365.0,
            paths=DEFAULT_LIMITS.clamp_paths(body.paths),
            bins=body.bins,
            lower=body.minX,
            upper=body.maxX,
            seed=body.seed,
        )
    except ValueError as e:
        return _error(400, "BAD_INPUT", str(e))
    except Exception as e:
        logger.exception("Histogram simulation failed")
        return _error(500, "INTERNAL_ERROR", str(e))
    return JSONResponse({"ok": True, "data": result.to_dict()}, headers=NO_STORE)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "Monte Carlo Strategy Simulator API",
        "version": "1.0.0",
        "endpoints": {
            "POST /montecarlo": "Payoff statistics for a multi-leg option structure",
            "POST /montecarlo/histogram": "Histogram of simulated terminal prices",
        },
    }


def main() -> None:
    """Serve the API with uvicorn."""
    import uvicorn

    uvicorn.run(
        "mcstrat.api:app",
        host=os.environ.get("MCSTRAT_HOST", "127.0.0.1"),
        port=int(os.environ.get("MCSTRAT_PORT", "8000")),
    )
