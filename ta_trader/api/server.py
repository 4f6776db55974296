"""
HTTP API: thin pass-throughs to the adapter, engine, runner and signal log.

    uvicorn ta_trader.api.server:app
"""
import asyncio
import os
from contextlib import asynccontextmanager
from typing import List, Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware

from ..adapters.base import PositionHistoryProvider
from ..adapters.models import MarketInfo
from ..common.errors import InvalidTradeRequest, UnsupportedSymbol, UpstreamUnavailable
from ..common.types import SignalQuery, SignalType
from ..components import Components, build_components
from ..config.config import load_config
from ..signals.log import latest_signal
from .models import (
    BalanceResponse,
    ClosedTradeResponse,
    MarketStatusResponse,
    PositionResponse,
    RunnerActionResponse,
    SignalPageResponse,
    SignalResponse,
    StatsResponse,
    StatusResponse,
)

router = APIRouter(tags=["Trading"])

RUNNER_STOP_TIMEOUT = 5.0


def get_components(request: Request) -> Components:
    return request.app.state.components


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, UnsupportedSymbol):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, UpstreamUnavailable):
        return HTTPException(status_code=503, detail=str(e))
    if isinstance(e, InvalidTradeRequest):
        return HTTPException(status_code=400, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))


@router.get("/balance", response_model=BalanceResponse)
async def get_balance(components: Components = Depends(get_components)):
    try:
        balance = await components.adapter.get_balance()
    except UpstreamUnavailable as e:
        raise _http_error(e)
    return BalanceResponse(adapter=components.adapter.name, balance=balance)


@router.get("/positions", response_model=List[PositionResponse])
async def get_positions(components: Components = Depends(get_components)):
    """Open positions, with the engine's partial ledger where it has one."""
    try:
        positions = await components.adapter.get_positions()
    except UpstreamUnavailable as e:
        raise _http_error(e)

    out = []
    for position in positions:
        ledger = await components.store.get(position.symbol)
        if ledger is not None and ledger.is_long == position.is_long:
            ledger.mark_price = position.mark_price
            ledger.unrealized_pnl = position.unrealized_pnl
            position = ledger
        out.append(PositionResponse.from_position(position))
    return out


@router.get("/positions/history", response_model=List[ClosedTradeResponse])
async def get_position_history(symbol: Optional[str] = None, limit: int = Query(50, ge=1, le=500),
                               components: Components = Depends(get_components)):
    if not isinstance(components.adapter, PositionHistoryProvider):
        raise HTTPException(status_code=501, detail=f"{components.adapter.name} has no position history")
    try:
        trades = await components.adapter.get_position_history(symbol, limit)
    except (UnsupportedSymbol, UpstreamUnavailable) as e:
        raise _http_error(e)
    return [ClosedTradeResponse.from_trade(t) for t in trades]


@router.post("/close-all", response_model=List[SignalResponse])
async def close_all(components: Components = Depends(get_components)):
    try:
        signals = await components.runner.close_all()
    except (UnsupportedSymbol, UpstreamUnavailable, InvalidTradeRequest) as e:
        raise _http_error(e)
    return [SignalResponse.from_signal(s) for s in signals]


@router.get("/status", response_model=StatusResponse)
async def get_status(request: Request, components: Components = Depends(get_components)):
    """Whether the runner is active, plus last signal and last failure per market."""
    task = request.app.state.runner_task
    status = "running" if task is not None and not task.done() else "stopped"
    markets = [MarketStatusResponse(**s) for s in components.runner.get_stats()]
    return StatusResponse(status=status, markets=markets)


@router.post("/runner/start", response_model=RunnerActionResponse)
async def start_runner(request: Request, components: Components = Depends(get_components)):
    task = request.app.state.runner_task
    if task is not None and not task.done():
        raise HTTPException(status_code=409, detail="Runner is already running")
    request.app.state.runner_task = asyncio.create_task(components.runner.run_forever())
    return RunnerActionResponse(status="started")


@router.post("/runner/stop", response_model=RunnerActionResponse)
async def stop_runner(request: Request, components: Components = Depends(get_components)):
    task = request.app.state.runner_task
    if task is None or task.done():
        return RunnerActionResponse(status="not_running")
    await _stop_task(components, task)
    request.app.state.runner_task = None
    return RunnerActionResponse(status="stopped")


async def _stop_task(components: Components, task: asyncio.Task):
    components.runner.stop()
    try:
        await asyncio.wait_for(task, timeout=RUNNER_STOP_TIMEOUT)
    except asyncio.TimeoutError:
        components.context.logger.warning("Runner stop timed out, cancelling", operation="runner")
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)


@router.get("/stats/{symbol}", response_model=StatsResponse)
async def get_stats(symbol: str, components: Components = Depends(get_components)):
    stats = await components.store.get_stats(symbol)
    return StatsResponse.from_stats(symbol, stats)


@router.get("/signals/{symbol}", response_model=SignalPageResponse)
async def get_signals(
    symbol: str,
    type: Optional[SignalType] = Query(None, description="Filter by signal type"),
    from_ts: Optional[int] = Query(None, description="Inclusive lower bound (ms)"),
    to_ts: Optional[int] = Query(None, description="Inclusive upper bound (ms)"),
    cursor: Optional[int] = Query(None, description="Timestamp of the last row of the previous page"),
    limit: Optional[int] = Query(None, description="Page size, clamped to [1, 100]"),
    components: Components = Depends(get_components),
):
    query = SignalQuery(type=type, from_ts=from_ts, to_ts=to_ts, cursor=cursor,
                        limit=limit if limit is not None else 50)
    try:
        page = await components.signals.query(symbol, query)
    except UpstreamUnavailable as e:
        raise _http_error(e)
    return SignalPageResponse(
        signals=[SignalResponse.from_signal(s) for s in page.signals],
        total_count=page.total_count,
        next_cursor=page.next_cursor,
    )


@router.get("/signals/{symbol}/latest", response_model=SignalResponse)
async def get_latest_signal(symbol: str, components: Components = Depends(get_components)):
    try:
        signal = await latest_signal(components.signals, symbol)
    except UpstreamUnavailable as e:
        raise _http_error(e)
    if signal is None:
        raise HTTPException(status_code=404, detail=f"No signals for {symbol}")
    return SignalResponse.from_signal(signal)


@router.get("/markets/{symbol}", response_model=MarketInfo)
async def get_market_info(symbol: str, components: Components = Depends(get_components)):
    try:
        return await components.adapter.get_market_info(symbol)
    except (UnsupportedSymbol, UpstreamUnavailable) as e:
        raise _http_error(e)


def create_app(components: Optional[Components] = None) -> FastAPI:
    """
    Build the API. Without explicit components they are built from
    TRADER_CONFIG (YAML path) at startup and cleaned up at shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = components is None
        app.state.components = components or build_components(load_config(os.getenv("TRADER_CONFIG")))
        app.state.runner_task = None
        yield
        task = app.state.runner_task
        if task is not None and not task.done():
            await _stop_task(app.state.components, task)
        if owned:
            await app.state.components.cleanup()

    app = FastAPI(
        title="TA Trader API",
        description="Balance, positions, force-close, runner control and signal history.",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)

    @app.get("/api/health")
    def health_check():
        return {"status": "ok", "message": "TA Trader API is running"}

    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run("ta_trader.api.server:app", host="0.0.0.0", port=8000)
