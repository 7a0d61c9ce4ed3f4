# trader_bias/api/server.py
import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from aiohttp import web

from trader_bias.aggregator.engine import WHALE_FEED_SIZE, Aggregator
from trader_bias.aggregator.flow import FLOW_TIMEFRAMES
from trader_bias.bias.engine import HOUR_MS, BiasEngine
from trader_bias.collector.base import AdapterState, StreamAdapter
from trader_bias.collector.venues import get_profile
from trader_bias.collector.vwap import VwapPoller
from trader_bias.config import Config
from trader_bias.errors import InvalidQuery
from trader_bias.metrics import Counters
from trader_bias.prediction.scheduler import wall_clock_ms
from trader_bias.prediction.stats import BacktestService
from trader_bias.storage.database import PredictionStore
from trader_bias.storage.models import PROJECTION_4HR, PROJECTION_12HR, PROJECTION_DAILY
from trader_bias.storage.rings import CVD, FUNDING_RATE, MARK_PRICE, OPEN_INTEREST

logger = logging.getLogger(__name__)

HANDLER_TIMEOUT_S = 5
HISTORY_WINDOW_MS = 4 * HOUR_MS
HISTORY_STEP_MS = 60 * 1000
HISTORY_METRICS = [MARK_PRICE, CVD, OPEN_INTEREST, FUNDING_RATE]
DEFAULT_FLOW_WINDOW = "15m"
DEFAULT_WHALE_LIMIT = 100


@dataclass
class ApiContext:
    config: Config
    aggregator: Aggregator
    engine: BiasEngine
    store: PredictionStore
    backtest: BacktestService
    counters: Counters
    adapters: list[StreamAdapter] = field(default_factory=list)
    vwap: VwapPoller | None = None
    clock: Callable[[], int] = wall_clock_ms
    started_at: float = field(default_factory=time.monotonic)

    def exchanges(self) -> list[str]:
        names = {get_profile(name).exchange for name in self.config.enabled_exchanges()}
        names |= {a.profile.exchange for a in self.adapters}
        return sorted(names | set(self.aggregator.exchanges()))

    def exchange_live(self, exchange: str) -> bool:
        return any(
            a.profile.exchange == exchange and a.state == AdapterState.SUBSCRIBED
            for a in self.adapters
        )


CONTEXT = web.AppKey("context", ApiContext)


def _error(status: int, code: str, message: str) -> web.Response:
    return web.json_response({"error": code, "message": message}, status=status)


@web.middleware
async def error_middleware(request: web.Request, handler) -> web.StreamResponse:
    try:
        return await asyncio.wait_for(handler(request), timeout=HANDLER_TIMEOUT_S)
    except InvalidQuery as e:
        return _error(400, e.code, e.message)
    except web.HTTPException as e:
        if e.status < 400:
            raise
        return _error(e.status, e.reason.lower().replace(" ", "_"), e.text or e.reason)
    except asyncio.TimeoutError:
        logger.error(f"{request.method} {request.path} timed out after {HANDLER_TIMEOUT_S}s")
        return _error(500, "timeout", f"request took longer than {HANDLER_TIMEOUT_S}s")
    except Exception as e:
        logger.exception(f"{request.method} {request.path} failed")
        return _error(500, "internal_error", str(e))


def _coin(request: web.Request) -> str:
    ctx = request.app[CONTEXT]
    coin = request.match_info["coin"].upper()
    if coin not in ctx.config.coins:
        raise InvalidQuery("invalid_coin", f"coin must be one of {', '.join(ctx.config.coins)}")
    exchanges = ctx.exchanges()
    cached = any(ctx.aggregator.snapshot(ex, coin) for ex in exchanges)
    if not cached and not any(ctx.exchange_live(ex) for ex in exchanges):
        raise web.HTTPServiceUnavailable(text=f"no market data for {coin} yet")
    return coin


def _exchange(request: web.Request) -> str:
    ctx = request.app[CONTEXT]
    exchange = request.match_info["exchange"].lower()
    if exchange not in ctx.exchanges():
        raise InvalidQuery("invalid_exchange", f"exchange must be one of {', '.join(ctx.exchanges())}")
    return exchange


def exchange_snapshot(ctx: ApiContext, exchange: str) -> dict[str, Any] | None:
    """Snapshots for one exchange; None when it is down and nothing is cached."""
    snapshots = ctx.aggregator.snapshots(exchange)
    live = ctx.exchange_live(exchange)
    if not snapshots and not live:
        return None
    return {
        "exchange": exchange,
        "stale": not live,
        "snapshots": {coin: snap.to_dict() for coin, snap in sorted(snapshots.items())},
    }


def exchange_data(ctx: ApiContext, exchange: str) -> dict[str, Any] | None:
    payload = exchange_snapshot(ctx, exchange)
    if payload is None:
        return None
    history = {}
    for coin in ctx.config.coins:
        series = ctx.aggregator.history(
            exchange, coin, HISTORY_METRICS, HISTORY_WINDOW_MS, HISTORY_STEP_MS
        )
        history[coin] = {
            metric: [[t, v] for t, v in points] for metric, points in series.items()
        }
    payload["history"] = history
    return payload


async def health(request: web.Request) -> web.Response:
    ctx = request.app[CONTEXT]
    now_ms = int(time.time() * 1000)
    adapters = [
        {
            "name": a.name,
            "state": a.state.value,
            "lastEventAgoMs": a.last_event_ago_ms(now_ms),
            "error": a.error.message if a.error else None,
        }
        for a in ctx.adapters
    ]
    healthy = not ctx.store.degraded and all(a["state"] == "SUBSCRIBED" for a in adapters)
    return web.json_response(
        {
            "status": "ok" if healthy else "degraded",
            "uptimeSec": int(time.monotonic() - ctx.started_at),
            "adapters": adapters,
            "persistence": ctx.store.health(),
        }
    )


async def stats(request: web.Request) -> web.Response:
    ctx = request.app[CONTEXT]
    counters = ctx.counters.snapshot()
    return web.json_response(
        {
            "eventsIngested": counters.get("events_ingested", 0),
            "drops": {
                "trades": counters.get("events_dropped", 0),
                "coalesced": counters.get("events_coalesced", 0),
                "late": counters.get("events_late", 0),
                "duplicates": counters.get("trades_duplicate", 0),
                "parseErrors": counters.get("parse_errors", 0),
                "invalid": counters.get("trades_invalid", 0) + counters.get("events_invalid", 0),
            },
            "reconnects": counters.get("reconnects", 0),
            "predictionsEmitted": counters.get("predictions_emitted", 0),
            "predictionsEvaluated": counters.get("predictions_evaluated", 0),
            "ringAnomalies": {
                "lateWrites": ctx.aggregator.rings.late_writes,
                "expiredWrites": ctx.aggregator.rings.expired_writes,
            },
            "queueDepth": len(ctx.aggregator.channel),
            "counters": counters,
        }
    )


async def snapshot(request: web.Request) -> web.Response:
    ctx = request.app[CONTEXT]
    exchange = _exchange(request)
    payload = exchange_snapshot(ctx, exchange)
    if payload is None:
        raise web.HTTPServiceUnavailable(text=f"{exchange} is not connected")
    return web.json_response(payload)


async def data(request: web.Request) -> web.Response:
    ctx = request.app[CONTEXT]
    exchange = _exchange(request)
    payload = exchange_data(ctx, exchange)
    if payload is None:
        raise web.HTTPServiceUnavailable(text=f"{exchange} is not connected")
    return web.json_response(payload)


async def data_all(request: web.Request) -> web.Response:
    ctx = request.app[CONTEXT]
    return web.json_response({ex: exchange_data(ctx, ex) for ex in ctx.exchanges()})


def _report(request: web.Request, horizon: str) -> web.Response:
    ctx = request.app[CONTEXT]
    report = ctx.engine.report(_coin(request), horizon, now_ms=ctx.clock())
    return web.json_response(report.to_dict())


async def projection(request: web.Request) -> web.Response:
    return _report(request, PROJECTION_12HR)


async def daily_bias(request: web.Request) -> web.Response:
    return _report(request, PROJECTION_DAILY)


async def four_hour_bias(request: web.Request) -> web.Response:
    return _report(request, PROJECTION_4HR)


async def liquidation_zones(request: web.Request) -> web.Response:
    ctx = request.app[CONTEXT]
    zones = ctx.engine.liquidation_zones(_coin(request), now_ms=ctx.clock())
    return web.json_response(zones.to_dict() if zones else None)


async def exchange_flow(request: web.Request) -> web.Response:
    ctx = request.app[CONTEXT]
    coin = _coin(request)
    window = request.query.get("window", DEFAULT_FLOW_WINDOW)
    if window not in FLOW_TIMEFRAMES:
        raise InvalidQuery("invalid_window", f"window must be one of {', '.join(FLOW_TIMEFRAMES)}")
    now = ctx.clock()
    payload = ctx.aggregator.exchange_flow(coin, window, now_ms=now).to_dict()
    payload["timestamp"] = now
    return web.json_response(payload)


async def spot_cvd(request: web.Request) -> web.Response:
    ctx = request.app[CONTEXT]
    coin = _coin(request)
    divergence = ctx.aggregator.spot_perp(coin, now_ms=ctx.clock())
    return web.json_response(
        {
            "coin": coin,
            "status": "ok" if divergence else "collecting",
            "divergence": divergence,
        }
    )


async def whale_trades(request: web.Request) -> web.Response:
    ctx = request.app[CONTEXT]
    raw = request.query.get("limit", str(DEFAULT_WHALE_LIMIT))
    try:
        limit = int(raw)
    except ValueError:
        limit = 0
    if not 1 <= limit <= WHALE_FEED_SIZE:
        raise InvalidQuery("invalid_limit", f"limit must be between 1 and {WHALE_FEED_SIZE}")
    coin = request.query.get("coin")
    if coin is not None:
        coin = coin.upper()
        if coin not in ctx.config.coins:
            raise InvalidQuery("invalid_coin", f"coin must be one of {', '.join(ctx.config.coins)}")
    trades = ctx.aggregator.whale_trades(limit, coin)
    return web.json_response(
        {
            "threshold": ctx.aggregator.whale_feed_usd,
            "count": len(trades),
            "trades": [t.to_dict() for t in trades],
        }
    )


async def vwap(request: web.Request) -> web.Response:
    ctx = request.app[CONTEXT]
    coin = request.match_info["coin"].upper()
    if coin not in ctx.config.coins:
        raise InvalidQuery("invalid_coin", f"coin must be one of {', '.join(ctx.config.coins)}")
    payload = ctx.vwap.get(coin) if ctx.vwap else None
    if payload is None:
        raise web.HTTPServiceUnavailable(text=f"VWAP for {coin} not calculated yet")
    return web.json_response(payload)


async def backtest_predictions(request: web.Request) -> web.Response:
    return web.json_response(await request.app[CONTEXT].backtest.predictions(request.query))


async def backtest_stats(request: web.Request) -> web.Response:
    return web.json_response(await request.app[CONTEXT].backtest.stats(request.query))


async def backtest_equity_curve(request: web.Request) -> web.Response:
    return web.json_response(await request.app[CONTEXT].backtest.equity_curve(request.query))


async def backtest_streaks(request: web.Request) -> web.Response:
    return web.json_response(await request.app[CONTEXT].backtest.streaks(request.query))


def create_app(ctx: ApiContext) -> web.Application:
    app = web.Application(middlewares=[error_middleware])
    app[CONTEXT] = ctx
    app.router.add_get("/api/health", health)
    app.router.add_get("/api/stats", stats)
    app.router.add_get("/api/snapshot/{exchange}", snapshot)
    app.router.add_get("/api/data/all", data_all)
    app.router.add_get("/api/data/{exchange}", data)
    app.router.add_get("/api/backtest/predictions", backtest_predictions)
    app.router.add_get("/api/backtest/stats", backtest_stats)
    app.router.add_get("/api/backtest/equity-curve", backtest_equity_curve)
    app.router.add_get("/api/backtest/streaks", backtest_streaks)
    app.router.add_get("/api/whale-trades", whale_trades)
    app.router.add_get("/api/exchange-flow/{coin}", exchange_flow)
    app.router.add_get("/api/spot-cvd/{coin}", spot_cvd)
    app.router.add_get("/api/vwap/{coin}", vwap)
    app.router.add_get("/api/{coin}/projection", projection)
    app.router.add_get("/api/{coin}/daily-bias", daily_bias)
    app.router.add_get("/api/{coin}/4hr-bias", four_hour_bias)
    app.router.add_get("/api/{coin}/liquidation-zones", liquidation_zones)
    return app


async def start_server(ctx: ApiContext, host: str = "0.0.0.0") -> web.AppRunner:
    runner = web.AppRunner(create_app(ctx))
    await runner.setup()
    site = web.TCPSite(runner, host, ctx.config.port)
    await site.start()
    logger.info(f"HTTP API listening on {host}:{ctx.config.port}")
    return runner
