# tests/test_main.py
import asyncio
import time
from unittest.mock import AsyncMock

import pytest

from trader_bias.config import Config, ExchangeConfig, PersistenceConfig
from trader_bias.main import TraderBiasService
from trader_bias.storage.models import MetricSample


def _config(tmp_path, **changes):
    exchanges = {
        "binance": ExchangeConfig(streams=["trades", "mark"]),
        "coinbase": ExchangeConfig(),
        "kraken": ExchangeConfig(),
        "okx": ExchangeConfig(enabled=False),
    }
    return Config(data_dir=str(tmp_path / "data"), exchanges=exchanges, **changes)


@pytest.fixture
async def service(tmp_path):
    svc = TraderBiasService(_config(tmp_path))
    await svc.init()
    yield svc
    await svc.store.close()


async def test_init_builds_adapters_for_known_enabled_exchanges(service):
    assert [a.name for a in service.adapters] == ["binance", "coinbase"]
    assert service.adapters[0].streams == ["trades", "mark"]
    assert service.aggregator.exchanges() == ["binance", "coinbase"]
    assert (service.data_dir / "predictions.db").exists()


async def test_api_context_shares_vwap_poller(service):
    ctx = service.api_context()
    assert ctx.vwap is service.vwap_poller
    assert ctx.adapters is service.adapters


async def test_rings_survive_restart(tmp_path):
    now = int(time.time() * 1000)
    first = TraderBiasService(_config(tmp_path))
    await first.init()
    first.aggregator.process(MetricSample("binance", "perp", "BTC", "mark_price", 100.0, now))
    await first.dump_rings()
    await first.store.close()

    second = TraderBiasService(_config(tmp_path))
    await second.init()
    try:
        assert second.aggregator.price_at("BTC", now) == 100.0
    finally:
        await second.store.close()


async def test_store_degraded_too_long_stops_service(tmp_path):
    svc = TraderBiasService(_config(tmp_path, persistence=PersistenceConfig(fatal_after_s=0)))
    await svc.init()
    svc.stop_event = asyncio.Event()
    svc.store.degraded_since = time.monotonic() - 1
    svc.store.probe = AsyncMock(return_value=False)
    try:
        await svc.check_store()
        assert svc.stop_event.is_set()
        assert svc.exit_code == 1
    finally:
        await svc.store.close()


async def test_store_recovery_keeps_running(service):
    service.stop_event = asyncio.Event()
    service.store.degraded_since = time.monotonic() - 5000

    await service.check_store()

    assert not service.store.degraded
    assert not service.stop_event.is_set()
