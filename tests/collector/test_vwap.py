# tests/collector/test_vwap.py
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from trader_bias.client.models import Kline
from trader_bias.collector.vwap import VWAP_PERIODS, VwapPoller, calculate_vwap, period_start
from trader_bias.config import Config


def _ms(*args):
    return int(datetime(*args, tzinfo=timezone.utc).timestamp() * 1000)


# Wednesday, mid-quarter
NOW = _ms(2024, 5, 15, 13, 30)


def _kline(close, volume, ts=0):
    return Kline(open_time=ts, open=close, high=close, low=close, close=close, volume=volume)


@pytest.mark.parametrize(
    "period,expected",
    [
        ("daily", _ms(2024, 5, 15)),
        ("weekly", _ms(2024, 5, 13)),
        ("monthly", _ms(2024, 5, 1)),
        ("quarterly", _ms(2024, 4, 1)),
        ("yearly", _ms(2024, 1, 1)),
    ],
)
def test_period_start_is_utc_calendar_anchor(period, expected):
    assert period_start(period, NOW) == expected


def test_unknown_period_rejected():
    with pytest.raises(ValueError):
        period_start("hourly", NOW)


def test_calculate_vwap_weights_by_volume():
    assert calculate_vwap([_kline(100, 1), _kline(110, 3)]) == pytest.approx(107.5)
    assert calculate_vwap([_kline(100, 0)]) is None
    assert calculate_vwap([]) is None


async def test_poll_once_builds_levels_per_period():
    client = MagicMock()
    client.get_klines = AsyncMock(return_value=[_kline(100, 1), _kline(110, 3)])
    poller = VwapPoller(Config(coins=["BTC"]), client=client, clock=lambda: NOW)

    await poller.poll_once()

    payload = poller.get("BTC")
    assert set(payload["levels"]) == set(VWAP_PERIODS)
    weekly = payload["levels"]["weekly"]
    assert weekly["price"] == 107.5
    assert weekly["startTime"] == _ms(2024, 5, 13)
    assert weekly["klineCount"] == 2
    assert weekly["calculatedAt"] == NOW
    client.get_klines.assert_any_await("BTCUSDT", "15m", _ms(2024, 5, 13), NOW)


async def test_fetch_failure_is_counted_and_isolated():
    client = MagicMock()

    async def klines(symbol, interval, start, end):
        if interval == "1d":
            raise Exception("timeout")
        return [_kline(100, 2)]

    client.get_klines = klines
    poller = VwapPoller(Config(coins=["ETH"]), client=client, clock=lambda: NOW)

    await poller.poll_once()

    levels = poller.get("ETH")["levels"]
    assert levels["yearly"]["price"] is None
    assert levels["yearly"]["error"] == "timeout"
    assert levels["daily"]["price"] == 100.0
    assert poller.counters.get("poll_errors") == 1


async def test_no_levels_until_polled():
    client = MagicMock()
    client.get_klines = AsyncMock(side_effect=Exception("down"))
    poller = VwapPoller(Config(coins=["SOL"]), client=client, clock=lambda: NOW)

    assert poller.get("SOL") is None
    await poller.poll_once()
    assert poller.get("SOL") is None
