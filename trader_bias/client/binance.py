"""Binance Futures REST client"""

import json
from dataclasses import dataclass, field
from typing import Any

import aiohttp

from trader_bias.client.models import Kline, LongShortRatio

DEFAULT_TIMEOUT = aiohttp.ClientTimeout(total=30, connect=10)


class BinanceAPIError(Exception):
    """Binance API error"""

    def __init__(self, code: int, message: str):
        self.code = code
        self.message = message
        super().__init__(message)


@dataclass
class BinanceClient:
    """Binance Futures REST client for positioning data"""

    base_url: str = "https://fapi.binance.com"
    _session: aiohttp.ClientSession | None = field(default=None, repr=False)

    async def _request(self, endpoint: str, params: dict[str, Any] | None = None) -> Any:
        if self._session is None:
            raise RuntimeError("Session not initialized. Use 'async with' context.")

        response = await self._session.get(f"{self.base_url}{endpoint}", params=params)

        if response.status != 200:
            error_text = await response.text()
            try:
                error_data = json.loads(error_text)
            except json.JSONDecodeError:
                raise BinanceAPIError(response.status, error_text) from None
            raise BinanceAPIError(error_data.get("code", -1), error_data.get("msg", error_text))

        return await response.json()

    async def __aenter__(self) -> "BinanceClient":
        self._session = aiohttp.ClientSession(timeout=DEFAULT_TIMEOUT)
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def _ratio(
        self, endpoint: str, symbol: str, period: str, limit: int
    ) -> list[LongShortRatio]:
        data = await self._request(endpoint, {"symbol": symbol, "period": period, "limit": limit})
        return [
            LongShortRatio(
                symbol=d["symbol"],
                long_ratio=float(d["longAccount"] if "longAccount" in d else d["longPosition"]),
                short_ratio=float(d["shortAccount"] if "shortAccount" in d else d["shortPosition"]),
                long_short_ratio=float(d["longShortRatio"]),
                timestamp=int(d["timestamp"]),
            )
            for d in data
        ]

    async def get_global_long_short_ratio(
        self, symbol: str, period: str = "5m", limit: int = 1
    ) -> list[LongShortRatio]:
        """All-accounts (retail) long/short account ratio"""
        return await self._ratio("/futures/data/globalLongShortAccountRatio", symbol, period, limit)

    async def get_top_long_short_position_ratio(
        self, symbol: str, period: str = "5m", limit: int = 1
    ) -> list[LongShortRatio]:
        """Top trader long/short position ratio"""
        return await self._ratio("/futures/data/topLongShortPositionRatio", symbol, period, limit)

    async def get_klines(
        self, symbol: str, interval: str, start_time: int, end_time: int, limit: int = 1500
    ) -> list[Kline]:
        """Futures candlesticks between start_time and end_time (ms)"""
        data = await self._request(
            "/fapi/v1/klines",
            {
                "symbol": symbol,
                "interval": interval,
                "startTime": start_time,
                "endTime": end_time,
                "limit": limit,
            },
        )
        return [
            Kline(
                open_time=int(k[0]),
                open=float(k[1]),
                high=float(k[2]),
                low=float(k[3]),
                close=float(k[4]),
                volume=float(k[5]),
            )
            for k in data
        ]
