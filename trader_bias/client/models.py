"""Binance futures data models"""

from dataclasses import dataclass


@dataclass
class LongShortRatio:
    """Long/short ratio sample"""

    symbol: str
    long_ratio: float
    short_ratio: float
    long_short_ratio: float
    timestamp: int


@dataclass
class Kline:
    """One candlestick"""

    open_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float

    @property
    def typical_price(self) -> float:
        return (self.high + self.low + self.close) / 3
