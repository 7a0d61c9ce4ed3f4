# trader_bias/aggregator/orderbook.py
from dataclasses import dataclass

from trader_bias.storage.models import BookSnapshot

MAX_LEVELS = 25
DEFAULT_BAND_PCT = 0.5


@dataclass(frozen=True)
class BookDepth:
    mid: float
    bid_volume: float
    ask_volume: float

    @property
    def imbalance(self) -> float:
        total = self.bid_volume + self.ask_volume
        if total <= 0:
            return 0.0
        return 100 * (self.bid_volume - self.ask_volume) / total


def truncate_levels(
    levels: list[tuple[float, float]], descending: bool, max_levels: int = MAX_LEVELS
) -> tuple[tuple[float, float], ...]:
    """Best-first top of book, ignoring empty levels."""
    cleaned = [(p, s) for p, s in levels if p > 0 and s > 0]
    cleaned.sort(key=lambda level: level[0], reverse=descending)
    return tuple(cleaned[:max_levels])


def calculate_depth(book: BookSnapshot, band_pct: float = DEFAULT_BAND_PCT) -> BookDepth | None:
    if not book.bids or not book.asks:
        return None

    best_bid = book.bids[0][0]
    best_ask = book.asks[0][0]
    mid = (best_bid + best_ask) / 2
    if mid <= 0:
        return None

    low = mid * (1 - band_pct / 100)
    high = mid * (1 + band_pct / 100)
    bid_volume = sum(p * s for p, s in book.bids if p >= low)
    ask_volume = sum(p * s for p, s in book.asks if p <= high)

    return BookDepth(mid=mid, bid_volume=bid_volume, ask_volume=ask_volume)
