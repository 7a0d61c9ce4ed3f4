# trader_bias/aggregator/oi.py
from trader_bias.storage.rings import RollingRing


def calculate_oi_change(current: float | None, past: float | None) -> float:
    if not current or not past:
        return 0.0
    return (current - past) / past * 100


def change_over_window(ring: RollingRing | None, window_ms: int, now_ms: int) -> float | None:
    """Percent change between the oldest and newest sample in the window."""
    if ring is None:
        return None
    series = ring.series(window_ms, now_ms)
    if len(series) < 2:
        return None
    return calculate_oi_change(series[-1][1], series[0][1])


def interpret_oi_price(oi_change: float, price_change: float) -> str:
    if oi_change > 1 and price_change > 0:
        return "new_longs"
    elif oi_change > 1 and price_change < 0:
        return "new_shorts"
    elif oi_change < -1 and price_change > 0:
        return "short_covering"
    elif oi_change < -1 and price_change < 0:
        return "long_liquidation"
    else:
        return "stable"
