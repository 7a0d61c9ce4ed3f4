# tests/aggregator/test_oi.py
import pytest

from trader_bias.aggregator.oi import calculate_oi_change, change_over_window, interpret_oi_price
from trader_bias.storage.rings import RollingRing


def test_calculate_oi_change():
    assert calculate_oi_change(105, 100) == pytest.approx(5.0)
    assert calculate_oi_change(95, 100) == pytest.approx(-5.0)
    assert calculate_oi_change(100, 0) == 0.0
    assert calculate_oi_change(None, 100) == 0.0


def test_change_over_window():
    ring = RollingRing(10_000, 3_600_000, aggregate="last")
    ring.add(0, 100.0)
    ring.add(600_000, 102.0)

    assert change_over_window(ring, 900_000, 600_000) == pytest.approx(2.0)


def test_change_over_window_needs_two_samples():
    ring = RollingRing(10_000, 3_600_000, aggregate="last")
    ring.add(0, 100.0)

    assert change_over_window(ring, 900_000, 0) is None
    assert change_over_window(None, 900_000, 0) is None


@pytest.mark.parametrize(
    "oi, price, expected",
    [
        (2.0, 1.0, "new_longs"),
        (2.0, -1.0, "new_shorts"),
        (-2.0, 1.0, "short_covering"),
        (-2.0, -1.0, "long_liquidation"),
        (0.5, 3.0, "stable"),
    ],
)
def test_interpret_oi_price(oi, price, expected):
    assert interpret_oi_price(oi, price) == expected
