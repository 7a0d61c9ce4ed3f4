# trader_bias/aggregator/insight.py

NONE_LEVEL = "none"
MILD = "mild"
STRONG = "strong"


def calculate_percentile(value: float, history: list[float]) -> float:
    """Share of history strictly below |value|, 0-100; 50 with no history."""
    if not history:
        return 50.0
    below = sum(1 for h in history if h < abs(value))
    return below / len(history) * 100


def divergence_level(percentile: float, mild_pct: float = 75, strong_pct: float = 90) -> str:
    if percentile >= strong_pct:
        return STRONG
    if percentile >= mild_pct:
        return MILD
    return NONE_LEVEL


def calculate_divergence(
    top_ratio: float,
    global_ratio: float,
    history: list[float],
    mild_pct: float = 75,
    strong_pct: float = 90,
) -> dict:
    """Top-trader minus retail long/short ratio, ranked against past |divergence|.

    Positive divergence means top traders lean more long than retail.
    """
    divergence = top_ratio - global_ratio
    percentile = calculate_percentile(divergence, history)
    return {
        "divergence": divergence,
        "percentile": percentile,
        "level": divergence_level(percentile, mild_pct, strong_pct),
    }
