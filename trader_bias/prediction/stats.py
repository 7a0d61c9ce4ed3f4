# trader_bias/prediction/stats.py
"""Backtest queries over the prediction log: filters, win rates, streaks and equity."""

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any

from trader_bias.config import Config
from trader_bias.errors import InvalidQuery
from trader_bias.storage.database import PredictionStore
from trader_bias.storage.models import (
    CORRECT,
    INCORRECT,
    MODERATE,
    NEUTRAL_OUTCOME,
    PROJECTION_4HR,
    PROJECTION_12HR,
    PROJECTION_DAILY,
    STRONG,
    WEAK,
    Prediction,
)

logger = logging.getLogger(__name__)

DAY_MS = 24 * 60 * 60 * 1000
DEFAULT_LIMIT = 1000
MAX_LIMIT = 100000

PROJECTION_TYPES = (PROJECTION_4HR, PROJECTION_12HR, PROJECTION_DAILY)
OUTCOMES = (CORRECT, INCORRECT, NEUTRAL_OUTCOME)
STRENGTHS = (STRONG, MODERATE, WEAK)

WIN = "win"
LOSS = "loss"


def parse_time(value: str, end_of_day: bool = False) -> int:
    """Epoch ms, ISO date or ISO datetime to epoch ms (naive values are UTC).

    A bare date used as an upper bound covers the whole day.
    """
    value = value.strip()
    if value.isdigit():
        return int(value)
    try:
        day = date.fromisoformat(value)
    except ValueError:
        pass
    else:
        start = int(datetime(day.year, day.month, day.day, tzinfo=timezone.utc).timestamp() * 1000)
        return start + DAY_MS - 1 if end_of_day else start
    try:
        moment = datetime.fromisoformat(value)
    except ValueError:
        raise InvalidQuery("invalid_date", f"not an epoch ms or ISO-8601 date: {value!r}") from None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return int(moment.timestamp() * 1000)


@dataclass
class PredictionQuery:
    coin: str | None = None
    projection_type: str | None = None
    start: int | None = None
    end: int | None = None
    outcome: str | None = None
    limit: int = DEFAULT_LIMIT


def parse_query(params: Mapping[str, str], coins: list[str]) -> PredictionQuery:
    query = PredictionQuery()

    coin = params.get("coin")
    if coin:
        query.coin = coin.upper()
        if query.coin not in coins:
            raise InvalidQuery("invalid_coin", f"coin must be one of {', '.join(coins)}")

    projection_type = params.get("type")
    if projection_type:
        if projection_type not in PROJECTION_TYPES:
            raise InvalidQuery("invalid_type", f"type must be one of {', '.join(PROJECTION_TYPES)}")
        query.projection_type = projection_type

    if params.get("from"):
        query.start = parse_time(params["from"])
    if params.get("to"):
        query.end = parse_time(params["to"], end_of_day=True)
    if query.start is not None and query.end is not None and query.start > query.end:
        raise InvalidQuery("invalid_range", "from must not be after to")

    outcome = params.get("outcome")
    if outcome:
        if outcome not in OUTCOMES:
            raise InvalidQuery("invalid_outcome", f"outcome must be one of {', '.join(OUTCOMES)}")
        query.outcome = outcome

    limit = params.get("limit")
    if limit:
        try:
            query.limit = int(limit)
        except ValueError:
            raise InvalidQuery("invalid_limit", f"limit must be an integer: {limit!r}") from None
        if not 1 <= query.limit <= MAX_LIMIT:
            raise InvalidQuery("invalid_limit", f"limit must be between 1 and {MAX_LIMIT}")

    return query


def win_rate(predictions: list[Prediction]) -> dict[str, Any]:
    correct = sum(1 for p in predictions if p.outcome == CORRECT)
    incorrect = sum(1 for p in predictions if p.outcome == INCORRECT)
    neutral = sum(1 for p in predictions if p.outcome == NEUTRAL_OUTCOME)
    decided = correct + incorrect
    return {
        "total": len(predictions),
        "correct": correct,
        "incorrect": incorrect,
        "neutral": neutral,
        "winRate": round(100 * correct / decided, 1) if decided else 0.0,
    }


def calculate_stats(predictions: list[Prediction], coins: list[str]) -> dict[str, Any]:
    evaluated = [p for p in predictions if p.evaluated]
    return {
        "overall": win_rate(evaluated),
        "byType": {t: win_rate([p for p in evaluated if p.projection_type == t]) for t in PROJECTION_TYPES},
        "byCoin": {c: win_rate([p for p in evaluated if p.coin == c]) for c in coins},
        "byStrength": {s: win_rate([p for p in evaluated if p.strength == s]) for s in STRENGTHS},
        "pending": len(predictions) - len(evaluated),
    }


def _chronological(predictions: list[Prediction]) -> list[Prediction]:
    return sorted((p for p in predictions if p.evaluated), key=lambda p: (p.emitted_at, p.id))


def calculate_streaks(predictions: list[Prediction]) -> dict[str, Any]:
    decided = [p for p in _chronological(predictions) if p.outcome in (CORRECT, INCORRECT)]

    current_type: str | None = None
    count = 0
    longest = {WIN: 0, LOSS: 0}
    for prediction in decided:
        kind = WIN if prediction.outcome == CORRECT else LOSS
        if kind == current_type:
            count += 1
        else:
            current_type, count = kind, 1
        longest[kind] = max(longest[kind], count)

    return {
        "currentStreak": {"type": current_type or "none", "count": count},
        "longestWin": longest[WIN],
        "longestLoss": longest[LOSS],
        "totalPredictions": len(decided),
    }


def equity_curve(
    predictions: list[Prediction], initial_capital: float, bet_fraction: float
) -> list[dict[str, Any]]:
    """Fixed-fractional compounding; neutral outcomes leave equity unchanged."""
    ordered = _chronological(predictions)
    if not ordered:
        return []

    equity = initial_capital
    curve = [{"t": ordered[0].emitted_at, "equity": round(equity, 2)}]
    for prediction in ordered:
        if prediction.outcome == CORRECT:
            equity *= 1 + bet_fraction
        elif prediction.outcome == INCORRECT:
            equity *= 1 - bet_fraction
        curve.append({"t": prediction.emitted_at, "equity": round(equity, 2), "id": prediction.id})
    return curve


class BacktestService:
    """Query side of the prediction store, shaped for the HTTP API."""

    def __init__(self, store: PredictionStore, config: Config):
        self.store = store
        self.coins = config.coins
        self.initial_capital = config.backtest.initial_capital
        self.bet_fraction = config.backtest.bet_fraction

    async def _load(self, query: PredictionQuery, limit: int | None = None) -> list[Prediction]:
        return await self.store.list_predictions(
            coin=query.coin,
            projection_type=query.projection_type,
            start=query.start,
            end=query.end,
            outcome=query.outcome,
            limit=limit,
        )

    async def predictions(self, params: Mapping[str, str]) -> dict[str, Any]:
        query = parse_query(params, self.coins)
        rows = await self._load(query, query.limit)
        return {"count": len(rows), "predictions": [p.to_dict() for p in rows]}

    async def stats(self, params: Mapping[str, str]) -> dict[str, Any]:
        query = parse_query(params, self.coins)
        return calculate_stats(await self._load(query), self.coins)

    async def streaks(self, params: Mapping[str, str]) -> dict[str, Any]:
        query = parse_query(params, self.coins)
        return calculate_streaks(await self._load(query))

    async def equity_curve(self, params: Mapping[str, str]) -> dict[str, Any]:
        query = parse_query(params, self.coins)
        initial = self.initial_capital
        if params.get("initialCapital"):
            try:
                initial = float(params["initialCapital"])
            except ValueError:
                raise InvalidQuery("invalid_capital", "initialCapital must be a number") from None
            if initial <= 0:
                raise InvalidQuery("invalid_capital", "initialCapital must be positive")
        curve = equity_curve(await self._load(query), initial, self.bet_fraction)
        return {"points": len(curve), "curve": curve}
