# tests/prediction/test_evaluator.py
import pytest

from trader_bias.aggregator.engine import Aggregator
from trader_bias.config import Config, PersistenceConfig
from trader_bias.prediction.evaluator import Evaluator, classify_outcome, price_change_pct
from trader_bias.storage.database import PredictionStore
from trader_bias.storage.models import MetricSample, Prediction

T0 = 1_706_616_000_000  # 2024-01-30 12:00 UTC
HOUR = 3_600_000
DUE = T0 + 12 * HOUR


@pytest.fixture
async def store(tmp_path):
    db = PredictionStore(str(tmp_path / "predictions.db"), PersistenceConfig(retry_backoff_ms=0))
    await db.init()
    yield db
    await db.close()


@pytest.fixture
def aggregator():
    return Aggregator(Config())


@pytest.fixture
def evaluator(store, aggregator):
    return Evaluator(store, aggregator)


def _mark(aggregator, ts, price):
    aggregator.process(MetricSample("binance", "perp", "BTC", "mark_price", price, ts))


async def _emit(store, direction="BULLISH"):
    prediction = Prediction(
        id=f"BTC_12hr_{T0}",
        coin="BTC",
        projection_type="12hr",
        predicted_direction=direction,
        strength="MODERATE",
        score=0.2,
        emitted_at=T0,
        horizon_ms=12 * HOUR,
        reference_price=100.0,
    )
    await store.insert_prediction(prediction)
    return prediction


@pytest.mark.parametrize(
    "direction, pct, outcome",
    [
        ("BULLISH", 1.0, "correct"),
        ("BULLISH", -0.5, "incorrect"),
        ("BULLISH", 0.1, "neutral"),
        ("BEARISH", -0.2, "correct"),
        ("BEARISH", 0.2, "incorrect"),
        ("BEARISH", -0.05, "neutral"),
        ("NEUTRAL", 0.4, "correct"),
        ("NEUTRAL", -0.6, "incorrect"),
    ],
)
def test_classify_outcome(direction, pct, outcome):
    assert classify_outcome(direction, pct) == outcome


def test_price_change_pct():
    assert price_change_pct(100.0, 101.0) == pytest.approx(1.0)
    assert price_change_pct(100.0, 99.5) == pytest.approx(-0.5)


async def test_prediction_win(store, aggregator, evaluator):
    await _emit(store)
    _mark(aggregator, T0, 100.0)
    _mark(aggregator, DUE, 101.0)

    assert await evaluator.evaluate_once(DUE + 30_000) == 1

    stored = await store.get_prediction(f"BTC_12hr_{T0}")
    assert stored.evaluated
    assert stored.actual_price_change_pct == pytest.approx(1.0)
    assert stored.outcome == "correct"
    assert stored.evaluated_at == DUE + 30_000


async def test_prediction_loss(store, aggregator, evaluator):
    await _emit(store)
    _mark(aggregator, DUE, 99.5)

    await evaluator.evaluate_once(DUE + 30_000)

    stored = await store.get_prediction(f"BTC_12hr_{T0}")
    assert stored.actual_price_change_pct == pytest.approx(-0.5)
    assert stored.outcome == "incorrect"


async def test_not_due_is_left_pending(store, aggregator, evaluator):
    await _emit(store)
    _mark(aggregator, DUE - 60_000, 101.0)

    assert await evaluator.evaluate_once(DUE - 1) == 0
    assert not (await store.get_prediction(f"BTC_12hr_{T0}")).evaluated


async def test_exact_bucket_preferred_over_neighbour(store, aggregator, evaluator):
    await _emit(store)
    _mark(aggregator, DUE - 1000, 98.0)
    _mark(aggregator, DUE + 400, 102.0)
    _mark(aggregator, DUE + 1000, 97.0)

    await evaluator.evaluate_once(DUE + 60_000)

    stored = await store.get_prediction(f"BTC_12hr_{T0}")
    assert stored.actual_price_change_pct == pytest.approx(2.0)


async def test_missing_price_defers_then_neutral(store, aggregator, evaluator):
    await _emit(store)
    _mark(aggregator, DUE - 60_000, 101.0)  # outside the 5 s tolerance

    assert await evaluator.evaluate_once(DUE + 5 * 60_000) == 0
    assert evaluator.counters.get("evaluations_deferred") == 1
    assert not (await store.get_prediction(f"BTC_12hr_{T0}")).evaluated

    assert await evaluator.evaluate_once(DUE + 10 * 60_000) == 1
    stored = await store.get_prediction(f"BTC_12hr_{T0}")
    assert stored.outcome == "neutral"
    assert stored.actual_price_change_pct is None


async def test_evaluation_is_idempotent(store, aggregator, evaluator):
    prediction = await _emit(store)
    _mark(aggregator, DUE, 101.0)

    await evaluator.evaluate_once(DUE + 1000)
    first = await store.get_prediction(prediction.id)

    assert await evaluator.evaluate_once(DUE + 120_000) == 0
    assert not await evaluator.evaluate(prediction, DUE + 120_000)
    assert await store.get_prediction(prediction.id) == first
