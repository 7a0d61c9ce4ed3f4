# trader_bias/config.py
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, model_validator


class ExchangeConfig(BaseModel):
    enabled: bool = True
    endpoint: str | None = None
    symbols: list[str] = ["BTC", "ETH", "SOL"]
    streams: list[str] = ["trades", "book"]


def _default_exchanges() -> dict[str, ExchangeConfig]:
    return {
        "binance": ExchangeConfig(streams=["trades", "book", "mark"]),
        "binance_spot": ExchangeConfig(streams=["trades"]),
        "bybit": ExchangeConfig(streams=["trades", "ticker"]),
        "bybit_spot": ExchangeConfig(streams=["trades"]),
        "okx": ExchangeConfig(streams=["trades", "book", "mark"]),
        "coinbase": ExchangeConfig(streams=["trades"]),
    }


class WeightsConfig(BaseModel):
    orderbook: float = 0.20
    cvd: float = 0.25
    funding: float = 0.10
    oi_delta: float = 0.15
    long_short: float = 0.15
    whale_flow: float = 0.15

    @model_validator(mode="after")
    def _check_sum(self) -> "WeightsConfig":
        total = sum(self.model_dump().values())
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"weights must sum to 1, got {total}")
        return self


class ThresholdsConfig(BaseModel):
    bull: float = 0.05
    bear: float = -0.05
    strong: float = 0.30
    moderate: float = 0.15
    weak: float = 0.05
    min_samples: int = 60
    whale_usd: float = 100000
    whale_feed_usd: float = 500000
    spot_perp_usd: float = 100000


class HorizonsConfig(BaseModel):
    projection_hours: int = 12
    daily_hours: int = 24
    four_hour_hours: int = 4
    four_hour_predictions: bool = False


class RetentionConfig(BaseModel):
    """Retention horizon per metric, in seconds."""

    trade_volume: int = 3600
    cvd: int = 3600
    imbalance: int = 900
    open_interest: int = 86400
    funding_rate: int = 86400
    mark_price: int = 86400


class BackpressureConfig(BaseModel):
    queue_capacity: int = 4096


class ReconnectConfig(BaseModel):
    base_ms: int = 1000
    cap_ms: int = 30000
    reset_after_ms: int = 60000


class PollingConfig(BaseModel):
    market_seconds: int = 30
    # exchange -> metric kinds fetched over REST where the stream lacks them
    market_exchanges: dict[str, list[str]] = {"binance": ["open_interest"]}
    long_short_seconds: int = 300
    long_short_stale_seconds: int = 1800
    vwap_seconds: int = 300


class PersistenceConfig(BaseModel):
    retries: int = 3
    retry_backoff_ms: int = 100
    fatal_after_s: int = 600
    ring_snapshot_seconds: int = 60


class EvaluationConfig(BaseModel):
    interval_seconds: int = 60
    price_tolerance_ms: int = 5000
    defer_ms: int = 600000
    move_threshold_pct: float = 0.1
    neutral_band_pct: float = 0.5


class BacktestConfig(BaseModel):
    initial_capital: float = 10000
    bet_fraction: float = 0.02


class Config(BaseModel):
    port: int = 3001
    data_dir: str = "data"
    log_level: str = "INFO"
    exchanges: dict[str, ExchangeConfig] = _default_exchanges()
    coins: list[str] = ["BTC", "ETH", "SOL"]
    weights: WeightsConfig = WeightsConfig()
    four_hour_weights: WeightsConfig = WeightsConfig(
        orderbook=0.25, cvd=0.40, funding=0.0, oi_delta=0.35, long_short=0.0, whale_flow=0.0
    )
    thresholds: ThresholdsConfig = ThresholdsConfig()
    horizons: HorizonsConfig = HorizonsConfig()
    retention: RetentionConfig = RetentionConfig()
    backpressure: BackpressureConfig = BackpressureConfig()
    stall_ms: int = 20000
    reconnect: ReconnectConfig = ReconnectConfig()
    polling: PollingConfig = PollingConfig()
    persistence: PersistenceConfig = PersistenceConfig()
    evaluation: EvaluationConfig = EvaluationConfig()
    backtest: BacktestConfig = BacktestConfig()
    cvd_reset: str = "process"

    @model_validator(mode="after")
    def _check_cvd_reset(self) -> "Config":
        if self.cvd_reset not in ("process", "midnight_utc"):
            raise ValueError(f"cvd_reset must be 'process' or 'midnight_utc', got {self.cvd_reset}")
        return self

    def enabled_exchanges(self) -> dict[str, ExchangeConfig]:
        return {name: ex for name, ex in self.exchanges.items() if ex.enabled}


def load_config(path: Path | None = None, env: dict[str, str] | None = None) -> Config:
    if env is None:
        env = dict(os.environ)

    data: dict = {}
    if path is not None and path.exists():
        with open(path) as f:
            data = yaml.safe_load(f) or {}

    if env.get("PORT"):
        data["port"] = int(env["PORT"])
    if env.get("DATA_DIR"):
        data["data_dir"] = env["DATA_DIR"]
    if env.get("LOG_LEVEL"):
        data["log_level"] = env["LOG_LEVEL"].upper()

    return Config(**data)
