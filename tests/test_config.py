# tests/test_config.py
from pathlib import Path

import pytest
from pydantic import ValidationError

from trader_bias.config import Config, WeightsConfig, load_config


def test_load_config_from_yaml(tmp_path: Path):
    config_file = tmp_path / "config.yaml"
    config_file.write_text("""
port: 8080
coins:
  - BTC
  - ETH

exchanges:
  binance:
    streams: [trades, book, mark]
    symbols: [BTC, ETH]
  okx:
    enabled: false

thresholds:
  bull: 0.1
  bear: -0.1
  min_samples: 30

weights:
  orderbook: 0.25
  cvd: 0.25
  funding: 0.10
  oi_delta: 0.10
  long_short: 0.15
  whale_flow: 0.15

reconnect:
  base_ms: 500
  cap_ms: 10000

stall_ms: 15000
cvd_reset: midnight_utc
""")

    config = load_config(config_file, env={})

    assert config.port == 8080
    assert config.coins == ["BTC", "ETH"]
    assert config.exchanges["binance"].symbols == ["BTC", "ETH"]
    assert list(config.enabled_exchanges()) == ["binance"]
    assert config.thresholds.min_samples == 30
    assert config.thresholds.strong == 0.30
    assert config.weights.orderbook == 0.25
    assert config.reconnect.base_ms == 500
    assert config.reconnect.reset_after_ms == 60000
    assert config.stall_ms == 15000
    assert config.cvd_reset == "midnight_utc"


def test_defaults_without_file(tmp_path: Path):
    config = load_config(tmp_path / "missing.yaml", env={})

    assert config.port == 3001
    assert set(config.enabled_exchanges()) == {
        "binance",
        "binance_spot",
        "bybit",
        "bybit_spot",
        "okx",
        "coinbase",
    }
    assert config.backpressure.queue_capacity == 4096
    assert config.horizons.projection_hours == 12
    assert config.retention.open_interest == 86400
    assert config.thresholds.whale_feed_usd == 500000
    assert config.horizons.four_hour_predictions is False
    assert config.polling.vwap_seconds == 300
    assert config.four_hour_weights.funding == 0.0
    assert config.four_hour_weights.cvd == 0.40


def test_environment_overrides_file(tmp_path: Path):
    config_file = tmp_path / "config.yaml"
    config_file.write_text("port: 8080\ndata_dir: /srv/data\n")

    config = load_config(
        config_file, env={"PORT": "9000", "DATA_DIR": "/tmp/tb", "LOG_LEVEL": "debug"}
    )

    assert config.port == 9000
    assert config.data_dir == "/tmp/tb"
    assert config.log_level == "DEBUG"


def test_weights_must_sum_to_one():
    with pytest.raises(ValidationError):
        WeightsConfig(orderbook=0.5)


def test_unknown_cvd_reset_policy_rejected():
    with pytest.raises(ValidationError):
        Config(cvd_reset="weekly")
