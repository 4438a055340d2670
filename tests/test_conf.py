import pytest

import conf
from utils import env
from utils.env import EnvVarSpec


def test_defaults(monkeypatch):
    for var in conf.VALIDATED_ENV_VARS:
        monkeypatch.delenv(var.id, raising=False)

    assert conf.validate()
    settings = conf.get_engine_settings()
    assert settings.max_retries == 3
    assert settings.retry_backoff_ms == 10
    assert settings.store_timeout_seconds == 5.0
    sweeper = conf.get_sweeper_conf()
    assert sweeper.interval_seconds == 30
    assert sweeper.batch_size == 100
    assert conf.get_auction_store() == "couchbase"
    assert conf.get_http_conf().port == 8000


def test_overrides(monkeypatch):
    monkeypatch.setenv("BID_MAX_RETRIES", "7")
    monkeypatch.setenv("STORE_TIMEOUT_SECONDS", "0.5")
    monkeypatch.setenv("SETTLEMENT_SWEEP_INTERVAL_SECONDS", "45")
    monkeypatch.setenv("AUCTION_STORE", "Memory")

    assert conf.validate()
    assert conf.get_engine_settings().max_retries == 7
    assert conf.get_engine_settings().store_timeout_seconds == 0.5
    assert conf.get_sweeper_conf().interval_seconds == 45
    assert conf.get_auction_store() == "memory"


@pytest.mark.parametrize("name, value", [
    ("BID_MAX_RETRIES", "three"),
    ("HTTP_PORT", "eighty"),
    ("AUCTION_STORE", "postgres"),
])
def test_invalid_values_fail_validation(monkeypatch, name, value):
    monkeypatch.setenv(name, value)
    assert not conf.validate()


def test_required_variable_missing(monkeypatch):
    var = EnvVarSpec(id="AUCTION_TEST_REQUIRED")
    monkeypatch.delenv(var.id, raising=False)

    assert env.parse(var) is None
    assert not env.validate([var])

    monkeypatch.setenv(var.id, "present")
    assert env.validate([var])
