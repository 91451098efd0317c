import logging

import pytest
from pydantic import ValidationError

from batchpoll.adapters.logging_adapter import LoggingAdapter
from batchpoll.core.config import PollerConfig
from batchpoll.core.logging_config import coerce_level, configure_logging, correlation_id_var
from batchpoll.core.models.entry import Region
from batchpoll.core.settings import load_settings


def test_defaults(monkeypatch):
    monkeypatch.delenv("BATCHPOLL_REGION", raising=False)
    settings = load_settings(_env_file=None)

    assert settings.BATCHPOLL_REGION == Region.europe
    assert settings.BATCHPOLL_RETRY_DELAYS == [1800.0, 3600.0, 14400.0]
    assert settings.BATCHPOLL_DATABASE_URL.startswith("sqlite+pysqlite://")


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("BATCHPOLL_REGION", "japan")
    monkeypatch.setenv("BATCHPOLL_MAX_SUBMIT_RETRIES", "7")
    monkeypatch.setenv("BATCHPOLL_RETRY_DELAYS", "[60, 120]")
    monkeypatch.setenv("BATCHPOLL_REMOTE_API_KEY", "s3cret")

    settings = load_settings(_env_file=None)

    assert settings.BATCHPOLL_REGION == Region.japan
    assert settings.BATCHPOLL_MAX_SUBMIT_RETRIES == 7
    assert settings.BATCHPOLL_RETRY_DELAYS == [60.0, 120.0]
    assert settings.BATCHPOLL_REMOTE_API_KEY.get_secret_value() == "s3cret"
    assert "s3cret" not in repr(settings)


def test_blank_merchant_id_is_rejected():
    with pytest.raises(ValidationError):
        load_settings(_env_file=None, BATCHPOLL_MERCHANT_ID="   ")


def test_poller_config_from_settings():
    settings = load_settings(
        _env_file=None,
        BATCHPOLL_MAX_INVOKE_RETRIES=9,
        BATCHPOLL_LEASE_SECONDS=30,
        BATCHPOLL_RETRY_DELAYS=[5],
    )
    config = PollerConfig.from_app_settings(settings)

    assert config.max_invoke_retries == 9
    assert config.max_for("invoke") == 9
    assert config.max_for("verification") == 3
    assert config.lease_seconds == 30
    assert config.retry_delays == [5]


def test_poller_config_validation():
    with pytest.raises(ValidationError):
        PollerConfig(retry_delays=[60, -1])
    with pytest.raises(ValidationError):
        PollerConfig(unknown_option=True)
    config = PollerConfig()
    with pytest.raises(ValidationError):
        config.max_submit_retries = 10


def test_coerce_level():
    assert coerce_level("debug") == logging.DEBUG
    assert coerce_level(None) == logging.INFO
    assert coerce_level("nonsense") == logging.INFO
    assert coerce_level(logging.ERROR) == logging.ERROR


def test_configure_logging_injects_correlation_id(capsys):
    configure_logging("INFO")
    token = correlation_id_var.set("tick-123")
    try:
        LoggingAdapter("batchpoll.test").info("hello %s", "world")
        LoggingAdapter("batchpoll.test").warning("careful")
    finally:
        correlation_id_var.reset(token)

    captured = capsys.readouterr()
    assert "tick-123: hello world" in captured.out
    assert "careful" in captured.err
    assert "careful" not in captured.out
