import pytest

from websubhub.config import _load_settings, reload_settings, settings


def test_reload_reads_environment(monkeypatch):
    previous = settings.FANOUT_CONCURRENCY, settings.DELIVERY_MAX_FAILURES
    monkeypatch.setenv("FANOUT_CONCURRENCY", "5")
    monkeypatch.setenv("DELIVERY_MAX_FAILURES", "3")
    try:
        reload_settings()
        assert settings.FANOUT_CONCURRENCY == 5
        assert settings.DELIVERY_MAX_FAILURES == 3
    finally:
        settings.FANOUT_CONCURRENCY, settings.DELIVERY_MAX_FAILURES = previous


def test_unset_variables_keep_current_values(monkeypatch):
    previous = settings.DEMO_TOPIC
    monkeypatch.delenv("DEMO_TOPIC", raising=False)
    settings.DEMO_TOPIC = "tips"
    try:
        assert reload_settings().DEMO_TOPIC == "tips"
    finally:
        settings.DEMO_TOPIC = previous


def test_invalid_values_are_reported(monkeypatch):
    monkeypatch.setenv("FANOUT_CONCURRENCY", "0")
    monkeypatch.setenv("VERIFY_TIMEOUT_SECONDS", "soon")

    with pytest.raises(RuntimeError) as info:
        _load_settings()

    assert "FANOUT_CONCURRENCY" in str(info.value)
    assert "VERIFY_TIMEOUT_SECONDS" in str(info.value)
