from __future__ import annotations

from backend.followups.errors import ErrorKind, OperationResult
from backend.followups.services.timers import start_timer
from backend.followups.settings import load_settings, parse_bool
from backend.followups.store import (
    SETTING_FOLLOWUP_DELAY_MINUTES,
    SETTING_FOLLOWUP_ENABLED,
    InMemoryStore,
)


def test_webhook_auth_defaults_follow_app_env(monkeypatch) -> None:
    monkeypatch.delenv("BOOKING_WEBHOOK_AUTH_ENABLED", raising=False)

    monkeypatch.setenv("APP_ENV", "testing")
    assert load_settings().booking_webhook_auth_enabled is False

    monkeypatch.setenv("APP_ENV", "production")
    settings = load_settings()
    assert settings.booking_webhook_auth_enabled is True
    assert settings.is_production


def test_delay_minutes_are_clamped(monkeypatch) -> None:
    monkeypatch.setenv("FOLLOWUP_DELAY_MINUTES", "0")
    assert load_settings().followup_delay_minutes == 1

    monkeypatch.setenv("FOLLOWUP_DELAY_MINUTES", "99999")
    assert load_settings().followup_delay_minutes == 1440

    monkeypatch.setenv("FOLLOWUP_DELAY_MINUTES", "soon")
    assert load_settings().followup_delay_minutes == 15


def test_store_override_falls_back_on_bad_value(monkeypatch) -> None:
    monkeypatch.delenv("FOLLOWUP_DELAY_MINUTES", raising=False)
    defaults = load_settings().followup_defaults()
    store = InMemoryStore()

    store.set_app_setting(SETTING_FOLLOWUP_DELAY_MINUTES, "later")
    assert store.followup_config(defaults).delay_minutes == defaults.delay_minutes

    store.set_app_setting(SETTING_FOLLOWUP_DELAY_MINUTES, "30")
    assert store.followup_config(defaults).delay_minutes == 30


def test_internal_detail_is_hidden_in_production() -> None:
    result = OperationResult.internal("failed to start followup timer", KeyError("lead"))
    assert result.public_message(expose_detail=False) == "failed to start followup timer"
    assert "KeyError" in result.public_message(expose_detail=True)


def test_string_flag_override_disables_followups(store, lead_id, document_id, now) -> None:
    defaults = load_settings().followup_defaults()
    store.set_app_setting(SETTING_FOLLOWUP_ENABLED, "false")
    config = store.followup_config(defaults)
    assert config.enabled is False

    result = start_timer(
        store=store,
        config=config,
        lead_id=lead_id,
        document_id=document_id,
        viewer_identity="1.2.3.4",
        now=now,
    )
    assert result.error == ErrorKind.precondition_failed
    assert result.reason == "feature_disabled"
    assert store.followup_tasks == {}

    store.set_app_setting(SETTING_FOLLOWUP_ENABLED, "on")
    assert store.followup_config(defaults).enabled is True


def test_parse_bool_falls_back_on_unknown_types() -> None:
    assert parse_bool("0", True) is False
    assert parse_bool(" Yes ", False) is True
    assert parse_bool(False, True) is False
    assert parse_bool(None, True) is True
    assert parse_bool(["true"], False) is False
