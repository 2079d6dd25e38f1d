from __future__ import annotations

import pytest
from pydantic import ValidationError

from seo_autopilot.config import AutopilotSettings
from seo_autopilot.config_env import RunMode


def test_defaults_are_conservative():
    settings = AutopilotSettings()

    assert settings.guarded_mode_enabled is False
    assert settings.kill_switch_enabled is True
    assert settings.content_configured is False
    thresholds = settings.decision_thresholds()
    assert thresholds.create.allowed_services == ("plumbing", "electrical")
    assert thresholds.create.allowed_locations == ()
    assert settings.lock_timeouts()[RunMode.DAILY] == 7200.0
    assert settings.learning_thresholds().max_clones_per_run == 10


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("SEO_MAX_CREATES_PER_RUN", "2")
    monkeypatch.setenv("SEO_CREATE_ALLOWED_SERVICES", " plumbing, hvac ,")
    monkeypatch.setenv("SEO_LOG_LEVEL", "debug")
    monkeypatch.setenv("SEO_MAX_PROPOSALS_PER_DAY", "3")

    settings = AutopilotSettings()

    create = settings.decision_thresholds().create
    assert create.max_per_run == 2
    assert create.allowed_services == ("plumbing", "hvac")
    assert settings.log_level == "DEBUG"
    assert settings.rate_limits()["proposals"].per_day == 3


def test_out_of_range_values_are_rejected(monkeypatch):
    monkeypatch.setenv("SEO_KILL_SWITCH_MAX_CLICK_DROP", "2")

    with pytest.raises(ValidationError):
        AutopilotSettings()
