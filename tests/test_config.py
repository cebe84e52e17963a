from __future__ import annotations

import pytest
import yaml
from pydantic import ValidationError

from core.config import AppConfig, SchedulerConfig, load_config
from core.duration import duration_seconds, parse_duration


def test_defaults_without_files(tmp_path, monkeypatch):
    home = tmp_path / "desk"
    monkeypatch.setenv("CLIENTDESK_HOME", str(home))

    config = load_config()

    assert config.home_path == home
    assert home.is_dir()
    assert config.database_path == home / "clientdesk.sqlite"
    assert config.scheduler.contract_reminder_offsets == [0, 3, 7, 14]
    assert config.email.provider == "log"


def test_yaml_values_resolve_env_vars(tmp_path, monkeypatch):
    monkeypatch.setenv("CLIENTDESK_HOME", str(tmp_path))
    (tmp_path / ".env").write_text("RELAY_KEY=abc123\n")
    (tmp_path / "config.yaml").write_text(yaml.safe_dump({
        "email": {"provider": "http", "relay_url": "https://mail.test/send", "api_key": "${RELAY_KEY}"},
        "workflow": {"admin_email": "${UNSET_ADMIN_EMAIL}"},
        "scheduler": {"timezone": "Europe/Athens", "approval_reminder_days": [7, 1]},
    }))
    # Registered with monkeypatch so the value load_dotenv sets is undone
    monkeypatch.setenv("RELAY_KEY", "")
    monkeypatch.delenv("RELAY_KEY")
    monkeypatch.delenv("UNSET_ADMIN_EMAIL", raising=False)

    config = load_config()

    assert config.email.api_key == "abc123"
    assert config.workflow.admin_email == "${UNSET_ADMIN_EMAIL}"
    assert config.scheduler.timezone == "Europe/Athens"
    assert config.scheduler.approval_reminder_days == [1, 7]


def test_negative_offsets_are_rejected():
    with pytest.raises(ValidationError):
        SchedulerConfig(contract_reminder_offsets=[0, -3])


def test_unknown_email_provider_is_rejected():
    with pytest.raises(ValidationError):
        AppConfig(email={"provider": "pigeon"})


@pytest.mark.parametrize("text, seconds", [("30s", 30), ("5m", 300), ("1h", 3600), ("2d", 172800)])
def test_durations(text, seconds):
    assert duration_seconds(text) == seconds
    assert parse_duration(text).total_seconds() == seconds


def test_bad_duration():
    with pytest.raises(ValueError):
        parse_duration("soon")
