"""Configuration loader -- reads config.yaml + .env, validates with Pydantic.

Resolves ${ENV_VAR} references in YAML values from environment variables.
Fails fast with clear errors if required config is missing.
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Any, Literal

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# Default home directory for all state files
DEFAULT_HOME = Path.home() / ".clientdesk"
HOME_ENV_VAR = "CLIENTDESK_HOME"


def _resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ${ENV_VAR} references in config values."""
    if isinstance(value, str):
        pattern = re.compile(r"\$\{(\w+)\}")
        def replacer(match: re.Match) -> str:
            var_name = match.group(1)
            env_value = os.environ.get(var_name)
            if env_value is None:
                logger.warning("Environment variable %s not set", var_name)
                return match.group(0)  # leave unresolved
            return env_value
        return pattern.sub(replacer, value)
    elif isinstance(value, dict):
        return {k: _resolve_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [_resolve_env_vars(item) for item in value]
    return value


# ---------------------------------------------------------------------------
# Config models (Pydantic)
# ---------------------------------------------------------------------------

class ServerConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8321


class SchedulerConfig(BaseModel):
    """Cron cadence and on/off switches for every scheduled job."""

    enabled: bool = True
    timezone: str = "UTC"
    check_interval: str = "30s"

    enable_reminders: bool = True
    enable_contract_reminders: bool = True
    enable_welcome_sequences: bool = True
    enable_scheduled_invoices: bool = True
    enable_recurring_invoices: bool = True
    enable_soft_delete_cleanup: bool = True
    enable_analytics_cleanup: bool = True
    enable_priority_escalation: bool = True
    enable_approval_reminders: bool = True

    reminder_check_interval: str = "0 * * * *"
    invoice_generation_time: str = "0 1 * * *"
    soft_delete_cleanup_time: str = "0 2 * * *"
    analytics_cleanup_time: str = "0 3 * * *"
    priority_escalation_time: str = "0 6 * * *"
    approval_reminder_time: str = "0 9 * * *"

    analytics_retention_days: int = 365
    soft_delete_retention_days: int = 30
    contract_reminder_offsets: list[int] = Field(default_factory=lambda: [0, 3, 7, 14])
    approval_reminder_days: list[int] = Field(default_factory=lambda: [1, 3, 7])

    @field_validator("approval_reminder_days", "contract_reminder_offsets")
    @classmethod
    def _sorted_offsets(cls, value: list[int]) -> list[int]:
        if any(day < 0 for day in value):
            raise ValueError("day offsets must be non-negative")
        return sorted(value)


class WorkflowConfig(BaseModel):
    max_chain_depth: int = 8
    admin_email: str = ""
    portal_url: str = "http://localhost:4000"
    company_name: str = "ClientDesk"
    webhook_timeout: float = 10.0


class EmailConfig(BaseModel):
    provider: Literal["log", "http"] = "log"
    from_address: str = "no-reply@clientdesk.local"
    relay_url: str = ""
    api_key: str = ""
    timeout: float = 10.0


class LoggingConfig(BaseModel):
    level: str = "INFO"


class AppConfig(BaseModel):
    """Top-level application configuration."""

    home_dir: str = str(DEFAULT_HOME)
    database: str = "clientdesk.sqlite"
    server: ServerConfig = Field(default_factory=ServerConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    workflow: WorkflowConfig = Field(default_factory=WorkflowConfig)
    email: EmailConfig = Field(default_factory=EmailConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def home_path(self) -> Path:
        """Resolved home directory as a Path."""
        return Path(self.home_dir).expanduser()

    @property
    def database_path(self) -> Path:
        return self.home_path / self.database


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def load_config(
    config_path: str | Path | None = None,
    env_path: str | Path | None = None,
) -> AppConfig:
    """Load configuration from YAML + .env files.

    1. Load .env into environment variables
    2. Load config.yaml and resolve ${ENV_VAR} references
    3. Validate against Pydantic models
    4. Create the home directory if needed
    """
    home = Path(os.environ.get(HOME_ENV_VAR, str(DEFAULT_HOME))).expanduser()

    if env_path is None:
        env_path = home / ".env"
    if config_path is None:
        config_path = home / "config.yaml"

    env_path = Path(env_path)
    config_path = Path(config_path)

    if env_path.exists():
        load_dotenv(env_path)
        logger.info("Loaded environment from %s", env_path)
    else:
        logger.debug("No .env file at %s", env_path)

    raw_config: dict = {}
    if config_path.exists():
        with open(config_path) as f:
            raw_config = yaml.safe_load(f) or {}
        logger.info("Loaded config from %s", config_path)
    else:
        logger.warning("No config file at %s, using defaults", config_path)

    resolved = _resolve_env_vars(raw_config)

    # Override home_dir if set via env
    if HOME_ENV_VAR in os.environ:
        resolved["home_dir"] = os.environ[HOME_ENV_VAR]

    config = AppConfig(**resolved)
    config.home_path.mkdir(parents=True, exist_ok=True)

    return config
