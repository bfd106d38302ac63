"""Configuration loader -- reads config.yaml + .env, validates with Pydantic.

Resolves ${ENV_VAR} references in YAML values from environment variables.
Fails fast with clear errors if the config is invalid.
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Annotated, Any, Literal

import yaml
from dotenv import load_dotenv
from pydantic import AfterValidator, BaseModel, Field

from core.duration import parse_duration

logger = logging.getLogger(__name__)

# Default home directory for all state files
DEFAULT_HOME = Path.home() / ".leadpilot"
HOME_ENV_VAR = "LEADPILOT_HOME"

_ENV_REF = re.compile(r"\$\{(\w+)\}")


def _resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ${ENV_VAR} references in config values."""
    if isinstance(value, str):
        def replacer(match: re.Match) -> str:
            var_name = match.group(1)
            env_value = os.environ.get(var_name)
            if env_value is None:
                logger.warning("Environment variable %s not set", var_name)
                return match.group(0)  # leave unresolved
            return env_value
        return _ENV_REF.sub(replacer, value)
    elif isinstance(value, dict):
        return {k: _resolve_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [_resolve_env_vars(item) for item in value]
    return value


def _check_duration(value: str) -> str:
    parse_duration(value)  # raises ValueError with a readable message
    return value


DurationStr = Annotated[str, AfterValidator(_check_duration)]


# ---------------------------------------------------------------------------
# Config models (Pydantic)
# ---------------------------------------------------------------------------

class ServerConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8420


class DispatcherConfig(BaseModel):
    check_interval: DurationStr = "60s"
    batch_size: int = Field(default=5, ge=1)
    drain_timeout: DurationStr = "30s"
    # Priority of tasks created for actions with delay_minutes > 0
    delayed_action_priority: int = Field(default=3, ge=1, le=5)


class AutomationConfig(BaseModel):
    sweep_interval: DurationStr = "60s"
    timezone: str = "UTC"
    schedule_resolution: Literal["hour", "minute"] = "hour"


class HandlerConfig(BaseModel):
    """An HTTP-backed task handler for one task type."""

    enabled: bool = True
    url: str = ""
    timeout: DurationStr = "30s"
    headers: dict[str, str] = Field(default_factory=dict)


class MaintenanceConfig(BaseModel):
    enabled: bool = True
    retention_days: int = Field(default=30, ge=1)


class RecurringJobConfig(BaseModel):
    """A cron-style job that enqueues one task per owner each time it matches."""

    name: str
    cron: str
    task_type: str
    priority: int = Field(default=2, ge=1, le=5)
    owners: list[str] = Field(default_factory=list)
    payload: dict = Field(default_factory=dict)
    enabled: bool = True


class EmailConfig(BaseModel):
    api_url: str = ""
    api_key: str = ""
    sender: str = "no-reply@leadpilot.local"
    timeout: DurationStr = "15s"


class WebhookConfig(BaseModel):
    timeout: DurationStr = "10s"
    user_agent: str = "leadpilot-webhooks/1.0"


class LoggingConfig(BaseModel):
    level: str = "INFO"
    audit_events: bool = True


class AppConfig(BaseModel):
    """Top-level application configuration."""

    home_dir: str = str(DEFAULT_HOME)
    server: ServerConfig = Field(default_factory=ServerConfig)
    dispatcher: DispatcherConfig = Field(default_factory=DispatcherConfig)
    automations: AutomationConfig = Field(default_factory=AutomationConfig)
    handlers: dict[str, HandlerConfig] = Field(default_factory=dict)
    maintenance: MaintenanceConfig = Field(default_factory=MaintenanceConfig)
    recurring: list[RecurringJobConfig] = Field(default_factory=list)
    email: EmailConfig = Field(default_factory=EmailConfig)
    webhooks: WebhookConfig = Field(default_factory=WebhookConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def home_path(self) -> Path:
        """Resolved home directory as a Path."""
        return Path(self.home_dir).expanduser()


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
    4. Create home directory structure if needed
    """
    home = Path(os.environ.get(HOME_ENV_VAR, str(DEFAULT_HOME))).expanduser()

    env_path = Path(env_path) if env_path is not None else home / ".env"
    config_path = Path(config_path) if config_path is not None else home / "config.yaml"

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

    # The env var wins over the file so tests and containers can relocate state
    if HOME_ENV_VAR in os.environ:
        resolved["home_dir"] = os.environ[HOME_ENV_VAR]

    config = AppConfig(**resolved)
    _ensure_directories(config.home_path)
    return config


def _ensure_directories(home: Path) -> None:
    """Create the state directory structure if it doesn't exist."""
    for d in (home, home / "events", home / "leads", home / "contacts", home / "email_templates"):
        d.mkdir(parents=True, exist_ok=True)
