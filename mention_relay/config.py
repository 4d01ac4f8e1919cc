"""Configuration management for the Slack mention relay."""

import os
from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator

from .template import DEFAULT_NOTES_TEMPLATE, DEFAULT_TITLE_TEMPLATE, unknown_placeholders

CONFIG_DIR = Path("~/.config/slack-mention-relay")


class SlackConfig(BaseModel):
    """Slack workspace connection settings."""

    app_token: SecretStr = Field(..., description="App-level token for Socket Mode (xapp-...)")
    bot_token: SecretStr = Field(..., description="Bot token for Web API calls (xoxb-...)")
    tracked_user_id: str = Field(
        ..., pattern=r"^([UW][A-Z0-9]+)?$", description="Slack user ID whose mentions are relayed"
    )
    api_base_url: str = "https://slack.com/api"


class TelegramConfig(BaseModel):
    """Telegram Bot API settings for the telegram reminder backend."""

    bot_token: SecretStr
    chat_id: str


class ReminderConfig(BaseModel):
    """Where and how reminders are created for each mention."""

    backend: Literal["apple_reminders", "telegram", "log"] = "log"
    list_name: str = Field(default="Reminders", description="Apple Reminders list name")
    title_template: str = DEFAULT_TITLE_TEMPLATE
    notes_template: str = DEFAULT_NOTES_TEMPLATE
    telegram: Optional[TelegramConfig] = None

    @field_validator("title_template", "notes_template")
    @classmethod
    def check_placeholders(cls, value: str) -> str:
        unknown = unknown_placeholders(value)
        if unknown:
            raise ValueError(f"Unknown placeholder(s): {', '.join(unknown)}")
        return value

    @model_validator(mode="after")
    def check_backend(self) -> "ReminderConfig":
        if self.backend == "telegram" and self.telegram is None:
            raise ValueError("reminders.telegram is required when backend is 'telegram'")
        return self


class NotificationConfig(BaseModel):
    """Local desktop notification settings."""

    enabled: bool = True
    title: str = "Slack mention"


class RelayConfig(BaseModel):
    """Relay behavior settings."""

    reaction_emoji: str = Field(default="eyes", min_length=1)
    auto_join_channels: bool = False
    channel_scan_interval: int = Field(
        default=3600, ge=60, description="Seconds between public channel scans"
    )
    reconnect_initial_delay: float = Field(default=1.0, gt=0)
    reconnect_max_delay: float = Field(default=30.0, gt=0)

    # State settings
    database_path: str = Field(
        default=str(CONFIG_DIR / "state" / "relay.db"), description="Path to SQLite database file"
    )
    log_file: Optional[str] = Field(
        default=str(CONFIG_DIR / "app.log"), description="Rotated log file (null to disable)"
    )


class Config(BaseModel):
    """Root configuration model."""

    slack: SlackConfig
    reminders: ReminderConfig = ReminderConfig()
    notifications: NotificationConfig = NotificationConfig()
    relay: RelayConfig = RelayConfig()

    def missing_credentials(self) -> list[str]:
        """Names of required credentials that are empty."""
        missing = []
        if not self.slack.app_token.get_secret_value():
            missing.append("slack.app_token")
        if not self.slack.bot_token.get_secret_value():
            missing.append("slack.bot_token")
        if not self.slack.tracked_user_id:
            missing.append("slack.tracked_user_id")
        return missing

    @property
    def is_ready(self) -> bool:
        """Whether there is enough to start listening."""
        return not self.missing_credentials()


def load_config(config_path: str | Path = "config.yaml") -> Config:
    """Load and validate configuration from YAML file.

    Supports ${VAR_NAME} syntax for environment variable expansion.

    Args:
        config_path: Path to the configuration file.

    Returns:
        Validated Config object.

    Raises:
        FileNotFoundError: If config file doesn't exist.
        ValidationError: If config is invalid.
        ValueError: If referenced environment variable is not set.
    """
    path = Path(config_path).expanduser()
    if not path.exists():
        raise FileNotFoundError(
            f"Config file not found: {path}\n"
            "Copy config.example.yaml to config.yaml and fill in your values."
        )

    with path.open() as f:
        raw_config = yaml.safe_load(f) or {}

    # Expand environment variables in the format ${VAR_NAME}
    def expand_env_vars(obj):
        if isinstance(obj, dict):
            return {k: expand_env_vars(v) for k, v in obj.items()}
        elif isinstance(obj, list):
            return [expand_env_vars(item) for item in obj]
        elif isinstance(obj, str) and obj.startswith("${") and obj.endswith("}"):
            env_var = obj[2:-1]
            value = os.getenv(env_var)
            if value is None:
                raise ValueError(f"Environment variable '{env_var}' is not set")
            return value
        return obj

    raw_config = expand_env_vars(raw_config)

    return Config(**raw_config)
