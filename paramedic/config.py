from __future__ import annotations

from enum import Enum

from pydantic import Field
from pydantic_settings import BaseSettings


class OverlapPolicy(str, Enum):
    """What to do with a tick that arrives while a trigger is still in flight."""

    ALLOW = "allow"
    SKIP = "skip"


class Settings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_prefix": "PARAMEDIC_",
        "extra": "ignore",
    }

    # Scheduling defaults (milliseconds)
    default_interval_ms: int = Field(5000, gt=0)
    probe_timeout_ms: int = Field(0, ge=0)  # 0 = no deadline
    run_all_timeout_ms: int = Field(30_000, gt=0)  # deadline for on-demand runs without one
    overlap_policy: OverlapPolicy = OverlapPolicy.ALLOW

    # Presentation
    title: str = "Paramedic Server"

    # HTTP presenter
    api_host: str = "0.0.0.0"
    api_port: int = 8080

    # Logging
    log_level: str = "INFO"

    # Notifications (optional, Slack / Telegram)
    slack_webhook_url: str = ""
    telegram_bot_token: str = ""
    telegram_chat_id: str = ""


settings = Settings()
