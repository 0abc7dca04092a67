"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".agent_orchestrator" / "ao.db")
    slack_bot_token: str | None = None
    slack_channel: str | None = None
    poll_interval: float = 10.0
    sleep_timeout: float = 24 * 60 * 60.0
    unblock_timeout: float = 2 * 60 * 60.0
    activity_max_attempts: int = 3
    activity_timeout: float = 10 * 60.0
    activity_backoff: float = 1.0
    digest_threshold: int = 5
    digest_window: float = 60.0
    global_push_limit: int = 10
    agent_push_limit: int = 3
    push_window: float = 60 * 60.0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("AO_DB_PATH"):
            config.db_path = Path(db)

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")
        config.slack_channel = os.environ.get("AO_SLACK_CHANNEL")

        if poll := os.environ.get("AO_POLL_INTERVAL"):
            config.poll_interval = float(poll)

        if sleep_timeout := os.environ.get("AO_SLEEP_TIMEOUT"):
            config.sleep_timeout = float(sleep_timeout)

        if unblock_timeout := os.environ.get("AO_UNBLOCK_TIMEOUT"):
            config.unblock_timeout = float(unblock_timeout)

        if attempts := os.environ.get("AO_ACTIVITY_MAX_ATTEMPTS"):
            config.activity_max_attempts = int(attempts)

        if timeout := os.environ.get("AO_ACTIVITY_TIMEOUT"):
            config.activity_timeout = float(timeout)

        if backoff := os.environ.get("AO_ACTIVITY_BACKOFF"):
            config.activity_backoff = float(backoff)

        if threshold := os.environ.get("AO_DIGEST_THRESHOLD"):
            config.digest_threshold = int(threshold)

        if window := os.environ.get("AO_DIGEST_WINDOW"):
            config.digest_window = float(window)

        if global_limit := os.environ.get("AO_GLOBAL_PUSH_LIMIT"):
            config.global_push_limit = int(global_limit)

        if agent_limit := os.environ.get("AO_AGENT_PUSH_LIMIT"):
            config.agent_push_limit = int(agent_limit)

        if push_window := os.environ.get("AO_PUSH_WINDOW"):
            config.push_window = float(push_window)

        if level := os.environ.get("AO_LOG_LEVEL"):
            config.log_level = level.upper()

        return config


def get_config() -> Config:
    return Config.from_env()
