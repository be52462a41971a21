"""Pydantic-based configuration helpers for the approval router."""

from __future__ import annotations

import os
from functools import lru_cache
from typing import Iterable, List

from pydantic import BaseModel, Field, ValidationError, field_validator

DEFAULT_BOT_SCOPES = (
    "chat:write,chat:write.public,channels:read,groups:read,im:read,im:write,im:history,"
    "users:read,users:read.email,reactions:read,reactions:write,files:read,app_mentions:read,commands"
)


class AppSettings(BaseModel):
    """Settings required to verify Slack traffic and reach the approval store."""

    signing_secret: str = Field(..., alias="SLACK_SIGNING_SECRET")

    # Static credential used when a team has no stored installation.
    fallback_bot_token: str | None = Field(None, alias="SLACK_BOT_TOKEN")
    fallback_bot_id: str | None = Field(None, alias="SLACK_BOT_ID")
    fallback_bot_user_id: str | None = Field(None, alias="SLACK_BOT_USER_ID")
    default_team_id: str | None = Field(None, alias="SLACK_TEAM_ID")

    scheduler_api_url: str | None = Field(None, alias="SCHEDULER_API_URL")
    scheduler_api_timeout: float = Field(5.0, alias="SCHEDULER_API_TIMEOUT")
    database_url: str = Field("sqlite:///approvals.db", alias="DATABASE_URL")

    credential_cache_ttl: int = Field(300, alias="CREDENTIAL_CACHE_TTL")
    replay_window: int = Field(300, alias="REPLAY_WINDOW")
    expiration_sweep_interval: int = Field(60, alias="EXPIRATION_SWEEP_INTERVAL")
    expiration_sweep_enabled: bool = Field(True, alias="EXPIRATION_SWEEP_ENABLED")
    rate_limit_per_window: int = Field(100, alias="RATE_LIMIT_PER_WINDOW")
    rate_limit_window: int = Field(60, alias="RATE_LIMIT_WINDOW")

    channel_issues: str = Field("issue-approvals", alias="SLACK_CHANNEL_ISSUES")
    channel_prs: str = Field("pr-approvals", alias="SLACK_CHANNEL_PRS")
    channel_content: str = Field("content-approvals", alias="SLACK_CHANNEL_CONTENT")
    channel_runs: str = Field("run-approvals", alias="SLACK_CHANNEL_RUNS")
    channel_briefs: str = Field("brief-approvals", alias="SLACK_CHANNEL_BRIEFS")

    # OAuth install flow; disabled unless both client credentials are set.
    client_id: str | None = Field(None, alias="SLACK_CLIENT_ID")
    client_secret: str | None = Field(None, alias="SLACK_CLIENT_SECRET")
    oauth_redirect_uri: str | None = Field(None, alias="SLACK_REDIRECT_URI")
    oauth_scopes: str = Field(DEFAULT_BOT_SCOPES, alias="SLACK_SCOPES")
    oauth_user_scopes: str = Field("", alias="SLACK_USER_SCOPES")
    oauth_state_ttl: int = Field(600, alias="OAUTH_STATE_TTL")

    github_repos: str = Field("", alias="GITHUB_REPOS")
    github_token: str | None = Field(None, alias="GITHUB_TOKEN")
    github_api_url: str = Field("https://api.github.com", alias="GITHUB_API_URL")

    internal_api_token: str | None = Field(None, alias="INTERNAL_API_TOKEN")
    log_level: str = Field("INFO", alias="LOG_LEVEL")

    @field_validator(
        "fallback_bot_token",
        "fallback_bot_id",
        "fallback_bot_user_id",
        "default_team_id",
        "scheduler_api_url",
        "internal_api_token",
        "client_id",
        "client_secret",
        "oauth_redirect_uri",
        "github_token",
        mode="before",
    )
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator(
        "credential_cache_ttl",
        "replay_window",
        "expiration_sweep_interval",
        "rate_limit_per_window",
        "rate_limit_window",
        "oauth_state_ttl",
    )
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("Intervals and limits must be greater than zero")
        return value

    @field_validator("scheduler_api_timeout")
    @classmethod
    def _ensure_positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("Scheduler API timeout must be greater than zero")
        return value

    @property
    def approval_channels(self) -> dict[str, str]:
        """Channel name per approval type value."""

        return {
            "issue": self.channel_issues,
            "pr": self.channel_prs,
            "content": self.channel_content,
            "run": self.channel_runs,
            "brief": self.channel_briefs,
        }

    @property
    def oauth_enabled(self) -> bool:
        return bool(self.client_id and self.client_secret)

    @property
    def bot_scopes(self) -> List[str]:
        return _split_csv(self.oauth_scopes)

    @property
    def user_scopes(self) -> List[str]:
        return _split_csv(self.oauth_user_scopes)

    @property
    def repos(self) -> List[str]:
        """Repositories listed by ``/prs``, as ``owner/name``."""

        return _split_csv(self.github_repos)


def _split_csv(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _format_missing(fields: Iterable[str]) -> str:
    """Return a human-friendly comma-separated list of missing env vars."""

    unique: List[str] = []
    for field in fields:
        if field not in unique:
            unique.append(field)
    return ", ".join(unique)


@lru_cache()
def get_settings() -> AppSettings:
    """Fetch and cache settings from environment variables."""

    try:
        return AppSettings.model_validate(os.environ)
    except ValidationError as exc:
        missing = [str(error["loc"][0]) for error in exc.errors() if error["type"] == "missing"]
        if not missing:
            raise RuntimeError(f"Invalid configuration: {exc}") from exc
        message = (
            "Missing required environment variables: "
            f"{_format_missing(missing)}"
        )
        raise RuntimeError(message) from exc
