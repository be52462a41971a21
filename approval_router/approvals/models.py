"""Pydantic models describing approvals and related records."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Dict

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class ApprovalType(str, Enum):
    ISSUE = "issue"
    PR = "pr"
    CONTENT = "content"
    RUN = "run"
    BRIEF = "brief"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not ApprovalStatus.PENDING


class Decision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"

    @property
    def status(self) -> ApprovalStatus:
        if self is Decision.APPROVE:
            return ApprovalStatus.APPROVED
        return ApprovalStatus.REJECTED


def _decode_payload(value: Any) -> Any:
    if value is None:
        return {}
    if isinstance(value, str):
        if not value.strip():
            return {}
        return json.loads(value)
    return value


class Approval(BaseModel):
    """An approval request tracked until it reaches a terminal status."""

    model_config = ConfigDict(populate_by_name=True)

    approval_id: str
    type: ApprovalType
    tenant_id: str = Field(validation_alias=AliasChoices("tenant_id", "team_id"))
    title: str
    description: str | None = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    priority: int = 5
    status: ApprovalStatus = ApprovalStatus.PENDING
    squad: str | None = None
    agent: str | None = None
    channel_ref: str | None = Field(None, validation_alias=AliasChoices("channel_ref", "slack_channel"))
    message_ref: str | None = Field(None, validation_alias=AliasChoices("message_ref", "slack_ts"))
    created_at: datetime
    expires_at: datetime | None = None
    decided_by: str | None = None
    decided_at: datetime | None = None
    reason: str | None = None
    outcome_ref: str | None = None

    @field_validator("payload", mode="before")
    @classmethod
    def _parse_payload(cls, value: Any) -> Any:
        return _decode_payload(value)

    @field_validator("created_at", "expires_at", "decided_at")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    @property
    def is_pending(self) -> bool:
        return self.status is ApprovalStatus.PENDING

    def to_wire(self) -> dict[str, Any]:
        """Serialise using the scheduler API's field names."""

        data = self.model_dump(mode="json")
        data["team_id"] = data.pop("tenant_id")
        data["slack_channel"] = data.pop("channel_ref")
        data["slack_ts"] = data.pop("message_ref")
        return data


class ApprovalRequest(BaseModel):
    """Inbound body of ``POST /api/approval/send``."""

    approval_id: str | None = None
    type: ApprovalType
    title: str
    tenant_id: str | None = Field(None, validation_alias=AliasChoices("tenant_id", "team_id"))
    description: str | None = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    priority: int = 5
    squad: str | None = None
    agent: str | None = None
    expires_at: datetime | None = None
    channel: str | None = None

    @field_validator("payload", mode="before")
    @classmethod
    def _parse_payload(cls, value: Any) -> Any:
        return _decode_payload(value)

    @field_validator("expires_at")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    @field_validator("title")
    @classmethod
    def _require_title(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("title must not be empty")
        return value.strip()


class InstallationToken(BaseModel):
    """Bot credentials returned by the installation lookup."""

    bot_token: str
    bot_id: str | None = None
    bot_user_id: str | None = None
    team_name: str | None = None


class QueuedMessage(BaseModel):
    """A mention or DM handed to the message queue for asynchronous handling."""

    message_id: str
    team_id: str
    channel_id: str
    user_id: str | None = None
    thread_ts: str | None = None
    text: str
    context: Dict[str, Any] = Field(default_factory=dict)
