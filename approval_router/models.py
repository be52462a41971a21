"""SQLAlchemy models for approvals, installations and queued messages."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import List

from sqlalchemy import ForeignKey, Integer, String, Text, select, update
from sqlalchemy.orm import Mapped, Session, mapped_column, relationship

from approval_router.db import Base, UTCDateTime


class ApprovalRecord(Base):
    """Represents an approval request and its eventual decision."""

    __tablename__ = "approvals"

    approval_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    squad: Mapped[str | None] = mapped_column(String(64), nullable=True)
    agent: Mapped[str | None] = mapped_column(String(64), nullable=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending", index=True)
    channel_ref: Mapped[str | None] = mapped_column(String(32), nullable=True)
    message_ref: Mapped[str | None] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=lambda: datetime.now(UTC))
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True, index=True)
    decided_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    decided_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    outcome_ref: Mapped[str | None] = mapped_column(String(512), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    status_history: Mapped[List["StatusHistory"]] = relationship(
        "StatusHistory",
        back_populates="approval",
        cascade="all, delete-orphan",
        order_by="StatusHistory.changed_at",
    )


class StatusHistory(Base):
    """Audit log of approval status transitions."""

    __tablename__ = "status_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    approval_id: Mapped[str] = mapped_column(ForeignKey("approvals.approval_id", ondelete="CASCADE"), nullable=False)
    from_status: Mapped[str] = mapped_column(String(16), nullable=False)
    to_status: Mapped[str] = mapped_column(String(16), nullable=False)
    changed_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=lambda: datetime.now(UTC))
    changed_by: Mapped[str] = mapped_column(String(64), nullable=False)

    approval: Mapped[ApprovalRecord] = relationship("ApprovalRecord", back_populates="status_history")


class Installation(Base):
    """Bot credentials stored for a Slack workspace."""

    __tablename__ = "slack_installations"

    team_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    team_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    enterprise_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    bot_token: Mapped[str] = mapped_column(String(255), nullable=False)
    bot_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    bot_user_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    installed_by: Mapped[str | None] = mapped_column(String(32), nullable=True)
    scope: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(default=True, nullable=False)
    installed_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=lambda: datetime.now(UTC))


class QueuedMessageRecord(Base):
    """Mention or DM waiting for an out-of-band reply."""

    __tablename__ = "slack_messages"

    message_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    team_id: Mapped[str] = mapped_column(String(32), nullable=False)
    channel_id: Mapped[str] = mapped_column(String(32), nullable=False)
    user_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    thread_ts: Mapped[str | None] = mapped_column(String(32), nullable=True)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    context_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=lambda: datetime.now(UTC))
    response_ts: Mapped[str | None] = mapped_column(String(32), nullable=True)
    responded_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class StatusTransitionError(Exception):
    """Raised when an invalid status transition is attempted."""


_ALLOWED_TRANSITIONS = {
    "pending": {"approved", "rejected", "expired"},
    "approved": set(),
    "rejected": set(),
    "expired": set(),
}

SYSTEM_ACTOR = "system"


def advance_approval_status(
    session: Session,
    approval_id: str,
    *,
    new_status: str,
    decided_by: str | None,
    decided_at: datetime | None = None,
    reason: str | None = None,
    outcome_ref: str | None = None,
) -> ApprovalRecord | None:
    """Move a pending approval to *new_status* with a compare-and-set update.

    Returns ``None`` when no approval with *approval_id* exists and raises
    :class:`StatusTransitionError` when the record is no longer pending.
    The ``UPDATE`` is issued before any read so that SQLite takes the write
    lock first.
    """

    if new_status not in _ALLOWED_TRANSITIONS["pending"]:
        raise StatusTransitionError(f"Cannot transition from pending to {new_status}")

    decided_time = decided_at or datetime.now(UTC)
    terminal_decision = new_status in ("approved", "rejected")
    stmt = (
        update(ApprovalRecord)
        .where(ApprovalRecord.approval_id == approval_id, ApprovalRecord.status == "pending")
        .values(
            status=new_status,
            decided_by=decided_by if terminal_decision else None,
            decided_at=decided_time if terminal_decision else None,
            reason=reason,
            outcome_ref=outcome_ref,
            version=ApprovalRecord.version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    result = session.execute(stmt)
    record = session.execute(
        select(ApprovalRecord).where(ApprovalRecord.approval_id == approval_id)
    ).scalar_one_or_none()
    if result.rowcount != 1:
        if record is None:
            return None
        raise StatusTransitionError(
            f"Approval {approval_id} is already {record.status}; cannot transition to {new_status}"
        )

    session.refresh(record)
    session.add(
        StatusHistory(
            approval_id=approval_id,
            from_status="pending",
            to_status=new_status,
            changed_at=decided_time,
            changed_by=decided_by or SYSTEM_ACTOR,
        )
    )
    return record
