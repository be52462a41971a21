"""Approval store persisted with SQLAlchemy."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any, Dict, List

from sqlalchemy import func, select, text
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from approval_router.db import session_scope
from approval_router.models import (
    ApprovalRecord,
    Installation,
    QueuedMessageRecord,
    StatusTransitionError,
    advance_approval_status,
)

from .models import Approval, ApprovalStatus, Decision, InstallationToken, QueuedMessage
from .store import ApprovalConflict, StoreError, StoreUnavailable, UnknownApproval


def _to_approval(record: ApprovalRecord) -> Approval:
    return Approval(
        approval_id=record.approval_id,
        type=record.type,
        tenant_id=record.tenant_id,
        title=record.title,
        description=record.description,
        payload=record.payload_json,
        priority=record.priority,
        status=record.status,
        squad=record.squad,
        agent=record.agent,
        channel_ref=record.channel_ref,
        message_ref=record.message_ref,
        created_at=record.created_at,
        expires_at=record.expires_at,
        decided_by=record.decided_by,
        decided_at=record.decided_at,
        reason=record.reason,
        outcome_ref=record.outcome_ref,
    )


class SqlApprovalStore:
    """Store approvals, installations and the message queue in a database."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def _scope(self):
        return session_scope(self._session_factory)

    def create_approval(self, approval: Approval) -> Approval:
        record = ApprovalRecord(
            approval_id=approval.approval_id,
            type=approval.type.value,
            tenant_id=approval.tenant_id,
            squad=approval.squad,
            agent=approval.agent,
            title=approval.title,
            description=approval.description,
            payload_json=json.dumps(approval.payload, sort_keys=True, separators=(",", ":")),
            priority=approval.priority,
            status=approval.status.value,
            channel_ref=approval.channel_ref,
            message_ref=approval.message_ref,
            created_at=approval.created_at,
            expires_at=approval.expires_at,
        )
        try:
            with self._scope() as session:
                session.add(record)
        except IntegrityError as exc:
            raise StoreError(f"Approval {approval.approval_id} already exists") from exc
        except OperationalError as exc:
            raise StoreUnavailable("Approval database unavailable") from exc
        return approval

    def get_approval(self, approval_id: str) -> Approval | None:
        try:
            with self._scope() as session:
                record = session.get(ApprovalRecord, approval_id)
                return _to_approval(record) if record is not None else None
        except OperationalError as exc:
            raise StoreUnavailable("Approval database unavailable") from exc

    def list_approvals(self, status: ApprovalStatus | None = None) -> List[Approval]:
        stmt = select(ApprovalRecord).order_by(ApprovalRecord.priority.asc(), ApprovalRecord.created_at.asc())
        if status is not None:
            stmt = stmt.where(ApprovalRecord.status == status.value)
        try:
            with self._scope() as session:
                return [_to_approval(record) for record in session.execute(stmt).scalars()]
        except OperationalError as exc:
            raise StoreUnavailable("Approval database unavailable") from exc

    def decide_approval(
        self,
        approval_id: str,
        decision: Decision,
        actor: str,
        *,
        decided_at: datetime,
        reason: str | None = None,
        outcome_ref: str | None = None,
    ) -> Approval:
        try:
            with self._scope() as session:
                try:
                    record = advance_approval_status(
                        session,
                        approval_id,
                        new_status=decision.status.value,
                        decided_by=actor,
                        decided_at=decided_at,
                        reason=reason,
                        outcome_ref=outcome_ref,
                    )
                except StatusTransitionError as exc:
                    current = session.get(ApprovalRecord, approval_id)
                    raise ApprovalConflict(
                        str(exc), approval=_to_approval(current) if current is not None else None
                    ) from exc
                if record is None:
                    raise UnknownApproval(f"Approval {approval_id} does not exist")
                return _to_approval(record)
        except OperationalError as exc:
            raise StoreUnavailable("Approval database unavailable") from exc

    def expire_due(self, now: datetime) -> List[Approval]:
        expired: List[Approval] = []
        stmt = (
            select(ApprovalRecord.approval_id)
            .where(
                ApprovalRecord.status == ApprovalStatus.PENDING.value,
                ApprovalRecord.expires_at.is_not(None),
                ApprovalRecord.expires_at <= now,
            )
            .order_by(ApprovalRecord.expires_at.asc())
        )
        try:
            with self._scope() as session:
                due_ids = list(session.execute(stmt).scalars())
                for approval_id in due_ids:
                    try:
                        record = advance_approval_status(
                            session,
                            approval_id,
                            new_status=ApprovalStatus.EXPIRED.value,
                            decided_by=None,
                            decided_at=now,
                        )
                    except StatusTransitionError:
                        # Decided between the select and the update.
                        continue
                    if record is not None:
                        expired.append(_to_approval(record))
        except OperationalError as exc:
            raise StoreUnavailable("Approval database unavailable") from exc
        return expired

    def approval_stats(self) -> Dict[str, Any]:
        stmt = select(ApprovalRecord.status, func.count()).group_by(ApprovalRecord.status)
        try:
            with self._scope() as session:
                counts = {status.value: 0 for status in ApprovalStatus}
                for status, count in session.execute(stmt):
                    counts[status] = count
        except OperationalError as exc:
            raise StoreUnavailable("Approval database unavailable") from exc
        counts["total"] = sum(counts.values())
        return counts

    def save_installation(
        self,
        *,
        team_id: str,
        bot_token: str,
        bot_id: str | None = None,
        bot_user_id: str | None = None,
        team_name: str | None = None,
        enterprise_id: str | None = None,
        installed_by: str | None = None,
        scope: str | None = None,
    ) -> None:
        """Insert or replace the installation for *team_id*."""

        try:
            with self._scope() as session:
                installation = session.get(Installation, team_id)
                if installation is None:
                    installation = Installation(team_id=team_id, bot_token=bot_token)
                    session.add(installation)
                installation.bot_token = bot_token
                installation.bot_id = bot_id
                installation.bot_user_id = bot_user_id
                installation.team_name = team_name
                installation.enterprise_id = enterprise_id
                installation.installed_by = installed_by
                installation.scope = scope
                installation.is_active = True
                installation.installed_at = datetime.now(UTC)
        except OperationalError as exc:
            raise StoreUnavailable("Installation database unavailable") from exc

    def deactivate_installation(self, team_id: str) -> None:
        try:
            with self._scope() as session:
                installation = session.get(Installation, team_id)
                if installation is not None:
                    installation.is_active = False
        except OperationalError as exc:
            raise StoreUnavailable("Installation database unavailable") from exc

    def get_installation_token(self, tenant_id: str) -> InstallationToken | None:
        try:
            with self._scope() as session:
                installation = session.get(Installation, tenant_id)
                if installation is None or not installation.is_active:
                    return None
                return InstallationToken(
                    bot_token=installation.bot_token,
                    bot_id=installation.bot_id,
                    bot_user_id=installation.bot_user_id,
                    team_name=installation.team_name,
                )
        except OperationalError as exc:
            raise StoreUnavailable("Installation database unavailable") from exc

    def queue_message(self, message: QueuedMessage) -> None:
        try:
            with self._scope() as session:
                session.add(
                    QueuedMessageRecord(
                        message_id=message.message_id,
                        team_id=message.team_id,
                        channel_id=message.channel_id,
                        user_id=message.user_id,
                        thread_ts=message.thread_ts,
                        text=message.text,
                        context_json=json.dumps(message.context, sort_keys=True),
                    )
                )
        except OperationalError as exc:
            raise StoreUnavailable("Message queue unavailable") from exc

    def mark_message_responded(self, message_id: str, response_ts: str | None) -> None:
        try:
            with self._scope() as session:
                record = session.get(QueuedMessageRecord, message_id)
                if record is None:
                    raise StoreError(f"Queued message {message_id} does not exist")
                record.status = "responded"
                record.response_ts = response_ts
                record.responded_at = datetime.now(UTC)
        except OperationalError as exc:
            raise StoreUnavailable("Message queue unavailable") from exc

    def ping(self) -> bool:
        try:
            with self._scope() as session:
                session.execute(text("SELECT 1"))
        except OperationalError:
            return False
        return True
