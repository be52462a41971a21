"""Contract shared by the approval store implementations."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Protocol

from .models import Approval, ApprovalStatus, Decision, InstallationToken, QueuedMessage


class StoreError(Exception):
    """Base class for approval store failures."""


class StoreUnavailable(StoreError):
    """Raised when the store cannot be reached or fails to answer in time."""


class UnknownApproval(StoreError):
    """Raised when a write targets an approval the store does not know."""


class ApprovalConflict(StoreError):
    """Raised when a decision targets an approval that is no longer pending."""

    def __init__(self, message: str, approval: Approval | None = None) -> None:
        super().__init__(message)
        self.approval = approval


class ApprovalStore(Protocol):
    """Persistence operations consumed by the engine, resolver and router.

    Lookups return ``None`` for confirmed absence; transport problems raise
    :class:`StoreUnavailable` instead.
    """

    def create_approval(self, approval: Approval) -> Approval: ...

    def get_approval(self, approval_id: str) -> Approval | None: ...

    def list_approvals(self, status: ApprovalStatus | None = None) -> List[Approval]: ...

    def decide_approval(
        self,
        approval_id: str,
        decision: Decision,
        actor: str,
        *,
        decided_at: datetime,
        reason: str | None = None,
        outcome_ref: str | None = None,
    ) -> Approval: ...

    def expire_due(self, now: datetime) -> List[Approval]: ...

    def approval_stats(self) -> Dict[str, Any]: ...

    def get_installation_token(self, tenant_id: str) -> InstallationToken | None: ...

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
    ) -> None: ...

    def deactivate_installation(self, team_id: str) -> None: ...

    def queue_message(self, message: QueuedMessage) -> None: ...

    def mark_message_responded(self, message_id: str, response_ts: str | None) -> None: ...

    def ping(self) -> bool: ...
