"""Periodic expiration of overdue approvals."""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Callable, List

import structlog

from .approvals.engine import ApprovalEngine
from .approvals.models import Approval
from .approvals.notifications import mark_message_expired
from .background import PeriodicTask
from .credentials import CredentialResolver, ResolutionError, TenantCredential
from .slack_client import SlackClient


class ExpirationSweeper:
    """Expire overdue approvals and mark their Slack messages as expired.

    Runs are single-flight: a run that starts while another is in progress
    returns immediately with no work done.
    """

    def __init__(
        self,
        engine: ApprovalEngine,
        resolver: CredentialResolver,
        *,
        client_factory: Callable[[TenantCredential], SlackClient] | None = None,
        interval: float = 60,
    ) -> None:
        self._engine = engine
        self._resolver = resolver
        self._client_factory = client_factory or (lambda credential: SlackClient(token=credential.bot_token))
        self._run_lock = threading.Lock()
        self._task = PeriodicTask(self.run_once, interval=interval, name="approval-expiration-sweep")

    @property
    def running(self) -> bool:
        return self._task.running

    def start(self) -> None:
        self._task.start(run_immediately=True)

    def stop(self, timeout: float | None = 5.0) -> None:
        self._task.stop(timeout)

    def run_once(self, now: datetime | None = None) -> List[Approval]:
        log = structlog.get_logger()
        if not self._run_lock.acquire(blocking=False):
            log.info("expiration_sweep_skipped", reason="already_running")
            return []

        try:
            expired = self._engine.expire_due(now)
            if expired:
                log.info("expiration_sweep_completed", expired_count=len(expired))
            # Records are already expired in the store; one bad tenant must not
            # cost the rest of the batch their message update.
            for approval in expired:
                try:
                    self._update_message(approval)
                except Exception:
                    log.exception(
                        "expired_message_update_failed",
                        approval_id=approval.approval_id,
                        tenant_id=approval.tenant_id,
                    )
            return expired
        finally:
            self._run_lock.release()

    def _update_message(self, approval: Approval) -> None:
        if not approval.channel_ref or not approval.message_ref:
            return
        try:
            credential = self._resolver.resolve(approval.tenant_id)
        except ResolutionError as exc:
            structlog.get_logger().warning(
                "expired_message_update_skipped",
                approval_id=approval.approval_id,
                tenant_id=approval.tenant_id,
                error=str(exc),
            )
            return
        mark_message_expired(slack_client=self._client_factory(credential), approval=approval)
