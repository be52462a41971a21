"""Approval lifecycle: creation, single decisions and expiration."""

from __future__ import annotations

import threading
import zlib
from datetime import UTC, datetime
from typing import Any, Callable, Dict, List, Mapping
from uuid import uuid4

import structlog

from .models import Approval, ApprovalStatus, ApprovalType, Decision
from .store import ApprovalConflict, ApprovalStore, UnknownApproval

_LOCK_STRIPES = 64


class DecisionError(Exception):
    """Base class for decisions that cannot be applied."""


class ApprovalNotFound(DecisionError):
    """Raised when no approval exists for the requested id."""

    def __init__(self, approval_id: str) -> None:
        super().__init__(f"Approval {approval_id} was not found.")
        self.approval_id = approval_id


class AlreadyDecided(DecisionError):
    """Raised when the approval already reached a terminal status."""

    def __init__(self, approval: Approval) -> None:
        super().__init__(f"Approval {approval.approval_id} is already {approval.status.value}.")
        self.approval = approval


class InvalidApproval(ValueError):
    """Raised when an approval cannot be created as requested."""


def new_approval_id() -> str:
    return f"apr_{uuid4().hex}"


class ApprovalEngine:
    """Own the approval state machine on top of an :class:`ApprovalStore`.

    The store is the system of record. The engine caches pending records it
    has read or written so lookups can be answered quickly; terminal records
    are evicted. Every decision and expiry is committed through the store's
    compare-and-set, and :meth:`refresh` bypasses the cache when a side effect
    depends on the record still being pending.
    """

    def __init__(
        self,
        store: ApprovalStore,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._clock = clock or (lambda: datetime.now(UTC))
        self._cache: Dict[str, Approval] = {}
        self._cache_lock = threading.Lock()
        self._decision_locks = [threading.Lock() for _ in range(_LOCK_STRIPES)]

    @property
    def store(self) -> ApprovalStore:
        return self._store

    def cached(self, approval_id: str) -> Approval | None:
        with self._cache_lock:
            approval = self._cache.get(approval_id)
        return approval.model_copy(deep=True) if approval is not None else None

    def _remember(self, approval: Approval) -> None:
        with self._cache_lock:
            self._cache[approval.approval_id] = approval.model_copy(deep=True)

    def _forget(self, approval_id: str) -> None:
        with self._cache_lock:
            self._cache.pop(approval_id, None)

    def _lock_for(self, approval_id: str) -> threading.Lock:
        return self._decision_locks[zlib.crc32(approval_id.encode("utf-8")) % _LOCK_STRIPES]

    def create(
        self,
        type: ApprovalType | str,
        tenant_id: str,
        title: str,
        description: str | None = None,
        payload: Mapping[str, Any] | None = None,
        priority: int = 5,
        expires_at: datetime | None = None,
        *,
        approval_id: str | None = None,
        squad: str | None = None,
        agent: str | None = None,
        channel_ref: str | None = None,
        message_ref: str | None = None,
    ) -> Approval:
        now = self._clock()
        if expires_at is not None:
            if expires_at.tzinfo is None:
                expires_at = expires_at.replace(tzinfo=UTC)
            if expires_at <= now:
                raise InvalidApproval("expires_at must be in the future")
        if not tenant_id:
            raise InvalidApproval("tenant_id is required")

        approval = Approval(
            approval_id=approval_id or new_approval_id(),
            type=ApprovalType(type),
            tenant_id=tenant_id,
            title=title,
            description=description,
            payload=dict(payload or {}),
            priority=priority,
            status=ApprovalStatus.PENDING,
            squad=squad,
            agent=agent,
            channel_ref=channel_ref,
            message_ref=message_ref,
            created_at=now,
            expires_at=expires_at,
        )
        self._store.create_approval(approval)
        self._remember(approval)
        structlog.get_logger().info(
            "approval_created",
            approval_id=approval.approval_id,
            approval_type=approval.type.value,
            tenant_id=tenant_id,
            expires_at=expires_at.isoformat() if expires_at else None,
        )
        return approval.model_copy(deep=True)

    def get(self, approval_id: str) -> Approval | None:
        cached = self.cached(approval_id)
        if cached is not None:
            return cached

        return self.refresh(approval_id)

    def refresh(self, approval_id: str) -> Approval | None:
        """Read *approval_id* from the store and resync the cache with it."""

        approval = self._store.get_approval(approval_id)
        if approval is None or not approval.is_pending:
            self._forget(approval_id)
        else:
            self._remember(approval)
        return approval.model_copy(deep=True) if approval is not None else None

    def list(self, status: ApprovalStatus | None = ApprovalStatus.PENDING) -> List[Approval]:
        return self._store.list_approvals(status)

    def stats(self) -> Dict[str, Any]:
        return self._store.approval_stats()

    def decide(
        self,
        approval_id: str,
        action: Decision | str,
        actor: str,
        reason: str | None = None,
        outcome_ref: str | None = None,
    ) -> Approval:
        decision = Decision(action)
        log = structlog.get_logger().bind(approval_id=approval_id, decision=decision.value, actor=actor)

        current = self.get(approval_id)
        if current is None:
            log.info("decision_target_missing")
            raise ApprovalNotFound(approval_id)
        if not current.is_pending:
            log.info("decision_already_recorded", status=current.status.value, decided_by=current.decided_by)
            raise AlreadyDecided(current)

        with self._lock_for(approval_id):
            try:
                decided = self._store.decide_approval(
                    approval_id,
                    decision,
                    actor,
                    decided_at=self._clock(),
                    reason=reason,
                    outcome_ref=outcome_ref,
                )
            except ApprovalConflict as exc:
                latest = exc.approval or self._store.get_approval(approval_id)
                if latest is None:
                    self._forget(approval_id)
                    raise ApprovalNotFound(approval_id) from exc
                self._forget(approval_id)
                log.info("decision_conflict", status=latest.status.value, decided_by=latest.decided_by)
                raise AlreadyDecided(latest) from exc
            except UnknownApproval as exc:
                self._forget(approval_id)
                raise ApprovalNotFound(approval_id) from exc

            self._forget(approval_id)

        log.info("approval_decided", status=decided.status.value, outcome_ref=outcome_ref)
        return decided.model_copy(deep=True)

    def expire_due(self, now: datetime | None = None) -> List[Approval]:
        """Expire every pending approval whose deadline has passed."""

        moment = now or self._clock()
        expired = self._store.expire_due(moment)
        expired = sorted(
            (approval for approval in expired if approval.status is ApprovalStatus.EXPIRED),
            key=lambda approval: approval.expires_at or moment,
        )
        for approval in expired:
            self._forget(approval.approval_id)
            structlog.get_logger().info(
                "approval_expired",
                approval_id=approval.approval_id,
                tenant_id=approval.tenant_id,
            )
        return [approval.model_copy(deep=True) for approval in expired]
