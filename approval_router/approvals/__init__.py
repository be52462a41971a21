"""Approval models, storage and lifecycle."""

from .actions import ACTIONS, ActionId, ActionSpec, actions_for, lookup_action
from .engine import AlreadyDecided, ApprovalEngine, ApprovalNotFound, InvalidApproval, new_approval_id
from .models import Approval, ApprovalRequest, ApprovalStatus, ApprovalType, Decision
from .store import ApprovalConflict, ApprovalStore, StoreError, StoreUnavailable, UnknownApproval

__all__ = [
    "ACTIONS",
    "ActionId",
    "ActionSpec",
    "actions_for",
    "lookup_action",
    "AlreadyDecided",
    "ApprovalEngine",
    "ApprovalNotFound",
    "InvalidApproval",
    "new_approval_id",
    "Approval",
    "ApprovalRequest",
    "ApprovalStatus",
    "ApprovalType",
    "Decision",
    "ApprovalConflict",
    "ApprovalStore",
    "StoreError",
    "StoreUnavailable",
    "UnknownApproval",
]
