"""Button actions attached to approval messages."""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List

from .models import ApprovalType, Decision


class ActionId(str, Enum):
    APPROVE_ISSUE = "approve_issue"
    REJECT_ISSUE = "reject_issue"
    MERGE_PR = "merge_pr"
    REQUEST_CHANGES_PR = "request_changes_pr"
    PUBLISH_CONTENT = "publish_content"
    REJECT_CONTENT = "reject_content"
    EXECUTE_RUN = "execute_run"
    SKIP_RUN = "skip_run"
    ACT_BRIEF = "act_brief"
    SAVE_BRIEF = "save_brief"
    DISMISS_BRIEF = "dismiss_brief"
    LEGACY_MERGE_PR = "legacy_merge_pr"
    REVIEW_PR = "review_pr"


@dataclass(frozen=True)
class ActionSpec:
    """How a button renders and what its outcome means for the approval."""

    action_id: ActionId
    approval_type: ApprovalType
    label: str
    affirmative: bool
    style: str | None = None
    past_tense: str = "handled"

    def decision_for(self, success: bool) -> Decision:
        """Approve only when an affirmative action succeeded."""

        if self.affirmative and success:
            return Decision.APPROVE
        return Decision.REJECT


ACTIONS: Dict[ActionId, ActionSpec] = {
    spec.action_id: spec
    for spec in (
        ActionSpec(ActionId.APPROVE_ISSUE, ApprovalType.ISSUE, "Approve", True, "primary", "Issue created"),
        ActionSpec(ActionId.REJECT_ISSUE, ApprovalType.ISSUE, "Reject", False, "danger", "Issue rejected"),
        ActionSpec(ActionId.MERGE_PR, ApprovalType.PR, "Merge", True, "primary", "PR merged"),
        ActionSpec(ActionId.REQUEST_CHANGES_PR, ApprovalType.PR, "Request Changes", False, None, "Changes requested"),
        ActionSpec(ActionId.PUBLISH_CONTENT, ApprovalType.CONTENT, "Publish", True, "primary", "Content approved for publishing"),
        ActionSpec(ActionId.REJECT_CONTENT, ApprovalType.CONTENT, "Reject", False, "danger", "Content rejected"),
        ActionSpec(ActionId.EXECUTE_RUN, ApprovalType.RUN, "Execute", True, "primary", "Run initiated"),
        ActionSpec(ActionId.SKIP_RUN, ApprovalType.RUN, "Skip", False, "danger", "Run skipped"),
        ActionSpec(ActionId.ACT_BRIEF, ApprovalType.BRIEF, "Act On It", True, "primary", "Brief actions created"),
        ActionSpec(ActionId.SAVE_BRIEF, ApprovalType.BRIEF, "Save", True, None, "Brief saved"),
        ActionSpec(ActionId.DISMISS_BRIEF, ApprovalType.BRIEF, "Dismiss", False, "danger", "Brief dismissed"),
    )
}

# Actions triggered from /prs and /review. They act on a pull request
# directly and never on an approval record, so approval messages do not
# offer them.
COMMAND_ACTIONS: Dict[ActionId, ActionSpec] = {
    ActionId.LEGACY_MERGE_PR: ActionSpec(ActionId.LEGACY_MERGE_PR, ApprovalType.PR, "Merge", True, "primary", "PR merged"),
    ActionId.REVIEW_PR: ActionSpec(ActionId.REVIEW_PR, ApprovalType.PR, "Approve", True, None, "PR approved"),
}


def actions_for(approval_type: ApprovalType) -> List[ActionSpec]:
    """Return the buttons offered for *approval_type*, in display order."""

    return [spec for spec in ACTIONS.values() if spec.approval_type is approval_type]


def lookup_action(action_id: str) -> ActionSpec | None:
    try:
        return ACTIONS[ActionId(action_id)]
    except ValueError:
        return None


def build_action_value(approval_id: str) -> str:
    return json.dumps({"approval_id": approval_id}, separators=(",", ":"))


def parse_action_value(raw_value: str | None) -> str:
    """Extract the approval id from a button value.

    Accepts the JSON object written by :func:`build_action_value` as well as
    a bare approval id.
    """

    if not isinstance(raw_value, str) or not raw_value.strip():
        raise ValueError("Invalid action payload.")

    value = raw_value.strip()
    if value.startswith("{"):
        try:
            payload = json.loads(value)
        except json.JSONDecodeError as exc:
            raise ValueError("Invalid action payload.") from exc
        approval_id = payload.get("approval_id") if isinstance(payload, dict) else None
        if not isinstance(approval_id, str) or not approval_id:
            raise ValueError("Invalid action payload.")
        return approval_id

    return value


def build_pull_request_value(repo: str, number: int, title: str) -> str:
    return json.dumps({"repo": repo, "number": number, "title": title}, separators=(",", ":"))


def parse_pull_request_value(raw_value: str | None) -> Dict[str, Any]:
    """Decode the ``{repo, number, title}`` value of a ``/prs`` merge button."""

    try:
        payload = json.loads(raw_value or "")
    except json.JSONDecodeError as exc:
        raise ValueError("Invalid pull request payload.") from exc
    if not isinstance(payload, dict):
        raise ValueError("Invalid pull request payload.")

    repo = payload.get("repo")
    number = payload.get("number")
    if not isinstance(repo, str) or "/" not in repo or isinstance(number, bool) or not isinstance(number, int):
        raise ValueError("Invalid pull request payload.")
    return {"repo": repo, "number": number, "title": str(payload.get("title") or "")}
