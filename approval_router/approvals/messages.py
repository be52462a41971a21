"""Block Kit message builders for approvals."""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Sequence

from .actions import ActionId, actions_for, build_action_value, build_pull_request_value
from .executors import PullRequest
from .models import Approval, ApprovalStatus, ApprovalType

_TYPE_EMOJI: Dict[ApprovalType, str] = {
    ApprovalType.ISSUE: ":memo:",
    ApprovalType.PR: ":twisted_rightwards_arrows:",
    ApprovalType.CONTENT: ":page_facing_up:",
    ApprovalType.RUN: ":robot_face:",
    ApprovalType.BRIEF: ":brain:",
}

_STATUS_EMOJI: Dict[ApprovalStatus, str] = {
    ApprovalStatus.PENDING: ":hourglass_flowing_sand:",
    ApprovalStatus.APPROVED: ":white_check_mark:",
    ApprovalStatus.REJECTED: ":x:",
    ApprovalStatus.EXPIRED: ":hourglass:",
}

HIGH_PRIORITY_THRESHOLD = 5
_PREVIEW_LIMIT = 800
_MISSING_VALUE = "_Not provided_"


def type_emoji(approval_type: ApprovalType) -> str:
    return _TYPE_EMOJI[approval_type]


def status_emoji(status: ApprovalStatus) -> str:
    return _STATUS_EMOJI[status]


def _context_block(approval: Approval) -> Dict[str, Any]:
    owner = approval.squad or approval.tenant_id
    if approval.agent:
        owner = f"{owner} / {approval.agent}"
    elements = [{"type": "mrkdwn", "text": f"*Squad:* {owner}"}]
    if approval.expires_at is not None:
        expire_ts = int(approval.expires_at.timestamp())
        fallback = approval.expires_at.isoformat()
        elements.append(
            {"type": "mrkdwn", "text": f"*Expires:* <!date^{expire_ts}^{{date_short_pretty}} at {{time}}|{fallback}>"}
        )
    if approval.priority < HIGH_PRIORITY_THRESHOLD:
        elements.append({"type": "mrkdwn", "text": ":rotating_light: *High Priority*"})
    return {"type": "context", "elements": elements}


def _payload_section(approval: Approval) -> Dict[str, Any] | None:
    lines: List[str] = []
    for key, value in approval.payload.items():
        if isinstance(value, (list, tuple)):
            value = ", ".join(str(item) for item in value) or _MISSING_VALUE
        elif value is None or (isinstance(value, str) and not value.strip()):
            value = _MISSING_VALUE
        text = str(value)
        if len(text) > _PREVIEW_LIMIT:
            text = text[:_PREVIEW_LIMIT] + "..."
        lines.append(f"*{key.replace('_', ' ').title()}:* {text}")
    if not lines:
        return None
    return {"type": "section", "text": {"type": "mrkdwn", "text": "\n".join(lines)}}


def _action_buttons(approval: Approval) -> Dict[str, Any]:
    elements = []
    value = build_action_value(approval.approval_id)
    for spec in actions_for(approval.type):
        button: Dict[str, Any] = {
            "type": "button",
            "text": {"type": "plain_text", "text": spec.label, "emoji": True},
            "action_id": spec.action_id.value,
            "value": value,
        }
        if spec.style:
            button["style"] = spec.style
        elements.append(button)
    return {"type": "actions", "block_id": "approval_decision_buttons", "elements": elements}


def build_approval_message(approval: Approval) -> Dict[str, Any]:
    """Build the Slack message posted when an approval is requested."""

    blocks: List[Dict[str, Any]] = [
        {
            "type": "header",
            "text": {"type": "plain_text", "text": f"{type_emoji(approval.type)} {approval.title}", "emoji": True},
        },
        _context_block(approval),
        {"type": "divider"},
    ]
    if approval.description:
        blocks.append({"type": "section", "text": {"type": "mrkdwn", "text": approval.description}})
    payload_section = _payload_section(approval)
    if payload_section is not None:
        blocks.append(payload_section)
    blocks.append({"type": "divider"})
    blocks.append(_action_buttons(approval))

    return {"text": f"Approval needed: {approval.title}", "blocks": blocks}


def build_terminal_update(approval: Approval, summary: str) -> Dict[str, Any]:
    """Replace the buttons with the approval's final state."""

    label = approval.status.value.capitalize()
    return {
        "text": summary,
        "blocks": [
            {
                "type": "header",
                "text": {
                    "type": "plain_text",
                    "text": f"{status_emoji(approval.status)} {label}: {approval.title}",
                    "emoji": True,
                },
            },
            {"type": "context", "elements": [{"type": "mrkdwn", "text": summary}]},
        ],
    }


def build_expired_update(approval: Approval) -> Dict[str, Any]:
    return build_terminal_update(approval, "This approval request has expired without a decision.")


def format_approval_line(approval: Approval) -> str:
    line = f"{status_emoji(approval.status)} `{approval.approval_id}` {type_emoji(approval.type)} {approval.title}"
    if approval.decided_by:
        line += f" ({approval.status.value} by {approval.decided_by})"
    elif not approval.is_pending:
        line += f" ({approval.status.value})"
    return line


def build_info_message(*, title: str, body: str, squad: str | None, agent: str | None, emoji: str | None) -> Dict[str, Any]:
    """Blocks for an informational post that needs no decision."""

    owner = squad or "unknown"
    if agent:
        owner = f"{owner} / {agent}"
    return {
        "text": title,
        "blocks": [
            {"type": "header", "text": {"type": "plain_text", "text": f"{emoji or ':robot_face:'} {title}", "emoji": True}},
            {"type": "context", "elements": [{"type": "mrkdwn", "text": f"*Squad:* {owner}"}]},
            {"type": "divider"},
            {"type": "section", "text": {"type": "mrkdwn", "text": body}},
        ],
    }


def build_pull_request_list(pull_requests: Mapping[str, Sequence[PullRequest]]) -> Dict[str, Any]:
    """Blocks answering ``/prs``: one section per repo with a merge button per PR."""

    blocks: List[Dict[str, Any]] = [
        {"type": "header", "text": {"type": "plain_text", "text": "Open Pull Requests", "emoji": True}},
    ]
    total = 0
    for repo, items in pull_requests.items():
        if not items:
            continue
        blocks.append({"type": "section", "text": {"type": "mrkdwn", "text": f"*{repo}*"}})
        for pr in items:
            total += 1
            blocks.append(
                {
                    "type": "section",
                    "text": {"type": "mrkdwn", "text": f"<{pr.url}|#{pr.number}> {pr.title}\n_by {pr.author}_"},
                    "accessory": {
                        "type": "button",
                        "text": {"type": "plain_text", "text": "Merge", "emoji": True},
                        "style": "primary",
                        "action_id": ActionId.LEGACY_MERGE_PR.value,
                        "value": build_pull_request_value(repo, pr.number, pr.title),
                    },
                }
            )
        blocks.append({"type": "divider"})

    if total == 0:
        blocks.append({"type": "section", "text": {"type": "mrkdwn", "text": "_No open PRs across any repos_"}})
    return {"text": f"Open pull requests: {total}", "blocks": blocks}
