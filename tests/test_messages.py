"""Tests for approval Block Kit builders."""

from __future__ import annotations

import json
from datetime import UTC, datetime

from approval_router.approvals import messages
from approval_router.approvals.models import Approval, ApprovalStatus, ApprovalType


def _approval(**overrides) -> Approval:
    data = {
        "approval_id": "apr_1",
        "type": ApprovalType.PR,
        "tenant_id": "T1",
        "title": "Merge #42",
        "description": "Adds retries to the webhook client.",
        "payload": {"repo": "acme/api", "labels": ["infra", "retry"], "reviewer": None},
        "priority": 2,
        "squad": "platform",
        "agent": "reviewer",
        "created_at": datetime(2024, 6, 1, tzinfo=UTC),
        "expires_at": datetime(2024, 6, 2, tzinfo=UTC),
    }
    data.update(overrides)
    return Approval(**data)


def test_every_type_and_status_has_an_emoji():
    for approval_type in ApprovalType:
        assert messages.type_emoji(approval_type)
    for status in ApprovalStatus:
        assert messages.status_emoji(status)


def test_approval_message_contains_buttons_for_its_type():
    payload = messages.build_approval_message(_approval())

    assert payload["text"] == "Approval needed: Merge #42"
    actions = payload["blocks"][-1]
    assert actions["type"] == "actions"
    assert actions["block_id"] == "approval_decision_buttons"
    assert [element["action_id"] for element in actions["elements"]] == ["merge_pr", "request_changes_pr"]
    assert all(json.loads(element["value"]) == {"approval_id": "apr_1"} for element in actions["elements"])


def test_approval_message_renders_context_and_payload():
    blocks = messages.build_approval_message(_approval())["blocks"]

    context_text = " ".join(element["text"] for element in blocks[1]["elements"])
    assert "platform / reviewer" in context_text
    assert "High Priority" in context_text
    assert "<!date^" in context_text

    payload_text = blocks[4]["text"]["text"]
    assert "*Repo:* acme/api" in payload_text
    assert "*Labels:* infra, retry" in payload_text
    assert "*Reviewer:* _Not provided_" in payload_text


def test_low_priority_without_expiry_has_plain_context():
    blocks = messages.build_approval_message(_approval(priority=8, expires_at=None, description=None, payload={}))["blocks"]

    assert blocks[1]["elements"] == [{"type": "mrkdwn", "text": "*Squad:* platform / reviewer"}]
    assert [block["type"] for block in blocks] == ["header", "context", "divider", "divider", "actions"]


def test_terminal_update_replaces_buttons():
    approval = _approval(status=ApprovalStatus.APPROVED, decided_by="alice")

    payload = messages.build_terminal_update(approval, "PR merged by @alice")

    assert payload["text"] == "PR merged by @alice"
    assert payload["blocks"][0]["text"]["text"] == ":white_check_mark: Approved: Merge #42"
    assert all(block["type"] != "actions" for block in payload["blocks"])


def test_expired_update_mentions_expiry():
    payload = messages.build_expired_update(_approval(status=ApprovalStatus.EXPIRED))

    assert "expired" in payload["text"]
    assert payload["blocks"][0]["text"]["text"].startswith(":hourglass: Expired")


def test_format_approval_line_includes_decider():
    line = messages.format_approval_line(_approval(status=ApprovalStatus.REJECTED, decided_by="bob"))

    assert "`apr_1`" in line
    assert line.endswith("(rejected by bob)")


def test_info_message_layout():
    payload = messages.build_info_message(title="Weekly brief", body="All green.", squad="intel", agent=None, emoji=None)

    assert payload["text"] == "Weekly brief"
    assert payload["blocks"][0]["text"]["text"] == ":robot_face: Weekly brief"
    assert payload["blocks"][-1]["text"]["text"] == "All green."
