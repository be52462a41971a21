"""Tests for Slack notification helpers."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from slack_sdk.errors import SlackApiError
import structlog
from structlog.contextvars import bind_contextvars, clear_contextvars
from structlog.testing import capture_logs

from approval_router.approvals import notifications
from approval_router.approvals.models import Approval, ApprovalStatus, ApprovalType


class DummyResponse(dict):
    """Minimal Slack response stub for error handling tests."""

    def __init__(self, error: str = "message_not_found", status_code: int = 400) -> None:
        super().__init__({"error": error})
        self.status_code = status_code

    @property
    def data(self) -> dict[str, str]:
        return dict(self)


class DummySlackClient:
    def __init__(self, channels=None, fail_update: bool = False) -> None:
        self.channels = channels or [{"id": "C_ISSUES", "name": "issue-approvals"}]
        self.fail_update = fail_update
        self.posts: list[dict] = []
        self.updates: list[dict] = []

    def find_channel(self, name):
        wanted = name.lstrip("#")
        return next((channel for channel in self.channels if channel["name"] == wanted), None)

    def post_message(self, **kwargs):
        self.posts.append(kwargs)
        return {"ok": True, "channel": kwargs["channel"], "ts": "100.1"}

    def update_message(self, **kwargs):
        if self.fail_update:
            raise SlackApiError("update failed", DummyResponse())
        self.updates.append(kwargs)
        return {"ok": True}


def _approval(**overrides) -> Approval:
    data = {
        "approval_id": "apr_1",
        "type": ApprovalType.ISSUE,
        "tenant_id": "T1",
        "title": "Create issue",
        "channel_ref": "C_ISSUES",
        "message_ref": "100.1",
        "created_at": datetime(2024, 6, 1, tzinfo=UTC),
    }
    data.update(overrides)
    return Approval(**data)


def test_publish_resolves_channel_and_returns_reference():
    client = DummySlackClient()

    reference = notifications.publish_approval_message(
        slack_client=client, approval=_approval(channel_ref=None, message_ref=None), channel="#issue-approvals"
    )

    assert reference == {"channel": "C_ISSUES", "ts": "100.1"}
    assert client.posts[0]["channel"] == "C_ISSUES"
    assert client.posts[0]["text"] == "Approval needed: Create issue"


def test_publish_to_missing_channel_raises():
    with pytest.raises(notifications.ChannelNotFound) as err:
        notifications.publish_approval_message(
            slack_client=DummySlackClient(channels=[]), approval=_approval(), channel="issue-approvals"
        )

    assert "Create it first" in str(err.value)


def test_update_approval_message_rewrites_terminal_state():
    client = DummySlackClient()
    approval = _approval(status=ApprovalStatus.APPROVED, decided_by="alice")

    assert notifications.update_approval_message(slack_client=client, approval=approval, summary="Issue created by @alice")

    assert client.updates[0]["channel"] == "C_ISSUES"
    assert client.updates[0]["ts"] == "100.1"
    assert client.updates[0]["text"] == "Issue created by @alice"


def test_update_failure_is_logged_with_slack_error():
    clear_contextvars()
    bind_contextvars(trace_id="trace-xyz")
    client = DummySlackClient(fail_update=True)

    with capture_logs(processors=[structlog.contextvars.merge_contextvars]) as logs:
        result = notifications.mark_message_expired(slack_client=client, approval=_approval(status=ApprovalStatus.EXPIRED))

    assert result is False
    failure = next(entry for entry in logs if entry["event"] == "slack_update_failed")
    assert failure["error"] == "message_not_found"
    assert failure["status_code"] == 400
    assert failure["trace_id"] == "trace-xyz"
    clear_contextvars()


def test_update_without_message_reference_is_skipped():
    client = DummySlackClient()

    with capture_logs() as logs:
        result = notifications.update_approval_message(
            slack_client=client, approval=_approval(message_ref=None), summary="done"
        )

    assert result is False
    assert client.updates == []
    assert any(entry["event"] == "message_reference_missing" for entry in logs)
