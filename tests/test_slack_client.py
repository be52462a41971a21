"""Unit tests for the Slack WebClient wrapper."""

from pathlib import Path
import sys

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from approval_router.slack_client import SlackClient  # noqa: E402


class DummyWebClient:
    def __init__(self, pages=None):
        self.calls = []
        self._pages = list(pages or [])

    def chat_postMessage(self, **kwargs):
        self.calls.append(("post", kwargs))
        return {"ok": True, "ts": "111.222", "channel": kwargs["channel"]}

    def chat_update(self, **kwargs):
        self.calls.append(("update", kwargs))
        return {"ok": True, "message": kwargs}

    def chat_postEphemeral(self, **kwargs):
        self.calls.append(("ephemeral", kwargs))
        return {"ok": True}

    def conversations_list(self, **kwargs):
        self.calls.append(("list", kwargs))
        return self._pages.pop(0)


def test_requires_token_or_client():
    with pytest.raises(ValueError):
        SlackClient()


def test_post_message_uses_underlying_client():
    dummy = DummyWebClient()
    client = SlackClient(client=dummy)

    response = client.post_message(channel="C123", text="hello", blocks=[{"type": "section"}])

    assert dummy.calls == [
        ("post", {"channel": "C123", "text": "hello", "blocks": [{"type": "section"}]}),
    ]
    assert response["ok"] is True
    assert client.client is dummy


def test_post_message_threads_replies():
    dummy = DummyWebClient()
    client = SlackClient(client=dummy)

    client.post_message(channel="C123", text="reply", thread_ts="100.1")

    assert dummy.calls == [("post", {"channel": "C123", "text": "reply", "thread_ts": "100.1"})]


def test_update_message_uses_underlying_client():
    dummy = DummyWebClient()
    client = SlackClient(client=dummy)

    response = client.update_message(
        channel="C123",
        ts="123.456",
        text="updated",
        blocks=[{"type": "section", "text": {"type": "mrkdwn", "text": "Hi"}}],
    )

    assert dummy.calls[-1] == (
        "update",
        {
            "channel": "C123",
            "ts": "123.456",
            "text": "updated",
            "blocks": [{"type": "section", "text": {"type": "mrkdwn", "text": "Hi"}}],
        },
    )
    assert response["ok"] is True


def test_post_ephemeral_targets_single_user():
    dummy = DummyWebClient()
    client = SlackClient(client=dummy)

    client.post_ephemeral(channel="C123", user="U1", text="only you")

    assert dummy.calls == [("ephemeral", {"channel": "C123", "user": "U1", "text": "only you"})]


def test_list_channels_follows_cursors():
    dummy = DummyWebClient(
        pages=[
            {"channels": [{"id": "C1", "name": "general"}], "response_metadata": {"next_cursor": "abc"}},
            {"channels": [{"id": "C2", "name": "pr-approvals"}], "response_metadata": {"next_cursor": ""}},
        ]
    )
    client = SlackClient(client=dummy)

    channels = client.list_channels()

    assert [channel["id"] for channel in channels] == ["C1", "C2"]
    assert dummy.calls[1] == (
        "list",
        {"types": "public_channel,private_channel", "limit": 200, "cursor": "abc"},
    )


def test_find_channel_strips_hash_prefix():
    dummy = DummyWebClient(pages=[{"channels": [{"id": "C2", "name": "pr-approvals"}]}])
    client = SlackClient(client=dummy)

    assert client.find_channel("#pr-approvals") == {"id": "C2", "name": "pr-approvals"}


def test_find_channel_returns_none_when_absent():
    dummy = DummyWebClient(pages=[{"channels": [{"id": "C1", "name": "general"}]}])
    client = SlackClient(client=dummy)

    assert client.find_channel("missing") is None
