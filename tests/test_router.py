"""Tests for classifying and routing verified Slack payloads."""

from __future__ import annotations

import json
import threading
from datetime import UTC, datetime, timedelta

import pytest
from structlog.testing import capture_logs

from approval_router.approvals.actions import build_action_value, build_pull_request_value
from approval_router.approvals.engine import ApprovalEngine
from approval_router.approvals.executors import ExecutionResult, PullRequest
from approval_router.approvals.models import ApprovalStatus, ApprovalType, Decision, QueuedMessage
from approval_router.approvals.sql_store import SqlApprovalStore
from approval_router.approvals.store import StoreUnavailable
from approval_router.credentials import CredentialResolver
from approval_router.db import Base, build_engine, build_session_factory
from approval_router.router import (
    QUEUE_UNAVAILABLE_TEXT,
    EventKind,
    MessageRouter,
    classify,
    extract_tenant,
)


class DummySlackClient:
    def __init__(self, token: str) -> None:
        self.token = token
        self.calls: list[tuple[str, dict]] = []

    def post_message(self, **kwargs):
        self.calls.append(("post", kwargs))
        return {"ok": True, "ts": "200.1"}

    def post_ephemeral(self, **kwargs):
        self.calls.append(("ephemeral", kwargs))
        return {"ok": True}

    def update_message(self, **kwargs):
        self.calls.append(("update", kwargs))
        return {"ok": True}


class DummyResponder:
    def __init__(self, url: str, sent: list) -> None:
        self.url = url
        self._sent = sent

    def send(self, **kwargs):
        self._sent.append((self.url, kwargs))
        return type("Response", (), {"status_code": 200})()


class RecordingExecutor:
    def __init__(self, result: ExecutionResult | None = None, error: Exception | None = None) -> None:
        self.result = result
        self.error = error
        self.calls: list[tuple[str, dict, str]] = []

    def execute(self, action, payload, actor_label):
        self.calls.append((action.action_id.value, dict(payload), actor_label))
        if self.error is not None:
            raise self.error
        return self.result or ExecutionResult(success=True, summary=f"{action.past_tense} by @{actor_label}")


class FakePullRequests:
    def __init__(self, by_repo: dict) -> None:
        self.by_repo = by_repo
        self.calls: list[tuple[str, int]] = []

    def open_pull_requests(self, repo, limit=10):
        self.calls.append((repo, limit))
        return self.by_repo.get(repo, [])


class FailingQueue:
    def queue_message(self, message: QueuedMessage) -> None:
        raise StoreUnavailable("scheduler down")


@pytest.fixture
def store(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'router.db'}")
    Base.metadata.create_all(engine)
    store = SqlApprovalStore(build_session_factory(engine))
    store.save_installation(team_id="T1", bot_token="xoxb-t1")
    yield store
    engine.dispose()


@pytest.fixture
def clients():
    return {}


@pytest.fixture
def sent():
    return []


@pytest.fixture
def executor():
    return RecordingExecutor()


@pytest.fixture
def pull_requests():
    return FakePullRequests(
        {"acme/api": [PullRequest("acme/api", 7, "Fix login", "dana", "https://github.com/acme/api/pull/7")]}
    )


@pytest.fixture
def approval_engine(store):
    return ApprovalEngine(store)


@pytest.fixture
def router(store, approval_engine, clients, sent, executor, pull_requests):
    def client_factory(credential):
        return clients.setdefault(credential.tenant_id, DummySlackClient(credential.bot_token))

    return MessageRouter(
        approval_engine,
        CredentialResolver(store),
        store,
        executor=executor,
        client_factory=client_factory,
        responder_factory=lambda url: DummyResponder(url, sent),
        default_team_id="T1",
        pull_requests=pull_requests,
        repos=("acme/api", "acme/web"),
        registry=store,
    )


def _pending(approval_engine, **overrides):
    params = {
        "type": ApprovalType.PR,
        "tenant_id": "T1",
        "title": "Merge #42",
        "payload": {"repo": "acme/api", "number": 42},
        "channel_ref": "C_PRS",
        "message_ref": "100.1",
    }
    params.update(overrides)
    return approval_engine.create(**params)


def _block_action(approval_id: str, action_id: str = "merge_pr", user: str = "alice") -> dict:
    return {
        "type": "block_actions",
        "team": {"id": "T1", "domain": "acme"},
        "user": {"id": f"U_{user}", "username": user},
        "channel": {"id": "C_PRS"},
        "actions": [{"action_id": action_id, "value": build_action_value(approval_id)}],
    }


def _calls(clients, kind: str):
    return [kwargs for name, kwargs in clients["T1"].calls if name == kind]


def test_classify_covers_every_event_kind():
    assert classify({"type": "url_verification", "challenge": "abc"}) is EventKind.URL_VERIFICATION
    assert classify({"type": "block_actions"}) is EventKind.BLOCK_ACTION
    assert classify({"command": "/approvals", "text": ""}) is EventKind.SLASH_COMMAND
    assert classify({"type": "event_callback", "event": {"type": "app_mention"}}) is EventKind.MENTION
    assert (
        classify({"type": "event_callback", "event": {"type": "message", "channel_type": "im"}})
        is EventKind.DIRECT_MESSAGE
    )
    assert classify({"type": "event_callback", "event": {"type": "reaction_added"}}) is EventKind.IGNORED
    assert {kind for kind in EventKind} == {
        EventKind.SLASH_COMMAND,
        EventKind.BLOCK_ACTION,
        EventKind.URL_VERIFICATION,
        EventKind.MENTION,
        EventKind.DIRECT_MESSAGE,
        EventKind.APP_LIFECYCLE,
        EventKind.IGNORED,
    }


@pytest.mark.parametrize(
    "event",
    [
        {"type": "message", "channel_type": "im", "bot_id": "B1"},
        {"type": "message", "channel_type": "im", "subtype": "message_changed"},
        {"type": "message", "channel_type": "channel"},
    ],
)
def test_bot_edited_and_channel_messages_are_ignored(event):
    assert classify({"type": "event_callback", "event": event}) is EventKind.IGNORED


def test_extract_tenant_from_each_payload_shape():
    assert extract_tenant({"team_id": "T1", "enterprise_id": "E1"}) == ("T1", "E1")
    assert extract_tenant({"team": {"id": "T2"}, "enterprise": {"id": "E2"}}) == ("T2", "E2")
    assert extract_tenant({"event": {"team": "T3"}}) == ("T3", None)
    assert extract_tenant({"team_id": "T4", "authorizations": [{"enterprise_id": "E4"}]}) == ("T4", "E4")
    assert extract_tenant({}) == (None, None)


def test_url_verification_is_echoed(router):
    event = router.parse({"type": "url_verification", "challenge": "3eZbrw1aBm2rZgRNFdxV2595E9CY3gmdALWMmHkvFXO7tYXAYM8P"})

    assert router.acknowledge(event) == {"challenge": "3eZbrw1aBm2rZgRNFdxV2595E9CY3gmdALWMmHkvFXO7tYXAYM8P"}
    assert router.needs_dispatch(event) is False


def test_parse_falls_back_to_default_team(router):
    event = router.parse({"type": "event_callback", "event": {"type": "app_mention", "text": "hi"}})

    assert event.team_id == "T1"


def test_affirmative_action_approves_and_updates_message(router, approval_engine, clients, executor):
    approval = _pending(approval_engine)

    router.dispatch(router.parse(_block_action(approval.approval_id)))

    stored = approval_engine.get(approval.approval_id)
    assert stored.status is ApprovalStatus.APPROVED
    assert stored.decided_by == "alice"
    assert executor.calls == [("merge_pr", {"repo": "acme/api", "number": 42}, "alice")]
    update = _calls(clients, "update")[0]
    assert (update["channel"], update["ts"]) == ("C_PRS", "100.1")
    assert update["text"] == "PR merged by @alice"
    assert clients["T1"].token == "xoxb-t1"


def test_decline_action_rejects(router, approval_engine):
    approval = _pending(approval_engine)

    router.dispatch(router.parse(_block_action(approval.approval_id, action_id="request_changes_pr")))

    assert approval_engine.get(approval.approval_id).status is ApprovalStatus.REJECTED


def test_failed_execution_rejects_with_public_summary(router, approval_engine, clients, executor):
    executor.error = RuntimeError("gh: merge conflict in secrets.txt")
    approval = _pending(approval_engine)

    with capture_logs() as logs:
        router.dispatch(router.parse(_block_action(approval.approval_id)))

    stored = approval_engine.get(approval.approval_id)
    assert stored.status is ApprovalStatus.REJECTED
    update = _calls(clients, "update")[0]
    assert "Merge failed" in update["text"]
    assert "secrets.txt" not in update["text"]
    assert any(entry["event"] == "action_execution_failed" for entry in logs)


def test_second_click_reports_first_decider(router, approval_engine, clients, executor):
    approval = _pending(approval_engine)
    router.dispatch(router.parse(_block_action(approval.approval_id, user="alice")))

    router.dispatch(router.parse(_block_action(approval.approval_id, action_id="request_changes_pr", user="bob")))

    notice = _calls(clients, "ephemeral")[-1]
    assert notice["user"] == "U_bob"
    assert notice["text"] == ":warning: Already approved by alice"
    assert len(executor.calls) == 1
    assert approval_engine.get(approval.approval_id).status is ApprovalStatus.APPROVED


def test_unknown_action_and_missing_approval_get_notices(router, clients):
    router.dispatch(router.parse(_block_action("apr_missing", action_id="launch_rocket")))
    router.dispatch(router.parse(_block_action("apr_missing")))

    texts = [call["text"] for call in _calls(clients, "ephemeral")]
    assert texts[0].startswith(":warning: Unknown action")
    assert texts[1] == ":warning: Approval not found or already processed."


def test_concurrent_clicks_run_executor_once(router, approval_engine, executor):
    approval = _pending(approval_engine)
    release = threading.Event()
    entered = threading.Event()
    original_execute = executor.execute

    def slow_execute(action, payload, actor_label):
        entered.set()
        release.wait(timeout=5)
        return original_execute(action, payload, actor_label)

    executor.execute = slow_execute
    worker = threading.Thread(target=router.dispatch, args=(router.parse(_block_action(approval.approval_id)),))
    worker.start()
    assert entered.wait(timeout=5)

    router.dispatch(router.parse(_block_action(approval.approval_id, user="bob")))
    release.set()
    worker.join(timeout=5)

    assert len(executor.calls) == 1
    assert approval_engine.get(approval.approval_id).decided_by == "alice"


def test_mention_is_queued_without_reply(router, store, clients):
    payload = {
        "type": "event_callback",
        "team_id": "T1",
        "event": {"type": "app_mention", "text": "<@U0BOT> status please", "user": "U1", "channel": "C1", "ts": "300.1"},
    }

    with capture_logs() as logs:
        router.dispatch(router.parse(payload))

    queued = next(entry for entry in logs if entry["event"] == "message_queued")
    assert queued["tenant_id"] == "T1"
    assert "T1" not in clients


def test_handle_coordinator_request_queues_message(router, store):
    captured = []
    router._queue = type("Queue", (), {"queue_message": lambda self, message: captured.append(message)})()

    reply = router.handle_coordinator_request(
        text="deploy status", user_id="U1", channel_id="D1", thread_ts="300.1", team_id=None
    )

    assert reply is None
    assert captured[0].team_id == "T1"
    assert captured[0].message_id.startswith("msg_")
    assert captured[0].context["source"] == "slack"


def test_queue_failure_replies_in_thread(store, approval_engine, clients):
    router = MessageRouter(
        approval_engine,
        CredentialResolver(store),
        FailingQueue(),
        client_factory=lambda credential: clients.setdefault(credential.tenant_id, DummySlackClient(credential.bot_token)),
    )
    payload = {
        "type": "event_callback",
        "team_id": "T1",
        "event": {"type": "message", "channel_type": "im", "text": "hello", "user": "U1", "channel": "D1", "ts": "300.1"},
    }

    router.dispatch(router.parse(payload))

    reply = _calls(clients, "post")[0]
    assert reply == {"channel": "D1", "text": QUEUE_UNAVAILABLE_TEXT, "thread_ts": "300.1"}


def test_unknown_tenant_without_fallback_is_dropped(router, clients):
    payload = {
        "type": "event_callback",
        "team_id": "T_UNKNOWN",
        "event": {"type": "message", "channel_type": "im", "text": "hi", "user": "U1", "channel": "D1", "ts": "1.0"},
    }
    router._queue = FailingQueue()

    with capture_logs() as logs:
        router.dispatch(router.parse(payload))

    assert clients == {}
    assert any(entry["event"] == "credential_resolution_failed" for entry in logs)


def test_slash_command_acknowledges_then_answers_via_response_url(router, approval_engine, sent):
    _pending(approval_engine)
    command = {
        "command": "/approvals",
        "text": "",
        "team_id": "T1",
        "user_id": "U1",
        "response_url": "https://hooks.slack.com/commands/T1/1/abc",
    }
    event = router.parse(command)

    assert router.acknowledge(event)["response_type"] == "ephemeral"
    router.dispatch(event)

    url, body = sent[0]
    assert url == command["response_url"]
    assert body["response_type"] == "ephemeral"
    assert "Pending approvals (1)" in body["text"]
    assert "Merge #42" in body["text"]


def test_slash_command_describes_single_approval(router, approval_engine, sent):
    approval = _pending(approval_engine, expires_at=datetime.now(UTC) + timedelta(hours=1))
    router.dispatch(
        router.parse({"command": "/approvals", "text": approval.approval_id, "team_id": "T1", "response_url": "https://hooks"})
    )

    assert f"`{approval.approval_id}`" in sent[0][1]["text"]
    assert "Status: *pending*" in sent[0][1]["text"]


def test_unknown_slash_command_is_not_dispatched(router):
    event = router.parse({"command": "/deploy", "text": "", "team_id": "T1"})

    assert "Unknown command" in router.acknowledge(event)["text"]
    assert router.needs_dispatch(event) is False


def test_click_rechecks_store_when_another_replica_decided(router, store, approval_engine, clients, executor):
    approval = _pending(approval_engine)
    other_replica = ApprovalEngine(store)
    other_replica.decide(approval.approval_id, Decision.APPROVE, "alice")

    router.dispatch(router.parse(_block_action(approval.approval_id, user="bob")))

    assert executor.calls == []
    assert _calls(clients, "ephemeral")[-1]["text"] == ":warning: Already approved by alice"
    assert _calls(clients, "update") == []


def test_click_from_another_workspace_is_treated_as_missing(router, store, approval_engine, clients, executor):
    store.save_installation(team_id="T2", bot_token="xoxb-t2")
    approval = _pending(approval_engine)
    payload = _block_action(approval.approval_id, user="mallory")
    payload["team"] = {"id": "T2"}

    with capture_logs() as logs:
        router.dispatch(router.parse(payload))

    assert executor.calls == []
    notices = [kwargs for name, kwargs in clients["T2"].calls if name == "ephemeral"]
    assert notices[0]["text"] == ":warning: Approval not found or already processed."
    assert approval_engine.refresh(approval.approval_id).status is ApprovalStatus.PENDING
    assert any(entry["event"] == "approval_tenant_mismatch" for entry in logs)


def test_app_uninstalled_deactivates_and_forgets_credentials(router, store):
    router._resolver.resolve("T1")
    event = router.parse({"type": "event_callback", "team_id": "T1", "event": {"type": "app_uninstalled"}})

    assert event.kind is EventKind.APP_LIFECYCLE
    assert router.acknowledge(event) is None
    assert router.needs_dispatch(event) is True
    with capture_logs() as logs:
        router.dispatch(event)

    assert store.get_installation_token("T1") is None
    assert router._resolver.cached("T1") is None
    assert any(entry["event"] == "installation_deactivated" for entry in logs)


def test_only_bot_token_revocations_deactivate():
    user_only = {"type": "event_callback", "event": {"type": "tokens_revoked", "tokens": {"oauth": ["U1"]}}}
    with_bot = {"type": "event_callback", "event": {"type": "tokens_revoked", "tokens": {"bot": ["U_BOT"]}}}

    assert classify(user_only) is EventKind.IGNORED
    assert classify(with_bot) is EventKind.APP_LIFECYCLE


def test_prs_command_lists_pull_requests_with_merge_buttons(router, sent, pull_requests):
    event = router.parse({"command": "/prs", "text": "", "team_id": "T1", "response_url": "https://hooks/prs"})

    assert router.acknowledge(event) is None
    assert router.needs_dispatch(event) is True
    router.dispatch(event)

    url, body = sent[0]
    assert url == "https://hooks/prs"
    assert body["response_type"] == "ephemeral"
    assert pull_requests.calls == [("acme/api", 10), ("acme/web", 10)]
    buttons = [block["accessory"] for block in body["blocks"] if "accessory" in block]
    assert [button["action_id"] for button in buttons] == ["legacy_merge_pr"]
    assert json.loads(buttons[0]["value"]) == {"repo": "acme/api", "number": 7, "title": "Fix login"}


def test_review_command_approves_through_executor(router, sent, executor):
    router.dispatch(
        router.parse(
            {
                "command": "/review",
                "text": "acme/api #42",
                "team_id": "T1",
                "user_name": "carol",
                "response_url": "https://hooks/review",
            }
        )
    )

    assert executor.calls == [("review_pr", {"repo": "acme/api", "number": 42}, "carol")]
    assert sent[0][1]["text"] == "Approved PR #42 in `acme/api`"


def test_merge_button_from_listing_answers_via_response_url(router, sent, executor):
    payload = _block_action("unused")
    payload["response_url"] = "https://hooks/actions"
    payload["actions"] = [
        {"action_id": "legacy_merge_pr", "value": build_pull_request_value("acme/api", 7, "Fix login")}
    ]

    router.dispatch(router.parse(payload))

    assert executor.calls == [("legacy_merge_pr", {"repo": "acme/api", "number": 7, "title": "Fix login"}, "alice")]
    assert sent == [("https://hooks/actions", {"text": "Merged *#7* in `acme/api` - Fix login", "replace_original": False})]


def test_merge_button_without_response_url_falls_back_to_ephemeral(router, clients, executor):
    executor.result = ExecutionResult(success=False, summary="conflict")
    payload = _block_action("unused")
    payload["actions"] = [{"action_id": "legacy_merge_pr", "value": build_pull_request_value("acme/api", 7, "Fix")}]

    router.dispatch(router.parse(payload))

    notice = _calls(clients, "ephemeral")[0]
    assert notice["text"] == "Failed to merge #7 in acme/api. Check if there are conflicts or required checks."
