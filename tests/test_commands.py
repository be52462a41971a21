"""Tests for slash command handling."""

from __future__ import annotations

import json

import pytest
from structlog.testing import capture_logs

from approval_router.approvals.engine import ApprovalEngine
from approval_router.approvals.executors import ExecutionResult, NoPullRequests, PullRequest
from approval_router.approvals.models import ApprovalType, Decision
from approval_router.approvals.sql_store import SqlApprovalStore
from approval_router.commands import REVIEW_USAGE, SlashCommands, parse_review_command
from approval_router.db import Base, build_engine, build_session_factory


class StubExecutor:
    def __init__(self) -> None:
        self.result = ExecutionResult(success=True, summary="ok")
        self.error: Exception | None = None
        self.calls: list[tuple[str, dict, str]] = []

    def execute(self, action, payload, actor_label):
        self.calls.append((action.action_id.value, dict(payload), actor_label))
        if self.error is not None:
            raise self.error
        return self.result


class StubPullRequests:
    def __init__(self) -> None:
        self.failing: set[str] = set()

    def open_pull_requests(self, repo, limit=10):
        if repo in self.failing:
            raise RuntimeError("gh: HTTP 502")
        if repo == "acme/api":
            return [
                PullRequest(repo, 7, "Fix login", "dana", "https://github.com/acme/api/pull/7"),
                PullRequest(repo, 9, "Bump deps", "erin", "https://github.com/acme/api/pull/9"),
            ]
        return []


@pytest.fixture
def engine(tmp_path):
    db = build_engine(f"sqlite:///{tmp_path / 'commands.db'}")
    Base.metadata.create_all(db)
    yield ApprovalEngine(SqlApprovalStore(build_session_factory(db)))
    db.dispose()


@pytest.fixture
def executor():
    return StubExecutor()


@pytest.fixture
def pull_requests():
    return StubPullRequests()


@pytest.fixture
def commands(engine, executor, pull_requests):
    return SlashCommands(engine, executor, pull_requests, repos=["acme/api", "acme/web"])


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("acme/api #42", ("acme/api", 42)),
        ("acme/api 42", ("acme/api", 42)),
        ("  my-org/my.repo   #7 ", ("my-org/my.repo", 7)),
    ],
)
def test_parse_review_command(text, expected):
    target = parse_review_command(text)

    assert (target.repo, target.number) == expected


@pytest.mark.parametrize("text", ["", "acme/api", "acme #42", "acme/api #abc", "acme/api #42 now"])
def test_parse_review_command_rejects_bad_input(text):
    with pytest.raises(ValueError):
        parse_review_command(text)


def test_describe_approvals_lists_pending_then_by_status(commands, engine):
    approval = engine.create(ApprovalType.ISSUE, "T1", "File bug")

    assert "Pending approvals (1)" in commands.describe_approvals("")
    assert commands.describe_approvals("rejected") == "No rejected approvals."
    engine.decide(approval.approval_id, Decision.REJECT, "alice")
    assert "rejected by alice" in commands.describe_approvals("rejected")
    assert "Decided by alice" in commands.describe_approvals(approval.approval_id)
    assert "No approval found" in commands.describe_approvals("apr_nope")


def test_list_pull_requests_groups_by_repo(commands):
    listing = commands.list_pull_requests()

    blocks = listing["blocks"]
    assert blocks[0]["text"]["text"] == "Open Pull Requests"
    assert blocks[1]["text"]["text"] == "*acme/api*"
    assert blocks[2]["text"]["text"] == "<https://github.com/acme/api/pull/7|#7> Fix login\n_by dana_"
    assert json.loads(blocks[3]["accessory"]["value"]) == {"repo": "acme/api", "number": 9, "title": "Bump deps"}
    assert blocks[4] == {"type": "divider"}
    assert len(blocks) == 5


def test_list_pull_requests_skips_unreachable_repo(commands, pull_requests):
    pull_requests.failing.add("acme/api")

    with capture_logs() as logs:
        listing = commands.list_pull_requests()

    assert listing["blocks"][-1]["text"]["text"] == "_No open PRs across any repos_"
    failure = next(entry for entry in logs if entry["event"] == "pull_request_listing_failed")
    assert failure["repo"] == "acme/api"


def test_empty_listing_without_repos(engine, executor):
    listing = SlashCommands(engine, executor, NoPullRequests()).list_pull_requests()

    assert [block["type"] for block in listing["blocks"]] == ["header", "section"]


def test_review_usage_and_outcomes(commands, executor):
    assert commands.review("acme", "carol") == REVIEW_USAGE
    assert executor.calls == []

    assert commands.review("acme/api 42", "carol") == "Approved PR #42 in `acme/api`"
    executor.result = ExecutionResult(success=False, summary="nope")
    assert commands.review("acme/api #42", "carol") == "Failed to approve PR #42 in acme/api"
    assert executor.calls[0] == ("review_pr", {"repo": "acme/api", "number": 42}, "carol")


def test_merge_from_button(commands, executor):
    value = json.dumps({"repo": "acme/api", "number": 7, "title": "Fix login"})

    assert commands.merge_from_button(value, "alice") == "Merged *#7* in `acme/api` - Fix login"
    assert executor.calls == [("legacy_merge_pr", {"repo": "acme/api", "number": 7, "title": "Fix login"}, "alice")]

    executor.error = RuntimeError("merge conflict")
    with capture_logs() as logs:
        text = commands.merge_from_button(value, "alice")
    assert text == "Failed to merge #7 in acme/api. Check if there are conflicts or required checks."
    assert any(entry["event"] == "action_execution_failed" for entry in logs)

    assert "invalid" in commands.merge_from_button("not json", "alice")
