"""Slash commands: ``/approvals``, ``/prs`` and ``/review``."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Sequence

import structlog

from .approvals.actions import COMMAND_ACTIONS, ActionId, ActionSpec, parse_pull_request_value
from .approvals.engine import ApprovalEngine
from .approvals.executors import ActionExecutor, ExecutionResult, PullRequest, PullRequestSource
from .approvals.messages import build_pull_request_list, format_approval_line, status_emoji, type_emoji
from .approvals.models import Approval, ApprovalStatus

APPROVALS_COMMAND = "/approvals"
PRS_COMMAND = "/prs"
REVIEW_COMMAND = "/review"
REVIEW_USAGE = "Usage: `/review owner/repo #123` or `/review owner/repo 123`"
_REVIEW_PATTERN = re.compile(r"^([\w.-]+/[\w.-]+)[#\s]+(\d+)$")
_LISTING_LIMIT = 20
_PR_LIMIT = 10


@dataclass
class ReviewTarget:
    repo: str
    number: int


def parse_review_command(text: str) -> ReviewTarget:
    match = _REVIEW_PATTERN.match((text or "").strip())
    if match is None:
        raise ValueError(REVIEW_USAGE)
    return ReviewTarget(repo=match.group(1), number=int(match.group(2)))


class SlashCommands:
    """Answer slash commands; pull request work goes through the executor."""

    def __init__(
        self,
        engine: ApprovalEngine,
        executor: ActionExecutor,
        pull_requests: PullRequestSource,
        repos: Sequence[str] = (),
    ) -> None:
        self._engine = engine
        self._executor = executor
        self._pull_requests = pull_requests
        self._repos = tuple(repos)

    def describe_approvals(self, argument: str) -> str:
        """Answer ``/approvals [status|approval_id]``."""

        argument = argument.strip()
        if argument:
            try:
                status = ApprovalStatus(argument.lower())
            except ValueError:
                status = None
            if status is None:
                approval = self._engine.get(argument)
                if approval is None:
                    return f":warning: No approval found with id `{argument}`."
                return describe_approval(approval)
        else:
            status = ApprovalStatus.PENDING

        approvals = self._engine.list(status)
        if not approvals:
            return f"No {status.value} approvals."
        lines = [format_approval_line(approval) for approval in approvals[:_LISTING_LIMIT]]
        if len(approvals) > _LISTING_LIMIT:
            lines.append(f"_...and {len(approvals) - _LISTING_LIMIT} more_")
        return f"*{status.value.capitalize()} approvals ({len(approvals)})*\n" + "\n".join(lines)

    def list_pull_requests(self) -> Dict[str, Any]:
        """Answer ``/prs`` with the open pull requests of every configured repo."""

        log = structlog.get_logger()
        found: Dict[str, List[PullRequest]] = {}
        for repo in self._repos:
            try:
                found[repo] = list(self._pull_requests.open_pull_requests(repo, limit=_PR_LIMIT))
            except Exception:
                # An unreachable repo is left out of the listing.
                log.exception("pull_request_listing_failed", repo=repo)
        return build_pull_request_list(found)

    def review(self, text: str, actor: str) -> str:
        """Answer ``/review owner/repo #123`` by approving the pull request."""

        try:
            target = parse_review_command(text)
        except ValueError as exc:
            return str(exc)

        result = self._run(
            COMMAND_ACTIONS[ActionId.REVIEW_PR],
            {"repo": target.repo, "number": target.number},
            actor,
        )
        if result.success:
            return f"Approved PR #{target.number} in `{target.repo}`"
        return f"Failed to approve PR #{target.number} in {target.repo}"

    def merge_from_button(self, raw_value: str | None, actor: str) -> str:
        """Handle the Merge button attached to a ``/prs`` listing."""

        try:
            payload = parse_pull_request_value(raw_value)
        except ValueError:
            return ":warning: This action payload is invalid. Please retry from Slack."

        repo, number, title = payload["repo"], payload["number"], payload["title"]
        result = self._run(COMMAND_ACTIONS[ActionId.LEGACY_MERGE_PR], payload, actor)
        if result.success:
            return f"Merged *#{number}* in `{repo}` - {title}"
        return f"Failed to merge #{number} in {repo}. Check if there are conflicts or required checks."

    def _run(self, spec: ActionSpec, payload: Dict[str, Any], actor: str) -> ExecutionResult:
        log = structlog.get_logger().bind(action_id=spec.action_id.value, repo=payload.get("repo"))
        try:
            result = self._executor.execute(spec, payload, actor)
        except Exception as exc:
            log.exception("action_execution_failed", error_type=type(exc).__name__)
            return ExecutionResult(success=False, summary=f"{spec.label} failed")
        log.info("pull_request_action_completed", success=result.success, number=payload.get("number"))
        return result


def describe_approval(approval: Approval) -> str:
    lines = [
        f"{type_emoji(approval.type)} *{approval.title}* (`{approval.approval_id}`)",
        f"{status_emoji(approval.status)} Status: *{approval.status.value}*",
    ]
    if approval.decided_by:
        lines.append(f"Decided by {approval.decided_by}")
    if approval.expires_at is not None and approval.is_pending:
        lines.append(f"Expires at {approval.expires_at.isoformat()}")
    if approval.outcome_ref:
        lines.append(f"Outcome: {approval.outcome_ref}")
    return "\n".join(lines)
