"""Executors that carry out the work an approval gates."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List, Mapping, Protocol

from .actions import ActionSpec


@dataclass(frozen=True)
class ExecutionResult:
    success: bool
    summary: str
    outcome_ref: str | None = None


class ActionExecutor(Protocol):
    def execute(self, action: ActionSpec, payload: Mapping[str, Any], actor_label: str) -> ExecutionResult: ...


class RecordingExecutor:
    """Record the decision without touching any external system.

    Used when no integration is configured: affirmative actions succeed with
    no outcome reference, so the approval is marked approved and whatever
    polls the store picks up the work.
    """

    def execute(self, action: ActionSpec, payload: Mapping[str, Any], actor_label: str) -> ExecutionResult:
        return ExecutionResult(success=True, summary=f"{action.past_tense} by @{actor_label}")


@dataclass(frozen=True)
class PullRequest:
    repo: str
    number: int
    title: str
    author: str
    url: str


class PullRequestSource(Protocol):
    def open_pull_requests(self, repo: str, limit: int = 10) -> List[PullRequest]: ...


class NoPullRequests:
    """Source used when no code host is configured; every repo looks empty."""

    def open_pull_requests(self, repo: str, limit: int = 10) -> List[PullRequest]:
        return []
