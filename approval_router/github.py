"""Open pull request listing from the GitHub REST API."""

from __future__ import annotations

from typing import List

import httpx
import structlog

from .approvals.executors import PullRequest


class GitHubUnavailable(Exception):
    """Raised when GitHub cannot list a repository's pull requests."""


class GitHubPullRequests:
    def __init__(
        self,
        token: str,
        *,
        base_url: str = "https://api.github.com",
        timeout_secs: float = 5.0,
        client: httpx.Client | None = None,
    ) -> None:
        self._client = client or httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=timeout_secs,
            headers={"Authorization": f"Bearer {token}", "Accept": "application/vnd.github+json"},
        )

    def close(self) -> None:
        self._client.close()

    def open_pull_requests(self, repo: str, limit: int = 10) -> List[PullRequest]:
        path = f"/repos/{repo}/pulls"
        try:
            response = self._client.get(path, params={"state": "open", "per_page": limit})
        except httpx.HTTPError as exc:
            structlog.get_logger().warning("github_unreachable", repo=repo, error=str(exc))
            raise GitHubUnavailable(f"GitHub unreachable for {repo}") from exc
        if response.status_code >= 400:
            raise GitHubUnavailable(f"GitHub returned {response.status_code} for {repo}")

        try:
            items = response.json()
        except ValueError as exc:
            raise GitHubUnavailable(f"GitHub returned a non-JSON body for {repo}") from exc

        return [
            PullRequest(
                repo=repo,
                number=item["number"],
                title=item.get("title") or "",
                author=(item.get("user") or {}).get("login") or "unknown",
                url=item.get("html_url") or "",
            )
            for item in items[:limit]
        ]
