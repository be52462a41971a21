"""Approval store backed by the remote scheduler API."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List

import httpx
import structlog
from pydantic import ValidationError

from .models import Approval, ApprovalStatus, Decision, InstallationToken, QueuedMessage
from .store import ApprovalConflict, StoreError, StoreUnavailable, UnknownApproval


class HttpApprovalStore:
    """Talk to the scheduler API over HTTP with a bounded timeout."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout_secs: float = 5.0,
        client: httpx.Client | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout_secs
        self._client = client or httpx.Client(
            base_url=self.base_url,
            timeout=timeout_secs,
            headers={"Content-Type": "application/json"},
        )

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, path: str, *, json: Any = None, params: Dict[str, Any] | None = None) -> httpx.Response:
        try:
            response = self._client.request(method, path, json=json, params=params)
        except httpx.TimeoutException as exc:
            structlog.get_logger().warning("scheduler_api_timeout", method=method, path=path)
            raise StoreUnavailable(f"Scheduler API timed out ({method} {path})") from exc
        except httpx.TransportError as exc:
            structlog.get_logger().warning("scheduler_api_unreachable", method=method, path=path, error=str(exc))
            raise StoreUnavailable(f"Scheduler API unreachable ({method} {path})") from exc

        if response.status_code >= 500:
            structlog.get_logger().warning(
                "scheduler_api_error", method=method, path=path, status_code=response.status_code
            )
            raise StoreUnavailable(f"Scheduler API error {response.status_code} ({method} {path})")
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise StoreError("Scheduler API returned a non-JSON body") from exc

    @staticmethod
    def _approval(data: Any) -> Approval:
        try:
            return Approval.model_validate(data)
        except ValidationError as exc:
            raise StoreError("Scheduler API returned a malformed approval") from exc

    def _raise_for_client_error(self, response: httpx.Response) -> None:
        if response.status_code >= 400:
            raise StoreError(f"Scheduler API rejected request: {response.status_code}")

    def create_approval(self, approval: Approval) -> Approval:
        response = self._request("POST", "/approvals", json=approval.to_wire())
        self._raise_for_client_error(response)
        return approval

    def get_approval(self, approval_id: str) -> Approval | None:
        response = self._request("GET", f"/approvals/{approval_id}")
        if response.status_code == 404:
            return None
        self._raise_for_client_error(response)
        data = self._json(response)
        if not data:
            return None
        return self._approval(data)

    def list_approvals(self, status: ApprovalStatus | None = None) -> List[Approval]:
        params = {"status": status.value} if status is not None else None
        response = self._request("GET", "/approvals", params=params)
        self._raise_for_client_error(response)
        data = self._json(response) or []
        if isinstance(data, dict):
            data = data.get("approvals", [])
        return [self._approval(item) for item in data]

    def decide_approval(
        self,
        approval_id: str,
        decision: Decision,
        actor: str,
        *,
        decided_at: datetime,
        reason: str | None = None,
        outcome_ref: str | None = None,
    ) -> Approval:
        response = self._request(
            "POST",
            f"/approvals/{approval_id}/decide",
            json={
                "action": decision.value,
                "actor": actor,
                "reason": reason,
                "outcome_ref": outcome_ref,
                "decided_at": decided_at.isoformat(),
            },
        )
        if response.status_code == 404:
            raise UnknownApproval(f"Approval {approval_id} does not exist")
        if response.status_code == 409:
            current = None
            try:
                body = response.json()
            except ValueError:
                body = None
            if isinstance(body, dict) and isinstance(body.get("approval"), dict):
                current = self._approval(body["approval"])
            raise ApprovalConflict(f"Approval {approval_id} is no longer pending", approval=current)
        self._raise_for_client_error(response)
        return self._approval(self._json(response))

    def expire_due(self, now: datetime) -> List[Approval]:
        response = self._request("POST", "/approvals/expire", json={"now": now.isoformat()})
        self._raise_for_client_error(response)
        data = self._json(response) or {}
        return [self._approval(item) for item in data.get("expired", [])]

    def approval_stats(self) -> Dict[str, Any]:
        response = self._request("GET", "/approvals/stats")
        self._raise_for_client_error(response)
        return self._json(response) or {}

    def get_installation_token(self, tenant_id: str) -> InstallationToken | None:
        response = self._request("GET", f"/slack/installations/{tenant_id}/token")
        if response.status_code == 404:
            return None
        self._raise_for_client_error(response)
        data = self._json(response)
        if not data:
            return None
        try:
            return InstallationToken.model_validate(data)
        except ValidationError as exc:
            raise StoreError("Scheduler API returned a malformed installation") from exc

    def save_installation(
        self,
        *,
        team_id: str,
        bot_token: str,
        bot_id: str | None = None,
        bot_user_id: str | None = None,
        team_name: str | None = None,
        enterprise_id: str | None = None,
        installed_by: str | None = None,
        scope: str | None = None,
    ) -> None:
        response = self._request(
            "POST",
            "/slack/installations",
            json={
                "team_id": team_id,
                "team_name": team_name,
                "enterprise_id": enterprise_id,
                "bot_token": bot_token,
                "bot_id": bot_id,
                "bot_user_id": bot_user_id,
                "installed_by": installed_by,
                "scope": scope,
                "is_active": True,
            },
        )
        self._raise_for_client_error(response)

    def deactivate_installation(self, team_id: str) -> None:
        response = self._request("POST", f"/slack/installations/{team_id}/deactivate")
        if response.status_code == 404:
            return
        self._raise_for_client_error(response)

    def queue_message(self, message: QueuedMessage) -> None:
        response = self._request("POST", "/slack/messages", json=message.model_dump(mode="json"))
        self._raise_for_client_error(response)

    def mark_message_responded(self, message_id: str, response_ts: str | None) -> None:
        response = self._request(
            "POST",
            f"/slack/messages/{message_id}/responded",
            json={"response_ts": response_ts},
        )
        self._raise_for_client_error(response)

    def ping(self) -> bool:
        try:
            response = self._request("GET", "/health")
        except StoreUnavailable:
            return False
        return response.status_code < 400
