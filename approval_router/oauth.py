"""Slack OAuth v2 installation flow and workspace uninstalls."""

from __future__ import annotations

import logging
import secrets
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Protocol, Sequence

from slack_sdk import WebClient
from slack_sdk.errors import SlackApiError
from slack_sdk.oauth import AuthorizeUrlGenerator
from slack_sdk.oauth.state_store import OAuthStateStore
import structlog

from .credentials import CredentialResolver


class InstallationError(Exception):
    """Base class for failed installs."""


class InvalidOAuthState(InstallationError):
    """Raised when the ``state`` returned by Slack is unknown, reused or expired."""


class OAuthExchangeFailed(InstallationError):
    """Raised when Slack refuses to exchange the authorization code."""

    def __init__(self, error: str) -> None:
        super().__init__(f"OAuth code exchange failed: {error}")
        self.error = error


class InstallationRegistry(Protocol):
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
    ) -> None: ...

    def deactivate_installation(self, team_id: str) -> None: ...


@dataclass(frozen=True)
class InstalledWorkspace:
    """Public summary of an installation. Never carries the bot token."""

    team_id: str
    team_name: str | None
    enterprise_id: str | None
    bot_user_id: str | None
    installed_by: str | None
    scope: str | None

    def to_public(self) -> Dict[str, Any]:
        return {
            "team_id": self.team_id,
            "team_name": self.team_name,
            "enterprise_id": self.enterprise_id,
            "installed_by": self.installed_by,
            "scope": self.scope,
            "is_active": True,
        }


class MemoryOAuthStateStore(OAuthStateStore):
    """Single-use OAuth ``state`` values kept in process memory for a limited time."""

    def __init__(self, *, expiration_seconds: int = 600, timer: Callable[[], float] | None = None) -> None:
        self.expiration_seconds = expiration_seconds
        self._timer = timer or time.time
        self._issued: Dict[str, float] = {}
        self._lock = threading.Lock()
        self._logger = logging.getLogger(__name__)

    @property
    def logger(self) -> logging.Logger:
        return self._logger

    def issue(self, *args, **kwargs) -> str:
        state = secrets.token_urlsafe(32)
        now = self._timer()
        with self._lock:
            # Drop expired states.
            self._issued = {
                key: issued_at for key, issued_at in self._issued.items() if now - issued_at <= self.expiration_seconds
            }
            self._issued[state] = now
        return state

    def consume(self, state: str) -> bool:
        with self._lock:
            issued_at = self._issued.pop(state, None)
        if issued_at is None:
            return False
        return self._timer() - issued_at <= self.expiration_seconds


def revoke_installation(
    registry: InstallationRegistry,
    resolver: CredentialResolver,
    team_id: str,
    enterprise_id: str | None = None,
) -> None:
    """Deactivate *team_id* and drop any credential cached for it."""

    registry.deactivate_installation(team_id)
    for key in {team_id, CredentialResolver.cache_key(team_id, enterprise_id)}:
        if key:
            resolver.invalidate(key)
    structlog.get_logger().info("installation_deactivated", tenant_id=team_id, enterprise_id=enterprise_id)


class SlackInstaller:
    """Drive ``/slack/install`` and the OAuth redirect for new workspaces."""

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        registry: InstallationRegistry,
        resolver: CredentialResolver,
        state_store: OAuthStateStore | None = None,
        scopes: Sequence[str] = (),
        user_scopes: Sequence[str] = (),
        redirect_uri: str | None = None,
        client: WebClient | None = None,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._registry = registry
        self._resolver = resolver
        self._state_store = state_store or MemoryOAuthStateStore()
        self._redirect_uri = redirect_uri
        self._client = client or WebClient()
        self._url_generator = AuthorizeUrlGenerator(
            client_id=client_id,
            scopes=list(scopes),
            user_scopes=list(user_scopes),
            redirect_uri=redirect_uri,
        )

    def authorize_url(self) -> str:
        return self._url_generator.generate(self._state_store.issue())

    def complete(self, *, code: str | None, state: str | None) -> InstalledWorkspace:
        """Validate *state*, exchange *code* for a bot token and store it."""

        log = structlog.get_logger()
        if not state or not self._state_store.consume(state):
            log.warning("oauth_state_rejected")
            raise InvalidOAuthState("OAuth state is missing, unknown or expired.")
        if not code:
            raise OAuthExchangeFailed("missing_code")

        try:
            response = self._client.oauth_v2_access(
                client_id=self._client_id,
                client_secret=self._client_secret,
                code=code,
                redirect_uri=self._redirect_uri,
            )
        except SlackApiError as exc:
            error_code = exc.response.get("error") if getattr(exc, "response", None) else str(exc)
            log.warning("oauth_exchange_failed", error=error_code)
            raise OAuthExchangeFailed(error_code or "unknown_error") from exc

        team = response.get("team") or {}
        enterprise = response.get("enterprise") or {}
        bot_token = response.get("access_token")
        team_id = team.get("id")
        if not bot_token or not team_id:
            log.warning("oauth_exchange_incomplete", tenant_id=team_id)
            raise OAuthExchangeFailed("missing_bot_token")

        bot_id = None
        try:
            bot_id = self._client.auth_test(token=bot_token).get("bot_id")
        except SlackApiError as exc:
            error_code = exc.response.get("error") if getattr(exc, "response", None) else str(exc)
            log.warning("oauth_bot_lookup_failed", tenant_id=team_id, error=error_code)

        workspace = InstalledWorkspace(
            team_id=team_id,
            team_name=team.get("name"),
            enterprise_id=enterprise.get("id"),
            bot_user_id=response.get("bot_user_id"),
            installed_by=(response.get("authed_user") or {}).get("id"),
            scope=response.get("scope"),
        )
        self._registry.save_installation(
            team_id=workspace.team_id,
            bot_token=bot_token,
            bot_id=bot_id,
            bot_user_id=workspace.bot_user_id,
            team_name=workspace.team_name,
            enterprise_id=workspace.enterprise_id,
            installed_by=workspace.installed_by,
            scope=workspace.scope,
        )
        # A reinstall rotates the token; stale cache entries must not outlive it.
        for key in {workspace.team_id, CredentialResolver.cache_key(workspace.team_id, workspace.enterprise_id)}:
            if key:
                self._resolver.invalidate(key)
        log.info("installation_saved", tenant_id=workspace.team_id, enterprise_id=workspace.enterprise_id)
        return workspace
