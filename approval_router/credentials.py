"""Per-tenant Slack bot credential resolution with a TTL cache."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Callable, Dict, Protocol

import structlog

from .approvals.models import InstallationToken
from .approvals.store import StoreError
from .config import AppSettings


@dataclass(frozen=True)
class TenantCredential:
    tenant_id: str
    bot_token: str
    bot_id: str | None
    bot_user_id: str | None
    fetched_at: datetime
    tenant_name: str | None = None
    is_fallback: bool = False


class ResolutionError(Exception):
    """Base class for credential resolution failures."""


class NoInstallationFound(ResolutionError):
    """Raised when a tenant has no installation and no fallback is configured."""

    def __init__(self, tenant_id: str | None) -> None:
        super().__init__(f"No Slack installation found for tenant {tenant_id or '<unknown>'}.")
        self.tenant_id = tenant_id


class UpstreamUnavailable(ResolutionError):
    """Raised when the installation lookup failed for transport reasons."""


class InstallationLookup(Protocol):
    def get_installation_token(self, tenant_id: str) -> InstallationToken | None: ...


def fallback_from_settings(settings: AppSettings) -> TenantCredential | None:
    """Build the static credential from settings, or None when not configured."""

    if not settings.fallback_bot_token:
        return None
    return TenantCredential(
        tenant_id=settings.default_team_id or "",
        bot_token=settings.fallback_bot_token,
        bot_id=settings.fallback_bot_id,
        bot_user_id=settings.fallback_bot_user_id,
        fetched_at=datetime.now(UTC),
        is_fallback=True,
    )


class CredentialResolver:
    """Resolve the bot credential for a tenant, caching lookups for *ttl*.

    Entries are keyed by enterprise id when the request carries one and by
    tenant id otherwise. The fallback credential is returned only when the
    lookup confirms there is no installation; it is never cached, and it is
    never used when the lookup itself failed.
    """

    def __init__(
        self,
        lookup: InstallationLookup,
        *,
        ttl: timedelta = timedelta(seconds=300),
        fallback: TenantCredential | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if ttl.total_seconds() <= 0:
            raise ValueError("Credential cache TTL must be greater than zero seconds.")

        self._lookup = lookup
        self._ttl = ttl
        self._fallback = fallback
        self._clock = clock or (lambda: datetime.now(UTC))
        self._lock = threading.Lock()
        self._cache: Dict[str, TenantCredential] = {}

    @staticmethod
    def cache_key(tenant_id: str | None, enterprise_id: str | None = None) -> str | None:
        return enterprise_id or tenant_id or None

    def cached(self, key: str) -> TenantCredential | None:
        with self._lock:
            return self._cache.get(key)

    def invalidate(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._cache.clear()
            else:
                self._cache.pop(key, None)

    def resolve(self, tenant_id: str | None, enterprise_id: str | None = None) -> TenantCredential:
        log = structlog.get_logger().bind(tenant_id=tenant_id, enterprise_id=enterprise_id)
        key = self.cache_key(tenant_id, enterprise_id)
        now = self._clock()

        if key is not None:
            with self._lock:
                entry = self._cache.get(key)
            if entry is not None and now - entry.fetched_at < self._ttl:
                log.debug("credential_cache_hit")
                return entry

        if not tenant_id:
            return self._fall_back(tenant_id, log)

        try:
            token = self._lookup.get_installation_token(tenant_id)
        except StoreError as exc:
            log.warning("credential_lookup_unavailable", error=str(exc))
            raise UpstreamUnavailable(f"Installation lookup for {tenant_id} failed: {exc}") from exc

        if token is None:
            return self._fall_back(tenant_id, log)

        credential = TenantCredential(
            tenant_id=tenant_id,
            bot_token=token.bot_token,
            bot_id=token.bot_id,
            bot_user_id=token.bot_user_id,
            fetched_at=self._clock(),
            tenant_name=token.team_name,
        )
        with self._lock:
            self._cache[key] = credential
        log.info("credential_cached")
        return credential

    def _fall_back(self, tenant_id: str | None, log) -> TenantCredential:
        if self._fallback is None:
            log.warning("credential_not_found")
            raise NoInstallationFound(tenant_id)

        log.warning("credential_fallback_used")
        return TenantCredential(
            tenant_id=tenant_id or self._fallback.tenant_id,
            bot_token=self._fallback.bot_token,
            bot_id=self._fallback.bot_id,
            bot_user_id=self._fallback.bot_user_id,
            fetched_at=self._clock(),
            tenant_name=self._fallback.tenant_name,
            is_fallback=True,
        )
