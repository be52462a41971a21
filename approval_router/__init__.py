"""Slack approval router package initialisation."""

from .background import run_async  # noqa: F401
from .config import AppSettings, get_settings  # noqa: F401
from .credentials import CredentialResolver, TenantCredential  # noqa: F401
from .db import Base, get_engine, get_session_factory, session_scope  # noqa: F401
from .logging_config import configure_logging  # noqa: F401
from .router import EventKind, MessageRouter  # noqa: F401
from .security import VerificationError, verify  # noqa: F401

__all__ = [
    "AppSettings",
    "get_settings",
    "run_async",
    "Base",
    "get_engine",
    "get_session_factory",
    "session_scope",
    "CredentialResolver",
    "TenantCredential",
    "EventKind",
    "MessageRouter",
    "VerificationError",
    "verify",
    "configure_logging",
]
