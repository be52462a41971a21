"""Utilities for validating Slack request signatures."""

from __future__ import annotations

import hmac
import time
from hashlib import sha256
from typing import Mapping


SLACK_SIGNATURE_HEADER = "X-Slack-Signature"
SLACK_TIMESTAMP_HEADER = "X-Slack-Request-Timestamp"
VERSION = "v0"
SIGNATURE_PREFIX = f"{VERSION}="
DEFAULT_TOLERANCE = 60 * 5  # five minutes


class VerificationError(Exception):
    """Raised when an inbound request cannot be proven to come from Slack."""

    reason = "verification_failed"


class MissingSignature(VerificationError):
    reason = "missing_signature"


class MalformedSignature(VerificationError):
    reason = "malformed_signature"


class MissingTimestamp(VerificationError):
    reason = "missing_timestamp"


class InvalidTimestamp(VerificationError):
    reason = "invalid_timestamp"


class StaleRequest(VerificationError):
    reason = "stale_request"


class SignatureMismatch(VerificationError):
    reason = "signature_mismatch"


def _to_bytes(value: str | bytes) -> bytes:
    if isinstance(value, bytes):
        return value
    return value.encode("utf-8")


def compute_signature(signing_secret: str, timestamp: str | int, body: str | bytes) -> str:
    """Return Slack-compatible signature for the provided payload."""

    basestring = f"{VERSION}:{timestamp}:".encode("utf-8") + _to_bytes(body)
    secret = signing_secret.encode("utf-8")
    digest = hmac.new(secret, basestring, sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def _header(headers: Mapping[str, str], name: str) -> str | None:
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for key, candidate in headers.items():
        if key.lower() == lowered:
            return candidate
    return None


def verify(
    raw_body: str | bytes,
    headers: Mapping[str, str],
    signing_secret: str,
    now: int | float | None = None,
    tolerance: int = DEFAULT_TOLERANCE,
) -> None:
    """Validate the signature and timestamp of a Slack request.

    Raises a :class:`VerificationError` subclass describing the first check
    that failed. Returns ``None`` when the request is authentic and fresh.
    """

    signature = _header(headers, SLACK_SIGNATURE_HEADER)
    if not signature:
        raise MissingSignature("Signature header is missing.")
    if not signature.startswith(SIGNATURE_PREFIX):
        raise MalformedSignature("Signature header has an unexpected version prefix.")

    timestamp = _header(headers, SLACK_TIMESTAMP_HEADER)
    if not timestamp:
        raise MissingTimestamp("Timestamp header is missing.")
    # Plain ASCII digits only; int() would also take signs, spaces and underscores.
    if not (timestamp.isascii() and timestamp.isdigit()):
        raise InvalidTimestamp("Timestamp header is not an integer.")
    request_ts = int(timestamp)

    current_ts = int(time.time() if now is None else now)
    # Future timestamps are rejected as well as old ones.
    if abs(current_ts - request_ts) > tolerance:
        raise StaleRequest(f"Request timestamp is outside the {tolerance}s window.")

    expected = compute_signature(signing_secret, timestamp, raw_body)
    if not hmac.compare_digest(
        expected[len(SIGNATURE_PREFIX):].encode("ascii"),
        signature[len(SIGNATURE_PREFIX):].encode("utf-8", "replace"),
    ):
        raise SignatureMismatch("Request signature does not match.")
