"""Utilities for publishing approvals to Slack channels and updating them."""

from __future__ import annotations

from typing import Mapping

from slack_sdk.errors import SlackApiError
import structlog

from approval_router.slack_client import SlackClient

from .messages import build_approval_message, build_expired_update, build_terminal_update
from .models import Approval


class ChannelNotFound(LookupError):
    """Raised when the approval channel does not exist or the bot cannot see it."""


def _slack_error(exc: SlackApiError) -> tuple[str, int | None]:
    response = getattr(exc, "response", None)
    status_code = getattr(response, "status_code", None) if response is not None else None
    error_code = response.get("error") if response is not None else str(exc)
    return error_code, status_code


def resolve_channel_id(slack_client: SlackClient, channel: str) -> str:
    """Return the id of *channel*, which may be a name or an id."""

    match = slack_client.find_channel(channel)
    if match is None:
        raise ChannelNotFound(f"Channel #{channel.lstrip('#')} not found. Create it first.")
    return match["id"]


def publish_approval_message(*, slack_client: SlackClient, approval: Approval, channel: str) -> Mapping[str, str]:
    """Post *approval* to *channel* and return its channel/ts reference.

    Slack errors propagate: callers that create approvals need to know the
    message was not posted.
    """

    log = structlog.get_logger().bind(approval_id=approval.approval_id, channel=channel)
    channel_id = resolve_channel_id(slack_client, channel)
    message_payload = build_approval_message(approval)
    response = slack_client.post_message(
        channel=channel_id,
        text=message_payload["text"],
        blocks=message_payload["blocks"],
    )
    ts = response.get("ts")
    log.info("approval_message_posted", channel_id=channel_id, ts=ts)
    return {"channel": response.get("channel") or channel_id, "ts": ts}


def update_approval_message(*, slack_client: SlackClient, approval: Approval, summary: str) -> bool:
    """Rewrite the posted approval message to show its terminal state."""

    payload = build_terminal_update(approval, summary)
    return _update(slack_client, approval, payload, operation="update_approval_message")


def mark_message_expired(*, slack_client: SlackClient, approval: Approval) -> bool:
    payload = build_expired_update(approval)
    return _update(slack_client, approval, payload, operation="mark_message_expired")


def _update(slack_client: SlackClient, approval: Approval, payload, *, operation: str) -> bool:
    log = structlog.get_logger().bind(
        approval_id=approval.approval_id,
        channel=approval.channel_ref,
        operation=operation,
    )
    if not approval.channel_ref or not approval.message_ref:
        log.warning("message_reference_missing")
        return False

    try:
        slack_client.update_message(
            channel=approval.channel_ref,
            ts=approval.message_ref,
            text=payload["text"],
            blocks=payload["blocks"],
        )
    except SlackApiError as exc:
        error_code, status_code = _slack_error(exc)
        log.error("slack_update_failed", error=error_code, status_code=status_code)
        return False
    return True
