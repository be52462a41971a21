"""Classify verified Slack payloads and route them to their handlers."""

from __future__ import annotations

import re
import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Protocol, Sequence, Set
from uuid import uuid4

from slack_sdk.errors import SlackApiError
from slack_sdk.webhook import WebhookClient
import structlog

from .approvals.actions import ActionId, ActionSpec, lookup_action, parse_action_value
from .approvals.engine import AlreadyDecided, ApprovalEngine, ApprovalNotFound
from .approvals.executors import (
    ActionExecutor,
    ExecutionResult,
    NoPullRequests,
    PullRequestSource,
    RecordingExecutor,
)
from .approvals.models import Approval, QueuedMessage
from .approvals.notifications import update_approval_message
from .approvals.store import StoreError
from .commands import APPROVALS_COMMAND, PRS_COMMAND, REVIEW_COMMAND, SlashCommands
from .credentials import CredentialResolver, ResolutionError, TenantCredential
from .oauth import InstallationRegistry, revoke_installation
from .slack_client import SlackClient

QUEUE_UNAVAILABLE_TEXT = ":warning: Could not queue message. Scheduler API not available."
GENERIC_FAILURE_TEXT = ":x: Something went wrong while handling this action. Please try again."
NOT_FOUND_TEXT = ":warning: Approval not found or already processed."
_MENTION_PATTERN = re.compile(r"<@[A-Z0-9]+>")
SLASH_COMMANDS = (APPROVALS_COMMAND, PRS_COMMAND, REVIEW_COMMAND)


class EventKind(str, Enum):
    SLASH_COMMAND = "slash_command"
    BLOCK_ACTION = "block_action"
    URL_VERIFICATION = "url_verification"
    MENTION = "mention"
    DIRECT_MESSAGE = "direct_message"
    APP_LIFECYCLE = "app_lifecycle"
    IGNORED = "ignored"


@dataclass(frozen=True)
class InboundEvent:
    kind: EventKind
    payload: Mapping[str, Any]
    team_id: str | None = None
    enterprise_id: str | None = None


class MessageQueue(Protocol):
    def queue_message(self, message: QueuedMessage) -> None: ...


ClientFactory = Callable[[TenantCredential], SlackClient]
ResponderFactory = Callable[[str], WebhookClient]


def classify(payload: Mapping[str, Any]) -> EventKind:
    """Map a decoded Slack payload onto an :class:`EventKind`."""

    payload_type = payload.get("type")
    if payload_type == "url_verification":
        return EventKind.URL_VERIFICATION
    if payload_type == "block_actions":
        return EventKind.BLOCK_ACTION
    if payload.get("command"):
        return EventKind.SLASH_COMMAND
    if payload_type != "event_callback":
        return EventKind.IGNORED

    event = payload.get("event") or {}
    event_type = event.get("type")
    if event_type == "app_mention":
        return EventKind.MENTION
    if event_type == "app_uninstalled":
        return EventKind.APP_LIFECYCLE
    if event_type == "tokens_revoked" and (event.get("tokens") or {}).get("bot"):
        return EventKind.APP_LIFECYCLE
    if event_type == "message":
        # Bot posts and edits/joins arrive as messages too; only plain user DMs count.
        if event.get("channel_type") == "im" and not event.get("bot_id") and not event.get("subtype"):
            return EventKind.DIRECT_MESSAGE
    return EventKind.IGNORED


def _nested_id(value: Any) -> str | None:
    if isinstance(value, Mapping):
        return value.get("id") or None
    if isinstance(value, str) and value:
        return value
    return None


def extract_tenant(payload: Mapping[str, Any]) -> tuple[str | None, str | None]:
    """Return ``(team_id, enterprise_id)`` carried by *payload*, if any."""

    event = payload.get("event") or {}
    team_id = (
        payload.get("team_id")
        or _nested_id(payload.get("team"))
        or (event.get("team") if isinstance(event, Mapping) else None)
    )
    enterprise_id = payload.get("enterprise_id") or _nested_id(payload.get("enterprise"))
    if not enterprise_id:
        for authorization in payload.get("authorizations") or []:
            if isinstance(authorization, Mapping) and authorization.get("enterprise_id"):
                enterprise_id = authorization["enterprise_id"]
                break
    return team_id or None, enterprise_id or None


def _default_client_factory(credential: TenantCredential) -> SlackClient:
    return SlackClient(token=credential.bot_token)


def new_message_id() -> str:
    return f"msg_{uuid4().hex[:16]}"


class MessageRouter:
    """Route verified Slack traffic to the approval engine and message queue.

    :meth:`acknowledge` builds the immediate webhook response without any
    I/O. :meth:`dispatch` does the slow work and is meant to run on the
    background pool; it logs failures instead of raising them.
    """

    def __init__(
        self,
        engine: ApprovalEngine,
        resolver: CredentialResolver,
        queue: MessageQueue,
        *,
        executor: ActionExecutor | None = None,
        client_factory: ClientFactory | None = None,
        responder_factory: ResponderFactory | None = None,
        default_team_id: str | None = None,
        pull_requests: PullRequestSource | None = None,
        repos: Sequence[str] = (),
        registry: InstallationRegistry | None = None,
    ) -> None:
        self._engine = engine
        self._resolver = resolver
        self._queue = queue
        self._executor = executor or RecordingExecutor()
        self._client_factory = client_factory or _default_client_factory
        self._responder_factory = responder_factory or WebhookClient
        self._default_team_id = default_team_id
        self._registry = registry
        self._commands = SlashCommands(engine, self._executor, pull_requests or NoPullRequests(), repos)
        self._in_flight: Set[str] = set()
        self._in_flight_lock = threading.Lock()

    def parse(self, payload: Mapping[str, Any]) -> InboundEvent:
        team_id, enterprise_id = extract_tenant(payload)
        return InboundEvent(
            kind=classify(payload),
            payload=payload,
            team_id=team_id or self._default_team_id,
            enterprise_id=enterprise_id,
        )

    def acknowledge(self, event: InboundEvent) -> Dict[str, Any] | None:
        """Return the body of the immediate webhook response, if any."""

        if event.kind is EventKind.URL_VERIFICATION:
            return {"challenge": event.payload.get("challenge")}
        if event.kind is EventKind.SLASH_COMMAND:
            command = event.payload.get("command")
            if command not in SLASH_COMMANDS:
                return {"response_type": "ephemeral", "text": f"Unknown command `{command}`."}
            if command == APPROVALS_COMMAND:
                return {"response_type": "ephemeral", "text": ":mag: Looking up approvals..."}
        return None

    def needs_dispatch(self, event: InboundEvent) -> bool:
        if event.kind is EventKind.SLASH_COMMAND:
            return event.payload.get("command") in SLASH_COMMANDS
        return event.kind in (
            EventKind.BLOCK_ACTION,
            EventKind.MENTION,
            EventKind.DIRECT_MESSAGE,
            EventKind.APP_LIFECYCLE,
        )

    def dispatch(self, event: InboundEvent) -> None:
        log = structlog.get_logger().bind(event_kind=event.kind.value, tenant_id=event.team_id)
        handlers = {
            EventKind.BLOCK_ACTION: self._handle_block_action,
            EventKind.MENTION: self._handle_conversation,
            EventKind.DIRECT_MESSAGE: self._handle_conversation,
            EventKind.SLASH_COMMAND: self._handle_slash_command,
            EventKind.APP_LIFECYCLE: self._handle_lifecycle,
        }
        handler = handlers.get(event.kind)
        if handler is None:
            log.debug("event_ignored")
            return

        try:
            handler(event)
        except ResolutionError as exc:
            log.warning("credential_resolution_failed", error=str(exc), error_type=type(exc).__name__)
        except SlackApiError as exc:
            error_code = exc.response.get("error") if getattr(exc, "response", None) else str(exc)
            log.error("slack_call_failed", error=error_code)
        except Exception:
            log.exception("event_dispatch_failed")

    def _client_for(self, event: InboundEvent) -> SlackClient:
        credential = self._resolver.resolve(event.team_id, event.enterprise_id)
        return self._client_factory(credential)

    def _begin(self, approval_id: str) -> bool:
        with self._in_flight_lock:
            if approval_id in self._in_flight:
                return False
            self._in_flight.add(approval_id)
            return True

    def _finish(self, approval_id: str) -> None:
        with self._in_flight_lock:
            self._in_flight.discard(approval_id)

    def _handle_block_action(self, event: InboundEvent) -> None:
        payload = event.payload
        user = payload.get("user") or {}
        user_id = user.get("id")
        actor = user.get("username") or user.get("name") or user_id or "unknown"
        channel_id = _nested_id(payload.get("channel"))
        log = structlog.get_logger().bind(tenant_id=event.team_id, user_id=user_id)

        client = self._client_for(event)

        def notify(text: str) -> None:
            if not channel_id or not user_id:
                log.warning("ephemeral_target_missing", text=text)
                return
            try:
                client.post_ephemeral(channel=channel_id, user=user_id, text=text)
            except SlackApiError as exc:
                error_code = exc.response.get("error") if getattr(exc, "response", None) else str(exc)
                log.error("ephemeral_notice_failed", error=error_code)

        actions = payload.get("actions") or []
        if not actions:
            log.warning("action_payload_missing")
            notify(":warning: Unable to process this action payload.")
            return

        action_payload = actions[0]
        if action_payload.get("action_id") == ActionId.LEGACY_MERGE_PR.value:
            text = self._commands.merge_from_button(action_payload.get("value"), actor)
            response_url = payload.get("response_url")
            if response_url:
                self._responder_factory(response_url).send(text=text, replace_original=False)
            else:
                notify(text)
            return

        spec = lookup_action(action_payload.get("action_id") or "")
        if spec is None:
            log.warning("unknown_action", action_id=action_payload.get("action_id"))
            notify(f":warning: Unknown action `{action_payload.get('action_id')}`.")
            return

        try:
            approval_id = parse_action_value(action_payload.get("value"))
        except ValueError:
            log.warning("invalid_action_payload", action_id=spec.action_id.value)
            notify(":warning: This action payload is invalid. Please retry from Slack.")
            return

        log = log.bind(approval_id=approval_id, action_id=spec.action_id.value)
        if not self._begin(approval_id):
            log.info("decision_in_flight")
            notify(":hourglass_flowing_sand: This approval is already being processed.")
            return

        try:
            self._decide_from_action(
                client=client,
                spec=spec,
                approval_id=approval_id,
                team_id=event.team_id,
                actor=actor,
                notify=notify,
                log=log,
            )
        except StoreError as exc:
            log.error("approval_store_failed", error=str(exc), error_type=type(exc).__name__)
            notify(GENERIC_FAILURE_TEXT)
        finally:
            self._finish(approval_id)

    def _decide_from_action(
        self, *, client, spec: ActionSpec, approval_id: str, team_id: str | None, actor: str, notify, log
    ) -> None:
        # Another replica may have decided since this one cached the record.
        approval = self._engine.refresh(approval_id)
        if approval is None:
            log.info("approval_missing")
            notify(NOT_FOUND_TEXT)
            return
        if approval.tenant_id != team_id:
            log.warning("approval_tenant_mismatch", approval_tenant_id=approval.tenant_id)
            notify(NOT_FOUND_TEXT)
            return
        if not approval.is_pending:
            log.info("decision_already_recorded", status=approval.status.value)
            notify(_already_decided_text(approval))
            return
        if approval.type is not spec.approval_type:
            log.warning("action_type_mismatch", approval_type=approval.type.value)
            notify(":warning: This action does not apply to this approval.")
            return

        result = self._execute(spec, approval, actor, log)
        decision = spec.decision_for(result.success)
        try:
            decided = self._engine.decide(
                approval_id,
                decision,
                actor,
                reason=None if result.success else result.summary,
                outcome_ref=result.outcome_ref,
            )
        except AlreadyDecided as exc:
            notify(_already_decided_text(exc.approval))
            return
        except ApprovalNotFound:
            notify(NOT_FOUND_TEXT)
            return

        log.info("action_completed", status=decided.status.value, success=result.success)
        update_approval_message(slack_client=client, approval=decided, summary=result.summary)

    def _execute(self, spec: ActionSpec, approval: Approval, actor: str, log) -> ExecutionResult:
        try:
            return self._executor.execute(spec, approval.payload, actor)
        except Exception as exc:
            log.exception("action_execution_failed", error_type=type(exc).__name__)
            return ExecutionResult(success=False, summary=f":x: {spec.label} failed for @{actor}. The error was logged.")

    def handle_coordinator_request(
        self,
        *,
        text: str,
        user_id: str | None,
        channel_id: str,
        thread_ts: str | None,
        team_id: str | None,
    ) -> str | None:
        """Queue a mention or DM for asynchronous handling.

        Returns ``None`` once the message is queued, since the answer arrives
        later through ``POST /api/slack/respond``. Returns the text to post
        back to the user when queueing failed.
        """

        message = QueuedMessage(
            message_id=new_message_id(),
            team_id=team_id or self._default_team_id or "unknown",
            channel_id=channel_id,
            user_id=user_id,
            thread_ts=thread_ts,
            text=text,
            context={"source": "slack", "timestamp": datetime.now(UTC).isoformat()},
        )
        log = structlog.get_logger().bind(message_id=message.message_id, tenant_id=message.team_id)
        try:
            self._queue.queue_message(message)
        except StoreError as exc:
            log.warning("message_queue_failed", error=str(exc))
            return QUEUE_UNAVAILABLE_TEXT
        log.info("message_queued", channel_id=channel_id)
        return None

    def _handle_conversation(self, event: InboundEvent) -> None:
        slack_event = event.payload.get("event") or {}
        text = slack_event.get("text") or ""
        if event.kind is EventKind.MENTION:
            text = _MENTION_PATTERN.sub("", text).strip()
        channel_id = slack_event.get("channel")
        thread_ts = slack_event.get("thread_ts") or slack_event.get("ts")

        reply = self.handle_coordinator_request(
            text=text,
            user_id=slack_event.get("user"),
            channel_id=channel_id,
            thread_ts=thread_ts,
            team_id=event.team_id,
        )
        if reply is None:
            return

        client = self._client_for(event)
        client.post_message(channel=channel_id, text=reply, thread_ts=thread_ts)

    def _handle_lifecycle(self, event: InboundEvent) -> None:
        log = structlog.get_logger().bind(tenant_id=event.team_id)
        if self._registry is None:
            log.warning("installation_registry_missing")
            return
        if not event.team_id:
            log.warning("lifecycle_event_without_team")
            return
        revoke_installation(self._registry, self._resolver, event.team_id, event.enterprise_id)

    def _handle_slash_command(self, event: InboundEvent) -> None:
        payload = event.payload
        command = payload.get("command")
        response_url = payload.get("response_url")
        log = structlog.get_logger().bind(tenant_id=event.team_id, command=command)
        if not response_url:
            log.warning("response_url_missing")
            return

        argument = (payload.get("text") or "").strip()
        actor = payload.get("user_name") or payload.get("user_id") or "unknown"
        blocks = None
        if command == PRS_COMMAND:
            listing = self._commands.list_pull_requests()
            text, blocks = listing["text"], listing["blocks"]
        elif command == REVIEW_COMMAND:
            text = self._commands.review(argument, actor)
        else:
            try:
                text = self._commands.describe_approvals(argument)
            except StoreError as exc:
                log.error("approval_store_failed", error=str(exc), error_type=type(exc).__name__)
                text = ":warning: Could not reach the approval store. Please try again."

        response = self._responder_factory(response_url).send(
            text=text,
            blocks=blocks,
            response_type="ephemeral",
            replace_original=False,
        )
        log.info("slash_command_answered", status_code=getattr(response, "status_code", None))


def _already_decided_text(approval: Approval) -> str:
    if approval.decided_by:
        return f":warning: Already {approval.status.value} by {approval.decided_by}"
    return f":warning: Already {approval.status.value}"
