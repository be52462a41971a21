"""Application entry point for the Slack approval router."""

from __future__ import annotations

import hmac
import json
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from urllib.parse import parse_qs
from uuid import uuid4

from flask import Flask, jsonify, redirect, request
from pydantic import ValidationError
from slack_sdk import WebClient
from slack_sdk.errors import SlackApiError
import structlog
from structlog.contextvars import bind_contextvars, unbind_contextvars
from werkzeug.exceptions import HTTPException

from approval_router.approvals.engine import ApprovalEngine, InvalidApproval, new_approval_id
from approval_router.approvals.executors import ActionExecutor, PullRequestSource
from approval_router.approvals.http_store import HttpApprovalStore
from approval_router.approvals.messages import build_info_message
from approval_router.approvals.models import Approval, ApprovalRequest, ApprovalStatus
from approval_router.approvals.notifications import (
    ChannelNotFound,
    publish_approval_message,
    resolve_channel_id,
)
from approval_router.approvals.sql_store import SqlApprovalStore
from approval_router.approvals.store import ApprovalStore, StoreError, StoreUnavailable
from approval_router.background import run_async
from approval_router.config import AppSettings, get_settings
from approval_router.credentials import (
    CredentialResolver,
    NoInstallationFound,
    UpstreamUnavailable,
    fallback_from_settings,
)
from approval_router.db import Base, build_engine, build_session_factory
from approval_router.github import GitHubPullRequests
from approval_router.logging_config import configure_logging
from approval_router.oauth import InvalidOAuthState, MemoryOAuthStateStore, OAuthExchangeFailed, SlackInstaller
from approval_router.ratelimit import TenantRateLimiter
from approval_router.router import ClientFactory, EventKind, MessageRouter, ResponderFactory
from approval_router.security import VerificationError, verify
from approval_router.slack_client import SlackClient
from approval_router.sweeper import ExpirationSweeper


_LOGGING_CONFIGURED = False


@dataclass
class RouterServices:
    """Collaborators shared by the HTTP handlers."""

    settings: AppSettings
    store: ApprovalStore
    engine: ApprovalEngine
    resolver: CredentialResolver
    router: MessageRouter
    rate_limiter: TenantRateLimiter
    sweeper: ExpirationSweeper
    client_factory: ClientFactory
    installer: SlackInstaller | None = None


def _default_client_factory(credential) -> SlackClient:
    return SlackClient(token=credential.bot_token)


def _build_store(settings: AppSettings) -> ApprovalStore:
    """Use the scheduler API when configured, the local database otherwise."""

    if settings.scheduler_api_url:
        return HttpApprovalStore(settings.scheduler_api_url, timeout_secs=settings.scheduler_api_timeout)

    engine = build_engine(settings.database_url)
    Base.metadata.create_all(engine)
    return SqlApprovalStore(build_session_factory(engine))


def _error(error: str, status_code: int, **details):
    response = jsonify({"error": error, **details})
    response.status_code = status_code
    return response


def _register_error_handlers(flask_app: Flask) -> None:
    """Register JSON error handlers; unexpected errors carry a trace identifier."""

    @flask_app.errorhandler(NoInstallationFound)
    def handle_no_installation(error: NoInstallationFound):
        return _error("no_installation", 404, message=str(error))

    @flask_app.errorhandler(UpstreamUnavailable)
    def handle_upstream_unavailable(error: UpstreamUnavailable):
        return _error("upstream_unavailable", 503)

    @flask_app.errorhandler(StoreUnavailable)
    def handle_store_unavailable(error: StoreUnavailable):
        return _error("store_unavailable", 503)

    @flask_app.errorhandler(ChannelNotFound)
    def handle_channel_not_found(error: ChannelNotFound):
        return _error("channel_not_found", 404, message=str(error))

    @flask_app.errorhandler(SlackApiError)
    def handle_slack_error(error: SlackApiError):
        error_code = error.response.get("error") if getattr(error, "response", None) else str(error)
        structlog.get_logger().error("slack_api_failed", error=error_code)
        return _error("slack_api_error", 502, slack_error=error_code)

    @flask_app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception):  # type: ignore[override]
        if isinstance(error, HTTPException):
            return error
        trace_id = str(uuid4())
        flask_app.logger.exception(
            "Unhandled application error", extra={"trace_id": trace_id}, exc_info=error
        )
        return _error("internal_server_error", 500, trace_id=trace_id)


def _decode_event_payload(raw_body: bytes, mimetype: str | None) -> dict:
    """Decode an Events API JSON body or a form-encoded interaction/command."""

    text = raw_body.decode("utf-8")
    if mimetype == "application/json" or text.lstrip().startswith("{"):
        payload = json.loads(text)
    else:
        form = {key: values[0] for key, values in parse_qs(text, keep_blank_values=True).items()}
        payload = json.loads(form["payload"]) if "payload" in form else form

    if not isinstance(payload, dict):
        raise ValueError("Slack payload must be an object.")
    return payload


def _load_version() -> str:
    version_file = Path(__file__).resolve().parent / "VERSION"
    if version_file.exists():
        return version_file.read_text(encoding="utf-8").strip()
    return "unknown"


def _build_services(
    settings: AppSettings,
    *,
    store: ApprovalStore | None,
    executor: ActionExecutor | None,
    client_factory: ClientFactory | None,
    responder_factory: ResponderFactory | None,
    pull_requests: PullRequestSource | None = None,
    oauth_client: WebClient | None = None,
) -> RouterServices:
    store = store or _build_store(settings)
    if pull_requests is None and settings.github_token:
        pull_requests = GitHubPullRequests(settings.github_token, base_url=settings.github_api_url)
    client_factory = client_factory or _default_client_factory
    engine = ApprovalEngine(store)
    resolver = CredentialResolver(
        store,
        ttl=timedelta(seconds=settings.credential_cache_ttl),
        fallback=fallback_from_settings(settings),
    )
    router = MessageRouter(
        engine,
        resolver,
        store,
        executor=executor,
        client_factory=client_factory,
        responder_factory=responder_factory,
        default_team_id=settings.default_team_id,
        pull_requests=pull_requests,
        repos=settings.repos,
        registry=store,
    )
    installer = None
    if settings.oauth_enabled:
        installer = SlackInstaller(
            client_id=settings.client_id,
            client_secret=settings.client_secret,
            registry=store,
            resolver=resolver,
            state_store=MemoryOAuthStateStore(expiration_seconds=settings.oauth_state_ttl),
            scopes=settings.bot_scopes,
            user_scopes=settings.user_scopes,
            redirect_uri=settings.oauth_redirect_uri,
            client=oauth_client,
        )
    return RouterServices(
        settings=settings,
        store=store,
        engine=engine,
        resolver=resolver,
        router=router,
        rate_limiter=TenantRateLimiter(
            limit=settings.rate_limit_per_window,
            window=timedelta(seconds=settings.rate_limit_window),
        ),
        sweeper=ExpirationSweeper(
            engine,
            resolver,
            client_factory=client_factory,
            interval=settings.expiration_sweep_interval,
        ),
        client_factory=client_factory,
        installer=installer,
    )


def create_app(
    settings: AppSettings | None = None,
    *,
    store: ApprovalStore | None = None,
    executor: ActionExecutor | None = None,
    client_factory: ClientFactory | None = None,
    responder_factory: ResponderFactory | None = None,
    pull_requests: PullRequestSource | None = None,
    oauth_client: WebClient | None = None,
    start_background: bool | None = None,
) -> Flask:
    """Create and configure the Flask application."""

    global _LOGGING_CONFIGURED
    settings = settings or get_settings()
    if not _LOGGING_CONFIGURED:
        configure_logging(settings.log_level)
        _LOGGING_CONFIGURED = True

    services = _build_services(
        settings,
        store=store,
        executor=executor,
        client_factory=client_factory,
        responder_factory=responder_factory,
        pull_requests=pull_requests,
        oauth_client=oauth_client,
    )

    flask_app = Flask(__name__)
    flask_app.config["APP_VERSION"] = _load_version()
    flask_app.extensions["approval_router"] = services
    flask_app.logger.setLevel("INFO")
    _register_error_handlers(flask_app)

    def _tenant_client(team_id: str | None) -> SlackClient:
        credential = services.resolver.resolve(team_id or settings.default_team_id)
        return services.client_factory(credential)

    @flask_app.before_request
    def require_internal_token():
        if not request.path.startswith("/api/") or not settings.internal_api_token:
            return None
        expected = f"Bearer {settings.internal_api_token}"
        provided = request.headers.get("Authorization", "")
        if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
            structlog.get_logger().warning("internal_api_unauthorized", path=request.path)
            return _error("unauthorized", 401)
        return None

    @flask_app.route("/slack/events", methods=["POST"])
    def slack_events():
        raw_body = request.get_data()
        trace_id = str(uuid4())
        bind_contextvars(trace_id=trace_id)
        log = structlog.get_logger()
        try:
            try:
                verify(raw_body, request.headers, settings.signing_secret, tolerance=settings.replay_window)
            except VerificationError as exc:
                log.warning("signature_rejected", reason=exc.reason)
                return _error("invalid_signature", 401)

            try:
                payload = _decode_event_payload(raw_body, request.mimetype)
            except (ValueError, KeyError) as exc:
                log.warning("payload_unparseable", error=str(exc))
                return "", 200

            event = services.router.parse(payload)
            log = log.bind(event_kind=event.kind.value, tenant_id=event.team_id)
            if event.kind is EventKind.URL_VERIFICATION:
                log.info("url_verification_answered")
                return jsonify(services.router.acknowledge(event))

            if not services.rate_limiter.hit(event.team_id):
                log.warning("rate_limited", limit=services.rate_limiter.limit)
                return "", 200

            body = services.router.acknowledge(event)
            if services.router.needs_dispatch(event):
                run_async(services.router.dispatch, event, trace_id=trace_id)
            log.info("slack_event_acknowledged")
            if body is not None:
                return jsonify(body)
            return "", 200
        finally:
            unbind_contextvars("trace_id")

    @flask_app.route("/api/approval/send", methods=["POST"])
    def send_approval():
        try:
            approval_request = ApprovalRequest.model_validate(request.get_json(silent=True) or {})
        except ValidationError as exc:
            return _error("invalid_request", 400, details=exc.errors(include_url=False, include_context=False))

        tenant_id = approval_request.tenant_id or settings.default_team_id
        if not tenant_id:
            return _error("invalid_request", 400, message="tenant_id is required")
        if approval_request.expires_at is not None and approval_request.expires_at <= datetime.now(UTC):
            return _error("invalid_request", 400, message="expires_at must be in the future")

        approval_id = approval_request.approval_id or new_approval_id()
        channel_name = approval_request.channel or settings.approval_channels[approval_request.type.value]
        log = structlog.get_logger().bind(approval_id=approval_id, tenant_id=tenant_id)

        draft = Approval(
            approval_id=approval_id,
            type=approval_request.type,
            tenant_id=tenant_id,
            title=approval_request.title,
            description=approval_request.description,
            payload=approval_request.payload,
            priority=approval_request.priority,
            squad=approval_request.squad,
            agent=approval_request.agent,
            created_at=datetime.now(UTC),
            expires_at=approval_request.expires_at,
        )
        posted = publish_approval_message(
            slack_client=_tenant_client(tenant_id),
            approval=draft,
            channel=channel_name,
        )
        try:
            approval = services.engine.create(
                draft.type,
                tenant_id,
                draft.title,
                description=draft.description,
                payload=draft.payload,
                priority=draft.priority,
                expires_at=draft.expires_at,
                approval_id=approval_id,
                squad=draft.squad,
                agent=draft.agent,
                channel_ref=posted["channel"],
                message_ref=posted["ts"],
            )
        except InvalidApproval as exc:
            return _error("invalid_request", 400, message=str(exc))

        log.info("approval_sent", channel=channel_name)
        return jsonify(
            {
                "success": True,
                "approval_id": approval.approval_id,
                "channel": channel_name,
                "slack_ts": approval.message_ref,
            }
        )

    @flask_app.route("/api/approval/<approval_id>", methods=["GET"])
    def get_approval(approval_id: str):
        approval = services.engine.get(approval_id)
        if approval is None:
            return _error("Approval not found", 404)
        return jsonify(approval.model_dump(mode="json"))

    @flask_app.route("/api/approvals", methods=["GET"])
    def list_approvals():
        raw_status = (request.args.get("status") or ApprovalStatus.PENDING.value).lower()
        if raw_status == "all":
            status = None
        else:
            try:
                status = ApprovalStatus(raw_status)
            except ValueError:
                return _error("invalid_status", 400, status=raw_status)
        approvals = services.engine.list(status)
        return jsonify([approval.model_dump(mode="json") for approval in approvals])

    @flask_app.route("/api/approvals/stats", methods=["GET"])
    def approval_stats():
        return jsonify(services.engine.stats())

    @flask_app.route("/api/slack/respond", methods=["POST"])
    def slack_respond():
        body = request.get_json(silent=True) or {}
        channel_id = body.get("channel_id")
        text = body.get("text")
        if not channel_id or not text:
            return _error("channel_id and text are required", 400)

        result = _tenant_client(body.get("team_id")).post_message(
            channel=channel_id,
            text=text,
            thread_ts=body.get("thread_ts") or None,
        )
        ts = result.get("ts")
        log = structlog.get_logger().bind(channel_id=channel_id, message_id=body.get("message_id"))
        log.info("coordinator_response_posted", threaded=bool(body.get("thread_ts")))

        message_id = body.get("message_id")
        if message_id:
            try:
                services.store.mark_message_responded(message_id, ts)
            except StoreError as exc:
                log.warning("message_mark_responded_failed", error=str(exc))

        return jsonify({"success": True, "ts": ts, "channel": channel_id})

    @flask_app.route("/api/post", methods=["POST"])
    def post_info():
        body = request.get_json(silent=True) or {}
        title = body.get("title")
        text = body.get("body")
        if not title or not text:
            return _error("title and body are required", 400)

        channel_name = body.get("channel") or settings.approval_channels["brief"]
        client = _tenant_client(body.get("team_id"))
        message = build_info_message(
            title=title,
            body=text,
            squad=body.get("squad"),
            agent=body.get("agent"),
            emoji=body.get("emoji"),
        )
        result = client.post_message(
            channel=resolve_channel_id(client, channel_name),
            text=message["text"],
            blocks=message["blocks"],
        )
        structlog.get_logger().info("info_message_posted", channel=channel_name)
        return jsonify({"success": True, "channel": channel_name, "ts": result.get("ts")})

    @flask_app.route("/slack/install", methods=["GET"])
    def slack_install():
        if services.installer is None:
            return _error("oauth_not_configured", 404)
        return redirect(services.installer.authorize_url())

    @flask_app.route("/slack/oauth_redirect", methods=["GET"])
    def slack_oauth_redirect():
        if services.installer is None:
            return _error("oauth_not_configured", 404)
        log = structlog.get_logger()
        if request.args.get("error"):
            log.info("oauth_install_denied", error=request.args["error"])
            return _error("access_denied", 400, slack_error=request.args["error"])

        try:
            workspace = services.installer.complete(code=request.args.get("code"), state=request.args.get("state"))
        except InvalidOAuthState:
            return _error("invalid_state", 400)
        except OAuthExchangeFailed as exc:
            return _error("oauth_failed", 502, slack_error=exc.error)
        return jsonify({"success": True, **workspace.to_public()})

    @flask_app.route("/healthz", methods=["GET"])
    def healthz():
        health: dict[str, object] = {"ok": True}
        health["version"] = flask_app.config.get("APP_VERSION", "unknown")
        health["config"] = "valid"
        health["store"] = "up" if services.store.ping() else "down"
        if health["store"] == "down":
            health["ok"] = False
        health["sweeper"] = "running" if services.sweeper.running else "stopped"

        status = 200 if health["ok"] else 503
        return jsonify(health), status

    if start_background is None:
        start_background = settings.expiration_sweep_enabled
    if start_background:
        services.sweeper.start()

    return flask_app


if __name__ == "__main__":  # pragma: no cover - manual execution helper
    application = create_app()
    application.run(host="0.0.0.0", port=3000, debug=True)
