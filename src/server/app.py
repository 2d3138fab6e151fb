"""FastAPI webhook endpoint for Meta (Instagram and Messenger) notifications.

POST convention: a request whose X-Hub-Signature-256 does not verify gets
403 with an empty body. Every verified request is acknowledged with 200
``EVENT_RECEIVED`` before any dispatch work starts, including payloads
that fail to parse or belong to an unsupported object type; those are
logged and dropped.
"""

from __future__ import annotations

import hmac
import json
import logging
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.background import BackgroundTask

from src.audit.logger import AuditLogger
from src.config import Settings, load_settings, source_from_env
from src.models import AuditEvent, AuditEventType, NormalizedEvent, RiskLevel
from src.webhook.credentials import CredentialResolver
from src.webhook.dedup import MessageDeduplicator
from src.webhook.delivery import DeliveryCallback, GraphDeliveryClient
from src.webhook.dispatcher import Dispatcher
from src.webhook.history import ConversationHistoryStore, SQLiteHistoryStore
from src.webhook.normalizer import normalize_payload
from src.webhook.platform import detect_platform
from src.webhook.producer import AgentHookProducer, ChatCompletionsProducer, ResponseProducer
from src.webhook.runner import DispatchRunner
from src.webhook.signature import SIGNATURE_HEADER, verify_signature

logger = logging.getLogger(__name__)

SERVICE_NAME = "meta-webhook-relay"
ACK_BODY = "EVENT_RECEIVED"
WEBHOOK_PATHS = ("/webhook", "/webhook/meta", "/webhook/instagram", "/webhook/messenger")

_MAX_WEBHOOK_BODY_SIZE = 1024 * 1024  # 1MB


def create_app_from_env() -> FastAPI:
    """Factory for uvicorn --factory: reads config from CONFIG_PATH or the environment."""
    settings = load_settings(source_from_env())
    return create_app(settings)


def _build_producer(
    settings: Settings, credentials: CredentialResolver, delivery: GraphDeliveryClient,
) -> ResponseProducer:
    agent = settings.openclaw
    if agent.mode == "chat":
        return ChatCompletionsProducer(
            agent.upstream_url, api_key=agent.api_key, timeout=agent.timeout_seconds,
        )
    return AgentHookProducer(
        agent.hook_url,
        credentials,
        delivery,
        api_key=agent.api_key,
        timeout=agent.timeout_seconds,
    )


def create_app(
    settings: Settings,
    producer: ResponseProducer | None = None,
    delivery: DeliveryCallback | None = None,
    history_store: ConversationHistoryStore | None = None,
    deduplicator: MessageDeduplicator | None = None,
    audit_logger: AuditLogger | None = None,
) -> FastAPI:
    """Create the webhook app; collaborators default to ones built from settings."""
    credentials = CredentialResolver(settings.meta)
    storage = settings.storage

    graph_client = GraphDeliveryClient(credentials)
    if delivery is None:
        delivery = graph_client
    if producer is None:
        producer = _build_producer(settings, credentials, graph_client)
    if history_store is None and storage.history_db_path:
        history_store = SQLiteHistoryStore(
            storage.history_db_path, max_turns=storage.history_max_turns,
        )
    if deduplicator is None and storage.dedup_enabled:
        deduplicator = MessageDeduplicator(storage.dedup_db_path)
    if audit_logger is None and storage.audit_log_path:
        audit_logger = AuditLogger.from_env(storage.audit_log_path)

    dispatcher = Dispatcher(
        producer,
        delivery,
        history_store=history_store,
        deduplicator=deduplicator,
        business_account_id=settings.meta.business_account_id,
        typing_indicator=settings.meta.typing_indicator,
        audit_logger=audit_logger,
    )
    runner = DispatchRunner(dispatcher)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        logger.info("Webhook endpoints: %s", ", ".join(WEBHOOK_PATHS))
        yield
        await runner.drain()

    app = FastAPI(docs_url=None, redoc_url=None, lifespan=lifespan)
    app.state.credentials = credentials
    app.state.dispatcher = dispatcher
    app.state.runner = runner

    def audit(request: Request, event_type: AuditEventType, result: str, reason: str) -> None:
        if audit_logger:
            audit_logger.log(AuditEvent(
                event_type=event_type,
                source_ip=request.client.host if request.client else None,
                action=f"{request.method} {request.url.path}",
                result=result,
                risk_level=RiskLevel.INFO if result == "success" else RiskLevel.HIGH,
                details={"reason": reason},
            ))

    async def verify_webhook(request: Request) -> Response:
        params = request.query_params
        mode = params.get("hub.mode")
        token = params.get("hub.verify_token", "")
        challenge = params.get("hub.challenge", "")

        if mode == "subscribe" and _token_accepted(token, credentials.verify_tokens()):
            logger.info("Webhook verified on %s", request.url.path)
            audit(request, AuditEventType.HANDSHAKE_SUCCESS, "success", "verified")
            return PlainTextResponse(challenge, status_code=200)

        logger.warning("Webhook verification failed on %s (mode=%r)", request.url.path, mode)
        audit(request, AuditEventType.HANDSHAKE_FAILURE, "failure", "invalid_verify_token")
        return PlainTextResponse("Forbidden", status_code=403)

    async def receive_event(request: Request) -> Response:
        body = await request.body()
        if len(body) > _MAX_WEBHOOK_BODY_SIZE:
            return JSONResponse({"error": "Request body too large"}, status_code=413)

        payload = _parse_json(body)
        platform = detect_platform(payload.get("object")) if payload is not None else None

        signature = request.headers.get(SIGNATURE_HEADER)
        if not verify_signature(body, signature, credentials.candidate_secrets(platform)):
            logger.warning("Invalid webhook signature on %s", request.url.path)
            audit(
                request, AuditEventType.SIGNATURE_INVALID, "failure",
                "missing_signature" if not signature else "signature_mismatch",
            )
            return Response(status_code=403)

        if payload is None:
            logger.warning("Ignoring webhook body that is not a JSON object")
            return PlainTextResponse(ACK_BODY)
        if platform is None:
            logger.debug("Skipping unsupported webhook object: %r", payload.get("object"))
            return PlainTextResponse(ACK_BODY)

        events = normalize_payload(platform, payload)
        logger.info("Webhook event received for %s: %d event(s)", platform.value, len(events))
        if not events:
            return PlainTextResponse(ACK_BODY)
        return PlainTextResponse(ACK_BODY, background=BackgroundTask(_schedule, runner, events))

    for path in WEBHOOK_PATHS:
        app.add_api_route(path, verify_webhook, methods=["GET"])
        app.add_api_route(path, receive_event, methods=["POST"])

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "service": SERVICE_NAME}

    return app


async def _schedule(runner: DispatchRunner, events: Sequence[NormalizedEvent]) -> None:
    # Runs after the response is sent; only hands the work to the event loop
    runner.submit(events)


def _token_accepted(token: str, accepted: frozenset[str]) -> bool:
    provided = token.encode()
    matched = False
    for candidate in accepted:
        if hmac.compare_digest(provided, candidate.encode()):
            matched = True
    return matched and bool(token)


def _parse_json(body: bytes) -> dict[str, Any] | None:
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    return data if isinstance(data, dict) else None
