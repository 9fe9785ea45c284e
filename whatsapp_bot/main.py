import json
import logging
import time
import uuid
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta
from typing import Annotated, Callable, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request, Response, status
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError

from whatsapp_bot.config import Settings, get_settings
from whatsapp_bot.logging_utils import RequestLoggingMiddleware, log_webhook_data, setup_logging
from whatsapp_bot.metrics import get_metrics, get_metrics_content_type, record_webhook_outcome
from whatsapp_bot.notifier import LoggingNotifier, Notifier
from whatsapp_bot.processor import MessageProcessor
from whatsapp_bot.schemas import (
    AnalyticsRecord,
    BotConfigRecord,
    BotConfigUpdate,
    BotTestRequest,
    BroadcastRequest,
    BroadcastResponse,
    ConversationRecord,
    DashboardStats,
    ErrorResponse,
    HealthResponse,
    InboundUnit,
    MessageRecord,
    StatusResponse,
    TemplateCreate,
    TemplateRecord,
    TemplateUpdate,
    VerificationParams,
    WebhookLogRecord,
    WebhookPayload,
    WebhookResponse,
)
from whatsapp_bot.stats import build_daily_analytics, compute_dashboard
from whatsapp_bot.storage import DuplicateKeyError, Storage, build_storage, utcnow
from whatsapp_bot.utils import verify_hub_signature, verify_token


logger = logging.getLogger(__name__)

router = APIRouter()


# =============================================================================
# Dependencies
# =============================================================================

def get_storage(request: Request) -> Storage:
    return request.app.state.storage


def get_processor(request: Request) -> MessageProcessor:
    return request.app.state.processor


def get_clock(request: Request) -> Callable[[], datetime]:
    return request.app.state.clock


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


StorageDep = Annotated[Storage, Depends(get_storage)]
ProcessorDep = Annotated[MessageProcessor, Depends(get_processor)]
ClockDep = Annotated[Callable[[], datetime], Depends(get_clock)]
SettingsDep = Annotated[Settings, Depends(get_app_settings)]


# =============================================================================
# Health Check Routes
# =============================================================================

@router.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """Liveness probe - always returns 200 once the app is running."""
    return HealthResponse(status="ok")


@router.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response, storage: StorageDep, settings: SettingsDep) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. WHATSAPP_VERIFY_TOKEN is set (non-empty)
    2. Storage is reachable and its schema is applied

    Otherwise returns 503 (Service Unavailable).
    """
    if not settings.WHATSAPP_VERIFY_TOKEN:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="WHATSAPP_VERIFY_TOKEN not configured")

    if not storage.check_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="Storage not reachable or schema not applied")

    return HealthResponse(status="ready")


# =============================================================================
# Webhook Routes
# =============================================================================

@router.get(
    "/api/webhook",
    response_class=PlainTextResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Malformed verification request"},
        403: {"model": ErrorResponse, "description": "Verify token mismatch"},
    },
)
async def verify_webhook(request: Request, settings: SettingsDep) -> PlainTextResponse:
    """
    Subscription handshake.

    Echoes hub.challenge when hub.mode is "subscribe" and hub.verify_token
    matches the configured token.
    """
    try:
        params = VerificationParams.model_validate(dict(request.query_params))
    except ValidationError as e:
        logger.warning(f"Invalid verification request: {e.error_count()} errors")
        record_webhook_outcome("validation_error")
        log_webhook_data(request, result="validation_error")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid verification request")

    if not verify_token(params.verify_token, settings.WHATSAPP_VERIFY_TOKEN):
        logger.warning("Webhook verification failed: token mismatch")
        record_webhook_outcome("verification_failed")
        log_webhook_data(request, result="verification_failed")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Verification failed")

    logger.info("Webhook verified")
    record_webhook_outcome("verified")
    log_webhook_data(request, result="verified")
    return PlainTextResponse(params.challenge)


@router.post(
    "/api/webhook",
    response_model=WebhookResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid signature"},
        500: {"model": ErrorResponse, "description": "Payload could not be parsed"},
    },
)
async def receive_webhook(
    request: Request,
    processor: ProcessorDep,
    settings: SettingsDep,
    x_hub_signature_256: Annotated[Optional[str], Header(alias="X-Hub-Signature-256")] = None,
) -> WebhookResponse:
    """
    Ingest a delivery notification from the messaging platform.

    - Verifies X-Hub-Signature-256 when WHATSAPP_APP_SECRET is configured
    - Validates the body against WebhookPayload (500 on failure)
    - Feeds every inbound message to the message processor

    Per-message failures are swallowed by the processor, so any structurally
    valid delivery is acknowledged with 200 to stop platform retries.
    """
    raw_body = await request.body()
    logger.debug(f"Request body size: {len(raw_body)} bytes")

    if settings.WHATSAPP_APP_SECRET and not verify_hub_signature(
        raw_body, x_hub_signature_256, settings.WHATSAPP_APP_SECRET
    ):
        logger.error("Invalid webhook signature")
        record_webhook_outcome("invalid_signature")
        log_webhook_data(request, result="invalid_signature")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid signature")

    try:
        payload = WebhookPayload.model_validate(json.loads(raw_body))
    except (json.JSONDecodeError, UnicodeDecodeError, ValidationError) as e:
        logger.error(f"Webhook processing error: {e}")
        record_webhook_outcome("validation_error")
        log_webhook_data(request, result="validation_error")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed"
        )

    units = processor.process_payload(payload)
    logger.info(f"Webhook delivery processed: {units} inbound messages")
    record_webhook_outcome("processed")
    log_webhook_data(request, units=units, result="processed")
    return WebhookResponse(status="ok")


# =============================================================================
# Dashboard Route
# =============================================================================

@router.get("/api/dashboard/stats", response_model=DashboardStats)
async def dashboard_stats(storage: StorageDep, clock: ClockDep, settings: SettingsDep) -> DashboardStats:
    return compute_dashboard(
        storage.snapshot(),
        clock(),
        active_window_hours=settings.ACTIVE_USER_WINDOW_HOURS,
    )


# =============================================================================
# Messages & Conversations Routes
# =============================================================================

@router.get("/api/messages", response_model=list[MessageRecord])
async def list_messages(
    storage: StorageDep,
    limit: Annotated[int, Query(ge=1, le=500, description="Maximum number of messages to return")] = 50,
    offset: Annotated[int, Query(ge=0, description="Number of messages to skip")] = 0,
) -> list[MessageRecord]:
    """Messages newest first, windowed by offset/limit."""
    messages = storage.get_messages(limit=limit, offset=offset)
    logger.info(f"GET /api/messages: returned {len(messages)} messages (limit={limit}, offset={offset})")
    return messages


@router.get("/api/messages/conversation/{phone_number}", response_model=list[MessageRecord])
async def list_conversation_messages(phone_number: str, storage: StorageDep) -> list[MessageRecord]:
    """All messages from one sender, oldest first."""
    return storage.get_messages_by_conversation(phone_number)


@router.get("/api/conversations", response_model=list[ConversationRecord])
async def list_conversations(storage: StorageDep) -> list[ConversationRecord]:
    """Active conversations, most recently active first."""
    return storage.get_active_conversations()


@router.post(
    "/api/messages/broadcast",
    response_model=BroadcastResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def broadcast_message(
    body: BroadcastRequest,
    storage: StorageDep,
    processor: ProcessorDep,
) -> BroadcastResponse:
    """
    Send a message to every active conversation.

    Either message or templateId is required; a template's usage count is
    bumped once per broadcast.
    """
    if not body.message and not body.template_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Either message or templateId is required"
        )

    text = body.message
    if body.template_id:
        template = storage.increment_template_usage(body.template_id)
        if template is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Template not found")
        text = text or template_text(template)

    recipients = processor.broadcast(text)
    return BroadcastResponse(status="Broadcast queued", recipient_count=recipients)


def template_text(template: TemplateRecord) -> str:
    """Text of a template's BODY component, falling back to its name."""
    components = template.components if isinstance(template.components, list) else []
    for component in components:
        if isinstance(component, dict) and str(component.get("type", "")).upper() == "BODY":
            body_text = component.get("text")
            if body_text:
                return body_text
    return template.name


# =============================================================================
# Templates Routes
# =============================================================================

@router.get("/api/templates", response_model=list[TemplateRecord])
async def list_templates(storage: StorageDep) -> list[TemplateRecord]:
    return storage.get_templates()


@router.post(
    "/api/templates",
    response_model=TemplateRecord,
    status_code=status.HTTP_201_CREATED,
    responses={409: {"model": ErrorResponse}},
)
async def create_template(body: TemplateCreate, storage: StorageDep) -> TemplateRecord:
    try:
        template = storage.create_template(body)
    except DuplicateKeyError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    logger.info(f"Template created: {template.name}")
    return template


@router.put(
    "/api/templates/{template_id}",
    response_model=TemplateRecord,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def update_template(template_id: str, body: TemplateUpdate, storage: StorageDep) -> TemplateRecord:
    try:
        template = storage.update_template(template_id, body)
    except DuplicateKeyError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if template is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Template not found")
    return template


# =============================================================================
# Bot Configuration Routes
# =============================================================================

@router.get("/api/bot/config", response_model=list[BotConfigRecord])
async def list_bot_config(storage: StorageDep) -> list[BotConfigRecord]:
    return storage.get_bot_config()


@router.put(
    "/api/bot/config/{key}",
    response_model=BotConfigRecord,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def update_bot_config(key: str, body: BotConfigUpdate, storage: StorageDep) -> BotConfigRecord:
    if not body.value:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Value is required")

    config = storage.update_bot_config(key, body)
    if config is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Configuration key not found")

    logger.info(f"Bot config updated: {key}")
    return config


@router.post(
    "/api/bot/test",
    response_model=StatusResponse,
    responses={400: {"model": ErrorResponse}},
)
async def test_bot(body: BotTestRequest, processor: ProcessorDep) -> StatusResponse:
    """Push a synthetic inbound message through the pipeline."""
    if not body.message or not body.phone_number:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Message and phone number are required"
        )

    unit = InboundUnit(
        external_id=f"test_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}",
        sender=body.phone_number,
        recipient="test_bot",
        body=body.message,
        kind="text",
        external_timestamp=utcnow().isoformat(),
    )
    processor.process(unit)
    return StatusResponse(status="Test message processed successfully")


# =============================================================================
# Webhook Logs & Analytics Routes
# =============================================================================

@router.get("/api/webhooks/logs", response_model=list[WebhookLogRecord])
async def list_webhook_logs(
    storage: StorageDep,
    settings: SettingsDep,
    limit: Annotated[Optional[int], Query(ge=1, le=1000, description="Maximum number of logs")] = None,
) -> list[WebhookLogRecord]:
    return storage.get_webhook_logs(limit=limit or settings.WEBHOOK_LOG_LIMIT)


@router.get("/api/analytics", response_model=list[AnalyticsRecord])
async def list_analytics(
    storage: StorageDep,
    clock: ClockDep,
    start: Annotated[Optional[date], Query(description="First day (YYYY-MM-DD), default six days before end")] = None,
    end: Annotated[Optional[date], Query(description="Last day (YYYY-MM-DD), default today")] = None,
) -> list[AnalyticsRecord]:
    end = end or clock().date()
    start = start or end - timedelta(days=6)
    return storage.get_analytics_range(start.isoformat(), end.isoformat())


@router.post("/api/analytics/rollup", response_model=AnalyticsRecord)
async def rollup_analytics(
    storage: StorageDep,
    clock: ClockDep,
    day: Annotated[Optional[date], Query(alias="date", description="Day to roll up, default today")] = None,
) -> AnalyticsRecord:
    """Recompute one day's analytics row from stored messages."""
    day = day or clock().date()
    record = storage.upsert_analytics(build_daily_analytics(storage.snapshot(), day))
    logger.info(f"Analytics rolled up for {record.date}: {record.messages_received} messages")
    return record


# =============================================================================
# Metrics Route
# =============================================================================

@router.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus-style metrics."""
    return Response(content=get_metrics(), media_type=get_metrics_content_type())


# =============================================================================
# Application Factory
# =============================================================================

def create_app(
    storage: Optional[Storage] = None,
    notifier: Optional[Notifier] = None,
    clock: Callable[[], datetime] = utcnow,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Storage, notifier and clock are injected so tests can swap in fresh or
    fake collaborators; by default they come from settings.
    """
    settings = settings or get_settings()
    storage = storage if storage is not None else build_storage(settings.DATABASE_URL)
    notifier = notifier if notifier is not None else LoggingNotifier(settings.WHATSAPP_PHONE_NUMBER_ID)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Lifespan context manager for startup and shutdown events.
        - Startup: create tables and seed default bot configuration
        """
        app.state.storage.init()
        yield

    app = FastAPI(
        title="WhatsApp Bot API",
        description="Webhook ingestion, command responses and dashboard stats for a WhatsApp bot",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.storage = storage
    app.state.clock = clock
    app.state.processor = MessageProcessor(storage, notifier)

    app.add_middleware(RequestLoggingMiddleware)
    app.include_router(router)
    return app


setup_logging(get_settings().LOG_LEVEL)
app = create_app()
