import logging
from contextlib import asynccontextmanager
from dataclasses import asdict

from fastapi import FastAPI, Response, Request, Depends, HTTPException, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from msgbridge.config import settings
from msgbridge.errors import DecryptionError, GatewayError, RouteNotFoundError, TemplateError
from msgbridge.http_gateway import HttpGateway
from msgbridge.logging_utils import setup_logging, RequestLoggingMiddleware, log_webhook_data
from msgbridge.metrics import get_metrics, get_metrics_content_type
from msgbridge.processor import QueueProcessor
from msgbridge.route_service import send_test_sms
from msgbridge.schemas import (
    ErrorResponse,
    HealthResponse,
    QueueRunResponse,
    SendResult,
    SendTestRequest,
    SendTestResponse,
)
from msgbridge.storage import SessionLocal, init_db, check_db_health, get_db
from msgbridge.webhooks import LoggingSink, WebhookCall, WebhookDispatcher, WebhookSink
from msgbridge.whatsapp import WhatsAppSender


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: create tables, build the shared gateway and queue processor,
      start polling when QUEUE_ENABLED
    - Shutdown: stop the queue processor
    """
    init_db()

    gateway = HttpGateway(timeout=settings.GATEWAY_TIMEOUT_SECONDS)
    whatsapp_sender = WhatsAppSender(gateway, settings.ENCRYPTION_KEY)
    processor = QueueProcessor(
        session_factory=SessionLocal,
        gateway=gateway,
        whatsapp_sender=whatsapp_sender,
        encryption_key=settings.ENCRYPTION_KEY,
        batch_size=settings.QUEUE_BATCH_SIZE,
        poll_interval=settings.QUEUE_POLL_INTERVAL_SECONDS,
        max_retries=settings.QUEUE_MAX_RETRIES,
    )
    app.state.gateway = gateway
    app.state.whatsapp_sender = whatsapp_sender
    app.state.processor = processor

    if settings.QUEUE_ENABLED:
        await processor.start()
    yield
    await processor.stop()


app = FastAPI(
    title="Message Bridge",
    description="Multi-tenant SMS and WhatsApp delivery gateway",
    version="1.0.0",
    lifespan=lifespan,
)

# Add request logging middleware
app.add_middleware(RequestLoggingMiddleware)


# =============================================================================
# Dependencies
# =============================================================================

def get_gateway(request: Request) -> HttpGateway:
    return request.app.state.gateway


def get_whatsapp_sender(request: Request) -> WhatsAppSender:
    return request.app.state.whatsapp_sender


def get_processor(request: Request) -> QueueProcessor:
    return request.app.state.processor


def get_webhook_sink() -> WebhookSink:
    return LoggingSink()


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    Used by orchestrators to determine if the app needs to be restarted.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. ENCRYPTION_KEY is set (non-empty)
    2. DB is reachable and schema is applied

    Otherwise returns 503 (Service Unavailable).
    """
    if not settings.ENCRYPTION_KEY:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="ENCRYPTION_KEY not configured"
        )

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Webhook Route
# =============================================================================

@app.api_route(
    "/webhooks/{webhook_path:path}",
    methods=["GET", "POST"],
    responses={
        401: {"model": ErrorResponse, "description": "Invalid signature"},
        403: {"model": ErrorResponse, "description": "Verification token mismatch"},
        404: {"model": ErrorResponse, "description": "Unknown webhook path"},
    }
)
async def webhook(
    webhook_path: str,
    request: Request,
    db: Session = Depends(get_db),
    sink: WebhookSink = Depends(get_webhook_sink),
) -> Response:
    """
    Receive provider callbacks for a route.

    The response shape is whatever the route's webhook config asks for:
    a rendered response template (JSON, XML or text) or the default
    `{"success": true, "message": "Webhook processed"}`.
    """
    # Signatures are computed over the raw bytes
    raw_body = await request.body()
    logger.debug(f"Webhook body size: {len(raw_body)} bytes")

    call = WebhookCall(
        path=webhook_path,
        method=request.method,
        headers=dict(request.headers),
        query=dict(request.query_params),
        body=raw_body,
    )
    dispatcher = WebhookDispatcher(
        db,
        settings.ENCRYPTION_KEY,
        sink=sink,
        verify_token=settings.WHATSAPP_VERIFY_TOKEN,
    )
    result = dispatcher.dispatch(call)

    log_webhook_data(
        request=request,
        route_id=result.route_id,
        kind=result.route_type,
        result=result.result
    )

    if result.media_type == "application/json":
        return JSONResponse(status_code=result.status_code, content=result.body)
    return Response(content=str(result.body), status_code=result.status_code, media_type=result.media_type)


# =============================================================================
# Route Test-Send Routes
# =============================================================================

def _send_test_response(result: SendResult) -> SendTestResponse:
    return SendTestResponse(
        success=result.success,
        provider_message_id=result.provider_message_id,
        response=result.response,
    )


async def _run_test_send(route_kind: str, route_id: int, send) -> SendTestResponse:
    try:
        result = await send()
    except RouteNotFoundError as e:
        logger.warning(f"Test send: {e}")
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except (DecryptionError, TemplateError) as e:
        logger.error(f"Test send: {route_kind} route {route_id} is misconfigured: {e}")
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    except GatewayError as e:
        logger.error(f"Test send: provider call failed for {route_kind} route {route_id}: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    logger.info(f"Test send via {route_kind} route {route_id}: success={result.success}")
    return _send_test_response(result)


@app.post(
    "/routes/sms/{route_id}/test",
    response_model=SendTestResponse,
    responses={
        404: {"description": "Route not found"},
        422: {"description": "Route misconfigured or invalid body"},
        502: {"description": "Provider call failed"},
    }
)
async def send_sms_route_test(
    route_id: int,
    body: SendTestRequest,
    db: Session = Depends(get_db),
    gateway: HttpGateway = Depends(get_gateway),
) -> SendTestResponse:
    """Send one SMS through a route exactly as the queue would."""
    payload = {"to": body.to, "text": body.text, "from": body.from_msisdn}
    return await _run_test_send(
        "sms",
        route_id,
        lambda: send_test_sms(db, route_id, payload, gateway, settings.ENCRYPTION_KEY),
    )


@app.post(
    "/routes/whatsapp/{route_id}/test",
    response_model=SendTestResponse,
    responses={
        404: {"description": "Route or credential not found"},
        422: {"description": "Route misconfigured or invalid body"},
        502: {"description": "Provider call failed"},
    }
)
async def send_whatsapp_route_test(
    route_id: int,
    body: SendTestRequest,
    db: Session = Depends(get_db),
    sender: WhatsAppSender = Depends(get_whatsapp_sender),
) -> SendTestResponse:
    """Send one WhatsApp text message through a route."""
    return await _run_test_send(
        "whatsapp",
        route_id,
        lambda: sender.send_test(db, route_id, body.to, body.text),
    )


# =============================================================================
# Queue Route
# =============================================================================

@app.post("/queue/run", response_model=QueueRunResponse)
async def run_queue(processor: QueueProcessor = Depends(get_processor)) -> QueueRunResponse:
    """
    Run one queue batch now. Returns `skipped: true` if a run is already in
    progress.
    """
    summary = await processor.run_once()
    return QueueRunResponse(**asdict(summary))


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.

    Returns metrics in Prometheus text exposition format including:
    - http_requests_total: Total HTTP requests by method, path, status
    - webhook_requests_total: Webhook outcomes by result
    - gateway_requests_total: Outbound provider calls by outcome
    - queue_messages_total / queue_deliveries_total: Queue processor outcomes
    - request_latency_seconds: Request latency histogram
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
