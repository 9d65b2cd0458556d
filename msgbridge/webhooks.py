"""
Inbound provider webhooks.

Every route with an issued webhook path receives provider callbacks at
/webhooks/{path}. The dispatcher resolves the route, authenticates the call
with the route's own signature settings, classifies the payload as an
incoming message or a delivery report and replies in whatever shape the
provider expects.

Pipeline: received -> route resolved -> signature checked -> classified ->
(incoming | delivery report | unclassified) -> response sent.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Optional
from urllib.parse import parse_qsl

from sqlalchemy.orm import Session

from msgbridge.errors import InvalidWebhookClassificationError, SignatureValidationError, TemplateError
from msgbridge.json_path import extract
from msgbridge.metrics import record_webhook_outcome
from msgbridge.schemas import (
    DeliveryReport,
    DeliveryReportConfig,
    IncomingMessage,
    IncomingMessageConfig,
    WebhookConfig,
)
from msgbridge.signatures import validate_request
from msgbridge.storage import find_route_by_webhook_path
from msgbridge.templates import render
from msgbridge.vault import load_route_config

logger = logging.getLogger(__name__)

DEFAULT_RESPONSE = {"success": True, "message": "Webhook processed"}

# Epoch values above this are taken to be milliseconds
_EPOCH_MILLIS_THRESHOLD = 1e11


@dataclass
class WebhookCall:
    """Transport-independent view of one inbound HTTP request."""
    path: str
    method: str = "POST"
    headers: Mapping[str, str] = field(default_factory=dict)
    query: Mapping[str, str] = field(default_factory=dict)
    body: bytes = b""
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class WebhookResponse:
    status_code: int
    body: Any
    media_type: str = "application/json"
    # Metric/log label: incoming, delivery_report, unclassified, not_found,
    # invalid_signature, verified, verify_rejected, error
    result: str = "unclassified"
    route_id: Optional[int] = None
    route_type: Optional[str] = None


class WebhookSink:
    """
    Receives normalized records. Persisting them or notifying clients is
    up to the implementation; the dispatcher's job ends here.
    """

    def on_incoming(self, message: IncomingMessage) -> None:
        pass

    def on_delivery_report(self, report: DeliveryReport) -> None:
        pass


class LoggingSink(WebhookSink):
    def on_incoming(self, message: IncomingMessage) -> None:
        logger.info(
            f"Incoming message on route {message.route_id}",
            extra={"provider": message.provider, "provider_message_id": message.message_id},
        )

    def on_delivery_report(self, report: DeliveryReport) -> None:
        logger.info(
            f"Delivery report for {report.message_id}: {report.status}",
            extra={"provider": report.provider, "raw_status": report.raw_status},
        )


# =============================================================================
# Payload helpers
# =============================================================================

def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    wanted = name.lower()
    return next((v for k, v in headers.items() if k.lower() == wanted), None)


def parse_payload(call: WebhookCall) -> Any:
    """
    Turn the request into the object paths are evaluated against.

    JSON bodies are parsed as JSON, form bodies and GET query strings become
    flat objects. An unreadable body gives an empty object, which then
    classifies as unclassified.
    """
    if call.method.upper() == "GET" or not call.body:
        return dict(call.query)

    content_type = (_header(call.headers, "content-type") or "").lower()
    text_body = call.body.decode("utf-8", errors="replace")

    if "json" in content_type or text_body.lstrip().startswith(("{", "[")):
        try:
            return json.loads(text_body)
        except ValueError:
            logger.warning("Webhook body is not valid JSON")
            return {}

    if "x-www-form-urlencoded" in content_type or "=" in text_body:
        return dict(parse_qsl(text_body, keep_blank_values=True))

    logger.warning(f"Unsupported webhook content type: {content_type or 'none'}")
    return {}


def _present(value: Any) -> bool:
    return value is not None and str(value) != ""


def _optional_str(value: Any) -> Optional[str]:
    return str(value) if _present(value) else None


def parse_timestamp(value: Any, received_at: datetime) -> datetime:
    """
    Normalize a provider timestamp: ISO-8601 strings, epoch seconds or
    epoch milliseconds. Anything else falls back to `received_at`.
    """
    if not _present(value) or isinstance(value, bool):
        return received_at

    try:
        if isinstance(value, (int, float)):
            epoch = float(value)
        else:
            text_value = str(value).strip()
            try:
                epoch = float(text_value)
            except ValueError:
                parsed = datetime.fromisoformat(text_value.replace("Z", "+00:00"))
                return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)

        if epoch > _EPOCH_MILLIS_THRESHOLD:
            epoch /= 1000
        return datetime.fromtimestamp(epoch, tz=timezone.utc)
    except (ValueError, OverflowError, OSError):
        logger.warning(f"Unparsable webhook timestamp {value!r}, using receipt time")
        return received_at


# =============================================================================
# Dispatcher
# =============================================================================

class WebhookDispatcher:
    """
    Handles one inbound webhook call per `dispatch`.

    Args:
        session: Database session used to resolve the route
        encryption_key: Credential Vault secret
        sink: Receives normalized records (defaults to LoggingSink)
        verify_token: Fallback token for the WhatsApp verification handshake
    """

    def __init__(
        self,
        session: Session,
        encryption_key: str,
        sink: Optional[WebhookSink] = None,
        verify_token: str = "",
    ):
        self.session = session
        self.encryption_key = encryption_key
        self.sink = sink or LoggingSink()
        self.verify_token = verify_token

    def dispatch(self, call: WebhookCall) -> WebhookResponse:
        try:
            response = self._dispatch(call)
        except Exception as e:
            logger.exception(f"Webhook processing failed: {e}")
            response = WebhookResponse(500, {"error": "Internal server error"}, result="error")
        record_webhook_outcome(response.result)
        return response

    def _dispatch(self, call: WebhookCall) -> WebhookResponse:
        path = call.path.strip("/")
        logger.info(f"Webhook received: {call.method} /{path}")

        route = find_route_by_webhook_path(self.session, path)
        if route is None or not route.webhook_enabled:
            logger.warning(f"No active route for webhook path /{path}")
            return WebhookResponse(404, {"error": "Webhook not found"}, result="not_found")

        webhook = load_route_config(route.encrypted_config, self.encryption_key).webhook

        def respond(status_code: int, body: Any, result: str, media_type: str = "application/json"):
            return WebhookResponse(status_code, body, media_type, result, route.id, route.route_type)

        if call.method.upper() == "GET" and "hub.mode" in call.query:
            return self._verify_subscription(call.query, webhook, respond)

        try:
            self._check_signature(call, webhook)
        except SignatureValidationError as e:
            logger.error(f"Webhook rejected for route {route.id}: {e}")
            return respond(401, {"error": "Invalid signature"}, "invalid_signature")

        payload = parse_payload(call)

        try:
            record = self._classify(route, payload, webhook, call.received_at)
        except InvalidWebhookClassificationError as e:
            # Accepted anyway so the provider does not keep retrying
            logger.warning(f"Unclassified webhook on route {route.id}: {e}")
            return self._render_response(webhook, {"payload": payload}, respond, "unclassified")

        incoming = isinstance(record, IncomingMessage)
        context = record.model_dump(mode="json", by_alias=True, exclude={"raw_payload"})
        context["payload"] = payload
        # The reply is settled before the sink sees the record
        response = self._render_response(webhook, context, respond, "incoming" if incoming else "delivery_report")

        if incoming:
            self.sink.on_incoming(record)
        else:
            self.sink.on_delivery_report(record)
        return response

    def _verify_subscription(self, query: Mapping[str, str], webhook: WebhookConfig, respond) -> WebhookResponse:
        """
        Answer the hub.challenge handshake. Any non-empty `hub.mode` is
        accepted; the token decides.
        """
        mode = query.get("hub.mode")
        token = query.get("hub.verify_token")
        expected = webhook.verify_token or self.verify_token

        if mode and expected and token == expected:
            logger.info("Webhook subscription verified")
            return respond(200, query.get("hub.challenge", ""), "verified", "text/plain")

        logger.warning("Webhook subscription verification failed")
        return respond(403, {"error": "Verification failed"}, "verify_rejected")

    def _check_signature(self, call: WebhookCall, webhook: WebhookConfig) -> None:
        config = webhook.signature_validation
        if config is None or not config.enabled:
            return
        if not validate_request(call.headers, call.body, config):
            raise SignatureValidationError(f"{config.algorithm} check failed on {config.header_name}")

    def _classify(self, route, payload: Any, webhook: WebhookConfig, received_at: datetime):
        incoming = webhook.incoming_message
        if incoming is not None and incoming.enabled:
            sender = extract(payload, incoming.from_path) if incoming.from_path else None
            text_value = extract(payload, incoming.message_path) if incoming.message_path else None
            if _present(sender) and _present(text_value):
                return self._incoming_message(route, payload, incoming, sender, text_value, received_at)

        report = webhook.delivery_report
        if report is not None and report.enabled:
            return self._delivery_report(route, payload, report, received_at)

        raise InvalidWebhookClassificationError("payload is neither an incoming message nor a delivery report")

    def _incoming_message(
        self,
        route,
        payload: Any,
        config: IncomingMessageConfig,
        sender: Any,
        text_value: Any,
        received_at: datetime,
    ) -> IncomingMessage:
        return IncomingMessage(
            route_id=route.id,
            route_type=route.route_type,
            provider=route.provider,
            from_msisdn=str(sender),
            to=route.sender_identity or "",
            text=str(text_value),
            message_id=_optional_str(extract(payload, config.message_id_path)) if config.message_id_path else None,
            timestamp=parse_timestamp(
                extract(payload, config.timestamp_path) if config.timestamp_path else None,
                received_at,
            ),
            raw_payload=payload,
        )

    def _delivery_report(
        self,
        route,
        payload: Any,
        config: DeliveryReportConfig,
        received_at: datetime,
    ) -> DeliveryReport:
        message_id = extract(payload, config.message_id_path) if config.message_id_path else None
        raw_status = extract(payload, config.status_path) if config.status_path else None
        if not _present(message_id) or not _present(raw_status):
            raise InvalidWebhookClassificationError("delivery report is missing message id or status")

        raw_status = str(raw_status)
        status = config.status_mapping.get(raw_status)
        if status is None:
            logger.warning(
                f"Unmapped delivery status '{raw_status}' on route {route.id}, recording as pending"
            )
            status = "pending"

        def optional(path: Optional[str]) -> Any:
            return extract(payload, path) if path else None

        return DeliveryReport(
            route_id=route.id,
            route_type=route.route_type,
            provider=route.provider,
            message_id=str(message_id),
            external_id=_optional_str(optional(config.external_id_path)),
            status=status,
            raw_status=raw_status,
            error=_optional_str(optional(config.error_path)),
            timestamp=parse_timestamp(optional(config.timestamp_path), received_at),
            raw_payload=payload,
        )

    def _render_response(self, webhook: WebhookConfig, context: dict, respond, result: str) -> WebhookResponse:
        status_code = webhook.response_status or 200

        if not webhook.response_template:
            return respond(status_code, dict(DEFAULT_RESPONSE), result)

        try:
            rendered = render(webhook.response_template, context)
        except TemplateError as e:
            logger.error(f"Webhook response template failed, sending default response: {e}")
            return respond(status_code, dict(DEFAULT_RESPONSE), result)

        if rendered.strip().startswith("<?xml"):
            return respond(status_code, rendered, result, "text/xml")
        try:
            return respond(status_code, json.loads(rendered), result)
        except ValueError:
            return respond(status_code, rendered, result, "text/plain")
