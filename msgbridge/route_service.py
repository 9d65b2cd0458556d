"""
Route lifecycle and SMS sending.

Routes are never deleted while channels reference them; deactivation is a
status change. Config blobs are always written through the Credential Vault.
"""

import base64
import logging
import re
import secrets
from typing import Any, Optional, Union

from sqlalchemy.orm import Session

from msgbridge.config import settings
from msgbridge.errors import GatewayError, RouteNotFoundError
from msgbridge.http_gateway import HttpGateway
from msgbridge.json_path import extract
from msgbridge.models import SmsRoute, WhatsAppRoute
from msgbridge.schemas import RouteConfig, SendResult, WebhookConfig
from msgbridge.storage import record_route_usage, webhook_path_taken
from msgbridge.success import evaluate
from msgbridge.vault import dump_route_config, load_route_config

logger = logging.getLogger(__name__)

Route = Union[SmsRoute, WhatsAppRoute]

_SLUG = re.compile(r"[^a-z0-9]+")


class WebhookPathConflictError(ValueError):
    """Requested webhook path belongs to another route."""


# =============================================================================
# Registration
# =============================================================================

def _create_route(
    db: Session,
    model,
    client_id: int,
    encryption_key: str,
    credentials: Optional[dict[str, Any]] = None,
    webhook: Optional[Union[WebhookConfig, dict]] = None,
    **fields: Any,
) -> Route:
    if isinstance(webhook, dict):
        webhook = WebhookConfig.model_validate(webhook)
    config = RouteConfig(credentials=credentials or {}, webhook=webhook or WebhookConfig())

    route = model(
        client_id=client_id,
        encrypted_config=dump_route_config(config, encryption_key),
        webhook_enabled=config.webhook.enabled,
        **fields,
    )
    # Resolved before anything is written so a conflict leaves no row behind
    if config.webhook.enabled:
        route.webhook_path = _choose_webhook_path(db, route, config.webhook.custom_path)

    if fields.get("is_default"):
        (
            db.query(model)
            .filter(model.client_id == client_id, model.is_default.is_(True))
            .update({"is_default": False}, synchronize_session=False)
        )

    db.add(route)
    db.commit()
    db.refresh(route)
    logger.info(f"Created {route.route_type} route {route.id} ({route.provider})")
    return route


def create_sms_route(
    db: Session,
    client_id: int,
    encryption_key: str,
    credentials: Optional[dict[str, Any]] = None,
    webhook: Optional[Union[WebhookConfig, dict]] = None,
    **fields: Any,
) -> SmsRoute:
    """
    Register an SMS provider integration.

    `fields` are SmsRoute columns: provider, name, request_url_template,
    request_method, headers_template, body_template, content_type,
    success_match, message_id_path, sender_id, is_default, for_type.
    """
    if not fields.get("request_url_template"):
        raise ValueError("request_url_template is required for an SMS route")
    return _create_route(db, SmsRoute, client_id, encryption_key, credentials, webhook, **fields)


def create_whatsapp_route(
    db: Session,
    client_id: int,
    encryption_key: str,
    credentials: Optional[dict[str, Any]] = None,
    webhook: Optional[Union[WebhookConfig, dict]] = None,
    **fields: Any,
) -> WhatsAppRoute:
    """
    Register a WhatsApp integration. Provider-level secrets live on the
    WhatsAppCredential referenced by `credential_id`; `credentials` holds
    route-level values such as the phone number id.
    """
    return _create_route(db, WhatsAppRoute, client_id, encryption_key, credentials, webhook, **fields)


# =============================================================================
# Mutations
# =============================================================================

def _generate_webhook_path(route: Route) -> str:
    provider = _SLUG.sub("-", (route.provider or "provider").lower()).strip("-") or "provider"
    return f"{route.route_type}/{provider}/{secrets.token_urlsafe(12)}"


def _choose_webhook_path(db: Session, route: Route, custom_path: Optional[str] = None) -> str:
    if custom_path:
        path = custom_path.strip("/")
        if path != route.webhook_path and webhook_path_taken(db, path):
            raise WebhookPathConflictError(f"Webhook path '{path}' is already in use")
        return path

    path = _generate_webhook_path(route)
    while webhook_path_taken(db, path):
        path = _generate_webhook_path(route)
    return path


def issue_webhook_path(db: Session, route: Route, custom_path: Optional[str] = None) -> str:
    """
    Assign a globally unique webhook path to a route and enable its webhook.

    Raises:
        WebhookPathConflictError: if `custom_path` is used by another route.
    """
    path = _choose_webhook_path(db, route, custom_path)
    route.webhook_path = path
    route.webhook_enabled = True
    db.commit()
    logger.info(f"Issued webhook path for {route.route_type} route {route.id}")
    return path


def webhook_url(route: Route, base_url: Optional[str] = None) -> Optional[str]:
    """Human-readable URL a provider should call for this route."""
    if not route.webhook_path:
        return None
    base = (base_url or settings.WEBHOOK_BASE_URL).rstrip("/")
    return f"{base}/webhooks/{route.webhook_path}"


def rotate_credentials(db: Session, route: Route, credentials: dict[str, Any], encryption_key: str) -> None:
    """Replace a route's credentials, keeping its webhook config."""
    config = load_route_config(route.encrypted_config, encryption_key)
    config.credentials = dict(credentials)
    route.encrypted_config = dump_route_config(config, encryption_key)
    db.commit()
    logger.info(f"Rotated credentials for {route.route_type} route {route.id}")


def update_webhook_config(
    db: Session,
    route: Route,
    webhook: Union[WebhookConfig, dict],
    encryption_key: str,
) -> None:
    """Replace a route's webhook config; issues a path when newly enabled."""
    if isinstance(webhook, dict):
        webhook = WebhookConfig.model_validate(webhook)
    config = load_route_config(route.encrypted_config, encryption_key)
    config.webhook = webhook
    route.encrypted_config = dump_route_config(config, encryption_key)
    route.webhook_enabled = webhook.enabled
    db.commit()

    if webhook.enabled and (webhook.custom_path or not route.webhook_path):
        issue_webhook_path(db, route, webhook.custom_path)


def deactivate_route(db: Session, route: Route) -> None:
    route.status = "inactive"
    db.commit()
    logger.info(f"Deactivated {route.route_type} route {route.id}")


# =============================================================================
# Sending
# =============================================================================

def prepare_sms_context(credentials: dict[str, Any], payload: dict[str, Any]) -> dict[str, Any]:
    """
    Template context for an SMS route: the route's credentials plus the
    message fields. Twilio-style credentials also get a ready-made
    `basicAuthBase64` value for Authorization headers.
    """
    context = dict(credentials)
    context.update(
        {
            "to": payload.get("to"),
            "text": payload.get("text"),
            "from": payload.get("from"),
        }
    )
    account_sid = credentials.get("accountSid")
    auth_token = credentials.get("authToken")
    if account_sid and auth_token:
        context["basicAuthBase64"] = base64.b64encode(
            f"{account_sid}:{auth_token}".encode("utf-8")
        ).decode("ascii")
    return context


def _provider_message_id(response: Any, path: Optional[str]) -> Optional[str]:
    if not path:
        return None
    value = extract(response, path)
    return None if value is None else str(value)


async def send_sms(
    db: Session,
    route: SmsRoute,
    payload: dict[str, Any],
    gateway: HttpGateway,
    encryption_key: str,
) -> SendResult:
    """
    Send one SMS through a route's templates and evaluate the response.

    Raises:
        DecryptionError, TemplateError: route is misconfigured
        GatewayError: provider rejected the call or was unreachable
    """
    config = load_route_config(route.encrypted_config, encryption_key)
    context = prepare_sms_context(config.credentials, payload)

    try:
        response = await gateway.send(
            url_template=route.request_url_template,
            method=route.request_method,
            headers_template=route.headers_template,
            body_template=route.body_template,
            content_type=route.content_type,
            context=context,
        )
    except GatewayError:
        record_route_usage(db, route, success=False)
        raise

    success = evaluate(response, route.success_match)
    record_route_usage(db, route, success=success)
    logger.info(f"SMS via route {route.id}: {'success' if success else 'failed'}")

    return SendResult(
        success=success,
        response=response,
        provider_message_id=_provider_message_id(response, route.message_id_path),
    )


async def send_test_sms(
    db: Session,
    route_id: int,
    payload: dict[str, Any],
    gateway: HttpGateway,
    encryption_key: str,
) -> SendResult:
    """Test-send through an SMS route, exactly as the queue would send."""
    route = db.get(SmsRoute, route_id)
    if route is None:
        raise RouteNotFoundError(f"SMS route {route_id} not found")

    payload = dict(payload)
    if not payload.get("from"):
        payload["from"] = route.sender_id
    return await send_sms(db, route, payload, gateway, encryption_key)
