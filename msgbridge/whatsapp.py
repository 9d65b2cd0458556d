"""
WhatsApp sender.

Two-step flow: the route points at a shared WhatsAppCredential holding the
provider endpoint templates and secrets, and the payload is built from the
message content rather than from a body template.
"""

import logging
from typing import Any

from sqlalchemy.orm import Session

from msgbridge.content import TextContent, WhatsAppContent, build_whatsapp_payload
from msgbridge.errors import GatewayError, RouteNotFoundError, TemplateError
from msgbridge.http_gateway import HttpGateway
from msgbridge.json_path import extract
from msgbridge.models import WhatsAppCredential, WhatsAppRoute
from msgbridge.schemas import SendResult
from msgbridge.storage import record_route_usage
from msgbridge.success import evaluate
from msgbridge.templates import TemplateRenderer
from msgbridge.vault import load_route_config

logger = logging.getLogger(__name__)

DEFAULT_MESSAGE_ID_PATH = "messages[0].id"


class WhatsAppSender:
    def __init__(self, gateway: HttpGateway, encryption_key: str):
        self.gateway = gateway
        self.encryption_key = encryption_key

    def resolve_credential(self, session: Session, route: WhatsAppRoute) -> WhatsAppCredential:
        credential = route.credential
        if credential is None and route.credential_id is not None:
            credential = session.get(WhatsAppCredential, route.credential_id)
        if credential is None:
            raise RouteNotFoundError(f"WhatsApp route {route.id} has no credential record")
        return credential

    def build_context(self, credential: WhatsAppCredential, route: WhatsAppRoute, to: str) -> dict[str, Any]:
        """Credential secrets, overlaid by route-level values, plus the recipient."""
        context = dict(load_route_config(credential.encrypted_config, self.encryption_key).credentials)
        context.update(load_route_config(route.encrypted_config, self.encryption_key).credentials)
        context["to"] = to
        context["from"] = route.sender_name
        if credential.business_id and "businessId" not in context:
            context["businessId"] = credential.business_id
        return context

    async def send(
        self,
        session: Session,
        route: WhatsAppRoute,
        to: str,
        content: WhatsAppContent,
    ) -> SendResult:
        """
        Send one WhatsApp message and record route usage.

        Raises:
            RouteNotFoundError: route has no credential record
            DecryptionError, TemplateError: route or credential misconfigured
            GatewayError: provider rejected the call or was unreachable
        """
        credential = self.resolve_credential(session, route)
        renderer = TemplateRenderer(self.build_context(credential, route, to))

        url = renderer.render(credential.request_url_template).strip()
        headers: dict[str, str] = {}
        if credential.headers_template:
            rendered_headers = renderer.render_json(credential.headers_template)
            if not isinstance(rendered_headers, dict):
                raise TemplateError("Headers template must render to a JSON object")
            headers.update({str(k): "" if v is None else str(v) for k, v in rendered_headers.items()})
        headers["Content-Type"] = credential.content_type or "application/json"

        try:
            response = await self.gateway.execute(
                credential.request_method or "POST",
                url,
                headers=headers,
                json_body=build_whatsapp_payload(to, content),
            )
        except GatewayError:
            record_route_usage(session, route, success=False)
            raise

        success = evaluate(response, credential.success_match)
        record_route_usage(session, route, success=success)

        message_id = extract(response, credential.message_id_path or DEFAULT_MESSAGE_ID_PATH)
        logger.info(f"WhatsApp via route {route.id}: {'success' if success else 'failed'}")

        return SendResult(
            success=success,
            response=response,
            provider_message_id=None if message_id is None else str(message_id),
        )

    async def send_test(self, session: Session, route_id: int, to: str, text: str) -> SendResult:
        """Test-send a plain text message through a WhatsApp route."""
        route = session.get(WhatsAppRoute, route_id)
        if route is None:
            raise RouteNotFoundError(f"WhatsApp route {route_id} not found")
        return await self.send(session, route, to, TextContent(body=text))
