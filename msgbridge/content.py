"""
Channel-specific message payloads.

A queued Message is turned into exactly one content variant, validated for
the fields its content type needs, and then rendered into the payload a
provider expects. WhatsApp payloads follow the Cloud API message shape.
"""

from dataclasses import dataclass, field
from typing import Any, Optional, Union

from msgbridge.errors import InvalidMessageContentError

MEDIA_KINDS = ("image", "video", "audio", "document")
INTERACTIVE_KINDS = ("button", "list", "cta_url")


@dataclass(frozen=True)
class TextContent:
    body: str
    preview_url: bool = False


@dataclass(frozen=True)
class TemplateContent:
    name: str
    language: str = "en_US"
    components: list = field(default_factory=list)


@dataclass(frozen=True)
class MediaContent:
    kind: str
    url: Optional[str] = None
    media_id: Optional[str] = None
    caption: Optional[str] = None
    filename: Optional[str] = None


@dataclass(frozen=True)
class LocationContent:
    latitude: float
    longitude: float
    name: Optional[str] = None
    address: Optional[str] = None


@dataclass(frozen=True)
class InteractiveContent:
    interactive: dict


WhatsAppContent = Union[TextContent, TemplateContent, MediaContent, LocationContent, InteractiveContent]


def _media_from_message(message, kind: str, caption: Optional[str]) -> MediaContent:
    if not message.media_url and not message.media_id:
        raise InvalidMessageContentError(f"{kind} message {message.id} needs a media url or media id")
    if kind == "audio":
        # WhatsApp does not accept captions on audio
        caption = None
    return MediaContent(
        kind=kind,
        url=message.media_url,
        media_id=message.media_id,
        caption=caption,
        filename=message.filename if kind == "document" else None,
    )


def content_from_message(message) -> WhatsAppContent:
    """
    Build the content variant for a message, validating required fields.

    `both` is a media message (image by default) carrying the message body
    as its caption.

    Raises:
        InvalidMessageContentError: if a required field is missing or the
            content type is unknown.
    """
    content_type = (message.content_type or "text").lower()

    if content_type == "text":
        if not message.content:
            raise InvalidMessageContentError(f"text message {message.id} has no content")
        return TextContent(body=message.content)

    if content_type == "template":
        if not message.template_name:
            raise InvalidMessageContentError(f"template message {message.id} has no template name")
        return TemplateContent(
            name=message.template_name,
            language=message.template_language or "en_US",
            components=list(message.template_components or []),
        )

    if content_type in MEDIA_KINDS:
        return _media_from_message(message, content_type, message.caption or None)

    if content_type == "both":
        return _media_from_message(message, "image", message.caption or message.content or None)

    if content_type == "location":
        if message.latitude is None or message.longitude is None:
            raise InvalidMessageContentError(f"location message {message.id} needs latitude and longitude")
        return LocationContent(
            latitude=message.latitude,
            longitude=message.longitude,
            name=message.location_name,
            address=message.location_address,
        )

    if content_type == "interactive":
        interactive = message.interactive
        if not isinstance(interactive, dict) or interactive.get("type") not in INTERACTIVE_KINDS:
            raise InvalidMessageContentError(f"interactive message {message.id} has no interactive body")
        return InteractiveContent(interactive=interactive)

    raise InvalidMessageContentError(f"Unsupported content type '{message.content_type}'")


def sms_text(message) -> str:
    """SMS carries plain text only; media messages fall back to their caption."""
    text_value = message.content or message.caption
    if not text_value:
        raise InvalidMessageContentError(f"message {message.id} has no text to send by SMS")
    return text_value


def build_sms_payload(to: str, text_value: str, sender: Optional[str] = None) -> dict[str, Any]:
    return {"to": to, "text": text_value, "from": sender or "CHANNEL"}


def _media_object(content: MediaContent) -> dict[str, Any]:
    media: dict[str, Any] = {}
    if content.media_id:
        media["id"] = content.media_id
    else:
        media["link"] = content.url
    if content.caption:
        media["caption"] = content.caption
    if content.filename:
        media["filename"] = content.filename
    return media


def build_whatsapp_payload(to: str, content: WhatsAppContent) -> dict[str, Any]:
    """Render a content variant into a WhatsApp Cloud API message body."""
    payload: dict[str, Any] = {
        "messaging_product": "whatsapp",
        "recipient_type": "individual",
        "to": to,
    }

    if isinstance(content, TextContent):
        payload["type"] = "text"
        payload["text"] = {"body": content.body, "preview_url": content.preview_url}
    elif isinstance(content, TemplateContent):
        payload["type"] = "template"
        template: dict[str, Any] = {"name": content.name, "language": {"code": content.language}}
        if content.components:
            template["components"] = content.components
        payload["template"] = template
    elif isinstance(content, MediaContent):
        payload["type"] = content.kind
        payload[content.kind] = _media_object(content)
    elif isinstance(content, LocationContent):
        location: dict[str, Any] = {"latitude": content.latitude, "longitude": content.longitude}
        if content.name:
            location["name"] = content.name
        if content.address:
            location["address"] = content.address
        payload["type"] = "location"
        payload["location"] = location
    elif isinstance(content, InteractiveContent):
        payload["type"] = "interactive"
        payload["interactive"] = content.interactive
    else:
        raise TypeError(f"Unhandled content variant: {type(content).__name__}")

    return payload


def build_interactive(
    kind: str,
    body: str,
    header: Optional[str] = None,
    footer: Optional[str] = None,
    buttons: Optional[list[dict[str, str]]] = None,
    button_text: Optional[str] = None,
    sections: Optional[list[dict[str, Any]]] = None,
    cta_display_text: Optional[str] = None,
    cta_url: Optional[str] = None,
) -> dict[str, Any]:
    """
    Build the `interactive` body stored on an interactive message.

    Args:
        kind: button, list or cta_url
        buttons: for "button", items with `id` and `title`
        button_text, sections: for "list"
        cta_display_text, cta_url: for "cta_url"
    """
    if kind == "button":
        if not buttons:
            raise InvalidMessageContentError("button messages need at least one button")
        action: dict[str, Any] = {
            "buttons": [
                {"type": "reply", "reply": {"id": b["id"], "title": b["title"]}}
                for b in buttons
            ]
        }
    elif kind == "list":
        if not button_text or not sections:
            raise InvalidMessageContentError("list messages need button text and sections")
        action = {"button": button_text, "sections": sections}
    elif kind == "cta_url":
        if not cta_display_text or not cta_url:
            raise InvalidMessageContentError("cta_url messages need display text and url")
        action = {"name": "cta_url", "parameters": {"display_text": cta_display_text, "url": cta_url}}
    else:
        raise InvalidMessageContentError(f"Invalid interactive type '{kind}'")

    interactive: dict[str, Any] = {"type": kind, "body": {"text": body}, "action": action}
    if header:
        interactive["header"] = {"type": "text", "text": header}
    if footer:
        interactive["footer"] = {"text": footer}
    return interactive
