"""
Exception taxonomy for the delivery gateway.

Retryable errors count toward a message's retry budget in the queue
processor; the rest are configuration problems that fail identically until
someone fixes the route.
"""

from typing import Any, Optional


class MessageBridgeError(Exception):
    """Base class for all gateway errors."""

    retryable = False


class DecryptionError(MessageBridgeError):
    """Ciphertext is malformed or was not produced with this key."""


class TemplateError(MessageBridgeError):
    """Template syntax error or rendered output is not valid JSON."""


class GatewayError(MessageBridgeError):
    """Outbound provider call failed (non-2xx or transport error)."""

    retryable = True

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_body: Any = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body


class RouteNotFoundError(MessageBridgeError):
    """No usable route for a channel, webhook path or route id."""

    retryable = True


class ChannelNotFoundError(MessageBridgeError):
    """Channel is missing or not active."""

    retryable = True


class NoEligibleSubscribersError(MessageBridgeError):
    """Channel currently has nobody to deliver to."""

    retryable = True


class SignatureValidationError(MessageBridgeError):
    """Inbound webhook failed authenticity checks."""


class InvalidWebhookClassificationError(MessageBridgeError):
    """Payload matches neither the incoming-message nor delivery-report shape."""


class InvalidMessageContentError(MessageBridgeError):
    """Message is missing the fields its content type requires."""


def is_retryable(exc: BaseException) -> bool:
    """
    Whether a message-level failure should count toward the retry budget
    rather than dead-lettering the message straight away.

    Errors outside the taxonomy (database hiccups, bugs in a collaborator)
    are retried.
    """
    if isinstance(exc, MessageBridgeError):
        return exc.retryable
    return True
