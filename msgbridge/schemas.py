"""
Pydantic schemas for stored route configuration, normalized webhook records
and API request/response bodies.

This module contains:
- Route config models (the decrypted `{credentials, webhook}` blob)
- Normalized records produced by the webhook pipeline and the queue
- Request/response models for the HTTP surface
"""

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


DeliveryStatus = Literal["delivered", "failed", "pending"]
SignatureAlgorithm = Literal["sha256", "sha1", "md5", "bearer", "basic", "none"]


# =============================================================================
# Route Configuration (stored encrypted)
# =============================================================================

class _StoredConfig(BaseModel):
    """Stored blobs use camelCase keys; Python code uses snake_case."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class SignatureValidationConfig(_StoredConfig):
    enabled: bool = False
    header_name: str = "X-Signature"
    algorithm: SignatureAlgorithm = "sha256"
    prefix: str = ""
    secret_key: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None


class IncomingMessageConfig(_StoredConfig):
    enabled: bool = False
    from_path: str = ""
    message_path: str = ""
    timestamp_path: Optional[str] = None
    message_id_path: Optional[str] = None


class DeliveryReportConfig(_StoredConfig):
    enabled: bool = False
    message_id_path: str = ""
    status_path: str = ""
    status_mapping: dict[str, DeliveryStatus] = Field(default_factory=dict)
    error_path: Optional[str] = None
    external_id_path: Optional[str] = None
    timestamp_path: Optional[str] = None


class WebhookConfig(_StoredConfig):
    """
    Inbound webhook behaviour for a route.

    Every section is optional; an absent section behaves as disabled.
    """
    enabled: bool = False
    custom_path: Optional[str] = None
    verify_token: Optional[str] = None
    signature_validation: Optional[SignatureValidationConfig] = None
    incoming_message: Optional[IncomingMessageConfig] = None
    delivery_report: Optional[DeliveryReportConfig] = None
    response_template: Optional[str] = None
    response_status: int = 200


class RouteConfig(_StoredConfig):
    """Decrypted route config. Always has both parts, possibly empty."""
    credentials: dict[str, Any] = Field(default_factory=dict)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)


# =============================================================================
# Normalized Records
# =============================================================================

class IncomingMessage(BaseModel):
    """Inbound message extracted from a provider webhook."""
    route_id: int
    route_type: str
    provider: str
    # 'from' is a reserved word in Python, so we use alias
    from_msisdn: str = Field(..., alias="from", serialization_alias="from")
    to: str = ""
    text: str
    message_id: Optional[str] = None
    timestamp: datetime
    raw_payload: Any = None

    model_config = {"populate_by_name": True}


class DeliveryReport(BaseModel):
    """Delivery status update extracted from a provider webhook."""
    route_id: int
    route_type: str
    provider: str
    message_id: str
    external_id: Optional[str] = None
    status: DeliveryStatus
    raw_status: Optional[str] = None
    error: Optional[str] = None
    timestamp: datetime
    raw_payload: Any = None


class DeliveryResult(BaseModel):
    """Per-subscriber outcome appended to a message's response log."""
    phone: str
    success: bool
    error: Optional[str] = None
    provider_message_id: Optional[str] = None
    timestamp: datetime


class SendResult(BaseModel):
    """Outcome of one provider call."""
    success: bool
    response: Any = None
    provider_message_id: Optional[str] = None


# =============================================================================
# Pydantic Request Models
# =============================================================================

class SendTestRequest(BaseModel):
    """Body for the route test-send endpoints."""
    to: str = Field(..., min_length=1, description="Recipient phone number")
    text: str = Field(..., min_length=1, max_length=4096, description="Message text")
    from_msisdn: Optional[str] = Field(
        None,
        alias="from",
        description="Sender identity override"
    )

    model_config = {
        "populate_by_name": True,
        "json_schema_extra": {
            "examples": [
                {"to": "2348012345678", "text": "Hello"}
            ]
        }
    }


# =============================================================================
# Pydantic Response Models
# =============================================================================

class ErrorResponse(BaseModel):
    """Response model for error responses."""
    error: str = Field(..., description="Error description")


class SendTestResponse(BaseModel):
    """Response model for the route test-send endpoints."""
    success: bool
    provider_message_id: Optional[str] = None
    response: Any = None


class QueueRunResponse(BaseModel):
    """Summary of one queue processor run."""
    skipped: bool = False
    fetched: int = 0
    processed: int = 0
    requeued: int = 0
    failed: int = 0


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
