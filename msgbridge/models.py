"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic config/record schemas, see schemas.py.
"""

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.types import TypeDecorator

from msgbridge.storage import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware datetime stored as UTC.

    SQLite drops the offset, so aware values are converted to UTC before
    they are bound and naive values read back are tagged UTC. Naive input is
    taken to be UTC already.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class RouteType:
    SMS = "sms"
    WHATSAPP = "whatsapp"
    EMAIL = "email"


class MessageStatus:
    QUEUE = "queue"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


class TimestampMixin:
    created_at = Column(UTCDateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)


class RouteMixin(TimestampMixin):
    """
    Columns shared by SMS and WhatsApp routes.

    encrypted_config holds the Credential Vault blob `{credentials, webhook}`.
    """
    id = Column(Integer, primary_key=True, autoincrement=True)
    client_id = Column(Integer, nullable=False, index=True)
    provider = Column(String(50), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    encrypted_config = Column(Text, nullable=True)

    # Outbound request templates
    request_url_template = Column(Text, nullable=True)
    request_method = Column(String(10), nullable=False, default="POST")
    headers_template = Column(Text, nullable=True)
    body_template = Column(Text, nullable=True)
    content_type = Column(String(100), nullable=True)
    success_match = Column(String(255), nullable=True)
    message_id_path = Column(String(255), nullable=True)

    # Webhook
    webhook_path = Column(String(255), nullable=True, unique=True, index=True)
    webhook_enabled = Column(Boolean, nullable=False, default=False)

    is_default = Column(Boolean, nullable=False, default=False)
    status = Column(String(20), nullable=False, default="active", index=True)

    # Usage counters, bumped after every send
    usage_count = Column(Integer, nullable=False, default=0)
    success_count = Column(Integer, nullable=False, default=0)
    failure_count = Column(Integer, nullable=False, default=0)
    last_used_at = Column(UTCDateTime, nullable=True)


class SmsRoute(RouteMixin, Base):
    """
    Client-owned SMS provider integration.

    Table: sms_routes
    """
    __tablename__ = "sms_routes"

    route_type = RouteType.SMS

    sender_id = Column(String(50), nullable=True)
    price_per_sms = Column(Numeric(10, 4), nullable=False, default=0.01)
    for_type = Column(String(20), nullable=False, default="content")  # content | bulksms

    @property
    def sender_identity(self):
        return self.sender_id


class WhatsAppCredential(TimestampMixin, Base):
    """
    Provider-level WhatsApp credentials shared by several routes.

    Holds the request templates for the provider's messages endpoint; the
    route only contributes its own identity (phone number id, sender name).

    Table: whatsapp_credentials
    """
    __tablename__ = "whatsapp_credentials"

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider = Column(String(100), nullable=False)
    business_id = Column(String(100), nullable=True)
    encrypted_config = Column(Text, nullable=True)
    request_url_template = Column(Text, nullable=False)
    request_method = Column(String(10), nullable=False, default="POST")
    headers_template = Column(Text, nullable=True)
    content_type = Column(String(100), nullable=False, default="application/json")
    success_match = Column(String(255), nullable=True)
    message_id_path = Column(String(255), nullable=True, default="messages[0].id")


class WhatsAppRoute(RouteMixin, Base):
    """
    Client-owned WhatsApp integration.

    Table: whatsapp_routes
    """
    __tablename__ = "whatsapp_routes"

    route_type = RouteType.WHATSAPP

    sender_name = Column(String(100), nullable=True)
    credential_id = Column(Integer, ForeignKey("whatsapp_credentials.id", ondelete="SET NULL"), nullable=True)

    credential = relationship(WhatsAppCredential)

    @property
    def sender_identity(self):
        return self.sender_name


class Channel(TimestampMixin, Base):
    """
    Broadcast destination bound to exactly one route type.

    Table: channels
    """
    __tablename__ = "channels"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    route_type = Column(String(20), nullable=False, default=RouteType.SMS)
    monetization_type = Column(String(20), nullable=False, default="free")  # free | paid
    subscription_fee = Column(Float, nullable=False, default=0)
    status = Column(String(20), nullable=False, default="active")
    client_id = Column(Integer, nullable=True, index=True)
    sms_route_id = Column(Integer, ForeignKey("sms_routes.id", ondelete="SET NULL"), nullable=True)
    whatsapp_route_id = Column(Integer, ForeignKey("whatsapp_routes.id", ondelete="SET NULL"), nullable=True)

    sms_route = relationship(SmsRoute)
    whatsapp_route = relationship(WhatsAppRoute)


class Subscriber(TimestampMixin, Base):
    """
    Table: subscribers
    """
    __tablename__ = "subscribers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=True)
    phone = Column(String(32), nullable=False, unique=True)
    delivery_type = Column(String(20), nullable=False, default=RouteType.SMS)  # sms | whatsapp | email
    status = Column(String(20), nullable=False, default="pending")  # active | pending | inactive


class Subscription(TimestampMixin, Base):
    """
    Subscriber membership of a channel.

    Table: subscriptions
    """
    __tablename__ = "subscriptions"
    __table_args__ = (
        UniqueConstraint("subscriber_id", "channel_id", name="uq_subscription_subscriber_channel"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    subscriber_id = Column(Integer, ForeignKey("subscribers.id", ondelete="CASCADE"), nullable=False)
    channel_id = Column(Integer, ForeignKey("channels.id", ondelete="CASCADE"), nullable=False, index=True)
    plan = Column(String(20), nullable=False, default="monthly")  # weekly | monthly | yearly
    status = Column(String(20), nullable=False, default="pending")  # active | expired | pending
    subscribed_at = Column(UTCDateTime, nullable=False, default=utcnow)
    expires_at = Column(UTCDateTime, nullable=True)

    subscriber = relationship(Subscriber)


class Message(TimestampMixin, Base):
    """
    Unit of outbound content bound to a channel.

    Status machine: queue -> processing -> processed, back to queue on a
    retryable failure, or failed once the retry budget is spent.

    Table: messages
    """
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    direction = Column(String(10), nullable=False, default="outbound")  # inbound | outbound
    type = Column(String(20), nullable=False, default="content")  # content | broadcast | direct
    content = Column(Text, nullable=False, default="")
    # text | image | video | audio | document | location | template | interactive | both
    content_type = Column(String(20), nullable=False, default="text")
    status = Column(String(20), nullable=False, default=MessageStatus.QUEUE, index=True)
    scheduled_at = Column(UTCDateTime, nullable=True, index=True)

    client_id = Column(Integer, nullable=True, index=True)
    channel_id = Column(Integer, ForeignKey("channels.id", ondelete="SET NULL"), nullable=True)
    subscriber_id = Column(Integer, nullable=True)

    sent_count = Column(Integer, nullable=False, default=0)
    failed_count = Column(Integer, nullable=False, default=0)
    responses = Column(JSON, nullable=False, default=list)

    # Template messages
    template_name = Column(String(255), nullable=True)
    template_language = Column(String(20), nullable=True)
    template_components = Column(JSON, nullable=True)

    # Media messages
    media_url = Column(Text, nullable=True)
    media_id = Column(String(255), nullable=True)
    caption = Column(Text, nullable=True)
    filename = Column(String(255), nullable=True)

    # Location messages
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    location_name = Column(String(255), nullable=True)
    location_address = Column(Text, nullable=True)

    # Interactive messages (button / list / cta_url body)
    interactive = Column(JSON, nullable=True)

    # Retry metadata
    retry_count = Column(Integer, nullable=False, default=0)
    last_error = Column(String(500), nullable=True)
    last_retry_at = Column(UTCDateTime, nullable=True)
