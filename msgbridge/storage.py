import logging
from datetime import datetime, timezone
from typing import Generator, Optional, Union

from sqlalchemy import create_engine, inspect, or_, text
from sqlalchemy.orm import sessionmaker, Session, declarative_base
from sqlalchemy.pool import StaticPool

from msgbridge.config import settings

logger = logging.getLogger(__name__)


def _engine_options(url: str) -> dict:
    if not url.startswith("sqlite"):
        return {"pool_pre_ping": True}
    # check_same_thread=False is required for SQLite to work with FastAPI's async
    options = {"connect_args": {"check_same_thread": False}}
    if ":memory:" in url or url in ("sqlite://", "sqlite+pysqlite://"):
        # One shared connection, otherwise every session sees an empty database
        options["poolclass"] = StaticPool
    return options


engine = create_engine(settings.DATABASE_URL, echo=False, **_engine_options(settings.DATABASE_URL))

# Create SessionLocal class for creating database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug("Initializing database")
    try:
        # Import models to register them with Base.metadata
        from msgbridge import models  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and schema exists, False otherwise.
    """
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        for table in ("messages", "sms_routes", "whatsapp_routes", "channels"):
            if not inspect(engine).has_table(table):
                logger.error(f"Database schema not applied: '{table}' table not found")
                return False
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Route Repository Functions
# =============================================================================

def find_route_by_webhook_path(db: Session, webhook_path: str):
    """
    Find the active route (SMS or WhatsApp) that owns a webhook path.

    Returns:
        SmsRoute or WhatsAppRoute, or None if no active route matches.
    """
    from msgbridge.models import SmsRoute, WhatsAppRoute

    for model in (SmsRoute, WhatsAppRoute):
        route = (
            db.query(model)
            .filter(model.webhook_path == webhook_path, model.status == "active")
            .first()
        )
        if route is not None:
            logger.debug(f"Webhook path resolved to {model.__tablename__}:{route.id}")
            return route
    return None


def webhook_path_taken(db: Session, webhook_path: str) -> bool:
    """Webhook paths are unique across both route tables, active or not."""
    from msgbridge.models import SmsRoute, WhatsAppRoute

    return any(
        db.query(model.id).filter(model.webhook_path == webhook_path).first() is not None
        for model in (SmsRoute, WhatsAppRoute)
    )


def record_route_usage(db: Session, route, success: bool) -> None:
    """Bump a route's usage counters after a send attempt."""
    route.usage_count = (route.usage_count or 0) + 1
    if success:
        route.success_count = (route.success_count or 0) + 1
    else:
        route.failure_count = (route.failure_count or 0) + 1
    route.last_used_at = datetime.now(timezone.utc)
    db.commit()


# =============================================================================
# Queue Repository Functions
# =============================================================================

def fetch_due_messages(db: Session, now: datetime, limit: int = 50) -> list:
    """
    Select messages ready for delivery, oldest first.

    A message is due when its status is queue and it is either unscheduled
    or scheduled at or before `now`.
    """
    from msgbridge.models import Message, MessageStatus

    return (
        db.query(Message)
        .filter(
            Message.status == MessageStatus.QUEUE,
            or_(Message.scheduled_at.is_(None), Message.scheduled_at <= now),
        )
        .order_by(Message.created_at.asc(), Message.id.asc())
        .limit(limit)
        .all()
    )


def claim_message(db: Session, message) -> bool:
    """
    Move a message from queue to processing.

    The update is conditional on the current status, so two processors
    racing for one row cannot both claim it.

    Returns:
        True if this call claimed the message.
    """
    from msgbridge.models import Message, MessageStatus

    claimed = (
        db.query(Message)
        .filter(Message.id == message.id, Message.status == MessageStatus.QUEUE)
        .update({"status": MessageStatus.PROCESSING}, synchronize_session=False)
    )
    db.commit()
    db.refresh(message)
    return claimed == 1


def get_channel(db: Session, channel_id: Optional[int]):
    from msgbridge.models import Channel

    if channel_id is None:
        return None
    return db.get(Channel, channel_id)


def get_eligible_subscribers(db: Session, channel) -> list:
    """
    Subscribers that should receive a channel's messages.

    Eligible means: subscribed to the channel, subscriber status active,
    delivery preference equal to the channel's route type, and for paid
    channels an active subscription.
    """
    from msgbridge.models import Subscriber, Subscription

    query = (
        db.query(Subscriber)
        .join(Subscription, Subscription.subscriber_id == Subscriber.id)
        .filter(
            Subscription.channel_id == channel.id,
            Subscriber.status == "active",
            Subscriber.delivery_type == channel.route_type,
        )
    )
    if channel.monetization_type == "paid":
        query = query.filter(Subscription.status == "active")

    return query.order_by(Subscriber.id.asc()).all()


def complete_message(db: Session, message, results: list) -> None:
    """
    Mark a message processed with its aggregate counts and response log.

    Args:
        results: DeliveryResult records, one per attempted subscriber
    """
    from msgbridge.models import MessageStatus

    message.sent_count = sum(1 for r in results if r.success)
    message.failed_count = sum(1 for r in results if not r.success)
    message.responses = [r.model_dump(mode="json") for r in results]
    message.status = MessageStatus.PROCESSED
    db.commit()


def record_message_failure(
    db: Session,
    message,
    error: Union[Exception, str],
    max_retries: int,
    retryable: bool = True,
) -> str:
    """
    Apply the retry policy to a message whose processing failed.

    Increments retry_count by one. The message goes back to the queue while
    retry_count < max_retries and the error is retryable, otherwise it is
    dead-lettered as failed.

    Returns:
        The new message status.
    """
    from msgbridge.models import MessageStatus

    message.retry_count = (message.retry_count or 0) + 1
    message.last_error = str(error)[:500]
    message.last_retry_at = datetime.now(timezone.utc)

    if retryable and message.retry_count < max_retries:
        message.status = MessageStatus.QUEUE
    else:
        message.status = MessageStatus.FAILED

    db.commit()
    return message.status
