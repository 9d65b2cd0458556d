"""
Delivery queue processor.

Polls for due messages on a fixed interval and delivers each one to the
eligible subscribers of its channel:

1. Select up to `batch_size` due messages, oldest first
2. Claim each one (queue -> processing)
3. Resolve channel, route, content and subscribers
4. Send sequentially, one DeliveryResult per subscriber
5. Mark processed, or apply the retry policy on a message-level failure

Runs never overlap: a tick that fires while a run is in progress is skipped.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy.orm import Session

from msgbridge.content import build_sms_payload, content_from_message, sms_text
from msgbridge.errors import (
    ChannelNotFoundError,
    NoEligibleSubscribersError,
    RouteNotFoundError,
    is_retryable,
)
from msgbridge.http_gateway import HttpGateway
from msgbridge.metrics import record_delivery, record_queue_outcome
from msgbridge.models import MessageStatus, RouteType
from msgbridge.route_service import send_sms
from msgbridge.schemas import DeliveryResult, SendResult
from msgbridge.storage import (
    claim_message,
    complete_message,
    fetch_due_messages,
    get_channel,
    get_eligible_subscribers,
    record_message_failure,
)
from msgbridge.whatsapp import WhatsAppSender

logger = logging.getLogger(__name__)


@dataclass
class RunSummary:
    skipped: bool = False
    fetched: int = 0
    processed: int = 0
    requeued: int = 0
    failed: int = 0


class QueueProcessor:
    """
    Owns the polling loop. Constructed once by the application and started
    and stopped with it.

    Args:
        session_factory: Callable returning a new SQLAlchemy Session
        gateway: Shared HTTP gateway for SMS routes
        whatsapp_sender: Sender for WhatsApp routes
        encryption_key: Credential Vault secret
        batch_size: Maximum messages per run
        poll_interval: Seconds between ticks
        max_retries: Message-level retry budget
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        gateway: HttpGateway,
        whatsapp_sender: WhatsAppSender,
        encryption_key: str,
        batch_size: int = 50,
        poll_interval: float = 120.0,
        max_retries: int = 3,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.whatsapp_sender = whatsapp_sender
        self.encryption_key = encryption_key
        self.batch_size = batch_size
        self.poll_interval = poll_interval
        self.max_retries = max_retries

        self._running = False
        self._processing = False
        self._ticker: Optional[asyncio.Task] = None
        self._current_run: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_processing(self) -> bool:
        return self._processing

    async def start(self) -> None:
        if self._running:
            logger.warning("Queue processor already running")
            return

        self._running = True
        self._ticker = asyncio.create_task(self._tick_loop())
        logger.info(
            "Queue processor started",
            extra={"poll_interval_seconds": self.poll_interval, "batch_size": self.batch_size},
        )

    async def stop(self) -> None:
        """Stop ticking. A run in progress is allowed to finish."""
        if not self._running:
            return

        self._running = False

        if self._ticker:
            self._ticker.cancel()
            try:
                await self._ticker
            except asyncio.CancelledError:
                pass
            self._ticker = None

        if self._current_run and not self._current_run.done():
            await self._current_run

        logger.info("Queue processor stopped")

    async def _tick_loop(self) -> None:
        while self._running:
            if self._processing:
                logger.info("Previous queue run still in progress, skipping tick")
            else:
                self._current_run = asyncio.create_task(self.run_once())
            await asyncio.sleep(self.poll_interval)

    async def run_once(self) -> RunSummary:
        """
        Process one batch of due messages.

        Returns immediately with `skipped=True` if another run holds the
        processing flag. Never raises.
        """
        if self._processing:
            logger.info("Queue run already in progress, skipping")
            return RunSummary(skipped=True)

        self._processing = True
        summary = RunSummary()
        try:
            with self.session_factory() as session:
                messages = fetch_due_messages(session, datetime.now(timezone.utc), self.batch_size)
                summary.fetched = len(messages)
                if messages:
                    logger.info(f"Processing {len(messages)} queued message(s)")

                for message in messages:
                    try:
                        outcome = await self._process_message(session, message)
                    except Exception as e:
                        session.rollback()
                        logger.exception(f"Message {message.id} could not be settled: {e}")
                        continue
                    if outcome == "processed":
                        summary.processed += 1
                    elif outcome == "requeued":
                        summary.requeued += 1
                    elif outcome == "failed":
                        summary.failed += 1
        except Exception as e:
            logger.exception(f"Queue run aborted: {e}")
        finally:
            self._processing = False

        if summary.fetched:
            logger.info(
                "Queue run completed",
                extra={
                    "processed": summary.processed,
                    "requeued": summary.requeued,
                    "failed": summary.failed,
                },
            )
        return summary

    async def _process_message(self, session: Session, message) -> Optional[str]:
        if not claim_message(session, message):
            logger.debug(f"Message {message.id} was claimed elsewhere")
            return None

        try:
            results = await self._deliver(session, message)
        except Exception as e:
            return self._fail(session, message, e, retryable=is_retryable(e))

        try:
            complete_message(session, message, results)
        except Exception as e:
            # Subscribers were already sent to; a retry would send them again
            logger.exception(f"Could not record completion of message {message.id}: {e}")
            return self._fail(session, message, e, retryable=False)

        logger.info(
            f"Message {message.id} processed: {message.sent_count} sent, {message.failed_count} failed"
        )
        record_queue_outcome("processed")
        return "processed"

    def _fail(self, session: Session, message, error: Exception, retryable: bool) -> str:
        session.rollback()
        status = record_message_failure(
            session,
            message,
            error,
            max_retries=self.max_retries,
            retryable=retryable,
        )
        outcome = "requeued" if status == MessageStatus.QUEUE else "failed"
        logger.warning(
            f"Message {message.id} {outcome} after attempt {message.retry_count}: {error}",
            extra={"error_type": type(error).__name__},
        )
        record_queue_outcome(outcome)
        return outcome

    def _resolve_route(self, channel):
        if channel.route_type == RouteType.SMS:
            route = channel.sms_route
        elif channel.route_type == RouteType.WHATSAPP:
            route = channel.whatsapp_route
        else:
            raise RouteNotFoundError(f"Channel {channel.id} uses unsupported route type '{channel.route_type}'")

        if route is None or route.status != "active":
            raise RouteNotFoundError(f"Channel {channel.id} has no active {channel.route_type} route")
        return route

    async def _deliver(self, session: Session, message) -> list[DeliveryResult]:
        """
        Resolve everything a message needs and send it to each subscriber.

        Raises before the first send on a message-level problem; failures
        for individual subscribers are recorded in their results instead.
        """
        channel = get_channel(session, message.channel_id)
        if channel is None or channel.status != "active":
            raise ChannelNotFoundError(f"Channel {message.channel_id} not found or not active")

        route = self._resolve_route(channel)

        if channel.route_type == RouteType.SMS:
            text_value = sms_text(message)
            content = None
        else:
            text_value = None
            content = content_from_message(message)

        subscribers = get_eligible_subscribers(session, channel)
        if not subscribers:
            raise NoEligibleSubscribersError(f"Channel {channel.id} has no eligible subscribers")

        results = []
        for subscriber in subscribers:
            results.append(
                await self._send_to_subscriber(session, channel, route, subscriber, text_value, content)
            )
        return results

    async def _send_to_subscriber(self, session: Session, channel, route, subscriber, text_value, content) -> DeliveryResult:
        try:
            if channel.route_type == RouteType.SMS:
                payload = build_sms_payload(subscriber.phone, text_value, route.sender_id)
                sent: SendResult = await send_sms(session, route, payload, self.gateway, self.encryption_key)
            else:
                sent = await self.whatsapp_sender.send(session, route, subscriber.phone, content)
        except Exception as e:
            logger.warning(f"Delivery to subscriber {subscriber.id} failed: {e}")
            record_delivery(channel.route_type, False)
            return DeliveryResult(
                phone=subscriber.phone,
                success=False,
                error=str(e),
                timestamp=datetime.now(timezone.utc),
            )

        record_delivery(channel.route_type, sent.success)
        return DeliveryResult(
            phone=subscriber.phone,
            success=sent.success,
            error=None if sent.success else "Provider response did not match the success rule",
            provider_message_id=sent.provider_message_id,
            timestamp=datetime.now(timezone.utc),
        )
