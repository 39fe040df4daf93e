"""
Outbox draining: pending messages are handed to the notifier in batches and
retried with backoff when delivery fails.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta

from shiftdrop.database import ChangeSet, Database
from shiftdrop.models import OutboxMessage, OutboxStatus
from shiftdrop.phone import redact

logger = logging.getLogger(__name__)

NowFn = Callable[[], datetime]
SleepFn = Callable[[float], Awaitable[None]]
SendFn = Callable[[str, str], Awaitable[None]]

RETRY_DELAYS = (
    timedelta(seconds=10),
    timedelta(seconds=30),
    timedelta(minutes=1),
    timedelta(minutes=5),
    timedelta(minutes=15),
)


def mark_sent(message: OutboxMessage, now: datetime) -> None:
    message.status = OutboxStatus.SENT
    message.processed_at = now


def mark_failed(message: OutboxMessage, error: str, now: datetime) -> None:
    message.last_error = error
    message.retry_count += 1

    if message.retry_count >= len(RETRY_DELAYS):
        message.status = OutboxStatus.FAILED
        message.processed_at = now
    else:
        message.next_retry_at = now + RETRY_DELAYS[message.retry_count - 1]


def cancel_message(message: OutboxMessage) -> bool:
    if message.status != OutboxStatus.PENDING:
        return False
    message.status = OutboxStatus.CANCELLED
    return True


def render(message: OutboxMessage) -> str:
    payload = message.payload
    if payload.action_url:
        return f"{payload.body_text}\n{payload.action_url}"
    return payload.body_text


async def drain_outbox(
    db: Database, send: SendFn, *, now_fn: NowFn, batch_size: int = 10
) -> int:
    """
    Deliver one batch of ready messages. Returns how many were processed.

    Each message is re-read just before sending and written back on its own,
    so a message cancelled mid-batch is neither sent nor overwritten.
    """
    messages = await db.ready_outbox(now_fn(), batch_size)
    if not messages:
        return 0

    processed = 0
    for message in messages:
        current = await db.get_outbox_message(message.id)
        if current is None or current.status != OutboxStatus.PENDING:
            logger.info("skipping outbox message %s, no longer pending", message.id)
            continue

        try:
            await send(message.payload.recipient_contact, render(message))
        except Exception as exc:
            mark_failed(message, str(exc), now_fn())
            logger.warning(
                "failed to send %s message %s to %s, retry %d",
                message.message_type,
                message.id,
                redact(message.payload.recipient_contact),
                message.retry_count,
                exc_info=True,
            )
        else:
            mark_sent(message, now_fn())
            logger.debug("sent %s message %s", message.message_type, message.id)

        await db.commit(ChangeSet(deliveries=[message]))
        processed += 1

    logger.info("processed %d outbox messages", processed)
    return processed


async def run_outbox_processor(
    db: Database,
    send: SendFn,
    *,
    now_fn: NowFn,
    sleep_fn: SleepFn,
    poll_interval: float,
    batch_size: int = 10,
) -> None:
    logger.info("outbox processor started")
    try:
        while True:
            try:
                await drain_outbox(db, send, now_fn=now_fn, batch_size=batch_size)
            except Exception:
                logger.exception("error processing outbox messages")
            await sleep_fn(poll_interval)
    except asyncio.CancelledError:
        logger.info("outbox processor stopped")
        raise
