"""
Celery Tasks

Worker side of the transactional outbox (push delivery through the push
gateway), the hourly split reminder sweep, the in-flight settlement sweep
and outbox housekeeping.
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager
from datetime import timedelta
from typing import TYPE_CHECKING

import httpx
from sqlalchemy import select

from splitledger.workers.celery_app import celery_app
from splitledger.db.database import get_task_session, utcnow
from splitledger.db.models.outbox_message import OutboxMessage
from splitledger.domain.services.outbox_service import OutboxService
from splitledger.domain.services.reminder_service import ReminderService
from splitledger.domain.services.settlement_service import SettlementService
from splitledger.domain.services.split_service import SplitService
from splitledger.core.config import settings
from splitledger.core.circuit_breaker import get_push_circuit_breaker
from splitledger.core.exceptions import AppException, ExternalServiceException, PaymentPendingError
from splitledger.core.logging import get_logger, set_correlation_id

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # The Redis singleton is bound to this loop; drop it before the loop closes
            from splitledger.core.redis_client import close_redis
            loop.run_until_complete(close_redis())
        except Exception as e:
            logger.warning(
                "Failed to close Redis at task end",
                extra_data={"error": str(e)},
            )
        try:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    # Set correlation ID for task tracking
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


async def _send_push(recipient_id: str, content: dict) -> bool:
    """POST one notification to the push gateway with circuit breaker protection"""
    circuit_breaker = get_push_circuit_breaker()

    async def _send():
        async with httpx.AsyncClient(timeout=10.0) as client:
            response = await client.post(
                f"{settings.PUSH_GATEWAY_URL}/send",
                json={
                    "user_id": recipient_id,
                    "title": content.get("title", ""),
                    "body": content.get("body", ""),
                    "data": content.get("data") or {},
                },
            )
            if response.status_code >= 300:
                raise ExternalServiceException.from_response("push", "send", response)
            return True

    try:
        return await circuit_breaker.execute(_send)
    except (ExternalServiceException, httpx.HTTPError) as exc:
        logger.error(
            "Push send error",
            extra_data={"recipient_id": recipient_id, "error": str(exc)},
        )
        return False


async def _process_single_message(db: "AsyncSession", message: OutboxMessage) -> tuple[bool, str]:
    """Deliver one outbox message; failures only mark the row"""
    outbox_service = OutboxService(db)
    await outbox_service.mark_as_processing(message.id)

    try:
        success = await _send_push(message.recipient_id, message.message_content or {})
    except Exception as e:
        logger.error(
            "Unexpected push failure",
            extra_data={"message_id": message.id, "error": str(e)},
            exc_info=True,
        )
        await outbox_service.mark_as_failed(message.id, str(e))
        return False, str(e)

    if success:
        await outbox_service.mark_as_sent(message.id)
        return True, "Message sent successfully"
    await outbox_service.mark_as_failed(message.id, "Send failed")
    return False, "Send failed"


async def process_outbox(db: "AsyncSession", limit: int = 50) -> list[dict]:
    outbox_service = OutboxService(db)
    messages = await outbox_service.get_pending_messages(limit=limit)

    results = []
    for message in messages:
        success, result = await _process_single_message(db, message)
        results.append({
            "message_id": message.id,
            "success": success,
            "result": result
        })
    return results


@celery_app.task(name="splitledger.workers.tasks.process_outbox_messages")
def process_outbox_messages():
    """
    Process pending messages from the outbox.
    This task runs periodically to ensure reliable message delivery.
    """

    async def _process():
        async with get_task_session() as db:
            return await process_outbox(db)

    return run_async(_process())


@celery_app.task(name="splitledger.workers.tasks.send_message")
def send_message(message_id: int):
    """Send a specific message by ID"""

    async def _send():
        async with get_task_session() as db:
            result = await db.execute(
                select(OutboxMessage).where(OutboxMessage.id == message_id)
            )
            message = result.scalar_one_or_none()

            if not message:
                return {"error": "Message not found"}

            success, result = await _process_single_message(db, message)
            return {"success": success, "result": result}

    return run_async(_send())


@celery_app.task(name="splitledger.workers.tasks.send_split_reminders")
def send_split_reminders():
    """Hourly nudge for participants with unpaid shares"""

    async def _remind():
        async with get_task_session() as db:
            sent = await ReminderService(db).send_split_reminders()
            return {"sent": sent}

    return run_async(_remind())


async def resolve_settlements(db: "AsyncSession", limit: int = 5) -> dict:
    """
    Resume external split payments nobody came back for. Each one is only
    polled on the rail it started on; a payer retrying at the same moment
    holds the settlement lock and the row is skipped until the next run.
    """
    started_before = utcnow() - timedelta(seconds=settings.SETTLEMENT_SWEEP_MIN_AGE_SECONDS)
    participants = await SplitService(db).list_in_flight_settlements(started_before, limit=limit)
    targets = [(p.user_id, p.split_event_id) for p in participants]

    counts = {"resolved": 0, "pending": 0, "failed": 0}
    for user_id, event_id in targets:
        try:
            await SettlementService(db).pay_share(user_id, event_id)
            counts["resolved"] += 1
        except PaymentPendingError:
            counts["pending"] += 1
        except AppException as exc:
            counts["failed"] += 1
            logger.warning(
                "In-flight settlement not resolved",
                extra_data={
                    "user_id": user_id,
                    "split_event_id": event_id,
                    "error_code": exc.error_code.value,
                    "error": exc.message,
                },
            )
    return counts


@celery_app.task(name="splitledger.workers.tasks.resolve_in_flight_settlements")
def resolve_in_flight_settlements():
    """Record or release external payments left pending by an earlier request"""

    async def _resolve():
        async with get_task_session() as db:
            return await resolve_settlements(db)

    return run_async(_resolve())


@celery_app.task(name="splitledger.workers.tasks.cleanup_old_messages")
def cleanup_old_messages(days: int = 30):
    """Clean up old processed messages from the outbox"""

    async def _cleanup():
        async with get_task_session() as db:
            deleted = await OutboxService(db).cleanup_old_messages(days=days)
            return {"deleted": deleted}

    return run_async(_cleanup())
