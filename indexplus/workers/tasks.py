"""
Celery Tasks for Async Message Processing

צד ה-worker של ה-Transactional Outbox: שליפת התראות ממתינות ושליחתן
ללקוח דרך ערוץ ה-Meta המחובר של הטנאנט.
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from indexplus.core.logging import get_logger, log_async_operation, mask_identifier, set_correlation_id
from indexplus.db.database import get_task_session
from indexplus.db.models.outbox_message import OutboxMessage
from indexplus.domain.services.channel_service import ChannelService
from indexplus.domain.services.meta.sender import BaseMessageSender, get_message_sender
from indexplus.domain.services.outbox_service import OutboxService
from indexplus.workers.celery_app import celery_app

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
            # Cancel all pending tasks
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            # Wait for tasks to be cancelled
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


async def deliver_outbox_message(
    db: AsyncSession,
    message: OutboxMessage,
    sender: BaseMessageSender,
) -> tuple[bool, str | None]:
    """
    שליחת הודעת outbox בודדת.

    Returns:
        (success, external message id או הודעת שגיאה)
    """
    outbox_service = OutboxService(db)
    message_id = message.id
    tenant_id = message.tenant_id
    platform = message.platform
    recipient_id = message.recipient_id
    text = (message.message_content or {}).get("message_text", "")

    await outbox_service.mark_as_processing(message_id)

    channel = await ChannelService(db).get_connected_channel(tenant_id, platform)
    if channel is None:
        error = f"No connected {platform} channel for tenant"
        logger.warning(
            "Outbox message has no connected channel",
            extra_data={"message_id": message_id, "tenant_id": tenant_id, "platform": platform},
        )
        await outbox_service.mark_as_failed(message_id, error)
        return False, error

    try:
        external_id = await sender.send_text(channel, recipient_id, text)
    except Exception as e:
        logger.error(
            "Outbox message send failed",
            extra_data={
                "message_id": message_id,
                "platform": platform,
                "recipient": mask_identifier(recipient_id),
                "error": str(e),
            },
            exc_info=True,
        )
        await outbox_service.mark_as_failed(message_id, str(e))
        return False, str(e)

    await outbox_service.mark_as_sent(message_id)
    logger.info(
        "Outbox message sent",
        extra_data={"message_id": message_id, "platform": platform, "message_type": message.message_type},
    )
    return True, external_id


@log_async_operation("process_pending_outbox")
async def process_pending_outbox(
    db: AsyncSession,
    sender: BaseMessageSender,
    limit: int | None = None,
) -> list[dict[str, Any]]:
    outbox_service = OutboxService(db)
    messages = await outbox_service.get_pending_messages(limit=limit)

    results = []
    for message in messages:
        message_id = message.id
        success, result = await deliver_outbox_message(db, message, sender)
        results.append({
            "message_id": message_id,
            "success": success,
            "result": result,
        })
    return results


@celery_app.task(name="indexplus.workers.tasks.process_outbox_messages")
def process_outbox_messages():
    """
    Process pending messages from the outbox.
    This task runs periodically to ensure reliable message delivery.
    """

    async def _process():
        async with get_task_session() as db:
            return await process_pending_outbox(db, get_message_sender())

    return run_async(_process())
