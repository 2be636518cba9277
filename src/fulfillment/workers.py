import asyncio
import json
import logging

from aio_pika import DeliveryMode, Message, ExchangeType
from aio_pika.abc import AbstractExchange
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.config import settings
from fulfillment.db import AsyncSessionLocal
from fulfillment.messaging import (
    get_channel,
    NOTIFICATION_EXCHANGE,
    QUEUE_STOCK_NOTIFICATIONS,
    ROUTING_KEYS,
)
from fulfillment.models import JobOutbox, ProductItem, utcnow
from fulfillment.notifications import LowStockNotice, Notifier, get_notifier
from fulfillment.schemas import StockAlertJob

logger = logging.getLogger("fulfillment.workers")

async def publish_pending_jobs(session: AsyncSession, exchange: AbstractExchange) -> int:
    stmt = (
        select(JobOutbox)
        .where(JobOutbox.published_at.is_(None))
        .order_by(JobOutbox.created_at)
        .with_for_update(skip_locked=True)
    )
    jobs = (await session.execute(stmt)).scalars().all()
    if not jobs:
        return 0

    logger.info("Publishing %d pending jobs", len(jobs))
    for job in jobs:
        message = Message(
            body=json.dumps(job.payload).encode(),
            content_type="application/json",
            delivery_mode=DeliveryMode.PERSISTENT,
            message_id=str(job.id),
            type=job.job_type,
        )
        await exchange.publish(message, routing_key=ROUTING_KEYS[job.job_type])
        job.published_at = utcnow()

    await session.commit()
    return len(jobs)

async def outbox_publisher():
    channel = await get_channel()
    exchange = await channel.declare_exchange(
        NOTIFICATION_EXCHANGE, ExchangeType.DIRECT, durable=True
    )

    while True:
        try:
            async with AsyncSessionLocal() as session:
                await publish_pending_jobs(session, exchange)
        except Exception as e:
            logger.error("Outbox publish failed: %s", e)
        await asyncio.sleep(settings.OUTBOX_POLL_INTERVAL)

async def handle_notification(body: bytes, session: AsyncSession, notifier: Notifier) -> bool:
    """Deliver one stock alert job. Returns False when the message is dropped."""
    try:
        job = StockAlertJob(**json.loads(body))
    except (ValueError, TypeError, ValidationError) as e:
        logger.error("Invalid notification message: %s", e)
        return False

    item = await session.get(ProductItem, job.product_item_id)
    if item is None:
        logger.warning("Product item %s vanished before notification", job.product_item_id)
        return False

    await notifier.send_low_stock(LowStockNotice(
        user_id=job.user_id,
        product_item_id=item.id,
        sku=item.sku,
        price=item.price,
        stock=item.stock,
    ))
    return True

async def notification_consumer():
    channel = await get_channel()
    queue = await channel.declare_queue(QUEUE_STOCK_NOTIFICATIONS, durable=True)
    await channel.set_qos(prefetch_count=settings.NOTIFY_PREFETCH_COUNT)

    logger.info("Starting notification_consumer on queue '%s'", QUEUE_STOCK_NOTIFICATIONS)
    async with queue.iterator() as it:
        async for message in it:
            async with message.process():
                logger.info("Received notification job %s", message.message_id)
                async with AsyncSessionLocal() as session:
                    await handle_notification(message.body, session, get_notifier())
