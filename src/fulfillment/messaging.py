import asyncio
import logging
from aio_pika import connect_robust, ExchangeType
from aio_pika.abc import AbstractRobustConnection, AbstractRobustChannel
from sqlalchemy.ext.asyncio import AsyncSession
from fulfillment.config import settings
from fulfillment.models import JobOutbox

logger = logging.getLogger("fulfillment.messaging")

NOTIFICATION_EXCHANGE     = "notification_exchange"
QUEUE_STOCK_NOTIFICATIONS = "stock_notifications"

JOB_STOCK_ALERT           = "stock_alert.notify"

ROUTING_KEYS = {
    JOB_STOCK_ALERT: QUEUE_STOCK_NOTIFICATIONS,
}

rabbit_connection: AbstractRobustConnection | None = None
rabbit_channel:    AbstractRobustChannel     | None = None

class JobQueue:
    """
    Durable job queue backed by the ``job_outbox`` table. Jobs are staged in
    the caller's transaction and published by ``workers.outbox_publisher``.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def enqueue(self, job_type: str, payload: dict) -> JobOutbox:
        if job_type not in ROUTING_KEYS:
            raise ValueError(f"Unknown job type {job_type!r}")
        job = JobOutbox(job_type=job_type, payload=payload)
        self.session.add(job)
        await self.session.flush()
        return job

async def init_rabbit(retry_attempts: int = 5, retry_delay: int = 2) -> None:
    global rabbit_connection, rabbit_channel

    for attempt in range(1, retry_attempts + 1):
        try:
            logger.info("Connecting to RabbitMQ (attempt %d/%d)", attempt, retry_attempts)
            rabbit_connection = await connect_robust(settings.rabbit_url)
            rabbit_channel    = await rabbit_connection.channel()

            exchange = await rabbit_channel.declare_exchange(
                NOTIFICATION_EXCHANGE, ExchangeType.DIRECT, durable=True
            )
            queue = await rabbit_channel.declare_queue(
                QUEUE_STOCK_NOTIFICATIONS, durable=True
            )
            await queue.bind(exchange, QUEUE_STOCK_NOTIFICATIONS)

            logger.info("RabbitMQ setup complete")
            return
        except Exception as e:
            logger.error("RabbitMQ init failed: %s", e)
            if attempt < retry_attempts:
                await asyncio.sleep(retry_delay)
            else:
                logger.critical("Could not connect to RabbitMQ, giving up")
                raise

async def get_channel() -> AbstractRobustChannel:
    if rabbit_channel is None:
        await init_rabbit()
    return rabbit_channel

async def close_rabbit() -> None:
    global rabbit_connection, rabbit_channel
    if rabbit_connection:
        await rabbit_connection.close()
        rabbit_connection = None
        rabbit_channel = None
        logger.info("RabbitMQ connection closed")
