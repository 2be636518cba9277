"""Payment state machine.

A payment starts PENDING and is settled exactly once by a gateway webhook,
to PAID or FAILED. The order row is locked while a webhook is applied and a
settled order rejects further deliveries, which makes re-delivery harmless.
"""
import logging
import uuid
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment import stock_alerts
from fulfillment.config import settings
from fulfillment.errors import AlreadySettled, Forbidden, NotFound, UnhandledEventType
from fulfillment.gateway import EventKind, PaymentGateway, get_gateway
from fulfillment.models import Order, OrderStatus, Payment, PaymentStatus, utcnow

logger = logging.getLogger("fulfillment.payments")


async def get_payment(
    payment_id: UUID,
    session: AsyncSession
) -> Payment | None:
    return await session.get(Payment, payment_id)


async def create_payment(
    order_id: UUID,
    user_id: UUID,
    session: AsyncSession,
    gateway: PaymentGateway | None = None,
) -> Payment:
    """
    Persists a PENDING payment for the order, then requests a payment intent.
    The payment row stays PENDING if the gateway call fails so the request
    can be retried; a retry reuses the row and its correlation id.
    """
    gateway = gateway or get_gateway()

    order = await session.get(Order, order_id)
    if order is None:
        raise NotFound(f"Order with id {order_id} not found")
    if order.user_id != user_id:
        raise Forbidden(f"Access denied: Order {order_id} does not belong to user {user_id}")
    if order.status != OrderStatus.PENDING:
        raise AlreadySettled(f"Order {order_id} is already {order.status}")

    payment = await _payment_for_order(order_id, session)
    if payment is None:
        payment = Payment(
            payment_id=uuid.uuid4(),
            order_id=order.id,
            external_payment_id=str(uuid.uuid4()),
            amount=order.total,
            currency=settings.PAYMENT_CURRENCY,
            status=PaymentStatus.PENDING.value,
        )
        session.add(payment)
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            payment = await _payment_for_order(order_id, session)
            if payment is None:
                raise
        else:
            logger.info("Payment %s created for order %s", payment.payment_id, order_id)

    if payment.status != PaymentStatus.PENDING:
        raise AlreadySettled(f"Payment for order {order_id} is already {payment.status}")

    intent_id = await gateway.create_intent(
        amount=payment.amount,
        currency=payment.currency,
        metadata={
            "paymentId": str(payment.payment_id),
            "externalPaymentId": payment.external_payment_id,
        },
        idempotency_key=payment.external_payment_id,
    )
    logger.info("Payment intent %s requested for payment %s", intent_id, payment.payment_id)
    return payment


async def _payment_for_order(order_id: UUID, session: AsyncSession) -> Payment | None:
    result = await session.execute(select(Payment).where(Payment.order_id == order_id))
    return result.scalar_one_or_none()


async def process_payment_webhook(
    payment_id: UUID,
    raw_payload: bytes,
    signature: str,
    event_timestamp: int,
    session: AsyncSession,
    session_factory: async_sessionmaker[AsyncSession],
    gateway: PaymentGateway | None = None,
    webhook_secret: str | None = None,
) -> Payment:
    """
    Applies a gateway event to the payment and cascades a success to the
    order. Nothing is written unless the signature checks out and the event
    type is handled. Low-stock checks run after commit and cannot fail the
    webhook.
    """
    gateway = gateway or get_gateway()
    if webhook_secret is None:
        webhook_secret = settings.STRIPE_WEBHOOK_SECRET

    try:
        payment = await session.get(Payment, payment_id)
        if payment is None:
            raise NotFound("Payment not found")

        order = (await session.execute(
            select(Order).where(Order.id == payment.order_id).with_for_update()
        )).scalar_one_or_none()
        if order is None:
            raise NotFound("Order not found")
        if order.status != OrderStatus.PENDING or payment.status != PaymentStatus.PENDING:
            raise AlreadySettled("This order has already been paid")

        event = gateway.verify_and_parse_webhook(raw_payload, signature, webhook_secret)

        if event.kind is EventKind.SUCCEEDED:
            values = {
                "status": PaymentStatus.PAID.value,
                "payment_at": datetime.fromtimestamp(event_timestamp, tz=timezone.utc),
            }
        elif event.kind is EventKind.FAILED:
            values = {"status": PaymentStatus.FAILED.value}
        else:
            raise UnhandledEventType(f"Unhandled event type: {event.event_type}")

        if event.object_id:
            values["external_payment_id"] = event.object_id
        values["updated_at"] = utcnow()

        result = await session.execute(
            update(Payment)
            .where(Payment.payment_id == payment_id, Payment.status == PaymentStatus.PENDING.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise AlreadySettled("This order has already been paid")

        if event.kind is EventKind.SUCCEEDED:
            await session.execute(
                update(Order)
                .where(Order.id == order.id, Order.status == OrderStatus.PENDING.value)
                .values(status=OrderStatus.APPROVED.value, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )

        await session.commit()
    except Exception:
        await session.rollback()
        raise

    logger.info("Payment %s settled as %s (%s)", payment_id, values["status"], event.event_type)

    if event.kind is EventKind.SUCCEEDED:
        item_ids = {line.product_item_id for line in order.lines}
        outcomes = await stock_alerts.fan_out_stock_checks(item_ids, session_factory)
        logger.info("Stock checks after payment %s: %s", payment_id, outcomes)

    await session.refresh(payment)
    return payment
