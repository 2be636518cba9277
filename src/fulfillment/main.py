import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional
from uuid import UUID

import uvicorn
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment import crud, payments, schemas, workers
from fulfillment.config import settings
from fulfillment.db import Base, engine, get_session, get_session_factory
from fulfillment.errors import FulfillmentError, UnhandledEventType
from fulfillment.gateway import EventKind, get_gateway, parse_event
from fulfillment.messaging import close_rabbit, init_rabbit
from fulfillment.models import OrderStatus

logger = logging.getLogger("fulfillment.main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    await init_rabbit()

    app.state.outbox_task = asyncio.create_task(workers.outbox_publisher())
    app.state.notification_task = asyncio.create_task(workers.notification_consumer())
    yield
    app.state.outbox_task.cancel()
    app.state.notification_task.cancel()
    await close_rabbit()
    await engine.dispose()


app = FastAPI(title="Order Fulfillment Service", lifespan=lifespan)


@app.exception_handler(FulfillmentError)
async def fulfillment_error_handler(request: Request, exc: FulfillmentError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(OperationalError)
@app.exception_handler(InterfaceError)
async def database_error_handler(request: Request, exc: Exception):
    # transient store failures are retryable, so webhooks get redelivered
    logger.error("Database error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": "Temporarily unavailable, retry later"})


@app.exception_handler(IntegrityError)
async def integrity_error_handler(request: Request, exc: IntegrityError):
    logger.warning("Constraint violation on %s %s: %s", request.method, request.url.path, exc.orig)
    return JSONResponse(status_code=409, content={"detail": "Conflicting update, request rejected"})


@app.get("/health")
async def health_check():
    return {"status": "healthy"}


@app.post("/orders", response_model=schemas.OrderRead, status_code=201)
async def create_order(
    order_in: schemas.OrderCreateRequest,
    user_id: UUID = Query(...),
    session: AsyncSession = Depends(get_session)
):
    return await crud.create_order_from_cart(user_id, order_in.shipping_address, session)


@app.get("/orders", response_model=list[schemas.OrderRead])
async def list_orders(
    user_id: UUID,
    status: Optional[OrderStatus] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    session: AsyncSession = Depends(get_session)
):
    return await crud.get_orders_by_user(user_id, session, status, start_date, end_date)


@app.get("/orders/{order_id}", response_model=schemas.OrderRead)
async def get_order(
    order_id: UUID,
    user_id: UUID,
    session: AsyncSession = Depends(get_session)
):
    return await crud.get_order_details(order_id, user_id, session)


@app.patch("/orders/{order_id}/status", response_model=schemas.OrderRead)
async def update_order_status(
    order_id: UUID,
    status_in: schemas.OrderStatusUpdate,
    session: AsyncSession = Depends(get_session)
):
    return await crud.update_order_status(order_id, status_in.status, session)


@app.post("/payments", response_model=schemas.PaymentRead, status_code=201)
async def create_payment(
    payment_in: schemas.PaymentCreateRequest,
    user_id: UUID = Query(...),
    session: AsyncSession = Depends(get_session)
):
    return await payments.create_payment(payment_in.order_id, user_id, session)


@app.post("/payments/webhook", response_model=schemas.PaymentRead)
async def payment_webhook(
    request: Request,
    stripe_signature: str = Header(""),
    session: AsyncSession = Depends(get_session),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    raw_body = await request.body()
    try:
        event_data = json.loads(raw_body)
        created = int(event_data["created"])
        event = parse_event(event_data)
        payment_id = UUID(event.payment_id) if event.payment_id else None
    except (ValueError, KeyError, TypeError, AttributeError):
        raise HTTPException(status_code=400, detail="Malformed webhook payload")

    if payment_id is None:
        # events not tied to one of our payments are still authenticated before being refused
        verified = get_gateway().verify_and_parse_webhook(
            raw_body, stripe_signature, settings.STRIPE_WEBHOOK_SECRET
        )
        if verified.kind is EventKind.OTHER:
            raise UnhandledEventType(f"Unhandled event type: {verified.event_type}")
        raise HTTPException(status_code=400, detail="Webhook event has no paymentId metadata")

    return await payments.process_payment_webhook(
        payment_id,
        raw_body,
        stripe_signature,
        created,
        session,
        session_factory,
    )


if __name__ == "__main__":
    logging.basicConfig(level=settings.LOG_LEVEL)
    uvicorn.run("fulfillment.main:app", host="0.0.0.0", port=8000)
