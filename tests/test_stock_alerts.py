"""Low-stock alert selection and deduplication."""
import uuid

import pytest
from sqlalchemy import select

from fulfillment import stock_alerts
from fulfillment.errors import AlreadyNotified, NoActionNeeded, NoEligibleUser, NotFound
from fulfillment.messaging import JOB_STOCK_ALERT
from fulfillment.models import JobOutbox, OrderStatus, StockAlert


async def check(session_factory, product_item_id, **kwargs):
    async with session_factory() as session:
        return await stock_alerts.check_stock_and_notify(session, product_item_id, **kwargs)


async def jobs(session_factory):
    async with session_factory() as session:
        return (await session.execute(select(JobOutbox))).scalars().all()


async def test_unknown_item_is_not_found(session_factory):
    with pytest.raises(NotFound):
        await check(session_factory, 9999)


async def test_stock_above_threshold_needs_no_action(seed, session_factory):
    item = await seed.item("SKU-X", "3.00", stock=4)
    await seed.favorite(uuid.uuid4(), item)

    with pytest.raises(NoActionNeeded):
        await check(session_factory, item)
    assert await seed.count(StockAlert) == 0


async def test_threshold_is_inclusive(seed, session_factory):
    item = await seed.item("SKU-X", "3.00", stock=3)
    await seed.favorite(uuid.uuid4(), item)

    alert = await check(session_factory, item)

    assert alert.product_item_id == item


async def test_no_favorites_means_no_eligible_user(seed, session_factory):
    item = await seed.item("SKU-X", "3.00", stock=1)

    with pytest.raises(NoEligibleUser):
        await check(session_factory, item)


async def test_most_recent_favorite_wins_and_job_is_queued(seed, session_factory):
    item = await seed.item("SKU-X", "3.00", stock=2)
    early, late = uuid.uuid4(), uuid.uuid4()
    await seed.favorite(early, item, minutes_ago=60)
    await seed.favorite(late, item, minutes_ago=5)

    alert = await check(session_factory, item)

    assert alert.user_id == late
    queued = await jobs(session_factory)
    assert [(j.job_type, j.payload) for j in queued] == [
        (JOB_STOCK_ALERT, {"user_id": str(late), "product_item_id": item})
    ]
    assert queued[0].published_at is None


async def test_users_who_bought_the_item_are_skipped(seed, session_factory):
    item = await seed.item("SKU-X", "3.00", stock=2)
    buyer, fan = uuid.uuid4(), uuid.uuid4()
    await seed.favorite(fan, item, minutes_ago=60)
    await seed.favorite(buyer, item, minutes_ago=1)
    await seed.past_order(buyer, item, OrderStatus.APPROVED)

    alert = await check(session_factory, item)

    assert alert.user_id == fan


async def test_cancelled_and_rejected_orders_still_count_as_purchases(seed, session_factory):
    item = await seed.item("SKU-X", "3.00", stock=2)
    user_id = uuid.uuid4()
    await seed.favorite(user_id, item)
    await seed.past_order(user_id, item, OrderStatus.CANCELLED)
    await seed.past_order(user_id, item, OrderStatus.REJECTED)

    with pytest.raises(NoEligibleUser):
        await check(session_factory, item)
    assert await seed.count(StockAlert) == 0


async def test_only_buyer_favorited_means_no_eligible_user(seed, session_factory):
    item = await seed.item("SKU-X", "3.00", stock=2)
    buyer = uuid.uuid4()
    await seed.favorite(buyer, item)
    await seed.past_order(buyer, item, OrderStatus.PENDING)

    with pytest.raises(NoEligibleUser):
        await check(session_factory, item)


async def test_second_check_for_same_pair_is_deduplicated(seed, session_factory):
    item = await seed.item("SKU-X", "3.00", stock=2)
    await seed.favorite(uuid.uuid4(), item)

    await check(session_factory, item)
    for _ in range(3):
        with pytest.raises(AlreadyNotified):
            await check(session_factory, item)

    assert await seed.count(StockAlert) == 1
    assert len(await jobs(session_factory)) == 1


async def test_failed_enqueue_leaves_no_dedup_row(seed, session_factory):
    item = await seed.item("SKU-X", "3.00", stock=2)
    await seed.favorite(uuid.uuid4(), item)

    class BrokenQueue:
        async def enqueue(self, job_type, payload):
            raise ConnectionError("queue down")

    with pytest.raises(ConnectionError):
        await check(session_factory, item, queue=BrokenQueue())

    assert await seed.count(StockAlert) == 0
    alert = await check(session_factory, item)
    assert alert is not None


async def test_fan_out_isolates_failures(seed, session_factory):
    low = await seed.item("SKU-LOW", "3.00", stock=1)
    high = await seed.item("SKU-HIGH", "3.00", stock=40)
    await seed.favorite(uuid.uuid4(), low)

    outcomes = await stock_alerts.fan_out_stock_checks([low, high, low, 424242], session_factory)

    assert outcomes == {
        low: "notified",
        high: "NoActionNeeded",
        424242: "NotFound",
    }
    assert await seed.count(StockAlert) == 1


async def test_fan_out_contains_unexpected_errors(seed, session_factory, monkeypatch):
    item = await seed.item("SKU-X", "3.00", stock=1)

    async def explode(session, product_item_id, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(stock_alerts, "check_stock_and_notify", explode)

    assert await stock_alerts.fan_out_stock_checks([item], session_factory) == {item: "error"}
