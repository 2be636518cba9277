"""Notification dispatch seam.

Rendering and sending (SMTP, templates) live outside this service; the
worker hands a ``LowStockNotice`` to whatever ``Notifier`` is installed.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol
from uuid import UUID

logger = logging.getLogger("fulfillment.notifications")


@dataclass(frozen=True)
class LowStockNotice:
    user_id: UUID
    product_item_id: int
    sku: str
    price: Decimal
    stock: int


class Notifier(Protocol):

    async def send_low_stock(self, notice: LowStockNotice) -> None:
        ...


class LoggingNotifier:

    async def send_low_stock(self, notice: LowStockNotice) -> None:
        logger.info("Low stock alert for user %s: %s has %d left at %s",
                    notice.user_id, notice.sku, notice.stock, notice.price)


_notifier: Notifier = LoggingNotifier()


def get_notifier() -> Notifier:
    return _notifier


def set_notifier(notifier: Notifier) -> None:
    global _notifier
    _notifier = notifier
