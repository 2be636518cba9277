"""Error taxonomy shared by the order, payment and stock-alert flows.

Every error carries the HTTP status the transport layer answers with, so
routes only need one handler. ``detail`` is what the client sees.
"""


class FulfillmentError(Exception):
    status_code = 400

    def __init__(self, message: str = "", detail=None):
        super().__init__(message or self.__class__.__name__)
        self.detail = detail if detail is not None else (message or self.__class__.__name__)


class InvalidInput(FulfillmentError):
    status_code = 400


class EmptyCart(FulfillmentError):
    status_code = 400


class InsufficientStock(FulfillmentError):
    status_code = 409

    def __init__(self, shortfalls: list[dict]):
        self.shortfalls = shortfalls
        summary = ", ".join(
            f"{s['sku']}: Available {s['available']}, Required {s['requested']}"
            for s in shortfalls
        )
        super().__init__(
            f"Insufficient stock: {summary}",
            detail={"message": "Insufficient stock", "items": shortfalls},
        )


class Forbidden(FulfillmentError):
    status_code = 403


class NotFound(FulfillmentError):
    status_code = 404


class InvalidSignature(FulfillmentError):
    status_code = 400


class UnhandledEventType(FulfillmentError):
    status_code = 400


class AlreadySettled(FulfillmentError):
    status_code = 400


class GatewayError(FulfillmentError):
    status_code = 502


class StockAlertSkipped(FulfillmentError):
    """A stock check that ended without notifying anyone."""


class NoActionNeeded(StockAlertSkipped):
    pass


class NoEligibleUser(StockAlertSkipped):
    pass


class AlreadyNotified(StockAlertSkipped):
    pass
