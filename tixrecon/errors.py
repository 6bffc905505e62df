class ReconcileError(Exception):
    """Base class for errors raised inside the reconciliation engine."""


class GatewayUnavailable(ReconcileError):
    """The gateway status query failed, timed out or returned garbage.

    Means "no information this attempt", never a payment outcome.
    """


class StockError(ReconcileError):
    pass


class InsufficientStockError(StockError):
    def __init__(self, category_id: str, requested: int, remaining: int):
        super().__init__(
            f"category {category_id}: requested {requested}, "
            f"remaining {remaining}"
        )
        self.category_id = category_id
        self.requested = requested
        self.remaining = remaining


class StockNotFoundError(StockError):
    def __init__(self, category_id: str):
        super().__init__(f"no stock row for category {category_id}")
        self.category_id = category_id
