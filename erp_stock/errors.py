from decimal import Decimal


class StockError(Exception):
    """Base class for errors surfaced by the stock accounting core."""

    code = "STOCK_ERROR"
    status_code = 400

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class NotFoundError(StockError):
    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, entity: str, entity_id):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class InsufficientStockError(StockError):
    code = "INSUFFICIENT_STOCK"
    status_code = 409

    def __init__(self, stock_type: str, item_id: int, item_name: str, available: Decimal, requested: Decimal):
        self.stock_type = stock_type
        self.item_id = item_id
        self.item_name = item_name
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient stock for '{item_name}': requested {requested}, available {available}"
        )


class StockValidationError(StockError):
    code = "VALIDATION_ERROR"
    status_code = 422


class ConcurrentStockUpdateError(StockError):
    code = "CONCURRENT_UPDATE"
    status_code = 409


class LedgerImmutableError(StockError):
    code = "LEDGER_IMMUTABLE"
    status_code = 409
