# errors.py

from typing import Optional

# Exceptions raised by the stores and the order service.
# main.py maps each of them to an HTTP status and a {"message": ...} body.


class OrderError(Exception):
    """ Base class for errors raised while handling products and orders. """

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class OrderValidationError(OrderError):
    """ The request is missing a required field or carries a malformed one. Nothing was mutated. """


class InsufficientStockError(OrderError):
    """ One or more line items could not be deducted. Applied deductions were restored. """

    def __init__(self, product_ids: list):
        self.product_ids = list(product_ids)
        super().__init__(f"Insufficient stock for product(s): {', '.join(self.product_ids)}")


class PersistenceError(OrderError):
    """
    The database was unavailable or rejected a write.

    `step` names the operation that failed (connect, stock, order, products, orders).
    `stock_restored` is set when stock may already have been deducted: True when it was put
    back, False when it could not be. It stays None when no deduction was outstanding.
    """

    def __init__(self, message: str, step: str, stock_restored: Optional[bool] = None):
        super().__init__(message)
        self.step = step
        self.stock_restored = stock_restored
