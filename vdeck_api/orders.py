# orders.py

import uuid
from datetime import datetime, timezone

from vdeck_api.database import Database
from vdeck_api.errors import InsufficientStockError, PersistenceError
from vdeck_api.logger import log_error, log_info, log_warning
from vdeck_api.schemas import Order, OrderRequest


def _now() -> datetime:
    # BSON dates keep milliseconds only
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=now.microsecond // 1000 * 1000)


def merge_lines(items: list) -> dict:
    """ Collapse line items into {product_id: total quantity}, keeping first-seen order. """
    lines = {}
    for item in items:
        lines[item.product_id] = lines.get(item.product_id, 0) + item.quantity
    return lines


class OrderService:
    """
    Places orders: deducts stock for every line item, then saves the order.

    Not idempotent: placing the same request twice creates two orders and deducts stock twice.
    """

    def __init__(self, database: Database):
        self.database = database

    async def place_order(self, request: OrderRequest, request_id: str = "N/A") -> Order:
        """
        Place an already validated order.

        Raises:
          - InsufficientStockError when a line item could not be deducted (nothing is kept).
          - PersistenceError when the database fails during the stock batch or the order insert;
            deducted stock is put back and `stock_restored` says whether that worked.
        """
        products = self.database.products
        orders = self.database.orders

        order_id = str(uuid.uuid4())
        lines = merge_lines(request.items)
        log_info(f"Placing order {order_id} with {len(lines)} product(s): {lines}", request_id=request_id)

        # Step 1: deduct stock for all line items in one batch
        try:
            outcome = await products.batch_decrement(order_id, lines)
        except PersistenceError as exc:
            # part of the batch may have been applied before the failure
            log_error(f"Stock deduction for order {order_id} failed, restoring stock: {exc.__cause__}", request_id=request_id)
            stock_restored = await self._compensate(order_id, lines, request_id)
            raise PersistenceError(exc.message, step="stock", stock_restored=stock_restored) from exc
        applied = {product_id: lines[product_id] for product_id, ok in outcome.items() if ok}
        rejected = [product_id for product_id, ok in outcome.items() if not ok]

        if rejected:
            if not products.allow_oversell:
                log_warning(f"Order {order_id} rejected, insufficient stock for: {rejected}", request_id=request_id)
                await products.release(order_id, applied)
                raise InsufficientStockError(rejected)
            # oversell mode: unknown products are skipped like any other unmatched update
            log_warning(f"Order {order_id}: no product matched for: {rejected}", request_id=request_id)

        log_info(f"Stock deducted for order {order_id}: {applied}", request_id=request_id)

        # Step 2: save the order
        order = Order(
            id=order_id,
            fullname=request.fullname,
            gcash=request.gcash,
            address=request.address,
            items=request.items,
            total=request.total,
            payment_proof=request.payment_proof,
            created_at=_now(),
        )
        try:
            await orders.insert(order)
        except PersistenceError as exc:
            log_error(f"Saving order {order_id} failed, restoring stock: {exc.__cause__}", request_id=request_id)
            stock_restored = await self._compensate(order_id, applied, request_id)
            raise PersistenceError(exc.message, step="order", stock_restored=stock_restored) from exc

        # Step 3: the order is saved, the pending markers are no longer needed
        try:
            await products.settle(order_id)
        except PersistenceError as exc:
            log_warning(f"Order {order_id} saved but pending markers were not cleared: {exc.__cause__}", request_id=request_id)

        log_info(f"Order saved: {order_id}", request_id=request_id)
        return order

    async def _compensate(self, order_id: str, applied: dict, request_id: str) -> bool:
        try:
            await self.database.products.release(order_id, applied)
        except PersistenceError as exc:
            log_error(f"Restoring stock for order {order_id} failed: {exc.__cause__}", request_id=request_id)
            return False
        log_info(f"Stock restored for order {order_id}", request_id=request_id)
        return True
