"""Order placement: stock deduction, persistence and compensation."""
import asyncio
from dataclasses import replace

import pytest
from pymongo.errors import BulkWriteError
from mongomock_motor import AsyncMongoMockClient

from conftest import order_payload, product_doc
from vdeck_api.database import PENDING_ORDERS, Database
from vdeck_api.errors import InsufficientStockError, PersistenceError
from vdeck_api.orders import OrderService, merge_lines
from vdeck_api.schemas import parse_order_request

pytestmark = pytest.mark.anyio


async def seed(database, *documents):
    await database.db["products"].insert_many(list(documents))


async def stock(database, product_id):
    return (await database.db["products"].find_one({"_id": product_id}))["stock"]


def test_merge_lines_sums_duplicates():
    request = parse_order_request(order_payload(items=[
        {"id": "p1", "quantity": 1},
        {"id": "p2", "quantity": 2},
        {"id": "p1", "quantity": 3},
    ]))
    assert merge_lines(request.items) == {"p1": 4, "p2": 2}


async def test_place_order_deducts_stock_and_saves(ready_database):
    await seed(ready_database, product_doc("p1", 5))
    service = OrderService(ready_database)

    order = await service.place_order(parse_order_request(order_payload()))

    assert await stock(ready_database, "p1") == 2
    saved = await ready_database.orders.get(order.id)
    assert saved.items == order.items
    assert [item.model_dump(by_alias=True) for item in saved.items] == [{"id": "p1", "quantity": 3}]
    assert saved.total == 300
    assert saved.payment_proof == "/uploads/1700000000000-proof.png"
    # markers are cleared once the order is saved
    assert (await ready_database.db["products"].find_one({"_id": "p1"}))[PENDING_ORDERS] == []


async def test_multiple_products(ready_database):
    await seed(ready_database, product_doc("p1", 5), product_doc("p2", 5))
    service = OrderService(ready_database)
    items = [{"id": "p1", "quantity": 1}, {"id": "p2", "quantity": 4}, {"id": "p1", "quantity": 2}]

    order = await service.place_order(parse_order_request(order_payload(items=items)))

    assert await stock(ready_database, "p1") == 2
    assert await stock(ready_database, "p2") == 1
    # the order keeps the line items as sent
    assert len(order.items) == 3


async def test_insufficient_stock_changes_nothing(ready_database):
    await seed(ready_database, product_doc("p1", 5), product_doc("p2", 1))
    service = OrderService(ready_database)
    items = [{"id": "p1", "quantity": 2}, {"id": "p2", "quantity": 2}]

    with pytest.raises(InsufficientStockError) as excinfo:
        await service.place_order(parse_order_request(order_payload(items=items)))

    assert excinfo.value.product_ids == ["p2"]
    assert await stock(ready_database, "p1") == 5
    assert await stock(ready_database, "p2") == 1
    assert await ready_database.db["orders"].count_documents({}) == 0


async def test_unknown_product_is_rejected(ready_database):
    service = OrderService(ready_database)
    with pytest.raises(InsufficientStockError):
        await service.place_order(parse_order_request(order_payload(items=[{"id": "ghost", "quantity": 1}])))
    assert await ready_database.db["orders"].count_documents({}) == 0


async def test_oversell_mode_keeps_permissive_behaviour(anyio_backend, settings):
    database = Database(replace(settings, allow_oversell=True), client=AsyncMongoMockClient(tz_aware=True))
    await database.connect()
    await seed(database, product_doc("p1", 1))
    service = OrderService(database)
    items = [{"id": "p1", "quantity": 3}, {"id": "ghost", "quantity": 1}]

    await service.place_order(parse_order_request(order_payload(items=items)))

    assert await stock(database, "p1") == -2
    assert await database.db["orders"].count_documents({}) == 1


async def test_placing_twice_creates_two_orders(ready_database):
    # no idempotency: the same request is two orders and two deductions
    await seed(ready_database, product_doc("p1", 10))
    service = OrderService(ready_database)
    request = parse_order_request(order_payload())

    first = await service.place_order(request)
    second = await service.place_order(request)

    assert first.id != second.id
    assert await stock(ready_database, "p1") == 4
    assert await ready_database.db["orders"].count_documents({}) == 2


# mongomock runs each operation to completion without yielding, so the gathered
# calls below never interleave inside a bulk write. They check that deductions
# add up across many orders, not the server-side atomicity of $inc.

async def test_concurrent_orders_sum_deductions(ready_database):
    await seed(ready_database, product_doc("p1", 10))
    service = OrderService(ready_database)
    request = parse_order_request(order_payload(items=[{"id": "p1", "quantity": 2}]))

    orders = await asyncio.gather(*(service.place_order(request) for _ in range(4)))

    assert len({order.id for order in orders}) == 4
    assert await stock(ready_database, "p1") == 2


async def test_concurrent_orders_never_oversell(ready_database):
    await seed(ready_database, product_doc("p1", 5))
    service = OrderService(ready_database)
    request = parse_order_request(order_payload(items=[{"id": "p1", "quantity": 2}]))

    results = await asyncio.gather(*(service.place_order(request) for _ in range(4)), return_exceptions=True)

    placed = [result for result in results if not isinstance(result, Exception)]
    rejected = [result for result in results if isinstance(result, InsufficientStockError)]
    assert len(placed) == 2
    assert len(rejected) == 2
    assert await stock(ready_database, "p1") == 1


async def test_failed_insert_restores_stock(ready_database, monkeypatch):
    await seed(ready_database, product_doc("p1", 5))
    service = OrderService(ready_database)

    async def failing_insert(order):
        raise PersistenceError("Order could not be saved.", step="order")

    monkeypatch.setattr(ready_database.orders, "insert", failing_insert)

    with pytest.raises(PersistenceError) as excinfo:
        await service.place_order(parse_order_request(order_payload()))

    assert excinfo.value.step == "order"
    assert excinfo.value.stock_restored is True
    assert await stock(ready_database, "p1") == 5


async def test_failed_compensation_is_reported(ready_database, monkeypatch):
    await seed(ready_database, product_doc("p1", 5))
    service = OrderService(ready_database)

    async def failing_insert(order):
        raise PersistenceError("Order could not be saved.", step="order")

    async def failing_release(order_id, lines):
        raise PersistenceError("Stock could not be restored.", step="stock", stock_restored=False)

    monkeypatch.setattr(ready_database.orders, "insert", failing_insert)
    monkeypatch.setattr(ready_database.products, "release", failing_release)

    with pytest.raises(PersistenceError) as excinfo:
        await service.place_order(parse_order_request(order_payload()))

    assert excinfo.value.step == "order"
    assert excinfo.value.stock_restored is False
    # the deduction stays: this is the documented partial failure
    assert await stock(ready_database, "p1") == 2


class PartialBulkWrite:
    """Applies only the first operation of the next bulk write, then fails it."""

    def __init__(self, collection):
        self.collection = collection
        self.fail_next = True

    async def bulk_write(self, operations, ordered=True):
        if self.fail_next:
            self.fail_next = False
            await self.collection.bulk_write(operations[:1], ordered=ordered)
            raise BulkWriteError({"writeErrors": [{"index": 1, "code": 50, "errmsg": "operation exceeded time limit"}]})
        return await self.collection.bulk_write(operations, ordered=ordered)

    def __getattr__(self, name):
        return getattr(self.collection, name)


async def test_failed_stock_batch_restores_applied_lines(ready_database, monkeypatch):
    await seed(ready_database, product_doc("p1", 5), product_doc("p2", 5))
    products = ready_database.products
    monkeypatch.setattr(products, "collection", PartialBulkWrite(products.collection))
    service = OrderService(ready_database)
    items = [{"id": "p1", "quantity": 3}, {"id": "p2", "quantity": 1}]

    with pytest.raises(PersistenceError) as excinfo:
        await service.place_order(parse_order_request(order_payload(items=items)))

    assert excinfo.value.step == "stock"
    assert excinfo.value.stock_restored is True
    assert await stock(ready_database, "p1") == 5
    assert await stock(ready_database, "p2") == 5
    assert (await ready_database.db["products"].find_one({"_id": "p1"}))[PENDING_ORDERS] == []
    assert await ready_database.db["orders"].count_documents({}) == 0
