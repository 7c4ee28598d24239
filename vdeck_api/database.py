# database.py

import asyncio
import uuid
from contextlib import contextmanager
from enum import Enum
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ReturnDocument, UpdateOne
from pymongo.errors import PyMongoError

from vdeck_api.config import Settings
from vdeck_api.errors import PersistenceError
from vdeck_api.logger import log_error, log_info
from vdeck_api.schemas import Order, Product, ProductCreate, ProductUpdate

# Product field listing the orders whose stock deduction is not settled yet
PENDING_ORDERS = "pendingOrders"


@contextmanager
def driver_errors(step: str, message: str, stock_restored: Optional[bool] = None):
    """ Re-raise any driver failure (including timeouts) as a PersistenceError for `step`. """
    try:
        yield
    except PyMongoError as exc:
        raise PersistenceError(message, step=step, stock_restored=stock_restored) from exc


class DatabaseState(str, Enum):
    INIT = "init"
    READY = "ready"
    CLOSED = "closed"


class Database:
    """
    Handle on the MongoDB database.

    Created once per application, connected in the lifespan handler and closed on shutdown.
    The product and order stores are only available while the handle is ready.
    """

    def __init__(self, settings: Settings, client=None):
        self.settings = settings
        if client is None:
            client = AsyncIOMotorClient(settings.mongo_uri, serverSelectionTimeoutMS=settings.server_timeout_ms, tz_aware=True)
        self.client = client
        self.name = settings.resolve_database_name()
        self.state = DatabaseState.INIT
        self._products: Optional[ProductStore] = None
        self._orders: Optional[OrderStore] = None

    @property
    def db(self):
        return self.client[self.name]

    async def connect(self):
        """ Ping the server until it answers, retrying with a fixed delay. """
        if self.state == DatabaseState.CLOSED:
            raise PersistenceError("Database handle is closed.", step="connect")
        if self.state == DatabaseState.READY:
            return

        attempt = 0
        while True:
            attempt += 1
            try:
                await self.db.command("ping")
                break
            except PyMongoError as exc:
                log_error(f"MongoDB connection attempt {attempt} failed: {exc}")
                if self.settings.connect_attempts and attempt >= self.settings.connect_attempts:
                    raise PersistenceError("Could not connect to the database.", step="connect") from exc
                await asyncio.sleep(self.settings.connect_retry_delay)

        self._products = ProductStore(self.db["products"], allow_oversell=self.settings.allow_oversell)
        self._orders = OrderStore(self.db["orders"])
        self.state = DatabaseState.READY
        log_info(f"Connected to MongoDB database: {self.name}")

    def close(self):
        if self.state == DatabaseState.CLOSED:
            return
        self.client.close()
        self._products = None
        self._orders = None
        self.state = DatabaseState.CLOSED
        log_info("Database connection closed.")

    def _require_ready(self):
        if self.state != DatabaseState.READY:
            raise PersistenceError(f"Database is not ready (state: {self.state.value}).", step="connect")

    @property
    def products(self) -> "ProductStore":
        self._require_ready()
        return self._products

    @property
    def orders(self) -> "OrderStore":
        self._require_ready()
        return self._orders


class ProductStore:
    """
    Product documents and their stock counts.

    Stock only ever changes through atomic $inc updates. Unless oversell is allowed,
    a deduction only applies when the product has at least the requested quantity.
    """

    def __init__(self, collection, allow_oversell: bool = False):
        self.collection = collection
        self.allow_oversell = allow_oversell

    def _deduct_filter(self, product_id: str, quantity: int) -> dict:
        query = {"_id": product_id}
        if not self.allow_oversell:
            query["stock"] = {"$gte": quantity}
        return query

    async def decrement_stock(self, product_id: str, quantity: int) -> bool:
        """ Deduct `quantity` from a single product. Returns whether it was applied. """
        with driver_errors("stock", "Stock update failed."):
            result = await self.collection.update_one(
                self._deduct_filter(product_id, quantity),
                {"$inc": {"stock": -quantity}},
            )
        return result.modified_count == 1

    async def batch_decrement(self, order_id: str, lines: dict) -> dict:
        """
        Deduct stock for every product in `lines` ({product_id: quantity}) with one bulk write.

        Each applied deduction also records `order_id` on the product so the caller can later
        release exactly what was applied. Items succeed or fail independently.
        Returns {product_id: applied}.
        """
        if not lines:
            return {}

        operations = []
        for product_id, quantity in lines.items():
            query = self._deduct_filter(product_id, quantity)
            query[PENDING_ORDERS] = {"$ne": order_id}
            operations.append(UpdateOne(query, {"$inc": {"stock": -quantity}, "$push": {PENDING_ORDERS: order_id}}))

        with driver_errors("stock", "Stock update failed."):
            result = await self.collection.bulk_write(operations, ordered=False)
            if result.matched_count == len(operations):
                return {product_id: True for product_id in lines}

            # some lines did not match: find out which ones carry the marker
            documents = await self.collection.find(
                {"_id": {"$in": list(lines)}, PENDING_ORDERS: order_id}, {"_id": 1}
            ).to_list(length=None)

        applied = {document["_id"] for document in documents}
        return {product_id: product_id in applied for product_id in lines}

    async def release(self, order_id: str, lines: dict):
        """ Put back the stock deducted for `order_id`. Products no longer holding the marker are skipped. """
        operations = [
            UpdateOne(
                {"_id": product_id, PENDING_ORDERS: order_id},
                {"$inc": {"stock": quantity}, "$pull": {PENDING_ORDERS: order_id}},
            )
            for product_id, quantity in lines.items()
        ]
        if not operations:
            return
        with driver_errors("stock", "Releasing deducted stock failed.", stock_restored=False):
            await self.collection.bulk_write(operations, ordered=False)

    async def settle(self, order_id: str):
        """ Forget the pending marker once the order is persisted. """
        with driver_errors("stock", "Pending order marker could not be cleared."):
            await self.collection.update_many({PENDING_ORDERS: order_id}, {"$pull": {PENDING_ORDERS: order_id}})

    async def list(self) -> list:
        with driver_errors("products", "Products could not be loaded."):
            documents = await self.collection.find({}).sort("name", 1).to_list(length=None)
        return [Product.from_document(document) for document in documents]

    async def get(self, product_id: str) -> Optional[Product]:
        with driver_errors("products", "Product could not be loaded."):
            document = await self.collection.find_one({"_id": product_id})
        return Product.from_document(document) if document else None

    async def create(self, data: ProductCreate) -> Product:
        document = data.model_dump()
        document["_id"] = str(uuid.uuid4())
        with driver_errors("products", "Product could not be saved."):
            await self.collection.insert_one(document)
        return Product.from_document(document)

    async def update(self, product_id: str, data: ProductUpdate) -> Optional[Product]:
        changes = data.model_dump(exclude_none=True)
        if not changes:
            return await self.get(product_id)
        with driver_errors("products", "Product could not be saved."):
            document = await self.collection.find_one_and_update(
                {"_id": product_id},
                {"$set": changes},
                return_document=ReturnDocument.AFTER,
            )
        return Product.from_document(document) if document else None

    async def delete(self, product_id: str) -> bool:
        with driver_errors("products", "Product could not be deleted."):
            result = await self.collection.delete_one({"_id": product_id})
        return result.deleted_count == 1


class OrderStore:
    """ Order documents. Orders are only ever inserted and read. """

    def __init__(self, collection):
        self.collection = collection

    async def insert(self, order: Order) -> Order:
        with driver_errors("order", "Order could not be saved."):
            await self.collection.insert_one(order.to_document())
        return order

    async def get(self, order_id: str) -> Optional[Order]:
        with driver_errors("orders", "Order could not be loaded."):
            document = await self.collection.find_one({"_id": order_id})
        return Order.from_document(document) if document else None

    async def list(self) -> list:
        with driver_errors("orders", "Orders could not be loaded."):
            documents = await self.collection.find({}).sort("createdAt", -1).to_list(length=None)
        return [Order.from_document(document) for document in documents]
