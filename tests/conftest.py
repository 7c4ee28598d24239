"""Shared fixtures: an in-memory Motor client and an app wired to it."""
import asyncio

import pytest
from fastapi.testclient import TestClient
from mongomock_motor import AsyncMongoMockClient

from vdeck_api.config import Settings
from vdeck_api.database import Database
from vdeck_api.main import create_app


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_name="vdeck_test",
        upload_dir=str(tmp_path / "uploads"),
        connect_attempts=1,
        connect_retry_delay=0,
    )


@pytest.fixture
def database(settings):
    return Database(settings, client=AsyncMongoMockClient(tz_aware=True))


@pytest.fixture
async def ready_database(anyio_backend, database):
    await database.connect()
    return database


@pytest.fixture
def client(settings, database):
    app = create_app(settings, database=database)
    with TestClient(app) as test_client:
        yield test_client


def product_doc(product_id, stock, name=None, price=100.0):
    return {"_id": product_id, "name": name or f"Product {product_id}", "price": price, "stock": stock}


def order_payload(**overrides):
    payload = {
        "fullname": "Juan Dela Cruz",
        "gcash": "09171234567",
        "address": "123 Rizal St, Manila",
        "items": [{"id": "p1", "quantity": 3}],
        "total": 300,
        "paymentProof": "/uploads/1700000000000-proof.png",
    }
    payload.update(overrides)
    return payload


# Sync helpers for tests that talk to the app through TestClient

def seed_products(database, *documents):
    asyncio.run(database.db["products"].insert_many([dict(document) for document in documents]))


def stock_of(database, product_id):
    document = asyncio.run(database.db["products"].find_one({"_id": product_id}))
    return document["stock"]


def order_count(database):
    return asyncio.run(database.db["orders"].count_documents({}))
