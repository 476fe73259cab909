"""
Shared fixtures: in-memory database, stubbed upstream HTTP, wired services.
"""
import pytest
import httpx

from fakes import FakeMongoClient, UpstreamStub, seed_user
from fulfillment.indexes import ensure_indexes
from services import build_services
from settings import Settings


@pytest.fixture
def settings():
    return Settings(
        mongo_url="mongodb://unused",
        db_name="test_fulfillment",
        digi_username="digiuser",
        digi_api_key="digikey",
        digi_callback_url="https://shop.example/api/v1/callback/digiflazz",
        duitku_merchant_code="D0001",
        duitku_api_key="duitku-secret",
        duitku_callback_url="https://shop.example/api/v1/callback/duitku",
        jwt_secret_key="test-secret",
        frontend_url="http://localhost:3000",
        order_id_prefix="VAZZ"
    )


@pytest.fixture
def client():
    return FakeMongoClient()


@pytest.fixture
async def db(client, settings):
    database = client[settings.db_name]
    await ensure_indexes(database)
    return database


@pytest.fixture
def upstream():
    return UpstreamStub()


@pytest.fixture
async def http_client(upstream):
    async with httpx.AsyncClient(transport=httpx.MockTransport(upstream)) as http:
        yield http


@pytest.fixture
def services(client, db, settings, http_client):
    return build_services(client, db, settings, http_client)


@pytest.fixture
async def buyer(db):
    return await seed_user(db, "buyer", balance=0)
