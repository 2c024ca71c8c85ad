"""Shared fixtures: in-memory object store, settings and a running app

Run: pytest tests/ -v
"""
import pytest
from fastapi.testclient import TestClient

from src.gateway.config import GatewaySettings
from src.main import create_app
from src.storage.memory_backend import InMemoryObjectStore

TEST_BUCKET = "test-bucket"
TEST_SECRET = "unit-test encryption secret"


@pytest.fixture
def settings():
    return GatewaySettings(backend="memory", bucket_name=TEST_BUCKET, encryption_secret=TEST_SECRET)


@pytest.fixture
def store():
    return InMemoryObjectStore()


@pytest.fixture
def client(settings, store):
    app = create_app(settings=settings, store=store)
    with TestClient(app) as test_client:
        yield test_client
