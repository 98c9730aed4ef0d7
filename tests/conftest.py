"""Shared pytest fixtures for MLP tests."""

import pytest
from httpx import ASGITransport, AsyncClient

from mlp.db.connection import Database
from mlp.entities.factory import EntityFactory
from mlp.entities.registry import SchemaRegistry
from mlp.main import app
from mlp.nodes.router import get_node_service
from mlp.nodes.service import NodeService


@pytest.fixture
def registry():
    """Registry loaded from the bundled entity_schemas.yml."""
    return SchemaRegistry.from_yaml()


@pytest.fixture
def factory(registry):
    return EntityFactory(registry)


@pytest.fixture
async def db(registry):
    """In-memory database with every entity table created."""
    database = await Database.connect(":memory:", registry=registry)
    yield database
    await database.close()


@pytest.fixture
async def service(db, registry):
    """NodeService with no importer or job queue."""
    return NodeService(db, registry)


@pytest.fixture
async def client(service):
    """Async test client with in-memory DB wired into the app."""
    app.dependency_overrides[get_node_service] = lambda: service
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client
    app.dependency_overrides.clear()
