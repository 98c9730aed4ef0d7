"""MLP FastAPI application entry point."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from mlp.collaborators import LoggingJobQueue
from mlp.config import Settings
from mlp.db.connection import Database
from mlp.entities.registry import SchemaRegistry
from mlp.errors import EngineError
from mlp.nodes.router import engine_error_handler, get_node_service
from mlp.nodes.router import router as nodes_router
from mlp.nodes.service import NodeService

logger = logging.getLogger(__name__)

settings = Settings.from_env()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage database lifecycle and service wiring."""
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    registry = SchemaRegistry.from_yaml(settings.schema_path)
    logger.info("Loaded %d entity types from %s", len(registry.types()), settings.schema_path)

    db = await Database.connect(settings.db_path, registry=registry, pool_size=settings.pool_size)

    # No file store is wired in by default; uploads are rejected until one is
    service = NodeService(db, registry, importer=None, jobs=LoggingJobQueue())
    app.dependency_overrides[get_node_service] = lambda: service

    app.state.db = db
    app.state.registry = registry
    yield

    await db.close()


app = FastAPI(
    title="MLP",
    description="Schema-driven entity engine for the survey and photography archive",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(EngineError, engine_error_handler)


@app.get("/api/health")
async def health() -> dict:
    return {"status": "ok", "version": "0.1.0"}


app.include_router(nodes_router)
