"""FastAPI routes for schema lookup and node CRUD/move."""

import logging

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse

from mlp.errors import ERROR_RESPONSES, EngineError
from mlp.models import EntitySchema
from mlp.nodes.schemas import CreateNodeRequest, NewNodeForm, NodeDetail, UpdateNodeRequest
from mlp.nodes.service import NodeService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["nodes"])


def get_node_service() -> NodeService:
    """Dependency placeholder, replaced at app startup."""
    raise RuntimeError("NodeService not initialized")


async def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
    """Map an engine error kind to its stable message, hint and status."""
    response = ERROR_RESPONSES[exc.kind]
    if response.status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=response.status,
        content={
            "error": exc.kind.value,
            "msg": response.msg,
            "hint": response.hint,
            "detail": str(exc),
        },
    )


# Literal paths first so "schemas" and "new" never bind as {node_id}


@router.get("/schemas/{type_name}")
async def describe_type(
    type_name: str,
    service: NodeService = Depends(get_node_service),
) -> EntitySchema:
    return service.describe(type_name)


@router.get("/{type_name}/new")
async def new_root_form(
    type_name: str,
    service: NodeService = Depends(get_node_service),
) -> NewNodeForm:
    return await service.new(type_name)


@router.get("/{type_name}/new/{owner_id}")
async def new_form(
    type_name: str,
    owner_id: int,
    service: NodeService = Depends(get_node_service),
) -> NewNodeForm:
    return await service.new(type_name, owner_id)


@router.post("/{type_name}/new", status_code=status.HTTP_201_CREATED)
async def create_root(
    type_name: str,
    request: CreateNodeRequest,
    service: NodeService = Depends(get_node_service),
) -> NodeDetail:
    return await service.create(type_name, None, request.data, request.files)


@router.post("/{type_name}/new/{owner_id}", status_code=status.HTTP_201_CREATED)
async def create_node(
    type_name: str,
    owner_id: int,
    request: CreateNodeRequest,
    service: NodeService = Depends(get_node_service),
) -> NodeDetail:
    return await service.create(type_name, owner_id, request.data, request.files)


@router.get("/{type_name}/{node_id}")
async def show_node(
    type_name: str,
    node_id: int,
    service: NodeService = Depends(get_node_service),
) -> NodeDetail:
    return await service.show(type_name, node_id)


@router.patch("/{type_name}/{node_id}")
async def update_node(
    type_name: str,
    node_id: int,
    request: UpdateNodeRequest,
    service: NodeService = Depends(get_node_service),
) -> NodeDetail:
    return await service.update(type_name, node_id, request.data, request.comparisons)


@router.delete("/{type_name}/{node_id}")
async def remove_node(
    type_name: str,
    node_id: int,
    clear_comparisons: bool = False,
    service: NodeService = Depends(get_node_service),
) -> NodeDetail:
    return await service.remove(type_name, node_id, clear_comparisons=clear_comparisons)


@router.post("/{type_name}/{node_id}/move/{owner_id}")
async def move_node(
    type_name: str,
    node_id: int,
    owner_id: int,
    service: NodeService = Depends(get_node_service),
) -> NodeDetail:
    return await service.move(type_name, node_id, owner_id)
