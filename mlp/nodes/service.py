"""Node service: request-scoped operations over the entity tree.

Reads go straight through the navigator. Mutations are delegated to the
integrity engine, which validates and applies them in one transaction.
File import and job queueing happen on either side of that transaction.
"""

import logging
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from mlp.collaborators import Importer, JobQueue
from mlp.comparisons.service import ComparisonService
from mlp.db.connection import Client, Database
from mlp.entities.factory import Entity, EntityFactory
from mlp.entities.registry import SchemaRegistry
from mlp.errors import InvalidRequestError, NotFoundError
from mlp.integrity.engine import IntegrityEngine
from mlp.models import EntitySchema, FileDescriptor, Node, NodeView, SemanticType
from mlp.nodes.schemas import AttributeField, NewNodeForm, NodeDetail
from mlp.tree.navigator import NodeNavigator
from mlp.utils.text import humanize

logger = logging.getLogger(__name__)


class NodeService:
    """Show, create, update, move and remove nodes of any registered type."""

    def __init__(
        self,
        db: Database,
        registry: SchemaRegistry,
        importer: Importer | None = None,
        jobs: JobQueue | None = None,
    ) -> None:
        self._db = db
        self._registry = registry
        self._factory = EntityFactory(registry)
        self._navigator = NodeNavigator(registry, self._factory)
        self._comparisons = ComparisonService(registry, self._navigator)
        self._engine = IntegrityEngine(db, registry, self._navigator, self._comparisons)
        self._importer = importer
        self._jobs = jobs

    @property
    def navigator(self) -> NodeNavigator:
        return self._navigator

    @property
    def comparisons(self) -> ComparisonService:
        return self._comparisons

    @property
    def engine(self) -> IntegrityEngine:
        return self._engine

    def describe(self, type_name: str) -> EntitySchema:
        return self._registry.describe(type_name)

    # -- Reads --

    async def show(self, type_name: str, node_id: int, message: str | None = None) -> NodeDetail:
        """Node view, its path and comparisons. NotFound on a missing node or wrong type."""
        type_name = self._registry.describe(type_name).type_name
        async with self._db.acquire() as client:
            view = await self._navigator.get(client, node_id, type_name)
            if view is None:
                raise NotFoundError(node_id, type_name)
            path = await self._navigator.get_path(client, view)
            comparisons = await self._comparisons.get_comparisons(client, view)
        return NodeDetail(node=view, path=path, comparisons=comparisons, message=message)

    async def new(self, type_name: str, owner_id: int | None = None) -> NewNodeForm:
        """Blank record for a new entity, with its would-be owner and path."""
        entity = self._factory.create(type_name)()
        owner: NodeView | None = None
        path: list[NodeView] = []
        if owner_id is not None:
            async with self._db.acquire() as client:
                owner, path = await self._owner_context(client, entity.type_name, owner_id)
        return NewNodeForm(
            type=entity.type_name,
            label=humanize(entity.type_name),
            attributes=[
                AttributeField(name=a.name, label=a.label, type=a.semantic_type, value=a.value)
                for a in entity.attributes()
            ],
            owner=owner,
            path=path,
        )

    async def _owner_context(
        self, client: Client, type_name: str, owner_id: int,
    ) -> tuple[NodeView, list[NodeView]]:
        owner_node = await self._navigator.select(client, owner_id)
        if owner_node is None:
            raise NotFoundError(owner_id)
        if not self._navigator.can_own(owner_node.type, type_name):
            raise InvalidRequestError(f"{owner_node.type} cannot own {type_name}")
        owner = await self._navigator.get(client, owner_id, None, depth=0)
        path = await self._navigator.get_path(client, owner_node)
        return owner, [*path, owner]

    # -- Mutations --

    async def create(
        self,
        type_name: str,
        owner_id: int | None,
        data: Mapping[str, Any] | None = None,
        files: Sequence[FileDescriptor] | None = None,
    ) -> NodeDetail:
        """Create a node under owner_id (None for root types)."""
        entity = self._factory.create(type_name)(data)
        staged: list[FileDescriptor] = list(files or [])

        if staged:
            staged = await self._import_files(entity, owner_id, staged)

        try:
            created = await self._engine.create(entity, owner_id, staged)
        except Exception:
            if staged:
                await self._discard(staged)
            raise

        if self._jobs is not None:
            for record in created.files:
                await self._jobs.enqueue(record.id, record.owner_type)

        return await self.show(
            entity.type_name, created.node.id,
            message=f"{humanize(entity.type_name)} '{entity.label}' created successfully!",
        )

    async def _import_files(
        self, entity: Entity, owner_id: int | None, files: list[FileDescriptor],
    ) -> list[FileDescriptor]:
        """Hand files to the importer before any transaction is opened."""
        if self._importer is None:
            raise InvalidRequestError("File uploads are not configured")

        async with self._db.acquire() as client:
            decision = await self._engine.check_create(client, entity.type_name, owner_id)
            decision.raise_for_reason()
            owner = None
            if decision.owner is not None:
                owner = await self._navigator.get(client, decision.owner.id, None, depth=0)

        if owner is not None:
            entity.add_attribute("owner_id", SemanticType.INTEGER, owner.id)
            entity.add_attribute("owner_type", SemanticType.TEXT, owner.type)
            entity.add_attribute("fs_path", SemanticType.TEXT, owner.node.fs_path)

        result = await self._importer.receive(entity, owner, files)
        entity.set_data(result.metadata)
        return list(result.files)

    async def _discard(self, files: list[FileDescriptor]) -> None:
        try:
            await self._importer.discard(files)
        except Exception:
            logger.exception("Could not discard %d staged file(s)", len(files))

    async def update(
        self,
        type_name: str,
        node_id: int,
        data: Mapping[str, Any],
        comparisons: Iterable[int | Mapping[str, Any]] | None = None,
    ) -> NodeDetail:
        node = await self._engine.update(type_name, node_id, data, comparisons)
        return await self.show(
            node.type, node.id, message=f"{humanize(node.type)} updated successfully!",
        )

    async def move(self, type_name: str, node_id: int, owner_id: int) -> NodeDetail:
        node = await self._engine.move(type_name, node_id, owner_id)
        return await self.show(
            node.type, node.id, message=f"{humanize(node.type)} moved successfully!",
        )

    async def remove(
        self, type_name: str, node_id: int, clear_comparisons: bool = False,
    ) -> NodeDetail:
        """Delete a node. The response carries the deleted view and its former path."""
        type_name = self._registry.describe(type_name).type_name
        async with self._db.acquire() as client:
            view = await self._navigator.get(client, node_id, type_name, depth=0)
            if view is None:
                raise NotFoundError(node_id, type_name)
            path = await self._navigator.get_path(client, view)

        node: Node = await self._engine.delete(type_name, node_id, clear_comparisons)
        return NodeDetail(
            node=view,
            path=path,
            message=f"'{view.label}' {humanize(node.type)} deleted successfully!",
        )
