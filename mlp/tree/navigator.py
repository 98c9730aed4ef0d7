"""Node tree navigator: node lookup, owner chains, dependents, legal tree shape.

Every method takes the caller's Client so reads share the operation's
connection (and transaction, when one is open).
"""

import logging

from mlp.db import queries
from mlp.db.connection import Client
from mlp.entities.factory import Entity, EntityFactory
from mlp.entities.registry import SchemaRegistry
from mlp.errors import DataIntegrityError, SchemaMismatchError, UnknownEntityTypeError
from mlp.models import FileRecord, Node, NodeView

logger = logging.getLogger(__name__)


class NodeNavigator:
    """Resolves nodes and their position in the tree."""

    def __init__(self, registry: SchemaRegistry, factory: EntityFactory) -> None:
        self._registry = registry
        self._factory = factory

    # -- Single nodes --

    async def select(self, client: Client, node_id: int | None) -> Node | None:
        """Plain node row, or None if absent."""
        if node_id is None:
            return None
        row = await client.fetchone(queries.select_node(node_id))
        return self._node_from_row(row) if row is not None else None

    async def get(
        self,
        client: Client,
        node_id: int | None,
        expected_type: str | None,
        depth: int | None = None,
    ) -> NodeView | None:
        """Node plus entity metadata and dependents expanded to the type's depth class.

        Returns None when the node is absent or its stored type is not
        expected_type. Ids are shared across all entity types, so the type
        has to be checked on every lookup.
        """
        node = await self.select(client, node_id)
        if node is None:
            return None
        if expected_type is not None and node.type != self._registry.normalize(expected_type):
            logger.info(
                "Node %s is %r, not %r; treating as not found", node.id, node.type, expected_type
            )
            return None
        if depth is None:
            depth = self._registry.depth_of(node.type) if self._registry.has_type(node.type) else 0
        return await self._view(client, node, depth)

    async def load_entity(self, client: Client, node: Node) -> Entity:
        """Entity instance populated from the node's attribute-table row."""
        try:
            constructor = self._factory.create(node.type)
        except UnknownEntityTypeError as e:
            raise SchemaMismatchError(
                f"Node {node.id} has unregistered type {node.type!r}"
            ) from e

        schema = constructor.schema
        row = await client.fetchone(
            queries.select_entity(schema.type_name, schema.key_attribute, node.id)
        )
        if row is None:
            raise SchemaMismatchError(f"Node {node.id} has no {schema.type_name} record")
        missing = [name for name in schema.attribute_names if name not in row]
        if missing:
            raise SchemaMismatchError(
                f"{schema.type_name} record {node.id} is missing columns {missing}"
            )
        return constructor(row)

    # -- Owner chains --

    async def get_path(self, client: Client, node: Node | NodeView | None) -> list[NodeView]:
        """Ancestors of node ordered root-first, not including node itself."""
        if node is None:
            return []
        if isinstance(node, NodeView):
            node = node.node
        owners = await self._walk_owners(client, node)
        return [await self._view(client, owner, depth=0, with_files=False) for owner in reversed(owners)]

    async def _walk_owners(self, client: Client, node: Node) -> list[Node]:
        """Owner chain nearest-first. Bounded by the registry's max depth."""
        chain: list[Node] = []
        seen = {node.id}
        owner_id = node.owner_id
        while owner_id is not None:
            if len(chain) >= self._registry.max_depth:
                raise DataIntegrityError(
                    f"Owner chain of node {node.id} exceeds max depth {self._registry.max_depth}"
                )
            if owner_id in seen:
                raise DataIntegrityError(f"Owner chain of node {node.id} loops at {owner_id}")
            owner = await self.select(client, owner_id)
            if owner is None:
                raise DataIntegrityError(f"Node {node.id} has dangling owner {owner_id}")
            seen.add(owner.id)
            chain.append(owner)
            owner_id = owner.owner_id
        return chain

    # -- Dependents --

    async def select_by_owner(self, client: Client, owner_id: int) -> list[NodeView]:
        """Direct dependents of a node (not expanded further)."""
        nodes = await self._select_dependent_nodes(client, owner_id)
        return [await self._view(client, n, depth=0) for n in nodes]

    async def _select_dependent_nodes(self, client: Client, owner_id: int) -> list[Node]:
        rows = await client.fetchall(queries.select_nodes_by_owner(owner_id))
        return [self._node_from_row(r) for r in rows]

    async def descendants(self, client: Client, node: Node) -> list[tuple[Node, Node]]:
        """Every (descendant, its owner) pair under node, breadth-first."""
        pairs: list[tuple[Node, Node]] = []
        frontier = [node]
        level = 0
        while frontier:
            level += 1
            if level > self._registry.max_depth:
                raise DataIntegrityError(
                    f"Dependents of node {node.id} exceed max depth {self._registry.max_depth}"
                )
            next_frontier: list[Node] = []
            for owner in frontier:
                for dependent in await self._select_dependent_nodes(client, owner.id):
                    pairs.append((dependent, owner))
                    next_frontier.append(dependent)
            frontier = next_frontier
        return pairs

    # -- Tree shape --

    def can_own(self, owner_type: str, dependent_type: str) -> bool:
        """True if the allow-list lets owner_type own dependent_type."""
        return self._registry.normalize(owner_type) in self._registry.owner_types(dependent_type)

    async def is_relatable(self, client: Client, node_id: int, candidate_owner_id: int) -> bool:
        """True only if node may be placed under candidate owner.

        The owner's type must be on the node type's allow-list, and the owner
        must not be the node itself or anything beneath it.
        """
        node = await self.select(client, node_id)
        owner = await self.select(client, candidate_owner_id)
        if node is None or owner is None:
            return False
        if not self.can_own(owner.type, node.type):
            return False
        if owner.id == node.id:
            return False
        ancestors = await self._walk_owners(client, owner)
        return all(a.id != node.id for a in ancestors)

    # -- Helpers --

    async def _view(
        self, client: Client, node: Node, depth: int, with_files: bool = True,
    ) -> NodeView:
        entity = await self.load_entity(client, node)
        files: list[FileRecord] = []
        if with_files:
            rows = await client.fetchall(queries.select_files_by_owner(node.id))
            files = [FileRecord(**r) for r in rows]

        dependents: list[NodeView] = []
        if depth > 0 and node.has_dependents:
            for dependent in await self._select_dependent_nodes(client, node.id):
                dependents.append(await self._view(client, dependent, depth - 1))

        return NodeView(
            node=node,
            type=node.type,
            label=entity.label,
            status=node.status,
            metadata=entity.get_data(),
            has_dependents=node.has_dependents,
            dependents=dependents,
            files=files,
        )

    @staticmethod
    def _node_from_row(row: dict) -> Node:
        return Node(
            id=row["id"],
            type=row["type"],
            owner_id=row["owner_id"],
            owner_type=row["owner_type"],
            fs_path=row["fs_path"],
            status=row["status"],
            has_dependents=bool(row["has_dependents"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
