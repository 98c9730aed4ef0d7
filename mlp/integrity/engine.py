"""Integrity engine: validate-then-apply for create, move, delete and update.

Each operation runs inside one transaction. The check step only reads;
it produces a Decision, and a rejected Decision raises its typed error
before any mutating statement is issued. Anything that fails after the
apply step starts rolls the transaction back.
"""

import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, NamedTuple, TypeVar

from mlp.comparisons.service import ComparisonService
from mlp.db import queries
from mlp.db.connection import Client, Database
from mlp.entities.factory import Entity
from mlp.entities.registry import SchemaRegistry
from mlp.errors import (
    EngineError,
    ErrorKind,
    ForeignKeyViolationError,
    InvalidMoveError,
    InvalidRequestError,
    NotFoundError,
    RestrictedByComparisonsError,
    error_class,
)
from mlp.models import FileDescriptor, FileRecord, Node, OperationState
from mlp.tree.navigator import NodeNavigator
from mlp.utils.text import slugify

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Only these capture statuses denote a capture not yet locked into a finalized state
MOVABLE_STATUSES = frozenset({"unsorted", "sorted", "missing"})

# Statuses recomputed from the new owner's type on move
_DERIVED_STATUSES = frozenset({"unsorted", "sorted"})


# ---------------------------------------------------------------------------
# Decisions and operation lifecycle
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Decision:
    """Outcome of a check step: accepted, or rejected with a typed reason."""

    accepted: bool
    reason: ErrorKind | None = None
    detail: str = ""
    node: Node | None = None
    owner: Node | None = None
    error: EngineError | None = None

    @classmethod
    def accept(cls, node: Node | None = None, owner: Node | None = None) -> "Decision":
        return cls(accepted=True, node=node, owner=owner)

    @classmethod
    def reject(cls, error: EngineError) -> "Decision":
        return cls(accepted=False, reason=error.kind, detail=str(error), error=error)

    def raise_for_reason(self) -> None:
        """Raise the typed error for a rejection. No-op when accepted."""
        if self.accepted:
            return
        if self.error is not None:
            raise self.error
        raise error_class(self.reason or ErrorKind.INVALID_REQUEST)(self.detail)


_TRANSITIONS: dict[OperationState, frozenset[OperationState]] = {
    OperationState.VALIDATING: frozenset({OperationState.APPLYING, OperationState.REJECTED}),
    OperationState.APPLYING: frozenset({OperationState.COMMITTED, OperationState.ROLLED_BACK}),
    OperationState.COMMITTED: frozenset(),
    OperationState.REJECTED: frozenset(),
    OperationState.ROLLED_BACK: frozenset(),
}


class Operation:
    """One request-scoped engine operation and its lifecycle state."""

    def __init__(self, action: str, type_name: str, node_id: int | None = None) -> None:
        self.action = action
        self.type_name = type_name
        self.node_id = node_id
        self.state = OperationState.VALIDATING
        self.decision: Decision | None = None

    def transition(self, state: OperationState) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal operation transition {self.state} -> {state}")
        log = logger.warning if state is OperationState.ROLLED_BACK else logger.debug
        log("%s %s %s: %s -> %s", self.action, self.type_name, self.node_id, self.state, state)
        self.state = state

    def decide(self, decision: Decision) -> None:
        """Record the check result; rejected decisions raise their error."""
        self.decision = decision
        if decision.accepted:
            self.transition(OperationState.APPLYING)
            return
        self.transition(OperationState.REJECTED)
        logger.info(
            "Rejected %s %s %s: %s", self.action, self.type_name, self.node_id, decision.reason,
        )
        decision.raise_for_reason()

    def __repr__(self) -> str:
        return f"<Operation {self.action} {self.type_name} id={self.node_id} {self.state}>"


class CreateResult(NamedTuple):
    node: Node
    files: list[FileRecord]


def _now() -> str:
    return datetime.now(UTC).isoformat()


def derive_fs_path(base: str | None, label: str, fallback: str = "") -> str:
    """Filesystem path of a node: its base (owner path or fs root) plus the label slug.

    A label with no slug-safe characters uses ``fallback`` as its segment.
    """
    return "/".join(p for p in (base, slugify(label) or fallback) if p)


def fallback_segment(type_name: str, node_id: int) -> str:
    return f"{type_name}_{node_id}"


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class IntegrityEngine:
    """Enforces tree shape and comparison constraints around every mutation."""

    def __init__(
        self,
        db: Database,
        registry: SchemaRegistry,
        navigator: NodeNavigator,
        comparisons: ComparisonService,
    ) -> None:
        self._db = db
        self._registry = registry
        self._navigator = navigator
        self._comparisons = comparisons

    async def run(
        self,
        operation: Operation,
        check: Callable[[Client], Awaitable[Decision]],
        apply: Callable[[Client, Decision], Awaitable[T]],
    ) -> T:
        """Check then apply inside one transaction, tracking the operation state."""
        try:
            async with self._db.transaction() as client:
                operation.decide(await check(client))
                result = await apply(client, operation.decision)
        except BaseException:
            if operation.state is OperationState.APPLYING:
                operation.transition(OperationState.ROLLED_BACK)
            raise
        operation.transition(OperationState.COMMITTED)
        logger.info("Committed %r", operation)
        return result

    # -- Shared lookups --

    async def _load_typed(
        self, client: Client, type_name: str, node_id: int | None,
    ) -> tuple[Node | None, Decision | None]:
        node = await self._navigator.select(client, node_id)
        if node is None or node.type != type_name:
            return None, Decision.reject(NotFoundError(node_id, type_name))
        return node, None

    # -- Create --

    async def check_create(
        self, client: Client, type_name: str, owner_id: int | None,
    ) -> Decision:
        type_name = self._registry.describe(type_name).type_name
        if self._registry.is_root_type(type_name):
            if owner_id is not None:
                return Decision.reject(
                    InvalidRequestError(f"{type_name} is a root type and takes no owner")
                )
            return Decision.accept()

        if owner_id is None:
            return Decision.reject(InvalidRequestError(f"{type_name} requires an owner"))
        owner = await self._navigator.select(client, owner_id)
        if owner is None:
            return Decision.reject(NotFoundError(owner_id))
        if not self._navigator.can_own(owner.type, type_name):
            return Decision.reject(
                InvalidRequestError(f"{owner.type} cannot own {type_name}")
            )
        return Decision.accept(owner=owner)

    async def create(
        self,
        entity: Entity,
        owner_id: int | None,
        files: Sequence[FileDescriptor] = (),
    ) -> CreateResult:
        """Insert the node, its attribute row and any file records."""
        operation = Operation("create", entity.type_name)

        async def check(client: Client) -> Decision:
            return await self.check_create(client, entity.type_name, owner_id)

        async def apply(client: Client, decision: Decision) -> CreateResult:
            owner = decision.owner
            now = _now()
            base = owner.fs_path if owner is not None else entity.fs_root
            owner_type = owner.type if owner is not None else None
            cursor = await client.query(
                queries.insert_node(
                    entity.type_name,
                    owner.id if owner is not None else None,
                    owner_type,
                    derive_fs_path(base, entity.label),
                    self._registry.status_for(entity.type_name, owner_type),
                    now,
                )
            )
            entity.id = cursor.lastrowid
            operation.node_id = entity.id
            if not slugify(entity.label):
                # the fallback segment needs the new id
                await client.query(
                    queries.update_node_fs_path(
                        entity.id,
                        derive_fs_path(base, "", fallback_segment(entity.type_name, entity.id)),
                        now,
                    )
                )
            await client.query(
                queries.insert_entity(
                    entity.type_name, entity.get_data(exclude_keys=entity.extended_keys),
                )
            )

            records: list[FileRecord] = []
            for f in files:
                cursor = await client.query(
                    queries.insert_file(
                        entity.id, entity.type_name, f.file_type, f.filename,
                        f.mimetype, f.file_size, now,
                    )
                )
                records.append(
                    FileRecord(
                        id=cursor.lastrowid,
                        owner_id=entity.id,
                        owner_type=entity.type_name,
                        file_type=f.file_type,
                        filename=f.filename,
                        mimetype=f.mimetype,
                        file_size=f.file_size,
                    )
                )

            node = await self._navigator.select(client, entity.id)
            return CreateResult(node=node, files=records)

        return await self.run(operation, check, apply)

    # -- Move --

    async def check_move(
        self, client: Client, type_name: str, node_id: int, owner_id: int,
    ) -> Decision:
        node, rejected = await self._load_typed(client, type_name, node_id)
        if rejected:
            return rejected
        owner = await self._navigator.select(client, owner_id)
        if owner is None:
            return Decision.reject(NotFoundError(owner_id))

        comparisons = await self._comparisons.get_comparisons(client, node)
        if comparisons:
            return Decision.reject(RestrictedByComparisonsError(node.id, len(comparisons)))
        if not await self._navigator.is_relatable(client, node.id, owner.id):
            return Decision.reject(
                InvalidMoveError(f"{node.type} {node.id} cannot be placed under {owner.type} {owner.id}")
            )
        if self._registry.is_capture_type(node.type) and node.status not in MOVABLE_STATUSES:
            return Decision.reject(
                InvalidMoveError(f"{node.type} {node.id} has status {node.status!r} and cannot move")
            )
        return Decision.accept(node=node, owner=owner)

    async def move(self, type_name: str, node_id: int, owner_id: int) -> Node:
        """Reparent a node and recompute paths for it and everything below it."""
        type_name = self._registry.describe(type_name).type_name
        operation = Operation("move", type_name, node_id)

        async def check(client: Client) -> Decision:
            return await self.check_move(client, type_name, node_id, owner_id)

        async def apply(client: Client, decision: Decision) -> Node:
            node, owner = decision.node, decision.owner
            now = _now()
            status = node.status
            if status in _DERIVED_STATUSES:
                status = self._registry.status_for(node.type, owner.type) or status

            entity = await self._navigator.load_entity(client, node)
            fs_path = derive_fs_path(
                owner.fs_path, entity.label, fallback_segment(node.type, node.id),
            )
            await client.query(
                queries.update_node_owner(node.id, owner.id, owner.type, fs_path, status, now)
            )

            # descendants come back owner-first, so each parent path is already known
            paths = {node.id: fs_path}
            for dependent, parent in await self._navigator.descendants(client, node):
                label = (await self._navigator.load_entity(client, dependent)).label
                paths[dependent.id] = derive_fs_path(
                    paths[parent.id], label, fallback_segment(dependent.type, dependent.id),
                )
                await client.query(
                    queries.update_node_fs_path(dependent.id, paths[dependent.id], now)
                )
            if len(paths) > 1:
                logger.info("Reparented %d dependent(s) of %s %s", len(paths) - 1, node.type, node.id)

            return await self._navigator.select(client, node.id)

        return await self.run(operation, check, apply)

    # -- Delete --

    async def check_delete(
        self, client: Client, type_name: str, node_id: int, clear_comparisons: bool = False,
    ) -> Decision:
        node, rejected = await self._load_typed(client, type_name, node_id)
        if rejected:
            return rejected
        if node.has_dependents:
            return Decision.reject(
                ForeignKeyViolationError(f"{node.type} {node.id} still has dependents")
            )
        if not clear_comparisons:
            comparisons = await self._comparisons.get_comparisons(client, node)
            if comparisons:
                return Decision.reject(RestrictedByComparisonsError(node.id, len(comparisons)))
        return Decision.accept(node=node)

    async def delete(
        self, type_name: str, node_id: int, clear_comparisons: bool = False,
    ) -> Node:
        """Remove a leaf node with its attribute row and file records."""
        type_name = self._registry.describe(type_name).type_name
        operation = Operation("delete", type_name, node_id)

        async def check(client: Client) -> Decision:
            return await self.check_delete(client, type_name, node_id, clear_comparisons)

        async def apply(client: Client, decision: Decision) -> Node:
            node = decision.node
            schema = self._registry.describe(node.type)
            if clear_comparisons:
                await self._comparisons.delete_comparisons(client, node)
            await client.query(queries.delete_files_by_owner(node.id))
            await client.query(queries.delete_entity(schema.type_name, schema.key_attribute, node.id))
            await client.query(queries.delete_node(node.id))
            return node

        return await self.run(operation, check, apply)

    # -- Update --

    async def check_update(
        self,
        client: Client,
        type_name: str,
        node_id: int,
        comparisons: Iterable[Any] | None = None,
    ) -> Decision:
        node, rejected = await self._load_typed(client, type_name, node_id)
        if rejected:
            return rejected
        if comparisons is not None and not self._registry.is_capture_type(node.type):
            return Decision.reject(
                InvalidRequestError(f"{node.type} nodes cannot hold comparisons")
            )
        return Decision.accept(node=node)

    async def update(
        self,
        type_name: str,
        node_id: int,
        data: Mapping[str, Any],
        comparisons: Iterable[int | Mapping[str, Any]] | None = None,
    ) -> Node:
        """Merge sanitized data into the stored record; optionally replace comparisons."""
        type_name = self._registry.describe(type_name).type_name
        operation = Operation("update", type_name, node_id)
        counterparts = list(comparisons) if comparisons is not None else None

        async def check(client: Client) -> Decision:
            return await self.check_update(client, type_name, node_id, counterparts)

        async def apply(client: Client, decision: Decision) -> Node:
            node = decision.node
            entity = await self._navigator.load_entity(client, node)
            key_attribute = entity.schema.key_attribute
            entity.set_data({k: v for k, v in data.items() if k != key_attribute})

            fields = entity.get_data(exclude_keys=[key_attribute, *entity.extended_keys])
            if fields:
                await client.query(
                    queries.update_entity(entity.type_name, key_attribute, node.id, fields)
                )
            await client.query(queries.touch_node(node.id, _now()))

            if counterparts is not None:
                await self._comparisons.update_comparisons(client, node, counterparts)
            return await self._navigator.select(client, node.id)

        return await self.run(operation, check, apply)
