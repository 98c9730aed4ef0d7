"""Comparison sets: historic/modern capture pairings that pin captures in place."""

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from mlp.db import queries
from mlp.db.connection import Client
from mlp.entities.registry import SchemaRegistry
from mlp.errors import InvalidRequestError
from mlp.models import Comparison, Node, NodeView
from mlp.tree.navigator import NodeNavigator

logger = logging.getLogger(__name__)

_COUNTERPART_TYPE = {
    "historic_captures": "modern_captures",
    "modern_captures": "historic_captures",
}


class ComparisonService:
    """Reads and rewrites the comparison set anchored at a capture node.

    A comparison row pairs one historic capture with one modern capture.
    Either side can anchor the set: the column matching the anchor's type
    is the one filtered on.
    """

    def __init__(self, registry: SchemaRegistry, navigator: NodeNavigator) -> None:
        self._registry = registry
        self._navigator = navigator

    def _anchor_column(self, node: Node | NodeView) -> str | None:
        type_name = self._registry.normalize(node.type)
        return type_name if type_name in _COUNTERPART_TYPE else None

    async def get_comparisons(self, client: Client, node: Node | NodeView) -> list[Comparison]:
        """Comparison set anchored at node. Empty for non-capture types."""
        column = self._anchor_column(node)
        if column is None:
            return []
        rows = await client.fetchall(queries.select_comparisons(column, node.id))
        return [Comparison(**r) for r in rows]

    async def delete_comparisons(self, client: Client, node: Node | NodeView) -> int:
        """Drop every comparison anchored at node. Returns the number removed."""
        column = self._anchor_column(node)
        if column is None:
            return 0
        cursor = await client.query(queries.delete_comparisons(column, node.id))
        removed = max(cursor.rowcount, 0)
        if removed:
            logger.info("Removed %d comparison(s) anchored at %s %s", removed, column, node.id)
        return removed

    async def update_comparisons(
        self,
        client: Client,
        node: Node | NodeView,
        counterparts: Iterable[int | Mapping[str, Any]],
    ) -> list[Comparison]:
        """Replace the set anchored at node with pairings to the given counterparts.

        Counterparts that don't resolve to a capture of the opposite type
        are skipped. Runs inside the caller's transaction.
        """
        column = self._anchor_column(node)
        if column is None:
            raise InvalidRequestError(f"{node.type} nodes cannot hold comparisons")
        counterpart_type = _COUNTERPART_TYPE[column]

        await client.query(queries.delete_comparisons(column, node.id))

        seen: set[int] = set()
        for raw in counterparts:
            counterpart_id = _counterpart_id(raw)
            if counterpart_id is None or counterpart_id in seen:
                continue
            counterpart = await self._navigator.select(client, counterpart_id)
            if counterpart is None or counterpart.type != counterpart_type:
                logger.warning(
                    "Skipping comparison of %s %s with %r: not a %s",
                    column, node.id, raw, counterpart_type,
                )
                continue
            seen.add(counterpart_id)
            if column == "historic_captures":
                await client.query(queries.insert_comparison(node.id, counterpart_id))
            else:
                await client.query(queries.insert_comparison(counterpart_id, node.id))

        return await self.get_comparisons(client, node)


def _counterpart_id(raw: int | Mapping[str, Any] | str) -> int | None:
    """Counterpart id from a bare id or a record carrying id/nodes_id."""
    if isinstance(raw, Mapping):
        raw = raw.get("id", raw.get("nodes_id"))
    if isinstance(raw, bool) or raw is None:
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None
