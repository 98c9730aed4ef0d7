"""Entity factory: schema-bound attribute records for one node's data.

An Entity is a generic {type_name, attributes} record bound to an immutable
EntitySchema. The factory hands out an EntityConstructor per type so callers
can build many instances of the same type without re-resolving the schema.
"""

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from mlp.entities.registry import SchemaRegistry
from mlp.entities.sanitize import sanitize
from mlp.models import EntitySchema, SemanticType
from mlp.utils.text import humanize

logger = logging.getLogger(__name__)


@dataclass
class Attribute:
    """A single attribute slot: its value plus how to sanitize it."""

    name: str
    semantic_type: SemanticType
    label: str
    value: Any = None


class Entity:
    """In-memory attribute record for one entity of a registered type.

    Every schema attribute is always present (None until set). Writes go
    through the attribute's sanitizer. Ad hoc attributes added with
    add_attribute() live in a separate set and never touch the schema.
    """

    def __init__(
        self,
        schema: EntitySchema,
        depth: int,
        data: Mapping[str, Any] | None = None,
    ) -> None:
        self._schema = schema
        self._depth = depth
        self._attributes: dict[str, Attribute] = {
            spec.name: Attribute(
                name=spec.name,
                semantic_type=spec.semantic_type,
                label=spec.label or humanize(spec.name),
            )
            for spec in schema.attributes
        }
        self._extended: dict[str, Attribute] = {}
        self.set_data(data)

    # -- Schema facts --

    @property
    def type_name(self) -> str:
        return self._schema.type_name

    @property
    def schema(self) -> EntitySchema:
        return self._schema

    @property
    def key(self) -> str:
        """Route/request key for this type, e.g. 'stations_id'."""
        return f"{self._schema.type_name}_id"

    @property
    def is_root(self) -> bool:
        return self._schema.is_root

    @property
    def depth(self) -> int:
        return self._depth

    @property
    def fs_root(self) -> str | None:
        return self._schema.fs_root

    @property
    def id(self) -> int | None:
        """Node id held in the key attribute (None until persisted)."""
        return self._attributes[self._schema.key_attribute].value

    @id.setter
    def id(self, node_id: int | None) -> None:
        self.set_value(self._schema.key_attribute, node_id)

    @property
    def label(self) -> str:
        """Display label built from the schema's label attributes."""
        parts = [
            str(self._attributes[name].value)
            for name in self._schema.label
            if self._attributes[name].value not in (None, "")
        ]
        return " ".join(parts) if parts else humanize(self._schema.type_name)

    @property
    def extended_keys(self) -> list[str]:
        return list(self._extended)

    # -- Attribute access --

    def attributes(self) -> list[Attribute]:
        """Schema attribute slots in schema order."""
        return list(self._attributes.values())

    def has_attribute(self, name: str) -> bool:
        return name in self._attributes or name in self._extended

    def _slot(self, name: str) -> Attribute | None:
        return self._attributes.get(name) or self._extended.get(name)

    def get_value(self, name: str) -> Any:
        """Value of one attribute, or None for names the schema doesn't know."""
        slot = self._slot(name)
        return slot.value if slot is not None else None

    def set_value(self, name: str, value: Any) -> None:
        """Sanitize and store one attribute. Unknown names are ignored."""
        slot = self._slot(name)
        if slot is not None:
            slot.value = sanitize(value, slot.semantic_type)

    def set_data(self, data: Mapping[str, Any] | None) -> "Entity":
        """Populate attributes from a record.

        Accepts a flat mapping or a result-set wrapper ({"rows": [...]});
        an entity holds a single record, so only the first row is used.
        Keys missing from the schema are dropped with a warning.
        """
        if not isinstance(data, Mapping):
            return self
        if "rows" in data:
            rows = data["rows"] or []
            data = rows[0] if rows else {}
        for key, value in data.items():
            if not self.has_attribute(key):
                logger.warning(
                    "Attribute key %r was not in model schema for %r, dropping",
                    key, self.type_name,
                )
                continue
            self.set_value(key, value)
        return self

    def get_data(self, exclude_keys: Iterable[str] = ()) -> dict[str, Any]:
        """Flat record of all attributes (schema first, then extended)."""
        excluded = set(exclude_keys)
        data = {k: a.value for k, a in self._attributes.items() if k not in excluded}
        data.update(
            {k: a.value for k, a in self._extended.items() if k not in excluded}
        )
        return data

    def add_attribute(
        self, name: str, semantic_type: SemanticType, value: Any = None,
    ) -> None:
        """Attach an ad hoc attribute to this instance only."""
        if name in self._attributes:
            raise ValueError(f"{name!r} is already a schema attribute of {self.type_name}")
        self._extended[name] = Attribute(
            name=name,
            semantic_type=semantic_type,
            label=humanize(name),
            value=sanitize(value, semantic_type),
        )

    def clear(self) -> None:
        for slot in (*self._attributes.values(), *self._extended.values()):
            slot.value = None

    def __repr__(self) -> str:
        return f"<Entity {self.type_name} id={self.id!r}>"


class EntityConstructor:
    """Callable that builds entities of one type: Station = factory.create('stations')."""

    def __init__(self, schema: EntitySchema, depth: int) -> None:
        self.schema = schema
        self.depth = depth

    @property
    def type_name(self) -> str:
        return self.schema.type_name

    def __call__(self, initial_data: Mapping[str, Any] | None = None) -> Entity:
        return Entity(self.schema, self.depth, initial_data)


class EntityFactory:
    """Produces EntityConstructors for registered entity types."""

    def __init__(self, registry: SchemaRegistry) -> None:
        self._registry = registry

    @property
    def registry(self) -> SchemaRegistry:
        return self._registry

    def create(self, type_name: str) -> EntityConstructor:
        """Constructor bound to a type's schema. Raises UnknownEntityTypeError."""
        schema = self._registry.describe(type_name)
        return EntityConstructor(schema, self._registry.depth_of(schema.type_name))
