"""Schema registry: immutable per-type schemas loaded once from YAML."""

from collections.abc import Mapping
from pathlib import Path
from types import MappingProxyType
from typing import Any

import yaml
from pydantic import ValidationError

from mlp.errors import UnknownEntityTypeError
from mlp.models import EntitySchema
from mlp.utils.text import to_snake

DEFAULT_SCHEMA_PATH = Path(__file__).parent.parent / "entity_schemas.yml"

CAPTURE_TYPES = ("historic_captures", "modern_captures")


class SchemaRegistry:
    """Read-only lookup of entity schemas and tree-shape rules.

    Built once at startup and shared by every in-flight operation. Nothing
    mutates it after construction.
    """

    def __init__(
        self,
        schemas: Mapping[str, EntitySchema],
        default_depth: int = 1,
        max_depth: int = 12,
    ) -> None:
        if default_depth < 0 or max_depth < 1:
            raise ValueError("default_depth must be >= 0 and max_depth >= 1")
        self._schemas = MappingProxyType(dict(schemas))
        self._default_depth = default_depth
        self._max_depth = max_depth
        self._check_references()

    @classmethod
    def from_yaml(cls, path: str | Path = DEFAULT_SCHEMA_PATH) -> "SchemaRegistry":
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return cls.from_mapping(data)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "SchemaRegistry":
        """Build from the parsed config: {default_depth, max_depth, types: {...}}."""
        schemas: dict[str, EntitySchema] = {}
        for type_name, entry in (data.get("types") or {}).items():
            entry = entry or {}
            try:
                schemas[type_name] = EntitySchema(
                    type_name=type_name,
                    key_attribute=entry.get("key", "nodes_id"),
                    attributes=entry.get("attributes") or (),
                    is_root=bool(entry.get("root", False)),
                    depth_class=entry.get("depth"),
                    fs_root=entry.get("fs_root"),
                    owners=entry.get("owners") or (),
                    label=entry.get("label") or (),
                    status_by_owner=entry.get("status_by_owner") or {},
                )
            except ValidationError as e:
                raise ValueError(f"Invalid schema for {type_name!r}: {e}") from e
        return cls(
            schemas,
            default_depth=data.get("default_depth", 1),
            max_depth=data.get("max_depth", 12),
        )

    def _check_references(self) -> None:
        for schema in self._schemas.values():
            missing = [o for o in schema.owners if o not in self._schemas]
            if missing:
                raise ValueError(f"{schema.type_name}: unknown owner types {missing}")
            stray = [o for o in schema.status_by_owner if o not in schema.owners]
            if stray:
                raise ValueError(f"{schema.type_name}: status rules for non-owner types {stray}")

    # -- Lookups --

    @staticmethod
    def normalize(type_name: str) -> str:
        return to_snake(type_name)

    def describe(self, type_name: str) -> EntitySchema:
        """Return the schema for a type. Raises UnknownEntityTypeError."""
        try:
            return self._schemas[self.normalize(type_name)]
        except KeyError:
            raise UnknownEntityTypeError(type_name) from None

    def has_type(self, type_name: str) -> bool:
        return self.normalize(type_name) in self._schemas

    def types(self) -> list[str]:
        return list(self._schemas)

    def is_root_type(self, type_name: str) -> bool:
        return self.describe(type_name).is_root

    def depth_of(self, type_name: str) -> int:
        depth = self.describe(type_name).depth_class
        return self._default_depth if depth is None else depth

    def owner_types(self, type_name: str) -> tuple[str, ...]:
        return self.describe(type_name).owners

    def fs_root(self, type_name: str) -> str | None:
        return self.describe(type_name).fs_root

    def is_capture_type(self, type_name: str) -> bool:
        return self.normalize(type_name) in CAPTURE_TYPES

    def status_for(self, type_name: str, owner_type: str | None) -> str | None:
        """Initial status of a node of this type placed under owner_type."""
        if owner_type is None:
            return None
        return self.describe(type_name).status_by_owner.get(owner_type)

    @property
    def max_depth(self) -> int:
        return self._max_depth

    @property
    def default_depth(self) -> int:
        return self._default_depth
