"""Canonical data structures for the entity engine.

Defined once here, referenced everywhere else. Entity schemas are loaded
from configuration into these models and frozen; node and comparison
records mirror the rows the store returns.
"""

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

# ---------------------------------------------------------------------------
# Schema registry structures
# ---------------------------------------------------------------------------


class SemanticType(StrEnum):
    """Closed set of attribute types. Each has exactly one sanitizer."""

    BOOLEAN = "boolean"
    INTEGER = "integer"
    FLOAT = "float"
    TEXT = "text"
    JSON = "json"
    COMPOSITE = "composite"
    DEFAULT = "default"


# PostgreSQL information_schema names used by older schema dumps
SEMANTIC_TYPE_ALIASES: dict[str, SemanticType] = {
    "varying character": SemanticType.TEXT,
    "character varying": SemanticType.TEXT,
    "double precision": SemanticType.FLOAT,
    "real": SemanticType.FLOAT,
    "smallint": SemanticType.INTEGER,
    "bigint": SemanticType.INTEGER,
    "jsonb": SemanticType.JSON,
    "USER-DEFINED": SemanticType.COMPOSITE,
}


class AttributeSpec(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str
    semantic_type: SemanticType = Field(default=SemanticType.DEFAULT, alias="type")
    label: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _resolve_alias(cls, data: Any) -> Any:
        if isinstance(data, dict):
            raw = data.get("type")
            if isinstance(raw, str) and raw in SEMANTIC_TYPE_ALIASES:
                data = {**data, "type": SEMANTIC_TYPE_ALIASES[raw]}
        return data


class EntitySchema(BaseModel):
    """One registry entry: how an entity type is stored and where it may live."""

    model_config = ConfigDict(frozen=True)

    type_name: str
    key_attribute: str = "nodes_id"
    attributes: tuple[AttributeSpec, ...]
    is_root: bool = False
    depth_class: int | None = Field(default=None, ge=0)
    fs_root: str | None = None
    owners: tuple[str, ...] = ()
    label: tuple[str, ...] = ()
    status_by_owner: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_shape(self) -> "EntitySchema":
        names = [a.name for a in self.attributes]
        if len(set(names)) != len(names):
            raise ValueError(f"{self.type_name}: duplicate attribute names")
        if names.count(self.key_attribute) != 1:
            raise ValueError(
                f"{self.type_name}: key attribute {self.key_attribute!r} must appear exactly once"
            )
        if self.is_root and self.owners:
            raise ValueError(f"{self.type_name}: root types cannot have owners")
        if not self.is_root and not self.owners:
            raise ValueError(f"{self.type_name}: non-root types need at least one owner type")
        unknown = [n for n in self.label if n not in names]
        if unknown:
            raise ValueError(f"{self.type_name}: label uses unknown attributes {unknown}")
        return self

    @property
    def attribute_names(self) -> tuple[str, ...]:
        return tuple(a.name for a in self.attributes)

    def attribute(self, name: str) -> AttributeSpec | None:
        return next((a for a in self.attributes if a.name == name), None)


# ---------------------------------------------------------------------------
# Tree records
# ---------------------------------------------------------------------------


class Node(BaseModel):
    """A row in the nodes table: one entity's position in the tree."""

    id: int
    type: str
    owner_id: int | None = None
    owner_type: str | None = None
    fs_path: str | None = None
    status: str | None = None
    has_dependents: bool = False
    created_at: str | None = None
    updated_at: str | None = None


class FileRecord(BaseModel):
    id: int
    owner_id: int
    owner_type: str
    file_type: str
    filename: str
    mimetype: str | None = None
    file_size: int = 0


class NodeView(BaseModel):
    """A node joined with its entity metadata and (optionally) dependents."""

    node: Node
    type: str
    label: str
    status: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    has_dependents: bool = False
    dependents: list["NodeView"] = Field(default_factory=list)
    files: list[FileRecord] = Field(default_factory=list)

    @property
    def id(self) -> int:
        return self.node.id


class Comparison(BaseModel):
    """One historic/modern capture pairing within a comparison set."""

    model_config = ConfigDict(frozen=True)

    historic_captures: int
    modern_captures: int


# ---------------------------------------------------------------------------
# Collaborator payloads
# ---------------------------------------------------------------------------


class FileDescriptor(BaseModel):
    """A file received by the importer, not yet recorded in the store."""

    file_type: str
    filename: str
    mimetype: str | None = None
    file_size: int = 0
    filename_tmp: str | None = None


class ImportResult(BaseModel):
    files: list[FileDescriptor] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Operation lifecycle
# ---------------------------------------------------------------------------


class OperationState(StrEnum):
    VALIDATING = "validating"
    APPLYING = "applying"
    COMMITTED = "committed"
    REJECTED = "rejected"
    ROLLED_BACK = "rolled_back"
