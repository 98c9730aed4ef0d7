"""Request and response schemas for node endpoints."""

from typing import Any

from pydantic import BaseModel, Field

from mlp.models import Comparison, FileDescriptor, NodeView, SemanticType

# -- Requests --


class CreateNodeRequest(BaseModel):
    data: dict[str, Any] = Field(default_factory=dict)
    files: list[FileDescriptor] = Field(default_factory=list)


class UpdateNodeRequest(BaseModel):
    """Attribute values to merge. comparisons, when present, replaces the capture's set."""

    data: dict[str, Any] = Field(default_factory=dict)
    comparisons: list[int | dict[str, Any]] | None = None


# -- Responses --


class NodeDetail(BaseModel):
    """A node view with its ancestors (root-first) and comparison set."""

    node: NodeView
    path: list[NodeView] = Field(default_factory=list)
    comparisons: list[Comparison] = Field(default_factory=list)
    message: str | None = None


class AttributeField(BaseModel):
    name: str
    label: str
    type: SemanticType
    value: Any = None


class NewNodeForm(BaseModel):
    """Blank record for an entity about to be created under owner."""

    type: str
    label: str
    attributes: list[AttributeField]
    owner: NodeView | None = None
    path: list[NodeView] = Field(default_factory=list)
