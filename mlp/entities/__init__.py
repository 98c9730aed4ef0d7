"""Schema-driven entities: registry, sanitizers and the entity factory."""

from mlp.entities.factory import Entity, EntityConstructor, EntityFactory
from mlp.entities.registry import SchemaRegistry

__all__ = ["Entity", "EntityConstructor", "EntityFactory", "SchemaRegistry"]
