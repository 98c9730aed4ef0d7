"""Database schema DDL. All tables use CREATE IF NOT EXISTS for idempotency.

The shared tables (nodes, comparisons, files) are fixed; one attribute table
per entity type is generated from the schema registry.
"""

from mlp.entities.registry import SchemaRegistry
from mlp.models import EntitySchema, SemanticType

BASE_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS nodes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    type TEXT NOT NULL,
    owner_id INTEGER,
    owner_type TEXT,
    fs_path TEXT,
    status TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (owner_id) REFERENCES nodes(id)
);

CREATE INDEX IF NOT EXISTS idx_nodes_owner_id ON nodes(owner_id);
CREATE INDEX IF NOT EXISTS idx_nodes_type ON nodes(type);

CREATE TABLE IF NOT EXISTS comparisons (
    historic_captures INTEGER NOT NULL,
    modern_captures INTEGER NOT NULL,
    PRIMARY KEY (historic_captures, modern_captures),
    FOREIGN KEY (historic_captures) REFERENCES nodes(id),
    FOREIGN KEY (modern_captures) REFERENCES nodes(id)
);

CREATE INDEX IF NOT EXISTS idx_comparisons_modern ON comparisons(modern_captures);

CREATE TABLE IF NOT EXISTS files (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    owner_id INTEGER NOT NULL,
    owner_type TEXT NOT NULL,
    file_type TEXT NOT NULL,
    filename TEXT NOT NULL,
    mimetype TEXT,
    file_size INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    FOREIGN KEY (owner_id) REFERENCES nodes(id)
);

CREATE INDEX IF NOT EXISTS idx_files_owner_id ON files(owner_id);
"""

_COLUMN_TYPES = {
    SemanticType.BOOLEAN: "INTEGER",
    SemanticType.INTEGER: "INTEGER",
    SemanticType.FLOAT: "REAL",
    SemanticType.TEXT: "TEXT",
    SemanticType.JSON: "TEXT",
    SemanticType.COMPOSITE: "TEXT",
    SemanticType.DEFAULT: "TEXT",
}


def entity_table_sql(schema: EntitySchema) -> str:
    """CREATE TABLE statement for one entity type's attribute table."""
    columns = []
    for attr in schema.attributes:
        if attr.name == schema.key_attribute:
            columns.append(f'    "{attr.name}" INTEGER PRIMARY KEY')
        else:
            columns.append(f'    "{attr.name}" {_COLUMN_TYPES[attr.semantic_type]}')
    columns.append(f'    FOREIGN KEY ("{schema.key_attribute}") REFERENCES nodes(id)')
    body = ",\n".join(columns)
    return f'CREATE TABLE IF NOT EXISTS "{schema.type_name}" (\n{body}\n);\n'


def build_schema_sql(registry: SchemaRegistry) -> str:
    """Full DDL script: shared tables plus one table per registered type."""
    parts = [BASE_SCHEMA_SQL]
    for type_name in registry.types():
        parts.append(entity_table_sql(registry.describe(type_name)))
    return "\n".join(parts)
