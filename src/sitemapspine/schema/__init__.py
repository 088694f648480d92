"""Schema knowledge: indexable entity registry, catalog and graph walker."""

from sitemapspine.schema.catalog import (
    ColumnRef,
    ForeignKey,
    SchemaCatalog,
    default_catalog,
    load_catalog,
    should_follow_table,
)
from sitemapspine.schema.entities import (
    ENTITY_SCHEMA,
    ENTITY_TYPES,
    EntityType,
    SuffixInfo,
    entity_type,
    indexable_entity,
)
from sitemapspine.schema.walker import DependencyPath, JoinStep, SchemaGraphWalker

__all__ = [
    "ENTITY_SCHEMA",
    "ENTITY_TYPES",
    "ColumnRef",
    "DependencyPath",
    "EntityType",
    "ForeignKey",
    "JoinStep",
    "SchemaCatalog",
    "SchemaGraphWalker",
    "SuffixInfo",
    "default_catalog",
    "entity_type",
    "indexable_entity",
    "load_catalog",
    "should_follow_table",
]
