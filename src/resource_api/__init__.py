"""Expose SQLAlchemy models as filterable, exportable REST resources."""

from resource_api.common.exceptions import (
    BusinessRuleError,
    NotFoundError,
    NothingToExportError,
    PersistenceError,
    ResourceError,
    ValidationError,
)
from resource_api.common.list_filters import FilterKind, FilterSpec
from resource_api.common.repository import EntityRepository, RelationshipDescriptor, SaveStrategy
from resource_api.common.workbook_export import ColumnDataType, ColumnType, ExportMode, ExportSpec
from resource_api.resources import ResourceController, build_resource_router

__all__ = [
    "BusinessRuleError",
    "ColumnDataType",
    "ColumnType",
    "EntityRepository",
    "ExportMode",
    "ExportSpec",
    "FilterKind",
    "FilterSpec",
    "NotFoundError",
    "NothingToExportError",
    "PersistenceError",
    "RelationshipDescriptor",
    "ResourceController",
    "ResourceError",
    "SaveStrategy",
    "ValidationError",
    "build_resource_router",
]
