"""docstore: schema-driven document store on SQLite."""

__version__ = "0.1.0"

from docstore.attribute import Attribute, AttributeType
from docstore.config import DocstoreConfig
from docstore.engine import Engine
from docstore.entity import Entity
from docstore.errors import (
    ArgumentError,
    DocstoreError,
    InternalError,
    NotFoundError,
    SchemaError,
    StorageBackendError,
    TooManyFoundError,
    ValidationError,
)
from docstore.filters import at_least, at_most, between
from docstore.query import ListQuery, SearchQuery
from docstore.records import Record, RecordSet
from docstore.relation import Relation, RelationType
from docstore.storage import Repository

__all__ = [
    "__version__",
    "Engine",
    "Entity",
    "Attribute",
    "AttributeType",
    "Relation",
    "RelationType",
    "Record",
    "RecordSet",
    "ListQuery",
    "SearchQuery",
    "Repository",
    "DocstoreConfig",
    "between",
    "at_least",
    "at_most",
    "DocstoreError",
    "SchemaError",
    "ValidationError",
    "NotFoundError",
    "TooManyFoundError",
    "ArgumentError",
    "InternalError",
    "StorageBackendError",
]
