"""Pagination and index lifecycle for Couchbase views and secondary indexes."""

from couch_dal.contexts import ViewCursor
from couch_dal.datatypes import Document, QueryMetadata, QueryResult, Row
from couch_dal.errors import DalError, ErrorKind, SubdocError
from couch_dal.indexes import IndexManager, build_indexes
from couch_dal.pagination import Paginator, paginate
from couch_dal.params import (
    DesignDocumentDefinition,
    ErrorMode,
    IndexDefinition,
    Order,
    PaginationParams,
    Staleness,
    SubdocMutation,
    SubdocOp,
    ViewDefinition,
    ViewQuerySpec,
)
from couch_dal.protocols import Provider, QueryExecutor, RowAction
from couch_dal.query import ViewQuery, new_view_query

__all__ = [
    # Errors
    "DalError",
    "ErrorKind",
    "SubdocError",
    # Protocols
    "Provider",
    "QueryExecutor",
    "RowAction",
    # Params (configuration)
    "DesignDocumentDefinition",
    "ErrorMode",
    "IndexDefinition",
    "Order",
    "PaginationParams",
    "Staleness",
    "SubdocMutation",
    "SubdocOp",
    "ViewDefinition",
    "ViewQuerySpec",
    # Contexts (runtime state)
    "ViewCursor",
    # Data types
    "Document",
    "QueryMetadata",
    "QueryResult",
    "Row",
    # Operations
    "IndexManager",
    "Paginator",
    "ViewQuery",
    "build_indexes",
    "new_view_query",
    "paginate",
]
