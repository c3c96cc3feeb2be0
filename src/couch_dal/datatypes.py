"""Data types returned by query executors.

- `Row` for a single view or index query result entry
- `QueryResult` for the rows of one query plus its metadata
- `Document` for single-document reads
"""

from pydantic import BaseModel, Field
from typing_extensions import TypeAliasType

# JSON-compatible value type
JsonValue = TypeAliasType(
    "JsonValue", str | int | float | bool | None | list["JsonValue"] | dict[str, "JsonValue"]
)

# Metadata associated with a query result.
Metadata = TypeAliasType("Metadata", dict[str, JsonValue])


class Row(BaseModel, frozen=True):
    """A result entry of a view query, ordered by `key` then `id`."""

    id: str | None = None
    """Identifier of the document that emitted the row (absent for reduced rows)."""

    key: JsonValue = None
    """Index key the row is sorted by."""

    value: JsonValue = None
    """Value emitted by the view."""

    doc: JsonValue = None
    """Document contents when the query includes documents."""


class QueryMetadata(BaseModel, frozen=True):
    """Metadata reported alongside query rows."""

    total_rows: int | None = None
    """Total rows in the view, when reported by the store."""

    status: str | None = None
    """Statement status for N1QL queries."""

    extra: Metadata = Field(default_factory=dict)
    """Any other fields reported by the store."""


class QueryResult(BaseModel, frozen=True):
    """Rows and metadata of a single executed query."""

    rows: list[Row] = Field(default_factory=list)

    metadata: QueryMetadata = Field(default_factory=QueryMetadata)


class Document(BaseModel):
    """A stored JSON document."""

    id: str
    """Document key."""

    content: JsonValue
    """Document content as JSON."""

    cas: int | None = None
    """Compare-and-swap token of the stored revision."""
