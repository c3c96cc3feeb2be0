"""Parameter types for query and index configuration.

Params define how operations run (ranges, page sizes, templates),
while contexts carry runtime state (cursors).
"""

import re
from enum import Enum

from pydantic import BaseModel, Field, field_validator

from couch_dal.datatypes import JsonValue
from couch_dal.errors import DalError, ErrorKind


class Staleness(str, Enum):
    """How fresh the view index must be before a query is answered."""

    BEFORE = "false"
    """Update the index before answering (default)."""

    NONE = "ok"
    """Answer from the index as it is."""

    AFTER = "update_after"
    """Answer from the index as it is, then update it."""


class Order(str, Enum):
    """Row ordering by index key."""

    ASCENDING = "ascending"

    DESCENDING = "descending"


class ErrorMode(str, Enum):
    """Behaviour of the view engine when a node fails mid-query."""

    STOP = "stop"

    CONTINUE = "continue"


class ViewQuerySpec(BaseModel, frozen=True):
    """Declarative options of a single view query.

    Every field is optional; unset fields fall back to the builder defaults.
    """

    stale: Staleness | None = None
    order: Order | None = None
    group: bool | None = None
    group_level: int | None = Field(default=None, ge=0)
    key: JsonValue = None
    keys: list[JsonValue] | None = None
    include_docs: bool | None = None
    full_set: bool | None = None
    on_error: ErrorMode | None = None

    limit: int | None = Field(default=None, ge=1)
    """Maximum rows per query. Bounds the page size when paginating."""

    skip: int | None = Field(default=None, ge=0)

    range: tuple[JsonValue, JsonValue] | tuple[JsonValue, JsonValue, bool] | None = None
    """Inclusive key range: `(start, end)` or `(start, end, inclusive_end)`."""

    id_range: tuple[str] | tuple[str, str] | None = None
    """Document id range within the start and end keys: `(start,)` or `(start, end)`."""

    custom: dict[str, str] = Field(default_factory=dict)
    """Extra options passed to the store verbatim."""

    def require_paginable(self) -> tuple[JsonValue, int]:
        """Return the boundary key and page size, raising unless both are set."""
        if self.range is None:
            msg = "Paginated queries require a key range"
            raise DalError(msg, kind=ErrorKind.INVALID_INPUT)
        if self.limit is None:
            msg = "Paginated queries require a limit"
            raise DalError(msg, kind=ErrorKind.INVALID_INPUT)
        return self.range[0], self.limit


class PaginationParams(BaseModel, frozen=True):
    """Parameters for paginated view scans."""

    delay: float = Field(default=0.2, ge=0)
    """Seconds to rest between pages to bound load on the store."""

    max_pages: int | None = Field(default=None, ge=1)
    """Stop after this many pages. If None, scan until exhausted."""

    concurrency: int | None = Field(default=None, ge=1)
    """Maximum actions in flight per page. If None, all rows run at once."""


_BUCKET_TOKEN = re.compile(r"\$bucket")
_NAME_TOKEN = re.compile(r"\$name")
_DEFER_TOKEN = re.compile(r"\$defered")


class IndexDefinition(BaseModel, frozen=True):
    """A secondary index declared from a statement template.

    The template may reference `$bucket`, `$name` and `$defered`, e.g.
    ``CREATE INDEX `$name` ON `$bucket`(type) WITH {"defer_build": $defered}``.
    """

    bucket: str
    """Target bucket name."""

    name: str
    """Index name."""

    template: str
    """Statement template defining the index."""

    defer_build: bool = False
    """Whether the index is built by a separate build statement."""

    @field_validator("bucket", "name")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            msg = "must not be blank"
            raise ValueError(msg)
        return value

    def render(self) -> str:
        """Substitute bucket, name and deferred flag into the template."""
        text = _BUCKET_TOKEN.sub(lambda _: self.bucket, self.template)
        text = _NAME_TOKEN.sub(lambda _: self.name, text)
        return _DEFER_TOKEN.sub(lambda _: "true" if self.defer_build else "false", text)


class ViewDefinition(BaseModel, frozen=True):
    """Map and optional reduce functions of a view."""

    map: str
    reduce: str | None = None


class DesignDocumentDefinition(BaseModel, frozen=True):
    """A design document to publish on one bucket."""

    bucket: str
    """Bucket the design document belongs to."""

    name: str
    """Design document name."""

    views: dict[str, ViewDefinition] = Field(default_factory=dict)


class SubdocOp(str, Enum):
    """Sub-document mutation operations."""

    INSERT = "insert"
    UPSERT = "upsert"
    REPLACE = "replace"
    REMOVE = "remove"
    ARRAY_APPEND = "array_append"
    COUNTER = "counter"


class SubdocMutation(BaseModel, frozen=True):
    """One path-level mutation inside a document."""

    op: SubdocOp
    path: str
    value: JsonValue = None
    create_parents: bool = False
