"""Couchbase provider using the asyncio SDK."""

import asyncio
import re
from collections.abc import Sequence
from datetime import timedelta
from typing import TYPE_CHECKING, ClassVar, Self

from pydantic import BaseModel

from couch_dal.datatypes import Document, JsonValue, QueryMetadata, QueryResult, Row
from couch_dal.errors import INDEX_EXISTS_CODE, DalError, ErrorKind, SubdocError, classify
from couch_dal.params import (
    DesignDocumentDefinition,
    ErrorMode,
    Order,
    Staleness,
    SubdocMutation,
    SubdocOp,
)
from couch_dal.query import ViewQuery

if TYPE_CHECKING:
    from acouchbase.bucket import Bucket
    from acouchbase.cluster import Cluster as AsyncCluster
    from acouchbase.collection import Collection

try:
    import couchbase.subdocument as SD  # noqa: N812
    from acouchbase.cluster import Cluster
    from couchbase.auth import PasswordAuthenticator
    from couchbase.exceptions import (
        AmbiguousTimeoutException,
        CouchbaseException,
        DocumentNotFoundException,
        QueryIndexAlreadyExistsException,
        UnAmbiguousTimeoutException,
    )
    from couchbase.management.views import DesignDocument, DesignDocumentNamespace, View
    from couchbase.options import ClusterOptions, ViewOptions
    from couchbase.views import ViewErrorMode, ViewOrdering, ViewScanConsistency
except ImportError as e:
    _msg = "couchbase is required for Couchbase support. Install with: uv add 'couch-dal[couchbase]'"
    raise ImportError(_msg) from e

_SCAN_CONSISTENCY = {
    Staleness.BEFORE: ViewScanConsistency.REQUEST_PLUS,
    Staleness.NONE: ViewScanConsistency.NOT_BOUNDED,
    Staleness.AFTER: ViewScanConsistency.UPDATE_AFTER,
}

_ORDERING = {
    Order.ASCENDING: ViewOrdering.ASCENDING,
    Order.DESCENDING: ViewOrdering.DESCENDING,
}

_ERROR_MODE = {
    ErrorMode.STOP: ViewErrorMode.STOP,
    ErrorMode.CONTINUE: ViewErrorMode.CONTINUE,
}


class CouchbaseCredentials(BaseModel, frozen=True):
    """Credentials for Couchbase connection."""

    connection_string: str
    """Cluster connection string (e.g., 'couchbase://localhost')."""

    username: str
    password: str


class CouchbaseParams(BaseModel, frozen=True):
    """Parameters for Couchbase operations."""

    bucket: str
    """Bucket to open."""

    connect_timeout: float = 10.0
    """Seconds to wait for the cluster and bucket to become ready."""


def _to_dal_error(message: str, error: Exception) -> DalError:
    """Map an SDK exception to a classified `DalError`."""
    code: int | None = None
    if isinstance(error, QueryIndexAlreadyExistsException):
        kind = ErrorKind.CONFLICT
        code = INDEX_EXISTS_CODE
    elif isinstance(error, AmbiguousTimeoutException | UnAmbiguousTimeoutException):
        kind = ErrorKind.TIMEOUT
    elif isinstance(error, DocumentNotFoundException):
        kind = ErrorKind.NOT_FOUND
    else:
        kind = classify(error)
    return DalError(f"{message}: {error}", kind=kind, source=error, code=code)


def _subdoc_spec(mutation: SubdocMutation) -> object:
    match mutation.op:
        case SubdocOp.INSERT:
            return SD.insert(mutation.path, mutation.value, create_parents=mutation.create_parents)
        case SubdocOp.UPSERT:
            return SD.upsert(mutation.path, mutation.value, create_parents=mutation.create_parents)
        case SubdocOp.REPLACE:
            return SD.replace(mutation.path, mutation.value)
        case SubdocOp.REMOVE:
            return SD.remove(mutation.path)
        case SubdocOp.ARRAY_APPEND:
            return SD.array_append(
                mutation.path, mutation.value, create_parents=mutation.create_parents
            )
        case SubdocOp.COUNTER:
            if not isinstance(mutation.value, int):
                msg = f"Counter at '{mutation.path}' needs an integer delta"
                raise DalError(msg, kind=ErrorKind.INVALID_INPUT)
            if mutation.value >= 0:
                return SD.increment(mutation.path, mutation.value)
            return SD.decrement(mutation.path, -mutation.value)


def _mentions_path(text: str, path: str) -> bool:
    """Whether `text` names `path` as a whole token, not as part of a longer path."""
    return re.search(rf"(?<![\w.\[\]]){re.escape(path)}(?![\w.\[])", text) is not None


def _subdoc_errors(mutations: Sequence[SubdocMutation], error: Exception) -> list[SubdocError]:
    """Collect per-spec failures from a failed mutation.

    The SDK reports either the failing path in the message or only an
    overall failure; both end up as a list of `SubdocError`.
    """
    text = str(error)
    errors = [
        SubdocError(index=i, path=m.path, message=text)
        for i, m in enumerate(mutations)
        if m.path and _mentions_path(text, m.path)
    ]
    return errors or [SubdocError(path="", message=text)]


class CouchbaseProvider:
    """Couchbase provider bound to one bucket.

    Satisfies `QueryExecutor`: view queries run against the bucket and
    statements run through the cluster query service.
    """

    __slots__: ClassVar[tuple[str, str, str]] = ("_bucket", "_cluster", "_params")

    _cluster: "AsyncCluster"
    _bucket: "Bucket"
    _params: CouchbaseParams

    def __init__(self, cluster: "AsyncCluster", bucket: "Bucket", params: CouchbaseParams) -> None:
        self._cluster = cluster
        self._bucket = bucket
        self._params = params

    @property
    def name(self) -> str:
        return self._params.bucket

    @property
    def _collection(self) -> "Collection":
        return self._bucket.default_collection()

    @classmethod
    async def connect(cls, credentials: CouchbaseCredentials, params: CouchbaseParams) -> Self:
        """Connect to the cluster and open the bucket."""
        try:
            auth = PasswordAuthenticator(credentials.username, credentials.password)
            cluster = await Cluster.connect(credentials.connection_string, ClusterOptions(auth))
            await cluster.wait_until_ready(timedelta(seconds=params.connect_timeout))
            bucket = cluster.bucket(params.bucket)
            await bucket.on_connect()
        except Exception as e:
            msg = f"Failed to open Couchbase bucket '{params.bucket}': {e}"
            raise DalError(msg, kind=ErrorKind.CONNECTION, source=e) from e

        return cls(cluster, bucket, params)

    async def disconnect(self) -> None:
        """Close the cluster connection."""
        await self._cluster.close()

    async def execute(self, statement: ViewQuery | str) -> QueryResult:
        """Run a view query or a N1QL statement."""
        if isinstance(statement, ViewQuery):
            return await self._view_query(statement)
        return await self._n1ql_query(statement)

    async def _view_query(self, query: ViewQuery) -> QueryResult:
        options = ViewOptions(
            scan_consistency=_SCAN_CONSISTENCY[query.stale],
            order=_ORDERING[query.order],
            on_error=_ERROR_MODE[query.on_error],
            namespace=DesignDocumentNamespace.PRODUCTION,
        )
        for name in (
            "group",
            "group_level",
            "key",
            "keys",
            "full_set",
            "limit",
            "skip",
            "startkey",
            "endkey",
            "inclusive_end",
            "startkey_docid",
            "endkey_docid",
        ):
            value = getattr(query, name)
            if value is not None:
                options[name] = value
        if query.custom:
            options["raw"] = dict(query.custom)

        try:
            result = self._bucket.view_query(query.design_doc, query.view_name, options)
            rows = [
                Row(id=row.id, key=row.key, value=row.value) async for row in result.rows()
            ]
            metadata = result.metadata()
        except Exception as e:
            msg = f"Failed to query view {query.design_doc}/{query.view_name}"
            raise _to_dal_error(msg, e) from e

        if query.include_docs:
            rows = await self._attach_docs(rows)
        return QueryResult(rows=rows, metadata=QueryMetadata(total_rows=metadata.total_rows()))

    async def _attach_docs(self, rows: list[Row]) -> list[Row]:
        docs = await asyncio.gather(*(self._content_or_none(row.id) for row in rows))
        return [
            row.model_copy(update={"doc": doc}) for row, doc in zip(rows, docs, strict=True)
        ]

    async def _content_or_none(self, key: str | None) -> JsonValue:
        """Content of `key`, or None if the row has no id or the document is gone."""
        if key is None:
            return None
        try:
            document = await self.get(key)
        except DalError as e:
            if e.kind is ErrorKind.NOT_FOUND:
                return None
            raise
        return document.content

    async def _n1ql_query(self, statement: str) -> QueryResult:
        try:
            result = self._cluster.query(statement)
            rows = [Row(value=row) async for row in result.rows()]
            metadata = result.metadata()
        except Exception as e:
            msg = f"Failed to execute statement {statement!r}"
            raise _to_dal_error(msg, e) from e

        return QueryResult(rows=rows, metadata=QueryMetadata(status=str(metadata.status())))

    async def get(self, key: str) -> Document:
        """Fetch a single document."""
        try:
            result = await self._collection.get(key)
        except Exception as e:
            msg = f"Failed to get document '{key}'"
            raise _to_dal_error(msg, e) from e
        return Document(id=key, content=result.value, cas=result.cas)

    async def upsert(self, key: str, value: JsonValue) -> Document:
        """Insert or replace a single document."""
        try:
            result = await self._collection.upsert(key, value)
        except Exception as e:
            msg = f"Failed to upsert document '{key}'"
            raise _to_dal_error(msg, e) from e
        return Document(id=key, content=value, cas=result.cas)

    async def mutate_in(self, key: str, mutations: Sequence[SubdocMutation]) -> int:
        """Apply sub-document mutations atomically. Returns the new CAS."""
        specs = [_subdoc_spec(m) for m in mutations]
        try:
            result = await self._collection.mutate_in(key, specs)
        except DocumentNotFoundException as e:
            msg = f"Failed to mutate document '{key}'"
            raise _to_dal_error(msg, e) from e
        except CouchbaseException as e:
            msg = f"Failed to mutate document '{key}': {e}"
            raise DalError(
                msg,
                kind=ErrorKind.SUBDOC,
                source=e,
                errors=_subdoc_errors(mutations, e),
            ) from e
        return result.cas

    async def upsert_design_documents(
        self, design_docs: Sequence[DesignDocumentDefinition]
    ) -> None:
        """Publish the design documents that belong to this bucket."""
        own = [ddoc for ddoc in design_docs if ddoc.bucket == self.name]
        if not own:
            return

        manager = self._bucket.view_indexes()
        try:
            _ = await asyncio.gather(
                *(
                    manager.upsert_design_document(
                        DesignDocument(
                            ddoc.name,
                            {
                                name: View(map=view.map, reduce=view.reduce)
                                for name, view in ddoc.views.items()
                            },
                        ),
                        DesignDocumentNamespace.PRODUCTION,
                    )
                    for ddoc in own
                )
            )
        except Exception as e:
            msg = f"Failed to upsert design documents on '{self.name}'"
            raise _to_dal_error(msg, e) from e


Provider = CouchbaseProvider
