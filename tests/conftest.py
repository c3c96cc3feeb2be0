"""
Shared pytest fixtures for couch_dal tests.

Provides an in-memory bucket that answers view queries the way the
view engine does (rows ordered by key then document id, with
startkey_docid continuation, skip and limit) and keeps a set of
secondary indexes so that index statements behave like the query service.
"""

import re

import pytest

from couch_dal import QueryResult, Row, ViewQuery

_CREATE = re.compile(r"CREATE INDEX `(?P<name>[^`]+)`")
_DROP = re.compile(r"DROP INDEX `(?P<bucket>[^`]+)`\.`(?P<name>[^`]+)`")
_BUILD = re.compile(r"BUILD INDEX ON `(?P<bucket>[^`]+)`\((?P<names>[^)]*)\)")

INDEX_TEMPLATE = 'CREATE INDEX `$name` ON `$bucket`(type) WITH {"defer_build": $defered}'


class StoreError(Exception):
    """Error raised by a third-party store client."""

    def __init__(self, message, code=None):
        super().__init__(message)
        self.code = code


class FakeBucket:
    """In-memory bucket recording every statement it executes."""

    def __init__(self, name="default", rows=()):
        self.name = name
        self.rows = sorted(rows, key=lambda r: (r.key, r.id))
        self.queries = []
        self.statements = []
        self.indexes = {}
        self.failures = []

    def fail(self, prefix, error):
        """Fail the next statement starting with `prefix`."""
        self.failures.append((prefix, error))

    def _pending_failure(self, statement):
        for i, (prefix, error) in enumerate(self.failures):
            if statement.startswith(prefix):
                del self.failures[i]
                return error
        return None

    async def execute(self, statement):
        if isinstance(statement, ViewQuery):
            self.queries.append(statement)
            if (error := self._pending_failure("VIEW")) is not None:
                raise error
            return QueryResult(rows=self._view_rows(statement))

        self.statements.append(statement)
        if (error := self._pending_failure(statement)) is not None:
            raise error
        return self._run_statement(statement)

    def _view_rows(self, query):
        selected = []
        for row in self.rows:
            if query.startkey is not None:
                if row.key < query.startkey:
                    continue
                if (
                    row.key == query.startkey
                    and query.startkey_docid is not None
                    and row.id < query.startkey_docid
                ):
                    continue
            if query.endkey is not None:
                if row.key > query.endkey:
                    continue
                if row.key == query.endkey and query.inclusive_end is False:
                    continue
            selected.append(row)
        selected = selected[query.skip or 0 :]
        if query.limit is not None:
            selected = selected[: query.limit]
        return selected

    def _run_statement(self, statement):
        if match := _CREATE.match(statement):
            name = match["name"]
            if name in self.indexes:
                msg = f"The index {name} already exists."
                raise StoreError(msg, code=4300)
            self.indexes[name] = "deferred" if '"defer_build": true' in statement else "online"
        elif match := _DROP.match(statement):
            name = match["name"]
            if name not in self.indexes:
                msg = f"Index {name} not found."
                raise StoreError(msg, code=12004)
            del self.indexes[name]
        elif match := _BUILD.match(statement):
            names = [n.strip("`") for n in match["names"].split(",")]
            built = [n for n in names if self.indexes.get(n) == "online"]
            if built:
                msg = f"Build index fails. Index {built[0]} is already built."
                raise StoreError(msg, code=5000)
            for name in names:
                self.indexes[name] = "online"
        return QueryResult()

    @property
    def builds(self):
        return [s for s in self.statements if s.startswith("BUILD INDEX")]

    @property
    def drops(self):
        return [s for s in self.statements if s.startswith("DROP INDEX")]


def make_rows(*keys):
    """Rows with ids `doc-000`, `doc-001`, ... in key order."""
    return [Row(id=f"doc-{i:03d}", key=key) for i, key in enumerate(keys)]


@pytest.fixture
def bucket():
    return FakeBucket("default", make_rows(10, 10, 10, 20, 30))


@pytest.fixture
def buckets():
    return {"a": FakeBucket("a"), "b": FakeBucket("b")}
