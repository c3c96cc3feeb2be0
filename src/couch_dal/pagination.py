"""Paginated view scans.

Walks every row sharing the lower bound key of a view query's range,
one page at a time, using document id continuation so that rows with the
same key are neither skipped nor processed twice.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import aclosing
from typing import ClassVar

from couch_dal.contexts import ViewCursor
from couch_dal.datatypes import JsonValue, Row
from couch_dal.errors import DalError, ErrorKind
from couch_dal.params import PaginationParams, Staleness, ViewQuerySpec
from couch_dal.protocols import QueryExecutor, RowAction
from couch_dal.query import ViewQuery, new_view_query

_logger = logging.getLogger(__name__)


class Paginator:
    """Cursor-driven scan over one view.

    Each page is fetched only after every action of the previous page
    has settled. Pages after the first read the index without refreshing
    it and start just after the last processed document id.
    """

    __slots__: ClassVar[tuple[str, ...]] = (
        "_boundary_key",
        "_handle",
        "_logger",
        "_page_size",
        "_params",
        "_spec",
        "_view",
    )

    _handle: QueryExecutor
    _boundary_key: JsonValue
    _page_size: int
    _view: tuple[str, str]
    _spec: ViewQuerySpec
    _params: PaginationParams
    _logger: logging.Logger

    def __init__(
        self,
        handle: QueryExecutor,
        view_id: tuple[str, str],
        spec: ViewQuerySpec,
        params: PaginationParams | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._boundary_key, self._page_size = spec.require_paginable()
        self._handle = handle
        self._view = view_id
        self._spec = spec
        self._params = params or PaginationParams()
        self._logger = logger or _logger

    @property
    def boundary_key(self) -> JsonValue:
        """Key every processed row must carry: the lower bound of the range."""
        return self._boundary_key

    @property
    def page_size(self) -> int:
        return self._page_size

    def query_for(self, cursor: ViewCursor) -> ViewQuery:
        """Build the view query fetching the page at `cursor`."""
        spec = self._spec
        if cursor.start_docid is not None:
            spec = spec.model_copy(
                update={
                    "stale": Staleness.NONE,
                    "id_range": (cursor.start_docid,),
                    "skip": 1,
                }
            )
        design_doc, view_name = self._view
        return new_view_query(design_doc, view_name, spec)

    async def fetch(self, cursor: ViewCursor) -> list[Row]:
        """Fetch one page and keep only the rows on the boundary key."""
        result = await self._handle.execute(self.query_for(cursor))
        rows = [row for row in result.rows if row.key == self.boundary_key]
        self._logger.debug(
            "Page %d after %r: %d of %d rows on boundary key",
            cursor.page,
            cursor.start_docid,
            len(rows),
            len(result.rows),
        )
        return rows

    async def pages(
        self, start_docid: str | None = None
    ) -> AsyncIterator[tuple[list[Row], ViewCursor]]:
        """Yield `(rows, cursor)` per page, where `cursor` fetched `rows`.

        The next page is requested only once the consumer resumes the
        iterator, after resting for the configured delay.
        """
        cursor = ViewCursor(start_docid=start_docid)
        while True:
            rows = await self.fetch(cursor)
            yield rows, cursor

            if len(rows) < self.page_size:
                self._logger.info("Pagination done after %d pages", cursor.page)
                return
            if self._params.max_pages is not None and cursor.page >= self._params.max_pages:
                self._logger.info(
                    "Pagination stopped at page limit %d, resume after %r",
                    cursor.page,
                    rows[-1].id,
                )
                return

            last_id = rows[-1].id
            if last_id is None:
                msg = f"Row on page {cursor.page} has no document id to continue from"
                raise DalError(msg, kind=ErrorKind.INVALID_INPUT)

            self._logger.debug("Resting %.3fs before page %d", self._params.delay, cursor.page + 1)
            await asyncio.sleep(self._params.delay)
            cursor = cursor.advance(last_id)

    async def run(self, action: RowAction[QueryExecutor], start_docid: str | None = None) -> None:
        """Apply `action` to every row of every page.

        Raises `DalError` with kind `ACTION` and the cursor of the failing
        page if an action fails. Query failures propagate unchanged.
        """
        async with aclosing(self.pages(start_docid)) as pages:
            async for rows, cursor in pages:
                await self._apply(action, rows, cursor)

    async def _apply(
        self,
        action: RowAction[QueryExecutor],
        rows: list[Row],
        cursor: ViewCursor,
    ) -> None:
        semaphore = (
            asyncio.Semaphore(self._params.concurrency)
            if self._params.concurrency is not None
            else None
        )

        async def invoke(row: Row) -> object:
            if semaphore is None:
                return await action(self._handle, row)
            async with semaphore:
                return await action(self._handle, row)

        results = await asyncio.gather(*(invoke(row) for row in rows), return_exceptions=True)
        failures = [r for r in results if isinstance(r, BaseException)]
        if failures:
            e = failures[0]
            if not isinstance(e, Exception):
                raise e
            if len(failures) > 1:
                self._logger.warning(
                    "%d of %d actions failed on page %d", len(failures), len(rows), cursor.page
                )
            msg = f"Action failed on page {cursor.page} (cursor {cursor.start_docid!r}): {e}"
            raise DalError(msg, kind=ErrorKind.ACTION, source=e, cursor=cursor.start_docid) from e


async def paginate(
    handle: QueryExecutor,
    view_id: tuple[str, str],
    spec: ViewQuerySpec,
    action: RowAction[QueryExecutor],
    start_docid: str | None = None,
    *,
    params: PaginationParams | None = None,
    logger: logging.Logger | None = None,
) -> None:
    """Apply `action` to every row on the lower bound key of `spec.range`.

    `spec` must set `range` and `limit`. Pass `start_docid` to resume a scan
    from the cursor reported by a failed run.
    """
    paginator = Paginator(handle, view_id, spec, params=params, logger=logger)
    await paginator.run(action, start_docid)
