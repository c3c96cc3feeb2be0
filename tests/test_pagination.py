"""Tests for paginated view scans."""

import asyncio
import logging

import pytest

from couch_dal import (
    DalError,
    ErrorKind,
    PaginationParams,
    Paginator,
    Staleness,
    ViewCursor,
    ViewQuerySpec,
    paginate,
)

from .conftest import FakeBucket, StoreError, make_rows

VIEW = ("ddoc", "by_score")
NO_DELAY = PaginationParams(delay=0)


class Recorder:
    """Row action recording processed rows per page."""

    def __init__(self):
        self.seen = []

    async def __call__(self, handle, row):
        await asyncio.sleep(0)
        self.seen.append(row.id)


class TestScan:
    """Rows delivered by a scan."""

    async def test_boundary_key_spanning_pages(self, bucket):
        recorder = Recorder()
        spec = ViewQuerySpec(range=(10, 100), limit=2)

        await paginate(bucket, VIEW, spec, recorder, params=NO_DELAY)

        assert sorted(recorder.seen) == ["doc-000", "doc-001", "doc-002"]
        assert len(bucket.queries) == 2

    async def test_cursor_pages_continue_after_last_row(self, bucket):
        spec = ViewQuerySpec(range=(10, 100), limit=2)

        await paginate(bucket, VIEW, spec, Recorder(), params=NO_DELAY)

        first, second = bucket.queries
        assert first.stale is Staleness.BEFORE
        assert first.startkey_docid is None
        assert first.skip is None
        assert second.stale is Staleness.NONE
        assert second.startkey_docid == "doc-001"
        assert second.skip == 1
        assert second.startkey == 10
        assert second.limit == 2

    async def test_each_row_exactly_once(self):
        bucket = FakeBucket(rows=make_rows(*([5] * 7), 6, 7))
        recorder = Recorder()

        await paginate(
            bucket, VIEW, ViewQuerySpec(range=(5, 9), limit=3), recorder, params=NO_DELAY
        )

        assert sorted(recorder.seen) == [f"doc-{i:03d}" for i in range(7)]
        assert len(recorder.seen) == 7
        assert len(bucket.queries) == 3

    async def test_full_last_page_needs_one_more_query(self):
        bucket = FakeBucket(rows=make_rows(*([1] * 6)))
        recorder = Recorder()

        await paginate(bucket, VIEW, ViewQuerySpec(range=(1, 1), limit=3), recorder, params=NO_DELAY)

        assert len(recorder.seen) == 6
        # ceil(6 / 3) + 1
        assert len(bucket.queries) == 3

    async def test_pages_are_monotonic(self):
        bucket = FakeBucket(rows=make_rows(*([1] * 10)))
        paginator = Paginator(bucket, VIEW, ViewQuerySpec(range=(1, 2), limit=4), NO_DELAY)

        pages = [[row.id for row in rows] async for rows, _ in paginator.pages()]

        assert [len(p) for p in pages] == [4, 4, 2]
        for previous, current in zip(pages, pages[1:], strict=False):
            assert max(previous) < min(current)

    async def test_no_rows_on_boundary_key(self, bucket):
        recorder = Recorder()

        await paginate(bucket, VIEW, ViewQuerySpec(range=(15, 100), limit=2), recorder)

        assert recorder.seen == []
        assert len(bucket.queries) == 1

    async def test_spec_is_not_mutated(self, bucket):
        spec = ViewQuerySpec(range=(10, 100), limit=2)

        await paginate(bucket, VIEW, spec, Recorder(), params=NO_DELAY)

        assert spec.id_range is None
        assert spec.skip is None
        assert spec.stale is None

    async def test_resume_from_cursor(self, bucket):
        recorder = Recorder()

        await paginate(
            bucket,
            VIEW,
            ViewQuerySpec(range=(10, 100), limit=2),
            recorder,
            start_docid="doc-000",
            params=NO_DELAY,
        )

        assert sorted(recorder.seen) == ["doc-001", "doc-002"]
        assert bucket.queries[0].stale is Staleness.NONE

    async def test_action_receives_handle(self, bucket):
        handles = []

        async def action(handle, row):
            handles.append(handle)

        await paginate(bucket, VIEW, ViewQuerySpec(range=(10, 100), limit=5), action)

        assert handles == [bucket, bucket, bucket]


class TestErrors:
    """Failure of queries and actions."""

    async def test_action_error_carries_page_cursor(self):
        bucket = FakeBucket(rows=make_rows(*([1] * 6)))

        async def action(handle, row):
            if row.id == "doc-004":
                msg = "boom"
                raise RuntimeError(msg)

        with pytest.raises(DalError) as exc_info:
            await paginate(
                bucket, VIEW, ViewQuerySpec(range=(1, 1), limit=3), action, params=NO_DELAY
            )

        error = exc_info.value
        assert error.kind is ErrorKind.ACTION
        assert error.cursor == "doc-002"
        assert isinstance(error.source, RuntimeError)
        assert len(bucket.queries) == 2

    async def test_action_error_on_first_page_has_no_cursor(self, bucket):
        async def action(handle, row):
            raise ValueError(row.id)

        with pytest.raises(DalError) as exc_info:
            await paginate(bucket, VIEW, ViewQuerySpec(range=(10, 100), limit=2), action)

        assert exc_info.value.kind is ErrorKind.ACTION
        assert exc_info.value.cursor is None

    async def test_every_action_settles_before_error(self):
        bucket = FakeBucket(rows=make_rows(*([1] * 4)))
        finished = []

        async def action(handle, row):
            if row.id in {"doc-000", "doc-002"}:
                msg = f"failed {row.id}"
                raise RuntimeError(msg)
            await asyncio.sleep(0.001)
            finished.append(row.id)

        with pytest.raises(DalError) as exc_info:
            await paginate(bucket, VIEW, ViewQuerySpec(range=(1, 1), limit=4), action)

        assert str(exc_info.value.source) == "failed doc-000"
        assert sorted(finished) == ["doc-001", "doc-003"]

    async def test_several_failures_are_logged(self, bucket, caplog):
        async def action(handle, row):
            raise ValueError(row.id)

        with caplog.at_level(logging.WARNING), pytest.raises(DalError):
            await paginate(bucket, VIEW, ViewQuerySpec(range=(10, 100), limit=2), action)

        assert "2 of 2 actions failed on page 1" in caplog.messages

    async def test_query_error_propagates_unchanged(self, bucket):
        error = StoreError("connection reset")
        bucket.fail("VIEW", error)
        recorder = Recorder()

        with pytest.raises(StoreError) as exc_info:
            await paginate(bucket, VIEW, ViewQuerySpec(range=(10, 100), limit=2), recorder)

        assert exc_info.value is error
        assert recorder.seen == []

    async def test_missing_range_is_rejected(self, bucket):
        with pytest.raises(DalError) as exc_info:
            await paginate(bucket, VIEW, ViewQuerySpec(limit=2), Recorder())

        assert exc_info.value.kind is ErrorKind.INVALID_INPUT
        assert bucket.queries == []


class TestParams:
    """Pagination parameters."""

    def test_default_delay(self):
        assert PaginationParams().delay == pytest.approx(0.2)

    async def test_max_pages_stops_early(self):
        bucket = FakeBucket(rows=make_rows(*([1] * 10)))
        recorder = Recorder()

        await paginate(
            bucket,
            VIEW,
            ViewQuerySpec(range=(1, 1), limit=2),
            recorder,
            params=PaginationParams(delay=0, max_pages=2),
        )

        assert len(recorder.seen) == 4
        assert len(bucket.queries) == 2

    async def test_concurrency_caps_in_flight_actions(self):
        bucket = FakeBucket(rows=make_rows(*([1] * 8)))
        in_flight = 0
        peak = 0

        async def action(handle, row):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.001)
            in_flight -= 1

        await paginate(
            bucket,
            VIEW,
            ViewQuerySpec(range=(1, 1), limit=8),
            action,
            params=PaginationParams(delay=0, concurrency=2),
        )

        assert peak == 2

    async def test_logs_rest_and_completion(self, bucket, caplog):
        logger = logging.getLogger("test.pagination")

        with caplog.at_level(logging.DEBUG, logger="test.pagination"):
            await paginate(
                bucket,
                VIEW,
                ViewQuerySpec(range=(10, 100), limit=2),
                Recorder(),
                params=PaginationParams(delay=0.001),
                logger=logger,
            )

        messages = [r.getMessage() for r in caplog.records]
        assert any(m.startswith("Resting") for m in messages)
        assert "Pagination done after 2 pages" in messages


class TestPaginator:
    """Paginator construction."""

    def test_boundary_and_page_size_from_spec(self, bucket):
        paginator = Paginator(bucket, VIEW, ViewQuerySpec(range=(["a", 1], ["a", 9]), limit=25))

        assert paginator.boundary_key == ["a", 1]
        assert paginator.page_size == 25


class TestCursor:
    """Cursor state."""

    def test_advance(self):
        cursor = ViewCursor().advance("doc-9")

        assert cursor.start_docid == "doc-9"
        assert cursor.page == 2
