"""Secondary index lifecycle: define, recreate on conflict, build deferred.

Running the same definitions against a live cluster twice is safe: an
index that already exists is dropped and defined again, and a deferred
build of indexes that are already built is ignored.
"""

import asyncio
import logging
from collections.abc import Iterable, Mapping, Sequence
from typing import ClassVar

from couch_dal.errors import DalError, ErrorKind, classify
from couch_dal.params import IndexDefinition
from couch_dal.protocols import QueryExecutor

_logger = logging.getLogger(__name__)


def _failure(message: str, error: Exception) -> DalError:
    return DalError(
        f"{message}: {error}",
        kind=classify(error),
        source=error,
        code=getattr(error, "code", None),
    )


def _first_error(results: Sequence[object]) -> BaseException | None:
    return next((r for r in results if isinstance(r, BaseException)), None)


def drop_statement(index: IndexDefinition) -> str:
    """Statement dropping `index` from its bucket."""
    return f"DROP INDEX `{index.bucket}`.`{index.name}` USING GSI"


def build_statement(bucket: str, names: Iterable[str]) -> str:
    """Statement building every deferred index in `names` on `bucket` at once."""
    joined = ",".join(f"`{name}`" for name in names)
    return f"BUILD INDEX ON `{bucket}`({joined}) USING GSI"


class IndexManager:
    """Defines and builds secondary indexes across buckets.

    No index state is kept between calls; conflicts are resolved against
    the server each time.
    """

    __slots__: ClassVar[tuple[str, str]] = ("_buckets", "_logger")

    _buckets: Mapping[str, QueryExecutor]
    _logger: logging.Logger

    def __init__(
        self,
        buckets: Mapping[str, QueryExecutor],
        logger: logging.Logger | None = None,
    ) -> None:
        self._buckets = buckets
        self._logger = logger or _logger

    def _bucket(self, name: str) -> QueryExecutor:
        try:
            return self._buckets[name]
        except KeyError:
            msg = f"Bucket '{name}' is not open"
            raise DalError(msg, kind=ErrorKind.NOT_FOUND) from None

    async def drop_index(self, index: IndexDefinition) -> None:
        """Drop `index` from its bucket."""
        statement = drop_statement(index)
        self._logger.info(statement)
        _ = await self._bucket(index.bucket).execute(statement)

    async def define_index(self, index: IndexDefinition) -> None:
        """Define `index`, replacing an existing index of the same name.

        At most one drop and redefine is attempted.
        """
        bucket = self._bucket(index.bucket)
        statement = index.render()
        self._logger.info(statement)
        try:
            _ = await bucket.execute(statement)
        except Exception as e:
            if classify(e) is not ErrorKind.CONFLICT:
                msg = f"Failed to define index `{index.name}` on `{index.bucket}`"
                raise _failure(msg, e) from e
            self._logger.warning("%s Trying to drop it.", e)
        else:
            return

        try:
            await self.drop_index(index)
            _ = await bucket.execute(statement)
        except Exception as e:
            msg = f"Failed to recreate index `{index.name}` on `{index.bucket}`"
            raise _failure(msg, e) from e
        self._logger.info("Index `%s` recreated on `%s`", index.name, index.bucket)

    async def define_indexes(
        self, indexes: Sequence[IndexDefinition]
    ) -> tuple[list[IndexDefinition], list[BaseException]]:
        """Define all indexes concurrently.

        Returns the indexes that were defined and the errors of those that
        were not. A failing index never interrupts the others.
        """
        results = await asyncio.gather(
            *(self.define_index(index) for index in indexes),
            return_exceptions=True,
        )
        defined: list[IndexDefinition] = []
        errors: list[BaseException] = []
        for index, result in zip(indexes, results, strict=True):
            if isinstance(result, BaseException):
                errors.append(result)
            else:
                defined.append(index)
        return defined, errors

    async def trigger_deferred_builds(self, indexes: Iterable[IndexDefinition]) -> None:
        """Build deferred indexes with one statement per bucket."""
        groups: dict[str, list[str]] = {}
        for index in indexes:
            if index.defer_build:
                groups.setdefault(index.bucket, []).append(index.name)

        if not groups:
            self._logger.info("No deferred indexes")
            return

        results = await asyncio.gather(
            *(self._build_bucket(bucket, names) for bucket, names in groups.items()),
            return_exceptions=True,
        )
        if (error := _first_error(results)) is not None:
            raise error

    async def _build_bucket(self, bucket: str, names: list[str]) -> None:
        statement = build_statement(bucket, names)
        self._logger.info(statement)
        try:
            _ = await self._bucket(bucket).execute(statement)
        except Exception as e:
            if classify(e) is ErrorKind.ALREADY_BUILT:
                self._logger.warning("%s", e)
                return
            msg = f"Failed to build indexes {names} on `{bucket}`"
            raise _failure(msg, e) from e

    async def build(self, indexes: Sequence[IndexDefinition]) -> None:
        """Define every index, then build the deferred ones.

        Deferred indexes that were defined are built even when a sibling
        failed to define; the first definition error is raised afterwards.
        Indexes already built are never rolled back.
        """
        defined, errors = await self.define_indexes(indexes)
        try:
            await self.trigger_deferred_builds(defined)
        except DalError:
            if not errors:
                raise
            self._logger.exception("Deferred build failed after definition errors")
        if errors:
            raise errors[0]


async def build_indexes(
    buckets: Mapping[str, QueryExecutor],
    indexes: Sequence[IndexDefinition],
    *,
    logger: logging.Logger | None = None,
) -> None:
    """Define `indexes` on their buckets and build the deferred ones."""
    await IndexManager(buckets, logger=logger).build(indexes)
