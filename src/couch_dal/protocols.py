"""Core protocols for store access."""

from collections.abc import Awaitable
from typing import TYPE_CHECKING, Protocol, Self, TypeVar, runtime_checkable

from couch_dal.datatypes import QueryResult, Row

if TYPE_CHECKING:
    from couch_dal.query import ViewQuery

H_contra = TypeVar("H_contra", contravariant=True)
Cred_contra = TypeVar("Cred_contra", contravariant=True)
Params_contra = TypeVar("Params_contra", contravariant=True)


@runtime_checkable
class QueryExecutor(Protocol):
    """Protocol for an open handle to one bucket."""

    @property
    def name(self) -> str:
        """Name of the bucket this handle is bound to."""
        ...

    async def execute(self, statement: "ViewQuery | str") -> QueryResult:
        """Run a view query or a statement against the bucket.

        Raises `DalError` on failure.
        """
        ...


class RowAction(Protocol[H_contra]):
    """Per-row callback applied by a paginated scan."""

    def __call__(self, handle: H_contra, row: Row, /) -> Awaitable[object]: ...


@runtime_checkable
class Provider(Protocol[Cred_contra, Params_contra]):
    """Protocol for provider lifecycle management."""

    @classmethod
    async def connect(cls, credentials: Cred_contra, params: Params_contra) -> Self:
        """Establish connection to the external service."""
        ...

    async def disconnect(self) -> None:
        """Release resources and close connections."""
        ...
