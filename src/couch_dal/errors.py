"""Error types for store and index operations."""

from collections.abc import Sequence
from enum import StrEnum
from typing import final

from pydantic import BaseModel

INDEX_EXISTS_CODE = 4300
"""Query service error code for "index already exists"."""

ALREADY_BUILT_MARKER = "is already built"


class ErrorKind(StrEnum):
    """Classification of store errors."""

    CONNECTION = "connection"
    NOT_FOUND = "not_found"
    INVALID_INPUT = "invalid_input"
    TIMEOUT = "timeout"
    CONFLICT = "conflict"
    ALREADY_BUILT = "already_built"
    ACTION = "action"
    SUBDOC = "subdoc"
    PROVIDER = "provider"


class SubdocError(BaseModel, frozen=True):
    """Failure of a single operation inside a sub-document mutation."""

    index: int | None = None
    """Position of the failing spec in the mutation, when known."""

    path: str
    """Document path the spec targeted."""

    message: str


@final
class DalError(Exception):
    """Base error for all store operations."""

    __slots__ = ("code", "cursor", "errors", "kind", "message", "source")

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.PROVIDER,
        source: BaseException | None = None,
        *,
        code: int | None = None,
        cursor: str | None = None,
        errors: Sequence[SubdocError] = (),
    ) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.source = source
        self.code = code
        self.cursor = cursor
        self.errors = list(errors)

    def __repr__(self) -> str:
        return f"DalError({self.message!r}, kind={self.kind!r})"


def classify(error: BaseException) -> ErrorKind:
    """Classify an error raised by a query executor.

    Executors are expected to raise `DalError` with the right kind, but
    third-party ones may raise their own exceptions; those are classified
    by their `code` attribute and message.
    """
    if isinstance(error, DalError) and error.kind not in (
        ErrorKind.PROVIDER,
        ErrorKind.CONNECTION,
    ):
        return error.kind
    code = getattr(error, "code", None)
    if code == INDEX_EXISTS_CODE:
        return ErrorKind.CONFLICT
    if ALREADY_BUILT_MARKER in str(error):
        return ErrorKind.ALREADY_BUILT
    if isinstance(error, DalError):
        return error.kind
    if isinstance(error, TimeoutError):
        return ErrorKind.TIMEOUT
    return ErrorKind.PROVIDER
