"""Context types for paginated scans.

Contexts carry state needed to resume reading from a specific position.
They only track *where* to resume, not *how much* to read (that's in Params).
"""

from pydantic import BaseModel, Field


class ViewCursor(BaseModel, frozen=True):
    """Position of a paginated view scan.

    Uses document id continuation within the boundary key, which stays
    correct under concurrent inserts and deletes, unlike offsets.
    """

    start_docid: str | None = None
    """Last processed document id. The next page starts just after it."""

    page: int = Field(default=1, ge=1)
    """Number of the page this cursor will fetch."""

    def advance(self, docid: str) -> "ViewCursor":
        """Return the cursor for the page following `docid`."""
        return ViewCursor(start_docid=docid, page=self.page + 1)
