"""View query builder.

Turns a declarative `ViewQuerySpec` into a concrete `ViewQuery` with
deterministic defaults: stop on error, ascending order, and an index
refreshed before answering.
"""

import json

from pydantic import BaseModel, Field

from couch_dal.datatypes import JsonValue
from couch_dal.params import ErrorMode, Order, Staleness, ViewQuerySpec


class ViewQuery(BaseModel, frozen=True):
    """A fully resolved view query against one design document view."""

    design_doc: str
    view_name: str

    stale: Staleness = Staleness.BEFORE
    order: Order = Order.ASCENDING
    on_error: ErrorMode = ErrorMode.STOP

    group: bool | None = None
    group_level: int | None = None
    key: JsonValue = None
    keys: list[JsonValue] | None = None
    include_docs: bool | None = None
    full_set: bool | None = None
    limit: int | None = None
    skip: int | None = None

    startkey: JsonValue = None
    endkey: JsonValue = None
    inclusive_end: bool | None = None
    startkey_docid: str | None = None
    endkey_docid: str | None = None

    custom: dict[str, str] = Field(default_factory=dict)

    def to_options(self) -> dict[str, str]:
        """Render the query as view REST parameters.

        Keys are JSON encoded. Custom options never override typed ones.
        """
        options: dict[str, str] = {
            "stale": self.stale.value,
            "descending": _flag(self.order is Order.DESCENDING),
            "on_error": self.on_error.value,
        }
        for name in ("group", "include_docs", "full_set", "inclusive_end"):
            value = getattr(self, name)
            if value is not None:
                options[name] = _flag(value)
        for name in ("group_level", "limit", "skip"):
            value = getattr(self, name)
            if value is not None:
                options[name] = str(value)
        for name in ("key", "keys", "startkey", "endkey"):
            value = getattr(self, name)
            if value is not None:
                options[name] = json.dumps(value)
        for name in ("startkey_docid", "endkey_docid"):
            value = getattr(self, name)
            if value is not None:
                options[name] = value
        return {**self.custom, **options}


def _flag(value: bool) -> str:
    return "true" if value else "false"


def new_view_query(
    design_doc: str,
    view_name: str,
    spec: ViewQuerySpec | None = None,
) -> ViewQuery:
    """Build a view query from `spec`, applying options in a fixed order."""
    fields: dict[str, object] = {"design_doc": design_doc, "view_name": view_name}
    if spec is None:
        return ViewQuery.model_validate(fields)

    # Scalar options first.
    for name in (
        "stale",
        "order",
        "group",
        "group_level",
        "key",
        "keys",
        "include_docs",
        "full_set",
        "on_error",
        "limit",
    ):
        value = getattr(spec, name)
        if value is not None:
            fields[name] = value

    if spec.range is not None:
        fields["startkey"] = spec.range[0]
        fields["endkey"] = spec.range[1]
        fields["inclusive_end"] = spec.range[2] if len(spec.range) == 3 else True  # noqa: PLR2004

    if spec.id_range is not None:
        fields["startkey_docid"] = spec.id_range[0]
        if len(spec.id_range) == 2:  # noqa: PLR2004
            fields["endkey_docid"] = spec.id_range[1]

    if spec.skip is not None:
        fields["skip"] = spec.skip

    fields["custom"] = dict(spec.custom)
    return ViewQuery.model_validate(fields)
