"""Filter queries: declarative strings compiled into update predicates.

A query has up to three colon-separated levels, e.g. ``message:entities:url``.
The first level names an update kind, the second a field of that object and
the third a property of the field value. Empty levels and a few names act as
shortcuts that expand into several queries.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from functools import lru_cache
from typing import TYPE_CHECKING, Any, get_args

from aiogram.types import Update
from pydantic import BaseModel

from tgchain.errors import FilterQueryError

if TYPE_CHECKING:
    from tgchain.context import Context

L1_SHORTCUTS: dict[str, tuple[str, ...]] = {
    "": ("message", "channel_post"),
    "msg": ("message", "channel_post"),
    "edit": ("edited_message", "edited_channel_post"),
}

L2_SHORTCUTS: dict[str, tuple[str, ...]] = {
    "": ("entities", "caption_entities"),
    "media": ("photo", "video"),
    "file": (
        "photo",
        "animation",
        "audio",
        "document",
        "video",
        "video_note",
        "voice",
        "sticker",
    ),
}

FilterPath = tuple[str, ...]


def _model_of(annotation: Any) -> type[BaseModel] | None:
    if isinstance(annotation, type) and issubclass(annotation, BaseModel):
        return annotation
    for arg in get_args(annotation):
        if (model := _model_of(arg)) is not None:
            return model
    return None


def _field_names(model: type[BaseModel]) -> dict[str, str]:
    """Map both field names and their API aliases (``from``) to field names."""
    names = {}
    for name, info in model.model_fields.items():
        names[name] = name
        if info.alias:
            names[info.alias] = name
    return names


UPDATE_KINDS: dict[str, type[BaseModel] | None] = {
    name: _model_of(info.annotation)
    for name, info in Update.model_fields.items()
    if name != "update_id"
}


def parse(query: str | Sequence[str]) -> list[FilterPath]:
    queries = [query] if isinstance(query, str) else list(query)
    return [tuple(q.split(":")) for q in queries]


def _l2_names(l1: str) -> dict[str, str]:
    model = UPDATE_KINDS.get(l1)
    return _field_names(model) if model is not None else {}


def preprocess(path: FilterPath) -> list[FilterPath]:
    """Expand shortcuts in one parsed query and validate the result."""
    if len(path) > 3:
        raise FilterQueryError(
            f"Cannot filter further than three levels, "
            f"':{':'.join(path[3:])}' is invalid!"
        )
    l1, l2, l3 = (list(path) + [None, None])[:3]

    if l1 in L1_SHORTCUTS and (l1 or l2 or l3):
        targets = [(target, l2, l3) for target in L1_SHORTCUTS[l1]]
        if l2 is not None and not (l2 in L2_SHORTCUTS and (l2 or l3)):
            # e.g. `:new_chat_members` must not expand to channel posts
            targets = [t for t in targets if l2 in _l2_names(t[0])]
    else:
        targets = [(l1, l2, l3)]

    expanded = []
    for t1, t2, t3 in targets:
        if t2 is not None and t2 in L2_SHORTCUTS and (t2 or t3):
            expanded.extend((t1, s, t3) for s in L2_SHORTCUTS[t2] if s in _l2_names(t1))
        else:
            expanded.append((t1, t2, t3))

    if not expanded:
        raise FilterQueryError(
            f"Shortcuts in '{':'.join(path)}' do not expand to any valid filter query"
        )
    return [_check(path, p) for p in expanded]


def _check(original: FilterPath, path: tuple[str | None, ...]) -> FilterPath:
    l1, l2, l3 = path
    query = ":".join(original)
    if not l1 or l1 not in UPDATE_KINDS:
        permitted = ", ".join(f"'{k}'" for k in UPDATE_KINDS)
        raise FilterQueryError(
            f"Invalid L1 filter '{l1}' given in '{query}'. Permitted values are: {permitted}."
        )
    if l2 is None:
        return (l1,)

    names = _l2_names(l1)
    if l2 not in names:
        raise FilterQueryError(f"Invalid L2 filter '{l2}' given in '{query}'.")
    if l3 is None:
        return (l1, names[l2])
    if not l3:
        raise FilterQueryError(f"Empty L3 filter given in '{query}'.")
    return (l1, names[l2], l3)


def _test_maybe_list(value: Any, pred: Callable[[Any], bool]) -> bool:
    if isinstance(value, (list, tuple)):
        return any(x is not None and pred(x) for x in value)
    return value is not None and pred(value)


def _l3_matches(value: Any, l3: str, ctx: Context) -> bool:
    if l3 == "me":
        return _test_maybe_list(value, lambda u: getattr(u, "id", None) == ctx.me.id)
    return _test_maybe_list(
        value, lambda e: bool(getattr(e, l3, None)) or getattr(e, "type", None) == l3
    )


@lru_cache(maxsize=None)
def _compile(queries: tuple[str, ...]) -> Callable[[Context], bool]:
    tree: dict[str, dict[str, set[str]]] = {}
    for path in parse(queries):
        for l1, *rest in preprocess(path):
            subtree = tree.setdefault(l1, {})
            if rest:
                l3s = subtree.setdefault(rest[0], set())
                if len(rest) > 1:
                    l3s.add(rest[1])

    def predicate(ctx: Context) -> bool:
        for l1, subtree in tree.items():
            obj = getattr(ctx.update, l1, None)
            if obj is None:
                continue
            if not subtree:
                return True
            for l2, l3s in subtree.items():
                value = getattr(obj, l2, None)
                if value is None:
                    continue
                if not l3s or any(_l3_matches(value, l3, ctx) for l3 in l3s):
                    return True
        return False

    return predicate


def matches_filter_query(query: str | Sequence[str]) -> Callable[[Context], bool]:
    """Compile ``query`` (or a list of queries, OR-combined) into a predicate."""
    queries = (query,) if isinstance(query, str) else tuple(query)
    if not queries:
        raise FilterQueryError("Empty filter query given")
    return _compile(queries)


def update_kinds(query: str | Sequence[str]) -> set[str]:
    """Return the update kinds a query can match."""
    return {p[0] for path in parse(query) for p in preprocess(path)}
