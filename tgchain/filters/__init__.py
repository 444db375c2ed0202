"""Filter-query predicates for the dispatch core."""

from tgchain.filters.query import (
    L1_SHORTCUTS,
    L2_SHORTCUTS,
    UPDATE_KINDS,
    matches_filter_query,
    parse,
    preprocess,
    update_kinds,
)

__all__ = [
    "L1_SHORTCUTS",
    "L2_SHORTCUTS",
    "UPDATE_KINDS",
    "matches_filter_query",
    "parse",
    "preprocess",
    "update_kinds",
]
