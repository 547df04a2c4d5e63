"""Population plan derivation from content-type schemas.

The plan mirrors the schema's shape and tells the store which attributes to
expand when fetching entries. It is data only; the walker never fetches.

Plan grammar::

    plan      := True | "*" | {attr: node, ...}
    node      := True                                  # media
               | {"fields": [...]}                     # relation, identifying fields only
               | {"populate": plan}                    # embedded fragment
               | {"on": {tag: {"populate": plan}}}     # fragment union

Depth is a bound, not a cycle detector: once it is exhausted the subtree
degrades to ``"*"`` and self-referential fragments nested deeper than the
bound are fetched one level only.
"""

from __future__ import annotations

from typing import Any

from Contentporter.schema import (
    AttributeKind,
    FragmentAttribute,
    FragmentUnionAttribute,
    SchemaLike,
    SchemaRegistry,
)

DEFAULT_DEPTH = 7
FETCH_ALL = "*"
IDENTIFYING_FIELDS = ["id", "documentId", "locale"]

PopulatePlan = Any


def build_population_plan(
    schema: SchemaLike, registry: SchemaRegistry, depth: int = DEFAULT_DEPTH
) -> PopulatePlan:
    if depth <= 0:
        return FETCH_ALL

    plan: dict[str, Any] = {}
    for name, attr in schema.attributes.items():
        kind = attr.kind
        if kind is AttributeKind.MEDIA:
            plan[name] = True
        elif kind is AttributeKind.RELATION:
            plan[name] = {"fields": list(IDENTIFYING_FIELDS)}
        elif kind is AttributeKind.FRAGMENT:
            plan[name] = _fragment_node(attr, registry, depth)
        elif kind is AttributeKind.FRAGMENT_UNION:
            plan[name] = _union_node(attr, registry, depth)

    if not plan:
        return True
    return plan


def _fragment_node(attr: FragmentAttribute, registry: SchemaRegistry, depth: int) -> dict[str, Any]:
    fragment = registry.component(attr.component)
    if fragment is None:
        return {"populate": FETCH_ALL}
    return {"populate": build_population_plan(fragment, registry, depth - 1)}


def _union_node(attr: FragmentUnionAttribute, registry: SchemaRegistry, depth: int) -> dict[str, Any]:
    on: dict[str, Any] = {}
    for tag in attr.components:
        fragment = registry.component(tag)
        if fragment is not None:
            on[tag] = {"populate": build_population_plan(fragment, registry, depth - 1)}
    if not on:
        return {"populate": FETCH_ALL}
    return {"on": on}


def collect_fragments(uid: str, registry: SchemaRegistry, collected: set[str] | None = None) -> set[str]:
    """Return every fragment uid transitively used by ``uid``."""
    if collected is None:
        collected = set()
    schema = registry.get(uid)
    if schema is None:
        return collected
    for attr in schema.attributes.values():
        if attr.kind is AttributeKind.FRAGMENT:
            members = [attr.component]
        elif attr.kind is AttributeKind.FRAGMENT_UNION:
            members = list(attr.components)
        else:
            continue
        for member in members:
            if member not in collected:
                collected.add(member)
                collect_fragments(member, registry, collected)
    return collected
