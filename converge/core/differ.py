"""
State differ: desired graph vs. last-applied records -> changeset.
"""
import logging
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional

from converge.core.graph import ResourceGraph
from converge.core.scheduler import topological_order
from converge.errors import DeclarationError, PreventDestroyError
from converge.expressions import (
    SPLAT,
    UNKNOWN,
    EvalContext,
    ExpressionError,
    ResourceRef,
    contains_unknown,
    evaluate_value,
)
from converge.models.change import Action, AttributeDelta, Change
from converge.models.resource import ResourceNode
from converge.models.state import AppliedRecord, StateSnapshot
from converge.providers.base import ResourceSchema

logger = logging.getLogger(__name__)

SchemaLookup = Callable[[str], ResourceSchema]


class _Known:
    """What planning knows about a node's values; partial for pending creates."""

    def __init__(self, values: Dict[str, Any], complete: bool):
        self.values = values
        self.complete = complete

    def get(self, address: str, attribute: str) -> Any:
        if attribute in self.values:
            return self.values[attribute]
        if self.complete:
            raise ExpressionError(f"{address} has no attribute '{attribute}'")
        return UNKNOWN


def make_lookup(graph: ResourceGraph, read: Callable[[str, str], Any]) -> Callable[[ResourceRef], Any]:
    """Build a reference resolver; *read(address, attribute)* fetches one value."""

    def lookup(ref: ResourceRef) -> Any:
        if ref.key == SPLAT:
            return [read(address, ref.attribute) for address in graph.instances(ref.base)]
        return read(ref.address, ref.attribute)

    return lookup


def _ordered_keys(*mappings: Dict[str, Any]) -> List[str]:
    seen: Dict[str, None] = {}
    for m in mappings:
        for k in m:
            seen.setdefault(k, None)
    return list(seen)


def _inherits_cbd(graph: ResourceGraph, node: ResourceNode) -> bool:
    """create_before_destroy on any dependent forces it on its dependencies."""
    if node.lifecycle.create_before_destroy:
        return True
    return any(graph[d].lifecycle.create_before_destroy for d in graph.descendants(node.address))


def _still_points_at(change: Change, address: str) -> bool:
    return (
        change.action == Action.UPDATE
        and change.record is not None
        and address in change.record.dependencies
    )


def _create_first_for_updates(graph: ResourceGraph, changes: Dict[str, Change]) -> None:
    """
    A replaced node whose dependents are updated in place must create its
    new object first: until those updates run they still point at the old
    one, which therefore cannot be deleted yet.
    """
    for address in graph.nodes:
        change = changes[address]
        if change.action != Action.REPLACE or change.create_before_destroy:
            continue
        users = [u for u in graph.dependents(address) if _still_points_at(changes[u], address)]
        if not users:
            continue
        logger.debug("%s: create before destroy, %s updated in place", address, ", ".join(users))
        change.create_before_destroy = True
        # same rule as a declared create_before_destroy: it reaches replaced dependencies
        for dep in graph.ancestors(address):
            if changes[dep].action == Action.REPLACE:
                changes[dep].create_before_destroy = True


def diff_node(
    node: ResourceNode,
    record: Optional[AppliedRecord],
    planned: Dict[str, Any],
    schema: ResourceSchema,
    computed_only: FrozenSet[str],
) -> Change:
    if record is None:
        return Change(node.address, node.resource_type, Action.CREATE, node=node, planned=planned)

    if record.resource_type != node.resource_type:
        delta = [AttributeDelta("type", record.resource_type, node.resource_type, forces_replacement=True)]
        return Change(
            node.address, node.resource_type, Action.REPLACE,
            delta=delta, node=node, record=record, planned=planned,
        )

    ignored = set(computed_only) | set(schema.computed) | set(node.lifecycle.ignore_changes)
    for attr in node.lifecycle.ignore_changes:
        if attr in record.attributes:
            planned[attr] = record.attributes[attr]

    delta: List[AttributeDelta] = []
    for key in _ordered_keys(planned, record.attributes):
        if key in ignored:
            continue
        before = record.attributes.get(key)
        after = planned.get(key)
        if contains_unknown(after) or before != after:
            delta.append(AttributeDelta(key, before, after, forces_replacement=not schema.supports_update(key)))

    if not delta:
        action = Action.NOOP
    elif any(d.forces_replacement for d in delta):
        action = Action.REPLACE
    else:
        action = Action.UPDATE
    return Change(node.address, node.resource_type, action, delta=delta, node=node, record=record, planned=planned)


def compute_changes(
    graph: ResourceGraph,
    snapshot: StateSnapshot,
    schema_for: SchemaLookup,
    computed_only: Iterable[str] = (),
) -> List[Change]:
    """
    Compare every desired node with its applied record.

    Nodes are visited in dependency order so that references to nodes being
    created or replaced resolve to UNKNOWN, which then shows up as a change
    in the consumer.  Records with no desired node become destroys.
    """
    computed_only = frozenset(computed_only)
    known: Dict[str, _Known] = {}

    def read(address: str, attribute: str) -> Any:
        return known[address].get(address, attribute)

    lookup = make_lookup(graph, read)
    changes: Dict[str, Change] = {}

    for address in topological_order(graph):
        node = graph[address]
        record = snapshot.get(address)
        ctx = EvalContext(
            variables=graph.variables, count_index=node.index, address=address, lookup=lookup
        )
        try:
            planned = evaluate_value(node.attributes, ctx)
        except ExpressionError as exc:
            raise DeclarationError(f"{address}: {exc}", node.source_file) from exc

        change = diff_node(node, record, planned, schema_for(node.resource_type), computed_only)
        if record is not None and record.deposed:
            change.deposed = list(record.deposed)

        if change.action == Action.REPLACE:
            if node.lifecycle.prevent_destroy:
                raise PreventDestroyError(address, "replace")
            change.create_before_destroy = _inherits_cbd(graph, node)

        if change.action == Action.NOOP:
            known[address] = _Known(record.values(), complete=True)
        elif change.action == Action.UPDATE:
            values = record.values()
            values.update(change.planned)
            known[address] = _Known(values, complete=True)
        else:
            known[address] = _Known(dict(change.planned), complete=False)

        changes[address] = change

    _create_first_for_updates(graph, changes)

    ordered = [changes[a] for a in graph.nodes]
    removed = [r for r in snapshot.resources.values() if r.address not in graph]
    for record in sorted(removed, key=lambda r: (r.order, r.address)):
        ordered.append(
            Change(
                record.address, record.resource_type, Action.DESTROY,
                record=record, deposed=list(record.deposed),
            )
        )

    logger.debug(
        "changeset: %s",
        ", ".join(f"{c.address}={c.action.value}" for c in ordered if not c.is_noop) or "no changes",
    )
    return ordered
