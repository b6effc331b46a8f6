"""
Engine: plan a changeset from declarations and state, then apply it.
"""
import logging
import time
from collections import Counter
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional

from converge.config import Settings
from converge.core.differ import compute_changes, make_lookup
from converge.core.executor import ApplyResult, Executor, state_reader
from converge.core.graph import ResourceGraph, build_graph
from converge.core.scheduler import Schedule, build_schedule
from converge.errors import (
    DeclarationError,
    PartialApplyError,
    PreventDestroyError,
    StateError,
)
from converge.expressions import EvalContext, ExpressionError, evaluate_value
from converge.models.change import Action, Change
from converge.models.declaration import Configuration
from converge.providers.base import Provider
from converge.state.store import StateStore

logger = logging.getLogger(__name__)

_SUMMARY_ORDER = [Action.CREATE, Action.UPDATE, Action.REPLACE, Action.DESTROY]


@dataclass
class Plan:
    graph: ResourceGraph
    changes: List[Change] = field(default_factory=list)
    schedule: Schedule = field(default_factory=Schedule)
    destroy: bool = False
    # State the plan was computed against; apply refuses to run on anything else.
    lineage: str = ""
    serial: int = 0

    @property
    def pending(self) -> List[Change]:
        return [c for c in self.changes if not c.is_noop]

    @property
    def has_changes(self) -> bool:
        return bool(self.pending)

    def summary(self) -> Dict[str, int]:
        counts = Counter(c.action for c in self.pending)
        return {a.value: counts.get(a, 0) for a in _SUMMARY_ORDER}

    def to_dict(self) -> dict:
        return {
            "destroy": self.destroy,
            "lineage": self.lineage,
            "serial": self.serial,
            "summary": self.summary(),
            "changes": [c.to_dict() for c in self.changes],
            "steps": [str(s) for s in self.schedule],
        }


# ------------------------------------------------------------------ refresh
def refresh(
    store: StateStore,
    provider: Provider,
    settings: Settings,
    sleep: Callable[[float], None] = time.sleep,
) -> List[str]:
    """
    Re-read every applied record from the provider.

    Records whose object no longer exists are dropped so the next plan
    creates them again.  Returns the dropped addresses.
    """
    executor = Executor(provider, store, settings, sleep=sleep)
    dropped: List[str] = []
    for record in store.records():
        if not provider.supports(record.resource_type):
            logger.warning("cannot refresh %s: %s has no type '%s'", record.address, provider.name, record.resource_type)
            continue
        rt = provider.resource_type(record.resource_type)
        live = executor.call(f"read {record.address}", rt.read, record.resource_id)
        if live is None:
            logger.warning("%s (%s) no longer exists; dropping it from state", record.address, record.resource_id)
            store.remove(record.address)
            dropped.append(record.address)
            continue
        attributes = record.attributes if live.attributes is None else live.attributes
        updated = replace(record, attributes=attributes, outputs=dict(live.outputs))
        if updated != record:
            store.put(updated)
    return dropped


# ------------------------------------------------------------------ plan
def _check_types(graph: ResourceGraph, provider: Provider) -> None:
    for node in graph:
        if not provider.supports(node.resource_type):
            raise DeclarationError(
                f"{node.address}: provider '{provider.name}' has no resource type '{node.resource_type}'",
                node.source_file,
            )


def plan(
    config: Configuration,
    store: StateStore,
    provider: Provider,
    settings: Settings,
    variables: Optional[Dict[str, Any]] = None,
    destroy: bool = False,
    refresh_state: bool = False,
    sleep: Callable[[float], None] = time.sleep,
) -> Plan:
    """
    Build the graph, diff it against state and schedule the changes.

    Declaration, reference and cycle errors are raised here, before any
    provider call is made.  With *destroy* the desired graph is empty, so
    every applied record becomes a destroy.
    """
    graph = build_graph(config, variables)
    _check_types(graph, provider)

    if refresh_state:
        with store.run_lock("refresh"):
            refresh(store, provider, settings, sleep=sleep)

    target = graph
    if destroy:
        for node in graph:
            if node.lifecycle.prevent_destroy and node.address in store:
                raise PreventDestroyError(node.address, "destroy")
        target = ResourceGraph([], graph.variables)

    changes = compute_changes(target, store.snapshot, provider.schema, settings.computed_only)
    schedule = build_schedule(target, changes)
    result = Plan(
        graph=target,
        changes=changes,
        schedule=schedule,
        destroy=destroy,
        lineage=store.snapshot.lineage,
        serial=store.snapshot.serial,
    )
    logger.info(
        "plan: %s",
        ", ".join(f"{n} to {a}" for a, n in result.summary().items() if n) or "no changes",
    )
    return result


# ------------------------------------------------------------------ apply
def resolve_outputs(graph: ResourceGraph, store: StateStore) -> Dict[str, Any]:
    """Evaluate root outputs against the applied records."""
    lookup = make_lookup(graph, state_reader(store))
    values: Dict[str, Any] = {}
    for name, output in graph.outputs.items():
        ctx = EvalContext(variables=graph.variables, address=f"output.{name}", lookup=lookup)
        try:
            values[name] = evaluate_value(output.value, ctx)
        except ExpressionError as exc:
            raise DeclarationError(f"output.{name}: {exc}", output.source_file) from exc
    return values


def apply(
    plan: Plan,
    store: StateStore,
    provider: Provider,
    settings: Settings,
    sleep: Callable[[float], None] = time.sleep,
) -> ApplyResult:
    """
    Run *plan* under the state lock.

    There is no rollback: nodes that succeeded stay in state.  When any
    node fails or is skipped a PartialApplyError is raised at the end of
    the run, carrying the ApplyResult as ``.result``.
    """
    with store.run_lock("destroy" if plan.destroy else "apply"):
        store.reload()
        snapshot = store.snapshot
        if (snapshot.lineage, snapshot.serial) != (plan.lineage, plan.serial):
            raise StateError(
                f"state changed since the plan was made (serial {plan.serial} -> {snapshot.serial}); plan again"
            )

        executor = Executor(provider, store, settings, sleep=sleep)
        result = executor.run(plan.graph, plan.changes, plan.schedule)
        if result.ok:
            result.outputs = resolve_outputs(plan.graph, store)
            if result.outputs != store.snapshot.outputs:
                store.set_outputs(result.outputs)

    if not result.ok:
        err = PartialApplyError(result.succeeded, result.errors, result.skipped)
        err.result = result
        raise err
    logger.info("apply complete: %d node(s) changed", len(result.succeeded))
    return result
