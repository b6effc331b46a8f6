"""
Dependency scheduler.

Orders graph nodes topologically (ties broken by declaration order) and
turns a changeset into a DAG of steps the executor can run in parallel.
"""
import heapq
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, Iterator, List, Optional, Set, Tuple

from converge.core.graph import ResourceGraph
from converge.errors import CycleError
from converge.models.change import Action, Change


def topological_order(graph: ResourceGraph) -> List[str]:
    """Kahn's algorithm; among ready nodes the earliest declared goes first."""
    remaining = {a: len(graph.dependencies(a)) for a in graph.nodes}
    ready = [(graph[a].order, a) for a, n in remaining.items() if n == 0]
    heapq.heapify(ready)
    order: List[str] = []
    while ready:
        _, address = heapq.heappop(ready)
        order.append(address)
        for dependent in graph.dependents(address):
            remaining[dependent] -= 1
            if remaining[dependent] == 0:
                heapq.heappush(ready, (graph[dependent].order, dependent))
    if len(order) != len(graph):
        cycle = graph.find_cycle() or sorted(a for a, n in remaining.items() if n > 0)
        raise CycleError(cycle)
    return order


def levels(graph: ResourceGraph) -> List[List[str]]:
    """Group nodes into layers; every node in a layer can run in parallel."""
    depth: Dict[str, int] = {}
    for address in topological_order(graph):
        deps = graph.dependencies(address)
        depth[address] = 1 + max((depth[d] for d in deps), default=-1)
    layers: List[List[str]] = [[] for _ in range(max(depth.values(), default=-1) + 1)]
    for address in graph.nodes:
        layers[depth[address]].append(address)
    return layers


# ------------------------------------------------------------------ steps
class StepKind(str, Enum):
    DESTROY         = "destroy"
    APPLY           = "apply"
    DESTROY_DEPOSED = "destroy-deposed"


_KIND_RANK = {StepKind.DESTROY: 0, StepKind.APPLY: 1, StepKind.DESTROY_DEPOSED: 2}


@dataclass(frozen=True)
class Step:
    kind: StepKind
    address: str

    def __str__(self) -> str:
        return f"{self.kind.value} {self.address}"


@dataclass
class Schedule:
    steps: List[Step] = field(default_factory=list)
    requires: Dict[Step, List[Step]] = field(default_factory=dict)
    # reverse of requires, and each step's index in steps
    _waiting: Dict[Step, List[Step]] = field(default_factory=dict, init=False, repr=False, compare=False)
    _index: Dict[Step, int] = field(default_factory=dict, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        for i, s in enumerate(self.steps):
            self._index[s] = i
            self._waiting.setdefault(s, [])
            for r in self.requires.get(s, []):
                self._waiting.setdefault(r, []).append(s)

    def __iter__(self) -> Iterator[Step]:
        return iter(self.steps)

    def __len__(self) -> int:
        return len(self.steps)

    def dependents(self, step: Step) -> List[Step]:
        """Steps that require *step*, in schedule order."""
        return list(self._waiting.get(step, []))

    def downstream(self, step: Step) -> Set[Step]:
        """Every step that transitively waits on *step*."""
        out: Set[Step] = set()
        frontier = [step]
        while frontier:
            cur = frontier.pop()
            for s in self.dependents(cur):
                if s not in out:
                    out.add(s)
                    frontier.append(s)
        return out

    def position(self, step: Step) -> int:
        return self._index[step]


def _destroy_step(steps: Dict[Tuple[StepKind, str], Step], address: str) -> List[Step]:
    return [
        s for s in (steps.get((StepKind.DESTROY, address)), steps.get((StepKind.DESTROY_DEPOSED, address)))
        if s is not None
    ]


def build_schedule(graph: ResourceGraph, changes: Iterable[Change]) -> Schedule:
    """
    Build the step DAG for *changes*:

    * apply steps wait for the apply steps of their dependencies;
    * a replacement without create_before_destroy destroys the old object
      first, after every old dependent that is also going away;
    * a create_before_destroy replacement creates first and destroys the
      deposed object once every dependent has been re-pointed;
    * destroying a removed node waits for its former dependents.
    """
    changes = [c for c in changes if not c.is_noop]
    by_address: Dict[str, Change] = {c.address: c for c in changes}

    steps: Dict[Tuple[StepKind, str], Step] = {}

    def add(kind: StepKind, address: str) -> None:
        steps[(kind, address)] = Step(kind, address)

    for c in changes:
        if c.action in (Action.CREATE, Action.UPDATE):
            add(StepKind.APPLY, c.address)
        elif c.action == Action.REPLACE:
            add(StepKind.APPLY, c.address)
            add(StepKind.DESTROY_DEPOSED if c.create_before_destroy else StepKind.DESTROY, c.address)
        elif c.action == Action.DESTROY:
            add(StepKind.DESTROY, c.address)
        # a destroy step clears leftover deposed objects itself
        if c.deposed and (StepKind.DESTROY, c.address) not in steps:
            add(StepKind.DESTROY_DEPOSED, c.address)

    # old dependents of each address, from the recorded state
    old_dependents: Dict[str, List[str]] = {}
    for c in changes:
        if c.record is None:
            continue
        for dep in c.record.dependencies:
            old_dependents.setdefault(dep, []).append(c.address)

    requires: Dict[Step, List[Step]] = {s: [] for s in steps.values()}

    def need(step: Step, other: Optional[Step]) -> None:
        if other is not None and other != step and other not in requires[step]:
            requires[step].append(other)

    for (kind, address), step in steps.items():
        if kind == StepKind.APPLY:
            for dep in graph.dependencies(address):
                need(step, steps.get((StepKind.APPLY, dep)))
            need(step, steps.get((StepKind.DESTROY, address)))
            continue

        # destroy and destroy-deposed
        for user in old_dependents.get(address, []):
            for s in _destroy_step(steps, user):
                need(step, s)
            if address not in graph or kind == StepKind.DESTROY_DEPOSED:
                need(step, steps.get((StepKind.APPLY, user)))
            elif user in graph and address not in graph.dependencies(user):
                need(step, steps.get((StepKind.APPLY, user)))
        if kind == StepKind.DESTROY_DEPOSED:
            if by_address[address].action == Action.REPLACE:
                need(step, steps.get((StepKind.APPLY, address)))
            if address in graph:
                for user in graph.dependents(address):
                    need(step, steps.get((StepKind.APPLY, user)))

    def order_key(step: Step) -> Tuple[int, int, str]:
        if step.address in graph:
            pos = graph[step.address].order
        else:
            record = by_address[step.address].record
            pos = len(graph) + (record.order if record else 0)
        return (pos, _KIND_RANK[step.kind], step.address)

    return Schedule(steps=_sort(requires, order_key), requires=requires)


def _sort(requires: Dict[Step, List[Step]], key) -> List[Step]:
    remaining = {s: len(r) for s, r in requires.items()}
    waiting: Dict[Step, List[Step]] = {s: [] for s in requires}
    for s, reqs in requires.items():
        for r in reqs:
            waiting[r].append(s)
    ready = [(key(s), s) for s, n in remaining.items() if n == 0]
    heapq.heapify(ready)
    out: List[Step] = []
    while ready:
        _, step = heapq.heappop(ready)
        out.append(step)
        for s in waiting[step]:
            remaining[s] -= 1
            if remaining[s] == 0:
                heapq.heappush(ready, (key(s), s))
    if len(out) != len(requires):
        raise CycleError([str(s) for s, n in remaining.items() if n > 0])
    return out
