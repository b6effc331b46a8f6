"""
Resource graph builder.

Expands declarations into ResourceNodes (one per count index), infers
edges from reference expressions and depends_on, and rejects references
to undeclared resources and dependency cycles before anything is planned.
"""
import logging
import re
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple

from converge.errors import CycleError, DeclarationError, UnresolvedReferenceError
from converge.expressions import SPLAT, EvalContext, ResourceRef, evaluate_value, references
from converge.models.declaration import Configuration, Output, ResourceDeclaration
from converge.models.resource import Reference, ResourceNode

logger = logging.getLogger(__name__)

_INSTANCE_RE = re.compile(r"^(?P<base>[^\[\]]+)(?:\[(?P<index>\d+)\])?$")


class ResourceGraph:
    """Directed acyclic graph of resource nodes; edges point at dependencies."""

    def __init__(
        self,
        nodes: List[ResourceNode],
        variables: Optional[Dict[str, Any]] = None,
        outputs: Optional[Dict[str, Output]] = None,
    ):
        self.nodes: Dict[str, ResourceNode] = {
            n.address: n for n in sorted(nodes, key=lambda n: n.order)
        }
        self.variables = dict(variables or {})
        self.outputs = dict(outputs or {})
        self._deps: Dict[str, List[str]] = {a: n.dependencies for a, n in self.nodes.items()}
        self._dependents: Dict[str, List[str]] = {a: [] for a in self.nodes}
        for address, deps in self._deps.items():
            for dep in deps:
                if dep in self._dependents:
                    self._dependents[dep].append(address)

    def __iter__(self) -> Iterator[ResourceNode]:
        return iter(self.nodes.values())

    def __len__(self) -> int:
        return len(self.nodes)

    def __contains__(self, address: object) -> bool:
        return address in self.nodes

    def __getitem__(self, address: str) -> ResourceNode:
        return self.nodes[address]

    def dependencies(self, address: str) -> List[str]:
        return list(self._deps[address])

    def dependents(self, address: str) -> List[str]:
        return list(self._dependents[address])

    def instances(self, base_address: str) -> List[str]:
        """Addresses of every node expanded from one declaration, by index."""
        return [a for a, n in self.nodes.items() if n.base_address == base_address]

    def edges(self) -> List[Tuple[str, str]]:
        return [(src, dst) for src, deps in self._deps.items() for dst in deps]

    def ancestors(self, address: str) -> Set[str]:
        """Every node *address* transitively depends on."""
        return self._walk(address, self._deps)

    def descendants(self, address: str) -> Set[str]:
        """Every node that transitively depends on *address*."""
        return self._walk(address, self._dependents)

    @staticmethod
    def _walk(start: str, adjacency: Dict[str, List[str]]) -> Set[str]:
        seen: Set[str] = set()
        stack = list(adjacency.get(start, []))
        while stack:
            cur = stack.pop()
            if cur in seen:
                continue
            seen.add(cur)
            stack.extend(adjacency.get(cur, []))
        return seen

    def find_cycle(self) -> Optional[List[str]]:
        """Return one cycle as a closed path (first == last), or None."""
        white, gray, black = 0, 1, 2
        color = {a: white for a in self.nodes}
        for root in self.nodes:
            if color[root] != white:
                continue
            path = [root]
            iters = [iter(self._deps[root])]
            color[root] = gray
            while iters:
                nxt = next(iters[-1], None)
                if nxt is None:
                    color[path.pop()] = black
                    iters.pop()
                    continue
                if color[nxt] == gray:
                    return path[path.index(nxt):] + [nxt]
                if color[nxt] == white:
                    color[nxt] = gray
                    path.append(nxt)
                    iters.append(iter(self._deps[nxt]))
        return None


# ------------------------------------------------------------------ variables
def resolve_variables(config: Configuration, overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    overrides = overrides or {}
    undeclared = sorted(set(overrides) - set(config.variables))
    if undeclared:
        raise DeclarationError(f"value given for undeclared variable(s): {', '.join(undeclared)}")

    values: Dict[str, Any] = {}
    for name, var in config.variables.items():
        if name in overrides:
            values[name] = overrides[name]
        elif var.has_default:
            values[name] = var.default
        else:
            raise DeclarationError(f"variable '{name}' has no default and no value was given", var.source_file)
    return values


def _count_for(decl: ResourceDeclaration, variables: Dict[str, Any]) -> Optional[int]:
    if decl.count is None:
        return None
    ctx = EvalContext(variables=variables, address=decl.address)
    if references(decl.count, ctx):
        raise DeclarationError(f"{decl.address}: count cannot depend on resource attributes", decl.source_file)
    val = evaluate_value(decl.count, ctx)
    if isinstance(val, str) and val.strip().isdigit():
        val = int(val)
    if isinstance(val, bool) or not isinstance(val, int) or val < 0:
        raise DeclarationError(f"{decl.address}: count must be a non-negative integer, got {val!r}", decl.source_file)
    return val


# ------------------------------------------------------------------ references
def _targets(ref: ResourceRef, counts: Dict[str, Optional[int]], source: str) -> List[str]:
    if ref.base not in counts:
        raise UnresolvedReferenceError(source, ref.base)
    count = counts[ref.base]
    if count is None:
        if isinstance(ref.key, int):
            raise UnresolvedReferenceError(source, ref.address, f"'{ref.base}' does not use count")
        return [ref.base]
    if ref.key is None:
        raise UnresolvedReferenceError(
            source, ref.base, "resource uses count; reference an instance like [0] or all of them with [*]"
        )
    if ref.key == SPLAT:
        return [f"{ref.base}[{i}]" for i in range(count)]
    if ref.key >= count:
        raise UnresolvedReferenceError(source, ref.address, f"only {count} instance(s) declared")
    return [ref.address]


def _depends_targets(dep: str, counts: Dict[str, Optional[int]], source: str) -> List[str]:
    m = _INSTANCE_RE.match(dep)
    if not m:
        raise UnresolvedReferenceError(source, dep, "not a resource address")
    key = int(m.group("index")) if m.group("index") is not None else SPLAT
    if key == SPLAT and counts.get(m.group("base"), 0) is None:
        key = None
    return _targets(ResourceRef(m.group("base"), key, ""), counts, source)


def build_graph(config: Configuration, overrides: Optional[Dict[str, Any]] = None) -> ResourceGraph:
    variables = resolve_variables(config, overrides)

    counts: Dict[str, Optional[int]] = {}
    nodes: List[ResourceNode] = []
    for decl in config.resources:
        count = _count_for(decl, variables)
        counts[decl.address] = count
        for idx in ([None] if count is None else range(count)):
            nodes.append(
                ResourceNode(
                    resource_type=decl.resource_type,
                    name=decl.name,
                    index=idx,
                    attributes=decl.attributes,
                    lifecycle=decl.lifecycle,
                    order=len(nodes),
                    source_file=decl.source_file,
                )
            )

    declarations = {d.address: d for d in config.resources}
    for node in nodes:
        ctx = EvalContext(variables=variables, count_index=node.index, address=node.address)
        for attr, val in node.attributes.items():
            for ref in references(val, ctx):
                for target in _targets(ref, counts, node.address):
                    node.references.append(Reference(node.address, attr, target, ref.attribute))
        for dep in declarations[node.base_address].depends_on:
            for target in _depends_targets(dep, counts, node.address):
                if target not in node.depends_on:
                    node.depends_on.append(target)

    for name, out in config.outputs.items():
        ctx = EvalContext(variables=variables, address=f"output.{name}")
        for ref in references(out.value, ctx):
            _targets(ref, counts, f"output.{name}")

    graph = ResourceGraph(nodes, variables, config.outputs)
    cycle = graph.find_cycle()
    if cycle:
        raise CycleError(cycle)

    logger.debug("built graph with %d node(s) and %d edge(s)", len(graph), len(graph.edges()))
    return graph
