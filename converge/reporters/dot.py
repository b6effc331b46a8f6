"""
Graphviz DOT rendering of the resource dependency graph.
"""
from jinja2 import Environment

from converge.core.graph import ResourceGraph
from converge.core.scheduler import levels

_TEMPLATE = """\
digraph converge {
  rankdir = "RL";
  node [shape = box, fontname = "Helvetica"];
{% for layer in layers %}
  subgraph "layer_{{ loop.index0 }}" {
    rank = same;
{% for address in layer %}    "{{ address }}"{% if graph[address].lifecycle.create_before_destroy %} [style = dashed]{% endif %};
{% endfor %}  }
{% endfor %}
{% for src, dst in edges %}  "{{ src }}" -> "{{ dst }}";
{% endfor %}}
"""


def build_graph_dot(graph: ResourceGraph) -> str:
    """Nodes grouped by dependency depth; edges point at dependencies."""
    env = Environment(autoescape=False, keep_trailing_newline=True)
    template = env.from_string(_TEMPLATE)
    return template.render(graph=graph, layers=levels(graph), edges=graph.edges())
