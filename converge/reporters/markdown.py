"""
Markdown + Mermaid plan report generator.
"""
import json
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Tuple

from jinja2 import Environment

from converge import __version__
from converge.core.engine import Plan
from converge.models.change import Action, display_value

_ACTION_SYMBOL = {
    "create": "+",
    "update": "~",
    "replace": "-/+",
    "destroy": "-",
    "no-op": " ",
}

_ACTION_STYLE = {
    "create": "fill:#88cc00,color:#000",
    "update": "fill:#ffcc00,color:#000",
    "replace": "fill:#ff8800,color:#fff",
    "destroy": "fill:#ff4444,color:#fff",
}


def _sanitize_node_id(address: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_]", "_", address)


def _fmt(val: Any) -> str:
    val = display_value(val)
    if isinstance(val, str):
        return val
    return json.dumps(val, sort_keys=True)


def _edges(plan: Plan) -> List[Tuple[str, str]]:
    """Dependency edges among the planned addresses, desired and recorded."""
    addresses = {c.address for c in plan.changes}
    seen: Dict[Tuple[str, str], None] = {}
    for src, dst in plan.graph.edges():
        seen.setdefault((src, dst), None)
    for c in plan.changes:
        if c.action == Action.DESTROY and c.record is not None:
            for dst in c.record.dependencies:
                if dst in addresses:
                    seen.setdefault((c.address, dst), None)
    return list(seen)


def _build_mermaid(plan: Plan) -> str:
    lines = ["flowchart RL"]
    for c in plan.changes:
        node_id = _sanitize_node_id(c.address)
        lines.append(f'    {node_id}["{c.address}"]')
    for src, dst in _edges(plan):
        lines.append(f"    {_sanitize_node_id(src)} --> {_sanitize_node_id(dst)}")
    for c in plan.changes:
        style = _ACTION_STYLE.get(c.action.value)
        if style and not c.is_noop:
            lines.append(f"    style {_sanitize_node_id(c.address)} {style}")
    return "\n".join(lines)


_TEMPLATE = """\
# {{ "Destroy" if plan.destroy else "Execution" }} Plan

**Generated:** {{ generated }}
**Source:** {{ source }}
**Tool:** converge v{{ version }}
**State serial:** {{ plan.serial }}

---

## Summary

{% if plan.has_changes %}\
Plan: **{{ summary["create"] }}** to create, **{{ summary["update"] }}** to update, \
**{{ summary["replace"] }}** to replace, **{{ summary["destroy"] }}** to destroy.
{% else %}\
No changes. The infrastructure matches the declarations.
{% endif %}

---

## Changes

| # | Action | Address | Type | Notes |
|---|--------|---------|------|-------|
{% for c in plan.changes %}| {{ loop.index }} | `{{ symbol[c.action.value] }}` {{ c.action.value }} | `{{ c.address }}` | `{{ c.resource_type }}` | \
{% if c.create_before_destroy %}create before destroy{% endif %}\
{% if c.deposed %} {{ c.deposed | length }} deposed object(s) to delete{% endif %} |
{% endfor %}
{% for c in pending %}{% if c.delta %}
### {{ symbol[c.action.value] }} {{ c.address }}

| Attribute | Before | After | |
|-----------|--------|-------|---|
{% for d in c.delta %}| `{{ d.name }}` | `{{ fmt(d.before) }}` | `{{ fmt(d.after) }}` | {% if d.forces_replacement and c.action.value == "replace" %}forces replacement{% endif %} |
{% endfor %}{% endif %}{% endfor %}
---

## Execution Order

{% for s in plan.schedule %}{{ loop.index }}. {{ s.kind.value }} `{{ s.address }}`
{% else %}Nothing to do.
{% endfor %}
## Dependency Graph

```mermaid
{{ mermaid }}
```
"""


def build_report(plan: Plan, source_path: str) -> str:
    env = Environment(autoescape=False)
    template = env.from_string(_TEMPLATE)

    return template.render(
        generated=datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC"),
        source=source_path,
        version=__version__,
        plan=plan,
        pending=plan.pending,
        summary=plan.summary(),
        symbol=_ACTION_SYMBOL,
        fmt=_fmt,
        mermaid=_build_mermaid(plan),
    )
