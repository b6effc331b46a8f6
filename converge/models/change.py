from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from converge.expressions import UNKNOWN
from converge.models.resource import ResourceNode
from converge.models.state import AppliedRecord


class Action(str, Enum):
    CREATE  = "create"
    UPDATE  = "update"
    REPLACE = "replace"
    DESTROY = "destroy"
    NOOP    = "no-op"


def display_value(val: Any) -> Any:
    if val is UNKNOWN:
        return str(UNKNOWN)
    if isinstance(val, list):
        return [display_value(v) for v in val]
    if isinstance(val, dict):
        return {k: display_value(v) for k, v in val.items()}
    return val


@dataclass
class AttributeDelta:
    name: str
    before: Any
    after: Any
    forces_replacement: bool = False

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "before": display_value(self.before),
            "after": display_value(self.after),
            "forces_replacement": self.forces_replacement,
        }


@dataclass
class Change:
    address: str
    resource_type: str
    action: Action
    delta: List[AttributeDelta] = field(default_factory=list)
    node: Optional[ResourceNode] = None
    record: Optional[AppliedRecord] = None
    # Planned values; UNKNOWN where a dependency has not been applied yet.
    planned: Dict[str, Any] = field(default_factory=dict)
    # Old objects still waiting to be deleted after a create_before_destroy replacement.
    deposed: List[Dict[str, Any]] = field(default_factory=list)
    # Set for replacements that must create the new object first.
    create_before_destroy: bool = False

    @property
    def is_noop(self) -> bool:
        return self.action == Action.NOOP and not self.deposed

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "resource_type": self.resource_type,
            "action": self.action.value,
            "create_before_destroy": self.create_before_destroy,
            "delta": [d.to_dict() for d in self.delta],
            "deposed": [d.get("id") for d in self.deposed],
        }
