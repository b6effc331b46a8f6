from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class Lifecycle:
    create_before_destroy: bool = False
    prevent_destroy: bool = False
    ignore_changes: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class Reference:
    source: str             # address of the consuming node
    attribute: str          # top-level attribute holding the expression
    target: str             # address of the producing node
    target_attribute: str   # output read from the producer, e.g. "id"


@dataclass
class ResourceNode:
    resource_type: str      # e.g. "aws_subnet"
    name: str               # e.g. "public"
    index: Optional[int] = None   # set for nodes expanded from count
    attributes: Dict[str, Any] = field(default_factory=dict)
    lifecycle: Lifecycle = field(default_factory=Lifecycle)
    depends_on: List[str] = field(default_factory=list)
    references: List[Reference] = field(default_factory=list)
    order: int = 0          # declaration order, used to break scheduling ties
    source_file: str = ""

    @property
    def base_address(self) -> str:
        return f"{self.resource_type}.{self.name}"

    @property
    def address(self) -> str:
        if self.index is None:
            return self.base_address
        return f"{self.base_address}[{self.index}]"

    @property
    def dependencies(self) -> List[str]:
        """Addresses this node must be applied after, first occurrence first."""
        seen: Dict[str, None] = {}
        for ref in self.references:
            seen.setdefault(ref.target, None)
        for dep in self.depends_on:
            seen.setdefault(dep, None)
        return list(seen)
