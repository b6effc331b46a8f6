from dataclasses import dataclass, field
from typing import Any, Dict, List

from converge.errors import DeclarationError
from converge.models.resource import Lifecycle

# Keys of a resource body that steer the engine instead of being sent to the provider.
META_ARGUMENTS = ("count", "depends_on", "lifecycle")


@dataclass
class Variable:
    name: str
    default: Any = None
    has_default: bool = False
    description: str = ""
    source_file: str = ""


@dataclass
class ResourceDeclaration:
    resource_type: str
    name: str
    attributes: Dict[str, Any] = field(default_factory=dict)
    count: Any = None
    depends_on: List[str] = field(default_factory=list)
    lifecycle: Lifecycle = field(default_factory=Lifecycle)
    source_file: str = ""

    @property
    def address(self) -> str:
        return f"{self.resource_type}.{self.name}"


@dataclass
class Output:
    name: str
    value: Any
    description: str = ""
    source_file: str = ""


@dataclass
class Configuration:
    """Everything read from a set of declaration files."""

    variables: Dict[str, Variable] = field(default_factory=dict)
    resources: List[ResourceDeclaration] = field(default_factory=list)
    outputs: Dict[str, Output] = field(default_factory=dict)
    source_files: List[str] = field(default_factory=list)

    def merge(self, other: "Configuration") -> None:
        for name, var in other.variables.items():
            if name in self.variables:
                raise DeclarationError(f"variable '{name}' declared twice", var.source_file)
            self.variables[name] = var
        seen = {r.address for r in self.resources}
        for decl in other.resources:
            if decl.address in seen:
                raise DeclarationError(f"resource '{decl.address}' declared twice", decl.source_file)
            seen.add(decl.address)
            self.resources.append(decl)
        for name, out in other.outputs.items():
            if name in self.outputs:
                raise DeclarationError(f"output '{name}' declared twice", out.source_file)
            self.outputs[name] = out
        self.source_files.extend(other.source_files)
