from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from converge.errors import StateError, StateVersionError

STATE_FORMAT_VERSION = 1


@dataclass
class AppliedRecord:
    address: str
    resource_type: str
    resource_id: str
    attributes: Dict[str, Any] = field(default_factory=dict)   # resolved inputs last sent
    outputs: Dict[str, Any] = field(default_factory=dict)      # values computed by the provider
    dependencies: List[str] = field(default_factory=list)
    order: int = 0
    create_before_destroy: bool = False
    # Objects replaced under create_before_destroy whose delete has not succeeded yet.
    deposed: List[Dict[str, Any]] = field(default_factory=list)

    def values(self) -> Dict[str, Any]:
        """Inputs overlaid with outputs; what references to this node read."""
        merged = dict(self.attributes)
        merged.update(self.outputs)
        merged["id"] = self.resource_id
        return merged

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "type": self.resource_type,
            "id": self.resource_id,
            "attributes": self.attributes,
            "outputs": self.outputs,
            "dependencies": self.dependencies,
            "order": self.order,
            "create_before_destroy": self.create_before_destroy,
            "deposed": self.deposed,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AppliedRecord":
        try:
            return cls(
                address=data["address"],
                resource_type=data["type"],
                resource_id=data["id"],
                attributes=dict(data.get("attributes") or {}),
                outputs=dict(data.get("outputs") or {}),
                dependencies=list(data.get("dependencies") or []),
                order=int(data.get("order", 0)),
                create_before_destroy=bool(data.get("create_before_destroy", False)),
                deposed=list(data.get("deposed") or []),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise StateError(f"malformed state record: {exc}") from exc


@dataclass
class StateSnapshot:
    lineage: str = ""
    serial: int = 0
    format_version: int = STATE_FORMAT_VERSION
    resources: Dict[str, AppliedRecord] = field(default_factory=dict)
    outputs: Dict[str, Any] = field(default_factory=dict)

    def get(self, address: str) -> Optional[AppliedRecord]:
        return self.resources.get(address)

    def to_dict(self) -> dict:
        return {
            "format_version": self.format_version,
            "serial": self.serial,
            "lineage": self.lineage,
            "resources": [r.to_dict() for r in self.resources.values()],
            "outputs": self.outputs,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StateSnapshot":
        if not isinstance(data, dict):
            raise StateError("state file must contain a JSON object")
        version = data.get("format_version")
        if not isinstance(version, int) or version < 1 or version > STATE_FORMAT_VERSION:
            raise StateVersionError(version, STATE_FORMAT_VERSION)
        records = [AppliedRecord.from_dict(r) for r in data.get("resources") or []]
        return cls(
            lineage=str(data.get("lineage", "")),
            serial=int(data.get("serial", 0)),
            format_version=version,
            resources={r.address: r for r in records},
            outputs=dict(data.get("outputs") or {}),
        )
