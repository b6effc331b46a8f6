"""
Provider boundary: one ResourceType per declared type, grouped by a Provider.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

from converge.errors import ProviderRejectionError


@dataclass(frozen=True)
class ResourceSchema:
    required: FrozenSet[str] = frozenset()
    # Attributes that can change in place.  None means every attribute not in force_new.
    updatable: Optional[FrozenSet[str]] = frozenset()
    force_new: FrozenSet[str] = frozenset()
    computed: FrozenSet[str] = frozenset()

    def supports_update(self, attribute: str) -> bool:
        if attribute in self.force_new:
            return False
        if self.updatable is None:
            return True
        return attribute in self.updatable


@dataclass
class ProviderResult:
    resource_id: str
    outputs: Dict[str, Any] = field(default_factory=dict)
    # Current inputs as seen by the provider; only filled in by read().
    attributes: Optional[Dict[str, Any]] = None


class ResourceType(ABC):
    """Create/Read/Update/Delete capability for a single resource type."""

    type_name: str = ""
    schema: ResourceSchema = ResourceSchema()

    @abstractmethod
    def create(self, attributes: Dict[str, Any]) -> ProviderResult:
        ...

    @abstractmethod
    def read(self, resource_id: str) -> Optional[ProviderResult]:
        """Return the live object, or None when it no longer exists."""

    @abstractmethod
    def update(self, resource_id: str, attributes: Dict[str, Any], changed: List[str]) -> ProviderResult:
        ...

    @abstractmethod
    def delete(self, resource_id: str) -> None:
        ...


class Provider:
    """Registry of the resource types a provider can manage."""

    name = "provider"

    def __init__(self, types: Iterable[ResourceType] = ()):
        self._types: Dict[str, ResourceType] = {}
        for rt in types:
            self.register(rt)

    def register(self, resource_type: ResourceType) -> None:
        self._types[resource_type.type_name] = resource_type

    def supports(self, type_name: str) -> bool:
        return type_name in self._types

    def resource_type(self, type_name: str) -> ResourceType:
        try:
            return self._types[type_name]
        except KeyError:
            raise ProviderRejectionError(
                f"{self.name} does not support resource type '{type_name}'",
                resource_type=type_name,
            ) from None

    def schema(self, type_name: str) -> ResourceSchema:
        return self.resource_type(type_name).schema
