"""
Exception hierarchy shared by the parsers, engine, providers and state store.
"""
from typing import Dict, List, Optional, Sequence


class ConvergeError(Exception):
    """Base class for every error converge raises on purpose."""


class ConfigError(ConvergeError):
    pass


# ------------------------------------------------------------------ declarations
class DeclarationError(ConvergeError):
    """A declaration file is malformed or uses an unsupported construct."""

    def __init__(self, message: str, source_file: str = ""):
        self.source_file = source_file
        if source_file:
            message = f"{source_file}: {message}"
        super().__init__(message)


class UnresolvedReferenceError(DeclarationError):
    """An attribute references a resource or variable that does not exist."""

    def __init__(self, address: str, target: str, detail: str = ""):
        self.address = address
        self.target = target
        message = f"{address} references undeclared '{target}'"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class CycleError(DeclarationError):
    """The declarations reference each other in a loop."""

    def __init__(self, cycle: Sequence[str]):
        self.cycle = list(cycle)
        super().__init__("dependency cycle: " + " -> ".join(self.cycle))


class PreventDestroyError(ConvergeError):
    def __init__(self, address: str, action: str):
        self.address = address
        self.action = action
        super().__init__(
            f"{address} has lifecycle.prevent_destroy set but the plan would {action} it"
        )


# ------------------------------------------------------------------ provider
class ProviderError(ConvergeError):
    """A provider call failed."""

    def __init__(self, message: str, resource_type: str = "", operation: str = ""):
        self.resource_type = resource_type
        self.operation = operation
        super().__init__(message)


class ProviderTransientError(ProviderError):
    """Throttling, timeouts and other failures worth retrying."""


class ProviderTimeoutError(ProviderTransientError):
    """A call did not return in time; it may still complete on the provider side."""


class ProviderRejectionError(ProviderError):
    """The provider refused the request; retrying will not help."""


class PartialApplyError(ConvergeError):
    """Raised at the end of a run in which at least one node failed."""

    def __init__(
        self,
        succeeded: List[str],
        failed: Dict[str, str],
        skipped: List[str],
    ):
        self.succeeded = list(succeeded)
        self.failed = dict(failed)
        self.skipped = list(skipped)
        super().__init__(
            f"apply incomplete: {len(self.succeeded)} succeeded, "
            f"{len(self.failed)} failed, {len(self.skipped)} skipped"
        )


# ------------------------------------------------------------------ state
class StateError(ConvergeError):
    pass


class StateVersionError(StateError):
    def __init__(self, found: object, supported: int):
        self.found = found
        self.supported = supported
        super().__init__(
            f"state format version {found!r} is not supported (this build reads <= {supported})"
        )


class StateLockedError(StateError):
    def __init__(self, lock_path: str, holder: Optional[str] = None):
        self.lock_path = lock_path
        self.holder = holder
        message = f"state is locked by another run ({lock_path})"
        if holder:
            message = f"{message}, held by {holder}"
        super().__init__(message)
