"""
Helpers shared by the HCL and YAML/JSON declaration readers.
"""
import re
from typing import Any, Dict, List

from converge.errors import DeclarationError
from converge.models.declaration import META_ARGUMENTS, ResourceDeclaration
from converge.models.resource import Lifecycle

_ADDRESS_RE = re.compile(r"^([A-Za-z][A-Za-z0-9_-]*)\.([A-Za-z_][A-Za-z0-9_-]*)$")
_BARE_REF_RE = re.compile(r"^\$\{(.+)\}$")


def split_address(address: str, source_file: str = ""):
    m = _ADDRESS_RE.match(address)
    if not m:
        raise DeclarationError(f"'{address}' is not a valid resource address (type.name)", source_file)
    return m.group(1), m.group(2)


def _strip_ref(val: Any) -> str:
    """depends_on entries may be written bare or as ${...}."""
    text = str(val).strip()
    m = _BARE_REF_RE.match(text)
    return m.group(1).strip() if m else text


def _as_bool(val: Any, what: str, source_file: str) -> bool:
    if isinstance(val, bool):
        return val
    if isinstance(val, str) and val.lower() in ("true", "false"):
        return val.lower() == "true"
    raise DeclarationError(f"{what} must be true or false, got {val!r}", source_file)


def _lifecycle(raw: Any, address: str, source_file: str) -> Lifecycle:
    if raw is None:
        return Lifecycle()
    if not isinstance(raw, dict):
        raise DeclarationError(f"{address}: lifecycle must be a block", source_file)
    unknown = set(raw) - {"create_before_destroy", "prevent_destroy", "ignore_changes"}
    if unknown:
        raise DeclarationError(
            f"{address}: unsupported lifecycle setting(s) {', '.join(sorted(unknown))}", source_file
        )
    ignore = raw.get("ignore_changes") or []
    if not isinstance(ignore, list):
        ignore = [ignore]
    return Lifecycle(
        create_before_destroy=_as_bool(
            raw.get("create_before_destroy", False), f"{address}: create_before_destroy", source_file
        ),
        prevent_destroy=_as_bool(
            raw.get("prevent_destroy", False), f"{address}: prevent_destroy", source_file
        ),
        ignore_changes=[_strip_ref(i) for i in ignore],
    )


def build_declaration(
    resource_type: str, name: str, body: Dict[str, Any], source_file: str
) -> ResourceDeclaration:
    address = f"{resource_type}.{name}"
    if not isinstance(body, dict):
        raise DeclarationError(f"{address}: resource body must be a mapping", source_file)

    depends: List[str] = []
    raw_depends = body.get("depends_on") or []
    if not isinstance(raw_depends, list):
        raw_depends = [raw_depends]
    for dep in raw_depends:
        depends.append(_strip_ref(dep))

    return ResourceDeclaration(
        resource_type=resource_type,
        name=name,
        attributes={k: v for k, v in body.items() if k not in META_ARGUMENTS},
        count=body.get("count"),
        depends_on=depends,
        lifecycle=_lifecycle(body.get("lifecycle"), address, source_file),
        source_file=source_file,
    )
