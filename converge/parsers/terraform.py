import os
from typing import Any, Dict, List

import hcl2
from lark.exceptions import LarkError

from converge.detect import detect_format
from converge.errors import DeclarationError
from converge.models.declaration import Configuration, Output, Variable
from converge.parsers.common import build_declaration


def _clean(val: Any) -> Any:
    """
    Depending on the release, python-hcl2 keeps the quotes around string
    literals and adds line-number keys.  Normalise both away.
    """
    if isinstance(val, list):
        return [_clean(v) for v in val]
    if isinstance(val, dict):
        return {
            _clean(k): _clean(v)
            for k, v in val.items()
            if not (isinstance(k, str) and k.startswith("__"))
        }
    if isinstance(val, str) and len(val) >= 2 and val[0] == val[-1] == '"':
        return val[1:-1]
    return val


def _block(val: Any) -> Any:
    """Unwrap a top-level or lifecycle block, which python-hcl2 puts in a list."""
    if isinstance(val, list) and len(val) == 1 and isinstance(val[0], dict):
        return val[0]
    return val


def _blocks(data: Dict[str, Any], kind: str) -> List[Dict[str, Any]]:
    raw = data.get(kind, [])
    if isinstance(raw, dict):
        return [raw]
    return [b for b in raw if isinstance(b, dict)]


def parse_file(filepath: str) -> Configuration:
    try:
        with open(filepath) as fh:
            data = hcl2.load(fh)
    except OSError as exc:
        raise DeclarationError(f"cannot read file: {exc}", filepath) from exc
    except (LarkError, ValueError) as exc:
        raise DeclarationError(f"invalid HCL: {exc}", filepath) from exc

    config = Configuration(source_files=[filepath])

    for block in _blocks(data, "variable"):
        for name, body in block.items():
            body = _block(_clean(body)) if isinstance(body, (dict, list)) else {}
            if not isinstance(body, dict):
                body = {}
            config.variables[name] = Variable(
                name=name,
                default=body.get("default"),
                has_default="default" in body,
                description=body.get("description", ""),
                source_file=filepath,
            )

    for resource_block in _blocks(data, "resource"):
        for resource_type, instances in resource_block.items():
            # hcl2 wraps the block in a list
            if isinstance(instances, dict):
                instances = [instances]
            for instance_map in instances:
                if not isinstance(instance_map, dict):
                    continue
                for name, raw_body in instance_map.items():
                    body = _block(_clean(raw_body))
                    if not isinstance(body, dict):
                        body = {}
                    if "lifecycle" in body:
                        body["lifecycle"] = _block(body["lifecycle"])
                    config.merge(
                        Configuration(
                            resources=[build_declaration(_clean(resource_type), _clean(name), body, filepath)]
                        )
                    )

    for block in _blocks(data, "output"):
        for name, body in block.items():
            body = _block(_clean(body))
            if not isinstance(body, dict) or "value" not in body:
                raise DeclarationError(f"output '{name}' has no value", filepath)
            config.outputs[name] = Output(
                name=name,
                value=body["value"],
                description=body.get("description", ""),
                source_file=filepath,
            )

    return config


def parse_directory(path: str) -> Configuration:
    config = Configuration()

    if os.path.isfile(path):
        if detect_format(path) == "hcl":
            config.merge(parse_file(path))
        return config

    for root, _, files in os.walk(path):
        for fname in sorted(files):
            fpath = os.path.join(root, fname)
            if detect_format(fpath) == "hcl":
                config.merge(parse_file(fpath))

    return config
