"""
YAML / JSON declaration documents:

    variables:
      azs:
        default: [us-east-1a, us-east-1b]
    resources:
      aws_vpc.main:
        cidr_block: 10.0.0.0/16
      aws_subnet.public:
        count: ${length(var.azs)}
        vpc_id: ${aws_vpc.main.id}
    outputs:
      vpc_id: ${aws_vpc.main.id}
"""
import json
import os
from typing import Any, Dict

import yaml

from converge.detect import detect_format
from converge.errors import DeclarationError
from converge.models.declaration import Configuration, Output, Variable
from converge.parsers.common import build_declaration, split_address


def _load(filepath: str) -> Any:
    _, ext = os.path.splitext(filepath.lower())
    try:
        with open(filepath) as fh:
            if ext == ".json":
                return json.load(fh)
            return yaml.safe_load(fh)
    except OSError as exc:
        raise DeclarationError(f"cannot read file: {exc}", filepath) from exc
    except (ValueError, yaml.YAMLError) as exc:
        raise DeclarationError(f"invalid document: {exc}", filepath) from exc


def _section(doc: Dict[str, Any], key: str, filepath: str) -> Dict[str, Any]:
    val = doc.get(key) or {}
    if not isinstance(val, dict):
        raise DeclarationError(f"'{key}' must be a mapping", filepath)
    return val


def parse_document(doc: Any, filepath: str = "") -> Configuration:
    if not isinstance(doc, dict):
        raise DeclarationError("declaration document must be a mapping", filepath)

    config = Configuration(source_files=[filepath] if filepath else [])

    for name, spec in _section(doc, "variables", filepath).items():
        if isinstance(spec, dict) and set(spec) <= {"default", "description", "type"}:
            config.variables[name] = Variable(
                name=name,
                default=spec.get("default"),
                has_default="default" in spec,
                description=spec.get("description", ""),
                source_file=filepath,
            )
        else:
            # shorthand: the value is the default
            config.variables[name] = Variable(
                name=name, default=spec, has_default=True, source_file=filepath
            )

    for address, body in _section(doc, "resources", filepath).items():
        resource_type, name = split_address(str(address), filepath)
        config.merge(
            Configuration(resources=[build_declaration(resource_type, name, body or {}, filepath)])
        )

    for name, spec in _section(doc, "outputs", filepath).items():
        if isinstance(spec, dict) and "value" in spec:
            config.outputs[name] = Output(
                name=name,
                value=spec["value"],
                description=spec.get("description", ""),
                source_file=filepath,
            )
        else:
            config.outputs[name] = Output(name=name, value=spec, source_file=filepath)

    return config


def parse_file(filepath: str) -> Configuration:
    return parse_document(_load(filepath), filepath)


def parse_directory(path: str) -> Configuration:
    config = Configuration()

    if os.path.isfile(path):
        if detect_format(path) == "declaration":
            config.merge(parse_file(path))
        return config

    for root, _, files in os.walk(path):
        for fname in sorted(files):
            fpath = os.path.join(root, fname)
            if detect_format(fpath) == "declaration":
                config.merge(parse_file(fpath))

    return config
