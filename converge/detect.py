import json
import os

import yaml

_DECLARATION_KEYS = {"resources", "variables", "outputs"}


def _classify(doc) -> str:
    if not isinstance(doc, dict):
        return "unknown"
    if "format_version" in doc and "lineage" in doc:
        return "state"
    if _DECLARATION_KEYS & set(doc) and isinstance(doc.get("resources", {}), dict):
        return "declaration"
    return "unknown"


def detect_format(filepath: str) -> str:
    """
    Return 'hcl', 'declaration', 'state', or 'unknown'.
    """
    _, ext = os.path.splitext(filepath.lower())

    if ext == ".tf":
        return "hcl"

    if ext == ".json":
        try:
            with open(filepath) as fh:
                return _classify(json.load(fh))
        except (OSError, ValueError):
            return "unknown"

    if ext in (".yaml", ".yml"):
        try:
            with open(filepath) as fh:
                return _classify(yaml.safe_load(fh))
        except (OSError, yaml.YAMLError):
            return "unknown"

    return "unknown"
