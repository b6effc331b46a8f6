"""
JSON plan and state report generator.
"""
import json
from datetime import datetime, timezone
from typing import List

from converge import __version__
from converge.core.engine import Plan
from converge.models.state import AppliedRecord


def _meta(source_path: str) -> dict:
    return {
        "generated": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        "source": source_path,
        "tool": "converge",
        "version": __version__,
    }


def build_report(plan: Plan, source_path: str) -> str:
    report = {"meta": _meta(source_path)}
    report.update(plan.to_dict())
    return json.dumps(report, indent=2)


def build_state_report(records: List[AppliedRecord], source_path: str) -> str:
    report = {
        "meta": _meta(source_path),
        "resources": [r.to_dict() for r in records],
    }
    return json.dumps(report, indent=2)
