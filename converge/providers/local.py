"""
Local provider — simulates the AWS network and auto-scaling resource types
against an in-memory (optionally JSON-backed) object store.

Nothing here talks to AWS.  The simulation enforces the rules that matter to
ordering: referenced ids must exist on create/update, and an object cannot be
deleted while another live object still points at it.
"""
import ipaddress
import json
import logging
import os
import re
import secrets
import tempfile
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from converge.errors import ProviderError, ProviderRejectionError
from converge.providers.base import Provider, ProviderResult, ResourceSchema, ResourceType

logger = logging.getLogger(__name__)

REGION = "us-east-1"
ACCOUNT_ID = "000000000000"

_LOCAL_ID_RE = re.compile(r"^[a-z]+(?:-[a-z]+)?-[0-9a-f]{17}$")


@dataclass
class _TypeSpec:
    prefix: str
    schema: ResourceSchema
    cidr_attrs: tuple = ()
    # Output name -> function(attributes, resource_id) producing it.
    outputs: Dict[str, Callable[[Dict[str, Any], str], Any]] = field(default_factory=dict)
    # Unique name output other objects refer to instead of the id.
    named: bool = False


def _arn(service: str, kind: str) -> Callable[[Dict[str, Any], str], str]:
    return lambda attrs, rid: f"arn:aws:{service}:{REGION}:{ACCOUNT_ID}:{kind}/{rid}"


def _name_or_generated(attrs: Dict[str, Any], rid: str) -> str:
    if attrs.get("name"):
        return str(attrs["name"])
    prefix = attrs.get("name_prefix") or "terraform-"
    return f"{prefix}{rid.split('-', 1)[-1]}"


# Resource types of the VPC + ELB + auto-scaling topology.
_TYPES: Dict[str, _TypeSpec] = {
    "aws_vpc": _TypeSpec(
        prefix="vpc",
        schema=ResourceSchema(
            required=frozenset({"cidr_block"}),
            updatable=frozenset({"tags", "enable_dns_support", "enable_dns_hostnames"}),
            computed=frozenset({"arn", "owner_id"}),
        ),
        cidr_attrs=("cidr_block",),
        outputs={
            "arn": _arn("ec2", "vpc"),
            "owner_id": lambda a, r: ACCOUNT_ID,
        },
    ),
    "aws_subnet": _TypeSpec(
        prefix="subnet",
        schema=ResourceSchema(
            required=frozenset({"vpc_id", "cidr_block"}),
            updatable=frozenset({"tags", "map_public_ip_on_launch"}),
            computed=frozenset({"arn", "availability_zone_id"}),
        ),
        cidr_attrs=("cidr_block",),
        outputs={
            "arn": _arn("ec2", "subnet"),
            "availability_zone_id": lambda a, r: str(a.get("availability_zone", REGION + "a")).replace(REGION, "use1-az"),
        },
    ),
    "aws_internet_gateway": _TypeSpec(
        prefix="igw",
        schema=ResourceSchema(
            updatable=frozenset({"vpc_id", "tags"}),
            computed=frozenset({"arn"}),
        ),
        outputs={"arn": _arn("ec2", "internet-gateway")},
    ),
    "aws_route_table": _TypeSpec(
        prefix="rtb",
        schema=ResourceSchema(
            required=frozenset({"vpc_id"}),
            updatable=frozenset({"route", "tags", "propagating_vgws"}),
            computed=frozenset({"arn", "owner_id"}),
        ),
        outputs={"arn": _arn("ec2", "route-table"), "owner_id": lambda a, r: ACCOUNT_ID},
    ),
    "aws_route_table_association": _TypeSpec(
        prefix="rtbassoc",
        schema=ResourceSchema(
            required=frozenset({"subnet_id", "route_table_id"}),
            updatable=frozenset({"route_table_id"}),
        ),
    ),
    "aws_security_group": _TypeSpec(
        prefix="sg",
        schema=ResourceSchema(
            required=frozenset({"vpc_id"}),
            updatable=frozenset({"ingress", "egress", "tags", "revoke_rules_on_delete"}),
            computed=frozenset({"arn", "owner_id"}),
        ),
        outputs={"arn": _arn("ec2", "security-group"), "owner_id": lambda a, r: ACCOUNT_ID},
    ),
    "aws_launch_configuration": _TypeSpec(
        prefix="lc",
        # launch configurations are immutable
        schema=ResourceSchema(
            required=frozenset({"image_id", "instance_type"}),
            updatable=frozenset(),
            computed=frozenset({"arn"}),
        ),
        outputs={
            "arn": _arn("autoscaling", "launchConfiguration"),
            "name": _name_or_generated,
        },
        named=True,
    ),
    "aws_autoscaling_group": _TypeSpec(
        prefix="asg",
        schema=ResourceSchema(
            required=frozenset({"min_size", "max_size", "launch_configuration"}),
            updatable=None,
            force_new=frozenset({"name", "name_prefix"}),
            computed=frozenset({"arn"}),
        ),
        outputs={
            "arn": _arn("autoscaling", "autoScalingGroup"),
            "name": _name_or_generated,
        },
        named=True,
    ),
    "aws_elb": _TypeSpec(
        prefix="elb",
        schema=ResourceSchema(
            required=frozenset({"listener"}),
            updatable=None,
            force_new=frozenset({"name", "name_prefix", "internal"}),
            computed=frozenset({"arn", "dns_name", "zone_id"}),
        ),
        outputs={
            "arn": _arn("elasticloadbalancing", "loadbalancer"),
            "name": _name_or_generated,
            "dns_name": lambda a, r: f"{_name_or_generated(a, r)}-{r[-8:]}.{REGION}.elb.amazonaws.com",
            "zone_id": lambda a, r: "Z35SXDOTRQ7X7K",
        },
        named=True,
    ),
    "aws_autoscaling_policy": _TypeSpec(
        prefix="policy",
        schema=ResourceSchema(
            required=frozenset({"name", "autoscaling_group_name", "adjustment_type", "scaling_adjustment"}),
            updatable=frozenset({"adjustment_type", "scaling_adjustment", "cooldown", "policy_type"}),
            computed=frozenset({"arn"}),
        ),
        outputs={"arn": _arn("autoscaling", "scalingPolicy")},
    ),
    "aws_cloudwatch_metric_alarm": _TypeSpec(
        prefix="alarm",
        schema=ResourceSchema(
            required=frozenset({
                "alarm_name", "comparison_operator", "evaluation_periods",
                "metric_name", "namespace", "period", "statistic", "threshold",
            }),
            updatable=None,
            force_new=frozenset({"alarm_name"}),
            computed=frozenset({"arn"}),
        ),
        outputs={"arn": _arn("cloudwatch", "alarm")},
    ),
    "null_resource": _TypeSpec(
        prefix="null",
        schema=ResourceSchema(updatable=frozenset()),
    ),
}


# ------------------------------------------------------------------ object store
class LocalCloud:
    """Thread-safe object store standing in for a cloud account."""

    def __init__(self, path: Optional[str] = None):
        self.path = path
        self._lock = threading.RLock()
        self.objects: Dict[str, Dict[str, Any]] = {}
        self._faults: List[Dict[str, Any]] = []
        self.calls: List[str] = []
        if path and os.path.exists(path):
            with open(path, "r") as fh:
                self.objects = json.load(fh).get("objects", {})

    def inject_fault(
        self,
        resource_type: str,
        operation: str,
        error: ProviderError,
        times: int = 1,
    ) -> None:
        """Make the next *times* matching calls raise *error*."""
        with self._lock:
            self._faults.append(
                {"type": resource_type, "op": operation, "error": error, "left": times}
            )

    def call(self, resource_type: str, operation: str) -> None:
        """Record a provider call; raises the first matching injected fault."""
        with self._lock:
            self.calls.append(f"{operation}:{resource_type}")
            for fault in self._faults:
                if fault["left"] > 0 and fault["type"] in (resource_type, "*") and fault["op"] in (operation, "*"):
                    fault["left"] -= 1
                    raise fault["error"]

    def identities(self, obj: Dict[str, Any]) -> Set[str]:
        ids = {obj["id"]}
        if obj["outputs"].get("arn"):
            ids.add(obj["outputs"]["arn"])
        if obj.get("named") and obj["outputs"].get("name"):
            ids.add(obj["outputs"]["name"])
        return ids

    def all_identities(self) -> Set[str]:
        with self._lock:
            return {i for obj in self.objects.values() for i in self.identities(obj)}

    def referrers(self, resource_id: str) -> List[str]:
        with self._lock:
            target = self.objects.get(resource_id)
            if target is None:
                return []
            wanted = self.identities(target)
            return [
                oid for oid, obj in self.objects.items()
                if oid != resource_id and wanted & set(_scalars(obj["attributes"]))
            ]

    def save(self) -> None:
        if not self.path:
            return
        with self._lock:
            directory = os.path.dirname(os.path.abspath(self.path))
            os.makedirs(directory, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=directory, prefix=".cloud-", suffix=".json")
            with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as fh:
                json.dump({"objects": self.objects}, fh, indent=2, sort_keys=True)
            os.replace(tmp, self.path)


def _scalars(val: Any) -> List[str]:
    if isinstance(val, str):
        return [val]
    if isinstance(val, list):
        return [s for v in val for s in _scalars(v)]
    if isinstance(val, dict):
        return [s for v in val.values() for s in _scalars(v)]
    return []


# ------------------------------------------------------------------ resource types
class SimulatedResourceType(ResourceType):
    def __init__(self, type_name: str, spec: _TypeSpec, cloud: LocalCloud):
        self.type_name = type_name
        self.spec = spec
        self.schema = spec.schema
        self.cloud = cloud

    def _reject(self, operation: str, message: str) -> ProviderRejectionError:
        return ProviderRejectionError(
            f"{self.type_name}: {message}", resource_type=self.type_name, operation=operation
        )

    def _validate(self, operation: str, attributes: Dict[str, Any]) -> None:
        missing = sorted(a for a in self.schema.required if attributes.get(a) in (None, "", []))
        if missing:
            raise self._reject(operation, f"missing required attribute(s): {', '.join(missing)}")
        for attr in self.spec.cidr_attrs:
            try:
                ipaddress.ip_network(str(attributes[attr]))
            except ValueError as exc:
                raise self._reject(operation, f"invalid {attr}: {exc}") from exc
        if self.type_name == "aws_autoscaling_group":
            try:
                min_size, max_size = int(attributes["min_size"]), int(attributes["max_size"])
            except (TypeError, ValueError) as exc:
                raise self._reject(operation, "min_size and max_size must be integers") from exc
            if min_size > max_size:
                raise self._reject(operation, "min_size cannot exceed max_size")
        # every local-looking id must point at a live object
        live = self.cloud.all_identities()
        for value in _scalars(attributes):
            if _LOCAL_ID_RE.match(value) and value not in live:
                raise self._reject(operation, f"InvalidID: '{value}' does not exist")

    def _outputs(self, attributes: Dict[str, Any], rid: str, previous: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        outputs = dict(previous or {})
        for name, fn in self.spec.outputs.items():
            if name not in outputs:
                outputs[name] = fn(attributes, rid)
        return outputs

    def create(self, attributes: Dict[str, Any]) -> ProviderResult:
        self.cloud.call(self.type_name, "create")
        with self.cloud._lock:
            self._validate("create", attributes)
            rid = f"{self.spec.prefix}-{secrets.token_hex(9)[:17]}"
            outputs = self._outputs(attributes, rid)
            self.cloud.objects[rid] = {
                "id": rid,
                "type": self.type_name,
                "attributes": attributes,
                "outputs": outputs,
                "named": self.spec.named,
            }
            self.cloud.save()
        logger.debug("created %s %s", self.type_name, rid)
        return ProviderResult(rid, outputs)

    def read(self, resource_id: str) -> Optional[ProviderResult]:
        self.cloud.call(self.type_name, "read")
        with self.cloud._lock:
            obj = self.cloud.objects.get(resource_id)
            if obj is None:
                return None
            return ProviderResult(resource_id, dict(obj["outputs"]), dict(obj["attributes"]))

    def update(self, resource_id: str, attributes: Dict[str, Any], changed: List[str]) -> ProviderResult:
        self.cloud.call(self.type_name, "update")
        frozen = [c for c in changed if not self.schema.supports_update(c)]
        if frozen:
            raise self._reject("update", f"attribute(s) {', '.join(frozen)} cannot be updated in place")
        with self.cloud._lock:
            obj = self.cloud.objects.get(resource_id)
            if obj is None:
                raise self._reject("update", f"NotFound: {resource_id}")
            self._validate("update", attributes)
            obj["attributes"] = attributes
            obj["outputs"] = self._outputs(attributes, resource_id, obj["outputs"])
            self.cloud.save()
            return ProviderResult(resource_id, dict(obj["outputs"]))

    def delete(self, resource_id: str) -> None:
        self.cloud.call(self.type_name, "delete")
        with self.cloud._lock:
            if resource_id not in self.cloud.objects:
                # already gone
                return
            users = self.cloud.referrers(resource_id)
            if users:
                raise self._reject(
                    "delete", f"DependencyViolation: {resource_id} is still used by {', '.join(sorted(users))}"
                )
            del self.cloud.objects[resource_id]
            self.cloud.save()
        logger.debug("deleted %s %s", self.type_name, resource_id)


class LocalProvider(Provider):
    name = "local"

    def __init__(self, cloud: Optional[LocalCloud] = None):
        self.cloud = cloud or LocalCloud()
        super().__init__(
            SimulatedResourceType(type_name, spec, self.cloud) for type_name, spec in _TYPES.items()
        )

