"""
Differ tests — action selection, ignored attributes and unknown propagation.
"""
import pytest

from converge.config import DEFAULT_COMPUTED_ONLY
from converge.core.differ import compute_changes, diff_node
from converge.core.graph import build_graph
from converge.errors import PreventDestroyError
from converge.expressions import UNKNOWN
from converge.models.change import Action
from converge.models.resource import Lifecycle, ResourceNode
from converge.models.state import AppliedRecord, StateSnapshot
from converge.parsers import declaration
from converge.providers.base import ResourceSchema

MUTABLE = ResourceSchema(updatable=None, computed=frozenset({"arn"}))
IMMUTABLE = ResourceSchema(updatable=frozenset({"tags"}))


def _record(attributes, **kwargs):
    return AppliedRecord("aws_vpc.main", "aws_vpc", "vpc-1", attributes=attributes, **kwargs)


def _node(attributes=None, lifecycle=None):
    return ResourceNode("aws_vpc", "main", attributes=attributes or {}, lifecycle=lifecycle or Lifecycle())


class TestDiffNode:
    def test_create_when_no_record(self):
        change = diff_node(_node(), None, {"cidr_block": "10.0.0.0/16"}, MUTABLE, DEFAULT_COMPUTED_ONLY)
        assert change.action == Action.CREATE

    def test_noop_when_equal(self):
        planned = {"cidr_block": "10.0.0.0/16"}
        change = diff_node(_node(), _record(dict(planned)), planned, MUTABLE, DEFAULT_COMPUTED_ONLY)
        assert change.action == Action.NOOP
        assert change.is_noop

    def test_update_when_all_changes_are_updatable(self):
        record = _record({"cidr_block": "10.0.0.0/16", "tags": {"Name": "a"}})
        planned = {"cidr_block": "10.0.0.0/16", "tags": {"Name": "b"}}
        change = diff_node(_node(), record, planned, IMMUTABLE, DEFAULT_COMPUTED_ONLY)
        assert change.action == Action.UPDATE
        assert [d.name for d in change.delta] == ["tags"]
        assert change.delta[0].before == {"Name": "a"}
        assert change.delta[0].after == {"Name": "b"}

    def test_replace_when_any_change_forces_it(self):
        record = _record({"cidr_block": "10.0.0.0/16", "tags": {"Name": "a"}})
        planned = {"cidr_block": "10.1.0.0/16", "tags": {"Name": "b"}}
        change = diff_node(_node(), record, planned, IMMUTABLE, DEFAULT_COMPUTED_ONLY)
        assert change.action == Action.REPLACE
        forced = {d.name: d.forces_replacement for d in change.delta}
        assert forced == {"cidr_block": True, "tags": False}

    def test_removed_attribute_is_a_change(self):
        record = _record({"cidr_block": "10.0.0.0/16", "tags": {"Name": "a"}})
        change = diff_node(_node(), record, {"cidr_block": "10.0.0.0/16"}, IMMUTABLE, DEFAULT_COMPUTED_ONLY)
        assert change.action == Action.UPDATE
        assert change.delta[0].after is None

    def test_computed_only_attributes_ignored(self):
        record = _record({"cidr_block": "10.0.0.0/16", "arn": "arn:old", "owner_id": "1"})
        planned = {"cidr_block": "10.0.0.0/16", "arn": "arn:new"}
        computed = DEFAULT_COMPUTED_ONLY | {"owner_id"}
        assert diff_node(_node(), record, planned, IMMUTABLE, computed).action == Action.NOOP

    def test_schema_computed_attributes_ignored(self):
        record = _record({"cidr_block": "10.0.0.0/16"})
        planned = {"cidr_block": "10.0.0.0/16", "arn": "set-by-provider"}
        assert diff_node(_node(), record, planned, MUTABLE, frozenset()).action == Action.NOOP

    def test_ignore_changes(self):
        record = _record({"cidr_block": "10.0.0.0/16", "tags": {"Name": "a"}})
        planned = {"cidr_block": "10.0.0.0/16", "tags": {"Name": "b"}}
        node = _node(lifecycle=Lifecycle(ignore_changes=["tags"]))
        change = diff_node(node, record, planned, IMMUTABLE, DEFAULT_COMPUTED_ONLY)
        assert change.action == Action.NOOP
        assert change.planned["tags"] == {"Name": "a"}

    def test_unknown_value_is_a_change(self):
        record = _record({"vpc_id": "vpc-1"})
        change = diff_node(_node(), record, {"vpc_id": UNKNOWN}, IMMUTABLE, DEFAULT_COMPUTED_ONLY)
        assert change.action == Action.REPLACE
        assert change.delta[0].to_dict()["after"] == "(known after apply)"

    def test_type_change_replaces(self):
        record = AppliedRecord("aws_vpc.main", "null_resource", "null-1")
        change = diff_node(_node(), record, {}, MUTABLE, DEFAULT_COMPUTED_ONLY)
        assert change.action == Action.REPLACE
        assert change.delta[0].name == "type"


class TestComputeChanges:
    def _graph(self, resources):
        return build_graph(declaration.parse_document({"resources": resources}))

    def _schema(self, type_name):
        return MUTABLE if type_name == "null_resource" else IMMUTABLE

    def test_replacement_propagates_unknown_to_dependents(self):
        graph = self._graph({
            "aws_vpc.main": {"cidr_block": "10.1.0.0/16"},
            "null_resource.user": {"vpc": "${aws_vpc.main.id}"},
        })
        snapshot = StateSnapshot(resources={
            "aws_vpc.main": _record({"cidr_block": "10.0.0.0/16"}),
            "null_resource.user": AppliedRecord(
                "null_resource.user", "null_resource", "null-1",
                attributes={"vpc": "vpc-1"}, dependencies=["aws_vpc.main"], order=1,
            ),
        })
        changes = {c.address: c for c in compute_changes(graph, snapshot, self._schema)}
        assert changes["aws_vpc.main"].action == Action.REPLACE
        user = changes["null_resource.user"]
        assert user.action == Action.UPDATE
        assert user.planned["vpc"] is UNKNOWN
        # the old vpc stays until the user is re-pointed
        assert changes["aws_vpc.main"].create_before_destroy is True

    def test_replacement_with_replaced_dependent_keeps_destroy_first(self):
        graph = self._graph({
            "aws_vpc.main": {"cidr_block": "10.1.0.0/16"},
            "aws_subnet.app": {"vpc_id": "${aws_vpc.main.id}", "cidr_block": "10.1.1.0/24"},
        })
        snapshot = StateSnapshot(resources={
            "aws_vpc.main": _record({"cidr_block": "10.0.0.0/16"}),
            "aws_subnet.app": AppliedRecord(
                "aws_subnet.app", "aws_subnet", "subnet-1",
                attributes={"vpc_id": "vpc-1", "cidr_block": "10.0.1.0/24"},
                dependencies=["aws_vpc.main"], order=1,
            ),
        })
        changes = {c.address: c for c in compute_changes(graph, snapshot, self._schema)}
        assert changes["aws_subnet.app"].action == Action.REPLACE
        assert changes["aws_vpc.main"].create_before_destroy is False

    def test_updated_dependent_forces_create_first_up_the_chain(self):
        graph = self._graph({
            "aws_vpc.main": {"cidr_block": "10.1.0.0/16"},
            "aws_subnet.app": {"vpc_id": "${aws_vpc.main.id}", "cidr_block": "10.1.1.0/24"},
            "null_resource.user": {"subnet": "${aws_subnet.app.id}"},
        })
        snapshot = StateSnapshot(resources={
            "aws_vpc.main": _record({"cidr_block": "10.0.0.0/16"}),
            "aws_subnet.app": AppliedRecord(
                "aws_subnet.app", "aws_subnet", "subnet-1",
                attributes={"vpc_id": "vpc-1", "cidr_block": "10.0.1.0/24"},
                dependencies=["aws_vpc.main"], order=1,
            ),
            "null_resource.user": AppliedRecord(
                "null_resource.user", "null_resource", "null-1",
                attributes={"subnet": "subnet-1"}, dependencies=["aws_subnet.app"], order=2,
            ),
        })
        changes = {c.address: c for c in compute_changes(graph, snapshot, self._schema)}
        assert changes["null_resource.user"].action == Action.UPDATE
        assert changes["aws_subnet.app"].create_before_destroy is True
        assert changes["aws_vpc.main"].create_before_destroy is True

    def test_noop_dependency_resolves_from_state(self):
        graph = self._graph({
            "aws_vpc.main": {"cidr_block": "10.0.0.0/16"},
            "null_resource.user": {"vpc": "${aws_vpc.main.id}"},
        })
        snapshot = StateSnapshot(resources={
            "aws_vpc.main": _record({"cidr_block": "10.0.0.0/16"}),
            "null_resource.user": AppliedRecord(
                "null_resource.user", "null_resource", "null-1", attributes={"vpc": "vpc-1"}, order=1,
            ),
        })
        changes = compute_changes(graph, snapshot, self._schema)
        assert all(c.is_noop for c in changes)

    def test_removed_record_becomes_destroy(self):
        graph = self._graph({})
        snapshot = StateSnapshot(resources={"aws_vpc.main": _record({"cidr_block": "10.0.0.0/16"})})
        changes = compute_changes(graph, snapshot, self._schema)
        assert [(c.address, c.action) for c in changes] == [("aws_vpc.main", Action.DESTROY)]

    def test_prevent_destroy_blocks_replacement(self):
        graph = self._graph({
            "aws_vpc.main": {"cidr_block": "10.1.0.0/16", "lifecycle": {"prevent_destroy": True}},
        })
        snapshot = StateSnapshot(resources={"aws_vpc.main": _record({"cidr_block": "10.0.0.0/16"})})
        with pytest.raises(PreventDestroyError):
            compute_changes(graph, snapshot, self._schema)

    def test_create_before_destroy_inherited_by_dependencies(self):
        graph = self._graph({
            "aws_vpc.main": {"cidr_block": "10.1.0.0/16"},
            "null_resource.user": {
                "vpc": "${aws_vpc.main.id}",
                "lifecycle": {"create_before_destroy": True},
            },
        })
        snapshot = StateSnapshot(resources={"aws_vpc.main": _record({"cidr_block": "10.0.0.0/16"})})
        changes = {c.address: c for c in compute_changes(graph, snapshot, self._schema)}
        assert changes["aws_vpc.main"].action == Action.REPLACE
        assert changes["aws_vpc.main"].create_before_destroy is True
