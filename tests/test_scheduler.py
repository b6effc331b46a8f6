"""
Scheduler tests — topological order, layers and step DAGs for changesets.
"""
import os

import pytest

from converge.config import DEFAULT_COMPUTED_ONLY
from converge.core.differ import compute_changes
from converge.core.graph import ResourceGraph, build_graph
from converge.core.scheduler import Schedule, Step, StepKind, build_schedule, levels, topological_order
from converge.errors import CycleError
from converge.models.change import Action
from converge.models.resource import ResourceNode
from converge.models.state import AppliedRecord, StateSnapshot
from converge.parsers import declaration
from converge.providers.local import LocalProvider

FIXTURES = os.path.join(os.path.dirname(__file__), "fixtures")


def _graph(resources):
    return build_graph(declaration.parse_document({"resources": resources}))


class TestTopologicalOrder:
    def test_ties_broken_by_declaration_order(self):
        graph = _graph({
            "null_resource.z": {},
            "null_resource.a": {},
            "null_resource.m": {"triggers": {"x": "${null_resource.a.id}", "y": "${null_resource.z.id}"}},
        })
        assert topological_order(graph) == ["null_resource.z", "null_resource.a", "null_resource.m"]

    def test_dependencies_always_come_first(self):
        graph = build_graph(declaration.parse_file(os.path.join(FIXTURES, "topology.yaml")))
        order = topological_order(graph)
        position = {a: i for i, a in enumerate(order)}
        for src, dst in graph.edges():
            assert position[dst] < position[src], f"{dst} must precede {src}"

    def test_deterministic(self):
        graph = build_graph(declaration.parse_file(os.path.join(FIXTURES, "topology.yaml")))
        assert topological_order(graph) == topological_order(graph)

    def test_cycle_detected(self):
        a = ResourceNode("null_resource", "a", depends_on=["null_resource.b"], order=0)
        b = ResourceNode("null_resource", "b", depends_on=["null_resource.a"], order=1)
        with pytest.raises(CycleError):
            topological_order(ResourceGraph([a, b]))

    def test_levels(self):
        graph = _graph({
            "null_resource.z": {},
            "null_resource.a": {},
            "null_resource.m": {"triggers": {"x": "${null_resource.a.id}", "y": "${null_resource.z.id}"}},
        })
        assert levels(graph) == [["null_resource.z", "null_resource.a"], ["null_resource.m"]]


class TestBuildSchedule:
    def setup_method(self):
        self.provider = LocalProvider()

    def _changes(self, graph, records):
        snapshot = StateSnapshot(lineage="test", resources={r.address: r for r in records})
        return compute_changes(graph, snapshot, self.provider.schema, DEFAULT_COMPUTED_ONLY)

    def test_creates_follow_dependencies(self):
        graph = build_graph(declaration.parse_file(os.path.join(FIXTURES, "topology.yaml")))
        schedule = build_schedule(graph, self._changes(graph, []))
        assert len(schedule) == len(graph)
        position = {s.address: i for i, s in enumerate(schedule)}
        for step in schedule:
            assert step.kind == StepKind.APPLY
            for req in schedule.requires[step]:
                assert position[req.address] < position[step.address]
            for dep in graph.dependencies(step.address):
                assert Step(StepKind.APPLY, dep) in schedule.requires[step]

    def test_noops_are_not_scheduled(self):
        graph = _graph({"null_resource.a": {}})
        record = AppliedRecord("null_resource.a", "null_resource", "null-1")
        assert len(build_schedule(graph, self._changes(graph, [record]))) == 0

    def test_destroys_run_dependents_first(self):
        records = [
            AppliedRecord("aws_vpc.main", "aws_vpc", "vpc-1", order=0),
            AppliedRecord("aws_subnet.app", "aws_subnet", "subnet-1", dependencies=["aws_vpc.main"], order=1),
        ]
        empty = ResourceGraph([])
        schedule = build_schedule(empty, self._changes(empty, records))
        assert schedule.steps == [
            Step(StepKind.DESTROY, "aws_subnet.app"),
            Step(StepKind.DESTROY, "aws_vpc.main"),
        ]
        assert schedule.requires[Step(StepKind.DESTROY, "aws_vpc.main")] == [Step(StepKind.DESTROY, "aws_subnet.app")]

    def _lc_graph(self, cbd: bool):
        lc = {"image_id": "ami-1", "instance_type": "t3.micro"}
        if cbd:
            lc["lifecycle"] = {"create_before_destroy": True}
        return _graph({
            "aws_launch_configuration.web": lc,
            "aws_autoscaling_group.web": {
                "launch_configuration": "${aws_launch_configuration.web.name}",
                "min_size": 1,
                "max_size": 2,
            },
        })

    def _lc_records(self, cbd: bool):
        return [
            AppliedRecord(
                "aws_launch_configuration.web", "aws_launch_configuration", "lc-1",
                attributes={"image_id": "ami-1", "instance_type": "t2.micro"},
                outputs={"name": "web-lc-1", "arn": "arn:lc-1"},
                order=0, create_before_destroy=cbd,
            ),
            AppliedRecord(
                "aws_autoscaling_group.web", "aws_autoscaling_group", "asg-1",
                attributes={"launch_configuration": "web-lc-1", "min_size": 1, "max_size": 2},
                outputs={"name": "asg-1"},
                dependencies=["aws_launch_configuration.web"],
                order=1,
            ),
        ]

    def test_create_before_destroy_replacement(self):
        graph = self._lc_graph(cbd=True)
        changes = self._changes(graph, self._lc_records(cbd=True))
        schedule = build_schedule(graph, changes)
        assert schedule.steps == [
            Step(StepKind.APPLY, "aws_launch_configuration.web"),
            Step(StepKind.APPLY, "aws_autoscaling_group.web"),
            Step(StepKind.DESTROY_DEPOSED, "aws_launch_configuration.web"),
        ]

    def test_replacement_with_updated_dependent_creates_first(self):
        graph = self._lc_graph(cbd=False)
        changes = self._changes(graph, self._lc_records(cbd=False))
        by_address = {c.address: c for c in changes}
        assert by_address["aws_autoscaling_group.web"].action == Action.UPDATE
        assert by_address["aws_launch_configuration.web"].create_before_destroy is True
        schedule = build_schedule(graph, changes)
        assert schedule.steps == [
            Step(StepKind.APPLY, "aws_launch_configuration.web"),
            Step(StepKind.APPLY, "aws_autoscaling_group.web"),
            Step(StepKind.DESTROY_DEPOSED, "aws_launch_configuration.web"),
        ]

    def test_destroy_before_create_replacement(self):
        graph = _graph({
            "aws_vpc.main": {"cidr_block": "10.1.0.0/16"},
            "aws_subnet.app": {"vpc_id": "${aws_vpc.main.id}", "cidr_block": "10.1.1.0/24"},
        })
        records = [
            AppliedRecord("aws_vpc.main", "aws_vpc", "vpc-1", attributes={"cidr_block": "10.0.0.0/16"}, order=0),
            AppliedRecord(
                "aws_subnet.app", "aws_subnet", "subnet-1",
                attributes={"vpc_id": "vpc-1", "cidr_block": "10.0.1.0/24"},
                dependencies=["aws_vpc.main"], order=1,
            ),
        ]
        changes = self._changes(graph, records)
        assert [c.action for c in changes] == [Action.REPLACE, Action.REPLACE]
        assert not any(c.create_before_destroy for c in changes)
        schedule = build_schedule(graph, changes)
        assert schedule.steps == [
            Step(StepKind.DESTROY, "aws_subnet.app"),
            Step(StepKind.DESTROY, "aws_vpc.main"),
            Step(StepKind.APPLY, "aws_vpc.main"),
            Step(StepKind.APPLY, "aws_subnet.app"),
        ]

    def test_downstream_of_failed_step(self):
        graph = _graph({
            "null_resource.a": {},
            "null_resource.b": {"triggers": {"x": "${null_resource.a.id}"}},
            "null_resource.c": {"triggers": {"x": "${null_resource.b.id}"}},
            "null_resource.d": {},
        })
        schedule = build_schedule(graph, self._changes(graph, []))
        downstream = schedule.downstream(Step(StepKind.APPLY, "null_resource.a"))
        assert downstream == {Step(StepKind.APPLY, "null_resource.b"), Step(StepKind.APPLY, "null_resource.c")}

    def test_leftover_deposed_object_is_cleaned_up(self):
        graph = _graph({"null_resource.a": {}})
        record = AppliedRecord(
            "null_resource.a", "null_resource", "null-2",
            deposed=[{"id": "null-1", "type": "null_resource", "attributes": {}, "dependencies": []}],
        )
        schedule = build_schedule(graph, self._changes(graph, [record]))
        assert schedule.steps == [Step(StepKind.DESTROY_DEPOSED, "null_resource.a")]


class TestSchedule:
    def setup_method(self):
        self.steps = [Step(StepKind.APPLY, f"null_resource.n{i}") for i in range(2000)]
        requires = {s: [] for s in self.steps}
        for prev, cur in zip(self.steps, self.steps[1:]):
            requires[cur].append(prev)
        self.schedule = Schedule(steps=list(self.steps), requires=requires)

    def test_dependents(self):
        assert self.schedule.dependents(self.steps[0]) == [self.steps[1]]
        assert self.schedule.dependents(self.steps[-1]) == []

    def test_downstream_of_long_chain(self):
        assert self.schedule.downstream(self.steps[0]) == set(self.steps[1:])

    def test_position(self):
        assert self.schedule.position(self.steps[1234]) == 1234

    def test_dependents_in_schedule_order(self):
        root = Step(StepKind.APPLY, "null_resource.root")
        a = Step(StepKind.APPLY, "null_resource.a")
        b = Step(StepKind.APPLY, "null_resource.b")
        schedule = Schedule(steps=[root, a, b], requires={root: [], a: [root], b: [root]})
        assert schedule.dependents(root) == [a, b]
