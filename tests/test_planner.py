"""Tests for the planner: ordering, replacement and targeting."""

import pytest

from conftest import FAKE_TYPES, graph_from_yaml, make_record, rid
from differ import Differ
from errors import CyclicDependencyError, UnresolvedReferenceError
from graph import ResourceGraph
from models import ActionKind, ChangeAction
from planner import Planner, build_plan

CREATE = ActionKind.CREATE
UPDATE = ActionKind.UPDATE
DESTROY = ActionKind.DESTROY

CHAIN = """
resources:
  - {type: network, name: main, attributes: {cidr: 10.0.0.0/16}}
  - type: subnet
    name: a
    attributes: {network: "${network.main}"}
  - type: instance
    name: web
    attributes: {size: small, subnet: "${subnet.a}"}
  - {type: instance, name: other, attributes: {size: small}}
"""


def make_plan(text, records=(), target=None, destroy=False, schemas=FAKE_TYPES):
    graph = graph_from_yaml(text, schemas)
    stored = {record.id: record for record in records}
    actions = Differ(schemas).diff(ResourceGraph() if destroy else graph, stored)
    return Planner(schemas).plan(graph, actions, target=target, destroy=destroy)


def steps(plan):
    return [(str(action.id), action.kind) for action in plan.actions]


def position(plan, identifier, kind):
    return plan.index(rid(identifier), kind)


class TestOrdering:
    def test_creates_follow_dependencies(self):
        plan = make_plan(CHAIN)

        assert position(plan, "network.main", CREATE) < position(plan, "subnet.a", CREATE)
        assert position(plan, "subnet.a", CREATE) < position(plan, "instance.web", CREATE)
        assert plan.predecessors[(rid("subnet.a"), CREATE)] == {(rid("network.main"), CREATE)}
        assert plan.predecessors[(rid("instance.other"), CREATE)] == frozenset()
        assert plan.summary() == {"create": 4, "update": 0, "destroy": 0, "no-op": 0}

    def test_order_is_deterministic(self):
        assert steps(make_plan(CHAIN)) == steps(make_plan(CHAIN))
        assert steps(make_plan(CHAIN)) == [
            ("instance.other", CREATE),
            ("network.main", CREATE),
            ("subnet.a", CREATE),
            ("instance.web", CREATE),
        ]

    def test_ordering_passes_through_unchanged_resources(self):
        text = """
resources:
  - {type: instance, name: a, attributes: {size: large}}
  - {type: instance, name: b, attributes: {size: small}, depends_on: [instance.a]}
  - {type: instance, name: c, attributes: {size: large}, depends_on: [instance.b]}
"""
        records = [
            make_record("instance.a", {"size": "small"}),
            make_record("instance.b", {"size": "small"}, dependencies=["instance.a"]),
            make_record("instance.c", {"size": "small"}, dependencies=["instance.b"]),
        ]
        plan = make_plan(text, records)

        assert [a.id for a in plan.noops] == [rid("instance.b")]
        assert plan.predecessors[(rid("instance.c"), UPDATE)] == {(rid("instance.a"), UPDATE)}

    def test_no_changes(self):
        plan = make_plan(
            "resources: [{type: instance, name: a, attributes: {size: s}}]",
            [make_record("instance.a", {"size": "s"})],
        )
        assert plan.has_changes is False
        assert plan.summary()["no-op"] == 1

    def test_destroy_runs_in_reverse_dependency_order(self):
        records = [
            make_record("network.main", {"cidr": "x"}),
            make_record("subnet.a", dependencies=["network.main"]),
            make_record("instance.web", dependencies=["subnet.a"]),
        ]
        plan = make_plan(CHAIN, records, destroy=True)

        assert steps(plan) == [
            ("instance.web", DESTROY),
            ("subnet.a", DESTROY),
            ("network.main", DESTROY),
        ]
        assert plan.destroy is True

    def test_destroy_honours_dependencies_declared_after_apply(self):
        text = """
resources:
  - {type: instance, name: web, attributes: {size: s}}
  - {type: network, name: main, attributes: {cidr: x}, depends_on: [instance.web]}
"""
        # Stored before the dependency was declared
        records = [
            make_record("network.main", {"cidr": "x"}),
            make_record("instance.web", {"size": "s"}),
        ]
        plan = make_plan(text, records, destroy=True)

        assert steps(plan) == [("network.main", DESTROY), ("instance.web", DESTROY)]
        assert plan.predecessors[(rid("instance.web"), DESTROY)] == {
            (rid("network.main"), DESTROY)
        }

    def test_dependent_moves_off_a_resource_before_it_is_destroyed(self):
        text = """
resources:
  - {type: network, name: new, attributes: {cidr: y}}
  - type: subnet
    name: a
    attributes: {network: "${network.new}"}
"""
        records = [
            make_record("network.old", {"cidr": "x"}, external_id="net-old"),
            make_record("subnet.a", {"network": "net-old"}, dependencies=["network.old"]),
        ]
        plan = make_plan(text, records)

        assert steps(plan) == [
            ("network.new", CREATE),
            ("subnet.a", UPDATE),
            ("network.old", DESTROY),
        ]


class TestReplacement:
    def test_create_before_destroy_by_default(self):
        text = """
resources:
  - {type: network, name: main, attributes: {cidr: 10.1.0.0/16}}
  - type: subnet
    name: a
    attributes: {network: "${network.main}"}
"""
        records = [
            make_record("network.main", {"cidr": "10.0.0.0/16"}, external_id="net-1"),
            make_record("subnet.a", {"network": "net-1"}, dependencies=["network.main"]),
        ]
        plan = make_plan(text, records)

        assert steps(plan) == [
            ("network.main", CREATE),
            ("subnet.a", UPDATE),
            ("network.main", DESTROY),
        ]
        create = plan.actions[0]
        assert create.replacement is True
        assert create.prior.external_id == "net-1"
        assert plan.summary() == {"create": 1, "update": 1, "destroy": 1, "no-op": 0}

    def test_destroy_before_create_type(self):
        text = """
resources:
  - {type: dns_record, name: www, attributes: {zone: b}}
  - type: instance
    name: web
    attributes: {size: s, dns: "${dns_record.www}"}
"""
        records = [
            make_record("dns_record.www", {"zone": "a"}, external_id="dns-1"),
            make_record(
                "instance.web", {"size": "s", "dns": "dns-1"}, dependencies=["dns_record.www"]
            ),
        ]
        plan = make_plan(text, records)

        assert steps(plan) == [
            ("dns_record.www", DESTROY),
            ("dns_record.www", CREATE),
            ("instance.web", UPDATE),
        ]
        assert plan.predecessors[(rid("dns_record.www"), CREATE)] == {
            (rid("dns_record.www"), DESTROY)
        }

    def test_replacement_without_dependents(self):
        plan = make_plan(
            "resources: [{type: instance, name: web, attributes: {image: v2}}]",
            [make_record("instance.web", {"image": "v1"})],
        )
        assert steps(plan) == [("instance.web", CREATE), ("instance.web", DESTROY)]


class TestTargeting:
    def test_target_includes_dependencies_only(self):
        plan = make_plan(CHAIN, target=rid("subnet.a"))
        assert steps(plan) == [("network.main", CREATE), ("subnet.a", CREATE)]
        assert plan.target == rid("subnet.a")

    def test_target_leaf(self):
        plan = make_plan(CHAIN, target=rid("instance.web"))
        assert {identifier for identifier, _ in steps(plan)} == {
            "network.main",
            "subnet.a",
            "instance.web",
        }

    def test_destroy_target_takes_dependents(self):
        records = [
            make_record("network.main", {"cidr": "x"}),
            make_record("subnet.a", dependencies=["network.main"]),
            make_record("instance.web", dependencies=["subnet.a"]),
            make_record("instance.other"),
        ]
        plan = make_plan(CHAIN, records, target=rid("network.main"), destroy=True)
        assert steps(plan) == [
            ("instance.web", DESTROY),
            ("subnet.a", DESTROY),
            ("network.main", DESTROY),
        ]

    def test_unknown_target(self):
        with pytest.raises(UnresolvedReferenceError, match="network.ghost"):
            make_plan(CHAIN, target=rid("network.ghost"))


class TestCycles:
    def test_graph_cycle_is_reported_before_planning(self):
        text = """
resources:
  - {type: instance, name: a, depends_on: [instance.b]}
  - {type: instance, name: b, depends_on: [instance.a]}
"""
        with pytest.raises(CyclicDependencyError):
            make_plan(text)

    def test_ordering_cycle_names_resources(self):
        a = ChangeAction(id=rid("instance.a"), kind=CREATE)
        b = ChangeAction(id=rid("instance.b"), kind=CREATE)
        with pytest.raises(CyclicDependencyError) as exc_info:
            Planner._sort({a.key: a, b.key: b}, {a.key: {b.key}, b.key: {a.key}})
        assert set(exc_info.value.cycle) == {rid("instance.a"), rid("instance.b")}


def test_build_plan_wrapper():
    graph = graph_from_yaml(CHAIN, FAKE_TYPES)
    actions = Differ(FAKE_TYPES).diff(graph, {})
    plan = build_plan(graph, actions, FAKE_TYPES)
    assert len(plan.actions) == 4
