"""
Tests for status projection.
"""
from cass_operator.core.sequencer import build_record
from cass_operator.core.status_reporter import is_ready, project_status
from cass_operator.core.topology import plan_topology
from cass_operator.models.node import NodeState
from cass_operator.models.operation import OperationKind
from cass_operator.models.status import CassandraNodeStatus, DatacenterStatus, ProgressState


def test_converged_datacenter_is_ready(make_slot):
    slots = [make_slot("r1", 0, host_id="h0"), make_slot("r1", 1, host_id="h1")]
    plan = plan_topology(["r1"], [s.ref for s in slots], 2)

    status = project_status(DatacenterStatus(), None, slots, plan)

    assert status.cassandra_operator_progress == ProgressState.READY
    assert status.node_statuses["cluster1-dc1-r1-sts-0"] == CassandraNodeStatus(host_id="h0", node_ip="10.1.0.1")
    assert status.operation is None


def test_projection_does_not_modify_previous(make_slot, make_datacenter):
    previous = DatacenterStatus(node_replacements=["cluster1-dc1-r1-sts-0", "gone-pod"])
    slots = [make_slot("r1", 0, host_id="h0", state=NodeState.NEEDS_REPLACEMENT)]
    plan = plan_topology(["r1"], [s.ref for s in slots], 1)
    record = build_record(make_datacenter(), OperationKind.REPLACE, [slots[0].ref])

    status = project_status(previous, record, slots, plan)

    assert previous.node_replacements == ["cluster1-dc1-r1-sts-0", "gone-pod"]
    assert previous.operation is None
    assert status.node_replacements == ["cluster1-dc1-r1-sts-0"]
    assert status.operation == record
    assert status.operation is not record
    assert status.cassandra_operator_progress == ProgressState.UPDATING


def test_same_inputs_give_same_status(make_slot):
    slots = [make_slot("r1", 0, host_id="h0")]
    plan = plan_topology(["r1"], [s.ref for s in slots], 1)
    previous = DatacenterStatus()

    assert project_status(previous, None, slots, plan) == project_status(previous, None, slots, plan)


def test_unreachable_node_keeps_last_published_identity(make_slot):
    previous = DatacenterStatus(
        node_statuses={
            "cluster1-dc1-r1-sts-0": CassandraNodeStatus(host_id="h0", node_ip="10.1.0.1"),
            "cluster1-dc1-r1-sts-9": CassandraNodeStatus(host_id="h9", node_ip="10.1.9.1"),
        }
    )
    slots = [make_slot("r1", 0, reachable=False, state=NodeState.UNKNOWN, host_id=None)]
    plan = plan_topology(["r1"], [s.ref for s in slots], 1)

    status = project_status(previous, None, slots, plan)

    assert status.node_statuses == {
        "cluster1-dc1-r1-sts-0": CassandraNodeStatus(host_id="h0", node_ip="10.1.0.1"),
    }
    assert status.cassandra_operator_progress == ProgressState.UPDATING


def test_missing_slot_is_not_ready(make_slot):
    slots = [make_slot("r1", 0)]
    plan = plan_topology(["r1"], [s.ref for s in slots], 2)

    assert not is_ready(None, slots, plan, stopped=False)


def test_stopped_datacenter_is_ready_without_pods(make_slot):
    slots = [make_slot("r1", 0, pod_exists=False, state=NodeState.UNKNOWN)]
    plan = plan_topology(["r1"], [s.ref for s in slots], 1)

    assert is_ready(None, slots, plan, stopped=True)
    assert not is_ready(None, [make_slot("r1", 0)], plan, stopped=True)


def test_pending_replacement_is_not_ready(make_slot):
    slots = [make_slot("r1", 0)]
    plan = plan_topology(["r1"], [s.ref for s in slots], 1)

    assert not is_ready(None, slots, plan, stopped=False, node_replacements=["cluster1-dc1-r1-sts-0"])
