"""
Tests for the rolling operation sequencer.
"""
import pytest

from cass_operator.config.settings import settings
from cass_operator.core.node_lifecycle import NodeLifecycle
from cass_operator.core.sequencer import (
    PassContext,
    RollingOperationSequencer,
    StepResult,
    build_record,
    prune,
)
from cass_operator.core.topology import plan_topology
from cass_operator.models.datacenter import SEED_NODE_LABEL
from cass_operator.models.node import NodeState, SlotRef
from cass_operator.models.operation import ItemStatus, OperationKind, Phase
from cass_operator.models.status import DatacenterStatus


def ref(ordinal):
    return SlotRef(rack="r1", ordinal=ordinal)


def make_context(dc, slots, status=None):
    slots = {slot.ref: slot for slot in slots}
    plan = plan_topology(dc.spec.rack_names(), slots.keys(), dc.spec.size)
    return PassContext(dc, plan, slots, status or DatacenterStatus())


@pytest.fixture
def dc(make_datacenter):
    return make_datacenter(racks=[{"name": "r1"}], size=3)


@pytest.fixture
def sequencer(fake_kubernetes, fake_management_api):
    lifecycle = NodeLifecycle(fake_management_api, fake_kubernetes, "default")
    return RollingOperationSequencer(lifecycle, fake_kubernetes, retry_budget=2)


@pytest.mark.asyncio
async def test_start_budget_exhausted_flags_node_for_replacement(dc, sequencer, fake_management_api, make_slot):
    slot = make_slot("r1", 0, state=NodeState.UNKNOWN)
    fake_management_api.start_fails.add(slot.ip)
    record = build_record(dc, OperationKind.SCALE_UP, [slot.ref])
    record.items[0].phase = Phase.START
    ctx = make_context(dc, [slot])

    assert await sequencer.step(record, ctx) == StepResult.WAITING
    assert record.items[0].attempts == 1

    assert await sequencer.step(record, ctx) == StepResult.FAILED
    assert record.items[0].status == ItemStatus.FAILED
    assert "flagged for replacement" in record.failure_message
    assert ctx.status.node_replacements == [slot.pod_name]
    assert record.is_terminal()


@pytest.mark.asyncio
async def test_start_waits_for_pod_ip_without_using_budget(dc, sequencer, make_slot):
    slot = make_slot("r1", 0, state=NodeState.UNKNOWN, ip=None, reachable=False)
    record = build_record(dc, OperationKind.SCALE_UP, [slot.ref])
    record.items[0].phase = Phase.START

    for _ in range(5):
        assert await sequencer.step(record, make_context(dc, [slot])) == StepResult.WAITING

    assert record.items[0].attempts == 0
    assert record.items[0].status == ItemStatus.IN_PROGRESS


@pytest.mark.asyncio
async def test_start_waits_for_pending_pod_without_using_budget(dc, sequencer, fake_management_api, make_slot):
    slot = make_slot("r1", 0, state=NodeState.UNKNOWN, pod_phase="Pending", reachable=False)
    fake_management_api.unreachable.add(slot.ip)
    record = build_record(dc, OperationKind.RESUME, [slot.ref])
    record.items[0].phase = Phase.START

    for _ in range(5):
        assert await sequencer.step(record, make_context(dc, [slot])) == StepResult.WAITING

    assert record.items[0].attempts == 0
    assert record.items[0].status == ItemStatus.IN_PROGRESS
    assert fake_management_api.called("start") == []


@pytest.mark.asyncio
async def test_retry_budget_of_one_fails_on_first_attempt(
    dc, fake_kubernetes, fake_management_api, make_slot
):
    lifecycle = NodeLifecycle(fake_management_api, fake_kubernetes, "default")
    sequencer = RollingOperationSequencer(lifecycle, fake_kubernetes, retry_budget=1)
    slot = make_slot("r1", 0, state=NodeState.UNKNOWN)
    fake_management_api.start_fails.add(slot.ip)
    record = build_record(dc, OperationKind.SCALE_UP, [slot.ref])
    record.items[0].phase = Phase.START

    assert await sequencer.step(record, make_context(dc, [slot])) == StepResult.FAILED
    assert record.items[0].attempts == 1


def test_retry_budget_zero_is_not_replaced_by_default(fake_kubernetes, fake_management_api):
    lifecycle = NodeLifecycle(fake_management_api, fake_kubernetes, "default")

    assert RollingOperationSequencer(lifecycle, fake_kubernetes, retry_budget=0).retry_budget == 0
    assert (
        RollingOperationSequencer(lifecycle, fake_kubernetes).retry_budget
        == settings.node_start_retry_budget
    )


@pytest.mark.asyncio
async def test_already_running_node_counts_as_started(dc, sequencer, fake_management_api, make_slot):
    slot = make_slot("r1", 0, state=NodeState.UNKNOWN)
    fake_management_api.states[slot.ip] = "NORMAL"
    record = build_record(dc, OperationKind.SCALE_UP, [slot.ref])
    record.items[0].phase = Phase.START

    assert await sequencer.step(record, make_context(dc, [slot])) == StepResult.ADVANCED
    assert record.items[0].phase == Phase.WAIT_NORMAL


@pytest.mark.asyncio
async def test_provision_renders_pod_and_claim(dc, sequencer, fake_kubernetes):
    record = build_record(dc, OperationKind.SCALE_UP, [ref(0)])

    result = await sequencer.step(record, make_context(dc, []))

    assert result == StepResult.ADVANCED
    assert list(fake_kubernetes.pods) == ["cluster1-dc1-r1-sts-0"]
    assert list(fake_kubernetes.pvcs) == ["server-data-cluster1-dc1-r1-sts-0"]
    assert record.items[0].phase == Phase.START
    assert record.items[0].started_at is not None


@pytest.mark.asyncio
async def test_first_node_of_empty_datacenter_is_provisioned_as_seed(dc, sequencer, fake_kubernetes):
    record = build_record(dc, OperationKind.SCALE_UP, [ref(0)])

    await sequencer.step(record, make_context(dc, []))

    labels = fake_kubernetes.pods["cluster1-dc1-r1-sts-0"]["metadata"]["labels"]
    assert labels[SEED_NODE_LABEL] == "true"


@pytest.mark.asyncio
async def test_bootstrapping_node_is_not_provisioned_as_seed(dc, sequencer, fake_kubernetes, make_slot):
    # r1-1 is a planned seed of a three node rack, but it has not joined yet
    record = build_record(dc, OperationKind.SCALE_UP, [ref(1)])
    ctx = make_context(dc, [make_slot("r1", 0)])
    assert ctx.plan.is_seed(ref(1))

    await sequencer.step(record, ctx)

    labels = fake_kubernetes.pods["cluster1-dc1-r1-sts-1"]["metadata"]["labels"]
    assert labels[SEED_NODE_LABEL] == "false"
    assert ctx.seeds == [ref(0)]


@pytest.mark.asyncio
async def test_provision_waits_for_terminating_pod(dc, sequencer, fake_kubernetes, make_slot):
    slot = make_slot("r1", 0, pod_terminating=True)
    record = build_record(dc, OperationKind.RESUME, [slot.ref])

    assert await sequencer.step(record, make_context(dc, [slot])) == StepResult.WAITING
    assert fake_kubernetes.pods == {}


@pytest.mark.asyncio
async def test_decommission_deferred_while_another_node_leaves(dc, sequencer, fake_management_api, make_slot):
    slots = [
        make_slot("r1", 0),
        make_slot("r1", 1, state=NodeState.LEAVING),
        make_slot("r1", 2),
    ]
    record = build_record(dc, OperationKind.SCALE_DOWN, [ref(2)])

    assert await sequencer.step(record, make_context(dc, slots)) == StepResult.WAITING
    assert "leaving" in record.items[0].message
    assert fake_management_api.called("decommission") == []


@pytest.mark.asyncio
async def test_last_running_node_is_never_decommissioned(dc, sequencer, fake_management_api, make_slot):
    slot = make_slot("r1", 0)
    record = build_record(dc, OperationKind.SCALE_DOWN, [slot.ref])

    assert await sequencer.step(record, make_context(dc, [slot])) == StepResult.WAITING
    assert "last running node" in record.items[0].message
    assert fake_management_api.called("decommission") == []


@pytest.mark.asyncio
async def test_replace_carries_old_address_to_new_pod(dc, sequencer, fake_kubernetes, make_slot):
    slot = make_slot("r1", 1, state=NodeState.NEEDS_REPLACEMENT, ip="10.1.1.1")
    status = DatacenterStatus(node_replacements=[slot.pod_name])
    record = build_record(dc, OperationKind.REPLACE, [slot.ref])
    others = [make_slot("r1", 0), make_slot("r1", 2)]

    assert await sequencer.step(record, make_context(dc, others + [slot], status)) == StepResult.WAITING
    assert record.items[0].replace_address == "10.1.1.1"

    # Pod and claim are gone on the next pass
    ctx = make_context(dc, others, status)
    assert await sequencer.step(record, ctx) == StepResult.ADVANCED
    assert ctx.status.node_replacements == []
    assert record.items[0].phase == Phase.PROVISION

    assert await sequencer.step(record, ctx) == StepResult.ADVANCED
    env = fake_kubernetes.pod_env(slot.pod_name)
    assert env["JVM_EXTRA_OPTS"] == "-Dcassandra.replace_address_first_boot=10.1.1.1"


@pytest.mark.asyncio
async def test_canary_completion_records_config_hash(dc, sequencer):
    record = build_record(dc, OperationKind.CANARY_RESTART, [ref(0)], config_hash="abc123")
    record.items[0].status = ItemStatus.DONE
    status = DatacenterStatus()

    assert await sequencer.step(record, make_context(dc, [], status)) == StepResult.COMPLETED
    assert status.canary_config_hash == "abc123"
    assert record.completed_at is not None


@pytest.mark.asyncio
async def test_rolling_restart_completion_clears_canary_hash(dc, sequencer):
    record = build_record(dc, OperationKind.ROLLING_RESTART, [ref(0)], config_hash="abc123")
    record.items[0].status = ItemStatus.DONE
    status = DatacenterStatus(canary_config_hash="abc123")

    assert await sequencer.step(record, make_context(dc, [], status)) == StepResult.COMPLETED
    assert status.canary_config_hash is None
    assert status.last_rolling_restart is not None


def test_prune_drops_items_the_plan_no_longer_needs(dc):
    record = build_record(dc, OperationKind.SCALE_UP, [ref(1), ref(2), ref(3)])
    record.items[0].status = ItemStatus.IN_PROGRESS
    plan = plan_topology(["r1"], [ref(0)], 3)

    removed = prune(record, plan)

    assert [item.slot for item in removed] == [ref(3)]
    assert [item.slot for item in record.items] == [ref(1), ref(2)]


def test_prune_keeps_item_in_progress(dc):
    record = build_record(dc, OperationKind.SCALE_DOWN, [ref(2), ref(1)])
    record.items[0].status = ItemStatus.IN_PROGRESS
    # Size went back up: nothing needs removing any more
    plan = plan_topology(["r1"], [ref(0), ref(1), ref(2)], 3)

    prune(record, plan)

    assert [item.slot for item in record.items] == [ref(2)]


def test_prune_ignores_restarts(dc):
    record = build_record(dc, OperationKind.ROLLING_RESTART, [ref(0), ref(1)])
    plan = plan_topology(["r1"], [ref(0), ref(1)], 2)

    assert prune(record, plan) == []
    assert len(record.items) == 2
