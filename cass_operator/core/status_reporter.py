"""
Status projection.

Pure function from the operation record and the observed slots to the
externally visible status. No clock reads and no I/O: timestamps are carried
over from the previous status or set by the sequencer.
"""
from typing import Dict, Iterable, Optional

from cass_operator.core.topology import TopologyPlan
from cass_operator.models.node import NodeSlot, NodeState
from cass_operator.models.operation import OperationRecord
from cass_operator.models.status import CassandraNodeStatus, DatacenterStatus, ProgressState


def is_ready(
    record: Optional[OperationRecord],
    slots: Iterable[NodeSlot],
    plan: TopologyPlan,
    stopped: bool,
    node_replacements: Iterable[str] = (),
) -> bool:
    """
    A datacenter is Ready when nothing is in flight and it matches the plan.

    Running: every target slot exists and every node is Normal.
    Stopped: no pod is running.
    """
    if record is not None or list(node_replacements):
        return False

    slots = list(slots)
    if stopped:
        return not any(slot.pod_exists for slot in slots)

    if {slot.ref for slot in slots} != set(plan.target_slots):
        return False
    return all(slot.state == NodeState.NORMAL for slot in slots)


def project_node_statuses(
    previous: Dict[str, CassandraNodeStatus],
    slots: Iterable[NodeSlot],
) -> Dict[str, CassandraNodeStatus]:
    """
    Host id and IP per pod.

    A pod that is not reachable this pass keeps its last published entry.
    Pods that are gone are dropped.
    """
    statuses: Dict[str, CassandraNodeStatus] = {}
    for slot in sorted(slots, key=lambda s: s.pod_name):
        if not slot.pod_exists:
            continue
        if slot.reachable and slot.host_id:
            statuses[slot.pod_name] = CassandraNodeStatus(host_id=slot.host_id, node_ip=slot.ip)
        elif slot.pod_name in previous:
            statuses[slot.pod_name] = previous[slot.pod_name]
    return statuses


def project_status(
    previous: DatacenterStatus,
    record: Optional[OperationRecord],
    slots: Iterable[NodeSlot],
    plan: TopologyPlan,
    stopped: bool = False,
) -> DatacenterStatus:
    """
    Project the status of a datacenter.

    Args:
        previous: Working status of this pass (bookkeeping fields already set)
        record: Active operation record, None if nothing is in flight
        slots: Observed slots
        plan: Topology plan of this pass
        stopped: Whether the datacenter is stopped

    Returns:
        A new DatacenterStatus; ``previous`` is not modified
    """
    slots = list(slots)
    existing = {slot.pod_name for slot in slots if slot.pod_exists or slot.pvc_exists}
    replacements = [name for name in previous.node_replacements if name in existing]

    ready = is_ready(record, slots, plan, stopped, replacements)

    return previous.model_copy(
        update={
            "cassandra_operator_progress": ProgressState.READY if ready else ProgressState.UPDATING,
            "node_statuses": project_node_statuses(previous.node_statuses, slots),
            "node_replacements": replacements,
            "operation": record.model_copy(deep=True) if record is not None else None,
        },
        deep=True,
    )
