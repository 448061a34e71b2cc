from cass_operator.models.node import NodeSlot, NodeState, SlotRef
from cass_operator.models.operation import ItemStatus, OperationKind, OperationRecord, Phase, WorkItem
from cass_operator.models.status import CassandraNodeStatus, DatacenterStatus, ProgressState
from cass_operator.models.datacenter import Datacenter, DatacenterMeta, DatacenterSpec, Rack

__all__ = [
    "NodeSlot",
    "NodeState",
    "SlotRef",
    "ItemStatus",
    "OperationKind",
    "OperationRecord",
    "Phase",
    "WorkItem",
    "CassandraNodeStatus",
    "DatacenterStatus",
    "ProgressState",
    "Datacenter",
    "DatacenterMeta",
    "DatacenterSpec",
    "Rack",
]
