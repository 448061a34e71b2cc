"""
Operation model for tracking multi-node operations.

An OperationRecord is the single in-flight operation of a datacenter. It is
persisted in the datacenter status so progress survives operator restarts.

Enables:
- One-node-at-a-time sequencing
- Crash-safe resume (every phase action is idempotent)
- Status reporting
"""
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from cass_operator.models.node import SlotRef


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OperationKind(str, Enum):
    """Type of multi-node operation."""
    SCALE_UP = "scale-up"
    SCALE_DOWN = "scale-down"
    REPLACE = "replace"
    ROLLING_RESTART = "rolling-restart"
    CANARY_RESTART = "canary-restart"
    STOP = "stop"
    RESUME = "resume"


class ItemStatus(str, Enum):
    """Status of one work item."""
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    DONE = "done"
    FAILED = "failed"


class Phase(str, Enum):
    """Sub-step of a work item."""
    PROVISION = "provision"
    START = "start"
    WAIT_NORMAL = "wait-normal"
    DECOMMISSION = "decommission"
    WAIT_DECOMMISSIONED = "wait-decommissioned"
    TEARDOWN = "teardown"
    DRAIN = "drain"
    RESTART = "restart"
    STOP = "stop"


# Ordered phases each operation kind walks through for every item
PHASES = {
    OperationKind.SCALE_UP: [Phase.PROVISION, Phase.START, Phase.WAIT_NORMAL],
    OperationKind.RESUME: [Phase.PROVISION, Phase.START, Phase.WAIT_NORMAL],
    OperationKind.SCALE_DOWN: [Phase.DECOMMISSION, Phase.WAIT_DECOMMISSIONED, Phase.TEARDOWN],
    OperationKind.REPLACE: [Phase.TEARDOWN, Phase.PROVISION, Phase.START, Phase.WAIT_NORMAL],
    OperationKind.ROLLING_RESTART: [
        Phase.DRAIN, Phase.RESTART, Phase.PROVISION, Phase.START, Phase.WAIT_NORMAL,
    ],
    OperationKind.CANARY_RESTART: [
        Phase.DRAIN, Phase.RESTART, Phase.PROVISION, Phase.START, Phase.WAIT_NORMAL,
    ],
    OperationKind.STOP: [Phase.DRAIN, Phase.STOP],
}


class WorkItem(BaseModel):
    """One node slot an operation has to process."""

    model_config = ConfigDict(populate_by_name=True)

    slot: SlotRef
    pod_name: str = Field(..., alias="podName")
    status: ItemStatus = ItemStatus.PENDING
    phase: Phase
    attempts: int = 0
    replace_address: Optional[str] = Field(default=None, alias="replaceAddress")
    started_at: Optional[datetime] = Field(default=None, alias="startedAt")
    completed_at: Optional[datetime] = Field(default=None, alias="completedAt")
    message: str = ""


class OperationRecord(BaseModel):
    """
    Tracks the in-flight operation of a datacenter.

    Owned by the control loop, mutated only by the sequencer, read by the
    status reporter.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=lambda: f"op-{uuid4().hex[:12]}")
    kind: OperationKind
    items: List[WorkItem] = Field(default_factory=list)

    # What the operation was created for
    config_hash: Optional[str] = Field(default=None, alias="configHash")
    restart_token: Optional[int] = Field(default=None, alias="restartToken")

    # Timing
    created_at: datetime = Field(default_factory=utcnow, alias="createdAt")
    completed_at: Optional[datetime] = Field(default=None, alias="completedAt")

    # Error handling
    failure_message: Optional[str] = Field(default=None, alias="failureMessage")

    @classmethod
    def build(
        cls,
        kind: OperationKind,
        slots: List[SlotRef],
        pod_names: List[str],
        **kwargs,
    ) -> "OperationRecord":
        """Create a record with one pending item per slot, in the given order."""
        first_phase = PHASES[kind][0]
        items = [
            WorkItem(slot=slot, pod_name=pod_name, phase=first_phase)
            for slot, pod_name in zip(slots, pod_names)
        ]
        return cls(kind=kind, items=items, **kwargs)

    def current_item(self) -> Optional[WorkItem]:
        """The item in progress, else the next pending one."""
        for item in self.items:
            if item.status == ItemStatus.IN_PROGRESS:
                return item
        for item in self.items:
            if item.status == ItemStatus.PENDING:
                return item
        return None

    def in_flight_item(self) -> Optional[WorkItem]:
        for item in self.items:
            if item.status == ItemStatus.IN_PROGRESS:
                return item
        return None

    def pending_items(self) -> List[WorkItem]:
        return [item for item in self.items if item.status == ItemStatus.PENDING]

    def next_phase(self, phase: Phase) -> Optional[Phase]:
        phases = PHASES[self.kind]
        index = phases.index(phase)
        if index + 1 < len(phases):
            return phases[index + 1]
        return None

    def has_failed(self) -> bool:
        return any(item.status == ItemStatus.FAILED for item in self.items)

    def is_complete(self) -> bool:
        """All items done."""
        return all(item.status == ItemStatus.DONE for item in self.items)

    def is_terminal(self) -> bool:
        """Completed or failed; a terminal record is cleared from status."""
        return self.is_complete() or self.has_failed()
