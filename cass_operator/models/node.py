"""
Pydantic models for node slots.

A slot is one addressable database process: a ``(rack, ordinal)`` pair with a
pod and a persistent volume claim. The slot exists while either exists.
"""
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class NodeState(str, Enum):
    """Observed lifecycle state of a Cassandra node."""

    UNKNOWN = "Unknown"
    STARTING = "Starting"
    JOINING = "Joining"
    NORMAL = "Normal"
    LEAVING = "Leaving"
    DECOMMISSIONED = "Decommissioned"
    NEEDS_REPLACEMENT = "NeedsReplacement"


class SlotRef(BaseModel):
    """Identity of a node slot."""

    model_config = ConfigDict(frozen=True)

    rack: str = Field(..., description="Owning rack name")
    ordinal: int = Field(..., ge=0, description="Stable index within the rack")

    def __str__(self) -> str:
        return f"{self.rack}-{self.ordinal}"


class NodeSlot(BaseModel):
    """Observed state of one node slot for the current pass."""

    ref: SlotRef
    pod_name: str
    pod_exists: bool = False
    pod_terminating: bool = False
    pvc_exists: bool = False
    pod_phase: Optional[str] = None
    ip: Optional[str] = None
    host_id: Optional[str] = None
    state: NodeState = NodeState.UNKNOWN
    reachable: bool = False
    seed: bool = False
    config_hash: Optional[str] = None

    @property
    def rack(self) -> str:
        return self.ref.rack

    @property
    def ordinal(self) -> int:
        return self.ref.ordinal

    @property
    def pvc_name(self) -> str:
        return f"server-data-{self.pod_name}"

    @property
    def is_running(self) -> bool:
        """A database process may be running in this slot."""
        return self.pod_exists and self.state not in (
            NodeState.DECOMMISSIONED,
            NodeState.UNKNOWN,
        )

    @property
    def is_bootstrapping(self) -> bool:
        return self.state in (NodeState.STARTING, NodeState.JOINING)
