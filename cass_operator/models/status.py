"""
Pydantic models for the externally visible datacenter status.

Field aliases are a stable contract read by status displays and CLIs.
"""
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from cass_operator.models.operation import OperationRecord


class ProgressState(str, Enum):
    """Coarse operator progress."""

    UPDATING = "Updating"
    READY = "Ready"


class CassandraNodeStatus(BaseModel):
    """Per-node identity published in status."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    host_id: Optional[str] = Field(default=None, alias="hostID")
    node_ip: Optional[str] = Field(default=None, alias="nodeIP")


class DatacenterStatus(BaseModel):
    """Observed state of a CassandraDatacenter."""

    model_config = ConfigDict(populate_by_name=True)

    cassandra_operator_progress: ProgressState = Field(
        default=ProgressState.UPDATING, alias="cassandraOperatorProgress"
    )
    node_statuses: Dict[str, CassandraNodeStatus] = Field(
        default_factory=dict, alias="nodeStatuses"
    )
    node_replacements: List[str] = Field(default_factory=list, alias="nodeReplacements")

    super_user_upserted: Optional[datetime] = Field(default=None, alias="superUserUpserted")
    last_server_node_started: Optional[datetime] = Field(default=None, alias="lastServerNodeStarted")
    last_rolling_restart: Optional[datetime] = Field(default=None, alias="lastRollingRestart")

    # Persisted progress
    operation: Optional[OperationRecord] = None
    last_rolling_restart_token: int = Field(default=0, alias="lastRollingRestartToken")
    acknowledged_replace_nodes: List[str] = Field(
        default_factory=list, alias="acknowledgedReplaceNodes"
    )
    canary_config_hash: Optional[str] = Field(default=None, alias="canaryConfigHash")

    # Annotations
    last_error: Optional[str] = Field(default=None, alias="lastError")
    invalid_spec_message: Optional[str] = Field(default=None, alias="invalidSpecMessage")

    def to_document(self) -> dict:
        """Serialize with the public camelCase field names."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
