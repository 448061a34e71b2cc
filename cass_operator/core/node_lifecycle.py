"""
Node lifecycle state machine for Cassandra nodes.

States are never stored: every pass re-derives them from the pod and the
management API, so the only memory is the last observed status.

States:
- Unknown: no pod, pod without a running database, or unreachable sidecar
- Starting: database process launched, not yet gossiping
- Joining: bootstrapping, streaming its token ranges
- Normal: serving reads and writes
- Leaving: decommission in progress
- Decommissioned: left the ring, storage may be released
- NeedsReplacement: flagged for replacement, comes back through Starting

Usage:
    >>> NodeStateMachine.can_transition(NodeState.NORMAL, NodeState.LEAVING)
    True
    >>> NodeStateMachine.can_transition(NodeState.LEAVING, NodeState.NORMAL)
    False
    >>> classify(RemoteNodeStatus(state="LEFT"), pod_exists=True)
    <NodeState.DECOMMISSIONED: 'Decommissioned'>
"""
from typing import Dict, Iterable, Optional, Set

from cass_operator.config.logging import get_logger
from cass_operator.exceptions import (
    AlreadyRunningError,
    InvalidTransitionError,
    ManagementApiError,
    ManagementApiUnreachableError,
    UnsafeOperationError,
)
from cass_operator.models.node import NodeSlot, NodeState
from cass_operator.services.management_api import ManagementApiClient, RemoteNodeStatus

logger = get_logger(__name__)


# Management API state strings
REMOTE_STATES: Dict[str, NodeState] = {
    "NORMAL": NodeState.NORMAL,
    "JOINING": NodeState.JOINING,
    "LEAVING": NodeState.LEAVING,
    "DECOMMISSIONED": NodeState.DECOMMISSIONED,
    "LEFT": NodeState.DECOMMISSIONED,
    "STARTING": NodeState.STARTING,
}

# Nodes that take part in the ring or are about to
ACTIVE_STATES = {
    NodeState.STARTING,
    NodeState.JOINING,
    NodeState.NORMAL,
    NodeState.LEAVING,
}


class NodeStateMachine:
    """Allowed transitions between node lifecycle states."""

    TRANSITIONS: Dict[NodeState, Set[NodeState]] = {
        NodeState.UNKNOWN: {
            NodeState.STARTING,
        },
        NodeState.STARTING: {
            NodeState.JOINING,
            NodeState.NORMAL,            # Seeds skip bootstrap
            NodeState.NEEDS_REPLACEMENT,
        },
        NodeState.JOINING: {
            NodeState.NORMAL,
            NodeState.NEEDS_REPLACEMENT,
        },
        NodeState.NORMAL: {
            NodeState.LEAVING,
            NodeState.NEEDS_REPLACEMENT,
        },
        NodeState.LEAVING: {
            NodeState.DECOMMISSIONED,
        },
        NodeState.DECOMMISSIONED: set(),  # Terminal, storage is torn down
        NodeState.NEEDS_REPLACEMENT: {
            NodeState.STARTING,
        },
    }

    @classmethod
    def can_transition(cls, from_state: NodeState, to_state: NodeState) -> bool:
        """
        Check if a lifecycle transition is valid.

        Args:
            from_state: Current node state
            to_state: Target state

        Returns:
            True if transition is allowed, False otherwise
        """
        return to_state in cls.TRANSITIONS.get(from_state, set())

    @classmethod
    def validate_transition(
        cls,
        from_state: NodeState,
        to_state: NodeState,
        pod_name: Optional[str] = None,
    ) -> None:
        """
        Validate a lifecycle transition and raise if invalid.

        Raises:
            InvalidTransitionError: If transition is not allowed
        """
        if not cls.can_transition(from_state, to_state):
            error_msg = f"Invalid node transition from {from_state.value} to {to_state.value}"
            if pod_name:
                error_msg += f" for pod {pod_name}"

            logger.error(
                "invalid_node_transition",
                pod_name=pod_name,
                from_state=from_state.value,
                to_state=to_state.value,
                allowed_states=sorted(s.value for s in cls.TRANSITIONS.get(from_state, set())),
            )
            raise InvalidTransitionError(
                error_msg,
                details={"pod_name": pod_name, "from": from_state.value, "to": to_state.value},
            )

        logger.debug(
            "node_transition_validated",
            pod_name=pod_name,
            from_state=from_state.value,
            to_state=to_state.value,
        )


def classify(
    remote: Optional[RemoteNodeStatus],
    pod_exists: bool,
    needs_replacement: bool = False,
) -> NodeState:
    """
    Map an observation to a lifecycle state.

    Args:
        remote: Management API answer, None when unreachable
        pod_exists: Whether the slot's pod exists
        needs_replacement: Whether the slot is flagged for replacement

    Returns:
        The node state for this pass
    """
    if needs_replacement:
        return NodeState.NEEDS_REPLACEMENT
    if not pod_exists or remote is None:
        return NodeState.UNKNOWN
    return REMOTE_STATES.get(remote.state.upper(), NodeState.UNKNOWN)


class NodeLifecycle:
    """
    Transition operations on single nodes.

    Every operation is safe to repeat: the control loop may crash at any point
    and re-issue the same call on the next pass.
    """

    def __init__(self, management_api: ManagementApiClient, kubernetes, namespace: str):
        """
        Args:
            management_api: Client for the per-node management API
            kubernetes: Resource applier used to tear down pods and volumes
            namespace: Namespace of the datacenter's resources
        """
        self.management_api = management_api
        self.kubernetes = kubernetes
        self.namespace = namespace

    async def observe(self, slot: NodeSlot, needs_replacement: bool = False) -> NodeSlot:
        """
        Fetch the remote status of a slot and return the classified copy.

        A node whose status cannot be read for any reason is Unknown and
        unreachable for this pass; one bad node never fails the whole pass.
        """
        remote: Optional[RemoteNodeStatus] = None
        if slot.pod_exists and slot.ip:
            try:
                remote = await self.management_api.get_status(slot.pod_name, slot.ip)
            except ManagementApiUnreachableError as e:
                logger.debug("node_unreachable", pod_name=slot.pod_name, reason=e.message)
            except ManagementApiError as e:
                logger.warning("node_status_rejected", pod_name=slot.pod_name, error=e.message)
            except ValueError as e:
                # Malformed status body
                logger.warning("node_status_unreadable", pod_name=slot.pod_name, error=str(e))

        state = classify(remote, slot.pod_exists, needs_replacement)
        return slot.model_copy(
            update={
                "state": state,
                "reachable": remote is not None,
                "host_id": remote.host_id if remote is not None else slot.host_id,
            }
        )

    async def start(self, slot: NodeSlot) -> None:
        """
        Start the database process of a slot.

        Raises:
            ManagementApiUnreachableError: sidecar not reachable, retry later
            AlreadyRunningError: node is not start-eligible
        """
        if not NodeStateMachine.can_transition(slot.state, NodeState.STARTING):
            raise AlreadyRunningError(slot.pod_name, details={"state": slot.state.value})

        await self.management_api.start(slot.pod_name, slot.ip)
        logger.info("node_start_requested", pod_name=slot.pod_name, rack=slot.rack)

    async def decommission(self, slot: NodeSlot, slots: Iterable[NodeSlot]) -> None:
        """
        Remove a node from the ring, streaming its data to the others.

        A node already leaving is left alone; the call returns and the
        caller waits for Decommissioned.

        Raises:
            UnsafeOperationError: last running node, or another node leaving
            InvalidTransitionError: node not Normal
        """
        if slot.state == NodeState.LEAVING:
            logger.info("node_decommission_in_progress", pod_name=slot.pod_name)
            return

        others = [s for s in slots if s.pod_name != slot.pod_name]
        leaving = [s.pod_name for s in others if s.state == NodeState.LEAVING]
        if leaving:
            raise UnsafeOperationError(
                f"Cannot decommission '{slot.pod_name}' while {', '.join(leaving)} is leaving",
                details={"pod_name": slot.pod_name, "leaving": leaving},
            )
        if not any(s.state in ACTIVE_STATES for s in others):
            raise UnsafeOperationError(
                f"Cannot decommission '{slot.pod_name}': it is the last running node",
                details={"pod_name": slot.pod_name},
            )

        NodeStateMachine.validate_transition(slot.state, NodeState.LEAVING, slot.pod_name)
        await self.management_api.decommission(slot.pod_name, slot.ip)
        logger.info("node_decommission_requested", pod_name=slot.pod_name, rack=slot.rack)

    async def drain(self, slot: NodeSlot) -> None:
        """Flush and stop accepting writes; nothing to do if the node is not running."""
        if slot.state not in ACTIVE_STATES:
            logger.debug("node_drain_skipped", pod_name=slot.pod_name, state=slot.state.value)
            return
        await self.management_api.drain(slot.pod_name, slot.ip)

    async def replace(self, slot: NodeSlot) -> Optional[str]:
        """
        Tear down a slot's pod and volume so it comes back with fresh storage.

        Returns:
            The old IP, to be passed as replace address when the node starts
        """
        await self.teardown(slot, delete_volume=True)
        logger.info(
            "node_replacement_started",
            pod_name=slot.pod_name,
            replace_address=slot.ip,
        )
        return slot.ip

    async def teardown(self, slot: NodeSlot, delete_volume: bool = True) -> None:
        """Delete the pod and, unless told otherwise, its volume claim."""
        if slot.pod_exists:
            await self.kubernetes.delete_pod(self.namespace, slot.pod_name)
        if delete_volume and slot.pvc_exists:
            await self.kubernetes.delete_pvc(self.namespace, slot.pvc_name)

    async def upsert_superuser(self, slot: NodeSlot, username: str, password: str) -> None:
        """
        Create or update the superuser role through a Normal node.

        Raises:
            UnsafeOperationError: node is not Normal
        """
        if slot.state != NodeState.NORMAL:
            raise UnsafeOperationError(
                f"Cannot create roles through '{slot.pod_name}' in state {slot.state.value}",
                details={"pod_name": slot.pod_name},
            )
        await self.management_api.create_role(slot.pod_name, slot.ip, username, password)
