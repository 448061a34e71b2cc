"""
Rolling operation sequencer.

Turns a multi-node change into an OperationRecord and executes it one
single-node step per reconciliation pass:

    scale-up / resume:  provision -> start -> wait-normal
    scale-down:         decommission -> wait-decommissioned -> teardown
    replace:            teardown -> provision -> start -> wait-normal
    restart:            drain -> restart -> provision -> start -> wait-normal
    stop:               drain -> stop

Items run strictly in order; the next item starts only after the previous one
is done. Every phase action is idempotent, so a pass that crashes after an
external call but before the record is persisted simply repeats the call.
"""
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional

from cass_operator.config.logging import get_logger
from cass_operator.config.settings import settings
from cass_operator.core.node_lifecycle import NodeLifecycle
from cass_operator.core.topology import TopologyPlan, select_live_seeds
from cass_operator.exceptions import (
    AlreadyRunningError,
    KubernetesError,
    ManagementApiUnreachableError,
    ResourceConflictError,
    UnsafeOperationError,
)
from cass_operator.models.datacenter import Datacenter
from cass_operator.models.node import NodeSlot, NodeState, SlotRef
from cass_operator.models.operation import (
    ItemStatus,
    OperationKind,
    OperationRecord,
    Phase,
    WorkItem,
    utcnow,
)
from cass_operator.models.status import DatacenterStatus
from cass_operator.services import metrics
from cass_operator.services.kubernetes_service import ApplyResult
from cass_operator.services.manifest import render_node

logger = get_logger(__name__)

# Kinds whose pending items follow the placement plan
SCALE_KINDS = {OperationKind.SCALE_UP, OperationKind.SCALE_DOWN}

# Pod phase in which the management API sidecar can take a start
POD_RUNNING = "Running"


class StepResult(str, Enum):
    """Outcome of one sequencer step."""

    ADVANCED = "advanced"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"


def joined_slots(slots: Dict[SlotRef, NodeSlot]) -> List[SlotRef]:
    """Slots whose node is Normal."""
    return [ref for ref, slot in slots.items() if slot.state == NodeState.NORMAL]


class PassContext:
    """
    Everything one pass knows about a datacenter.

    ``status`` is the working copy of the status for this pass; the sequencer
    writes bookkeeping fields (replacements, timestamps) into it. ``seeds``
    are the slots labelled as seeds this pass, computed from the Normal slots
    when not given.
    """

    def __init__(
        self,
        dc: Datacenter,
        plan: TopologyPlan,
        slots: Dict[SlotRef, NodeSlot],
        status: DatacenterStatus,
        seeds: Optional[List[SlotRef]] = None,
    ):
        self.dc = dc
        self.plan = plan
        self.slots = slots
        self.status = status
        if seeds is None:
            seeds = select_live_seeds(plan, joined_slots(slots))
        self.seeds = seeds

    def slot(self, item: WorkItem) -> NodeSlot:
        """Observed slot of an item; a slot with nothing behind it if unobserved."""
        observed = self.slots.get(item.slot)
        if observed is not None:
            return observed
        return NodeSlot(ref=item.slot, pod_name=item.pod_name)


def build_record(
    dc: Datacenter,
    kind: OperationKind,
    slots: Iterable[SlotRef],
    **kwargs,
) -> OperationRecord:
    """Create an OperationRecord with one pending item per slot, in order."""
    slots = list(slots)
    record = OperationRecord.build(kind, slots, [dc.pod_name(slot) for slot in slots], **kwargs)
    logger.info(
        "operation_created",
        datacenter=dc.key,
        operation_id=record.id,
        kind=kind.value,
        items=[str(slot) for slot in slots],
    )
    return record


def prune(record: OperationRecord, plan: TopologyPlan) -> List[WorkItem]:
    """
    Drop pending items of a scale record that the plan no longer needs.

    The item in progress is never dropped.

    Returns:
        The removed items
    """
    if record.kind not in SCALE_KINDS:
        return []

    wanted = set(plan.additions if record.kind == OperationKind.SCALE_UP else plan.removals)
    removed = [
        item for item in record.items
        if item.status == ItemStatus.PENDING and item.slot not in wanted
    ]
    if removed:
        record.items = [item for item in record.items if item not in removed]
        logger.info(
            "operation_items_pruned",
            operation_id=record.id,
            kind=record.kind.value,
            items=[str(item.slot) for item in removed],
        )
    return removed


class RollingOperationSequencer:
    """Executes exactly one single-node step of an OperationRecord per call."""

    def __init__(self, lifecycle: NodeLifecycle, kubernetes, retry_budget: Optional[int] = None):
        """
        Args:
            lifecycle: Node transition operations
            kubernetes: Resource applier for node manifests
            retry_budget: Start attempts allowed on an unreachable node
        """
        self.lifecycle = lifecycle
        self.kubernetes = kubernetes
        self.retry_budget = (
            settings.node_start_retry_budget if retry_budget is None else retry_budget
        )

        self._handlers: Dict[Phase, Callable] = {
            Phase.PROVISION: self._provision,
            Phase.START: self._start,
            Phase.WAIT_NORMAL: self._wait_normal,
            Phase.DECOMMISSION: self._decommission,
            Phase.WAIT_DECOMMISSIONED: self._wait_decommissioned,
            Phase.TEARDOWN: self._teardown,
            Phase.DRAIN: self._drain,
            Phase.RESTART: self._delete_pod,
            Phase.STOP: self._delete_pod,
        }

    async def step(self, record: OperationRecord, ctx: PassContext) -> StepResult:
        """
        Execute one step of the current item.

        Returns:
            ADVANCED when the item moved to its next phase or finished,
            WAITING when the phase is waiting on the cluster, COMPLETED or
            FAILED when the record reached a terminal state
        """
        if record.has_failed():
            return StepResult.FAILED

        item = record.current_item()
        if item is None:
            return self._complete(record, ctx)

        if item.status == ItemStatus.PENDING:
            item.status = ItemStatus.IN_PROGRESS
            item.started_at = utcnow()
            logger.info(
                "operation_item_started",
                operation_id=record.id,
                kind=record.kind.value,
                pod_name=item.pod_name,
            )

        slot = ctx.slot(item)
        phase = item.phase
        done = await self._handlers[phase](record, item, slot, ctx)
        metrics.record_operation_step(record.kind.value, phase.value)

        if item.status == ItemStatus.FAILED:
            record.failure_message = item.message
            record.completed_at = utcnow()
            metrics.record_operation_complete(record.kind.value, "failed")
            logger.error(
                "operation_failed",
                operation_id=record.id,
                kind=record.kind.value,
                pod_name=item.pod_name,
                message=item.message,
            )
            return StepResult.FAILED

        if not done:
            return StepResult.WAITING

        next_phase = record.next_phase(phase)
        if next_phase is not None:
            item.phase = next_phase
        else:
            item.status = ItemStatus.DONE
            item.completed_at = utcnow()
            logger.info(
                "operation_item_done",
                operation_id=record.id,
                kind=record.kind.value,
                pod_name=item.pod_name,
            )

        if record.is_complete():
            return self._complete(record, ctx)
        return StepResult.ADVANCED

    def _complete(self, record: OperationRecord, ctx: PassContext) -> StepResult:
        now = utcnow()
        record.completed_at = now
        status = ctx.status

        if record.kind == OperationKind.CANARY_RESTART:
            status.canary_config_hash = record.config_hash
        elif record.kind == OperationKind.ROLLING_RESTART:
            status.last_rolling_restart = now
            status.canary_config_hash = None

        metrics.record_operation_complete(record.kind.value, "completed")
        logger.info(
            "operation_completed",
            datacenter=ctx.dc.key,
            operation_id=record.id,
            kind=record.kind.value,
            items=len(record.items),
        )
        return StepResult.COMPLETED

    # Phase handlers. Each returns True when the phase is done.

    async def _provision(self, record, item: WorkItem, slot: NodeSlot, ctx: PassContext) -> bool:
        if slot.pod_terminating:
            return False

        manifests = render_node(
            ctx.dc,
            item.slot,
            seed=item.slot in ctx.seeds,
            replace_address=item.replace_address,
        )
        for manifest in manifests.in_apply_order():
            result = await self.kubernetes.apply(manifest)
            name = manifest["metadata"]["name"]
            if result == ApplyResult.CONFLICT:
                raise ResourceConflictError(manifest["kind"], name)
            if result == ApplyResult.ERROR:
                raise KubernetesError(f"failed to apply {manifest['kind']} '{name}'")
        return True

    async def _start(self, record, item: WorkItem, slot: NodeSlot, ctx: PassContext) -> bool:
        if slot.state in (NodeState.STARTING, NodeState.JOINING, NodeState.NORMAL):
            return True
        # Not scheduled or not running yet; does not count against the budget
        if not slot.pod_exists or slot.pod_terminating or not slot.ip:
            return False
        if slot.pod_phase != POD_RUNNING:
            return False

        try:
            await self.lifecycle.start(slot)
        except AlreadyRunningError:
            logger.info("node_already_running", pod_name=slot.pod_name)
            return True
        except ManagementApiUnreachableError as e:
            item.attempts += 1
            item.message = e.message
            if item.attempts >= self.retry_budget:
                self._fail_for_replacement(item, ctx)
            else:
                logger.warning(
                    "node_start_attempt_failed",
                    pod_name=slot.pod_name,
                    attempts=item.attempts,
                    retry_budget=self.retry_budget,
                )
            return False

        ctx.status.last_server_node_started = utcnow()
        item.message = ""
        return True

    def _fail_for_replacement(self, item: WorkItem, ctx: PassContext) -> None:
        item.status = ItemStatus.FAILED
        item.completed_at = utcnow()
        item.message = (
            f"node did not start after {item.attempts} attempts, flagged for replacement"
        )
        if item.pod_name not in ctx.status.node_replacements:
            ctx.status.node_replacements.append(item.pod_name)

    async def _wait_normal(self, record, item: WorkItem, slot: NodeSlot, ctx: PassContext) -> bool:
        if slot.state == NodeState.NORMAL:
            return True
        # The pod came back without a running database: start it again
        if slot.pod_exists and slot.reachable and slot.state == NodeState.UNKNOWN:
            logger.warning("node_not_started_retrying", pod_name=slot.pod_name)
            item.phase = Phase.START
        return False

    async def _decommission(self, record, item: WorkItem, slot: NodeSlot, ctx: PassContext) -> bool:
        if slot.state in (NodeState.LEAVING, NodeState.DECOMMISSIONED) or not slot.pod_exists:
            return True
        try:
            await self.lifecycle.decommission(slot, ctx.slots.values())
        except UnsafeOperationError as e:
            item.message = e.message
            logger.warning("node_decommission_deferred", pod_name=slot.pod_name, reason=e.message)
            return False
        item.message = ""
        return True

    async def _wait_decommissioned(
        self, record, item: WorkItem, slot: NodeSlot, ctx: PassContext
    ) -> bool:
        if slot.state == NodeState.DECOMMISSIONED or not slot.pod_exists:
            return True
        # Decommission was never accepted
        if slot.state == NodeState.NORMAL:
            item.phase = Phase.DECOMMISSION
        return False

    async def _teardown(self, record, item: WorkItem, slot: NodeSlot, ctx: PassContext) -> bool:
        if record.kind == OperationKind.REPLACE and item.replace_address is None and slot.ip:
            item.replace_address = slot.ip

        if not slot.pod_exists and not slot.pvc_exists:
            if item.pod_name in ctx.status.node_replacements:
                ctx.status.node_replacements.remove(item.pod_name)
            return True

        if record.kind == OperationKind.REPLACE:
            await self.lifecycle.replace(slot)
        else:
            await self.lifecycle.teardown(slot, delete_volume=True)
        return False

    async def _drain(self, record, item: WorkItem, slot: NodeSlot, ctx: PassContext) -> bool:
        await self.lifecycle.drain(slot)
        return True

    async def _delete_pod(self, record, item: WorkItem, slot: NodeSlot, ctx: PassContext) -> bool:
        if not slot.pod_exists:
            return True
        if not slot.pod_terminating:
            await self.lifecycle.teardown(slot, delete_volume=False)
        return False
