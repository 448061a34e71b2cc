"""
Reconciliation control loop for one CassandraDatacenter.

One call to ``Reconciler.reconcile`` is one pass:

1. Validate the desired state and observe the node slots
2. Plan the topology, keep services and seed labels in line with it
3. Consume replacement requests
4. Continue the in-flight operation, or pick the next one by priority:
   resume > placement delta > config drift > replacement > restart request
5. Execute exactly one sequencer step
6. Project and persist the status, decide when to come back

Transient failures requeue the pass with backoff; they never touch completed
work because all progress lives in the persisted OperationRecord.
"""
import asyncio
import time
from typing import Callable, Dict, List, Optional
from uuid import uuid4

from kubernetes_asyncio.client import ApiException
from pydantic import BaseModel

from cass_operator.config.logging import get_logger
from cass_operator.config.settings import settings
from cass_operator.core.lock_manager import LockManager
from cass_operator.core.node_lifecycle import NodeLifecycle
from cass_operator.core.sequencer import (
    PassContext,
    RollingOperationSequencer,
    StepResult,
    build_record,
    joined_slots,
    prune,
)
from cass_operator.core.status_reporter import project_status
from cass_operator.core.topology import (
    TopologyPlan,
    find_orphaned_racks,
    plan_topology,
    select_live_seeds,
)
from cass_operator.exceptions import (
    InvalidDesiredStateError,
    KubernetesError,
    OperatorError,
    ResourceConflictError,
    StatusConflictError,
)
from cass_operator.models.datacenter import (
    CONFIG_HASH_ANNOTATION,
    ORDINAL_LABEL,
    RACK_LABEL,
    SEED_NODE_LABEL,
    Datacenter,
)
from cass_operator.models.node import NodeSlot, NodeState, SlotRef
from cass_operator.models.operation import OperationKind, OperationRecord, utcnow
from cass_operator.models.status import DatacenterStatus, ProgressState
from cass_operator.repositories.datacenter_repository import DatacenterRepository
from cass_operator.services import metrics
from cass_operator.services.credentials import CredentialService
from cass_operator.services.kubernetes_service import (
    ApplyResult,
    ClaimInfo,
    KubernetesService,
    PodInfo,
)
from cass_operator.services.management_api import ManagementApiClient, TransportCredentials
from cass_operator.services.manifest import render_services, seed_labels
from cass_operator.utils.retry import is_transient_error

logger = get_logger(__name__)


class ReconcileResult(BaseModel):
    """What a pass did and when the datacenter wants to be looked at again."""

    datacenter: str
    requeue_after: Optional[float] = None  # None: periodic resync only
    step: Optional[StepResult] = None
    ready: bool = False
    invalid: bool = False
    transient: bool = False
    error: Optional[str] = None


def _slot_ref(labels: Dict[str, str]) -> Optional[SlotRef]:
    rack = labels.get(RACK_LABEL)
    ordinal = labels.get(ORDINAL_LABEL)
    if rack is None or ordinal is None or not ordinal.isdigit():
        return None
    return SlotRef(rack=rack, ordinal=int(ordinal))


def build_slots(dc: Datacenter, pods: List[PodInfo], claims: List[ClaimInfo]) -> Dict[SlotRef, NodeSlot]:
    """
    Node slots from the pods and claims of a datacenter.

    A slot exists while its pod or its claim exists. Objects without rack and
    ordinal labels are not ours and are ignored.
    """
    slots: Dict[SlotRef, NodeSlot] = {}

    for claim in claims:
        ref = _slot_ref(claim.labels)
        if ref is None:
            continue
        slots[ref] = NodeSlot(ref=ref, pod_name=dc.pod_name(ref), pvc_exists=True)

    for pod in pods:
        ref = _slot_ref(pod.labels)
        if ref is None:
            continue
        slot = slots.get(ref) or NodeSlot(ref=ref, pod_name=dc.pod_name(ref))
        slots[ref] = slot.model_copy(
            update={
                "pod_exists": True,
                "pod_terminating": pod.terminating,
                "pod_phase": pod.phase,
                "ip": pod.ip,
                "seed": pod.labels.get(SEED_NODE_LABEL) == "true",
                "config_hash": pod.annotations.get(CONFIG_HASH_ANNOTATION),
            }
        )

    return slots


def consume_replace_requests(
    dc: Datacenter,
    status: DatacenterStatus,
    slots: Dict[SlotRef, NodeSlot],
) -> List[str]:
    """
    Move new replacement requests into ``status.node_replacements``.

    A request is new when the pod name is in ``spec.replace_nodes`` but not
    yet acknowledged. Names removed from the spec lose their acknowledgement,
    so asking again later works.

    Returns:
        Pod names newly flagged for replacement
    """
    requested = list(dict.fromkeys(dc.spec.replace_nodes))
    acknowledged = [name for name in status.acknowledged_replace_nodes if name in requested]
    known = {slot.pod_name for slot in slots.values()}

    flagged = []
    for name in requested:
        if name in acknowledged:
            continue
        acknowledged.append(name)
        if name not in known:
            logger.warning("replace_request_unknown_pod", datacenter=dc.key, pod_name=name)
            continue
        if name not in status.node_replacements:
            status.node_replacements.append(name)
            flagged.append(name)
            logger.info("replace_request_accepted", datacenter=dc.key, pod_name=name)

    status.acknowledged_replace_nodes = acknowledged
    return flagged


def _ordered(plan: TopologyPlan, slots: Dict[SlotRef, NodeSlot]) -> List[NodeSlot]:
    """Slots in rack declaration order, then ordinal."""
    order = {rack: index for index, rack in enumerate(plan.racks)}
    return sorted(
        slots.values(),
        key=lambda s: (order.get(s.rack, len(order)), s.rack, s.ordinal),
    )


def next_operation(
    dc: Datacenter,
    plan: TopologyPlan,
    slots: Dict[SlotRef, NodeSlot],
    status: DatacenterStatus,
) -> Optional[OperationRecord]:
    """
    Pick the next operation for a datacenter with nothing in flight.

    Returns:
        A new OperationRecord, or None when the datacenter is converged
    """
    ordered = _ordered(plan, slots)
    targets = set(plan.target_slots)

    if dc.spec.stopped:
        running = [slot.ref for slot in ordered if slot.pod_exists and not slot.pod_terminating]
        return build_record(dc, OperationKind.STOP, running) if running else None

    # Existing slots without a running database: stopped volumes, pods that
    # restarted, slots a crash left half provisioned
    resume = [
        slot.ref for slot in ordered
        if slot.ref in targets
        and slot.pod_name not in status.node_replacements
        and (
            (not slot.pod_exists and slot.pvc_exists)
            or (slot.pod_exists and slot.reachable and slot.state == NodeState.UNKNOWN)
        )
    ]
    if resume:
        return build_record(dc, OperationKind.RESUME, resume)

    if plan.additions:
        return build_record(dc, OperationKind.SCALE_UP, plan.additions)
    if plan.removals:
        return build_record(dc, OperationKind.SCALE_DOWN, plan.removals)

    drift = _config_drift(dc, plan, ordered, status)
    if drift is not None:
        return drift

    replacements = [slot.ref for slot in ordered if slot.pod_name in status.node_replacements]
    if replacements:
        return build_record(dc, OperationKind.REPLACE, replacements)

    token = dc.spec.rolling_restart_token
    if token > status.last_rolling_restart_token:
        running = [slot.ref for slot in ordered if slot.pod_exists]
        return build_record(dc, OperationKind.ROLLING_RESTART, running, restart_token=token)

    return None


def _config_drift(
    dc: Datacenter,
    plan: TopologyPlan,
    ordered: List[NodeSlot],
    status: DatacenterStatus,
) -> Optional[OperationRecord]:
    desired = dc.config_hash()
    drifted = [
        slot.ref for slot in ordered
        if slot.pod_exists and slot.config_hash != desired
    ]
    if not drifted:
        return None

    if not dc.spec.canary_upgrade:
        return build_record(dc, OperationKind.ROLLING_RESTART, drifted, config_hash=desired)

    # Canary already pushed: the other racks wait for an explicit trigger
    if status.canary_config_hash == desired:
        return None

    canary_rack = plan.racks[0]
    canary = [ref for ref in drifted if ref.rack == canary_rack]
    if not canary:
        status.canary_config_hash = desired
        logger.info("canary_rack_already_current", datacenter=dc.key, rack=canary_rack)
        return None
    return build_record(dc, OperationKind.CANARY_RESTART, canary, config_hash=desired)


def apply_stop_override(
    dc: Datacenter,
    record: Optional[OperationRecord],
    slots: Dict[SlotRef, NodeSlot],
) -> Optional[OperationRecord]:
    """
    Cancel an operation that contradicts the ``stopped`` flag.

    A node in the middle of bootstrap or decommission finishes that
    transition first.
    """
    if record is None:
        return None

    if dc.spec.stopped and record.kind != OperationKind.STOP:
        item = record.in_flight_item()
        slot = slots.get(item.slot) if item is not None else None
        if slot is not None and (slot.is_bootstrapping or slot.state == NodeState.LEAVING):
            logger.info(
                "stop_deferred_mid_transition",
                datacenter=dc.key,
                operation_id=record.id,
                pod_name=slot.pod_name,
                state=slot.state.value,
            )
            return record
        logger.info("operation_cancelled", datacenter=dc.key, operation_id=record.id, reason="stopped")
        return None

    if not dc.spec.stopped and record.kind == OperationKind.STOP:
        logger.info("operation_cancelled", datacenter=dc.key, operation_id=record.id, reason="resumed")
        return None

    return record


class Reconciler:
    """
    Drives one datacenter toward its desired state, one pass per call.

    Safe to use for many datacenters concurrently: every pass holds the
    datacenter's lock and keeps all state in locals and the persisted status.
    """

    def __init__(
        self,
        kubernetes: KubernetesService,
        repository: DatacenterRepository,
        credentials: Optional[CredentialService] = None,
        lock_manager: Optional[LockManager] = None,
        management_api_factory: Optional[Callable[[TransportCredentials], ManagementApiClient]] = None,
        owner_id: Optional[str] = None,
        max_conflict_retries: int = 3,
    ):
        """
        Args:
            kubernetes: Resource applier and observer
            repository: Datacenter resource access
            credentials: Secret reader (defaults to one on ``kubernetes``)
            lock_manager: Per-datacenter lock; None runs passes unlocked
            management_api_factory: Builds the per-pass management API client
            owner_id: Lock owner identity of this operator instance
            max_conflict_retries: Pass recomputations on status write conflicts
        """
        self.kubernetes = kubernetes
        self.repository = repository
        self.credentials = credentials or CredentialService(kubernetes)
        self.lock_manager = lock_manager
        self.management_api_factory = management_api_factory or (
            lambda creds: ManagementApiClient(credentials=creds)
        )
        self.owner_id = owner_id or f"cass-operator-{uuid4().hex[:8]}"
        self.max_conflict_retries = max_conflict_retries

    async def reconcile(self, dc: Datacenter) -> ReconcileResult:
        """
        Run one reconciliation pass under the datacenter lock.

        Args:
            dc: Datacenter as last read from the API

        Returns:
            ReconcileResult with the requeue decision
        """
        started = time.monotonic()

        if self.lock_manager is None:
            result = await self._reconcile_with_retries(dc)
        else:
            async with self.lock_manager.hold(dc.key, self.owner_id) as acquired:
                if not acquired:
                    return ReconcileResult(
                        datacenter=dc.key, requeue_after=settings.requeue_short_seconds
                    )
                result = await self._reconcile_with_retries(dc)

        outcome = "error" if result.error else (result.step.value if result.step else "noop")
        metrics.record_reconcile(dc.namespace, dc.name, outcome, time.monotonic() - started)
        return result

    async def _reconcile_with_retries(self, dc: Datacenter) -> ReconcileResult:
        for attempt in range(self.max_conflict_retries):
            try:
                return await self._reconcile_once(dc)
            except StatusConflictError:
                logger.info("reconcile_status_conflict_rereading", datacenter=dc.key, attempt=attempt + 1)
                dc = await self.repository.get(dc.namespace, dc.name)
            except (OperatorError, ApiException, asyncio.TimeoutError) as e:
                return await self._failed(dc, e)

        return ReconcileResult(
            datacenter=dc.key,
            requeue_after=settings.requeue_short_seconds,
            transient=True,
            error="status write kept conflicting",
        )

    async def _failed(self, dc: Datacenter, error: Exception) -> ReconcileResult:
        """Record a failed pass in status and ask for a retry with backoff."""
        transient = is_transient_error(error)
        message = getattr(error, "message", None) or str(error) or type(error).__name__

        log = logger.warning if transient else logger.error
        log(
            "reconcile_failed",
            datacenter=dc.key,
            error_type=type(error).__name__,
            error=message,
            transient=transient,
        )
        metrics.record_reconcile_error(dc.namespace, dc.name, type(error).__name__)

        if dc.status.last_error != message:
            status = dc.status.model_copy(update={"last_error": message})
            try:
                await self.repository.replace_status(dc, status)
            except (OperatorError, ApiException) as e:
                logger.warning("last_error_not_recorded", datacenter=dc.key, error=str(e))

        return ReconcileResult(datacenter=dc.key, transient=transient, error=message)

    async def _invalid(self, dc: Datacenter, status: DatacenterStatus, error: InvalidDesiredStateError) -> ReconcileResult:
        """Report an invalid desired state; no requeue until the spec changes."""
        logger.warning("datacenter_spec_invalid", datacenter=dc.key, error=error.message, **error.details)
        status.invalid_spec_message = error.message
        status.cassandra_operator_progress = ProgressState.UPDATING
        if status != dc.status:
            await self.repository.replace_status(dc, status)
        return ReconcileResult(datacenter=dc.key, invalid=True, error=error.message)

    async def _reconcile_once(self, dc: Datacenter) -> ReconcileResult:
        status = dc.status.model_copy(deep=True)

        try:
            dc.spec.get_server_image()
            try:
                transport = await self.credentials.get_transport_credentials(dc)
            except ValueError as e:
                raise InvalidDesiredStateError(f"management API auth: {e}")

            pods = await self.kubernetes.list_pods(dc.namespace, dc.get_datacenter_labels())
            claims = await self.kubernetes.list_pvcs(dc.namespace, dc.get_datacenter_labels())
            slots = build_slots(dc, pods, claims)

            orphaned = find_orphaned_racks(dc.spec.rack_names(), slots.keys())
            if orphaned:
                raise InvalidDesiredStateError(
                    f"racks {', '.join(orphaned)} hold nodes but are not declared",
                    details={"orphaned_racks": orphaned},
                )
        except InvalidDesiredStateError as e:
            return await self._invalid(dc, status, e)

        status.invalid_spec_message = None
        consume_replace_requests(dc, status, slots)

        async with self.management_api_factory(transport) as management_api:
            lifecycle = NodeLifecycle(management_api, self.kubernetes, dc.namespace)

            observed = await asyncio.gather(
                *(
                    lifecycle.observe(slot, slot.pod_name in status.node_replacements)
                    for slot in slots.values()
                )
            )
            slots = {slot.ref: slot for slot in observed}

            plan = plan_topology(dc.spec.rack_names(), slots.keys(), dc.spec.size)

            joined = joined_slots(slots)
            seeds = select_live_seeds(plan, joined)

            await self._apply_services(dc)
            # With no node Normal the seed set is a guess; labels stay as they are
            if joined:
                await self._label_seeds(dc, seeds, slots)

            record = apply_stop_override(dc, status.operation, slots)
            if record is None:
                record = next_operation(dc, plan, slots, status)
                if record is not None and record.restart_token is not None:
                    status.last_rolling_restart_token = record.restart_token
            else:
                prune(record, plan)

            step: Optional[StepResult] = None
            if record is not None:
                sequencer = RollingOperationSequencer(lifecycle, self.kubernetes)
                step = await sequencer.step(record, PassContext(dc, plan, slots, status, seeds))
                if step == StepResult.FAILED:
                    status.last_error = record.failure_message
                if step in (StepResult.COMPLETED, StepResult.FAILED):
                    record = None
            else:
                await self._upsert_superuser(dc, lifecycle, slots, status)

        if step != StepResult.FAILED:
            status.last_error = None

        new_status = project_status(status, record, slots.values(), plan, dc.spec.stopped)
        if new_status != dc.status:
            await self.repository.replace_status(dc, new_status)

        ready = new_status.cassandra_operator_progress == ProgressState.READY
        metrics.set_datacenter_ready(dc.namespace, dc.name, ready)
        metrics.set_datacenter_nodes(dc.namespace, dc.name, _count_states(slots.values()))

        # Not ready without an operation: nodes still settling, poll them
        requeue = None if ready and record is None and step is None else settings.requeue_short_seconds
        logger.info(
            "reconcile_pass_done",
            datacenter=dc.key,
            operation=record.kind.value if record else None,
            step=step.value if step else None,
            progress=new_status.cassandra_operator_progress.value,
            requeue_after=requeue,
        )
        return ReconcileResult(datacenter=dc.key, requeue_after=requeue, step=step, ready=ready)

    async def _apply_services(self, dc: Datacenter) -> None:
        for manifest in render_services(dc):
            result = await self.kubernetes.apply(manifest)
            name = manifest["metadata"]["name"]
            if result == ApplyResult.CONFLICT:
                raise ResourceConflictError("Service", name)
            if result == ApplyResult.ERROR:
                raise KubernetesError(f"failed to apply Service '{name}'")

    async def _label_seeds(
        self,
        dc: Datacenter,
        seeds: List[SlotRef],
        slots: Dict[SlotRef, NodeSlot],
    ) -> None:
        """Keep the seed label of every live pod in line with the seed set."""
        for ref, slot in slots.items():
            if not slot.pod_exists or slot.pod_terminating:
                continue
            seed = ref in seeds
            if slot.seed != seed:
                await self.kubernetes.patch_pod_labels(dc.namespace, slot.pod_name, seed_labels(seed))
                slots[ref] = slot.model_copy(update={"seed": seed})

    async def _upsert_superuser(
        self,
        dc: Datacenter,
        lifecycle: NodeLifecycle,
        slots: Dict[SlotRef, NodeSlot],
        status: DatacenterStatus,
    ) -> None:
        if dc.spec.stopped or status.super_user_upserted is not None:
            return
        node = next((s for s in _ordered_values(slots) if s.state == NodeState.NORMAL), None)
        if node is None:
            return
        credentials = await self.credentials.get_superuser(dc)
        if credentials is None:
            return

        await lifecycle.upsert_superuser(
            node, credentials.username, credentials.password.get_secret_value()
        )
        status.super_user_upserted = utcnow()


def _ordered_values(slots: Dict[SlotRef, NodeSlot]) -> List[NodeSlot]:
    return [slots[ref] for ref in sorted(slots, key=lambda r: (r.rack, r.ordinal))]


def _count_states(slots) -> Dict[str, int]:
    counts = {state.value: 0 for state in NodeState}
    for slot in slots:
        counts[slot.state.value] += 1
    return counts
