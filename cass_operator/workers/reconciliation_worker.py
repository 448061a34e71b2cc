"""
Reconciliation worker driving every CassandraDatacenter in the watched namespace.

Each tick lists the datacenters and reconciles the ones that are due, all
concurrently. Each datacenter keeps its own schedule:

- a pass that made progress asks for a short requeue
- a converged datacenter is resynced every ``reconcile_interval`` seconds
- a failed pass is retried with exponential backoff
- an invalid spec is left alone until its generation changes
"""
import asyncio
import signal
import socket
import time
import uuid
from typing import Dict, List, Optional

from cass_operator.config.logging import configure_logging, datacenter_context, get_logger
from cass_operator.config.settings import settings
from cass_operator.core.reconciler import ReconcileResult, Reconciler
from cass_operator.models.datacenter import Datacenter
from cass_operator.repositories.datacenter_repository import DatacenterRepository
from cass_operator.utils.retry import compute_backoff

logger = get_logger(__name__)


class ReconciliationWorker:
    """
    Periodic driver of the reconciliation control loop.

    Features:
    - Per-datacenter requeue times
    - Exponential backoff on failures
    - Failure isolation: one datacenter failing never delays another
    - Graceful shutdown
    """

    def __init__(
        self,
        reconciler: Reconciler,
        repository: DatacenterRepository,
        namespace: Optional[str] = None,
        reconcile_interval: Optional[int] = None,
        tick_seconds: Optional[float] = None,
    ):
        """
        Initialize reconciliation worker.

        Args:
            reconciler: Control loop for single datacenters
            repository: Datacenter resource access
            namespace: Namespace to watch (defaults to settings)
            reconcile_interval: Resync period of converged datacenters
            tick_seconds: How often due datacenters are looked for
        """
        self.reconciler = reconciler
        self.repository = repository
        self.namespace = namespace or settings.watch_namespace
        self.reconcile_interval = reconcile_interval or settings.reconcile_interval
        self.tick_seconds = tick_seconds or settings.requeue_short_seconds
        self.running = False
        self._sleep_task: Optional[asyncio.Task] = None

        self._next_run: Dict[str, float] = {}
        self._failures: Dict[str, int] = {}
        # Generation of datacenters parked on an invalid spec
        self._invalid_generation: Dict[str, Optional[int]] = {}

    async def start(self):
        """Start reconciliation worker (runs until stopped)."""
        self.running = True

        logger.info(
            "reconciliation_worker_started",
            namespace=self.namespace,
            interval_seconds=self.reconcile_interval,
        )

        while self.running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                logger.info("reconciliation_worker_cancelled")
                break
            except Exception as e:
                logger.error("reconciliation_cycle_error", error=str(e), exc_info=True)

            if not self.running:
                break
            try:
                self._sleep_task = asyncio.create_task(asyncio.sleep(self.tick_seconds))
                await self._sleep_task
            except asyncio.CancelledError:
                logger.info("reconciliation_sleep_cancelled")
                break
            finally:
                self._sleep_task = None

        logger.info("reconciliation_worker_stopped")

    async def stop(self):
        """Stop reconciliation worker gracefully."""
        logger.info("stopping_reconciliation_worker")
        self.running = False

        if self._sleep_task and not self._sleep_task.done():
            self._sleep_task.cancel()
            try:
                await self._sleep_task
            except asyncio.CancelledError:
                pass

    async def run_once(self, now: Optional[float] = None) -> List[ReconcileResult]:
        """
        Reconcile every datacenter that is due.

        Args:
            now: Monotonic clock reading, for tests

        Returns:
            Results of the passes that ran
        """
        now = time.monotonic() if now is None else now
        datacenters = await self.repository.list_datacenters(self.namespace)
        self._forget_missing({dc.key for dc in datacenters})

        due = [dc for dc in datacenters if self.is_due(dc, now)]
        if not due:
            return []

        logger.debug("reconciliation_cycle_started", due=[dc.key for dc in due])
        results = await asyncio.gather(*(self._reconcile_one(dc, now) for dc in due))
        return [result for result in results if result is not None]

    def is_due(self, dc: Datacenter, now: float) -> bool:
        key = dc.key
        if key in self._invalid_generation:
            if self._invalid_generation[key] == dc.metadata.generation:
                return False
            del self._invalid_generation[key]
            return True
        return now >= self._next_run.get(key, 0.0)

    async def _reconcile_one(self, dc: Datacenter, now: float) -> Optional[ReconcileResult]:
        with datacenter_context(dc.key, dc.metadata.generation):
            try:
                result = await self.reconciler.reconcile(dc)
            except Exception as e:
                logger.error(
                    "datacenter_reconcile_error",
                    error_type=type(e).__name__,
                    error=str(e),
                    exc_info=True,
                )
                result = ReconcileResult(datacenter=dc.key, transient=True, error=str(e))

        self.schedule(dc, result, now)
        return result

    def schedule(self, dc: Datacenter, result: ReconcileResult, now: float) -> float:
        """
        Record when a datacenter is due next.

        Returns:
            Delay in seconds until the next pass (inf while parked)
        """
        key = dc.key

        if result.invalid:
            self._invalid_generation[key] = dc.metadata.generation
            self._failures.pop(key, None)
            return float("inf")

        if result.error:
            failures = self._failures.get(key, 0) + 1
            self._failures[key] = failures
            delay = compute_backoff(
                failures,
                settings.backoff_initial_seconds,
                settings.backoff_max_seconds,
            )
            logger.info("datacenter_backoff", datacenter=key, failures=failures, delay_seconds=delay)
        else:
            self._failures.pop(key, None)
            delay = result.requeue_after if result.requeue_after is not None else float(self.reconcile_interval)

        self._next_run[key] = now + delay
        return delay

    def _forget_missing(self, keys) -> None:
        for table in (self._next_run, self._failures, self._invalid_generation):
            for key in [k for k in table if k not in keys]:
                del table[key]


def build_worker(kubernetes, redis_client, owner_id: Optional[str] = None) -> ReconciliationWorker:
    """
    Wire the control loop of one operator instance.

    Args:
        kubernetes: Initialized KubernetesService
        redis_client: Connected client for the datacenter locks
        owner_id: Lock owner identity (defaults to hostname plus a random suffix)
    """
    from cass_operator.core.lock_manager import LockManager

    owner_id = owner_id or f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"
    repository = DatacenterRepository(kubernetes)
    reconciler = Reconciler(
        kubernetes,
        repository,
        lock_manager=LockManager(redis_client),
        owner_id=owner_id,
    )
    logger.info("operator_instance_wired", owner_id=owner_id, namespace=settings.watch_namespace)
    return ReconciliationWorker(reconciler, repository)


async def main():
    """Run the reconciliation worker without the HTTP server."""
    from cass_operator.config.redis import RedisConnection
    from cass_operator.services.kubernetes_service import KubernetesService

    configure_logging()

    kubernetes = KubernetesService()
    await kubernetes.initialize()
    await RedisConnection.connect()
    worker = build_worker(kubernetes, await RedisConnection.get_client())

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown_event.set)

    async def monitor_shutdown():
        await shutdown_event.wait()
        logger.info("shutdown_event_triggered")
        await worker.stop()

    shutdown_task = asyncio.create_task(monitor_shutdown())
    try:
        await worker.start()
    finally:
        shutdown_task.cancel()
        await kubernetes.close()
        await RedisConnection.close()
        logger.info("reconciliation_worker_exited")


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
