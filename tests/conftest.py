"""
Pytest configuration and fixtures.

The control loop is exercised against in-memory stand-ins for the cluster:
FakeKubernetes keeps pods, claims and services in dicts, FakeManagementApi
plays the sidecar of every pod, FakeRepository holds one datacenter resource
with a resourceVersion.
"""
import itertools
from typing import Dict, List, Optional

import pytest

from cass_operator.core.reconciler import Reconciler
from cass_operator.exceptions import (
    AlreadyRunningError,
    ManagementApiUnreachableError,
    NotFoundError,
    StatusConflictError,
)
from cass_operator.models.datacenter import Datacenter, DatacenterMeta, DatacenterSpec
from cass_operator.models.node import NodeSlot, NodeState, SlotRef
from cass_operator.models.status import DatacenterStatus
from cass_operator.services.kubernetes_service import ApplyResult, ClaimInfo, PodInfo
from cass_operator.services.management_api import NOT_STARTED, RemoteNodeStatus


def _matches(labels: Dict[str, str], selector: Dict[str, str]) -> bool:
    return all(labels.get(key) == value for key, value in selector.items())


class FakeKubernetes:
    """Pods, claims and services of one namespace; deletes are immediate."""

    def __init__(self):
        self.pods: Dict[str, dict] = {}
        self.pvcs: Dict[str, dict] = {}
        self.services: Dict[str, dict] = {}
        self.secrets: Dict[str, Dict[str, str]] = {}
        self.pod_ips: Dict[str, str] = {}
        self.terminating: set = set()
        self.deleted_pods: List[str] = []
        self.deleted_pvcs: List[str] = []
        self._ips = (f"10.0.0.{n}" for n in itertools.count(1))

    async def apply(self, manifest: dict) -> ApplyResult:
        kind = manifest["kind"]
        name = manifest["metadata"]["name"]
        if kind == "Pod":
            if name not in self.pods:
                self.pods[name] = manifest
                self.pod_ips[name] = next(self._ips)
        elif kind == "PersistentVolumeClaim":
            self.pvcs.setdefault(name, manifest)
        elif kind == "Service":
            self.services[name] = manifest
        else:
            return ApplyResult.ERROR
        return ApplyResult.SUCCESS

    async def patch_pod_labels(self, namespace: str, name: str, labels: Dict[str, str]) -> None:
        self.pods[name]["metadata"]["labels"].update(labels)

    async def delete_pod(self, namespace: str, name: str) -> None:
        if self.pods.pop(name, None) is not None:
            self.pod_ips.pop(name, None)
            self.deleted_pods.append(name)

    async def delete_pvc(self, namespace: str, name: str) -> None:
        if self.pvcs.pop(name, None) is not None:
            self.deleted_pvcs.append(name)

    async def list_pods(self, namespace: str, labels: Dict[str, str]) -> List[PodInfo]:
        return [
            PodInfo(
                name=name,
                labels=dict(pod["metadata"]["labels"]),
                annotations=dict(pod["metadata"].get("annotations", {})),
                ip=self.pod_ips.get(name),
                phase="Running",
                terminating=name in self.terminating,
            )
            for name, pod in self.pods.items()
            if _matches(pod["metadata"]["labels"], labels)
        ]

    async def list_pvcs(self, namespace: str, labels: Dict[str, str]) -> List[ClaimInfo]:
        return [
            ClaimInfo(name=name, labels=dict(pvc["metadata"]["labels"]), phase="Bound")
            for name, pvc in self.pvcs.items()
            if _matches(pvc["metadata"]["labels"], labels)
        ]

    async def read_secret(self, namespace: str, name: str) -> Optional[Dict[str, str]]:
        return self.secrets.get(name)

    def pod_env(self, name: str) -> Dict[str, str]:
        container = self.pods[name]["spec"]["containers"][0]
        return {env["name"]: env.get("value") for env in container["env"]}


class FakeManagementApi:
    """
    Sidecars of all pods, keyed by pod IP.

    A new pod has a new IP, so its database starts out not running.
    Decommission takes effect immediately. A started node reports JOINING for
    ``joining_polls`` status reads before it turns NORMAL. ``status_errors``
    maps an IP to the exception its status read raises.
    """

    def __init__(self, joining_polls: int = 0):
        self.states: Dict[str, str] = {}
        self.unreachable: set = set()
        self.start_fails: set = set()
        self.status_errors: Dict[str, Exception] = {}
        self.joining_polls = joining_polls
        self.calls: List[tuple] = []
        self._joining: Dict[str, int] = {}

    def _check(self, pod_name: str, ip: Optional[str]) -> None:
        if not ip or ip in self.unreachable:
            raise ManagementApiUnreachableError(pod_name, "connection refused")

    async def get_status(self, pod_name: str, ip: Optional[str]) -> RemoteNodeStatus:
        self._check(pod_name, ip)
        if ip in self.status_errors:
            raise self.status_errors[ip]
        remaining = self._joining.get(ip)
        if remaining == 0:
            del self._joining[ip]
            self.states[ip] = "NORMAL"
        elif remaining is not None:
            self._joining[ip] = remaining - 1
        state = self.states.get(ip, NOT_STARTED)
        host_id = None if state == NOT_STARTED else f"host-{pod_name}"
        return RemoteNodeStatus(state=state, host_id=host_id, ip=ip)

    async def start(self, pod_name: str, ip: Optional[str]) -> None:
        self._check(pod_name, ip)
        if ip in self.start_fails:
            raise ManagementApiUnreachableError(pod_name, "read timeout")
        self.calls.append(("start", pod_name))
        if self.states.get(ip, NOT_STARTED) != NOT_STARTED:
            raise AlreadyRunningError(pod_name)
        if self.joining_polls > 0:
            self.states[ip] = "JOINING"
            self._joining[ip] = self.joining_polls
        else:
            self.states[ip] = "NORMAL"

    async def decommission(self, pod_name: str, ip: Optional[str]) -> None:
        self._check(pod_name, ip)
        self.calls.append(("decommission", pod_name))
        self.states[ip] = "DECOMMISSIONED"

    async def drain(self, pod_name: str, ip: Optional[str]) -> None:
        self._check(pod_name, ip)
        self.calls.append(("drain", pod_name))

    async def create_role(self, pod_name: str, ip: Optional[str], username: str, password: str) -> None:
        self._check(pod_name, ip)
        self.calls.append(("create_role", pod_name, username))

    def called(self, action: str) -> List[str]:
        return [call[1] for call in self.calls if call[0] == action]

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return None


class FakeRepository:
    """One or more datacenter resources with optimistic concurrency on status."""

    def __init__(self, *datacenters: Datacenter):
        self.datacenters: Dict[str, Datacenter] = {dc.key: dc for dc in datacenters}
        self.conflicts_remaining = 0
        self.status_writes = 0

    @property
    def dc(self) -> Datacenter:
        return next(iter(self.datacenters.values()))

    async def list_datacenters(self, namespace: Optional[str] = None) -> List[Datacenter]:
        return [dc for dc in self.datacenters.values() if namespace in (None, dc.namespace)]

    async def get(self, namespace: str, name: str) -> Datacenter:
        key = f"{namespace}/{name}"
        if key not in self.datacenters:
            raise NotFoundError("CassandraDatacenter", key)
        return self.datacenters[key]

    async def replace_status(self, dc: Datacenter, status: DatacenterStatus) -> Datacenter:
        current = self.datacenters[dc.key]
        if self.conflicts_remaining > 0 or dc.metadata.resource_version != current.metadata.resource_version:
            self.conflicts_remaining = max(0, self.conflicts_remaining - 1)
            self._bump(current)
            raise StatusConflictError(dc.key, dc.metadata.resource_version)
        self.status_writes += 1
        return self._bump(current, status=status.model_copy(deep=True))

    def update_spec(self, key: Optional[str] = None, **changes) -> Datacenter:
        current = self.datacenters[key] if key else self.dc
        spec = DatacenterSpec.model_validate({**current.spec.model_dump(), **changes})
        generation = (current.metadata.generation or 0) + 1
        return self._bump(current, spec=spec, generation=generation)

    def _bump(self, current: Datacenter, generation: Optional[int] = None, **update) -> Datacenter:
        version = str(int(current.metadata.resource_version or "0") + 1)
        meta = {"resource_version": version}
        if generation is not None:
            meta["generation"] = generation
        updated = current.model_copy(
            update={"metadata": current.metadata.model_copy(update=meta), **update}
        )
        self.datacenters[current.key] = updated
        return updated


def build_datacenter(name: str = "dc1", namespace: str = "default", **spec) -> Datacenter:
    values = {
        "cluster_name": "cluster1",
        "server_type": "cassandra",
        "server_version": "3.11.6",
        "size": 3,
    }
    values.update(spec)
    return Datacenter(
        metadata=DatacenterMeta(name=name, namespace=namespace, resource_version="1", generation=1),
        spec=DatacenterSpec.model_validate(values),
    )


class Harness:
    """Drives reconciliation passes of one datacenter against the fakes."""

    def __init__(self, dc: Datacenter):
        self.kubernetes = FakeKubernetes()
        self.api = FakeManagementApi()
        self.repository = FakeRepository(dc)
        self.reconciler = Reconciler(
            self.kubernetes,
            self.repository,
            management_api_factory=lambda credentials: self.api,
        )
        self.results = []

    @property
    def dc(self) -> Datacenter:
        return self.repository.dc

    @property
    def status(self) -> DatacenterStatus:
        return self.repository.dc.status

    def pod_state(self, pod_name: str) -> str:
        ip = self.kubernetes.pod_ips.get(pod_name)
        return self.api.states.get(ip, NOT_STARTED)

    def unsettled_pods(self) -> List[str]:
        """Existing pods whose database is not Normal."""
        return [name for name in self.kubernetes.pods if self.pod_state(name) != "NORMAL"]

    async def run_pass(self):
        result = await self.reconciler.reconcile(self.dc)
        self.results.append(result)
        return result

    async def converge(self, max_passes: int = 100, check=None):
        """Run passes until the datacenter is Ready with nothing left to do."""
        for _ in range(max_passes):
            result = await self.run_pass()
            if check is not None:
                check(self)
            if result.ready and result.requeue_after is None:
                return result
        raise AssertionError(f"datacenter did not converge, last result: {result}")


@pytest.fixture
def make_datacenter():
    """Factory for datacenters; keyword arguments override spec fields."""
    return build_datacenter


@pytest.fixture
def make_harness():
    """Factory for a harness around a fresh datacenter."""

    def factory(**spec) -> Harness:
        return Harness(build_datacenter(**spec))

    return factory


@pytest.fixture
def make_slot():
    """Factory for observed node slots."""

    def factory(rack: str = "r1", ordinal: int = 0, **fields) -> NodeSlot:
        values = {
            "pod_name": f"cluster1-dc1-{rack}-sts-{ordinal}",
            "pod_exists": True,
            "pvc_exists": True,
            "pod_phase": "Running",
            "ip": f"10.1.{ordinal}.1",
            "state": NodeState.NORMAL,
            "reachable": True,
        }
        values.update(fields)
        return NodeSlot(ref=SlotRef(rack=rack, ordinal=ordinal), **values)

    return factory


@pytest.fixture
def fake_kubernetes() -> FakeKubernetes:
    return FakeKubernetes()


@pytest.fixture
def fake_management_api() -> FakeManagementApi:
    return FakeManagementApi()


@pytest.fixture
def make_repository():
    """Factory for a repository holding the given datacenters."""
    return FakeRepository
