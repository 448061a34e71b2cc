"""
Kubernetes Service - resource applier and observer for datacenter objects.

Creates and deletes the pods, volume claims and services rendered by the
manifest module, lists what exists, and reads secrets. Pods and claims are
create-only: an existing object is never patched in place (pod specs are
immutable, and the config hash annotation must keep describing what the pod
was started with). Services are read first and patched only when they
drifted from their manifest.
"""
import base64
from enum import Enum
from typing import Any, Dict, List, Optional

from kubernetes_asyncio import client, config
from kubernetes_asyncio.client import ApiException
from pydantic import BaseModel, Field
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from cass_operator.config.logging import get_logger
from cass_operator.config.settings import settings
from cass_operator.exceptions import KubernetesError
from cass_operator.utils.retry import is_retryable_k8s_error, retry_on_k8s_error

logger = get_logger(__name__)


class ApplyResult(str, Enum):
    """Outcome of applying one manifest."""

    SUCCESS = "success"
    CONFLICT = "conflict"
    ERROR = "error"


class PodInfo(BaseModel):
    """The parts of a pod the control loop looks at."""

    name: str
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)
    ip: Optional[str] = None
    phase: Optional[str] = None
    terminating: bool = False


class ClaimInfo(BaseModel):
    """A persistent volume claim of a datacenter."""

    name: str
    labels: Dict[str, str] = Field(default_factory=dict)
    phase: Optional[str] = None


class KubernetesClientSet:
    """Container for Kubernetes API clients."""

    def __init__(self, api_client: client.ApiClient):
        self.api_client = api_client
        self.core_api = client.CoreV1Api(api_client)
        self.custom_api = client.CustomObjectsApi(api_client)

    async def close(self):
        """Close all API clients."""
        if self.api_client:
            await self.api_client.close()


def _label_selector(labels: Dict[str, str]) -> str:
    return ",".join(f"{key}={value}" for key, value in sorted(labels.items()))


def service_in_sync(current: Any, manifest: Dict[str, Any]) -> bool:
    """
    Whether a live service already carries what its manifest renders.

    Labels and ports only need to be present: patches merge them, so extra
    ones on the live object are never removed and must not count as drift.
    """
    spec = manifest["spec"]
    labels = current.metadata.labels or {}
    if any(labels.get(key) != value for key, value in manifest["metadata"]["labels"].items()):
        return False
    if (current.spec.selector or {}) != spec["selector"]:
        return False
    if bool(current.spec.publish_not_ready_addresses) != spec["publishNotReadyAddresses"]:
        return False
    ports = {(port.name, port.port) for port in current.spec.ports or []}
    return all((port["name"], port["port"]) in ports for port in spec["ports"])


# Retry reads on throttling and server errors
k8s_read_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception(is_retryable_k8s_error),
    reraise=True,
)


class KubernetesService:
    """
    Applier and observer for the objects of Cassandra datacenters.

    One client set is shared by every datacenter in the watched cluster.
    """

    def __init__(self, client_set: Optional[KubernetesClientSet] = None):
        self._client_set = client_set

    async def initialize(self) -> None:
        """
        Load cluster credentials and create the API clients.

        Raises:
            KubernetesError: If the configuration cannot be loaded
        """
        if self._client_set is not None:
            return

        configuration = client.Configuration()
        try:
            if settings.k8s_in_cluster:
                config.load_incluster_config(client_configuration=configuration)
            else:
                await config.load_kube_config(
                    config_file=settings.kubeconfig_path,
                    client_configuration=configuration,
                )
        except Exception as e:
            logger.error("failed_to_load_kubernetes_config", error=str(e), exc_info=True)
            raise KubernetesError(f"Failed to load Kubernetes configuration: {e}")

        self._client_set = KubernetesClientSet(client.ApiClient(configuration=configuration))
        logger.info(
            "kubernetes_client_initialized",
            host=configuration.host,
            in_cluster=settings.k8s_in_cluster,
        )

    async def close(self) -> None:
        """Close the Kubernetes clients."""
        if self._client_set is not None:
            await self._client_set.close()
            self._client_set = None
            logger.info("kubernetes_client_closed")

    @property
    def clients(self) -> KubernetesClientSet:
        if self._client_set is None:
            raise KubernetesError("Kubernetes client not initialized")
        return self._client_set

    @property
    def _timeout(self) -> float:
        return settings.k8s_request_timeout_seconds

    # Apply

    async def apply(self, manifest: Dict[str, Any]) -> ApplyResult:
        """
        Create an object if it is missing; bring a service up to date.

        Args:
            manifest: Rendered object dict with apiVersion/kind/metadata

        Returns:
            ApplyResult.SUCCESS, CONFLICT on a 409 from a service write, ERROR otherwise
        """
        kind = manifest["kind"]
        name = manifest["metadata"]["name"]
        namespace = manifest["metadata"]["namespace"]
        core_api = self.clients.core_api

        if kind == "Service":
            return await self._apply_service(manifest)

        creators = {
            "Pod": core_api.create_namespaced_pod,
            "PersistentVolumeClaim": core_api.create_namespaced_persistent_volume_claim,
        }
        if kind not in creators:
            logger.error("unsupported_manifest_kind", kind=kind, name=name)
            return ApplyResult.ERROR

        try:
            await creators[kind](
                namespace=namespace, body=manifest, _request_timeout=self._timeout
            )
            logger.info("resource_created", kind=kind, name=name, namespace=namespace)
        except ApiException as e:
            if e.status != 409:
                logger.error(
                    "resource_create_failed",
                    kind=kind,
                    name=name,
                    namespace=namespace,
                    status_code=e.status,
                    error=e.reason,
                )
                return ApplyResult.ERROR
        return ApplyResult.SUCCESS

    async def _apply_service(self, manifest: Dict[str, Any]) -> ApplyResult:
        """Read the service; create it if missing, patch it only if it drifted."""
        name = manifest["metadata"]["name"]
        namespace = manifest["metadata"]["namespace"]
        core_api = self.clients.core_api

        try:
            current = await core_api.read_namespaced_service(
                name=name, namespace=namespace, _request_timeout=self._timeout
            )
        except ApiException as e:
            if e.status != 404:
                logger.error(
                    "resource_read_failed",
                    kind="Service",
                    name=name,
                    namespace=namespace,
                    status_code=e.status,
                    error=e.reason,
                )
                return ApplyResult.ERROR
            current = None

        try:
            if current is None:
                await core_api.create_namespaced_service(
                    namespace=namespace, body=manifest, _request_timeout=self._timeout
                )
                logger.info("resource_created", kind="Service", name=name, namespace=namespace)
                return ApplyResult.SUCCESS

            if service_in_sync(current, manifest):
                return ApplyResult.SUCCESS

            spec = manifest["spec"]
            await core_api.patch_namespaced_service(
                name=name,
                namespace=namespace,
                body={"metadata": {"labels": manifest["metadata"]["labels"]},
                      "spec": {"selector": spec["selector"],
                               "ports": spec["ports"],
                               "publishNotReadyAddresses": spec["publishNotReadyAddresses"]}},
                _request_timeout=self._timeout,
            )
            logger.info("resource_patched", kind="Service", name=name, namespace=namespace)
            return ApplyResult.SUCCESS
        except ApiException as e:
            # Created or changed by someone else since the read
            if e.status == 409:
                logger.warning("resource_write_conflict", kind="Service", name=name, namespace=namespace)
                return ApplyResult.CONFLICT
            logger.error(
                "resource_write_failed",
                kind="Service",
                name=name,
                namespace=namespace,
                status_code=e.status,
                error=e.reason,
            )
            return ApplyResult.ERROR

    @retry_on_k8s_error(max_retries=3, initial_delay=1.0, max_delay=10.0)
    async def patch_pod_labels(self, namespace: str, name: str, labels: Dict[str, str]) -> None:
        """Merge labels into a pod's metadata."""
        await self.clients.core_api.patch_namespaced_pod(
            name=name,
            namespace=namespace,
            body={"metadata": {"labels": labels}},
            _request_timeout=self._timeout,
        )
        logger.info("pod_labels_patched", pod_name=name, namespace=namespace, labels=labels)

    # Delete

    @retry_on_k8s_error(max_retries=3, initial_delay=1.0, max_delay=10.0)
    async def delete_pod(self, namespace: str, name: str) -> None:
        """Delete a pod; a pod that is already gone is fine."""
        try:
            await self.clients.core_api.delete_namespaced_pod(
                name=name, namespace=namespace, _request_timeout=self._timeout
            )
            logger.info("pod_deleted", pod_name=name, namespace=namespace)
        except ApiException as e:
            if e.status == 404:
                logger.debug("pod_already_deleted", pod_name=name, namespace=namespace)
                return
            raise

    @retry_on_k8s_error(max_retries=3, initial_delay=1.0, max_delay=10.0)
    async def delete_pvc(self, namespace: str, name: str) -> None:
        """Delete a volume claim; a claim that is already gone is fine."""
        try:
            await self.clients.core_api.delete_namespaced_persistent_volume_claim(
                name=name, namespace=namespace, _request_timeout=self._timeout
            )
            logger.info("pvc_deleted", pvc_name=name, namespace=namespace)
        except ApiException as e:
            if e.status == 404:
                logger.debug("pvc_already_deleted", pvc_name=name, namespace=namespace)
                return
            raise

    # Observe

    @k8s_read_retry
    async def list_pods(self, namespace: str, labels: Dict[str, str]) -> List[PodInfo]:
        """Pods in ``namespace`` carrying all of ``labels``."""
        result = await self.clients.core_api.list_namespaced_pod(
            namespace=namespace,
            label_selector=_label_selector(labels),
            _request_timeout=self._timeout,
        )
        return [
            PodInfo(
                name=pod.metadata.name,
                labels=pod.metadata.labels or {},
                annotations=pod.metadata.annotations or {},
                ip=pod.status.pod_ip if pod.status else None,
                phase=pod.status.phase if pod.status else None,
                terminating=pod.metadata.deletion_timestamp is not None,
            )
            for pod in result.items
        ]

    @k8s_read_retry
    async def list_pvcs(self, namespace: str, labels: Dict[str, str]) -> List[ClaimInfo]:
        """Volume claims in ``namespace`` carrying all of ``labels``."""
        result = await self.clients.core_api.list_namespaced_persistent_volume_claim(
            namespace=namespace,
            label_selector=_label_selector(labels),
            _request_timeout=self._timeout,
        )
        return [
            ClaimInfo(
                name=pvc.metadata.name,
                labels=pvc.metadata.labels or {},
                phase=pvc.status.phase if pvc.status else None,
            )
            for pvc in result.items
        ]

    @k8s_read_retry
    async def read_secret(self, namespace: str, name: str) -> Optional[Dict[str, str]]:
        """
        Read and decode a secret.

        Returns:
            Decoded data, or None if the secret does not exist
        """
        try:
            secret = await self.clients.core_api.read_namespaced_secret(
                name=name, namespace=namespace, _request_timeout=self._timeout
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise

        return {
            key: base64.b64decode(value).decode("utf-8")
            for key, value in (secret.data or {}).items()
        }
