"""
Repository for CassandraDatacenter custom resources.

Loads datacenters from the Kubernetes API and persists their status through
the status subresource. Every write carries the resourceVersion it was
computed from; a concurrent change makes the write fail with
StatusConflictError and the pass is recomputed from a fresh read.
"""
from typing import Any, Dict, List, Optional

from kubernetes_asyncio.client import ApiException
from pydantic import ValidationError

from cass_operator.config.logging import get_logger
from cass_operator.config.settings import settings
from cass_operator.exceptions import KubernetesError, NotFoundError, StatusConflictError
from cass_operator.models.datacenter import Datacenter, DatacenterMeta, DatacenterSpec
from cass_operator.models.status import DatacenterStatus
from cass_operator.services.kubernetes_service import KubernetesService, k8s_read_retry

logger = get_logger(__name__)


def datacenter_from_resource(resource: Dict[str, Any]) -> Datacenter:
    """
    Build a Datacenter from a custom resource dict.

    Raises:
        ValidationError: If the spec or status cannot be parsed
    """
    metadata = resource.get("metadata", {})
    return Datacenter(
        metadata=DatacenterMeta(
            name=metadata["name"],
            namespace=metadata.get("namespace", "default"),
            resource_version=metadata.get("resourceVersion"),
            uid=metadata.get("uid"),
            generation=metadata.get("generation"),
        ),
        spec=DatacenterSpec.model_validate(resource.get("spec") or {}),
        status=DatacenterStatus.model_validate(resource.get("status") or {}),
    )


class DatacenterRepository:
    """Data access for CassandraDatacenter resources."""

    def __init__(self, kubernetes: KubernetesService):
        self.kubernetes = kubernetes

    @property
    def _crd(self) -> Dict[str, str]:
        return {
            "group": settings.crd_group,
            "version": settings.crd_version,
            "plural": settings.crd_plural,
        }

    def _parse(self, resource: Dict[str, Any]) -> Optional[Datacenter]:
        try:
            return datacenter_from_resource(resource)
        except ValidationError as e:
            metadata = resource.get("metadata", {})
            logger.warning(
                "datacenter_resource_unparseable",
                namespace=metadata.get("namespace"),
                name=metadata.get("name"),
                errors=e.error_count(),
                error=str(e),
            )
            return None

    @k8s_read_retry
    async def list_datacenters(self, namespace: Optional[str] = None) -> List[Datacenter]:
        """
        List parseable datacenters in a namespace.

        Resources that fail validation are logged and skipped.
        """
        namespace = namespace or settings.watch_namespace
        result = await self.kubernetes.clients.custom_api.list_namespaced_custom_object(
            namespace=namespace, **self._crd
        )
        datacenters = []
        for resource in result.get("items", []):
            dc = self._parse(resource)
            if dc is not None:
                datacenters.append(dc)
        return datacenters

    @k8s_read_retry
    async def get(self, namespace: str, name: str) -> Datacenter:
        """
        Get one datacenter.

        Raises:
            NotFoundError: If the resource does not exist
            KubernetesError: If the resource cannot be parsed
        """
        try:
            resource = await self.kubernetes.clients.custom_api.get_namespaced_custom_object(
                namespace=namespace, name=name, **self._crd
            )
        except ApiException as e:
            if e.status == 404:
                raise NotFoundError("CassandraDatacenter", f"{namespace}/{name}")
            raise

        dc = self._parse(resource)
        if dc is None:
            raise KubernetesError(f"CassandraDatacenter {namespace}/{name} cannot be parsed")
        return dc

    async def replace_status(self, dc: Datacenter, status: DatacenterStatus) -> Datacenter:
        """
        Write the status of a datacenter with optimistic concurrency.

        Returns:
            The datacenter with the new status and resourceVersion

        Raises:
            StatusConflictError: If the resource changed since it was read
        """
        body = {
            "apiVersion": f"{settings.crd_group}/{settings.crd_version}",
            "kind": "CassandraDatacenter",
            "metadata": {
                "name": dc.name,
                "namespace": dc.namespace,
                "resourceVersion": dc.metadata.resource_version,
            },
            "status": status.to_document(),
        }
        try:
            result = await self.kubernetes.clients.custom_api.replace_namespaced_custom_object_status(
                namespace=dc.namespace, name=dc.name, body=body, **self._crd
            )
        except ApiException as e:
            if e.status == 409:
                logger.info(
                    "datacenter_status_conflict",
                    datacenter=dc.key,
                    resource_version=dc.metadata.resource_version,
                )
                raise StatusConflictError(dc.key, dc.metadata.resource_version)
            if e.status == 404:
                raise NotFoundError("CassandraDatacenter", dc.key)
            raise

        new_version = (result or {}).get("metadata", {}).get("resourceVersion")
        logger.debug("datacenter_status_written", datacenter=dc.key, resource_version=new_version)
        return dc.model_copy(
            update={
                "metadata": dc.metadata.model_copy(update={"resource_version": new_version}),
                "status": status,
            }
        )
