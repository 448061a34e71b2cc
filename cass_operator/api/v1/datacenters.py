"""
Read-only datacenter status endpoints.

The operator is driven by CassandraDatacenter resources; these endpoints only
expose what it sees, with the same camelCase status documents that are
written to the resources.
"""
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, Request

from cass_operator.config.logging import get_logger
from cass_operator.repositories.datacenter_repository import DatacenterRepository

logger = get_logger(__name__)

router = APIRouter()


def get_repository(request: Request) -> DatacenterRepository:
    return request.app.state.repository


def _summary(dc) -> Dict[str, Any]:
    status = dc.status
    return {
        "name": dc.name,
        "namespace": dc.namespace,
        "clusterName": dc.spec.cluster_name,
        "size": dc.spec.size,
        "racks": dc.spec.rack_names(),
        "stopped": dc.spec.stopped,
        "cassandraOperatorProgress": status.cassandra_operator_progress.value,
        "operation": status.operation.kind.value if status.operation else None,
    }


@router.get("/{namespace}")
async def list_datacenters(
    namespace: str,
    repository: DatacenterRepository = Depends(get_repository),
) -> List[Dict[str, Any]]:
    """List the datacenters of a namespace with their progress."""
    datacenters = await repository.list_datacenters(namespace)
    logger.debug("datacenters_listed", namespace=namespace, count=len(datacenters))
    return [_summary(dc) for dc in datacenters]


@router.get("/{namespace}/{name}/status")
async def get_datacenter_status(
    namespace: str,
    name: str,
    repository: DatacenterRepository = Depends(get_repository),
) -> Dict[str, Any]:
    """
    Status document of one datacenter.

    Raises:
        NotFoundError: If the datacenter does not exist (404)
    """
    dc = await repository.get(namespace, name)
    return dc.status.to_document()
