"""
Tests for the Kubernetes applier and the datacenter repository, with the
API clients mocked.
"""
import base64
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from kubernetes_asyncio.client import ApiException

from cass_operator.exceptions import NotFoundError, StatusConflictError
from cass_operator.models.status import DatacenterStatus, ProgressState
from cass_operator.repositories.datacenter_repository import DatacenterRepository
from cass_operator.services.kubernetes_service import ApplyResult, KubernetesService
from cass_operator.services.manifest import render_node, render_services
from cass_operator.models.node import SlotRef


@pytest.fixture
def client_set():
    return SimpleNamespace(core_api=AsyncMock(), custom_api=AsyncMock())


@pytest.fixture
def service(client_set):
    return KubernetesService(client_set=client_set)


@pytest.fixture
def dc(make_datacenter):
    return make_datacenter(racks=[{"name": "r1"}])


@pytest.mark.asyncio
async def test_apply_creates_missing_pod(service, client_set, dc):
    pod = render_node(dc, SlotRef(rack="r1", ordinal=0), seed=True).pod

    assert await service.apply(pod) == ApplyResult.SUCCESS
    client_set.core_api.create_namespaced_pod.assert_awaited_once()


@pytest.mark.asyncio
async def test_existing_pod_is_never_patched(service, client_set, dc):
    client_set.core_api.create_namespaced_pod.side_effect = ApiException(status=409, reason="AlreadyExists")
    pod = render_node(dc, SlotRef(rack="r1", ordinal=0), seed=True).pod

    assert await service.apply(pod) == ApplyResult.SUCCESS
    client_set.core_api.patch_namespaced_pod.assert_not_called()


def live_service(manifest, **changes):
    """A read_namespaced_service answer mirroring a rendered service."""
    spec = manifest["spec"]
    fields = {
        "labels": dict(manifest["metadata"]["labels"]),
        "selector": dict(spec["selector"]),
        "publish_not_ready_addresses": spec["publishNotReadyAddresses"],
        "ports": [
            SimpleNamespace(name=port["name"], port=port["port"], protocol="TCP", target_port=port["port"])
            for port in spec["ports"]
        ],
    }
    fields.update(changes)
    return SimpleNamespace(
        metadata=SimpleNamespace(name=manifest["metadata"]["name"], labels=fields.pop("labels")),
        spec=SimpleNamespace(cluster_ip="None", **fields),
    )


@pytest.mark.asyncio
async def test_missing_service_is_created(service, client_set, dc):
    client_set.core_api.read_namespaced_service.side_effect = ApiException(status=404, reason="NotFound")

    assert await service.apply(render_services(dc)[0]) == ApplyResult.SUCCESS
    client_set.core_api.create_namespaced_service.assert_awaited_once()
    client_set.core_api.patch_namespaced_service.assert_not_called()


@pytest.mark.asyncio
async def test_service_in_sync_is_not_written(service, client_set, dc):
    manifest = render_services(dc)[0]
    client_set.core_api.read_namespaced_service.return_value = live_service(
        manifest, labels={**manifest["metadata"]["labels"], "extra": "kept"}
    )

    assert await service.apply(manifest) == ApplyResult.SUCCESS
    client_set.core_api.create_namespaced_service.assert_not_called()
    client_set.core_api.patch_namespaced_service.assert_not_called()


@pytest.mark.asyncio
async def test_drifted_service_is_patched(service, client_set, dc):
    manifest = render_services(dc)[0]
    client_set.core_api.read_namespaced_service.return_value = live_service(manifest, selector={"app": "old"})

    assert await service.apply(manifest) == ApplyResult.SUCCESS
    client_set.core_api.create_namespaced_service.assert_not_called()
    body = client_set.core_api.patch_namespaced_service.call_args.kwargs["body"]
    assert body["spec"]["selector"] == manifest["spec"]["selector"]


@pytest.mark.asyncio
async def test_service_patch_conflict(service, client_set, dc):
    manifest = render_services(dc)[0]
    client_set.core_api.read_namespaced_service.return_value = live_service(manifest, ports=[])
    client_set.core_api.patch_namespaced_service.side_effect = ApiException(status=409, reason="Conflict")

    assert await service.apply(manifest) == ApplyResult.CONFLICT


@pytest.mark.asyncio
async def test_service_read_failure_is_error(service, client_set, dc):
    client_set.core_api.read_namespaced_service.side_effect = ApiException(status=403, reason="Forbidden")

    assert await service.apply(render_services(dc)[0]) == ApplyResult.ERROR
    client_set.core_api.create_namespaced_service.assert_not_called()


@pytest.mark.asyncio
async def test_create_failure_is_error(service, client_set, dc):
    client_set.core_api.create_namespaced_persistent_volume_claim.side_effect = ApiException(
        status=403, reason="Forbidden"
    )
    pvc = render_node(dc, SlotRef(rack="r1", ordinal=0), seed=True).pvc

    assert await service.apply(pvc) == ApplyResult.ERROR


@pytest.mark.asyncio
async def test_delete_missing_pod_is_fine(service, client_set):
    client_set.core_api.delete_namespaced_pod.side_effect = ApiException(status=404, reason="NotFound")

    await service.delete_pod("default", "gone")


@pytest.mark.asyncio
async def test_list_pods_maps_fields(service, client_set):
    pod = SimpleNamespace(
        metadata=SimpleNamespace(
            name="cluster1-dc1-r1-sts-0",
            labels={"a": "b"},
            annotations=None,
            deletion_timestamp="2024-01-01T00:00:00Z",
        ),
        status=SimpleNamespace(pod_ip="10.0.0.1", phase="Running"),
    )
    client_set.core_api.list_namespaced_pod.return_value = SimpleNamespace(items=[pod])

    pods = await service.list_pods("default", {"z": "1", "a": "b"})

    assert pods[0].ip == "10.0.0.1"
    assert pods[0].terminating
    assert pods[0].annotations == {}
    assert client_set.core_api.list_namespaced_pod.call_args.kwargs["label_selector"] == "a=b,z=1"


@pytest.mark.asyncio
async def test_read_secret_decodes_data(service, client_set):
    encoded = base64.b64encode(b"admin").decode()
    client_set.core_api.read_namespaced_secret.return_value = SimpleNamespace(data={"username": encoded})

    assert await service.read_secret("default", "cluster1-superuser") == {"username": "admin"}


@pytest.mark.asyncio
async def test_read_missing_secret_returns_none(service, client_set):
    client_set.core_api.read_namespaced_secret.side_effect = ApiException(status=404, reason="NotFound")

    assert await service.read_secret("default", "missing") is None


@pytest.mark.asyncio
async def test_repository_skips_unparseable_resources(service, client_set):
    client_set.custom_api.list_namespaced_custom_object.return_value = {
        "items": [
            {
                "metadata": {"name": "dc1", "namespace": "default", "resourceVersion": "5"},
                "spec": {"clusterName": "cluster1", "serverType": "cassandra", "serverVersion": "3.11.6", "size": 3},
            },
            {"metadata": {"name": "broken", "namespace": "default"}, "spec": {"size": -1}},
        ]
    }

    datacenters = await DatacenterRepository(service).list_datacenters("default")

    assert [dc.name for dc in datacenters] == ["dc1"]


@pytest.mark.asyncio
async def test_repository_get_missing_datacenter(service, client_set):
    client_set.custom_api.get_namespaced_custom_object.side_effect = ApiException(status=404, reason="NotFound")

    with pytest.raises(NotFoundError):
        await DatacenterRepository(service).get("default", "dc1")


@pytest.mark.asyncio
async def test_replace_status_sends_resource_version(service, client_set, dc):
    client_set.custom_api.replace_namespaced_custom_object_status.return_value = {
        "metadata": {"resourceVersion": "2"}
    }
    status = DatacenterStatus(cassandra_operator_progress=ProgressState.READY)

    updated = await DatacenterRepository(service).replace_status(dc, status)

    body = client_set.custom_api.replace_namespaced_custom_object_status.call_args.kwargs["body"]
    assert body["metadata"]["resourceVersion"] == "1"
    assert body["status"]["cassandraOperatorProgress"] == "Ready"
    assert updated.metadata.resource_version == "2"
    assert updated.status == status


@pytest.mark.asyncio
async def test_replace_status_conflict(service, client_set, dc):
    client_set.custom_api.replace_namespaced_custom_object_status.side_effect = ApiException(
        status=409, reason="Conflict"
    )

    with pytest.raises(StatusConflictError):
        await DatacenterRepository(service).replace_status(dc, DatacenterStatus())
