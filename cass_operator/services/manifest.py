"""
Manifest renderer for datacenter resources.

Pure functions from the desired state to Kubernetes object dicts. Each node
slot is one pod plus one persistent volume claim; the pod is disposable, the
claim holds the node's data and outlives the pod until decommission.

Rendering is deterministic: the same inputs always give the same manifests,
so applying them every pass is a no-op on a converged datacenter.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from cass_operator.models.datacenter import (
    CONFIG_HASH_ANNOTATION,
    NODE_STATE_LABEL,
    ORDINAL_LABEL,
    SEED_NODE_LABEL,
    Datacenter,
)
from cass_operator.models.node import SlotRef

SERVER_DATA_VOLUME = "server-data"
SERVER_CONFIG_VOLUME = "server-config"
MANAGEMENT_API_PORT = 8080

# Node state label value of a pod whose database has not started yet
READY_TO_START = "Ready-to-Start"


class NodeManifests(BaseModel):
    """Objects backing one node slot, in apply order."""

    pvc: Dict[str, Any]
    pod: Dict[str, Any]

    def in_apply_order(self) -> List[Dict[str, Any]]:
        return [self.pvc, self.pod]


def seed_labels(seed: bool) -> Dict[str, str]:
    """Label patch selecting or deselecting a pod from the seed service."""
    return {SEED_NODE_LABEL: "true" if seed else "false"}


def _node_labels(dc: Datacenter, slot: SlotRef) -> Dict[str, str]:
    labels = dc.get_rack_labels(slot.rack)
    labels[ORDINAL_LABEL] = str(slot.ordinal)
    return labels


def _affinity(dc: Datacenter, slot: SlotRef) -> Dict[str, Any]:
    affinity: Dict[str, Any] = {}

    zone = next((rack.zone for rack in dc.spec.get_racks() if rack.name == slot.rack), None)
    if zone:
        affinity["nodeAffinity"] = {
            "requiredDuringSchedulingIgnoredDuringExecution": {
                "nodeSelectorTerms": [
                    {
                        "matchExpressions": [
                            {
                                "key": "topology.kubernetes.io/zone",
                                "operator": "In",
                                "values": [zone],
                            }
                        ]
                    }
                ]
            }
        }

    if not dc.spec.allow_multiple_nodes_per_worker:
        affinity["podAntiAffinity"] = {
            "requiredDuringSchedulingIgnoredDuringExecution": [
                {
                    "labelSelector": {"matchLabels": dc.get_cluster_labels()},
                    "topologyKey": "kubernetes.io/hostname",
                }
            ]
        }

    return affinity


def _jvm_options(replace_address: Optional[str]) -> str:
    if replace_address:
        return f"-Dcassandra.replace_address_first_boot={replace_address}"
    return ""


def render_pvc(dc: Datacenter, slot: SlotRef) -> Dict[str, Any]:
    """Persistent volume claim holding one node's data."""
    storage = dc.spec.storage_config
    spec: Dict[str, Any] = {
        "accessModes": ["ReadWriteOnce"],
        "resources": {"requests": {"storage": storage.storage_request}},
    }
    if storage.storage_class_name:
        spec["storageClassName"] = storage.storage_class_name

    return {
        "apiVersion": "v1",
        "kind": "PersistentVolumeClaim",
        "metadata": {
            "name": dc.pvc_name(slot),
            "namespace": dc.namespace,
            "labels": _node_labels(dc, slot),
        },
        "spec": spec,
    }


def render_pod(
    dc: Datacenter,
    slot: SlotRef,
    seed: bool,
    replace_address: Optional[str] = None,
) -> Dict[str, Any]:
    """Server pod of one node slot; the database waits for an explicit start."""
    pod_name = dc.pod_name(slot)
    labels = _node_labels(dc, slot)
    labels.update(seed_labels(seed))
    labels[NODE_STATE_LABEL] = READY_TO_START

    env = [
        {"name": "DS_LICENSE", "value": "accept"},
        {"name": "DSE_AUTO_CONF_OFF", "value": "all"},
        {"name": "USE_MGMT_API", "value": "true"},
        {"name": "MGMT_API_EXPLICIT_START", "value": "true"},
        {"name": "DSE_MGMT_EXPLICIT_START", "value": "true"},
        {"name": "JVM_EXTRA_OPTS", "value": _jvm_options(replace_address)},
    ]

    config_init = {
        "name": "server-config-init",
        "image": dc.spec.get_config_builder_image(),
        "env": [
            {"name": "CONFIG_FILE_DATA", "value": dc.get_config_as_json()},
            {"name": "POD_IP", "valueFrom": {"fieldRef": {"fieldPath": "status.podIP"}}},
            {"name": "HOST_IP", "valueFrom": {"fieldRef": {"fieldPath": "status.hostIP"}}},
            {"name": "RACK_NAME", "value": slot.rack},
            {"name": "PRODUCT_NAME", "value": dc.spec.server_type.value},
            {"name": "PRODUCT_VERSION", "value": dc.spec.server_version},
        ],
        "volumeMounts": [{"name": SERVER_CONFIG_VOLUME, "mountPath": "/config"}],
    }

    probe_handler = {"port": MANAGEMENT_API_PORT}
    server = {
        "name": "cassandra",
        "image": dc.spec.get_server_image(),
        "env": env,
        "ports": dc.get_container_ports(),
        "livenessProbe": {
            "httpGet": {"path": "/api/v0/probes/liveness", **probe_handler},
            "initialDelaySeconds": 15,
            "periodSeconds": 15,
        },
        "readinessProbe": {
            "httpGet": {"path": "/api/v0/probes/readiness", **probe_handler},
            "initialDelaySeconds": 20,
            "periodSeconds": 10,
        },
        "volumeMounts": [
            {"name": SERVER_DATA_VOLUME, "mountPath": "/var/lib/cassandra"},
            {"name": SERVER_CONFIG_VOLUME, "mountPath": "/config"},
        ],
    }
    if dc.spec.resources:
        server["resources"] = dict(dc.spec.resources)

    spec: Dict[str, Any] = {
        "hostname": pod_name,
        "subdomain": dc.get_all_pods_service_name(),
        "initContainers": [config_init],
        "containers": [server],
        "volumes": [
            {
                "name": SERVER_DATA_VOLUME,
                "persistentVolumeClaim": {"claimName": dc.pvc_name(slot)},
            },
            {"name": SERVER_CONFIG_VOLUME, "emptyDir": {}},
        ],
        "restartPolicy": "Always",
    }
    affinity = _affinity(dc, slot)
    if affinity:
        spec["affinity"] = affinity
    if dc.spec.service_account:
        spec["serviceAccountName"] = dc.spec.service_account

    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {
            "name": pod_name,
            "namespace": dc.namespace,
            "labels": labels,
            "annotations": {CONFIG_HASH_ANNOTATION: dc.config_hash()},
        },
        "spec": spec,
    }


def render_node(
    dc: Datacenter,
    slot: SlotRef,
    seed: bool,
    replace_address: Optional[str] = None,
) -> NodeManifests:
    """
    Render the objects of one node slot.

    Args:
        dc: Datacenter desired state
        slot: Slot to render
        seed: Whether the slot is in the seed set
        replace_address: IP of the node this slot replaces, if any

    Returns:
        NodeManifests with the claim and the pod
    """
    return NodeManifests(
        pvc=render_pvc(dc, slot),
        pod=render_pod(dc, slot, seed, replace_address),
    )


def _headless_service(
    dc: Datacenter,
    name: str,
    labels: Dict[str, str],
    selector: Dict[str, str],
    publish_not_ready: bool = False,
) -> Dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {"name": name, "namespace": dc.namespace, "labels": labels},
        "spec": {
            "clusterIP": "None",
            "selector": selector,
            "publishNotReadyAddresses": publish_not_ready,
            "ports": [
                {"name": port["name"], "port": port["containerPort"]}
                for port in dc.get_container_ports()
            ],
        },
    }


def render_services(dc: Datacenter) -> List[Dict[str, Any]]:
    """
    Services of a datacenter: seed service, datacenter service and the
    all-pods service giving every pod a stable DNS name.
    """
    seed_selector = dc.get_cluster_labels()
    seed_selector[SEED_NODE_LABEL] = "true"

    return [
        # Seeds must resolve before they are ready, or no node can bootstrap
        _headless_service(
            dc,
            dc.get_seed_service_name(),
            dc.get_cluster_labels(),
            seed_selector,
            publish_not_ready=True,
        ),
        _headless_service(
            dc,
            dc.get_datacenter_service_name(),
            dc.get_datacenter_labels(),
            dc.get_datacenter_labels(),
        ),
        _headless_service(
            dc,
            dc.get_all_pods_service_name(),
            dc.get_datacenter_labels(),
            dc.get_datacenter_labels(),
            publish_not_ready=True,
        ),
    ]
