"""
Pydantic models for the CassandraDatacenter desired state.

The spec is an immutable snapshot read at the start of every reconciliation
pass. Everything derived from it (image, labels, service names, effective
server config, config hash) is computed here so the rest of the operator
never re-implements naming rules.
"""
import hashlib
import json
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from cass_operator.core.config_merge import deep_merge, search
from cass_operator.exceptions import InvalidDesiredStateError
from cass_operator.models.node import SlotRef
from cass_operator.models.status import DatacenterStatus

# Defaults for both server image types
DEFAULT_CASS_REPOSITORY = "datastaxlabs/apache-cassandra-with-mgmtapi"
DEFAULT_CASS_VERSION = "3.11.6-20200316"
DEFAULT_DSE_REPOSITORY = "datastaxlabs/dse-k8s-server"
DEFAULT_DSE_VERSION = "6.8.0-20200316"
DEFAULT_CONFIG_BUILDER_IMAGE = "datastaxlabs/dse-k8s-config-builder:0.9.0-20200316"

# Labels
CLUSTER_LABEL = "cassandra.datastax.com/cluster"
DATACENTER_LABEL = "cassandra.datastax.com/datacenter"
SEED_NODE_LABEL = "cassandra.datastax.com/seed-node"
RACK_LABEL = "cassandra.datastax.com/rack"
NODE_STATE_LABEL = "cassandra.datastax.com/node-state"
ORDINAL_LABEL = "cassandra.datastax.com/node-ordinal"
CONFIG_HASH_ANNOTATION = "cassandra.datastax.com/config-hash"

DEFAULT_RACK_NAME = "default"


class ServerType(str, Enum):
    """Supported server distributions."""

    CASSANDRA = "cassandra"
    DSE = "dse"


KNOWN_IMAGES = {
    "dse-6.8.0": f"{DEFAULT_DSE_REPOSITORY}:{DEFAULT_DSE_VERSION}",
    "cassandra-3.11.6": f"{DEFAULT_CASS_REPOSITORY}:{DEFAULT_CASS_VERSION}",
}


class Rack(BaseModel):
    """A named failure domain, optionally pinned to a zone."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=2, description="Rack name")
    zone: Optional[str] = Field(default=None, description="Zone to pin the rack to")


class StorageConfig(BaseModel):
    """Persistent storage request of each server node."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)

    storage_class_name: Optional[str] = Field(default=None, description="Storage class")
    storage_request: str = Field(default="5Gi", description="Requested volume size")

    @model_validator(mode="before")
    @classmethod
    def from_claim_spec(cls, data: Any) -> Any:
        """Accept the resource form: a PVC spec under cassandraDataVolumeClaimSpec."""
        if isinstance(data, dict) and "cassandraDataVolumeClaimSpec" in data:
            claim = data["cassandraDataVolumeClaimSpec"] or {}
            result = {"storage_class_name": claim.get("storageClassName")}
            storage = claim.get("resources", {}).get("requests", {}).get("storage")
            if storage:
                result["storage_request"] = storage
            return result
        return data


class InsecureAuth(BaseModel):
    """Plain HTTP to the management API."""

    model_config = ConfigDict(frozen=True)

    type: Literal["insecure"] = "insecure"


class ManualAuth(BaseModel):
    """Mutual TLS with certificates kept in user-managed secrets."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)

    type: Literal["manual"] = "manual"
    client_secret_name: str
    server_secret_name: str
    skip_secret_validation: bool = False


ManagementApiAuth = Annotated[Union[InsecureAuth, ManualAuth], Field(discriminator="type")]


class DatacenterSpec(BaseModel):
    """Desired state of a CassandraDatacenter."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)

    cluster_name: str = Field(..., min_length=2, description="Cluster name shared by datacenters")
    server_type: ServerType = Field(..., description="cassandra or dse")
    server_version: str = Field(..., description="Server version, e.g. 3.11.6")
    server_image: Optional[str] = Field(default=None, description="Explicit server image")
    size: int = Field(..., ge=1, description="Desired number of server nodes")
    racks: List[Rack] = Field(default_factory=list, description="Ordered rack list")
    storage_config: StorageConfig = Field(default_factory=StorageConfig)
    config: Dict[str, Any] = Field(default_factory=dict, description="Server config overrides")
    management_api_auth: ManagementApiAuth = Field(default_factory=InsecureAuth)
    resources: Dict[str, Any] = Field(default_factory=dict, description="Pod resource requirements")

    stopped: bool = Field(default=False, description="Run no server pods, keep volumes")
    canary_upgrade: bool = Field(default=False, description="Push changes to the first rack only")
    rolling_restart_token: int = Field(
        default=0, ge=0, description="Raise to request a rolling restart"
    )
    replace_nodes: List[str] = Field(default_factory=list, description="Pod names to replace")

    superuser_secret_name: Optional[str] = Field(default=None)
    allow_multiple_nodes_per_worker: bool = False
    service_account: Optional[str] = None
    config_builder_image: Optional[str] = None

    @field_validator("management_api_auth", mode="before")
    @classmethod
    def tag_auth_variant(cls, value: Any) -> Any:
        """The resource nests the variant under its name: {"manual": {...}}."""
        if isinstance(value, dict) and "type" not in value:
            if "manual" in value:
                return {"type": "manual", **(value["manual"] or {})}
            return {"type": "insecure"}
        return value

    @field_validator("config", "resources", mode="before")
    @classmethod
    def none_as_empty(cls, value: Any) -> Any:
        return {} if value is None else value

    def get_racks(self) -> List[Rack]:
        """Declared racks, or the single implicit default rack."""
        if self.racks:
            return list(self.racks)
        return [Rack(name=DEFAULT_RACK_NAME)]

    def rack_names(self) -> List[str]:
        return [rack.name for rack in self.get_racks()]

    def get_server_image(self) -> str:
        """
        Fully qualified server image.

        Raises:
            InvalidDesiredStateError: if no image is known for the type/version pair
        """
        if self.server_image:
            return self.server_image
        key = f"{self.server_type.value}-{self.server_version}"
        if key not in KNOWN_IMAGES:
            raise InvalidDesiredStateError(
                f"server '{self.server_type.value}' and version '{self.server_version}' "
                f"do not work together",
                details={"server_type": self.server_type.value, "server_version": self.server_version},
            )
        return KNOWN_IMAGES[key]

    def get_config_builder_image(self) -> str:
        return self.config_builder_image or DEFAULT_CONFIG_BUILDER_IMAGE


class DatacenterMeta(BaseModel):
    """Identity of the custom resource."""

    model_config = ConfigDict(frozen=True)

    name: str
    namespace: str = "default"
    resource_version: Optional[str] = None
    uid: Optional[str] = None
    generation: Optional[int] = None


class Datacenter(BaseModel):
    """A CassandraDatacenter resource: identity, desired spec and persisted status."""

    metadata: DatacenterMeta
    spec: DatacenterSpec
    status: DatacenterStatus = Field(default_factory=DatacenterStatus)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    # Naming

    def pod_name(self, slot: SlotRef) -> str:
        return f"{self.spec.cluster_name}-{self.name}-{slot.rack}-sts-{slot.ordinal}"

    def pvc_name(self, slot: SlotRef) -> str:
        return f"server-data-{self.pod_name(slot)}"

    def get_seed_service_name(self) -> str:
        return f"{self.spec.cluster_name}-seed-service"

    def get_all_pods_service_name(self) -> str:
        return f"{self.spec.cluster_name}-{self.name}-all-pods-service"

    def get_datacenter_service_name(self) -> str:
        return f"{self.spec.cluster_name}-{self.name}-service"

    def get_superuser_secret_name(self) -> str:
        return self.spec.superuser_secret_name or f"{self.spec.cluster_name}-superuser"

    # Labels

    def get_cluster_labels(self) -> Dict[str, str]:
        return {CLUSTER_LABEL: self.spec.cluster_name}

    def get_datacenter_labels(self) -> Dict[str, str]:
        labels = {DATACENTER_LABEL: self.name}
        labels.update(self.get_cluster_labels())
        return labels

    def get_rack_labels(self, rack_name: str) -> Dict[str, str]:
        labels = {RACK_LABEL: rack_name}
        labels.update(self.get_datacenter_labels())
        return labels

    # Server configuration

    def get_model_values(self) -> Dict[str, Any]:
        """Generated defaults the user config is merged onto."""
        # The seed service resolves to the seed pods, so the server config
        # never changes when seeds move.
        return {
            "cluster-info": {
                "name": self.spec.cluster_name,
                "seeds": self.get_seed_service_name(),
            },
            "datacenter-info": {
                "name": self.name,
            },
        }

    def get_config(self) -> Dict[str, Any]:
        """Effective server config: model values overlaid with spec.config."""
        return deep_merge(self.get_model_values(), self.spec.config)

    def get_config_as_json(self) -> str:
        return json.dumps(self.get_config(), sort_keys=True, separators=(",", ":"))

    def config_hash(self) -> str:
        """Stable fingerprint of everything that requires a node restart to apply."""
        payload = json.dumps(
            {"image": self.spec.get_server_image(), "config": self.get_config()},
            sort_keys=True,
            separators=(",", ":"),
        )
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]

    def get_container_ports(self) -> List[Dict[str, Any]]:
        """Container ports of a server pod, based on the effective config."""
        # Port names cannot be more than 15 characters
        ports = [
            {"name": "native", "containerPort": 9042},
            {"name": "inter-node-msg", "containerPort": 8609},
            {"name": "intra-node", "containerPort": 7000},
            {"name": "tls-intra-node", "containerPort": 7001},
            {"name": "mgmt-api-http", "containerPort": 8080},
        ]
        prom_conf = search(self.get_config(), "10-write-prom-conf")
        if "enabled" in prom_conf:
            ports.append({"name": "prometheus", "containerPort": 9103})
        return ports
