"""Core data models for the NDB operator.

Defines the schemas for:
- The NdbCluster custom resource (spec, status, metadata)
- Admission decisions and JSON patch operations
- Owned workload kinds and the labels/annotations that tie them to a cluster

Wire format is the Kubernetes JSON (camelCase); Python attributes are
snake_case.  Always dump with ``by_alias=True`` before sending to the API.
"""

from __future__ import annotations

import enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# --- API binding ---

GROUP = "mysql.oracle.com"
VERSION = "v1alpha1"
API_VERSION = f"{GROUP}/{VERSION}"
KIND = "NdbCluster"
PLURAL = "ndbclusters"

# Label carried by every owned object; value is the owning NdbCluster name.
CLUSTER_LABEL = f"{GROUP}/v1alpha1"
NODE_TYPE_LABEL = f"{GROUP}/node-type"
CONFIG_VERSION_ANNOTATION = f"{GROUP}/last-applied-config-version"
ROOT_PASSWORD_SECRET_ANNOTATION = f"{GROUP}/root-password-secret"

# --- Limits ---

MAX_REDUNDANCY_LEVEL = 4
MAX_DATA_NODES = 144
MAX_MANAGEMENT_NODES = 2
MAX_NODE_SLOTS = 255
DEFAULT_FREE_API_SLOTS = 2


# --- Enums ---


class NodeType(enum.StrEnum):
    MGMD = "mgmd"
    NDBD = "ndbd"
    MYSQLD = "mysqld"


class WorkloadKind(enum.StrEnum):
    STATEFULSET = "StatefulSet"
    DEPLOYMENT = "Deployment"
    CONFIGMAP = "ConfigMap"
    SERVICE = "Service"
    SECRET = "Secret"
    PDB = "PodDisruptionBudget"


class AdmissionOperation(enum.StrEnum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    CONNECT = "CONNECT"


class PatchOp(enum.StrEnum):
    ADD = "add"
    REPLACE = "replace"


class EventType(enum.StrEnum):
    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


class _KubeModel(BaseModel):
    """Base for models that mirror Kubernetes JSON."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_api(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


# --- NdbCluster ---


class ObjectMeta(_KubeModel):
    name: str = ""
    namespace: str = "default"
    uid: str = ""
    generation: int = 0
    resource_version: str = ""
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)


class DataNodeSpec(_KubeModel):
    node_count: int = 2
    config: dict[str, str | int] = Field(default_factory=dict)
    """Overrides written to the ``[ndbd default]`` section of config.ini."""


class ManagementNodeSpec(_KubeModel):
    node_count: int | None = None


class MysqldSpec(_KubeModel):
    node_count: int = 0
    max_node_count: int | None = None
    my_cnf: str = ""
    root_password_secret_name: str = ""
    enable_load_balancer: bool = False
    pod_spec: dict[str, Any] | None = None


class NdbClusterSpec(_KubeModel):
    redundancy_level: int = 2
    data_node: DataNodeSpec = Field(default_factory=DataNodeSpec)
    management_node: ManagementNodeSpec | None = None
    mysqld: MysqldSpec | None = None


class Condition(_KubeModel):
    type: str
    status: str
    reason: str = ""
    message: str = ""
    last_transition_time: str = ""


class NdbClusterStatus(_KubeModel):
    processed_generation: int = 0
    ready_management_nodes: str = ""
    ready_data_nodes: str = ""
    ready_mysql_servers: str = Field(default="", alias="readyMySQLServers")
    generated_root_password_secret_name: str = ""
    conditions: list[Condition] = Field(default_factory=list)


class NdbCluster(_KubeModel):
    """The user's declaration of desired MySQL Cluster topology."""

    api_version: str = API_VERSION
    kind: str = KIND
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    spec: NdbClusterSpec = Field(default_factory=NdbClusterSpec)
    status: NdbClusterStatus = Field(default_factory=NdbClusterStatus)

    @property
    def key(self) -> str:
        return f"{self.metadata.namespace}/{self.metadata.name}"

    @property
    def reconciled(self) -> bool:
        """True when no reconciliation is owed for the current generation."""
        return self.status.processed_generation == self.metadata.generation

    def management_node_count(self) -> int:
        mgmt = self.spec.management_node
        if mgmt is not None and mgmt.node_count is not None:
            return mgmt.node_count
        return min(self.spec.redundancy_level, MAX_MANAGEMENT_NODES)

    def data_node_count(self) -> int:
        return self.spec.data_node.node_count

    def mysqld_node_count(self) -> int:
        return self.spec.mysqld.node_count if self.spec.mysqld else 0

    def mysqld_max_node_count(self) -> int:
        mysqld = self.spec.mysqld
        if mysqld is None:
            return 0
        if mysqld.max_node_count is not None:
            return mysqld.max_node_count
        return mysqld.node_count + DEFAULT_FREE_API_SLOTS

    def my_cnf(self) -> str:
        return self.spec.mysqld.my_cnf if self.spec.mysqld else ""

    # Names of owned objects

    def config_map_name(self) -> str:
        return f"{self.metadata.name}-config"

    def workload_name(self, node_type: NodeType) -> str:
        return f"{self.metadata.name}-{node_type}"

    def pdb_name(self) -> str:
        return f"{self.metadata.name}-pdb-ndbd"

    def root_password_secret_name(self) -> tuple[str, bool]:
        """Return the root password secret name and whether it is user supplied."""
        mysqld = self.spec.mysqld
        if mysqld is not None and mysqld.root_password_secret_name:
            return mysqld.root_password_secret_name, True
        return f"{self.metadata.name}-mysqld-root-password", False

    def connectstring(self) -> str:
        svc = self.workload_name(NodeType.MGMD)
        ns = self.metadata.namespace
        return ",".join(
            f"{svc}-{i}.{svc}.{ns}.svc.cluster.local:1186"
            for i in range(self.management_node_count())
        )

    def owner_reference(self) -> dict[str, Any]:
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "name": self.metadata.name,
            "uid": self.metadata.uid,
            "controller": True,
            "blockOwnerDeletion": True,
        }

    def selector_labels(self, node_type: NodeType | None = None) -> dict[str, str]:
        labels = {CLUSTER_LABEL: self.metadata.name}
        if node_type is not None:
            labels[NODE_TYPE_LABEL] = str(node_type)
        return labels


def cluster_key(obj: dict[str, Any]) -> str:
    """Return the ``namespace/name`` key of a raw API object."""
    meta = obj.get("metadata") or {}
    return f"{meta.get('namespace', '')}/{meta.get('name', '')}"


def split_key(key: str) -> tuple[str, str]:
    """Split a ``namespace/name`` key. Raises ValueError on malformed keys."""
    parts = key.split("/")
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise ValueError(f"invalid resource key: {key!r}")
    return parts[0], parts[1]


# --- Admission ---


class JSONPatchOperation(BaseModel):
    """One RFC 6902 operation; an ordered list forms a single patch document."""

    op: PatchOp
    path: str
    value: Any = None


class AdmissionDecision(BaseModel):
    """The result of an admission check.

    ``code`` and ``reason`` follow the Kubernetes ``Status`` conventions so
    the API server can surface them unchanged to the client.
    """

    allowed: bool
    code: int = 200
    reason: str = ""
    message: str = ""
    errors: list[str] = Field(default_factory=list)
    patch: list[JSONPatchOperation] = Field(default_factory=list)

    @property
    def retryable(self) -> bool:
        return not self.allowed and self.code == 429

    @classmethod
    def allow(cls, patch: list[JSONPatchOperation] | None = None) -> AdmissionDecision:
        return cls(allowed=True, patch=patch or [])

    @classmethod
    def invalid(cls, kind: str, name: str, errors: list[str]) -> AdmissionDecision:
        return cls(
            allowed=False,
            code=422,
            reason="Invalid",
            message=f"{kind} {name!r} is invalid: {'; '.join(errors)}",
            errors=errors,
        )

    @classmethod
    def too_many_requests(cls, message: str) -> AdmissionDecision:
        return cls(allowed=False, code=429, reason="TooManyRequests", message=message)

    @classmethod
    def bad_request(cls, message: str) -> AdmissionDecision:
        return cls(allowed=False, code=400, reason="BadRequest", message=message)
