"""Workload controls — one per kind of object an NdbCluster owns.

Each control knows how to build its object, ensure it exists, and judge
its health from the object's reported status.  The set is closed: the
event router and the sync engine only ever talk to ``WorkloadControl``
and look controls up in ``CONTROLS_BY_KIND``; neither switches on kinds.

Health is readiness and completeness, both judged at the observed generation:
- StatefulSet: ready when every replica is ready, complete when every
  replica runs the current template
- Deployment: ready when every replica is ready and available, complete
  when every replica is updated and no old replicas are left over
- PodDisruptionBudget: observed and currently healthy >= desired healthy
- ConfigMap, Service, Secret: healthy once they exist
"""

from __future__ import annotations

import logging
from typing import Any, Protocol, runtime_checkable

from ndb_operator.kube.client import ConflictError, KubeAPI, NotFoundError
from ndb_operator.models import CONFIG_VERSION_ANNOTATION, NdbCluster, NodeType, WorkloadKind
from ndb_operator.resources import builders
from ndb_operator.resources.ndbconfig import ConfigSummary

logger = logging.getLogger(__name__)


class MissingSecretError(Exception):
    """A user-supplied secret referenced by the spec does not exist."""


@runtime_checkable
class WorkloadControl(Protocol):
    """Uniform interface over every owned object kind."""

    kind: WorkloadKind

    def name(self, nc: NdbCluster) -> str: ...

    def build(self, nc: NdbCluster, summary: ConfigSummary) -> dict[str, Any]: ...

    def ensure_exists(
        self, api: KubeAPI, nc: NdbCluster, summary: ConfigSummary,
    ) -> tuple[dict[str, Any], bool]: ...

    def is_ready(self, obj: dict[str, Any]) -> bool: ...

    def is_complete(self, obj: dict[str, Any]) -> bool: ...

    def drift_patch(
        self, nc: NdbCluster, summary: ConfigSummary, obj: dict[str, Any],
    ) -> list[dict[str, Any]]: ...


# --- Status predicates ---


def _observed(obj: dict[str, Any]) -> bool:
    generation = (obj.get("metadata") or {}).get("generation", 0)
    observed = (obj.get("status") or {}).get("observedGeneration", 0)
    return observed >= generation


def _desired_replicas(obj: dict[str, Any]) -> int:
    replicas = (obj.get("spec") or {}).get("replicas")
    return 1 if replicas is None else replicas


def statefulset_ready(obj: dict[str, Any]) -> bool:
    """Every desired replica reports ready."""
    return _observed(obj) and (obj.get("status") or {}).get("readyReplicas", 0) == _desired_replicas(obj)


def statefulset_complete(obj: dict[str, Any]) -> bool:
    """Every replica runs the current pod template."""
    return _observed(obj) and (obj.get("status") or {}).get("updatedReplicas", 0) == _desired_replicas(obj)


def deployment_ready(obj: dict[str, Any]) -> bool:
    status = obj.get("status") or {}
    replicas = _desired_replicas(obj)
    return (
        _observed(obj)
        and status.get("readyReplicas", 0) == replicas
        and status.get("availableReplicas", 0) == replicas
    )


def deployment_complete(obj: dict[str, Any]) -> bool:
    """Rollout finished: all replicas updated and no old replicas left over."""
    status = obj.get("status") or {}
    replicas = _desired_replicas(obj)
    return (
        _observed(obj)
        and status.get("replicas", 0) == replicas
        and status.get("updatedReplicas", 0) == replicas
    )


def pdb_healthy(obj: dict[str, Any]) -> bool:
    status = obj.get("status") or {}
    return _observed(obj) and status.get("currentHealthy", 0) >= status.get("desiredHealthy", 0)


def _port_numbers(service_spec: dict[str, Any]) -> list[tuple[str, int]]:
    return sorted((p.get("name", ""), p.get("port", 0)) for p in service_spec.get("ports") or [])


def config_version_of(obj: dict[str, Any]) -> int | None:
    """Config version recorded on a workload's pod template, if any."""
    template = (obj.get("spec") or {}).get("template") or {}
    value = ((template.get("metadata") or {}).get("annotations") or {}).get(CONFIG_VERSION_ANNOTATION)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


# --- Controls ---


class _Control:
    """Shared get-or-create behaviour; subclasses provide name/build/health."""

    kind: WorkloadKind

    def name(self, nc: NdbCluster) -> str:
        raise NotImplementedError

    def build(self, nc: NdbCluster, summary: ConfigSummary) -> dict[str, Any]:
        raise NotImplementedError

    def ensure_exists(
        self, api: KubeAPI, nc: NdbCluster, summary: ConfigSummary,
    ) -> tuple[dict[str, Any], bool]:
        """Return ``(object, created)``, creating the object when absent."""
        name = self.name(nc)
        namespace = nc.metadata.namespace
        try:
            return api.get(self.kind, namespace, name), False
        except NotFoundError:
            pass
        try:
            created = api.create(self.kind, namespace, self.build(nc, summary))
        except ConflictError:
            # Created by someone else between our get and create.
            return api.get(self.kind, namespace, name), False
        logger.info("Created %s %s/%s", self.kind, namespace, name)
        return created, True

    def is_ready(self, obj: dict[str, Any]) -> bool:
        return True

    def is_complete(self, obj: dict[str, Any]) -> bool:
        return True

    def drift_patch(
        self, nc: NdbCluster, summary: ConfigSummary, obj: dict[str, Any],
    ) -> list[dict[str, Any]]:
        """JSON patch ops bringing *obj* back in line with its manifest; empty when in line."""
        return []


class StatefulSetControl(_Control):
    kind = WorkloadKind.STATEFULSET

    def __init__(self, node_type: NodeType) -> None:
        self.node_type = node_type

    def name(self, nc: NdbCluster) -> str:
        return nc.workload_name(self.node_type)

    def build(self, nc: NdbCluster, summary: ConfigSummary) -> dict[str, Any]:
        return builders.new_statefulset(summary.snapshot(nc), self.node_type, summary)

    def is_ready(self, obj: dict[str, Any]) -> bool:
        return statefulset_ready(obj)

    def is_complete(self, obj: dict[str, Any]) -> bool:
        return statefulset_complete(obj)


class DeploymentControl(_Control):
    kind = WorkloadKind.DEPLOYMENT
    node_type = NodeType.MYSQLD

    def name(self, nc: NdbCluster) -> str:
        return nc.workload_name(self.node_type)

    def build(self, nc: NdbCluster, summary: ConfigSummary) -> dict[str, Any]:
        return builders.new_mysqld_deployment(summary.snapshot(nc), summary)

    def is_ready(self, obj: dict[str, Any]) -> bool:
        return deployment_ready(obj)

    def is_complete(self, obj: dict[str, Any]) -> bool:
        return deployment_complete(obj)


class ServiceControl(_Control):
    kind = WorkloadKind.SERVICE

    def __init__(self, node_type: NodeType) -> None:
        self.node_type = node_type

    def name(self, nc: NdbCluster) -> str:
        return nc.workload_name(self.node_type)

    def build(self, nc: NdbCluster, summary: ConfigSummary) -> dict[str, Any]:
        return builders.new_service(summary.snapshot(nc), self.node_type)

    def drift_patch(
        self, nc: NdbCluster, summary: ConfigSummary, obj: dict[str, Any],
    ) -> list[dict[str, Any]]:
        desired = self.build(nc, summary)["spec"]
        live = obj.get("spec") or {}
        # The server fills in type, nodePort, protocol and targetPort; compare what we set.
        same_type = live.get("type", "ClusterIP") == desired.get("type", "ClusterIP")
        if same_type and _port_numbers(live) == _port_numbers(desired):
            return []
        ops = [{"op": "add", "path": "/spec/ports", "value": desired["ports"]}]
        if "type" in desired:
            ops.insert(0, {"op": "add", "path": "/spec/type", "value": desired["type"]})
        return ops


class PodDisruptionBudgetControl(_Control):
    kind = WorkloadKind.PDB

    def name(self, nc: NdbCluster) -> str:
        return nc.pdb_name()

    def build(self, nc: NdbCluster, summary: ConfigSummary) -> dict[str, Any]:
        return builders.new_pdb(nc)

    def is_ready(self, obj: dict[str, Any]) -> bool:
        return pdb_healthy(obj)


class ConfigMapControl(_Control):
    """The config artifact.  Built from the live spec, not a snapshot."""

    kind = WorkloadKind.CONFIGMAP

    def name(self, nc: NdbCluster) -> str:
        return nc.config_map_name()

    def build(self, nc: NdbCluster, summary: ConfigSummary) -> dict[str, Any]:
        return builders.new_config_map(nc, summary.config_version)


class SecretControl(_Control):
    """MySQL root password; generated unless the user names their own."""

    kind = WorkloadKind.SECRET

    def name(self, nc: NdbCluster) -> str:
        return nc.root_password_secret_name()[0]

    def build(self, nc: NdbCluster, summary: ConfigSummary) -> dict[str, Any]:
        return builders.new_root_password_secret(nc)

    def ensure_exists(
        self, api: KubeAPI, nc: NdbCluster, summary: ConfigSummary,
    ) -> tuple[dict[str, Any], bool]:
        name, user_supplied = nc.root_password_secret_name()
        if not user_supplied:
            return super().ensure_exists(api, nc, summary)
        try:
            return api.get(self.kind, nc.metadata.namespace, name), False
        except NotFoundError as exc:
            raise MissingSecretError(
                f"root password secret {name!r} not found in namespace {nc.metadata.namespace!r}"
            ) from exc


# Workloads whose pod template carries the config version, in rollout order.
WORKLOAD_CONTROLS: tuple[_Control, ...] = (
    StatefulSetControl(NodeType.MGMD),
    StatefulSetControl(NodeType.NDBD),
    DeploymentControl(),
)

# Supporting objects, created before the workloads that depend on them.
SUPPORT_CONTROLS: tuple[_Control, ...] = (
    SecretControl(),
    ServiceControl(NodeType.MGMD),
    ServiceControl(NodeType.NDBD),
    ServiceControl(NodeType.MYSQLD),
    PodDisruptionBudgetControl(),
)

# One representative control per watched kind, for status-transition checks.
CONTROLS_BY_KIND: dict[str, _Control] = {
    WorkloadKind.STATEFULSET: WORKLOAD_CONTROLS[0],
    WorkloadKind.DEPLOYMENT: WORKLOAD_CONTROLS[2],
    WorkloadKind.PDB: SUPPORT_CONTROLS[4],
    WorkloadKind.CONFIGMAP: ConfigMapControl(),
    WorkloadKind.SERVICE: SUPPORT_CONTROLS[1],
    WorkloadKind.SECRET: SUPPORT_CONTROLS[0],
}


def is_healthy(control: WorkloadControl, obj: dict[str, Any]) -> bool:
    return control.is_ready(obj) and control.is_complete(obj)
