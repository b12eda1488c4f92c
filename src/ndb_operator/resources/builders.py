"""Manifest builders for the objects an NdbCluster owns.

Pure functions: NdbCluster (+ config summary) in, API manifest dict out.
Every manifest carries the cluster label and an owner reference so the
platform garbage-collects it together with the NdbCluster.
"""

from __future__ import annotations

import secrets
from typing import Any

from ndb_operator.models import (
    CONFIG_VERSION_ANNOTATION,
    ROOT_PASSWORD_SECRET_ANNOTATION,
    NdbCluster,
    NodeType,
)
from ndb_operator.resources.ndbconfig import (
    CONFIG_INI_KEY,
    DATA_DIR,
    MY_CNF_KEY,
    ConfigSummary,
    new_config_data,
)

DEFAULT_IMAGE = "mysql/mysql-cluster:8.0.28"

_PORTS: dict[NodeType, int] = {
    NodeType.MGMD: 1186,
    NodeType.NDBD: 1186,
    NodeType.MYSQLD: 3306,
}

_CONFIG_MOUNT = f"{DATA_DIR}/config"
_ROOT_PASSWORD_KEY = "password"


def _metadata(nc: NdbCluster, name: str, node_type: NodeType | None = None) -> dict[str, Any]:
    return {
        "name": name,
        "namespace": nc.metadata.namespace,
        "labels": nc.selector_labels(node_type),
        "ownerReferences": [nc.owner_reference()],
    }


def new_config_map(nc: NdbCluster, config_version: int) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": _metadata(nc, nc.config_map_name()),
        "data": new_config_data(nc, config_version),
    }


def new_root_password_secret(nc: NdbCluster) -> dict[str, Any]:
    name, _ = nc.root_password_secret_name()
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": _metadata(nc, name),
        "type": "kubernetes.io/basic-auth",
        "stringData": {_ROOT_PASSWORD_KEY: secrets.token_urlsafe(24)},
    }


def new_service(nc: NdbCluster, node_type: NodeType) -> dict[str, Any]:
    """Headless governing service for mgmd/ndbd; client service for mysqld."""
    spec: dict[str, Any] = {
        "selector": nc.selector_labels(node_type),
        "ports": [{"name": f"{node_type}-port", "port": _PORTS[node_type]}],
    }
    if node_type == NodeType.MYSQLD:
        load_balancer = bool(nc.spec.mysqld and nc.spec.mysqld.enable_load_balancer)
        spec["type"] = "LoadBalancer" if load_balancer else "ClusterIP"
    else:
        spec["clusterIP"] = "None"
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": _metadata(nc, nc.workload_name(node_type), node_type),
        "spec": spec,
    }


def new_pdb(nc: NdbCluster) -> dict[str, Any]:
    """Allow at most one data node to be voluntarily disrupted at a time."""
    return {
        "apiVersion": "policy/v1",
        "kind": "PodDisruptionBudget",
        "metadata": _metadata(nc, nc.pdb_name(), NodeType.NDBD),
        "spec": {
            "maxUnavailable": 1,
            "selector": {"matchLabels": nc.selector_labels(NodeType.NDBD)},
        },
    }


def _config_volume(nc: NdbCluster) -> dict[str, Any]:
    return {"name": "config", "configMap": {"name": nc.config_map_name()}}


def _pod_template(
    nc: NdbCluster,
    node_type: NodeType,
    summary: ConfigSummary,
    command: list[str],
    env: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    container: dict[str, Any] = {
        "name": str(node_type),
        "image": DEFAULT_IMAGE,
        "command": command,
        "ports": [{"containerPort": _PORTS[node_type]}],
        "volumeMounts": [{"name": "config", "mountPath": _CONFIG_MOUNT}],
        "readinessProbe": {"tcpSocket": {"port": _PORTS[node_type]}},
    }
    if env:
        container["env"] = env
    pod_spec: dict[str, Any] = {
        "containers": [container],
        "volumes": [_config_volume(nc)],
    }

    # Copy down any pod spec overrides for MySQL Servers.
    overrides = nc.spec.mysqld.pod_spec if node_type == NodeType.MYSQLD and nc.spec.mysqld else None
    for key, value in (overrides or {}).items():
        if key == "resources":
            container["resources"] = value
        else:
            pod_spec[key] = value

    return {
        "metadata": {
            "labels": nc.selector_labels(node_type),
            # A new config version changes the template and rolls the pods.
            "annotations": {CONFIG_VERSION_ANNOTATION: str(summary.config_version)},
        },
        "spec": pod_spec,
    }


def new_statefulset(nc: NdbCluster, node_type: NodeType, summary: ConfigSummary) -> dict[str, Any]:
    """StatefulSet running the management or data nodes."""
    if node_type == NodeType.MGMD:
        replicas = nc.management_node_count()
        command = [
            "ndb_mgmd", "--nodaemon", "--initial", "--config-cache=0",
            f"--config-file={_CONFIG_MOUNT}/{CONFIG_INI_KEY}",
        ]
    elif node_type == NodeType.NDBD:
        replicas = nc.data_node_count()
        command = ["ndbmtd", "--nodaemon", f"--ndb-connectstring={nc.connectstring()}"]
    else:
        raise ValueError(f"no StatefulSet for node type {node_type}")

    name = nc.workload_name(node_type)
    return {
        "apiVersion": "apps/v1",
        "kind": "StatefulSet",
        "metadata": _metadata(nc, name, node_type),
        "spec": {
            "replicas": replicas,
            "serviceName": name,
            "podManagementPolicy": "Parallel" if node_type == NodeType.MGMD else "OrderedReady",
            "updateStrategy": {"type": "RollingUpdate"},
            "selector": {"matchLabels": nc.selector_labels(node_type)},
            "template": _pod_template(nc, node_type, summary, command),
        },
    }


def new_mysqld_deployment(nc: NdbCluster, summary: ConfigSummary) -> dict[str, Any]:
    """Deployment running the MySQL Servers (SQL gateway nodes)."""
    command = [
        "mysqld", "--ndbcluster", f"--ndb-connectstring={nc.connectstring()}",
        "--user=mysql", "--datadir=/var/lib/mysql",
    ]
    if nc.my_cnf():
        command.insert(1, f"--defaults-file={_CONFIG_MOUNT}/{MY_CNF_KEY}")

    secret_name, _ = nc.root_password_secret_name()
    env = [{
        "name": "MYSQL_ROOT_PASSWORD",
        "valueFrom": {"secretKeyRef": {"name": secret_name, "key": _ROOT_PASSWORD_KEY}},
    }]
    meta = _metadata(nc, nc.workload_name(NodeType.MYSQLD), NodeType.MYSQLD)
    meta["annotations"] = {ROOT_PASSWORD_SECRET_ANNOTATION: secret_name}
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": meta,
        "spec": {
            "replicas": nc.mysqld_node_count(),
            "strategy": {"type": "RollingUpdate", "rollingUpdate": {"maxUnavailable": 1}},
            "selector": {"matchLabels": nc.selector_labels(NodeType.MYSQLD)},
            "template": _pod_template(nc, NodeType.MYSQLD, summary, command, env=env),
        },
    }
