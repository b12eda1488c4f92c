"""The configuration artifact and its version marker.

The operator keeps one ConfigMap per NdbCluster.  It holds:

- ``config.ini``    MySQL Cluster configuration generated from the spec
- ``my.cnf``        MySQL Server options (may be empty)
- ``spec.json``     snapshot of the spec the artifact was generated from
- ``configVersion`` monotonically increasing version of the artifact
- ``generation``    NdbCluster generation the artifact was generated for

Workloads are always built from the *snapshot*, never from the live spec,
so a newer spec can never be partially overlaid on a rollout in progress.
The marker survives controller restarts.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from ndb_operator.models import NdbCluster, NdbClusterSpec, NodeType

CONFIG_INI_KEY = "config.ini"
MY_CNF_KEY = "my.cnf"
SPEC_KEY = "spec.json"
CONFIG_VERSION_KEY = "configVersion"
GENERATION_KEY = "generation"

DATA_DIR = "/var/lib/ndb"


class ConfigError(Exception):
    """Raised when the config artifact is missing keys or unreadable."""


@dataclass(frozen=True)
class ConfigSummary:
    """What the last-written config artifact says the cluster should be."""

    config_version: int
    generation: int
    spec: NdbClusterSpec

    def snapshot(self, nc: NdbCluster) -> NdbCluster:
        """Return a copy of *nc* whose spec is the one the artifact was written for."""
        return nc.model_copy(update={"spec": self.spec.model_copy(deep=True)}, deep=True)


def _host(nc: NdbCluster, node_type: NodeType, index: int) -> str:
    svc = nc.workload_name(node_type)
    return f"{svc}-{index}.{svc}.{nc.metadata.namespace}.svc.cluster.local"


def generate_config_ini(nc: NdbCluster, config_version: int) -> str:
    """Render config.ini for the cluster's current spec."""
    lines = [
        "# Auto generated config.ini - DO NOT EDIT",
        "",
        "[system]",
        f"ConfigGenerationNumber={config_version}",
        f"Name={nc.metadata.name}",
        "",
        "[ndbd default]",
        f"NoOfReplicas={nc.spec.redundancy_level}",
        f"DataDir={DATA_DIR}/data",
    ]
    for key, value in sorted(nc.spec.data_node.config.items()):
        lines.append(f"{key}={value}")

    node_id = 1
    for i in range(nc.management_node_count()):
        lines += [
            "",
            "[ndb_mgmd]",
            f"NodeId={node_id}",
            f"Hostname={_host(nc, NodeType.MGMD, i)}",
            f"DataDir={DATA_DIR}/mgmd",
        ]
        node_id += 1

    for i in range(nc.data_node_count()):
        lines += [
            "",
            "[ndbd]",
            f"NodeId={node_id}",
            f"Hostname={_host(nc, NodeType.NDBD, i)}",
        ]
        node_id += 1

    # One [api] slot per possible MySQL Server, plus slots for the operator.
    for _ in range(nc.mysqld_max_node_count() + 1):
        lines += ["", "[api]", f"NodeId={node_id}"]
        node_id += 1

    return "\n".join(lines) + "\n"


def new_config_data(nc: NdbCluster, config_version: int) -> dict[str, str]:
    """Build the ConfigMap ``data`` for *nc* at *config_version*."""
    return {
        CONFIG_INI_KEY: generate_config_ini(nc, config_version),
        MY_CNF_KEY: nc.my_cnf(),
        SPEC_KEY: json.dumps(nc.spec.to_api(), sort_keys=True),
        CONFIG_VERSION_KEY: str(config_version),
        GENERATION_KEY: str(nc.metadata.generation),
    }


def parse_config_map(config_map: dict[str, Any]) -> ConfigSummary:
    """Read the version marker and spec snapshot out of a config ConfigMap."""
    data = config_map.get("data") or {}
    try:
        return ConfigSummary(
            config_version=int(data[CONFIG_VERSION_KEY]),
            generation=int(data[GENERATION_KEY]),
            spec=NdbClusterSpec.model_validate(json.loads(data[SPEC_KEY])),
        )
    except (KeyError, TypeError, ValueError) as exc:
        name = (config_map.get("metadata") or {}).get("name", "")
        raise ConfigError(f"ConfigMap {name!r} has no usable config: {exc}") from exc
