"""Structural and semantic validation of NdbCluster specs.

Every check returns a list of human-readable error strings (empty means
valid) rather than raising, so the admission controller can report all
problems in a single response.
"""

from __future__ import annotations

from ndb_operator.models import (
    MAX_DATA_NODES,
    MAX_MANAGEMENT_NODES,
    MAX_NODE_SLOTS,
    MAX_REDUNDANCY_LEVEL,
    NdbCluster,
)


def spec_errors(nc: NdbCluster) -> list[str]:
    """Validate a spec in isolation."""
    errors: list[str] = []
    spec = nc.spec

    redundancy = spec.redundancy_level
    if not 1 <= redundancy <= MAX_REDUNDANCY_LEVEL:
        errors.append(
            f"spec.redundancyLevel: must be between 1 and {MAX_REDUNDANCY_LEVEL}, "
            f"got {redundancy}"
        )

    data_nodes = spec.data_node.node_count
    if not 1 <= data_nodes <= MAX_DATA_NODES:
        errors.append(
            f"spec.dataNode.nodeCount: must be between 1 and {MAX_DATA_NODES}, "
            f"got {data_nodes}"
        )
    elif 1 <= redundancy <= MAX_REDUNDANCY_LEVEL and data_nodes % redundancy != 0:
        errors.append(
            f"spec.dataNode.nodeCount: {data_nodes} is not a multiple of "
            f"spec.redundancyLevel {redundancy}"
        )

    mgmd = nc.management_node_count()
    if not 1 <= mgmd <= MAX_MANAGEMENT_NODES:
        errors.append(
            f"spec.managementNode.nodeCount: must be between 1 and "
            f"{MAX_MANAGEMENT_NODES}, got {mgmd}"
        )
    elif redundancy == 1 and mgmd > 1:
        errors.append(
            "spec.managementNode.nodeCount: a cluster with redundancyLevel 1 "
            "supports only one management node"
        )

    mysqld = spec.mysqld
    if mysqld is not None:
        if mysqld.node_count < 0:
            errors.append(
                f"spec.mysqld.nodeCount: must not be negative, got {mysqld.node_count}"
            )
        if mysqld.max_node_count is not None and mysqld.max_node_count < mysqld.node_count:
            errors.append(
                f"spec.mysqld.maxNodeCount: {mysqld.max_node_count} is less than "
                f"spec.mysqld.nodeCount {mysqld.node_count}"
            )

    total = mgmd + data_nodes + nc.mysqld_max_node_count()
    if total > MAX_NODE_SLOTS:
        errors.append(
            f"spec: total number of node slots ({total}) exceeds the "
            f"maximum of {MAX_NODE_SLOTS}"
        )

    for key, value in spec.data_node.config.items():
        if not key or any(c in key for c in "[]=\n\r"):
            errors.append(f"spec.dataNode.config: invalid parameter name {key!r}")
        elif any(c in str(value) for c in "[]\n\r"):
            errors.append(f"spec.dataNode.config.{key}: invalid value {value!r}")

    return errors


def spec_update_errors(old: NdbCluster, new: NdbCluster) -> list[str]:
    """Validate *new* on its own and as a transition from *old*."""
    errors = spec_errors(new)

    if old.spec.redundancy_level != new.spec.redundancy_level:
        errors.append("spec.redundancyLevel: field is immutable")
    if old.data_node_count() != new.data_node_count():
        errors.append("spec.dataNode.nodeCount: field is immutable")
    if old.management_node_count() != new.management_node_count():
        errors.append("spec.managementNode.nodeCount: field is immutable")

    if old.spec.mysqld is not None:
        if new.spec.mysqld is None:
            errors.append("spec.mysqld: cannot be removed once set")
        elif new.mysqld_max_node_count() < old.mysqld_max_node_count():
            errors.append(
                f"spec.mysqld.maxNodeCount: cannot be reduced from "
                f"{old.mysqld_max_node_count()} to {new.mysqld_max_node_count()}"
            )

    return errors
