"""NDB Operator: reconciles NdbCluster resources into running MySQL Cluster workloads."""

__version__ = "0.1.0"

from ndb_operator.config import OperatorConfig, find_config, load_config
from ndb_operator.models import (
    AdmissionDecision,
    JSONPatchOperation,
    NdbCluster,
    NdbClusterSpec,
    NdbClusterStatus,
    NodeType,
    cluster_key,
    split_key,
)

__all__ = [
    "AdmissionDecision",
    "JSONPatchOperation",
    "NdbCluster",
    "NdbClusterSpec",
    "NdbClusterStatus",
    "NodeType",
    "OperatorConfig",
    "__version__",
    "cluster_key",
    "find_config",
    "load_config",
    "split_key",
]
