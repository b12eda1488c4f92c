"""Kubernetes Event recorder for NdbCluster resources.

Events are informational: a failure to record one is logged and never
fails the reconciliation pass that emitted it.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime

from ndb_operator.kube.client import KubeAPI, KubeAPIError
from ndb_operator.models import NdbCluster

logger = logging.getLogger(__name__)

EVENT_NORMAL = "Normal"
EVENT_WARNING = "Warning"

# Reasons
REASON_RESOURCES_CREATED = "ResourcesCreated"
REASON_IN_PROGRESS = "InProgress"
REASON_SYNC_SUCCESS = "SyncSuccess"
REASON_RECONCILE_ERROR = "ReconcileError"


class EventRecorder:
    """Posts core/v1 Events that reference an NdbCluster."""

    def __init__(
        self,
        api: KubeAPI,
        component: str = "ndb-controller",
        _now: Callable[[], datetime] | None = None,
    ) -> None:
        self._api = api
        self._component = component
        self._now = _now or (lambda: datetime.now(tz=UTC))

    def normal(self, nc: NdbCluster, reason: str, message: str) -> None:
        self.record(nc, EVENT_NORMAL, reason, message)

    def warning(self, nc: NdbCluster, reason: str, message: str) -> None:
        self.record(nc, EVENT_WARNING, reason, message)

    def record(self, nc: NdbCluster, event_type: str, reason: str, message: str) -> None:
        timestamp = self._now().strftime("%Y-%m-%dT%H:%M:%SZ")
        body = {
            "apiVersion": "v1",
            "kind": "Event",
            "metadata": {
                "name": f"{nc.metadata.name}.{uuid.uuid4().hex[:16]}",
                "namespace": nc.metadata.namespace,
            },
            "involvedObject": {
                "apiVersion": nc.api_version,
                "kind": nc.kind,
                "name": nc.metadata.name,
                "namespace": nc.metadata.namespace,
                "uid": nc.metadata.uid,
                "resourceVersion": nc.metadata.resource_version,
            },
            "type": event_type,
            "reason": reason,
            "message": message,
            "source": {"component": self._component},
            "firstTimestamp": timestamp,
            "lastTimestamp": timestamp,
            "count": 1,
        }
        try:
            self._api.create("Event", nc.metadata.namespace, body)
        except KubeAPIError as exc:
            logger.warning("Failed to record %s event for %s: %s", reason, nc.key, exc)
