"""Event router — turns watch events into work-queue keys.

Informers push typed events onto a channel; one router thread drains it
and decides which events owe a reconciliation:

NdbCluster
- ADDED: always enqueue
- MODIFIED, generation changed: enqueue
- MODIFIED, same generation but different resourceVersion: skip (our
  own status write, or a metadata-only change)
- periodic resync (old and new are the same version): enqueue only if
  ``generation != status.processedGeneration``
- DELETED: log only; owned objects are garbage-collected

Owned workloads (anything carrying the cluster label)
- MODIFIED: enqueue the owner only on a not-healthy -> healthy transition
- DELETED: always enqueue the owner so the object gets recreated
- ADDED: ignored; creation is driven by the sync engine itself
"""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from ndb_operator.models import CLUSTER_LABEL, EventType, NdbCluster, cluster_key
from ndb_operator.workloads.controls import CONTROLS_BY_KIND, WorkloadControl, is_healthy
from ndb_operator.workqueue import WorkQueue

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClusterEvent:
    """A change to an NdbCluster.  ``old`` is set for MODIFIED only."""

    type: EventType
    obj: dict[str, Any]
    old: dict[str, Any] | None = None


@dataclass(frozen=True)
class WorkloadEvent:
    """A change to an object that may be owned by an NdbCluster."""

    type: EventType
    kind: str
    obj: dict[str, Any]
    old: dict[str, Any] | None = None


Event = ClusterEvent | WorkloadEvent

_STOP = object()


def _meta(obj: dict[str, Any]) -> dict[str, Any]:
    return obj.get("metadata") or {}


class EventRouter:
    """Single consumer of the event channel; sole producer of event-driven keys."""

    def __init__(
        self,
        work_queue: WorkQueue,
        controls: Mapping[str, WorkloadControl] | None = None,
    ) -> None:
        self._queue = work_queue
        self._controls = dict(controls if controls is not None else CONTROLS_BY_KIND)
        self._events: queue.Queue[Any] = queue.Queue()

    def submit(self, event: Event) -> None:
        """Hand an event to the router.  Safe to call from any thread."""
        self._events.put(event)

    def stop(self) -> None:
        self._events.put(_STOP)

    def run(self, stop_event: threading.Event | None = None) -> None:
        """Drain the channel until ``stop()`` is called or *stop_event* is set."""
        logger.info("Event router started")
        while stop_event is None or not stop_event.is_set():
            try:
                event = self._events.get(timeout=0.5)
            except queue.Empty:
                continue
            if event is _STOP:
                break
            try:
                self.route(event)
            except Exception:
                logger.exception("Failed to route %s event", getattr(event, "type", "?"))
        logger.info("Event router stopped")

    def route(self, event: Event) -> str | None:
        """Apply the routing rules; return the key enqueued, if any."""
        if isinstance(event, ClusterEvent):
            return self._route_cluster(event)
        return self._route_workload(event)

    # --- Private ---

    def _enqueue(self, key: str, why: str) -> str:
        logger.debug("Enqueue %s: %s", key, why)
        self._queue.add(key)
        return key

    def _route_cluster(self, event: ClusterEvent) -> str | None:
        key = cluster_key(event.obj)
        if event.type == EventType.ADDED:
            return self._enqueue(key, "NdbCluster added")

        if event.type == EventType.DELETED:
            logger.info("NdbCluster %s deleted", key)
            return None

        new = _meta(event.obj)
        old = _meta(event.old or event.obj)
        if old.get("resourceVersion") == new.get("resourceVersion"):
            # Periodic resync: only pick up clusters still owing a pass.
            nc = NdbCluster.model_validate(event.obj)
            if not nc.reconciled:
                return self._enqueue(key, "resync found unprocessed generation")
            return None

        if old.get("generation") != new.get("generation"):
            return self._enqueue(key, "spec changed")

        logger.debug("Skip %s: no spec change", key)
        return None

    def _route_workload(self, event: WorkloadEvent) -> str | None:
        meta = _meta(event.obj)
        owner = (meta.get("labels") or {}).get(CLUSTER_LABEL)
        if not owner:
            return None
        key = f"{meta.get('namespace', '')}/{owner}"

        if event.type == EventType.DELETED:
            return self._enqueue(key, f"{event.kind} {meta.get('name')} deleted")

        if event.type != EventType.MODIFIED or event.old is None:
            return None

        control = self._controls.get(event.kind)
        if control is None:
            return None
        if not is_healthy(control, event.old) and is_healthy(control, event.obj):
            return self._enqueue(key, f"{event.kind} {meta.get('name')} became ready")
        return None
