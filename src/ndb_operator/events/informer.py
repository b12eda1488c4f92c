"""Informers — list-then-watch one kind and feed the event router.

Each informer runs in its own thread:

1. Lists the kind and records the list's resourceVersion.
2. Diffs the list against its local cache and emits ADDED / MODIFIED /
   DELETED for every difference (all ADDED on the first list).
3. Marks itself synced, then streams a watch from that resourceVersion.
4. On ``410 Gone`` (the server compacted past our version) re-lists and
   resumes; other failures back off exponentially up to 30s.

The cache exists so MODIFIED events can carry the previous object, which
the router needs for its edge-triggered rules.  When ``resync_period`` is
set, every cached object is periodically re-emitted as MODIFIED with
``old is new``.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import Any

from kubernetes import watch
from kubernetes.client.exceptions import ApiException

from ndb_operator.events.router import ClusterEvent, Event, WorkloadEvent
from ndb_operator.kube.client import KubeAPIError, KubeClient
from ndb_operator.models import KIND, EventType, cluster_key

logger = logging.getLogger(__name__)

_MAX_BACKOFF_SECONDS = 30.0


class ResourceExpiredError(Exception):
    """The watch's resourceVersion is too old; a re-list is required."""


class Informer:
    """Cached list/watch of one kind, emitting typed events to *sink*."""

    def __init__(
        self,
        client: KubeClient,
        kind: str,
        sink: Callable[[Event], None],
        namespace: str = "",
        label_selector: str = "",
        resync_period: float = 0.0,
        watch_timeout: int = 300,
        _clock: Callable[[], float] | None = None,
    ) -> None:
        self._client = client
        self._kind = kind
        self._sink = sink
        self._namespace = namespace
        self._label_selector = label_selector
        self._resync_period = resync_period
        self._watch_timeout = watch_timeout
        self._clock = _clock or time.monotonic

        self._lock = threading.Lock()
        self._cache: dict[str, dict[str, Any]] = {}
        self._synced = threading.Event()
        self._stop = threading.Event()
        self._watcher: watch.Watch | None = None
        self._resource_version = ""
        self._last_resync = 0.0

    @property
    def kind(self) -> str:
        return self._kind

    def has_synced(self) -> bool:
        return self._synced.is_set()

    def wait_for_sync(self, timeout: float | None = None) -> bool:
        return self._synced.wait(timeout)

    def get(self, key: str) -> dict[str, Any] | None:
        with self._lock:
            return self._cache.get(key)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._cache)

    def stop(self) -> None:
        """Request a stop and interrupt any open watch stream."""
        self._stop.set()
        watcher = self._watcher
        if watcher is not None:
            watcher.stop()

    def run(self, stop_event: threading.Event | None = None) -> None:
        """List and watch until stopped."""
        logger.info("Starting %s informer", self._kind)
        backoff = 1.0
        need_list = True
        while not self._should_stop(stop_event):
            try:
                if need_list:
                    self.relist()
                    need_list = False
                self._watch_once(stop_event)
                self.resync_if_due()
                backoff = 1.0
            except ResourceExpiredError:
                logger.warning("%s watch expired at %s, re-listing", self._kind, self._resource_version)
                need_list = True
            except (ApiException, KubeAPIError) as exc:
                logger.warning("%s list/watch failed: %s; retrying in %.0fs", self._kind, exc, backoff)
                self._wait(stop_event, backoff)
                backoff = min(backoff * 2, _MAX_BACKOFF_SECONDS)
            except Exception:
                logger.exception("Unexpected %s watch error", self._kind)
                self._wait(stop_event, backoff)
                backoff = min(backoff * 2, _MAX_BACKOFF_SECONDS)
        logger.info("Stopped %s informer", self._kind)

    def relist(self) -> None:
        """List the kind and reconcile the cache against the result."""
        items, resource_version = self._client.list(
            self._kind, self._namespace, self._label_selector,
        )
        fresh = {cluster_key(item): item for item in items}
        with self._lock:
            previous = self._cache
            self._cache = fresh
            self._resource_version = resource_version

        for key, obj in fresh.items():
            old = previous.get(key)
            if old is None:
                self._emit(EventType.ADDED, obj)
            elif _resource_version(old) != _resource_version(obj):
                self._emit(EventType.MODIFIED, obj, old)
        for key, old in previous.items():
            if key not in fresh:
                self._emit(EventType.DELETED, old)

        self._last_resync = self._clock()
        if not self._synced.is_set():
            logger.info("%s informer synced (%d objects)", self._kind, len(fresh))
            self._synced.set()

    def handle(self, event_type: str, obj: dict[str, Any]) -> None:
        """Apply one watch event to the cache and emit it."""
        key = cluster_key(obj)
        with self._lock:
            if _resource_version(obj):
                self._resource_version = _resource_version(obj)
            if event_type == EventType.DELETED:
                old = self._cache.pop(key, None)
            else:
                old = self._cache.get(key)
                self._cache[key] = obj

        if event_type == EventType.DELETED:
            self._emit(EventType.DELETED, obj)
        elif old is None:
            self._emit(EventType.ADDED, obj)
        else:
            self._emit(EventType.MODIFIED, obj, old)

    def resync_if_due(self) -> bool:
        """Re-emit every cached object once the resync period has elapsed."""
        if self._resync_period <= 0:
            return False
        if self._clock() - self._last_resync < self._resync_period:
            return False
        self._last_resync = self._clock()
        with self._lock:
            objects = list(self._cache.values())
        logger.debug("Resyncing %d %s objects", len(objects), self._kind)
        for obj in objects:
            self._emit(EventType.MODIFIED, obj, obj)
        return True

    # --- Private ---

    def _watch_once(self, stop_event: threading.Event | None) -> None:
        method, kwargs = self._client.list_function(self._kind, self._namespace)
        if self._label_selector:
            kwargs["label_selector"] = self._label_selector
        timeout = self._watch_timeout
        if self._resync_period > 0:
            timeout = max(1, min(timeout, int(self._resync_period)))

        watcher = watch.Watch()
        self._watcher = watcher
        try:
            for event in watcher.stream(
                method,
                resource_version=self._resource_version,
                timeout_seconds=timeout,
                **kwargs,
            ):
                if self._should_stop(stop_event):
                    break
                obj = event.get("raw_object")
                if not isinstance(obj, dict):
                    obj = event.get("object")
                event_type = str(event.get("type", ""))
                if event_type == "ERROR":
                    if isinstance(obj, dict) and obj.get("code") == 410:
                        raise ResourceExpiredError(obj.get("message", ""))
                    logger.warning("%s watch error event: %s", self._kind, obj)
                    continue
                if event_type not in (EventType.ADDED, EventType.MODIFIED, EventType.DELETED):
                    continue
                self.handle(event_type, obj)
                self.resync_if_due()
        except ApiException as exc:
            if exc.status == 410:
                raise ResourceExpiredError(str(exc.reason)) from exc
            raise
        finally:
            watcher.stop()
            self._watcher = None

    def _emit(self, event_type: EventType, obj: dict[str, Any], old: dict[str, Any] | None = None) -> None:
        if self._kind == KIND:
            self._sink(ClusterEvent(type=event_type, obj=obj, old=old))
        else:
            self._sink(WorkloadEvent(type=event_type, kind=self._kind, obj=obj, old=old))

    def _should_stop(self, stop_event: threading.Event | None) -> bool:
        return self._stop.is_set() or (stop_event is not None and stop_event.is_set())

    def _wait(self, stop_event: threading.Event | None, seconds: float) -> None:
        (stop_event or self._stop).wait(timeout=seconds)


def _resource_version(obj: dict[str, Any]) -> str:
    return (obj.get("metadata") or {}).get("resourceVersion", "")
