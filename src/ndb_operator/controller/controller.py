"""Controller — worker pool draining the work queue.

Each worker loops:

1. ``get()`` a key (blocks; returns shutdown once the queue is closed)
2. ``sync_handler(key)`` runs one pass against a fresh read of the NdbCluster
3. the result decides the key's fate:

   - skip      -> forget
   - error     -> add_rate_limited (exponential backoff)
   - complete  -> forget
   - requeue   -> forget, then add_after(requeue_after)

4. ``done(key)`` releases it for the next worker

The queue guarantees a key is never in two passes at once.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Sequence
from datetime import datetime

from ndb_operator.config import OperatorConfig
from ndb_operator.controller.result import SyncOutcome, SyncResult
from ndb_operator.controller.sync import SyncContext
from ndb_operator.events.informer import Informer
from ndb_operator.events.router import EventRouter
from ndb_operator.kube.client import KubeAPI, KubeAPIError, KubeClient, NotFoundError
from ndb_operator.kube.recorder import EventRecorder
from ndb_operator.models import CLUSTER_LABEL, KIND, NdbCluster, WorkloadKind, split_key
from ndb_operator.workqueue import WorkQueue, default_controller_rate_limiter

logger = logging.getLogger(__name__)

# Owned kinds the operator watches for readiness transitions and deletions.
WATCHED_KINDS: tuple[str, ...] = (
    WorkloadKind.STATEFULSET,
    WorkloadKind.DEPLOYMENT,
    WorkloadKind.PDB,
    WorkloadKind.CONFIGMAP,
    WorkloadKind.SERVICE,
)


class ControllerError(Exception):
    """Raised when the controller cannot start."""


class Controller:
    """Reconciles NdbCluster keys taken from the work queue."""

    def __init__(
        self,
        api: KubeAPI,
        work_queue: WorkQueue,
        recorder: EventRecorder | None = None,
        poll_interval: float = 5.0,
        _now: Callable[[], datetime] | None = None,
    ) -> None:
        self.api = api
        self.queue = work_queue
        self.recorder = recorder
        self.poll_interval = poll_interval
        self._now = _now

    def sync_handler(self, key: str) -> SyncResult:
        """Run one reconciliation pass for *key*."""
        try:
            namespace, name = split_key(key)
        except ValueError as exc:
            logger.error("Dropping malformed key: %s", exc)
            return SyncResult.skip(str(exc))

        try:
            raw = self.api.get(KIND, namespace, name)
        except NotFoundError:
            logger.info("NdbCluster %s no longer exists", key)
            return SyncResult.skip(f"NdbCluster {key} no longer exists")
        except KubeAPIError as exc:
            return SyncResult.failed(exc)

        nc = NdbCluster.model_validate(raw)
        ctx = SyncContext(
            self.api, nc,
            recorder=self.recorder,
            poll_interval=self.poll_interval,
            _now=self._now,
        )
        return ctx.sync()

    def process_next_work_item(self) -> bool:
        """Handle one key. Returns False once the queue has shut down."""
        key, shutdown = self.queue.get()
        if shutdown or key is None:
            return False

        try:
            try:
                result = self.sync_handler(key)
            except Exception as exc:
                logger.exception("Unexpected error syncing %s", key)
                result = SyncResult.failed(exc)
            self._handle_result(key, result)
        finally:
            self.queue.done(key)
        return True

    def run_worker(self) -> None:
        while self.process_next_work_item():
            pass

    def run(
        self,
        workers: int,
        stop_event: threading.Event,
        informers: Sequence[Informer] = (),
        router: EventRouter | None = None,
        sync_timeout: float | None = None,
    ) -> None:
        """Start informers, router and *workers* threads; block until *stop_event*."""
        if router is not None:
            threading.Thread(target=router.run, args=(stop_event,), name="event-router", daemon=True).start()
        for informer in informers:
            threading.Thread(
                target=informer.run, args=(stop_event,), name=f"informer-{informer.kind}", daemon=True,
            ).start()

        try:
            self._wait_for_sync(informers, stop_event, sync_timeout)
        except ControllerError:
            self._shut_down(informers, router)
            raise

        logger.info("Starting %d workers", workers)
        threads = [
            threading.Thread(target=self.run_worker, name=f"worker-{i}", daemon=True)
            for i in range(workers)
        ]
        for thread in threads:
            thread.start()

        stop_event.wait()
        logger.info("Shutting down controller")
        self._shut_down(informers, router)
        for thread in threads:
            thread.join()
        logger.info("Controller stopped")

    # --- Private ---

    def _handle_result(self, key: str, result: SyncResult) -> None:
        if result.outcome == SyncOutcome.ERROR:
            logger.warning(
                "Error syncing %s (retry %d): %s", key, self.queue.num_requeues(key), result.message,
            )
            self.queue.add_rate_limited(key)
            return

        self.queue.forget(key)
        if result.outcome == SyncOutcome.REQUEUE:
            logger.debug("Requeue %s in %.1fs: %s", key, result.requeue_after, result.message)
            self.queue.add_after(key, result.requeue_after)
        elif result.outcome == SyncOutcome.SKIP:
            logger.debug("Skipped %s: %s", key, result.message)
        else:
            logger.info("Successfully synced %s", key)

    def _wait_for_sync(
        self, informers: Sequence[Informer], stop_event: threading.Event, timeout: float | None,
    ) -> None:
        waited = 0.0
        for informer in informers:
            while not informer.wait_for_sync(0.5):
                waited += 0.5
                if stop_event.is_set():
                    raise ControllerError("stopped before informer caches synced")
                if timeout is not None and waited >= timeout:
                    raise ControllerError(f"timed out waiting for {informer.kind} cache to sync")
        logger.info("Informer caches synced")

    def _shut_down(self, informers: Sequence[Informer], router: EventRouter | None) -> None:
        for informer in informers:
            informer.stop()
        if router is not None:
            router.stop()
        self.queue.shut_down()


def new_controller(
    cfg: OperatorConfig, client: KubeClient | None = None,
) -> tuple[Controller, list[Informer], EventRouter]:
    """Wire a controller, its informers and the event router from *cfg*."""
    client = client or KubeClient(
        kubeconfig=cfg.kubeconfig, context=cfg.context, in_cluster=cfg.in_cluster,
    )
    work_queue = WorkQueue(
        rate_limiter=default_controller_rate_limiter(cfg.backoff_config()),
        name="ndbclusters",
    )
    router = EventRouter(work_queue)
    informers = [
        Informer(
            client, KIND, router.submit,
            namespace=cfg.namespace,
            resync_period=cfg.resync_period_seconds,
        ),
    ]
    informers += [
        Informer(client, kind, router.submit, namespace=cfg.namespace, label_selector=CLUSTER_LABEL)
        for kind in WATCHED_KINDS
    ]
    controller = Controller(
        client, work_queue,
        recorder=EventRecorder(client),
        poll_interval=cfg.poll_interval_seconds,
    )
    return controller, informers, router
