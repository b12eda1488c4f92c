"""Tests for the event router's enqueue rules."""

from __future__ import annotations

import threading

import pytest

from ndb_operator.events.router import ClusterEvent, EventRouter, WorkloadEvent
from ndb_operator.models import CLUSTER_LABEL, EventType
from ndb_operator.workqueue import WorkQueue


def _cluster(generation: int = 1, rv: str = "10", processed: int = 1) -> dict:
    return {
        "metadata": {"namespace": "ns", "name": "ex", "generation": generation, "resourceVersion": rv},
        "status": {"processedGeneration": processed},
    }


def _sts(ready: int, replicas: int = 2, owner: str | None = "ex", rv: str = "5") -> dict:
    labels = {CLUSTER_LABEL: owner} if owner else {}
    return {
        "metadata": {
            "namespace": "ns", "name": "ex-ndbd", "labels": labels,
            "generation": 1, "resourceVersion": rv,
        },
        "spec": {"replicas": replicas},
        "status": {
            "observedGeneration": 1, "replicas": replicas,
            "updatedReplicas": replicas, "readyReplicas": ready,
        },
    }


@pytest.fixture
def queue():
    return WorkQueue(name="router-test")


@pytest.fixture
def router(queue):
    return EventRouter(queue)


class TestClusterEvents:
    def test_added_enqueues(self, router, queue):
        assert router.route(ClusterEvent(EventType.ADDED, _cluster())) == "ns/ex"
        assert len(queue) == 1

    def test_generation_change_enqueues(self, router):
        event = ClusterEvent(EventType.MODIFIED, _cluster(generation=2, rv="11"), _cluster(generation=1, rv="10"))
        assert router.route(event) == "ns/ex"

    def test_status_only_write_skipped(self, router, queue):
        old = _cluster(generation=2, rv="10", processed=1)
        new = _cluster(generation=2, rv="11", processed=2)
        assert router.route(ClusterEvent(EventType.MODIFIED, new, old)) is None
        assert len(queue) == 0

    def test_resync_enqueues_outstanding_work(self, router):
        obj = _cluster(generation=3, processed=2)
        assert router.route(ClusterEvent(EventType.MODIFIED, obj, obj)) == "ns/ex"

    def test_resync_skips_reconciled(self, router, queue):
        obj = _cluster(generation=3, processed=3)
        assert router.route(ClusterEvent(EventType.MODIFIED, obj, obj)) is None
        assert len(queue) == 0

    def test_delete_does_not_enqueue(self, router, queue):
        assert router.route(ClusterEvent(EventType.DELETED, _cluster())) is None
        assert len(queue) == 0


class TestWorkloadEvents:
    def test_became_ready_enqueues_owner(self, router):
        event = WorkloadEvent(EventType.MODIFIED, "StatefulSet", _sts(ready=2, rv="6"), _sts(ready=1))
        assert router.route(event) == "ns/ex"

    def test_progress_while_unready_skipped(self, router):
        event = WorkloadEvent(EventType.MODIFIED, "StatefulSet", _sts(ready=1, replicas=3, rv="6"), _sts(ready=0, replicas=3))
        assert router.route(event) is None

    def test_stays_ready_skipped(self, router):
        event = WorkloadEvent(EventType.MODIFIED, "StatefulSet", _sts(ready=2, rv="6"), _sts(ready=2))
        assert router.route(event) is None

    def test_became_unready_skipped(self, router):
        event = WorkloadEvent(EventType.MODIFIED, "StatefulSet", _sts(ready=1, rv="6"), _sts(ready=2))
        assert router.route(event) is None

    def test_delete_always_enqueues(self, router):
        event = WorkloadEvent(EventType.DELETED, "Service", {"metadata": {
            "namespace": "ns", "name": "ex-mgmd", "labels": {CLUSTER_LABEL: "ex"},
        }})
        assert router.route(event) == "ns/ex"

    def test_added_ignored(self, router):
        assert router.route(WorkloadEvent(EventType.ADDED, "StatefulSet", _sts(ready=2))) is None

    def test_unowned_objects_ignored(self, router):
        event = WorkloadEvent(EventType.DELETED, "StatefulSet", _sts(ready=0, owner=None))
        assert router.route(event) is None

    def test_unknown_kind_ignored(self, router):
        event = WorkloadEvent(EventType.MODIFIED, "Job", _sts(ready=2, rv="6"), _sts(ready=1))
        assert router.route(event) is None

    def test_deployment_rollout_complete(self, router):
        def deploy(available: int) -> dict:
            obj = _sts(ready=2)
            obj["status"]["availableReplicas"] = available
            return obj

        event = WorkloadEvent(EventType.MODIFIED, "Deployment", deploy(2), deploy(1))
        assert router.route(event) == "ns/ex"


class TestRun:
    def test_run_routes_submitted_events_until_stopped(self, router, queue):
        t = threading.Thread(target=router.run)
        t.start()
        router.submit(ClusterEvent(EventType.ADDED, _cluster()))
        router.stop()
        t.join(timeout=5)
        assert not t.is_alive()
        assert queue.get() == ("ns/ex", False)

    def test_run_survives_bad_event(self, router, queue):
        t = threading.Thread(target=router.run)
        t.start()
        router.submit(ClusterEvent(EventType.MODIFIED, {"metadata": {"generation": "x"}, "status": []}, {}))
        router.submit(ClusterEvent(EventType.ADDED, _cluster()))
        router.stop()
        t.join(timeout=5)
        assert queue.get() == ("ns/ex", False)
