"""In-memory stand-ins for the API server, shared by the sync tests.

``FakeKubeAPI`` implements the ``KubeAPI`` protocol over a dict and
emulates the server behaviour the sync engine relies on:

- every write bumps a cluster-wide ``resourceVersion``
- a write that changes ``spec`` bumps ``metadata.generation``
- status writes never bump ``generation``
- JSON patch ``test`` ops are enforced (mismatch -> 422, like the server)
- workloads are created without status; tests mark them ready explicitly
"""

from __future__ import annotations

import copy
import itertools
from typing import Any

from ndb_operator.kube.client import ConflictError, KubeAPIError, NotFoundError
from ndb_operator.models import KIND

_NO_GENERATION = {"ConfigMap", "Secret", "Service", "Event"}


class MockClock:
    """A controllable clock for testing time-dependent behavior."""

    def __init__(self, start: float = 1000.0) -> None:
        self._now = start

    def __call__(self) -> float:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now += seconds


def _pointer(path: str) -> list[str]:
    return [p.replace("~1", "/").replace("~0", "~") for p in path.lstrip("/").split("/")]


def apply_json_patch(doc: dict[str, Any], ops: list[dict[str, Any]]) -> dict[str, Any]:
    """Apply RFC 6902 add/replace/test ops to a copy of *doc*."""
    doc = copy.deepcopy(doc)
    for op in ops:
        parts = _pointer(op["path"])
        parent: Any = doc
        for part in parts[:-1]:
            parent = parent[int(part)] if isinstance(parent, list) else parent.setdefault(part, {})
        last = parts[-1]
        if op["op"] == "test":
            current = parent.get(last) if isinstance(parent, dict) else parent[int(last)]
            if current != op["value"]:
                raise KubeAPIError(f"test operation failed at {op['path']}", 422)
        elif op["op"] in ("add", "replace"):
            if op["op"] == "replace" and last not in parent:
                raise KubeAPIError(f"replace of missing path {op['path']}", 422)
            parent[last] = copy.deepcopy(op["value"])
        else:
            raise KubeAPIError(f"unsupported op {op['op']}", 422)
    return doc


class FakeKubeAPI:
    """Dict-backed KubeAPI."""

    def __init__(self) -> None:
        self.objects: dict[tuple[str, str, str], dict[str, Any]] = {}
        self.calls: list[tuple[str, str, str]] = []
        self._rv = itertools.count(1)
        self._uid = itertools.count(1)

    # --- KubeAPI ---

    def get(self, kind: str, namespace: str, name: str) -> dict[str, Any]:
        self.calls.append(("get", str(kind), name))
        try:
            return copy.deepcopy(self.objects[(str(kind), namespace, name)])
        except KeyError:
            raise NotFoundError(f"get {kind} {name!r} failed (404): Not Found", 404) from None

    def create(self, kind: str, namespace: str, body: dict[str, Any]) -> dict[str, Any]:
        obj = copy.deepcopy(body)
        meta = obj.setdefault("metadata", {})
        key = (str(kind), namespace, meta["name"])
        self.calls.append(("create", str(kind), meta["name"]))
        if key in self.objects:
            raise ConflictError(f"create {kind} {meta['name']!r} failed (409): AlreadyExists", 409)
        meta["namespace"] = namespace
        meta["uid"] = f"uid-{next(self._uid)}"
        meta["resourceVersion"] = str(next(self._rv))
        if str(kind) not in _NO_GENERATION:
            meta["generation"] = 1
        if "stringData" in obj:
            obj["data"] = obj.pop("stringData")
        self.objects[key] = obj
        return copy.deepcopy(obj)

    def patch(
        self, kind: str, namespace: str, name: str, ops: list[dict[str, Any]],
    ) -> dict[str, Any]:
        self.calls.append(("patch", str(kind), name))
        current = self.get(kind, namespace, name)
        updated = apply_json_patch(current, ops)
        return self._store(str(kind), namespace, name, current, updated, status_only=False)

    def patch_status(
        self, namespace: str, name: str, ops: list[dict[str, Any]],
    ) -> dict[str, Any]:
        self.calls.append(("patch_status", KIND, name))
        current = self.get(KIND, namespace, name)
        patched = apply_json_patch(current, ops)
        # The status subresource ignores everything but status.
        updated = copy.deepcopy(current)
        updated["status"] = patched.get("status", {})
        return self._store(KIND, namespace, name, current, updated, status_only=True)

    def delete(self, kind: str, namespace: str, name: str) -> None:
        self.calls.append(("delete", str(kind), name))
        if self.objects.pop((str(kind), namespace, name), None) is None:
            raise NotFoundError(f"delete {kind} {name!r} failed (404): Not Found", 404)

    # --- Test helpers ---

    def find(self, kind: str, namespace: str = "default", name: str = "") -> dict[str, Any] | None:
        return self.objects.get((kind, namespace, name))

    def of_kind(self, kind: str) -> list[dict[str, Any]]:
        return [obj for (k, _, _), obj in self.objects.items() if k == kind]

    def put_cluster(self, body: dict[str, Any]) -> dict[str, Any]:
        """Create an NdbCluster the way a kubectl apply would."""
        meta = body.get("metadata") or {}
        return self.create(KIND, meta.get("namespace", "default"), body)

    def update_spec(self, namespace: str, name: str, spec: dict[str, Any]) -> dict[str, Any]:
        return self.patch(KIND, namespace, name, [{"op": "replace", "path": "/spec", "value": spec}])

    def mark_ready(self, kind: str, namespace: str, name: str) -> None:
        """Report a workload as fully rolled out at its current generation."""
        obj = self.objects[(kind, namespace, name)]
        generation = obj["metadata"].get("generation", 1)
        replicas = (obj.get("spec") or {}).get("replicas", 1)
        if kind == "PodDisruptionBudget":
            obj["status"] = {"observedGeneration": generation, "currentHealthy": 1, "desiredHealthy": 1}
        else:
            obj["status"] = {
                "observedGeneration": generation,
                "replicas": replicas,
                "updatedReplicas": replicas,
                "readyReplicas": replicas,
                "availableReplicas": replicas,
            }
        obj["metadata"]["resourceVersion"] = str(next(self._rv))

    def mark_all_ready(self, namespace: str = "default") -> None:
        for kind in ("StatefulSet", "Deployment", "PodDisruptionBudget"):
            for (k, ns, name) in list(self.objects):
                if k == kind and ns == namespace:
                    self.mark_ready(kind, ns, name)

    def mark_unready(self, kind: str, namespace: str, name: str) -> None:
        obj = self.objects[(kind, namespace, name)]
        obj.setdefault("status", {})["readyReplicas"] = 0
        obj["metadata"]["resourceVersion"] = str(next(self._rv))

    # --- Private ---

    def _store(
        self,
        kind: str,
        namespace: str,
        name: str,
        current: dict[str, Any],
        updated: dict[str, Any],
        status_only: bool,
    ) -> dict[str, Any]:
        meta = updated.setdefault("metadata", {})
        if not status_only and kind not in _NO_GENERATION and current.get("spec") != updated.get("spec"):
            meta["generation"] = current["metadata"].get("generation", 1) + 1
        meta["resourceVersion"] = str(next(self._rv))
        self.objects[(kind, namespace, name)] = updated
        return copy.deepcopy(updated)


def ndb_cluster(
    name: str = "example",
    namespace: str = "default",
    mysqld: dict[str, Any] | None = None,
    **spec: Any,
) -> dict[str, Any]:
    """Raw NdbCluster manifest with sensible defaults."""
    body: dict[str, Any] = {
        "apiVersion": "mysql.oracle.com/v1alpha1",
        "kind": "NdbCluster",
        "metadata": {"name": name, "namespace": namespace},
        "spec": {"redundancyLevel": 2, "dataNode": {"nodeCount": 2}, **spec},
    }
    if mysqld is not None:
        body["spec"]["mysqld"] = mysqld
    return body
