"""KubeClient — generic CRUD over the kinds the operator manages.

Uses the official ``kubernetes`` Python client.  Every kind is described by
a ``KindMapping`` in ``KIND_API_MAP`` so callers address objects by
(kind, namespace, name) and never switch on concrete API classes.

Objects cross this boundary as plain JSON dicts (camelCase, exactly what
the API server returns).  Updates are RFC 6902 JSON patches; prefixing a
patch with ``resource_version_guard()`` makes it an optimistic-concurrency
write that the server rejects if the object changed since it was read.

ApiException is translated at this boundary:
- 404 -> NotFoundError
- 409 -> ConflictError
- anything else -> KubeAPIError
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from kubernetes import client, config
from kubernetes.client.exceptions import ApiException

from ndb_operator.models import API_VERSION, GROUP, KIND, PLURAL, VERSION

logger = logging.getLogger(__name__)


class KubeAPIError(Exception):
    """Raised when an API call fails."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class NotFoundError(KubeAPIError):
    """The addressed object does not exist."""


class ConflictError(KubeAPIError):
    """The write was rejected because the object already exists or changed."""


@dataclass(frozen=True)
class KindMapping:
    """Maps a kind to the kubernetes client API that serves it."""

    api_class: str
    resource: str
    api_version: str
    custom: bool = False


KIND_API_MAP: dict[str, KindMapping] = {
    KIND: KindMapping(
        api_class="CustomObjectsApi",
        resource=PLURAL,
        api_version=API_VERSION,
        custom=True,
    ),
    "StatefulSet": KindMapping(api_class="AppsV1Api", resource="stateful_set", api_version="apps/v1"),
    "Deployment": KindMapping(api_class="AppsV1Api", resource="deployment", api_version="apps/v1"),
    "ConfigMap": KindMapping(api_class="CoreV1Api", resource="config_map", api_version="v1"),
    "Service": KindMapping(api_class="CoreV1Api", resource="service", api_version="v1"),
    "Secret": KindMapping(api_class="CoreV1Api", resource="secret", api_version="v1"),
    "Event": KindMapping(api_class="CoreV1Api", resource="event", api_version="v1"),
    "PodDisruptionBudget": KindMapping(
        api_class="PolicyV1Api",
        resource="pod_disruption_budget",
        api_version="policy/v1",
    ),
}


def resource_version_guard(resource_version: str) -> dict[str, Any]:
    """JSON patch guard that fails unless the object is still at *resource_version*."""
    return {"op": "test", "path": "/metadata/resourceVersion", "value": resource_version}


@runtime_checkable
class KubeAPI(Protocol):
    """The subset of API access the sync engine needs."""

    def get(self, kind: str, namespace: str, name: str) -> dict[str, Any]: ...

    def create(self, kind: str, namespace: str, body: dict[str, Any]) -> dict[str, Any]: ...

    def patch(
        self, kind: str, namespace: str, name: str, ops: list[dict[str, Any]],
    ) -> dict[str, Any]: ...

    def patch_status(
        self, namespace: str, name: str, ops: list[dict[str, Any]],
    ) -> dict[str, Any]: ...

    def delete(self, kind: str, namespace: str, name: str) -> None: ...


class KubeClient:
    """KubeAPI implementation backed by the kubernetes client.

    Configuration:
    - ``in_cluster=True`` uses the pod's service account
    - otherwise loads ``kubeconfig`` (default location when None) with the
      optional ``context``
    - or pass a ready ``api_client`` (tests, custom auth)
    """

    def __init__(
        self,
        api_client: Any | None = None,
        kubeconfig: str | None = None,
        context: str | None = None,
        in_cluster: bool = False,
    ) -> None:
        self._api_client = api_client or self._build_api_client(kubeconfig, context, in_cluster)
        self._apis: dict[str, Any] = {}

    @property
    def api_client(self) -> Any:
        return self._api_client

    # --- Public: CRUD ---

    def get(self, kind: str, namespace: str, name: str) -> dict[str, Any]:
        mapping = _mapping(kind)
        if mapping.custom:
            return self._call(
                kind, "get", name,
                self._api(mapping).get_namespaced_custom_object,
                GROUP, VERSION, namespace, mapping.resource, name,
            )
        method = getattr(self._api(mapping), f"read_namespaced_{mapping.resource}")
        return self._call(kind, "get", name, method, name=name, namespace=namespace)

    def create(self, kind: str, namespace: str, body: dict[str, Any]) -> dict[str, Any]:
        mapping = _mapping(kind)
        name = (body.get("metadata") or {}).get("name", "")
        if mapping.custom:
            return self._call(
                kind, "create", name,
                self._api(mapping).create_namespaced_custom_object,
                GROUP, VERSION, namespace, mapping.resource, body,
            )
        method = getattr(self._api(mapping), f"create_namespaced_{mapping.resource}")
        return self._call(kind, "create", name, method, namespace=namespace, body=body)

    def patch(
        self, kind: str, namespace: str, name: str, ops: list[dict[str, Any]],
    ) -> dict[str, Any]:
        """Apply a JSON patch (a list body selects ``application/json-patch+json``)."""
        mapping = _mapping(kind)
        if mapping.custom:
            return self._call(
                kind, "patch", name,
                self._api(mapping).patch_namespaced_custom_object,
                GROUP, VERSION, namespace, mapping.resource, name, ops,
            )
        method = getattr(self._api(mapping), f"patch_namespaced_{mapping.resource}")
        return self._call(kind, "patch", name, method, name=name, namespace=namespace, body=ops)

    def patch_status(
        self, namespace: str, name: str, ops: list[dict[str, Any]],
    ) -> dict[str, Any]:
        """JSON patch the NdbCluster ``status`` subresource."""
        mapping = _mapping(KIND)
        return self._call(
            KIND, "patch status", name,
            self._api(mapping).patch_namespaced_custom_object_status,
            GROUP, VERSION, namespace, mapping.resource, name, ops,
        )

    def delete(self, kind: str, namespace: str, name: str) -> None:
        mapping = _mapping(kind)
        if mapping.custom:
            self._call(
                kind, "delete", name,
                self._api(mapping).delete_namespaced_custom_object,
                GROUP, VERSION, namespace, mapping.resource, name,
            )
            return
        method = getattr(self._api(mapping), f"delete_namespaced_{mapping.resource}")
        self._call(kind, "delete", name, method, name=name, namespace=namespace)

    # --- Public: list/watch support ---

    def list_function(self, kind: str, namespace: str = "") -> tuple[Any, dict[str, Any]]:
        """Return ``(list_method, kwargs)`` suitable for ``watch.Watch().stream``.

        An empty *namespace* lists across all namespaces.
        """
        mapping = _mapping(kind)
        api = self._api(mapping)
        if mapping.custom:
            if namespace:
                return api.list_namespaced_custom_object, {
                    "group": GROUP, "version": VERSION,
                    "namespace": namespace, "plural": mapping.resource,
                }
            return api.list_cluster_custom_object, {
                "group": GROUP, "version": VERSION, "plural": mapping.resource,
            }
        if namespace:
            return getattr(api, f"list_namespaced_{mapping.resource}"), {"namespace": namespace}
        return getattr(api, f"list_{mapping.resource}_for_all_namespaces"), {}

    def list(
        self, kind: str, namespace: str = "", label_selector: str = "",
    ) -> tuple[list[dict[str, Any]], str]:
        """List objects; returns the items and the list's resourceVersion."""
        method, kwargs = self.list_function(kind, namespace)
        if label_selector:
            kwargs["label_selector"] = label_selector
        result = self._call(kind, "list", namespace or "*", method, **kwargs)
        items = result.get("items") or []
        resource_version = (result.get("metadata") or {}).get("resourceVersion", "")
        return items, resource_version

    # --- Private ---

    def _call(self, kind: str, verb: str, name: str, method: Any, /, *args: Any, **kwargs: Any) -> dict[str, Any]:
        try:
            result = method(*args, **kwargs)
        except ApiException as exc:
            message = f"{verb} {kind} {name!r} failed ({exc.status}): {exc.reason}"
            if exc.status == 404:
                raise NotFoundError(message, exc.status) from exc
            if exc.status == 409:
                raise ConflictError(message, exc.status) from exc
            raise KubeAPIError(message, exc.status) from exc
        return self._to_dict(result)

    def _to_dict(self, obj: Any) -> dict[str, Any]:
        """Convert a typed client object to the API's JSON representation."""
        if obj is None:
            return {}
        if isinstance(obj, dict):
            return obj
        return self._api_client.sanitize_for_serialization(obj)

    def _api(self, mapping: KindMapping) -> Any:
        api = self._apis.get(mapping.api_class)
        if api is None:
            api = getattr(client, mapping.api_class)(self._api_client)
            self._apis[mapping.api_class] = api
        return api

    @staticmethod
    def _build_api_client(kubeconfig: str | None, context: str | None, in_cluster: bool) -> Any:
        if in_cluster:
            config.load_incluster_config()
            return client.ApiClient()
        kwargs: dict[str, Any] = {}
        if kubeconfig:
            kwargs["config_file"] = kubeconfig
        if context:
            kwargs["context"] = context
        config.load_kube_config(**kwargs)
        return client.ApiClient()


def _mapping(kind: str) -> KindMapping:
    mapping = KIND_API_MAP.get(kind)
    if mapping is None:
        raise KubeAPIError(f"No API mapping for kind: {kind}")
    return mapping
