"""Sync engine — one reconciliation pass over one NdbCluster.

Each pass works on a private copy of the NdbCluster read fresh from the
API and walks the steps strictly in order:

1. Ensure resources: create any owned object that is missing.
2. Health gate: if any owned object is unhealthy, stop and poll.
3. Converge: patch owned Services back to their manifest, then, if a
   workload's pod template does not carry the config version in the
   ConfigMap, patch it (one workload per pass, in rollout order
   mgmd -> ndbd -> mysqld) and poll.
4. Accept new changes: if the ConfigMap was written for an older
   generation, write version v+1 from the current spec and loop.
5. Status: patch ``status`` with ready counts, the UpToDate condition and,
   only when fully converged, ``processedGeneration``.

Because the ConfigMap records which version is live, a restarted
controller resumes at step 3 instead of re-accepting the generation.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from ndb_operator.controller.result import SyncResult
from ndb_operator.kube.client import KubeAPI, KubeAPIError, NotFoundError, resource_version_guard
from ndb_operator.kube.recorder import (
    REASON_IN_PROGRESS,
    REASON_RECONCILE_ERROR,
    REASON_RESOURCES_CREATED,
    REASON_SYNC_SUCCESS,
    EventRecorder,
)
from ndb_operator.models import Condition, NdbCluster, NdbClusterStatus
from ndb_operator.resources.ndbconfig import ConfigError, ConfigSummary, new_config_data, parse_config_map
from ndb_operator.workloads.controls import (
    CONTROLS_BY_KIND,
    SUPPORT_CONTROLS,
    WORKLOAD_CONTROLS,
    MissingSecretError,
    WorkloadControl,
    config_version_of,
    is_healthy,
)

logger = logging.getLogger(__name__)

CONDITION_UP_TO_DATE = "UpToDate"

_CONFIG_MAP_CONTROL = CONTROLS_BY_KIND["ConfigMap"]


class ClusterGoneError(Exception):
    """The NdbCluster was deleted while its pass was running."""


class SyncContext:
    """State for a single pass; discard after ``sync()`` returns."""

    def __init__(
        self,
        api: KubeAPI,
        nc: NdbCluster,
        recorder: EventRecorder | None = None,
        poll_interval: float = 5.0,
        _now: Callable[[], datetime] | None = None,
    ) -> None:
        self.api = api
        # Private working copy; never mutate an object someone else holds.
        self.nc = nc.model_copy(deep=True)
        self.recorder = recorder
        self.poll_interval = poll_interval
        self._now = _now or (lambda: datetime.now(tz=UTC))
        self._objects: dict[WorkloadControl, dict[str, Any]] = {}

    def sync(self) -> SyncResult:
        nc = self.nc
        try:
            summary, config_map = self._ensure_resources()
            result, reason, message = self._advance(summary, config_map)
            self._update_status(summary, reason, message)
        except ClusterGoneError:
            return SyncResult.skip(f"NdbCluster {nc.key} no longer exists")
        except (KubeAPIError, MissingSecretError, ConfigError) as exc:
            return self._failed(exc)
        return result

    # --- Step 1 ---

    def _ensure_resources(self) -> tuple[ConfigSummary, dict[str, Any]]:
        nc = self.nc
        created: list[str] = []

        secret_control = SUPPORT_CONTROLS[0]
        self._objects[secret_control], was_created = secret_control.ensure_exists(
            self.api, nc, self._initial_summary(0),
        )
        if was_created:
            created.append(f"Secret {secret_control.name(nc)}")

        config_map, was_created = self._ensure_config_map()
        if was_created:
            created.append(f"ConfigMap {nc.config_map_name()}")
        summary = parse_config_map(config_map)

        for control in (*SUPPORT_CONTROLS[1:], *WORKLOAD_CONTROLS):
            self._objects[control], was_created = control.ensure_exists(self.api, nc, summary)
            if was_created:
                created.append(f"{control.kind} {control.name(nc)}")

        if created:
            self._event(REASON_RESOURCES_CREATED, f"Created {', '.join(created)}")
        return summary, config_map

    def _ensure_config_map(self) -> tuple[dict[str, Any], bool]:
        nc = self.nc
        try:
            return self.api.get("ConfigMap", nc.metadata.namespace, nc.config_map_name()), False
        except NotFoundError:
            pass
        # Never reuse a version a workload may already be running.
        version = self._highest_workload_version() + 1
        return _CONFIG_MAP_CONTROL.ensure_exists(self.api, nc, self._initial_summary(version))

    def _highest_workload_version(self) -> int:
        highest = 0
        for control in WORKLOAD_CONTROLS:
            try:
                obj = self.api.get(control.kind, self.nc.metadata.namespace, control.name(self.nc))
            except NotFoundError:
                continue
            highest = max(highest, config_version_of(obj) or 0)
        return highest

    def _initial_summary(self, version: int) -> ConfigSummary:
        return ConfigSummary(
            config_version=version,
            generation=self.nc.metadata.generation,
            spec=self.nc.spec,
        )

    # --- Steps 2 to 4 ---

    def _advance(
        self, summary: ConfigSummary, config_map: dict[str, Any],
    ) -> tuple[SyncResult, str, str]:
        nc = self.nc

        unhealthy = [
            f"{control.kind} {control.name(nc)}"
            for control, obj in self._objects.items()
            if not is_healthy(control, obj)
        ]
        if unhealthy:
            message = f"Waiting for {', '.join(unhealthy)} to become ready"
            logger.info("%s: %s", nc.key, message)
            return SyncResult.requeue(self.poll_interval, message), "WaitingForWorkloads", message

        for control in SUPPORT_CONTROLS:
            ops = control.drift_patch(nc, summary, self._objects[control])
            if ops:
                self._update_in_place(control, ops)

        for control in WORKLOAD_CONTROLS:
            obj = self._objects[control]
            if config_version_of(obj) == summary.config_version:
                continue
            self._roll_out(control, obj, summary)
            message = f"Rolling out config version {summary.config_version} to {control.name(nc)}"
            self._event(REASON_IN_PROGRESS, message)
            return SyncResult.requeue(self.poll_interval, message), "RollingUpdate", message

        if nc.metadata.generation != nc.status.processed_generation and (
            summary.generation != nc.metadata.generation
        ):
            version = summary.config_version + 1
            self._write_config(config_map, version)
            message = f"Accepted generation {nc.metadata.generation} as config version {version}"
            self._event(REASON_IN_PROGRESS, message)
            return SyncResult.requeue(0.0, message), "SpecUpdateInProgress", message

        return SyncResult.complete(), REASON_SYNC_SUCCESS, "NdbCluster is up to date"

    def _roll_out(self, control: WorkloadControl, obj: dict[str, Any], summary: ConfigSummary) -> None:
        desired = control.build(self.nc, summary)
        rv = (obj.get("metadata") or {}).get("resourceVersion", "")
        logger.info(
            "%s: patching %s %s to config version %d",
            self.nc.key, control.kind, control.name(self.nc), summary.config_version,
        )
        ops = [resource_version_guard(rv), {"op": "replace", "path": "/spec", "value": desired["spec"]}]
        ops += _annotation_ops(obj, desired)
        self.api.patch(control.kind, self.nc.metadata.namespace, control.name(self.nc), ops)

    def _update_in_place(self, control: WorkloadControl, ops: list[dict[str, Any]]) -> None:
        nc = self.nc
        obj = self._objects[control]
        rv = (obj.get("metadata") or {}).get("resourceVersion", "")
        logger.info("%s: updating %s %s", nc.key, control.kind, control.name(nc))
        self._objects[control] = self.api.patch(
            control.kind, nc.metadata.namespace, control.name(nc), [resource_version_guard(rv), *ops],
        )
        self._event(REASON_IN_PROGRESS, f"Updated {control.kind} {control.name(nc)}")

    def _write_config(self, config_map: dict[str, Any], version: int) -> None:
        nc = self.nc
        rv = (config_map.get("metadata") or {}).get("resourceVersion", "")
        logger.info("%s: writing config version %d for generation %d", nc.key, version, nc.metadata.generation)
        self.api.patch(
            "ConfigMap", nc.metadata.namespace, nc.config_map_name(),
            [resource_version_guard(rv), {"op": "replace", "path": "/data", "value": new_config_data(nc, version)}],
        )

    # --- Step 5 ---

    def _update_status(self, summary: ConfigSummary, reason: str, message: str) -> None:
        nc = self.nc
        old = nc.status
        converged = reason == REASON_SYNC_SUCCESS and summary.generation == nc.metadata.generation

        status = NdbClusterStatus(
            processed_generation=nc.metadata.generation if converged else old.processed_generation,
            ready_management_nodes=self._ready_count(WORKLOAD_CONTROLS[0]),
            ready_data_nodes=self._ready_count(WORKLOAD_CONTROLS[1]),
            ready_mysql_servers=self._ready_count(WORKLOAD_CONTROLS[2]),
            generated_root_password_secret_name=_generated_secret_name(nc),
            conditions=[self._condition(converged, reason, message)],
        )
        if status.to_api() == old.to_api():
            return

        try:
            self.api.patch_status(
                nc.metadata.namespace, nc.metadata.name,
                [
                    resource_version_guard(nc.metadata.resource_version),
                    {"op": "add", "path": "/status", "value": status.to_api()},
                ],
            )
        except NotFoundError as exc:
            raise ClusterGoneError(nc.key) from exc
        if converged and old.processed_generation != status.processed_generation:
            logger.info("%s: generation %d processed", nc.key, nc.metadata.generation)
            self._event(REASON_SYNC_SUCCESS, f"Generation {nc.metadata.generation} is up to date")
        nc.status = status

    def _ready_count(self, control: WorkloadControl) -> str:
        obj = self._objects.get(control) or {}
        desired = (obj.get("spec") or {}).get("replicas", 0)
        ready = (obj.get("status") or {}).get("readyReplicas", 0)
        return f"Ready:{ready}/{desired}"

    def _condition(self, converged: bool, reason: str, message: str) -> Condition:
        status = "True" if converged else "False"
        for existing in self.nc.status.conditions:
            if existing.type == CONDITION_UP_TO_DATE and existing.status == status:
                transition = existing.last_transition_time
                break
        else:
            transition = self._now().strftime("%Y-%m-%dT%H:%M:%SZ")
        return Condition(
            type=CONDITION_UP_TO_DATE,
            status=status,
            reason=reason,
            message=message,
            last_transition_time=transition,
        )

    # --- Helpers ---

    def _failed(self, exc: Exception) -> SyncResult:
        logger.warning("%s: sync failed: %s", self.nc.key, exc)
        if self.recorder is not None:
            self.recorder.warning(self.nc, REASON_RECONCILE_ERROR, str(exc))
        return SyncResult.failed(exc)

    def _event(self, reason: str, message: str) -> None:
        if self.recorder is not None:
            self.recorder.normal(self.nc, reason, message)


def _annotation_ops(obj: dict[str, Any], desired: dict[str, Any]) -> list[dict[str, Any]]:
    """Set the annotations *desired* carries, leaving any others on *obj* alone."""
    wanted = (desired.get("metadata") or {}).get("annotations") or {}
    current = (obj.get("metadata") or {}).get("annotations")
    if not wanted:
        return []
    if current is None:
        return [{"op": "add", "path": "/metadata/annotations", "value": wanted}]
    return [
        {"op": "add", "path": f"/metadata/annotations/{_escape(key)}", "value": value}
        for key, value in wanted.items()
        if current.get(key) != value
    ]


def _escape(key: str) -> str:
    return key.replace("~", "~0").replace("/", "~1")


def _generated_secret_name(nc: NdbCluster) -> str:
    name, user_supplied = nc.root_password_secret_name()
    return "" if user_supplied else name
