"""NdbCluster admission controller — the pre-persistence gate.

Invoked by the API server (through the webhook) on every CREATE/UPDATE of
an NdbCluster.  Decides ALLOW / DENY and computes defaulting patches.

Validation:
1. CREATE: the new spec must be valid
2. UPDATE: the previous change must have been fully applied
   (``status.processedGeneration == generation``), otherwise DENY with a
   retryable 429 TooManyRequests
3. UPDATE: the new spec must be valid and a legal transition from the old

Mutation (defaulting):
- ``spec.mysqld`` absent -> add one MySQL Server
- ``spec.mysqld.nodeCount == 0`` -> replace with 1
- ``spec.mysqld.maxNodeCount`` absent -> add ``nodeCount + 2``

The controller never talks to the cluster; it only reads what it is given.
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Protocol, runtime_checkable

from ndb_operator.models import (
    API_VERSION,
    DEFAULT_FREE_API_SLOTS,
    GROUP,
    KIND,
    PLURAL,
    VERSION,
    AdmissionDecision,
    JSONPatchOperation,
    NdbCluster,
    PatchOp,
)
from ndb_operator.validation import spec_errors, spec_update_errors

logger = logging.getLogger(__name__)


@runtime_checkable
class AdmissionController(Protocol):
    """Protocol for per-kind admission controllers.

    Any object exposing a GVK binding plus ``decode()``, ``validate_create()``,
    ``validate_update()`` and ``mutate()`` satisfies this protocol.
    """

    group: str
    version: str
    kind: str
    resource: str

    def decode(self, raw: dict[str, Any]) -> Any: ...

    def validate_create(self, new: Any) -> AdmissionDecision: ...

    def validate_update(self, old: Any, new: Any) -> AdmissionDecision: ...

    def mutate(self, obj: Any) -> list[JSONPatchOperation]: ...


class NdbAdmissionController:
    """Stateless admission logic for NdbCluster resources."""

    group = GROUP
    version = VERSION
    kind = KIND
    resource = PLURAL

    def decode(self, raw: dict[str, Any]) -> NdbCluster:
        """Parse a raw object. Raises pydantic.ValidationError on bad input."""
        api_version = raw.get("apiVersion", API_VERSION)
        if api_version != API_VERSION or raw.get("kind", KIND) != KIND:
            raise ValueError(
                f"expected {API_VERSION} {KIND}, got {api_version} {raw.get('kind')}"
            )
        return NdbCluster.model_validate(raw)

    def validate_create(self, new: NdbCluster) -> AdmissionDecision:
        errors = spec_errors(new)
        if errors:
            return AdmissionDecision.invalid(KIND, new.metadata.name, errors)
        return AdmissionDecision.allow()

    def validate_update(self, old: NdbCluster, new: NdbCluster) -> AdmissionDecision:
        if not old.reconciled:
            # The operator applies one spec change at a time.
            return AdmissionDecision.too_many_requests(
                "previous update to the NdbCluster resource is still being applied"
            )

        errors = spec_update_errors(old, new)
        if errors:
            return AdmissionDecision.invalid(KIND, new.metadata.name, errors)
        return AdmissionDecision.allow()

    def mutate(self, obj: NdbCluster) -> list[JSONPatchOperation]:
        """Return the defaulting patch for *obj*; empty when already defaulted."""
        ops: list[JSONPatchOperation] = []
        mysqld = obj.spec.mysqld

        # Always attach at least one MySQL Server to the cluster.
        if mysqld is None:
            ops.append(JSONPatchOperation(
                op=PatchOp.ADD,
                path="/spec/mysqld",
                value={"nodeCount": 1, "maxNodeCount": 1 + DEFAULT_FREE_API_SLOTS},
            ))
        else:
            node_count = mysqld.node_count
            if node_count == 0:
                node_count = 1
                op = PatchOp.REPLACE if "node_count" in mysqld.model_fields_set else PatchOp.ADD
                ops.append(JSONPatchOperation(op=op, path="/spec/mysqld/nodeCount", value=1))

            if mysqld.max_node_count is None:
                ops.append(JSONPatchOperation(
                    op=PatchOp.ADD,
                    path="/spec/mysqld/maxNodeCount",
                    value=node_count + DEFAULT_FREE_API_SLOTS,
                ))

        if ops:
            logger.info(
                "JSONPatch %s will be applied to NdbCluster %s",
                [o.model_dump(mode="json") for o in ops],
                obj.key,
            )
        return ops


def apply_patch(raw: dict[str, Any], ops: list[JSONPatchOperation]) -> dict[str, Any]:
    """Return a copy of *raw* with the add/replace *ops* applied.

    Covers what ``mutate()`` emits: object members only, no array indices.
    """
    doc = copy.deepcopy(raw)
    for op in ops:
        *parents, last = [p.replace("~1", "/").replace("~0", "~") for p in op.path.lstrip("/").split("/")]
        target = doc
        for part in parents:
            target = target.setdefault(part, {})
        if op.op == PatchOp.REPLACE and last not in target:
            raise ValueError(f"cannot replace missing member {op.path}")
        target[last] = copy.deepcopy(op.value)
    return doc
