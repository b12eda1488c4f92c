"""AdmissionReview (admission.k8s.io/v1) decoding and response building.

Routes a review to the admission controller bound to the request's
(group, version, kind) and turns its decision into the wire response.
Anything that goes wrong here (unreadable payload, unsupported kind or
operation, unexpected exception) is reported as a DENY: admission fails
closed.
"""

from __future__ import annotations

import base64
import json
import logging
from typing import Any

from pydantic import ValidationError

from ndb_operator.admission.controller import AdmissionController, NdbAdmissionController
from ndb_operator.models import AdmissionDecision, AdmissionOperation

logger = logging.getLogger(__name__)

REVIEW_API_VERSION = "admission.k8s.io/v1"


class AdmissionError(Exception):
    """Raised when a review request cannot be interpreted."""


class AdmissionReviewer:
    """Dispatches AdmissionReview requests to per-kind controllers."""

    def __init__(self, controllers: list[AdmissionController] | None = None) -> None:
        if controllers is None:
            controllers = [NdbAdmissionController()]
        self._controllers = {
            (c.group, c.version, c.kind.lower()): c for c in controllers
        }

    def validate(self, review: dict[str, Any]) -> dict[str, Any]:
        """Handle a validating-webhook review."""
        return self._handle(review, self._validate)

    def mutate(self, review: dict[str, Any]) -> dict[str, Any]:
        """Handle a mutating-webhook review."""
        return self._handle(review, self._mutate)

    # --- Private ---

    def _handle(self, review: dict[str, Any], handler: Any) -> dict[str, Any]:
        uid = ""
        try:
            request = review.get("request") if isinstance(review, dict) else None
            if not isinstance(request, dict):
                raise AdmissionError("admission review has no request")
            uid = str(request.get("uid", ""))
            controller = self._controller_for(request)
            operation = request.get("operation")
            try:
                op = AdmissionOperation(operation)
            except ValueError:
                raise AdmissionError(f"unknown operation {operation!r}") from None
            decision = handler(controller, op, request)
        except (AdmissionError, ValidationError, ValueError, TypeError) as exc:
            logger.warning("Rejecting admission request %s: %s", uid, exc)
            decision = AdmissionDecision.bad_request(f"failed to decode request: {exc}")
        except Exception as exc:
            logger.exception("Internal error handling admission request %s", uid)
            decision = AdmissionDecision(
                allowed=False,
                code=500,
                reason="InternalError",
                message=f"internal error: {exc}",
            )
        return build_response(uid, decision)

    def _controller_for(self, request: dict[str, Any]) -> AdmissionController:
        kind = request.get("kind") or {}
        gvk = (kind.get("group", ""), kind.get("version", ""), str(kind.get("kind", "")).lower())
        controller = self._controllers.get(gvk)
        if controller is None:
            raise AdmissionError(f"unsupported kind {gvk[0]}/{gvk[1]} {kind.get('kind')}")
        return controller

    def _validate(
        self,
        controller: AdmissionController,
        op: AdmissionOperation,
        request: dict[str, Any],
    ) -> AdmissionDecision:
        if op == AdmissionOperation.CREATE:
            return controller.validate_create(_decode(controller, request, "object"))
        if op == AdmissionOperation.UPDATE:
            old = _decode(controller, request, "oldObject")
            new = _decode(controller, request, "object")
            return controller.validate_update(old, new)
        raise AdmissionError(f"operation {op} is not validated by this webhook")

    def _mutate(
        self,
        controller: AdmissionController,
        op: AdmissionOperation,
        request: dict[str, Any],
    ) -> AdmissionDecision:
        if op not in (AdmissionOperation.CREATE, AdmissionOperation.UPDATE):
            raise AdmissionError(f"operation {op} is not mutated by this webhook")
        obj = _decode(controller, request, "object")
        return AdmissionDecision.allow(controller.mutate(obj))


def _decode(controller: AdmissionController, request: dict[str, Any], field: str) -> Any:
    raw = request.get(field)
    if not isinstance(raw, dict):
        raise AdmissionError(f"request.{field} is missing or not an object")
    raw = dict(raw)
    meta = dict(raw.get("metadata") or {})
    # Objects being created may not carry their namespace yet.
    if not meta.get("namespace") and request.get("namespace"):
        meta["namespace"] = request["namespace"]
    raw["metadata"] = meta
    return controller.decode(raw)


def build_response(uid: str, decision: AdmissionDecision) -> dict[str, Any]:
    """Build an AdmissionReview response document from a decision."""
    response: dict[str, Any] = {"uid": uid, "allowed": decision.allowed}
    if not decision.allowed:
        response["status"] = {
            "code": decision.code,
            "reason": decision.reason,
            "message": decision.message,
        }
    if decision.allowed and decision.patch:
        patch = json.dumps([op.model_dump(mode="json") for op in decision.patch])
        response["patchType"] = "JSONPatch"
        response["patch"] = base64.b64encode(patch.encode("utf-8")).decode("ascii")
    return {
        "apiVersion": REVIEW_API_VERSION,
        "kind": "AdmissionReview",
        "response": response,
    }
