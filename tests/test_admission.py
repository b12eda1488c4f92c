"""Tests for the NdbCluster admission controller and review handling.

Covers:
- validate_create / validate_update decisions
- the single in-flight update rule (retryable 429)
- mutation defaulting and its idempotency
- AdmissionReview decoding, fail-closed behaviour and response format
"""

from __future__ import annotations

import base64
import json

import pytest

from ndb_operator.admission import AdmissionReviewer, NdbAdmissionController, apply_patch, build_response
from ndb_operator.models import AdmissionDecision, JSONPatchOperation, NdbCluster, PatchOp

from fakes import apply_json_patch, ndb_cluster


def _nc(generation: int = 1, processed: int = 1, **kwargs) -> NdbCluster:
    raw = ndb_cluster(**kwargs)
    raw["metadata"]["generation"] = generation
    raw["status"] = {"processedGeneration": processed}
    return NdbCluster.model_validate(raw)


def _review(operation: str, obj: dict | None, old: dict | None = None, **request) -> dict:
    req = {
        "uid": "req-1",
        "kind": {"group": "mysql.oracle.com", "version": "v1alpha1", "kind": "NdbCluster"},
        "operation": operation,
        "namespace": "default",
        "object": obj,
        "oldObject": old,
        **request,
    }
    return {"apiVersion": "admission.k8s.io/v1", "kind": "AdmissionReview", "request": req}


def _decoded_patch(response: dict) -> list[dict]:
    return json.loads(base64.b64decode(response["response"]["patch"]))


# --- Controller ---


class TestValidateCreate:
    def test_allows_valid_spec(self):
        decision = NdbAdmissionController().validate_create(_nc(mysqld={"nodeCount": 1}))
        assert decision.allowed

    def test_denies_invalid_spec(self):
        decision = NdbAdmissionController().validate_create(_nc(dataNode={"nodeCount": 3}))
        assert not decision.allowed
        assert decision.code == 422
        assert decision.errors


class TestValidateUpdate:
    def test_allows_when_previous_change_applied(self):
        ctrl = NdbAdmissionController()
        old = _nc(generation=4, processed=4, mysqld={"nodeCount": 1})
        new = _nc(generation=4, processed=4, mysqld={"nodeCount": 2})
        assert ctrl.validate_update(old, new).allowed

    def test_denies_retryable_while_in_flight(self):
        ctrl = NdbAdmissionController()
        old = _nc(generation=5, processed=4, mysqld={"nodeCount": 1})
        new = _nc(generation=5, processed=4, mysqld={"nodeCount": 2})
        decision = ctrl.validate_update(old, new)
        assert not decision.allowed
        assert decision.code == 429
        assert decision.retryable
        assert "still being applied" in decision.message

    def test_in_flight_denial_wins_over_invalid_spec(self):
        ctrl = NdbAdmissionController()
        old = _nc(generation=2, processed=1)
        new = _nc(generation=2, processed=1, redundancyLevel=9)
        decision = ctrl.validate_update(old, new)
        assert decision.retryable

    def test_denies_illegal_transition(self):
        ctrl = NdbAdmissionController()
        old = _nc(mysqld={"nodeCount": 1, "maxNodeCount": 4})
        new = _nc(mysqld={"nodeCount": 1, "maxNodeCount": 2})
        decision = ctrl.validate_update(old, new)
        assert not decision.allowed
        assert decision.code == 422
        assert not decision.retryable


class TestMutate:
    def test_adds_mysqld_when_absent(self):
        ops = NdbAdmissionController().mutate(_nc())
        assert len(ops) == 1
        assert ops[0].op == PatchOp.ADD
        assert ops[0].path == "/spec/mysqld"
        assert ops[0].value == {"nodeCount": 1, "maxNodeCount": 3}

    def test_replaces_zero_node_count(self):
        ops = NdbAdmissionController().mutate(_nc(mysqld={"nodeCount": 0}))
        assert [(o.op, o.path, o.value) for o in ops] == [
            (PatchOp.REPLACE, "/spec/mysqld/nodeCount", 1),
            (PatchOp.ADD, "/spec/mysqld/maxNodeCount", 3),
        ]

    def test_adds_node_count_when_unset(self):
        ops = NdbAdmissionController().mutate(_nc(mysqld={"maxNodeCount": 4}))
        assert [(o.op, o.path, o.value) for o in ops] == [
            (PatchOp.ADD, "/spec/mysqld/nodeCount", 1),
        ]

    def test_max_node_count_defaults_from_node_count(self):
        ops = NdbAdmissionController().mutate(_nc(mysqld={"nodeCount": 4}))
        assert [(o.path, o.value) for o in ops] == [("/spec/mysqld/maxNodeCount", 6)]

    def test_no_patch_when_defaulted(self):
        ops = NdbAdmissionController().mutate(_nc(mysqld={"nodeCount": 2, "maxNodeCount": 4}))
        assert ops == []

    @pytest.mark.parametrize("mysqld", [None, {}, {"nodeCount": 0}, {"nodeCount": 3}, {"maxNodeCount": 5}])
    def test_idempotent(self, mysqld):
        ctrl = NdbAdmissionController()
        raw = ndb_cluster(mysqld=mysqld)
        ops = ctrl.mutate(NdbCluster.model_validate(raw))
        patched = apply_json_patch(raw, [o.model_dump(mode="json") for o in ops])
        assert ctrl.mutate(NdbCluster.model_validate(patched)) == []

    def test_mutated_spec_is_valid(self):
        ctrl = NdbAdmissionController()
        raw = ndb_cluster(mysqld={"nodeCount": 0})
        ops = ctrl.mutate(NdbCluster.model_validate(raw))
        patched = apply_json_patch(raw, [o.model_dump(mode="json") for o in ops])
        assert ctrl.validate_create(NdbCluster.model_validate(patched)).allowed


class TestApplyPatch:
    def test_applies_defaulting_without_touching_input(self):
        ctrl = NdbAdmissionController()
        raw = ndb_cluster(mysqld={"nodeCount": 0})
        patched = apply_patch(raw, ctrl.mutate(NdbCluster.model_validate(raw)))
        assert patched["spec"]["mysqld"] == {"nodeCount": 1, "maxNodeCount": 3}
        assert raw["spec"]["mysqld"] == {"nodeCount": 0}

    def test_replace_of_missing_member_rejected(self):
        op = JSONPatchOperation(op=PatchOp.REPLACE, path="/spec/mysqld/nodeCount", value=1)
        with pytest.raises(ValueError):
            apply_patch(ndb_cluster(), [op])


class TestDecode:
    def test_rejects_wrong_kind(self):
        with pytest.raises(ValueError):
            NdbAdmissionController().decode({"apiVersion": "v1", "kind": "ConfigMap"})


# --- Reviewer ---


class TestAdmissionReviewer:
    def test_validate_create_allowed(self):
        resp = AdmissionReviewer().validate(_review("CREATE", ndb_cluster(mysqld={"nodeCount": 1})))
        assert resp["apiVersion"] == "admission.k8s.io/v1"
        assert resp["kind"] == "AdmissionReview"
        assert resp["response"] == {"uid": "req-1", "allowed": True}

    def test_validate_create_denied_carries_status(self):
        resp = AdmissionReviewer().validate(_review("CREATE", ndb_cluster(dataNode={"nodeCount": 3})))
        status = resp["response"]["status"]
        assert resp["response"]["allowed"] is False
        assert status["code"] == 422
        assert status["reason"] == "Invalid"
        assert "multiple of" in status["message"]

    def test_validate_update_in_flight(self):
        old = ndb_cluster(mysqld={"nodeCount": 1})
        old["metadata"]["generation"] = 2
        old["status"] = {"processedGeneration": 1}
        new = ndb_cluster(mysqld={"nodeCount": 2})
        resp = AdmissionReviewer().validate(_review("UPDATE", new, old))
        assert resp["response"]["allowed"] is False
        assert resp["response"]["status"]["code"] == 429
        assert resp["response"]["status"]["reason"] == "TooManyRequests"

    def test_mutate_returns_json_patch(self):
        resp = AdmissionReviewer().mutate(_review("CREATE", ndb_cluster(mysqld={"nodeCount": 0})))
        assert resp["response"]["allowed"] is True
        assert resp["response"]["patchType"] == "JSONPatch"
        assert _decoded_patch(resp) == [
            {"op": "replace", "path": "/spec/mysqld/nodeCount", "value": 1},
            {"op": "add", "path": "/spec/mysqld/maxNodeCount", "value": 3},
        ]

    def test_mutate_without_changes_has_no_patch(self):
        resp = AdmissionReviewer().mutate(
            _review("UPDATE", ndb_cluster(mysqld={"nodeCount": 1, "maxNodeCount": 3}))
        )
        assert resp["response"] == {"uid": "req-1", "allowed": True}

    def test_namespace_taken_from_request(self):
        raw = ndb_cluster(mysqld={"nodeCount": 1})
        del raw["metadata"]["namespace"]
        controller = NdbAdmissionController()
        seen = []
        original = controller.validate_create
        controller.validate_create = lambda nc: seen.append(nc) or original(nc)
        AdmissionReviewer([controller]).validate(_review("CREATE", raw, namespace="prod"))
        assert seen[0].metadata.namespace == "prod"

    @pytest.mark.parametrize("review", [
        {},
        {"request": "nope"},
        _review("CREATE", None),
        _review("DELETE", ndb_cluster()),
        _review("PATCH", ndb_cluster()),
        _review("CREATE", ndb_cluster(), kind={"group": "apps", "version": "v1", "kind": "Deployment"}),
        _review("CREATE", {**ndb_cluster(), "spec": {"redundancyLevel": "lots"}}),
    ])
    def test_malformed_requests_fail_closed(self, review):
        resp = AdmissionReviewer().validate(review)
        assert resp["response"]["allowed"] is False
        assert resp["response"]["status"]["code"] == 400

    def test_internal_error_fails_closed(self):
        controller = NdbAdmissionController()

        def boom(nc):
            raise RuntimeError("kaboom")

        controller.validate_create = boom
        resp = AdmissionReviewer([controller]).validate(_review("CREATE", ndb_cluster()))
        assert resp["response"]["allowed"] is False
        assert resp["response"]["status"]["code"] == 500
        assert resp["response"]["status"]["reason"] == "InternalError"


class TestBuildResponse:
    def test_patch_only_on_allow(self):
        decision = AdmissionDecision.bad_request("bad")
        resp = build_response("u", decision)
        assert "patch" not in resp["response"]
        assert resp["response"]["status"]["code"] == 400
