"""Tests for NdbCluster spec validation."""

from __future__ import annotations

import pytest

from ndb_operator.models import NdbCluster
from ndb_operator.validation import spec_errors, spec_update_errors

from fakes import ndb_cluster


def _nc(**kwargs) -> NdbCluster:
    return NdbCluster.model_validate(ndb_cluster(**kwargs))


class TestSpecErrors:
    def test_valid_default(self):
        assert spec_errors(_nc(mysqld={"nodeCount": 1})) == []

    def test_redundancy_out_of_range(self):
        errors = spec_errors(_nc(redundancyLevel=5, dataNode={"nodeCount": 5}))
        assert any(e.startswith("spec.redundancyLevel") for e in errors)

    def test_data_nodes_must_be_multiple_of_redundancy(self):
        errors = spec_errors(_nc(dataNode={"nodeCount": 3}))
        assert errors == ["spec.dataNode.nodeCount: 3 is not a multiple of spec.redundancyLevel 2"]

    def test_data_nodes_out_of_range(self):
        assert spec_errors(_nc(dataNode={"nodeCount": 0}))
        assert spec_errors(_nc(dataNode={"nodeCount": 146}))

    def test_too_many_management_nodes(self):
        errors = spec_errors(_nc(managementNode={"nodeCount": 3}))
        assert any(e.startswith("spec.managementNode.nodeCount") for e in errors)

    def test_single_redundancy_allows_one_management_node(self):
        errors = spec_errors(_nc(
            redundancyLevel=1, dataNode={"nodeCount": 1}, managementNode={"nodeCount": 2},
        ))
        assert len(errors) == 1
        assert "only one management node" in errors[0]

    def test_max_node_count_below_node_count(self):
        errors = spec_errors(_nc(mysqld={"nodeCount": 4, "maxNodeCount": 2}))
        assert errors == ["spec.mysqld.maxNodeCount: 2 is less than spec.mysqld.nodeCount 4"]

    def test_negative_mysqld_count(self):
        assert spec_errors(_nc(mysqld={"nodeCount": -1}))

    def test_total_slots_limit(self):
        errors = spec_errors(_nc(mysqld={"nodeCount": 1, "maxNodeCount": 252}))
        assert any("total number of node slots" in e for e in errors)

    def test_invalid_config_key(self):
        errors = spec_errors(_nc(dataNode={"nodeCount": 2, "config": {"Data=Memory": "1G"}}))
        assert errors == ["spec.dataNode.config: invalid parameter name 'Data=Memory'"]

    @pytest.mark.parametrize("value", ["100M\n[ndbd]\nNodeId=99", "1G\r", "[x]"])
    def test_config_value_cannot_break_out_of_section(self, value):
        errors = spec_errors(_nc(dataNode={"nodeCount": 2, "config": {"DataMemory": value}}))
        assert len(errors) == 1
        assert errors[0].startswith("spec.dataNode.config.DataMemory: invalid value")

    def test_plain_config_values_accepted(self):
        assert spec_errors(_nc(dataNode={"nodeCount": 2, "config": {"DataMemory": "200M", "MaxNoOfTables": 512}})) == []

    def test_reports_every_problem(self):
        errors = spec_errors(_nc(
            dataNode={"nodeCount": 3}, managementNode={"nodeCount": 3},
            mysqld={"nodeCount": 2, "maxNodeCount": 1},
        ))
        assert len(errors) == 3


class TestSpecUpdateErrors:
    def test_valid_scale_up(self):
        old = _nc(mysqld={"nodeCount": 1, "maxNodeCount": 3})
        new = _nc(mysqld={"nodeCount": 3, "maxNodeCount": 3})
        assert spec_update_errors(old, new) == []

    def test_redundancy_is_immutable(self):
        old = _nc()
        new = _nc(redundancyLevel=1)
        assert "spec.redundancyLevel: field is immutable" in spec_update_errors(old, new)

    def test_data_node_count_is_immutable(self):
        errors = spec_update_errors(_nc(), _nc(dataNode={"nodeCount": 4}))
        assert errors == ["spec.dataNode.nodeCount: field is immutable"]

    def test_management_node_count_is_immutable(self):
        errors = spec_update_errors(_nc(), _nc(managementNode={"nodeCount": 1}))
        assert errors == ["spec.managementNode.nodeCount: field is immutable"]

    def test_mysqld_cannot_be_removed(self):
        errors = spec_update_errors(_nc(mysqld={"nodeCount": 1}), _nc())
        assert errors == ["spec.mysqld: cannot be removed once set"]

    def test_max_node_count_cannot_shrink(self):
        old = _nc(mysqld={"nodeCount": 1, "maxNodeCount": 5})
        new = _nc(mysqld={"nodeCount": 1, "maxNodeCount": 3})
        assert spec_update_errors(old, new) == [
            "spec.mysqld.maxNodeCount: cannot be reduced from 5 to 3"
        ]

    def test_new_spec_is_also_checked(self):
        old = _nc(mysqld={"nodeCount": 1})
        new = _nc(mysqld={"nodeCount": 1, "maxNodeCount": 0})
        errors = spec_update_errors(old, new)
        assert any("is less than" in e for e in errors)
