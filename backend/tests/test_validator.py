"""Tests for workflow schema validation."""

import json

import pytest

from conftest import make_edge, make_node, make_workflow
from schema.types import NodeKind, WorkflowDefinition
from schema.validator import is_valid_workflow, parse_workflow, validate_workflow


def messages(issues):
    return [issue.message for issue in issues]


@pytest.mark.unit
class TestStructure:
    def test_camel_case_document(self):
        definition = WorkflowDefinition.model_validate(
            make_workflow(
                [make_node("a", runtime={"maxRetries": 3, "retryDelay": 50}, nodeType="clusterRoot")],
            )
        )
        node = definition.nodes[0]
        assert node.function_id == "core.passThrough"
        assert node.max_attempts == 3
        assert node.retry_delay_ms == 50
        assert node.node_type == NodeKind.CLUSTER_ROOT
        assert definition.flow.start_node_id == "a"

    def test_defaults(self):
        node = WorkflowDefinition.model_validate(make_workflow([make_node("a")])).nodes[0]
        assert node.max_attempts == 1
        assert node.retry_delay_ms == 0
        assert node.envs == {}

    def test_definition_is_frozen(self):
        definition = WorkflowDefinition.model_validate(make_workflow([make_node("a")]))
        with pytest.raises(Exception):
            definition.id = "changed"

    def test_missing_fields(self):
        result = validate_workflow({"id": "x", "nodes": [{"id": "a"}]})
        assert result.valid is False
        paths = {issue.path for issue in result.errors}
        assert "/flow" in paths
        assert "/nodes/0/functionId" in paths

    def test_invalid_retry_count(self):
        result = validate_workflow(make_workflow([make_node("a", runtime={"maxRetries": 0})]))
        assert result.valid is False


@pytest.mark.unit
class TestSemantics:
    def test_valid_workflow(self):
        definition = make_workflow([make_node("a"), make_node("b")], [make_edge("a", "b")])
        result = validate_workflow(definition)
        assert result.valid is True
        assert result.errors == []
        assert result.warnings == []

    def test_duplicate_ids(self):
        result = validate_workflow(make_workflow([make_node("a"), make_node("a")]))
        assert "Duplicate node ID: a" in messages(result.errors)

    def test_missing_start(self):
        result = validate_workflow(make_workflow([make_node("a")], start="zzz"))
        assert 'Start node "zzz" does not exist' in messages(result.errors)

    def test_dangling_edges(self):
        result = validate_workflow(make_workflow([make_node("a")], [make_edge("ghost", "a"), make_edge("a", "void")]))
        assert 'Edge source node "ghost" does not exist' in messages(result.errors)
        assert 'Edge target node "void" does not exist' in messages(result.errors)

    def test_sub_node_without_parent(self):
        result = validate_workflow(make_workflow([make_node("a"), make_node("s", nodeType="subNode")]))
        assert 'Sub-node "s" has no existing parent' in messages(result.errors)

    def test_sub_node_parent_must_be_cluster_root(self):
        result = validate_workflow(
            make_workflow([make_node("a"), make_node("s", nodeType="subNode", parentId="a")])
        )
        assert 'Parent "a" of sub-node "s" is not a cluster root' in messages(result.errors)

    def test_unreachable_is_warning(self):
        result = validate_workflow(make_workflow([make_node("a"), make_node("island")]))
        assert result.valid is True
        assert messages(result.warnings) == ['Node "island" is unreachable from start node']

    def test_sub_nodes_reachable_through_parent(self):
        result = validate_workflow(
            make_workflow(
                [make_node("root", nodeType="clusterRoot"), make_node("s", nodeType="subNode", parentId="root")],
            )
        )
        assert result.valid is True
        assert result.warnings == []


@pytest.mark.unit
class TestRegistryReferences:
    def test_unknown_function(self):
        definition = make_workflow([make_node("a", "nope.op")])
        assert is_valid_workflow(definition) is True
        assert is_valid_workflow(definition, {"core.passThrough"}) is False

    def test_known_function(self):
        assert is_valid_workflow(make_workflow([make_node("a")]), {"core.passThrough"}) is True


@pytest.mark.unit
class TestParseWorkflow:
    def test_parse_valid(self):
        workflow, validation = parse_workflow(json.dumps(make_workflow([make_node("a")])))
        assert validation.valid
        assert workflow.id == "wf-test"

    def test_parse_invalid_json(self):
        workflow, validation = parse_workflow("{")
        assert workflow is None
        assert validation.errors[0].path == "/"
        assert validation.errors[0].message.startswith("Invalid JSON")

    def test_parse_invalid_document(self):
        workflow, validation = parse_workflow(json.dumps(make_workflow([make_node("a")], start="b")))
        assert workflow is None
        assert not validation.valid
