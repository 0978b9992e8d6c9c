"""Tests for the node registry."""
from unittest.mock import MagicMock, patch

import pytest

from flowforge.errors import ConflictError, NotFoundError
from node_registry import NodePackManifest, NodeRegistry
from node_sdk import NodeKind, TransformNode
from nodepacks.core.manifest import register_nodes


class UppercaseNode(TransformNode):
    type = "acme.uppercase"

    description = {
        "displayName": "Uppercase",
        "name": "uppercase",
        "group": ["transform", "text"],
        "description": "Uppercases a field",
        "inputs": ["main"],
        "outputs": ["main"],
    }

    properties = {
        "parameters": [
            {"displayName": "Field", "name": "field", "type": "string", "required": True},
        ],
    }

    def process(self, items, parameters, context):
        return [
            item.with_json({**item.json, "x": str(item.json.get(parameters.get("field", i), "")).upper()})
            for i, item in enumerate(items)
        ]


class TestRegistration:
    def test_core_pack_registered_and_frozen(self, registry):
        assert registry.frozen
        assert "flowforge.set" in registry
        assert len(registry) == len(register_nodes()[1])
        assert registry.get_descriptor("flowforge.set").node_pack == "core"

    def test_frozen_registry_rejects_registration(self, registry):
        with pytest.raises(ConflictError, match="frozen"):
            registry.register_node(UppercaseNode)

    def test_duplicate_type_rejected(self):
        registry = NodeRegistry()
        registry.register_node(UppercaseNode)

        with pytest.raises(ConflictError, match="already registered"):
            registry.register_node(UppercaseNode)

    def test_discover_entry_points(self):
        manifest = NodePackManifest(name="acme", nodes=["acme.uppercase"])
        entry_point = MagicMock()
        entry_point.name = "acme"
        entry_point.load.return_value = lambda: (manifest, {"acme.uppercase": UppercaseNode})
        registry = NodeRegistry()

        with patch("node_registry.registry.entry_points", return_value=[entry_point]):
            assert registry.discover_entry_points() == 1
            assert registry.discover_entry_points() == 0

        assert registry.get_descriptor("acme.uppercase").node_pack == "acme"
        assert [pack.name for pack in registry.list_packs()] == ["acme"]


class TestLookup:
    def test_unknown_type_fails_explicitly(self, registry):
        with pytest.raises(NotFoundError, match="Unknown node type: flowforge.nope"):
            registry.get_descriptor("flowforge.nope")
        with pytest.raises(NotFoundError):
            registry.create_node("flowforge.nope")
        assert not registry.is_valid_node_type("flowforge.nope")

    def test_create_node_returns_fresh_instances(self, registry):
        first = registry.create_node("flowforge.httpRequest")
        second = registry.create_node("flowforge.httpRequest")

        assert first is not second

    def test_trigger_descriptor(self, registry):
        descriptor = registry.get_descriptor("flowforge.manualTrigger")

        assert descriptor.kind == NodeKind.TRIGGER
        assert descriptor.inputs == []
        assert descriptor.outputs == ["main"]
        assert descriptor.category == "trigger"

    def test_branch_and_merge_slots(self, registry):
        assert registry.get_descriptor("flowforge.if").outputs == ["true", "false"]
        assert registry.get_descriptor("flowforge.merge").inputs == ["input1", "input2"]

    def test_categories_and_listing(self, registry):
        assert {"trigger", "transform", "flow"} <= set(registry.categories())
        triggers = {d.node_type for d in registry.list_by_category("trigger")}
        assert triggers == {"flowforge.manualTrigger", "flowforge.webhook", "flowforge.scheduleTrigger"}

    def test_search(self, registry):
        found = [d.node_type for d in registry.search("HTTP")]

        assert found == ["flowforge.httpRequest"]

    def test_compatibility(self, registry):
        assert registry.compatibility("flowforge.manualTrigger", "flowforge.set") == {
            "compatible": True,
            "reason": None,
        }
        assert registry.compatibility("flowforge.set", "flowforge.webhook")["compatible"] is False
        result = registry.compatibility("flowforge.set", "flowforge.nope")
        assert result == {"compatible": False, "reason": "Unknown node type: flowforge.nope"}


class TestValidateConfiguration:
    def test_valid_parameters(self, registry):
        assert registry.validate_configuration("flowforge.sort", {"field": "n", "direction": "desc"}) == []

    def test_missing_required(self, registry):
        errors = registry.validate_configuration("flowforge.filter", {})

        assert errors == ["Missing required parameter: field"]

    def test_wrong_kinds(self, registry):
        errors = registry.validate_configuration(
            "flowforge.sort", {"field": 3, "direction": "sideways"}
        )

        assert errors == [
            "Parameter field must be a string",
            "Parameter direction must be one of: asc, desc",
        ]

    def test_expressions_not_type_checked(self, registry):
        assert registry.validate_configuration("flowforge.sort", {"field": "{{ $json.key }}"}) == []

    def test_never_raises(self, registry):
        assert registry.validate_configuration("flowforge.nope", {}) == ["Unknown node type: flowforge.nope"]
        assert registry.validate_configuration("flowforge.set", ["not", "a", "dict"]) == [
            "Parameters must be an object"
        ]
        assert registry.validate_configuration("flowforge.noOp", None) == []
