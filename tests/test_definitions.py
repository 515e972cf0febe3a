"""
Tests for segment definition parsing and validation.
"""

import pytest

from app.schemas.definitions import (
    DefinitionValidationError,
    DefinitionValidationErrorType,
    SegmentDefinition,
    TraitUserPropertyDefinition,
)
from app.services.computed_properties.definitions import (
    build_arena,
    definition_version,
    entry_is_manual,
    is_time_dependent,
    parse_segment_definition,
    parse_user_property_definition,
)
from tests.factories import TraitNodeFactory, manual_definition, segment_definition, trait_definition


class TestParseSegmentDefinition:
    """Structural validation of the node arena."""

    def test_valid_composite_definition(self):
        a = TraitNodeFactory(id="a", path="plan", operator={"type": "Equals", "value": "pro"})
        b = TraitNodeFactory(id="b", path="email", operator={"type": "Exists"})
        raw = segment_definition({"id": "root", "type": "And", "children": ["a", "b"]}, a, b)

        parsed = parse_segment_definition(raw)

        assert isinstance(parsed, SegmentDefinition)
        arena = build_arena(parsed)
        assert arena.entry.id == "root"
        assert set(arena.nodes) == {"root", "a", "b"}

    def test_missing_entry_node(self):
        error = parse_segment_definition({"nodes": []})
        assert isinstance(error, DefinitionValidationError)
        assert error.type == DefinitionValidationErrorType.MISSING_ENTRY_NODE

    def test_non_mapping_is_missing_entry_node(self):
        error = parse_segment_definition(None)
        assert error.type == DefinitionValidationErrorType.MISSING_ENTRY_NODE

    def test_unknown_node_type_is_malformed(self):
        error = parse_segment_definition({"entry_node": {"id": "x", "type": "Bogus"}})
        assert isinstance(error, DefinitionValidationError)
        assert error.type == DefinitionValidationErrorType.MALFORMED_NODE
        assert error.details

    def test_dangling_reference(self):
        raw = segment_definition({"id": "root", "type": "Or", "children": ["missing"]})
        error = parse_segment_definition(raw)
        assert error.type == DefinitionValidationErrorType.DANGLING_REFERENCE
        assert error.node_id == "root"

    def test_duplicate_node_id(self):
        raw = segment_definition(
            {"id": "root", "type": "Not", "child": "a"},
            TraitNodeFactory(id="a"),
            TraitNodeFactory(id="a"),
        )
        error = parse_segment_definition(raw)
        assert error.type == DefinitionValidationErrorType.DUPLICATE_NODE_ID

    def test_self_cycle(self):
        raw = segment_definition({"id": "root", "type": "Not", "child": "root"})
        error = parse_segment_definition(raw)
        assert error.type == DefinitionValidationErrorType.CYCLE

    def test_indirect_cycle(self):
        raw = segment_definition(
            {"id": "root", "type": "And", "children": ["a"]},
            {"id": "a", "type": "Or", "children": ["b"]},
            {"id": "b", "type": "Not", "child": "a"},
        )
        error = parse_segment_definition(raw)
        assert error.type == DefinitionValidationErrorType.CYCLE

    def test_shared_child_is_not_a_cycle(self):
        raw = segment_definition(
            {"id": "root", "type": "And", "children": ["a", "n"]},
            {"id": "n", "type": "Not", "child": "a"},
            TraitNodeFactory(id="a"),
        )
        assert isinstance(parse_segment_definition(raw), SegmentDefinition)


class TestDefinitionVersion:
    """Version tokens drive full recomputes."""

    def test_stable_for_equal_definitions(self):
        raw = trait_definition()
        first = parse_segment_definition(raw)
        second = parse_segment_definition(dict(raw))
        assert definition_version(first) == definition_version(second)

    def test_manual_version_bump_changes_token(self):
        node_id = "manual"
        v0 = manual_definition(version=0)
        v0["entry_node"]["id"] = node_id
        v1 = manual_definition(version=1)
        v1["entry_node"]["id"] = node_id
        assert definition_version(parse_segment_definition(v0)) != definition_version(
            parse_segment_definition(v1)
        )

    def test_entry_is_manual(self):
        assert entry_is_manual(parse_segment_definition(manual_definition()))
        assert not entry_is_manual(parse_segment_definition(trait_definition()))


class TestTimeDependence:
    def test_within_operator_is_time_dependent(self):
        raw = segment_definition(
            TraitNodeFactory(path="last_seen", operator={"type": "Within", "window_seconds": 60})
        )
        assert is_time_dependent(parse_segment_definition(raw))

    def test_performed_window_is_time_dependent(self):
        raw = segment_definition({"id": "p", "type": "Performed", "event": "Login", "within_seconds": 3600})
        assert is_time_dependent(parse_segment_definition(raw))

    def test_plain_trait_is_not_time_dependent(self):
        assert not is_time_dependent(parse_segment_definition(trait_definition()))


class TestParseUserPropertyDefinition:
    def test_trait(self):
        parsed = parse_user_property_definition({"type": "Trait", "path": "email"})
        assert isinstance(parsed, TraitUserPropertyDefinition)
        assert parsed.path == "email"

    @pytest.mark.parametrize("raw", [{"type": "Trait"}, {"type": "Unknown"}, {}])
    def test_malformed(self, raw):
        error = parse_user_property_definition(raw)
        assert isinstance(error, DefinitionValidationError)
        assert error.type == DefinitionValidationErrorType.MALFORMED_NODE
