"""
Definition parsing and validation.

A segment definition is validated in two passes: pydantic checks the shape of
every node, then the node arena is checked for duplicate ids, references to
ids that do not exist, and cycles. Parsing returns either a definition or a
DefinitionValidationError; it never raises on bad input.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from typing import Any, Iterator, Mapping, Union

from pydantic import TypeAdapter, ValidationError

from app.schemas.definitions import (
    AndSegmentNode,
    DefinitionValidationError,
    DefinitionValidationErrorType,
    ManualSegmentNode,
    NotSegmentNode,
    OrSegmentNode,
    PerformedSegmentNode,
    SegmentDefinition,
    SegmentNode,
    TraitSegmentNode,
    UserPropertyDefinition,
    WithinOperator,
)

_user_property_adapter: TypeAdapter = TypeAdapter(UserPropertyDefinition)


@dataclass(frozen=True)
class SegmentArena:
    """Flat id -> node mapping with the entry node as root index."""

    entry_id: str
    nodes: Mapping[str, SegmentNode]

    @property
    def entry(self) -> SegmentNode:
        return self.nodes[self.entry_id]

    def get(self, node_id: str) -> SegmentNode:
        return self.nodes[node_id]


def child_ids(node: SegmentNode) -> list[str]:
    match node:
        case AndSegmentNode(children=children) | OrSegmentNode(children=children):
            return list(children)
        case NotSegmentNode(child=child):
            return [child]
        case _:
            return []


def build_arena(definition: SegmentDefinition) -> SegmentArena:
    """Index a definition's nodes by id. Assumes the definition is valid."""
    nodes = {definition.entry_node.id: definition.entry_node}
    for node in definition.nodes:
        nodes.setdefault(node.id, node)
    return SegmentArena(entry_id=definition.entry_node.id, nodes=nodes)


def _pydantic_errors(exc: ValidationError) -> list[dict[str, Any]]:
    return [
        {
            "field": ".".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]


def validate_segment_definition(definition: SegmentDefinition) -> DefinitionValidationError | None:
    """Check the node arena: unique ids, no dangling references, no cycles."""
    seen: dict[str, SegmentNode] = {}
    for node in [definition.entry_node, *definition.nodes]:
        if node.id in seen:
            return DefinitionValidationError(
                type=DefinitionValidationErrorType.DUPLICATE_NODE_ID,
                message=f"Node id '{node.id}' is used more than once",
                node_id=node.id,
            )
        seen[node.id] = node

    for node in seen.values():
        for ref in child_ids(node):
            if ref not in seen:
                return DefinitionValidationError(
                    type=DefinitionValidationErrorType.DANGLING_REFERENCE,
                    message=f"Node '{node.id}' references missing node '{ref}'",
                    node_id=node.id,
                )

    # Iterative DFS with colouring; every node is visited so cycles among
    # nodes unreachable from the entry are rejected too.
    visiting, done = 1, 2
    state: dict[str, int] = {}
    for root in seen:
        if state.get(root) == done:
            continue
        stack: list[tuple[str, Iterator[str]]] = [(root, iter(child_ids(seen[root])))]
        state[root] = visiting
        while stack:
            node_id, children = stack[-1]
            next_id = next(children, None)
            if next_id is None:
                state[node_id] = done
                stack.pop()
                continue
            child_state = state.get(next_id)
            if child_state == visiting:
                return DefinitionValidationError(
                    type=DefinitionValidationErrorType.CYCLE,
                    message=f"Node '{node_id}' closes a cycle through '{next_id}'",
                    node_id=next_id,
                )
            if child_state is None:
                state[next_id] = visiting
                stack.append((next_id, iter(child_ids(seen[next_id]))))
    return None


def parse_segment_definition(raw: Any) -> Union[SegmentDefinition, DefinitionValidationError]:
    """Parse and validate a raw segment definition."""
    if isinstance(raw, SegmentDefinition):
        definition = raw
    else:
        if not isinstance(raw, Mapping) or raw.get("entry_node") is None:
            return DefinitionValidationError(
                type=DefinitionValidationErrorType.MISSING_ENTRY_NODE,
                message="Segment definition has no entry_node",
            )
        try:
            definition = SegmentDefinition.model_validate(raw)
        except ValidationError as exc:
            return DefinitionValidationError(
                type=DefinitionValidationErrorType.MALFORMED_NODE,
                message="Segment definition contains malformed nodes",
                details=_pydantic_errors(exc),
            )

    error = validate_segment_definition(definition)
    return error if error is not None else definition


def parse_user_property_definition(raw: Any) -> Union[UserPropertyDefinition, DefinitionValidationError]:
    try:
        return _user_property_adapter.validate_python(raw)
    except ValidationError as exc:
        return DefinitionValidationError(
            type=DefinitionValidationErrorType.MALFORMED_NODE,
            message="User property definition is malformed",
            details=_pydantic_errors(exc),
        )


def definition_version(definition: Any) -> str:
    """Stable version token for a definition: sha256 of its canonical JSON.

    Manual entry nodes carry their version in the JSON, so bumping it changes
    the token.
    """
    payload = definition.model_dump(mode="json") if hasattr(definition, "model_dump") else definition
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def entry_is_manual(definition: SegmentDefinition) -> bool:
    return isinstance(definition.entry_node, ManualSegmentNode)


def is_time_dependent(definition: SegmentDefinition) -> bool:
    """True when the result can change with the clock alone, without new events."""
    for node in build_arena(definition).nodes.values():
        match node:
            case TraitSegmentNode(operator=WithinOperator()):
                return True
            case PerformedSegmentNode(within_seconds=window) if window is not None:
                return True
    return False
