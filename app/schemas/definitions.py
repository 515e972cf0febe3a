"""
Definition Schemas for Segments and User Properties

Segment definitions are trees stored as a flat arena: one entry node plus a
list of auxiliary nodes that composite nodes reference by id.

Example:
{
    "entry_node": {"id": "root", "type": "And", "children": ["a", "b"]},
    "nodes": [
        {"id": "a", "type": "Trait", "path": "plan",
         "operator": {"type": "Equals", "value": "pro"}},
        {"id": "b", "type": "Not", "child": "c"},
        {"id": "c", "type": "Trait", "path": "email",
         "operator": {"type": "Exists"}}
    ]
}
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field


class SegmentNodeType(str, Enum):
    TRAIT = "Trait"
    PERFORMED = "Performed"
    MANUAL = "Manual"
    EVERYONE = "Everyone"
    AND = "And"
    OR = "Or"
    NOT = "Not"


class SegmentOperatorType(str, Enum):
    EQUALS = "Equals"
    NOT_EQUALS = "NotEquals"
    EXISTS = "Exists"
    NOT_EXISTS = "NotExists"
    WITHIN = "Within"
    GREATER_THAN_OR_EQUAL = "GreaterThanOrEqual"
    LESS_THAN = "LessThan"


class UserPropertyDefinitionType(str, Enum):
    ID = "Id"
    ANONYMOUS_ID = "AnonymousId"
    TRAIT = "Trait"
    PERFORMED = "Performed"


ScalarValue = Union[str, int, float, bool]


# ============================================
# Trait operators
# ============================================


class EqualsOperator(BaseModel):
    type: Literal["Equals"] = "Equals"
    value: ScalarValue


class NotEqualsOperator(BaseModel):
    type: Literal["NotEquals"] = "NotEquals"
    value: ScalarValue


class ExistsOperator(BaseModel):
    type: Literal["Exists"] = "Exists"


class NotExistsOperator(BaseModel):
    type: Literal["NotExists"] = "NotExists"


class WithinOperator(BaseModel):
    """Trait holds a timestamp no older than window_seconds at evaluation time."""
    type: Literal["Within"] = "Within"
    window_seconds: int = Field(..., gt=0)


class GreaterThanOrEqualOperator(BaseModel):
    type: Literal["GreaterThanOrEqual"] = "GreaterThanOrEqual"
    value: float


class LessThanOperator(BaseModel):
    type: Literal["LessThan"] = "LessThan"
    value: float


SegmentOperator = Annotated[
    Union[
        EqualsOperator,
        NotEqualsOperator,
        ExistsOperator,
        NotExistsOperator,
        WithinOperator,
        GreaterThanOrEqualOperator,
        LessThanOperator,
    ],
    Field(discriminator="type"),
]


# ============================================
# Segment nodes
# ============================================


class TraitSegmentNode(BaseModel):
    id: str = Field(..., min_length=1)
    type: Literal["Trait"] = "Trait"
    path: str = Field(..., min_length=1, description="Dotted path into the user's traits")
    operator: SegmentOperator


class PerformedPropertyFilter(BaseModel):
    path: str = Field(..., min_length=1)
    operator: Annotated[Union[EqualsOperator, ExistsOperator], Field(discriminator="type")]


class PerformedSegmentNode(BaseModel):
    id: str = Field(..., min_length=1)
    type: Literal["Performed"] = "Performed"
    event: str = Field(..., min_length=1)
    times: int = Field(1, ge=0)
    times_operator: Literal["Equals", "GreaterThanOrEqual", "LessThan"] = "GreaterThanOrEqual"
    within_seconds: Optional[int] = Field(None, gt=0)
    properties: list[PerformedPropertyFilter] = Field(default_factory=list)


class ManualSegmentNode(BaseModel):
    id: str = Field(..., min_length=1)
    type: Literal["Manual"] = "Manual"
    version: int = Field(..., ge=0)


class EveryoneSegmentNode(BaseModel):
    id: str = Field(..., min_length=1)
    type: Literal["Everyone"] = "Everyone"


class AndSegmentNode(BaseModel):
    id: str = Field(..., min_length=1)
    type: Literal["And"] = "And"
    children: list[str] = Field(..., min_length=1)


class OrSegmentNode(BaseModel):
    id: str = Field(..., min_length=1)
    type: Literal["Or"] = "Or"
    children: list[str] = Field(..., min_length=1)


class NotSegmentNode(BaseModel):
    id: str = Field(..., min_length=1)
    type: Literal["Not"] = "Not"
    child: str = Field(..., min_length=1)


SegmentNode = Annotated[
    Union[
        TraitSegmentNode,
        PerformedSegmentNode,
        ManualSegmentNode,
        EveryoneSegmentNode,
        AndSegmentNode,
        OrSegmentNode,
        NotSegmentNode,
    ],
    Field(discriminator="type"),
]


class SegmentDefinition(BaseModel):
    entry_node: SegmentNode
    nodes: list[SegmentNode] = Field(default_factory=list)


# ============================================
# User property definitions
# ============================================


class IdUserPropertyDefinition(BaseModel):
    type: Literal["Id"] = "Id"


class AnonymousIdUserPropertyDefinition(BaseModel):
    type: Literal["AnonymousId"] = "AnonymousId"


class TraitUserPropertyDefinition(BaseModel):
    type: Literal["Trait"] = "Trait"
    path: str = Field(..., min_length=1)


class PerformedUserPropertyDefinition(BaseModel):
    """Value at `path` in the properties of the latest matching track event."""
    type: Literal["Performed"] = "Performed"
    event: str = Field(..., min_length=1)
    path: str = Field(..., min_length=1)


UserPropertyDefinition = Annotated[
    Union[
        IdUserPropertyDefinition,
        AnonymousIdUserPropertyDefinition,
        TraitUserPropertyDefinition,
        PerformedUserPropertyDefinition,
    ],
    Field(discriminator="type"),
]


# ============================================
# Validation errors
# ============================================


class DefinitionValidationErrorType(str, Enum):
    MISSING_ENTRY_NODE = "MissingEntryNode"
    MALFORMED_NODE = "MalformedNode"
    DUPLICATE_NODE_ID = "DuplicateNodeId"
    DANGLING_REFERENCE = "DanglingReference"
    CYCLE = "Cycle"


class DefinitionValidationError(BaseModel):
    type: DefinitionValidationErrorType
    message: str
    node_id: Optional[str] = None
    details: Optional[list[dict[str, Any]]] = None
