from app.schemas.definitions import (
    SegmentDefinition,
    SegmentNode,
    UserPropertyDefinition,
    DefinitionValidationError,
    DefinitionValidationErrorType,
)
from app.schemas.computed_properties import (
    UpsertSegmentRequest,
    SegmentResponse,
    SegmentListResponse,
    UpsertUserPropertyRequest,
    UserPropertyResponse,
    UserPropertyListResponse,
    UpsertValidationError,
    UpsertValidationErrorType,
    PeriodStatus,
    Freshness,
    EventBatchRequest,
    EventBatchResponse,
)

__all__ = [
    "SegmentDefinition",
    "SegmentNode",
    "UserPropertyDefinition",
    "DefinitionValidationError",
    "DefinitionValidationErrorType",
    "UpsertSegmentRequest",
    "SegmentResponse",
    "SegmentListResponse",
    "UpsertUserPropertyRequest",
    "UserPropertyResponse",
    "UserPropertyListResponse",
    "UpsertValidationError",
    "UpsertValidationErrorType",
    "PeriodStatus",
    "Freshness",
    "EventBatchRequest",
    "EventBatchResponse",
]
