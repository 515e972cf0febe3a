"""
Computed Property Schemas

Request/response models for segments, user properties, assignments, periods
and event ingestion.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.schemas.definitions import SegmentDefinition, UserPropertyDefinition


class UpsertValidationErrorType(str, Enum):
    UNIQUE_CONSTRAINT_VIOLATION = "UniqueConstraintViolation"
    INVALID_DEFINITION = "InvalidDefinition"
    NOT_FOUND = "NotFound"


class UpsertValidationError(BaseModel):
    """Returned (not raised) by upserts when the request cannot be applied."""
    type: UpsertValidationErrorType
    message: str
    details: Optional[list[dict[str, Any]]] = None


# ============================================
# Segments
# ============================================


class UpsertSegmentRequest(BaseModel):
    workspace_id: str = Field(..., min_length=1)
    id: Optional[str] = Field(None, description="Generated when omitted")
    name: str = Field(..., min_length=1, max_length=255)
    definition: dict[str, Any]


class SegmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    workspace_id: str
    name: str
    definition: SegmentDefinition
    status: str
    definition_updated_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class SegmentListResponse(BaseModel):
    items: list[SegmentResponse]
    total: int


class UpdateManualSegmentMembersRequest(BaseModel):
    workspace_id: str = Field(..., min_length=1)
    user_ids: list[str] = Field(default_factory=list)
    append: bool = Field(False, description="Keep existing members and add these")


class RecentlyUpdatedUser(BaseModel):
    user_id: str
    assigned_at: datetime


class RecentlyUpdatedUsersResponse(BaseModel):
    users: list[RecentlyUpdatedUser]
    next_assigned_since: Optional[datetime] = Field(
        None, description="assigned_at of the last row; pass back as assigned_since"
    )


# ============================================
# User properties
# ============================================


class UpsertUserPropertyRequest(BaseModel):
    workspace_id: str = Field(..., min_length=1)
    id: Optional[str] = None
    name: str = Field(..., min_length=1, max_length=255)
    definition: dict[str, Any]


class UserPropertyResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    workspace_id: str
    name: str
    definition: UserPropertyDefinition
    definition_updated_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class UserPropertyListResponse(BaseModel):
    items: list[UserPropertyResponse]
    total: int


# ============================================
# Periods / staleness
# ============================================


class Freshness(str, Enum):
    NOT_COMPUTED = "not_computed"
    STALE = "stale"
    UP_TO_DATE = "up_to_date"


class PeriodStatus(BaseModel):
    step: str
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    last_recomputed: Optional[datetime] = None
    freshness: Freshness


class PeriodStatusResponse(BaseModel):
    workspace_id: str
    periods: list[PeriodStatus]


class TriggerRecomputeRequest(BaseModel):
    workspace_id: str = Field(..., min_length=1)


class ComputeAssignmentsResponse(BaseModel):
    workspace_id: str
    period_start: Optional[datetime] = None
    period_end: datetime
    users_evaluated: int
    segment_changes: int
    user_property_changes: int
    evaluation_errors: int


# ============================================
# Events
# ============================================


class UserEventInput(BaseModel):
    message_id: str = Field(..., min_length=1)
    type: Literal["identify", "track"]
    user_id: Optional[str] = None
    anonymous_id: Optional[str] = None
    event: Optional[str] = None
    traits: Optional[dict[str, Any]] = None
    properties: Optional[dict[str, Any]] = None
    timestamp: Optional[datetime] = Field(None, description="Client event time; defaults to receipt time")


class EventBatchRequest(BaseModel):
    workspace_id: str = Field(..., min_length=1)
    batch: list[UserEventInput] = Field(..., min_length=1, max_length=1000)


class EventBatchResponse(BaseModel):
    accepted: int
    skipped: int
