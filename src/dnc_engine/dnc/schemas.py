"""
Pydantic schemas for the DNC API.

Field names are snake_case in Python and camelCase on the wire.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from dnc_engine.dnc.models import SOURCE_MANUAL_ENTRY, AuditAction, DncReason, as_utc


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DncCreateRequest(CamelModel):
    phone_number: str = Field(..., min_length=1, max_length=50, description="Phone number in any common format")
    reason: DncReason = Field(..., description="Why the number is being listed")
    source: str = Field(default=SOURCE_MANUAL_ENTRY, max_length=100)
    notes: str | None = Field(default=None, max_length=2000)
    detected_phrase: str | None = Field(default=None, max_length=2000)
    expires_at: datetime | None = Field(default=None, description="Omit for a permanent entry")


class DncRemoveRequest(CamelModel):
    reason: str = Field(..., min_length=1, max_length=2000, description="Why the number is being reinstated")


class DncEntryResponse(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    id: UUID
    organization_id: UUID
    phone_number: str
    reason: DncReason
    source: str
    detected_phrase: str | None
    notes: str | None
    added_by_user_id: str
    added_at: datetime
    updated_at: datetime
    expires_at: datetime | None
    consent_withdrawal_documented: bool

    @field_validator("added_at", "updated_at", "expires_at")
    @classmethod
    def attach_utc(cls, v: datetime | None) -> datetime | None:
        return as_utc(v)


class DncAddResponse(DncEntryResponse):
    created: bool = Field(..., description="False when an existing entry was refreshed")


class DncCheckResponse(CamelModel):
    phone_number: str
    on_list: bool
    reason: str | None
    added_at: datetime | None
    can_call: bool
    check_method: str


class DncRemoveResponse(CamelModel):
    phone_number: str
    removed: bool = True
    consistency_window_seconds: float


class DncListResponse(CamelModel):
    items: list[DncEntryResponse]
    total: int
    page: int
    limit: int
    pages: int
    has_next: bool
    has_prev: bool


class ScrubRequest(CamelModel):
    phone_numbers: list[str] = Field(..., min_length=1)


class ScrubItemResponse(CamelModel):
    input: str
    phone_number: str | None
    status: str


class ScrubResponse(CamelModel):
    total: int
    dnc_count: int
    clean_count: int
    invalid_count: int
    dnc_numbers: list[str]
    clean_numbers: list[str]
    invalid_numbers: list[str]
    results: list[ScrubItemResponse]


class AuditEntryResponse(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    id: UUID
    action: AuditAction
    phone_number: str
    actor_id: str
    reason: str | None
    details: dict[str, Any]
    created_at: datetime

    @field_validator("created_at")
    @classmethod
    def attach_utc(cls, v: datetime) -> datetime | None:
        return as_utc(v)


class ComplianceReportSummary(CamelModel):
    total_additions: int
    total_removals: int
    blocked_call_attempts: int
    overrides: int
    auto_detected: int
    manual_additions: int
    additions_by_reason: dict[str, int]


class ComplianceReportResponse(CamelModel):
    organization_id: UUID
    start_date: datetime
    end_date: datetime
    summary: ComplianceReportSummary
    compliance_score: int
    additions: list[DncEntryResponse]
    removals: list[AuditEntryResponse]
    generated_at: datetime


class BloomStatsResponse(CamelModel):
    count: int
    implementation: str
    capacity: int | None
    target_error_rate: float
    estimated_false_positive_rate: float
    ready: bool
    degraded: bool
    last_rebuilt_at: datetime | None
    consistency_window_seconds: float


class RebuildResponse(CamelModel):
    count: int
    implementation: str
    duration_ms: float
    rebuilt_at: datetime


class TranscriptAnalysisRequest(CamelModel):
    transcript: str = Field(..., min_length=1, max_length=100_000)
    context: dict[str, Any] = Field(default_factory=dict)


class TranscriptSegmentRequest(CamelModel):
    phone_number: str = Field(..., min_length=1, max_length=50)
    segment: str = Field(..., min_length=1, max_length=20_000)
    transcript_so_far: str = Field(default="", max_length=100_000)
    call_id: str | None = Field(default=None, max_length=255)
    context: dict[str, Any] = Field(default_factory=dict)


class OptOutAnalysisResponse(CamelModel):
    opt_out_detected: bool
    confidence: float
    detected_phrase: str | None
    recommended_response: str | None
    method: str


class TranscriptSegmentResponse(OptOutAnalysisResponse):
    recorded: bool
    entry_id: UUID | None = None
    false_positive: bool = False


class TranscriptBatchItem(CamelModel):
    id: str = Field(..., min_length=1, max_length=255)
    transcript: str = Field(..., min_length=1, max_length=100_000)
    context: dict[str, Any] = Field(default_factory=dict)


class TranscriptBatchRequest(CamelModel):
    transcripts: list[TranscriptBatchItem] = Field(..., min_length=1, max_length=100)


class TranscriptBatchResult(OptOutAnalysisResponse):
    id: str
    error: str | None = None


class TranscriptBatchResponse(CamelModel):
    results: list[TranscriptBatchResult]


class DialAuthorizationRequest(CamelModel):
    phone_number: str = Field(..., min_length=1, max_length=50)
    lead_id: str | None = Field(default=None, max_length=255)
    context: dict[str, Any] = Field(default_factory=dict)


class OverrideRequest(CamelModel):
    phone_number: str = Field(..., min_length=1, max_length=50)
    justification: str = Field(..., min_length=1, max_length=2000)
    consent_documented: bool = False


class DialDecisionResponse(CamelModel):
    allowed: bool
    phone_number: str
    check_method: str | None
    override: bool
    on_list: bool
