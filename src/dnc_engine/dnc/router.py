"""
API router for the DNC list, call-time checks and compliance reporting.
"""

from datetime import datetime, timedelta
from typing import Annotated

from fastapi import APIRouter, Body, Depends, Query, status
from fastapi.responses import StreamingResponse

from dnc_engine.auth.middleware import CurrentUser
from dnc_engine.auth.rbac import require_admin, require_agent, require_manager
from dnc_engine.dnc.dependencies import (
    bulk_rate_limit,
    check_rate_limit,
    get_call_gate,
    get_compliance_service,
    get_optout_detector,
    get_optout_handler,
    mutation_rate_limit,
    read_rate_limit,
    rebuild_rate_limit,
)
from dnc_engine.dnc.gate import CallBlockingGate, DialDecision
from dnc_engine.dnc.models import DncReason, utcnow
from dnc_engine.dnc.optout import OptOutDetector, OptOutResult, TranscriptJob, TranscriptOptOutHandler
from dnc_engine.dnc.schemas import (
    AuditEntryResponse,
    BloomStatsResponse,
    ComplianceReportResponse,
    ComplianceReportSummary,
    DialAuthorizationRequest,
    DialDecisionResponse,
    DncAddResponse,
    DncCheckResponse,
    DncCreateRequest,
    DncEntryResponse,
    DncListResponse,
    DncRemoveRequest,
    DncRemoveResponse,
    OptOutAnalysisResponse,
    OverrideRequest,
    RebuildResponse,
    ScrubItemResponse,
    ScrubRequest,
    ScrubResponse,
    TranscriptAnalysisRequest,
    TranscriptBatchRequest,
    TranscriptBatchResponse,
    TranscriptBatchResult,
    TranscriptSegmentRequest,
    TranscriptSegmentResponse,
)
from dnc_engine.dnc.service import ComplianceService
from dnc_engine.shared.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/api/dnc", tags=["dnc"])

Service = Annotated[ComplianceService, Depends(get_compliance_service)]


def _decision_response(decision: DialDecision) -> DialDecisionResponse:
    return DialDecisionResponse(
        allowed=decision.allowed,
        phone_number=decision.phone_number,
        check_method=decision.check_method,
        override=decision.override,
        on_list=decision.on_list,
    )


def _analysis_fields(result: OptOutResult) -> dict:
    return {
        "opt_out_detected": result.opt_out_detected,
        "confidence": result.confidence,
        "detected_phrase": result.detected_phrase,
        "recommended_response": result.recommended_response,
        "method": result.method,
    }


@router.post(
    "",
    response_model=DncAddResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Add phone number to the DNC list",
)
async def add_to_dnc(
    request: DncCreateRequest,
    current_user: Annotated[CurrentUser, Depends(require_agent)],
    service: Service,
    _: Annotated[None, Depends(mutation_rate_limit)],
) -> DncAddResponse:
    """Add a number; re-adding an active number refreshes it instead of failing."""
    result = await service.add(
        request.phone_number,
        request.reason,
        str(current_user.id),
        current_user.organization_id,
        source=request.source,
        notes=request.notes,
        detected_phrase=request.detected_phrase,
        expires_at=request.expires_at,
    )
    entry = DncEntryResponse.model_validate(result.entry)
    return DncAddResponse(**entry.model_dump(), created=result.created)


@router.get(
    "/check",
    response_model=DncCheckResponse,
    summary="Check whether a phone number may be called",
)
async def check_dnc(
    phone_number: Annotated[str, Query(alias="phoneNumber", min_length=1, max_length=50)],
    current_user: Annotated[CurrentUser, Depends(require_agent)],
    service: Service,
    _: Annotated[None, Depends(check_rate_limit)],
) -> DncCheckResponse:
    result = await service.check(phone_number, current_user.organization_id)
    return DncCheckResponse(
        phone_number=result.phone_number,
        on_list=result.on_list,
        reason=result.reason,
        added_at=result.added_at,
        can_call=result.can_call,
        check_method=result.method,
    )


@router.delete(
    "",
    response_model=DncRemoveResponse,
    summary="Remove phone number from the DNC list",
    description="Admin only. Every attempt, denied ones included, is written to the audit log.",
)
async def remove_from_dnc(
    phone_number: Annotated[str, Query(alias="phoneNumber", min_length=1, max_length=50)],
    request: Annotated[DncRemoveRequest, Body()],
    current_user: Annotated[CurrentUser, Depends(require_agent)],
    service: Service,
    _: Annotated[None, Depends(mutation_rate_limit)],
) -> DncRemoveResponse:
    result = await service.remove(
        phone_number,
        current_user.organization_id,
        str(current_user.id),
        current_user.role,
        request.reason,
    )
    return DncRemoveResponse(
        phone_number=result.entry.phone_number,
        consistency_window_seconds=result.consistency_window_seconds,
    )


@router.get(
    "",
    response_model=DncListResponse,
    summary="List DNC entries",
)
async def list_dnc(
    current_user: Annotated[CurrentUser, Depends(require_manager)],
    service: Service,
    _: Annotated[None, Depends(read_rate_limit)],
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=500)] = 50,
    reason: Annotated[DncReason | None, Query()] = None,
    source: Annotated[str | None, Query(max_length=100)] = None,
    start_date: Annotated[datetime | None, Query(alias="startDate")] = None,
    end_date: Annotated[datetime | None, Query(alias="endDate")] = None,
    search: Annotated[str | None, Query(max_length=100)] = None,
) -> DncListResponse:
    result = await service.list_entries(
        current_user.organization_id,
        page=page,
        limit=limit,
        reason=reason,
        source=source,
        start_date=start_date,
        end_date=end_date,
        search=search,
    )
    return DncListResponse(
        items=[DncEntryResponse.model_validate(e) for e in result.items],
        total=result.total,
        page=result.page,
        limit=result.limit,
        pages=result.pages,
        has_next=result.has_next,
        has_prev=result.has_prev,
    )


@router.post(
    "/scrub",
    response_model=ScrubResponse,
    summary="Scrub a lead list against the DNC list",
)
async def scrub_lead_list(
    request: ScrubRequest,
    current_user: Annotated[CurrentUser, Depends(require_manager)],
    service: Service,
    _: Annotated[None, Depends(bulk_rate_limit)],
) -> ScrubResponse:
    result = await service.scrub_lead_list(request.phone_numbers, current_user.organization_id)
    return ScrubResponse(
        total=result.total,
        dnc_count=result.dnc_count,
        clean_count=result.clean_count,
        invalid_count=result.invalid_count,
        dnc_numbers=result.dnc_numbers,
        clean_numbers=result.clean_numbers,
        invalid_numbers=result.invalid_numbers,
        results=[
            ScrubItemResponse(input=i.input, phone_number=i.phone_number, status=i.status)
            for i in result.items
        ],
    )


@router.get(
    "/compliance-report",
    response_model=ComplianceReportResponse,
    summary="Compliance report for a date range",
)
async def compliance_report(
    current_user: Annotated[CurrentUser, Depends(require_manager)],
    service: Service,
    _: Annotated[None, Depends(read_rate_limit)],
    start_date: Annotated[datetime | None, Query(alias="startDate")] = None,
    end_date: Annotated[datetime | None, Query(alias="endDate")] = None,
) -> ComplianceReportResponse:
    """Defaults to the last 30 days."""
    end = end_date or utcnow()
    start = start_date or end - timedelta(days=30)
    report = await service.compliance_report(current_user.organization_id, start, end)
    return ComplianceReportResponse(
        organization_id=report.organization_id,
        start_date=report.start_date,
        end_date=report.end_date,
        summary=ComplianceReportSummary(
            total_additions=report.total_additions,
            total_removals=report.removals,
            blocked_call_attempts=report.blocked_call_attempts,
            overrides=report.overrides,
            auto_detected=report.auto_detected,
            manual_additions=report.manual_additions,
            additions_by_reason=report.additions_by_reason,
        ),
        compliance_score=report.compliance_score,
        additions=[DncEntryResponse.model_validate(e) for e in report.recent_additions],
        removals=[AuditEntryResponse.model_validate(a) for a in report.recent_removals],
        generated_at=report.generated_at,
    )


@router.post(
    "/export",
    summary="Export the DNC list as CSV",
    response_class=StreamingResponse,
)
async def export_dnc(
    current_user: Annotated[CurrentUser, Depends(require_manager)],
    service: Service,
    _: Annotated[None, Depends(bulk_rate_limit)],
) -> StreamingResponse:
    filename = f"dnc-list-{utcnow().strftime('%Y%m%d')}.csv"
    logger.info(
        "DNC export requested",
        extra={"user_id": str(current_user.id), "organization_id": str(current_user.organization_id)},
    )
    return StreamingResponse(
        service.export_csv(current_user.organization_id),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get(
    "/bloom-stats",
    response_model=BloomStatsResponse,
    summary="Membership filter statistics",
)
async def bloom_stats(
    current_user: Annotated[CurrentUser, Depends(require_agent)],
    service: Service,
    _: Annotated[None, Depends(read_rate_limit)],
) -> BloomStatsResponse:
    return BloomStatsResponse(**await service.get_bloom_stats())


@router.post(
    "/rebuild-bloom-filter",
    response_model=RebuildResponse,
    summary="Rebuild the membership filter from the store",
)
async def rebuild_bloom_filter(
    current_user: Annotated[CurrentUser, Depends(require_admin)],
    service: Service,
    _: Annotated[None, Depends(rebuild_rate_limit)],
) -> RebuildResponse:
    result = await service.rebuild_filter()
    logger.info(
        "Membership filter rebuild requested",
        extra={"user_id": str(current_user.id), "count": result.count},
    )
    return RebuildResponse(
        count=result.count,
        implementation=result.implementation,
        duration_ms=result.duration_ms,
        rebuilt_at=result.rebuilt_at,
    )


@router.post(
    "/analyze-transcript",
    response_model=OptOutAnalysisResponse,
    summary="Analyze a transcript for opt-out intent without recording it",
)
async def analyze_transcript(
    request: TranscriptAnalysisRequest,
    current_user: Annotated[CurrentUser, Depends(require_agent)],
    detector: Annotated[OptOutDetector, Depends(get_optout_detector)],
    _: Annotated[None, Depends(read_rate_limit)],
) -> OptOutAnalysisResponse:
    result = await detector.analyze(request.transcript, context=request.context)
    return OptOutAnalysisResponse(**_analysis_fields(result))


@router.post(
    "/analyze-transcripts",
    response_model=TranscriptBatchResponse,
    summary="Analyze several transcripts for opt-out intent without recording them",
)
async def analyze_transcripts(
    request: TranscriptBatchRequest,
    current_user: Annotated[CurrentUser, Depends(require_agent)],
    detector: Annotated[OptOutDetector, Depends(get_optout_detector)],
    _: Annotated[None, Depends(read_rate_limit)],
) -> TranscriptBatchResponse:
    items = await detector.batch_analyze(
        [TranscriptJob(item.id, item.transcript, item.context) for item in request.transcripts]
    )
    results = []
    for item in items:
        if item.result is None:
            results.append(
                TranscriptBatchResult(
                    id=item.id,
                    opt_out_detected=False,
                    confidence=0.0,
                    detected_phrase=None,
                    recommended_response=None,
                    method="none",
                    error=item.error,
                )
            )
        else:
            results.append(TranscriptBatchResult(id=item.id, **_analysis_fields(item.result)))
    return TranscriptBatchResponse(results=results)


@router.post(
    "/transcript-segments",
    response_model=TranscriptSegmentResponse,
    summary="Analyze a live transcript segment and record a detected opt-out",
)
async def handle_transcript_segment(
    request: TranscriptSegmentRequest,
    current_user: Annotated[CurrentUser, Depends(require_agent)],
    handler: Annotated[TranscriptOptOutHandler, Depends(get_optout_handler)],
    _: Annotated[None, Depends(mutation_rate_limit)],
) -> TranscriptSegmentResponse:
    result = await handler.handle_segment(
        request.phone_number,
        current_user.organization_id,
        request.segment,
        transcript_so_far=request.transcript_so_far,
        call_id=request.call_id,
        context=request.context,
        actor_id=str(current_user.id),
    )
    return TranscriptSegmentResponse(
        **_analysis_fields(result.analysis),
        recorded=result.recorded,
        entry_id=result.entry.id if result.entry is not None else None,
        false_positive=result.false_positive,
    )


@router.post(
    "/dial-authorizations",
    response_model=DialDecisionResponse,
    summary="Authorize a dial attempt",
    description="Returns 403 with code LEAD_ON_DNC_LIST or DNC_CHECK_FAILED when the call must not be placed.",
)
async def authorize_dial(
    request: DialAuthorizationRequest,
    current_user: Annotated[CurrentUser, Depends(require_agent)],
    gate: Annotated[CallBlockingGate, Depends(get_call_gate)],
    _: Annotated[None, Depends(check_rate_limit)],
) -> DialDecisionResponse:
    decision = await gate.authorize_dial(
        request.phone_number,
        current_user.organization_id,
        str(current_user.id),
        lead_id=request.lead_id,
        context=request.context,
    )
    return _decision_response(decision)


@router.post(
    "/overrides",
    response_model=DialDecisionResponse,
    summary="One-time override of a DNC block",
)
async def override_block(
    request: OverrideRequest,
    current_user: Annotated[CurrentUser, Depends(require_agent)],
    gate: Annotated[CallBlockingGate, Depends(get_call_gate)],
    _: Annotated[None, Depends(mutation_rate_limit)],
) -> DialDecisionResponse:
    decision = await gate.override(
        request.phone_number,
        current_user.organization_id,
        str(current_user.id),
        current_user.role,
        request.justification,
        request.consent_documented,
    )
    return _decision_response(decision)
