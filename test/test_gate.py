"""
Tests for the call-blocking gate.
"""

from uuid import UUID

import pytest

from dnc_engine.dnc.audit import AuditLog
from dnc_engine.dnc.gate import BLOCK_CODE_CHECK_FAILED, BLOCK_CODE_ON_LIST, CallBlockingGate
from dnc_engine.dnc.models import AUDIT_OUTCOME_FAILED, AuditAction, DncReason
from dnc_engine.dnc.service import ComplianceService
from dnc_engine.shared.exceptions import (
    AuthorizationError,
    CallBlockedError,
    StoreUnavailableError,
    ValidationError,
)

PHONE = "+12125551234"
JUSTIFICATION = "Customer re-consented in writing on 2026-10-01"


@pytest.fixture
def gate(service: ComplianceService, audit_log: AuditLog) -> CallBlockingGate:
    return CallBlockingGate(service, audit_log, audit_allowed_checks=True, min_justification_length=20)


class TestAuthorizeDial:
    @pytest.mark.asyncio
    async def test_clean_number_allowed_and_audited(
        self, gate: CallBlockingGate, audit_log: AuditLog, organization_id: UUID
    ) -> None:
        decision = await gate.authorize_dial("212-555-1234", organization_id, "agent-1", lead_id="lead-7")

        assert decision.allowed is True
        assert decision.phone_number == PHONE
        assert decision.override is False
        records = await audit_log.entries(organization_id, action=AuditAction.CHECK_ALLOWED)
        assert len(records) == 1
        assert records[0].details["lead_id"] == "lead-7"

    @pytest.mark.asyncio
    async def test_listed_number_blocked(
        self,
        gate: CallBlockingGate,
        service: ComplianceService,
        audit_log: AuditLog,
        organization_id: UUID,
    ) -> None:
        await service.add(PHONE, DncReason.LEAD_REQUESTED, "agent-1", organization_id)

        with pytest.raises(CallBlockedError) as exc_info:
            await gate.authorize_dial(PHONE, organization_id, "agent-1", lead_id="lead-7")

        assert exc_info.value.code == BLOCK_CODE_ON_LIST
        assert exc_info.value.status_code == 403
        records = await audit_log.entries(organization_id, action=AuditAction.CHECK_BLOCKED)
        assert len(records) == 1
        assert records[0].reason == "lead_requested"

    @pytest.mark.asyncio
    async def test_store_failure_fails_closed(
        self,
        gate: CallBlockingGate,
        service: ComplianceService,
        audit_log: AuditLog,
        organization_id: UUID,
        monkeypatch,
    ) -> None:
        async def unavailable(*args, **kwargs):
            raise StoreUnavailableError("Compliance store is unavailable")

        monkeypatch.setattr(service, "check", unavailable)

        with pytest.raises(CallBlockedError) as exc_info:
            await gate.authorize_dial(PHONE, organization_id, "agent-1")

        assert exc_info.value.code == BLOCK_CODE_CHECK_FAILED
        records = await audit_log.entries(organization_id, action=AuditAction.CHECK_BLOCKED)
        assert records[0].details["fail_closed"] is True

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_closed(
        self, gate: CallBlockingGate, service: ComplianceService, organization_id: UUID, monkeypatch
    ) -> None:
        async def broken(*args, **kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr(service, "check", broken)

        with pytest.raises(CallBlockedError) as exc_info:
            await gate.authorize_dial(PHONE, organization_id, "agent-1")

        assert exc_info.value.code == BLOCK_CODE_CHECK_FAILED

    @pytest.mark.asyncio
    async def test_invalid_number_blocked(self, gate: CallBlockingGate, organization_id: UUID) -> None:
        with pytest.raises(CallBlockedError) as exc_info:
            await gate.authorize_dial("not a phone", organization_id, "agent-1")

        assert exc_info.value.code == BLOCK_CODE_CHECK_FAILED

    @pytest.mark.asyncio
    async def test_allowed_checks_not_audited_when_disabled(
        self, service: ComplianceService, audit_log: AuditLog, organization_id: UUID
    ) -> None:
        quiet = CallBlockingGate(service, audit_log, audit_allowed_checks=False)

        await quiet.authorize_dial(PHONE, organization_id, "agent-1")

        assert await audit_log.entries(organization_id) == []


class TestOverride:
    @pytest.mark.asyncio
    async def test_admin_override_allows_single_dial(
        self,
        gate: CallBlockingGate,
        service: ComplianceService,
        audit_log: AuditLog,
        organization_id: UUID,
    ) -> None:
        await service.add(PHONE, DncReason.LEAD_REQUESTED, "agent-1", organization_id)

        decision = await gate.override(PHONE, organization_id, "admin-1", "admin", JUSTIFICATION, True)

        assert decision.allowed is True
        assert decision.override is True
        assert decision.on_list is True
        records = await audit_log.entries(organization_id, action=AuditAction.OVERRIDE)
        assert len(records) == 1
        assert records[0].reason == JUSTIFICATION
        assert records[0].details["consent_documented"] is True

        # the entry stays; the next ordinary dial is still blocked
        with pytest.raises(CallBlockedError):
            await gate.authorize_dial(PHONE, organization_id, "agent-1")

    @pytest.mark.asyncio
    async def test_non_admin_override_is_denied_and_audited(
        self, gate: CallBlockingGate, audit_log: AuditLog, organization_id: UUID
    ) -> None:
        with pytest.raises(AuthorizationError):
            await gate.override(PHONE, organization_id, "manager-1", "manager", JUSTIFICATION, True)

        records = await audit_log.entries(organization_id, action=AuditAction.OVERRIDE)
        assert len(records) == 1
        assert records[0].outcome == AUDIT_OUTCOME_FAILED
        assert records[0].actor_id == "manager-1"
        assert records[0].details["actor_role"] == "manager"

    @pytest.mark.asyncio
    async def test_short_justification_rejected(self, gate: CallBlockingGate, organization_id: UUID) -> None:
        with pytest.raises(ValidationError):
            await gate.override(PHONE, organization_id, "admin-1", "admin", "ok", True)

    @pytest.mark.asyncio
    async def test_consent_required(self, gate: CallBlockingGate, organization_id: UUID) -> None:
        with pytest.raises(ValidationError):
            await gate.override(PHONE, organization_id, "admin-1", "admin", JUSTIFICATION, False)
