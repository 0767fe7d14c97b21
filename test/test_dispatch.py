"""
Tests for gated call dispatch.
"""

from uuid import UUID

import pytest

from dnc_engine.calls.dispatch import DispatchRequest, GatedCallDispatcher
from dnc_engine.dnc.audit import AuditLog
from dnc_engine.dnc.gate import BLOCK_CODE_ON_LIST, CallBlockingGate
from dnc_engine.dnc.models import DncReason
from dnc_engine.dnc.service import ComplianceService
from dnc_engine.shared.exceptions import AuthorizationError
from fakes import FakeDialer

PHONE = "+12125551234"


@pytest.fixture
def dialer() -> FakeDialer:
    return FakeDialer()


@pytest.fixture
def dispatcher(service: ComplianceService, audit_log: AuditLog, dialer: FakeDialer) -> GatedCallDispatcher:
    return GatedCallDispatcher(CallBlockingGate(service, audit_log), dialer)


class TestGatedCallDispatcher:
    @pytest.mark.asyncio
    async def test_clean_number_is_dialed(
        self, dispatcher: GatedCallDispatcher, dialer: FakeDialer, organization_id: UUID
    ) -> None:
        request = DispatchRequest(
            phone_number="(212) 555-1234",
            organization_id=organization_id,
            actor_id="scheduler",
            lead_id="lead-1",
            metadata={"campaign_id": "c-9"},
        )

        result = await dispatcher.dispatch(request)

        assert result.dispatched is True
        assert result.call_id == "CA0001"
        to_number, metadata = dialer.calls[0]
        assert to_number == PHONE
        assert metadata["campaign_id"] == "c-9"
        assert metadata["lead_id"] == "lead-1"
        assert metadata["dnc_check_method"] == "filter"
        assert "dnc_override" not in metadata

    @pytest.mark.asyncio
    async def test_listed_number_is_never_dialed(
        self,
        dispatcher: GatedCallDispatcher,
        dialer: FakeDialer,
        service: ComplianceService,
        organization_id: UUID,
    ) -> None:
        await service.add(PHONE, DncReason.LEAD_REQUESTED, "agent-1", organization_id)

        result = await dispatcher.dispatch(DispatchRequest(PHONE, organization_id, "scheduler", lead_id="lead-1"))

        assert result.dispatched is False
        assert result.block_code == BLOCK_CODE_ON_LIST
        assert result.call_id is None
        assert dialer.calls == []

    @pytest.mark.asyncio
    async def test_override_dials_listed_number(
        self,
        dispatcher: GatedCallDispatcher,
        dialer: FakeDialer,
        service: ComplianceService,
        organization_id: UUID,
    ) -> None:
        await service.add(PHONE, DncReason.LEAD_REQUESTED, "agent-1", organization_id)

        result = await dispatcher.dispatch_with_override(
            DispatchRequest(PHONE, organization_id, "admin-1"),
            "admin",
            "Written consent received from the lead on 2026-10-01",
            True,
        )

        assert result.dispatched is True
        assert result.decision is not None and result.decision.override is True
        assert dialer.calls[0][1]["dnc_override"] == "true"

    @pytest.mark.asyncio
    async def test_override_denied_for_agent(
        self, dispatcher: GatedCallDispatcher, dialer: FakeDialer, organization_id: UUID
    ) -> None:
        with pytest.raises(AuthorizationError):
            await dispatcher.dispatch_with_override(
                DispatchRequest(PHONE, organization_id, "agent-1"),
                "agent",
                "Written consent received from the lead on 2026-10-01",
                True,
            )

        assert dialer.calls == []
