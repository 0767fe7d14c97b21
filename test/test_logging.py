"""
Tests for structured JSON logging.
"""

import json
import logging
from uuid import UUID

import pytest

from dnc_engine.dnc.models import SOURCE_MANUAL_ENTRY, DncReason
from dnc_engine.dnc.service import ComplianceService
from dnc_engine.dnc.store import ComplianceStore
from dnc_engine.shared.logging import StructuredFormatter, correlation_id_var


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord("dnc_engine.test", logging.INFO, __file__, 1, "Number added", None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestStructuredFormatter:
    def test_extra_fields_are_emitted(self) -> None:
        line = StructuredFormatter().format(_record(phone_number="+12125551234", entry_created=True))
        data = json.loads(line)

        assert data["message"] == "Number added"
        assert data["level"] == "INFO"
        assert data["logger"] == "dnc_engine.test"
        assert data["phone_number"] == "+12125551234"
        assert data["entry_created"] is True

    def test_correlation_id_included(self) -> None:
        token = correlation_id_var.set("req-9")
        try:
            data = json.loads(StructuredFormatter().format(_record()))
        finally:
            correlation_id_var.reset(token)

        assert data["correlation_id"] == "req-9"

    def test_colliding_extra_is_prefixed(self) -> None:
        data = json.loads(StructuredFormatter().format(_record(level="custom")))

        assert data["level"] == "INFO"
        assert data["extra_level"] == "custom"


class TestMutationLogging:
    @pytest.mark.asyncio
    async def test_store_add_logs_entry_created(
        self, store: ComplianceStore, organization_id: UUID, caplog: pytest.LogCaptureFixture
    ) -> None:
        with caplog.at_level(logging.INFO, logger="dnc_engine.dnc.store"):
            await store.add("+12125551234", DncReason.MANUAL, SOURCE_MANUAL_ENTRY, "agent-1", organization_id)

        stored = [r for r in caplog.records if r.getMessage() == "DNC entry stored"]
        assert len(stored) == 1
        assert stored[0].entry_created is True

    @pytest.mark.asyncio
    async def test_service_add_logs_and_reaches_filter(
        self, service: ComplianceService, organization_id: UUID, caplog: pytest.LogCaptureFixture
    ) -> None:
        with caplog.at_level(logging.INFO, logger="dnc_engine.dnc.service"):
            await service.add("+12125551234", DncReason.MANUAL, "agent-1", organization_id)

        added = [r for r in caplog.records if r.getMessage() == "Number added to DNC list"]
        assert len(added) == 1
        assert added[0].entry_created is True
        assert (await service.check("+12125551234", organization_id)).on_list is True
