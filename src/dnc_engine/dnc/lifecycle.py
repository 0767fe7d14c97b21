"""
Lead-lifecycle collaborator notified after DNC list changes.

The lead/contact system lives outside this service. It is told when a
number opts out (cancel queued outreach, flag matching leads) and when a
number is reinstated.
"""

from typing import Protocol
from uuid import UUID

from dnc_engine.shared.logging import get_logger

logger = get_logger(__name__)


class LeadLifecycle(Protocol):
    async def on_opt_out(self, organization_id: UUID, phone_number: str, reason: str) -> None: ...

    async def on_reinstated(self, organization_id: UUID, phone_number: str) -> None: ...


class LoggingLeadLifecycle:
    """Default collaborator that only records the events."""

    async def on_opt_out(self, organization_id: UUID, phone_number: str, reason: str) -> None:
        logger.info(
            "Lead opted out",
            extra={"organization_id": str(organization_id), "phone_number": phone_number, "reason": reason},
        )

    async def on_reinstated(self, organization_id: UUID, phone_number: str) -> None:
        logger.info(
            "Lead reinstated",
            extra={"organization_id": str(organization_id), "phone_number": phone_number},
        )
