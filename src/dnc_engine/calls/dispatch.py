"""
Dispatch adapter that puts the call-blocking gate in front of the dialer.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol
from uuid import UUID

from dnc_engine.dnc.gate import CallBlockingGate, DialDecision
from dnc_engine.shared.exceptions import CallBlockedError
from dnc_engine.shared.logging import get_logger

logger = get_logger(__name__)


class TelephonyDialer(Protocol):
    """The external component that actually places calls."""

    async def place_call(self, to_number: str, metadata: dict[str, str]) -> str:
        """Place an outbound call and return the provider call id."""
        ...


@dataclass(frozen=True)
class DispatchRequest:
    phone_number: str
    organization_id: UUID
    actor_id: str
    lead_id: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class DispatchResult:
    dispatched: bool
    decision: DialDecision | None
    call_id: str | None = None
    block_code: str | None = None


class GatedCallDispatcher:
    """Runs the gate before every dial; a block is terminal for the attempt."""

    def __init__(self, gate: CallBlockingGate, dialer: TelephonyDialer) -> None:
        self._gate = gate
        self._dialer = dialer

    async def dispatch(self, request: DispatchRequest) -> DispatchResult:
        try:
            decision = await self._gate.authorize_dial(
                request.phone_number,
                request.organization_id,
                request.actor_id,
                lead_id=request.lead_id,
                context=dict(request.metadata),
            )
        except CallBlockedError as exc:
            logger.info(
                "Dial attempt not dispatched",
                extra={
                    "phone_number": request.phone_number,
                    "lead_id": request.lead_id,
                    "block_code": exc.code,
                },
            )
            return DispatchResult(dispatched=False, decision=None, block_code=exc.code)

        return await self._place(request, decision)

    async def dispatch_with_override(
        self,
        request: DispatchRequest,
        actor_role: str,
        justification: str,
        consent_documented: bool,
    ) -> DispatchResult:
        decision = await self._gate.override(
            request.phone_number,
            request.organization_id,
            request.actor_id,
            actor_role,
            justification,
            consent_documented,
        )
        return await self._place(request, decision)

    async def _place(self, request: DispatchRequest, decision: DialDecision) -> DispatchResult:
        metadata: dict[str, Any] = {**request.metadata, "dnc_check_method": decision.check_method or ""}
        if decision.override:
            metadata["dnc_override"] = "true"
        if request.lead_id:
            metadata["lead_id"] = request.lead_id
        call_id = await self._dialer.place_call(decision.phone_number, {k: str(v) for k, v in metadata.items()})
        logger.info(
            "Call dispatched",
            extra={"phone_number": decision.phone_number, "call_id": call_id, "override": decision.override},
        )
        return DispatchResult(dispatched=True, decision=decision, call_id=call_id)
