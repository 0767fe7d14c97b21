"""
Call-blocking gate consulted before every outbound dial.

The gate fails closed: if the compliance check cannot produce an answer,
the dial is refused.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from uuid import UUID

from dnc_engine.auth.rbac import is_elevated
from dnc_engine.dnc.audit import AuditLog
from dnc_engine.dnc.models import AuditAction
from dnc_engine.dnc.service import ComplianceService
from dnc_engine.shared.exceptions import (
    AuthorizationError,
    CallBlockedError,
    StoreUnavailableError,
    ValidationError,
)
from dnc_engine.shared.logging import get_logger

logger = get_logger(__name__)

BLOCK_CODE_ON_LIST = "LEAD_ON_DNC_LIST"
BLOCK_CODE_CHECK_FAILED = "DNC_CHECK_FAILED"


@dataclass(frozen=True)
class DialDecision:
    allowed: bool
    phone_number: str
    check_method: str | None = None
    override: bool = False
    on_list: bool = False


class CallBlockingGate:
    def __init__(
        self,
        service: ComplianceService,
        audit_log: AuditLog,
        *,
        audit_allowed_checks: bool = True,
        min_justification_length: int = 20,
    ) -> None:
        self._service = service
        self._audit_log = audit_log
        self._audit_allowed_checks = audit_allowed_checks
        self._min_justification_length = min_justification_length

    async def _record(
        self,
        action: AuditAction,
        phone_number: str,
        organization_id: UUID,
        actor_id: str,
        reason: str | None,
        details: dict[str, Any],
        *,
        failed: bool = False,
    ) -> None:
        try:
            await self._audit_log.record(
                action, phone_number, organization_id, actor_id, reason, details, failed=failed
            )
        except StoreUnavailableError:
            logger.error(
                "audit_fallback",
                extra={
                    "action": action.value,
                    "phone_number": phone_number,
                    "organization_id": str(organization_id),
                    "actor_id": str(actor_id),
                    "details": details,
                },
            )

    async def authorize_dial(
        self,
        phone_number: str,
        organization_id: UUID,
        actor_id: str,
        lead_id: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> DialDecision:
        """Allow or refuse one dial attempt.

        Raises:
            CallBlockedError: ``LEAD_ON_DNC_LIST`` when the number is listed,
                ``DNC_CHECK_FAILED`` when the check itself failed.
        """
        details: dict[str, Any] = {"lead_id": lead_id, "context": context or {}}
        try:
            result = await self._service.check(phone_number, organization_id)
        except Exception as exc:
            logger.error(
                "DNC check failed; blocking dial",
                extra={
                    "organization_id": str(organization_id),
                    "phone_number": phone_number,
                    "lead_id": lead_id,
                    "error": str(exc),
                },
            )
            await self._record(
                AuditAction.CHECK_BLOCKED,
                phone_number,
                organization_id,
                actor_id,
                "check_failed",
                {**details, "fail_closed": True, "error": str(exc)},
            )
            raise CallBlockedError(
                "DNC compliance check failed; call blocked",
                {"phoneNumber": phone_number},
                code=BLOCK_CODE_CHECK_FAILED,
            ) from exc

        if result.on_list:
            logger.warning(
                "Dial blocked: number on DNC list",
                extra={
                    "organization_id": str(organization_id),
                    "phone_number": result.phone_number,
                    "lead_id": lead_id,
                    "check_method": result.method,
                },
            )
            await self._record(
                AuditAction.CHECK_BLOCKED,
                result.phone_number,
                organization_id,
                actor_id,
                result.reason,
                {**details, "check_method": result.method},
            )
            raise CallBlockedError(
                "Phone number is on the DNC list",
                {"phoneNumber": result.phone_number, "reason": result.reason},
                code=BLOCK_CODE_ON_LIST,
            )

        if self._audit_allowed_checks:
            await self._record(
                AuditAction.CHECK_ALLOWED,
                result.phone_number,
                organization_id,
                actor_id,
                None,
                {**details, "check_method": result.method},
            )
        return DialDecision(allowed=True, phone_number=result.phone_number, check_method=result.method)

    async def override(
        self,
        phone_number: str,
        organization_id: UUID,
        actor_id: str,
        actor_role: str,
        justification: str,
        consent_documented: bool,
    ) -> DialDecision:
        """Authorize a single dial to a listed number.

        The DNC entry itself is left untouched.

        Raises:
            AuthorizationError: If the actor lacks the elevated role.
            ValidationError: If the justification is too short or consent is
                not documented.
        """
        if not is_elevated(actor_role):
            logger.warning(
                "DNC override denied",
                extra={
                    "organization_id": str(organization_id),
                    "phone_number": phone_number,
                    "actor_id": str(actor_id),
                    "actor_role": actor_role,
                },
            )
            await self._record(
                AuditAction.OVERRIDE,
                phone_number,
                organization_id,
                actor_id,
                justification,
                {"error": "insufficient_permissions", "actor_role": actor_role},
                failed=True,
            )
            raise AuthorizationError("Only administrators can override a DNC block")

        text = (justification or "").strip()
        if len(text) < self._min_justification_length:
            raise ValidationError(
                f"Justification must be at least {self._min_justification_length} characters",
                {"field": "justification"},
            )
        if not consent_documented:
            raise ValidationError(
                "Documented consent is required to override a DNC block",
                {"field": "consentDocumented"},
            )

        result = await self._service.check(phone_number, organization_id)
        await self._record(
            AuditAction.OVERRIDE,
            result.phone_number,
            organization_id,
            actor_id,
            text,
            {
                "consent_documented": True,
                "on_list": result.on_list,
                "entry_reason": result.reason,
            },
        )
        logger.warning(
            "DNC block overridden",
            extra={
                "organization_id": str(organization_id),
                "phone_number": result.phone_number,
                "actor_id": str(actor_id),
                "on_list": result.on_list,
            },
        )
        return DialDecision(
            allowed=True,
            phone_number=result.phone_number,
            check_method=result.method,
            override=True,
            on_list=result.on_list,
        )
