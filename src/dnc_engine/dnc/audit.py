"""
Append-only compliance audit log.

Rows are only ever inserted; this module exposes no update or delete.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from dnc_engine.dnc.models import (
    AUDIT_OUTCOME_FAILED,
    AUDIT_OUTCOME_SUCCESS,
    AuditAction,
    AuditEntry,
    utcnow,
)
from dnc_engine.shared.database import DatabaseManager
from dnc_engine.shared.exceptions import StoreUnavailableError
from dnc_engine.shared.logging import get_logger

logger = get_logger(__name__)

# Raw (possibly unparsable) input is kept for failed attempts.
_PHONE_COLUMN_LENGTH = 32


class AuditLog:
    """Writes and reads :class:`AuditEntry` rows."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def record(
        self,
        action: AuditAction,
        phone_number: str,
        organization_id: UUID,
        actor_id: str,
        reason: str | None = None,
        details: dict[str, Any] | None = None,
        *,
        failed: bool = False,
    ) -> AuditEntry:
        """Append one audit record in its own transaction.

        Failed attempts are stored with ``outcome="failed"`` and
        ``details["status"] = "failed"`` so reports can exclude them.

        Raises:
            StoreUnavailableError: If the record could not be written.
        """
        payload = dict(details or {})
        payload.setdefault("status", AUDIT_OUTCOME_FAILED if failed else AUDIT_OUTCOME_SUCCESS)

        entry = AuditEntry(
            action=action,
            phone_number=str(phone_number)[:_PHONE_COLUMN_LENGTH],
            organization_id=organization_id,
            actor_id=str(actor_id),
            reason=reason,
            outcome=AUDIT_OUTCOME_FAILED if failed else AUDIT_OUTCOME_SUCCESS,
            details=payload,
            created_at=utcnow(),
        )
        try:
            async with self._db.session() as session:
                session.add(entry)
                await session.flush()
        except (SQLAlchemyError, OSError) as exc:
            logger.error(
                "Audit write failed",
                extra={
                    "action": action.value,
                    "phone_number": entry.phone_number,
                    "organization_id": str(organization_id),
                    "actor_id": str(actor_id),
                    "error": str(exc),
                },
            )
            raise StoreUnavailableError("Audit log is unavailable", {"operation": "audit"}) from exc

        logger.info(
            "Audit record written",
            extra={
                "audit_id": str(entry.id),
                "action": action.value,
                "phone_number": entry.phone_number,
                "organization_id": str(organization_id),
                "actor_id": str(actor_id),
                "outcome": entry.outcome,
            },
        )
        return entry

    async def entries(
        self,
        organization_id: UUID,
        action: AuditAction | None = None,
        phone_number: str | None = None,
        limit: int = 100,
    ) -> list[AuditEntry]:
        """Most recent records first."""
        query = select(AuditEntry).where(AuditEntry.organization_id == organization_id)
        if action is not None:
            query = query.where(AuditEntry.action == action)
        if phone_number is not None:
            query = query.where(AuditEntry.phone_number == phone_number)
        query = query.order_by(AuditEntry.created_at.desc()).limit(limit)
        try:
            async with self._db.session() as session:
                return list((await session.execute(query)).scalars())
        except (SQLAlchemyError, OSError) as exc:
            raise StoreUnavailableError("Audit log is unavailable", {"operation": "audit_read"}) from exc
