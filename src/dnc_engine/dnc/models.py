"""
SQLAlchemy models for DNC entries and the compliance audit log.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import JSON, Boolean, DateTime, Index, String, Text, UniqueConstraint, Uuid
from sqlalchemy import Enum as SAEnum
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from dnc_engine.shared.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite returns them without tzinfo)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [e.value for e in enum_cls]


class DncReason(str, Enum):
    """Why a number is on the DNC list."""

    LEAD_REQUESTED = "lead_requested"
    LEGAL_REQUIREMENT = "legal_requirement"
    ADMIN_ADDED = "admin_added"
    MANUAL = "manual"
    DETECTED_FROM_CALL = "detected_from_call"


class AuditAction(str, Enum):
    ADDED = "added"
    REMOVED = "removed"
    CHECK_BLOCKED = "check_blocked"
    CHECK_ALLOWED = "check_allowed"
    OVERRIDE = "override"


SOURCE_MANUAL_ENTRY = "manual_entry"
SOURCE_CALL_TRANSCRIPT = "call_transcript"

AUDIT_OUTCOME_SUCCESS = "success"
AUDIT_OUTCOME_FAILED = "failed"

JSON_VARIANT = JSON().with_variant(JSONB(), "postgresql")


class DncEntry(Base):
    """One opted-out number within an organization."""

    __tablename__ = "dnc_entries"
    __table_args__ = (
        UniqueConstraint("organization_id", "phone_number", name="uq_dnc_entries_org_phone"),
        Index("ix_dnc_entries_org_added_at", "organization_id", "added_at"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    organization_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    phone_number: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    reason: Mapped[DncReason] = mapped_column(
        SAEnum(
            DncReason,
            name="dnc_reason",
            values_callable=_enum_values,
            validate_strings=True,
        ),
        nullable=False,
    )
    source: Mapped[str] = mapped_column(String(100), nullable=False, default=SOURCE_MANUAL_ENTRY)
    detected_phrase: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    added_by_user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    added_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    consent_withdrawal_documented: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def is_active(self, now: datetime | None = None) -> bool:
        """An entry without ``expires_at`` is permanent."""
        expires_at = as_utc(self.expires_at)
        return expires_at is None or expires_at > (now or utcnow())

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "organization_id": str(self.organization_id),
            "phone_number": self.phone_number,
            "reason": self.reason.value if isinstance(self.reason, DncReason) else self.reason,
            "source": self.source,
            "detected_phrase": self.detected_phrase,
            "notes": self.notes,
            "added_by_user_id": self.added_by_user_id,
            "added_at": as_utc(self.added_at).isoformat() if self.added_at else None,
            "expires_at": as_utc(self.expires_at).isoformat() if self.expires_at else None,
        }

    def __repr__(self) -> str:
        return f"<DncEntry(org={self.organization_id}, phone={self.phone_number}, reason={self.reason})>"


class AuditEntry(Base):
    """Append-only record of a compliance decision or mutation."""

    __tablename__ = "dnc_audit_log"
    __table_args__ = (
        Index("ix_dnc_audit_log_org_action_created", "organization_id", "action", "created_at"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    action: Mapped[AuditAction] = mapped_column(
        SAEnum(
            AuditAction,
            name="dnc_audit_action",
            values_callable=_enum_values,
            validate_strings=True,
        ),
        nullable=False,
    )
    phone_number: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    organization_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    actor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    outcome: Mapped[str] = mapped_column(String(16), nullable=False, default=AUDIT_OUTCOME_SUCCESS)
    # "metadata" is reserved on declarative classes
    details: Mapped[dict[str, Any]] = mapped_column("metadata", JSON_VARIANT, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<AuditEntry(action={self.action}, phone={self.phone_number}, actor={self.actor_id})>"
