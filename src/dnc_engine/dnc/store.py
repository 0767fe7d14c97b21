"""
Authoritative DNC storage.

Every operation opens its own transactional session on the injected
:class:`DatabaseManager`. Infrastructure failures surface as
:class:`StoreUnavailableError` so callers (and the gate) can fail closed.
"""

from __future__ import annotations

import asyncio
import csv
import io
import math
from collections.abc import AsyncGenerator, AsyncIterator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import ColumnElement, and_, delete, func, or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from dnc_engine.dnc.models import (
    AUDIT_OUTCOME_SUCCESS,
    SOURCE_CALL_TRANSCRIPT,
    SOURCE_MANUAL_ENTRY,
    AuditAction,
    AuditEntry,
    DncEntry,
    DncReason,
    as_utc,
    utcnow,
)
from dnc_engine.dnc.phone import normalize_phone_number, try_normalize_phone_number
from dnc_engine.shared.database import DatabaseManager
from dnc_engine.shared.exceptions import StoreUnavailableError, ValidationError
from dnc_engine.shared.logging import get_logger

logger = get_logger(__name__)

CSV_HEADER = [
    "Phone Number",
    "Reason",
    "Source",
    "Detected Phrase",
    "Notes",
    "Added At",
    "Expires At",
]


def membership_key(organization_id: UUID | str, phone_number: str) -> str:
    """Key under which an (organization, number) pair is held in the filter."""
    return f"{organization_id}|{phone_number}"


def compliance_score(blocked_attempts: int, total_additions: int) -> int:
    """0-100 score; every blocked attempt per addition costs 200 points."""
    if total_additions == 0 or blocked_attempts == 0:
        return 100
    violation_rate = blocked_attempts / total_additions
    return max(0, round(100 - violation_rate * 200))


@dataclass
class AddResult:
    entry: DncEntry
    created: bool


@dataclass
class StoreCheckResult:
    on_list: bool
    entry: DncEntry | None = None


@dataclass
class ScrubItem:
    """Verdict for one input position of a scrub request."""

    input: str
    phone_number: str | None
    status: str  # "dnc" | "clean" | "invalid"


@dataclass
class ScrubResult:
    items: list[ScrubItem]
    dnc_numbers: list[str] = field(default_factory=list)
    clean_numbers: list[str] = field(default_factory=list)
    invalid_numbers: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.items)

    @property
    def dnc_count(self) -> int:
        return len(self.dnc_numbers)

    @property
    def clean_count(self) -> int:
        return len(self.clean_numbers)

    @property
    def invalid_count(self) -> int:
        return len(self.invalid_numbers)


@dataclass
class Page:
    items: list[DncEntry]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0

    @property
    def has_next(self) -> bool:
        return self.page < self.pages

    @property
    def has_prev(self) -> bool:
        return self.page > 1


@dataclass
class ComplianceReport:
    organization_id: UUID
    start_date: datetime
    end_date: datetime
    total_additions: int
    auto_detected: int
    manual_additions: int
    removals: int
    blocked_call_attempts: int
    overrides: int
    compliance_score: int
    additions_by_reason: dict[str, int]
    recent_additions: list[DncEntry]
    recent_removals: list[AuditEntry]
    generated_at: datetime


def _active_clause(now: datetime) -> ColumnElement[bool]:
    return or_(DncEntry.expires_at.is_(None), DncEntry.expires_at > now)


def _attach_utc(entry: DncEntry) -> DncEntry:
    # SQLite hands back naive datetimes for rows it loaded itself.
    entry.added_at = as_utc(entry.added_at)
    entry.updated_at = as_utc(entry.updated_at)
    entry.expires_at = as_utc(entry.expires_at)
    return entry


def _coerce_reason(reason: DncReason | str) -> DncReason:
    try:
        return DncReason(reason)
    except ValueError as exc:
        raise ValidationError(f"Invalid reason '{reason}'", {"field": "reason"}) from exc


class ComplianceStore:
    """Durable DNC entries keyed by (organization, E.164 number)."""

    def __init__(
        self,
        db: DatabaseManager,
        *,
        scrub_max_batch: int = 10_000,
        scrub_chunk_size: int = 500,
        export_chunk_size: int = 1000,
        report_detail_limit: int = 500,
    ) -> None:
        self._db = db
        self._scrub_max_batch = scrub_max_batch
        self._scrub_chunk_size = scrub_chunk_size
        self._export_chunk_size = export_chunk_size
        self._report_detail_limit = report_detail_limit

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncGenerator[AsyncSession, None]:
        try:
            async with self._db.session() as session:
                yield session
        except (SQLAlchemyError, OSError) as exc:
            logger.error(
                "Compliance store operation failed",
                extra={"operation": operation, "error": str(exc)},
            )
            raise StoreUnavailableError(
                "Compliance store is unavailable",
                {"operation": operation},
            ) from exc

    def _insert(self) -> Any:
        if self._db.dialect_name == "postgresql":
            return pg_insert(DncEntry)
        return sqlite_insert(DncEntry)

    async def add(
        self,
        phone_number: str,
        reason: DncReason | str,
        source: str,
        actor_id: str,
        organization_id: UUID,
        notes: str | None = None,
        detected_phrase: str | None = None,
        expires_at: datetime | None = None,
    ) -> AddResult:
        """Insert or refresh the entry for a number.

        Concurrent adds of the same number collapse onto one row. The first
        reason recorded for an active entry wins; a repeat add refreshes
        ``added_at``, replaces ``notes`` when given and can only lengthen
        an expiry. An expired row is re-activated with the new data.

        Raises:
            ValidationError: If the number or reason is invalid.
            StoreUnavailableError: If the database cannot be reached.
        """
        normalized = normalize_phone_number(phone_number)
        reason = _coerce_reason(reason)
        expires_at = as_utc(expires_at)
        now = utcnow()
        if expires_at is not None and expires_at <= now:
            raise ValidationError("expiresAt must be in the future", {"field": "expiresAt"})

        values = {
            "id": uuid4(),
            "organization_id": organization_id,
            "phone_number": normalized,
            "reason": reason,
            "source": source or SOURCE_MANUAL_ENTRY,
            "detected_phrase": detected_phrase,
            "notes": notes,
            "added_by_user_id": str(actor_id),
            "added_at": now,
            "updated_at": now,
            "expires_at": expires_at,
            "consent_withdrawal_documented": True,
        }

        async with self._session("add") as session:
            # Write first so SQLite takes its write lock up front.
            stmt = (
                self._insert()
                .values(**values)
                .on_conflict_do_nothing(index_elements=["organization_id", "phone_number"])
                .returning(DncEntry.id)
            )
            inserted_id = (await session.execute(stmt)).scalar_one_or_none()

            query = select(DncEntry).where(
                DncEntry.organization_id == organization_id,
                DncEntry.phone_number == normalized,
            )
            if self._db.dialect_name == "postgresql":
                query = query.with_for_update()
            entry = (await session.execute(query)).scalar_one()

            created = inserted_id is not None
            if not created:
                if entry.is_active(now):
                    entry.added_at = now
                    if notes is not None:
                        entry.notes = notes
                    current_expiry = as_utc(entry.expires_at)
                    if current_expiry is not None and (expires_at is None or expires_at > current_expiry):
                        entry.expires_at = expires_at
                else:
                    for key in ("reason", "source", "detected_phrase", "notes", "added_by_user_id", "added_at", "expires_at"):
                        setattr(entry, key, values[key])
                    created = True
                entry.updated_at = now
                await session.flush()

        logger.info(
            "DNC entry stored",
            extra={
                "organization_id": str(organization_id),
                "phone_number": normalized,
                "reason": reason.value,
                "source": values["source"],
                "entry_created": created,
            },
        )
        return AddResult(entry=_attach_utc(entry), created=created)

    async def remove(self, phone_number: str, organization_id: UUID) -> DncEntry | None:
        """Delete the active entry in one statement.

        Returns:
            The deleted entry, or None if no active entry existed.
        """
        normalized = normalize_phone_number(phone_number)
        async with self._session("remove") as session:
            stmt = (
                delete(DncEntry)
                .where(
                    DncEntry.organization_id == organization_id,
                    DncEntry.phone_number == normalized,
                    _active_clause(utcnow()),
                )
                .returning(DncEntry)
                .execution_options(synchronize_session=False)
            )
            entry = (await session.execute(stmt)).scalars().first()

        if entry is None:
            return None
        logger.info(
            "DNC entry deleted",
            extra={"organization_id": str(organization_id), "phone_number": normalized},
        )
        return _attach_utc(entry)

    async def check(self, phone_number: str, organization_id: UUID) -> StoreCheckResult:
        normalized = normalize_phone_number(phone_number)
        async with self._session("check") as session:
            result = await session.execute(
                select(DncEntry).where(
                    DncEntry.organization_id == organization_id,
                    DncEntry.phone_number == normalized,
                    _active_clause(utcnow()),
                )
            )
            entry = result.scalar_one_or_none()
        return StoreCheckResult(on_list=entry is not None, entry=entry)

    async def scrub(self, phone_numbers: Sequence[str], organization_id: UUID) -> ScrubResult:
        """Classify every input as dnc, clean or invalid.

        Lookups run in chunks, each in its own short session, and the event
        loop gets a turn between chunks. Unparsable inputs are reported per
        item and never fail the batch.

        Raises:
            ValidationError: If the batch exceeds the configured maximum.
        """
        if len(phone_numbers) > self._scrub_max_batch:
            raise ValidationError(
                f"Scrub batch exceeds maximum of {self._scrub_max_batch} numbers",
                {"field": "phoneNumbers", "max": self._scrub_max_batch},
            )

        normalized = [try_normalize_phone_number(raw) for raw in phone_numbers]
        unique = list(dict.fromkeys(n for n in normalized if n is not None))

        listed: set[str] = set()
        for start in range(0, len(unique), self._scrub_chunk_size):
            chunk = unique[start : start + self._scrub_chunk_size]
            async with self._session("scrub") as session:
                rows = await session.execute(
                    select(DncEntry.phone_number).where(
                        DncEntry.organization_id == organization_id,
                        DncEntry.phone_number.in_(chunk),
                        _active_clause(utcnow()),
                    )
                )
                listed.update(rows.scalars())
            await asyncio.sleep(0)

        result = ScrubResult(items=[])
        for raw, number in zip(phone_numbers, normalized):
            if number is None:
                status = "invalid"
                result.invalid_numbers.append(str(raw))
            elif number in listed:
                status = "dnc"
                result.dnc_numbers.append(number)
            else:
                status = "clean"
                result.clean_numbers.append(number)
            result.items.append(ScrubItem(input=str(raw), phone_number=number, status=status))

        logger.info(
            "Scrub completed",
            extra={
                "organization_id": str(organization_id),
                "total": result.total,
                "dnc": result.dnc_count,
                "clean": result.clean_count,
                "invalid": result.invalid_count,
            },
        )
        return result

    async def list_entries(
        self,
        organization_id: UUID,
        page: int = 1,
        limit: int = 50,
        reason: DncReason | str | None = None,
        source: str | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        search: str | None = None,
    ) -> Page:
        """Active entries, newest first."""
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive", {"field": "page"})
        start_date, end_date = as_utc(start_date), as_utc(end_date)

        conditions: list[ColumnElement[bool]] = [
            DncEntry.organization_id == organization_id,
            _active_clause(utcnow()),
        ]
        if reason is not None:
            conditions.append(DncEntry.reason == _coerce_reason(reason))
        if source:
            conditions.append(DncEntry.source == source)
        if start_date is not None:
            conditions.append(DncEntry.added_at >= start_date)
        if end_date is not None:
            conditions.append(DncEntry.added_at <= end_date)
        if search:
            term = search.strip().lower()
            conditions.append(
                or_(
                    DncEntry.phone_number.contains(term, autoescape=True),
                    func.lower(DncEntry.notes).contains(term, autoescape=True),
                )
            )

        where = and_(*conditions)
        async with self._session("list") as session:
            total = (await session.execute(select(func.count()).select_from(DncEntry).where(where))).scalar_one()
            rows = await session.execute(
                select(DncEntry)
                .where(where)
                .order_by(DncEntry.added_at.desc(), DncEntry.id)
                .offset((page - 1) * limit)
                .limit(limit)
            )
            items = list(rows.scalars())
        return Page(items=items, total=int(total), page=page, limit=limit)

    async def all_active_numbers(self) -> set[str]:
        """Membership keys of every active entry, across organizations."""
        keys: set[str] = set()
        async with self._session("snapshot") as session:
            result = await session.stream(
                select(DncEntry.organization_id, DncEntry.phone_number)
                .where(_active_clause(utcnow()))
                .execution_options(yield_per=5000)
            )
            async for organization_id, phone_number in result:
                keys.add(membership_key(organization_id, phone_number))
        return keys

    async def active_numbers_updated_since(self, since: datetime) -> set[str]:
        """Membership keys of active entries written at or after ``since``."""
        since = as_utc(since)
        async with self._session("recent") as session:
            result = await session.execute(
                select(DncEntry.organization_id, DncEntry.phone_number).where(
                    DncEntry.updated_at >= since,
                    _active_clause(utcnow()),
                )
            )
            return {membership_key(org, phone) for org, phone in result}

    async def count_active(self) -> int:
        async with self._session("count") as session:
            result = await session.execute(
                select(func.count()).select_from(DncEntry).where(_active_clause(utcnow()))
            )
            return int(result.scalar_one())

    async def compliance_report(
        self,
        organization_id: UUID,
        start_date: datetime,
        end_date: datetime,
    ) -> ComplianceReport:
        """Additions from the store joined with audit-log aggregates."""
        start_date, end_date = as_utc(start_date), as_utc(end_date)
        if start_date > end_date:
            raise ValidationError("startDate must not be after endDate", {"field": "startDate"})

        in_range = and_(
            DncEntry.organization_id == organization_id,
            DncEntry.added_at >= start_date,
            DncEntry.added_at <= end_date,
        )
        audit_in_range = and_(
            AuditEntry.organization_id == organization_id,
            AuditEntry.outcome == AUDIT_OUTCOME_SUCCESS,
            AuditEntry.created_at >= start_date,
            AuditEntry.created_at <= end_date,
        )

        async with self._session("report") as session:
            by_reason_rows = await session.execute(
                select(DncEntry.reason, func.count()).where(in_range).group_by(DncEntry.reason)
            )
            additions_by_reason = {
                (r.value if isinstance(r, DncReason) else str(r)): int(n) for r, n in by_reason_rows
            }
            by_source_rows = await session.execute(
                select(DncEntry.source, func.count())
                .where(in_range, DncEntry.source.in_([SOURCE_CALL_TRANSCRIPT, SOURCE_MANUAL_ENTRY]))
                .group_by(DncEntry.source)
            )
            by_source = {s: int(n) for s, n in by_source_rows}
            audit_rows = await session.execute(
                select(AuditEntry.action, func.count()).where(audit_in_range).group_by(AuditEntry.action)
            )
            audit_counts = {
                (a.value if isinstance(a, AuditAction) else str(a)): int(n) for a, n in audit_rows
            }
            recent_additions = list(
                (
                    await session.execute(
                        select(DncEntry)
                        .where(in_range)
                        .order_by(DncEntry.added_at.desc())
                        .limit(self._report_detail_limit)
                    )
                ).scalars()
            )
            recent_removals = list(
                (
                    await session.execute(
                        select(AuditEntry)
                        .where(audit_in_range, AuditEntry.action == AuditAction.REMOVED)
                        .order_by(AuditEntry.created_at.desc())
                        .limit(self._report_detail_limit)
                    )
                ).scalars()
            )

        total_additions = sum(additions_by_reason.values())
        blocked = audit_counts.get(AuditAction.CHECK_BLOCKED.value, 0)
        report = ComplianceReport(
            organization_id=organization_id,
            start_date=start_date,
            end_date=end_date,
            total_additions=total_additions,
            auto_detected=by_source.get(SOURCE_CALL_TRANSCRIPT, 0),
            manual_additions=by_source.get(SOURCE_MANUAL_ENTRY, 0),
            removals=audit_counts.get(AuditAction.REMOVED.value, 0),
            blocked_call_attempts=blocked,
            overrides=audit_counts.get(AuditAction.OVERRIDE.value, 0),
            compliance_score=compliance_score(blocked, total_additions),
            additions_by_reason=additions_by_reason,
            recent_additions=recent_additions,
            recent_removals=recent_removals,
            generated_at=utcnow(),
        )
        logger.info(
            "Compliance report generated",
            extra={
                "organization_id": str(organization_id),
                "total_additions": report.total_additions,
                "blocked_call_attempts": report.blocked_call_attempts,
                "compliance_score": report.compliance_score,
            },
        )
        return report

    async def export_csv(self, organization_id: UUID) -> AsyncIterator[bytes]:
        """Stream active entries as CSV, one chunk per database page.

        Pages are keyed on ``id``, so entries refreshed while the export runs
        are neither skipped nor repeated.
        """
        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(CSV_HEADER)
        yield buffer.getvalue().encode("utf-8")

        last_id: UUID | None = None
        exported = 0
        while True:
            query = select(DncEntry).where(
                DncEntry.organization_id == organization_id,
                _active_clause(utcnow()),
            )
            if last_id is not None:
                query = query.where(DncEntry.id > last_id)
            async with self._session("export") as session:
                rows = await session.execute(query.order_by(DncEntry.id).limit(self._export_chunk_size))
                entries = list(rows.scalars())
            if not entries:
                break
            last_id = entries[-1].id

            buffer = io.StringIO()
            writer = csv.writer(buffer)
            for entry in entries:
                added_at = as_utc(entry.added_at)
                expires_at = as_utc(entry.expires_at)
                writer.writerow(
                    [
                        entry.phone_number,
                        entry.reason.value if isinstance(entry.reason, DncReason) else entry.reason,
                        entry.source,
                        entry.detected_phrase or "",
                        entry.notes or "",
                        added_at.isoformat() if added_at else "",
                        expires_at.isoformat() if expires_at else "",
                    ]
                )
            yield buffer.getvalue().encode("utf-8")

            exported += len(entries)
            await asyncio.sleep(0)

        logger.info(
            "DNC list exported",
            extra={"organization_id": str(organization_id), "exported": exported},
        )
