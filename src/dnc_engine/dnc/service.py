"""
Compliance service: the single entry point for DNC checks and mutations.

Checks go filter first; a "maybe present" answer is confirmed against the
decision cache and then the store. Mutations go store, filter, audit, then
the lead-lifecycle collaborator.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from dnc_engine.auth.rbac import is_elevated
from dnc_engine.dnc.audit import AuditLog
from dnc_engine.dnc.filters import MembershipFilter
from dnc_engine.dnc.lifecycle import LeadLifecycle, LoggingLeadLifecycle
from dnc_engine.dnc.models import SOURCE_MANUAL_ENTRY, AuditAction, DncEntry, DncReason, as_utc, utcnow
from dnc_engine.dnc.phone import normalize_phone_number
from dnc_engine.dnc.store import (
    AddResult,
    ComplianceReport,
    ComplianceStore,
    Page,
    ScrubResult,
    membership_key,
)
from dnc_engine.shared.cache import DecisionCache, NullDecisionCache, decision_cache_key
from dnc_engine.shared.exceptions import (
    AuthorizationError,
    FilterDegradedError,
    NotFoundError,
    StoreUnavailableError,
    ValidationError,
)
from dnc_engine.shared.logging import get_logger

logger = get_logger(__name__)

METHOD_FILTER = "filter"
METHOD_VERIFIED = "verified"
METHOD_STORE_FALLBACK = "store_fallback"


@dataclass
class CheckResult:
    phone_number: str
    on_list: bool
    method: str
    reason: str | None = None
    added_at: datetime | None = None
    entry: DncEntry | None = None

    @property
    def can_call(self) -> bool:
        return not self.on_list


@dataclass
class RemoveResult:
    entry: DncEntry
    consistency_window_seconds: float


@dataclass
class RebuildResult:
    count: int
    implementation: str
    duration_ms: float
    rebuilt_at: datetime


def _reason_value(reason: DncReason | str) -> str:
    return reason.value if isinstance(reason, DncReason) else str(reason)


class ComplianceService:
    """Owns the membership filter and keeps it consistent with the store."""

    def __init__(
        self,
        store: ComplianceStore,
        membership_filter: MembershipFilter,
        audit_log: AuditLog,
        decision_cache: DecisionCache | None = None,
        lead_lifecycle: LeadLifecycle | None = None,
        *,
        decision_cache_ttl_seconds: int = 3600,
        sync_rebuild_threshold: int = 100_000,
        rebuild_delay_seconds: float = 30.0,
        rebuild_replay_margin_seconds: float = 60.0,
    ) -> None:
        self._store = store
        self._filter = membership_filter
        self._audit = audit_log
        self._cache = decision_cache or NullDecisionCache()
        self._lifecycle = lead_lifecycle or LoggingLeadLifecycle()
        self._cache_ttl = decision_cache_ttl_seconds
        self._sync_rebuild_threshold = sync_rebuild_threshold
        self._rebuild_delay = rebuild_delay_seconds
        self._replay_margin = timedelta(seconds=rebuild_replay_margin_seconds)

        self._rebuild_lock = asyncio.Lock()
        self._rebuild_in_progress = False
        self._pending_adds: set[str] = set()
        self._pending_removals: set[str] = set()
        self._degraded = False
        self._last_rebuilt_at: datetime | None = None
        self._deferred_rebuild: asyncio.Task[None] | None = None

    @property
    def store(self) -> ComplianceStore:
        return self._store

    @property
    def audit_log(self) -> AuditLog:
        return self._audit

    @property
    def filter_degraded(self) -> bool:
        return self._degraded

    @property
    def consistency_window_seconds(self) -> float:
        """Upper bound on how long a removed number may still pass the filter."""
        if self._deferred_rebuild is not None and not self._deferred_rebuild.done():
            return self._rebuild_delay
        return 0.0

    def _mark_degraded(self, operation: str, exc: Exception) -> None:
        if not self._degraded:
            logger.warning(
                "Membership filter degraded; checks fall back to the store",
                extra={"operation": operation, "error": str(exc)},
            )
        self._degraded = True

    async def _audit_safely(
        self,
        action: AuditAction,
        phone_number: str,
        organization_id: UUID,
        actor_id: str,
        reason: str | None = None,
        details: dict[str, Any] | None = None,
        *,
        failed: bool = False,
    ) -> None:
        """Audit a mutation that has already happened (or definitively failed).

        The mutation's outcome stands even if the audit write fails; the full
        record then goes to the error log instead.
        """
        try:
            await self._audit.record(
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
                    "reason": reason,
                    "details": details,
                    "failed": failed,
                },
            )

    async def _invalidate(self, organization_id: UUID, phone_number: str) -> None:
        await self._cache.delete(decision_cache_key(organization_id, phone_number))

    # -- checks ----------------------------------------------------------

    async def check(self, phone_number: str, organization_id: UUID) -> CheckResult:
        """Answer whether a number is on the organization's DNC list.

        Raises:
            ValidationError: If the number cannot be parsed.
            StoreUnavailableError: If verification against the store fails.
        """
        normalized = normalize_phone_number(phone_number)
        key = membership_key(organization_id, normalized)

        method = METHOD_STORE_FALLBACK
        if self._filter.ready and not self._degraded:
            try:
                maybe_present = await self._filter.check(key)
            except FilterDegradedError as exc:
                self._mark_degraded("check", exc)
            else:
                if not maybe_present:
                    return CheckResult(phone_number=normalized, on_list=False, method=METHOD_FILTER)
                method = METHOD_VERIFIED

        cache_key = decision_cache_key(organization_id, normalized)
        cached = await self._cache.get(cache_key)
        if cached:
            added_at = cached.get("added_at")
            return CheckResult(
                phone_number=normalized,
                on_list=True,
                method=method,
                reason=cached.get("reason"),
                added_at=datetime.fromisoformat(added_at) if added_at else None,
            )

        result = await self._store.check(normalized, organization_id)
        if not result.on_list or result.entry is None:
            return CheckResult(phone_number=normalized, on_list=False, method=method)

        entry = result.entry
        added_at = as_utc(entry.added_at)
        await self._cache_positive(cache_key, entry)
        # a concurrent remove may have invalidated the key before this write
        if not (await self._store.check(normalized, organization_id)).on_list:
            await self._cache.delete(cache_key)
        return CheckResult(
            phone_number=normalized,
            on_list=True,
            method=method,
            reason=_reason_value(entry.reason),
            added_at=added_at,
            entry=entry,
        )

    async def _cache_positive(self, cache_key: str, entry: DncEntry) -> None:
        ttl = self._cache_ttl
        expires_at = as_utc(entry.expires_at)
        if expires_at is not None:
            ttl = min(ttl, int((expires_at - utcnow()).total_seconds()))
            if ttl <= 0:
                return
        added_at = as_utc(entry.added_at)
        await self._cache.set(
            cache_key,
            {
                "reason": _reason_value(entry.reason),
                "added_at": added_at.isoformat() if added_at else None,
            },
            ttl,
        )

    # -- mutations -------------------------------------------------------

    async def add(
        self,
        phone_number: str,
        reason: DncReason | str,
        actor_id: str,
        organization_id: UUID,
        source: str = SOURCE_MANUAL_ENTRY,
        notes: str | None = None,
        detected_phrase: str | None = None,
        expires_at: datetime | None = None,
    ) -> AddResult:
        """Put a number on the DNC list.

        Returns once the number is durable and visible to subsequent checks.

        Raises:
            ValidationError: If the number or reason is invalid.
            StoreUnavailableError: If the store write failed.
        """
        try:
            result = await self._store.add(
                phone_number,
                reason,
                source,
                actor_id,
                organization_id,
                notes=notes,
                detected_phrase=detected_phrase,
                expires_at=expires_at,
            )
        except (ValidationError, StoreUnavailableError) as exc:
            await self._audit_safely(
                AuditAction.ADDED,
                phone_number,
                organization_id,
                actor_id,
                _reason_value(reason),
                {"source": source, "error": exc.message, "code": exc.code},
                failed=True,
            )
            raise

        entry = result.entry
        key = membership_key(organization_id, entry.phone_number)
        if self._rebuild_in_progress:
            self._pending_adds.add(key)
            self._pending_removals.discard(key)
        try:
            await self._filter.add(key)
        except FilterDegradedError as exc:
            self._mark_degraded("add", exc)

        await self._invalidate(organization_id, entry.phone_number)
        await self._audit_safely(
            AuditAction.ADDED,
            entry.phone_number,
            organization_id,
            actor_id,
            _reason_value(entry.reason),
            {
                "source": entry.source,
                "created": result.created,
                "detected_phrase": entry.detected_phrase,
                "notes": entry.notes,
            },
        )

        logger.info(
            "Number added to DNC list",
            extra={
                "organization_id": str(organization_id),
                "phone_number": entry.phone_number,
                "reason": _reason_value(entry.reason),
                "source": entry.source,
                "actor_id": str(actor_id),
                "entry_created": result.created,
            },
        )

        try:
            await self._lifecycle.on_opt_out(organization_id, entry.phone_number, _reason_value(entry.reason))
        except Exception:
            logger.exception(
                "Lead lifecycle opt-out notification failed",
                extra={"organization_id": str(organization_id), "phone_number": entry.phone_number},
            )
        return result

    async def remove(
        self,
        phone_number: str,
        organization_id: UUID,
        actor_id: str,
        actor_role: str,
        reason: str,
    ) -> RemoveResult:
        """Take a number off the DNC list (admin only).

        Raises:
            AuthorizationError: If the actor lacks the elevated role.
            ValidationError: If the number is invalid or no reason is given.
            NotFoundError: If the number has no active entry.
            StoreUnavailableError: If the store delete failed.
        """
        if not is_elevated(actor_role):
            logger.warning(
                "DNC removal denied",
                extra={
                    "organization_id": str(organization_id),
                    "phone_number": phone_number,
                    "actor_id": str(actor_id),
                    "actor_role": actor_role,
                },
            )
            await self._audit_safely(
                AuditAction.REMOVED,
                phone_number,
                organization_id,
                actor_id,
                reason,
                {"error": "insufficient_permissions", "actor_role": actor_role},
                failed=True,
            )
            raise AuthorizationError("Only administrators can remove numbers from the DNC list")

        if not reason or not reason.strip():
            raise ValidationError("A reason is required to remove a number", {"field": "reason"})

        try:
            entry = await self._store.remove(phone_number, organization_id)
        except (ValidationError, StoreUnavailableError) as exc:
            await self._audit_safely(
                AuditAction.REMOVED,
                phone_number,
                organization_id,
                actor_id,
                reason,
                {"error": exc.message, "code": exc.code},
                failed=True,
            )
            raise
        if entry is None:
            raise NotFoundError(
                "Phone number is not on the DNC list",
                {"phoneNumber": phone_number},
            )

        added_at = as_utc(entry.added_at)
        await self._audit_safely(
            AuditAction.REMOVED,
            entry.phone_number,
            organization_id,
            actor_id,
            reason,
            {
                "previous_reason": _reason_value(entry.reason),
                "source": entry.source,
                "added_at": added_at.isoformat() if added_at else None,
            },
        )
        await self._invalidate(organization_id, entry.phone_number)
        window = await self._maintain_filter_after_remove(organization_id, entry.phone_number)

        logger.info(
            "Number removed from DNC list",
            extra={
                "organization_id": str(organization_id),
                "phone_number": entry.phone_number,
                "actor_id": str(actor_id),
                "reason": reason,
                "consistency_window_seconds": window,
            },
        )

        try:
            await self._lifecycle.on_reinstated(organization_id, entry.phone_number)
        except Exception:
            logger.exception(
                "Lead lifecycle reinstatement notification failed",
                extra={"organization_id": str(organization_id), "phone_number": entry.phone_number},
            )
        return RemoveResult(entry=entry, consistency_window_seconds=window)

    async def _maintain_filter_after_remove(self, organization_id: UUID, phone_number: str) -> float:
        key = membership_key(organization_id, phone_number)
        if self._filter.supports_removal:
            if self._rebuild_in_progress:
                self._pending_removals.add(key)
                self._pending_adds.discard(key)
            try:
                await self._filter.remove(key)
                # An add committed after our delete may have written the key
                # before this remove; the store decides.
                try:
                    relisted = (await self._store.check(phone_number, organization_id)).on_list
                except StoreUnavailableError:
                    relisted = True
                if relisted:
                    if self._rebuild_in_progress:
                        self._pending_adds.add(key)
                        self._pending_removals.discard(key)
                    await self._filter.add(key)
                    logger.info(
                        "Filter key restored after concurrent re-add",
                        extra={"organization_id": str(organization_id), "phone_number": phone_number},
                    )
            except FilterDegradedError as exc:
                self._mark_degraded("remove", exc)
            return 0.0

        active = await self._store.count_active()
        if active <= self._sync_rebuild_threshold:
            try:
                await self.rebuild_filter()
            except FilterDegradedError:
                # checks already fall back to the store
                pass
            except StoreUnavailableError:
                # removal is committed; retry the rebuild later
                self._schedule_deferred_rebuild()
                return self._rebuild_delay
            return 0.0

        self._schedule_deferred_rebuild()
        return self._rebuild_delay

    # -- filter maintenance ----------------------------------------------

    async def rebuild_filter(self) -> RebuildResult:
        """Rebuild the filter from a store snapshot and publish it.

        Adds and removes that land while the rebuild runs are replayed onto
        the published filter before the rebuild finishes.

        Entries written since shortly before the snapshot, by any process,
        are then re-read from the store and added as well.

        Raises:
            StoreUnavailableError: If the snapshot could not be read.
            FilterDegradedError: If the new filter could not be published.
        """
        async with self._rebuild_lock:
            started = time.perf_counter()
            started_at = utcnow()
            snapshot: set[str] | None = None
            self._rebuild_in_progress = True
            try:
                snapshot = await self._store.all_active_numbers()
                await self._filter.initialize((snapshot | self._pending_adds) - self._pending_removals)
                if self._pending_adds:
                    await self._filter.bulk_add(list(self._pending_adds))
                if self._filter.supports_removal:
                    for key in list(self._pending_removals):
                        await self._filter.remove(key)
                recent = await self._store.active_numbers_updated_since(started_at - self._replay_margin)
                if recent:
                    await self._filter.bulk_add(list(recent))
            except FilterDegradedError as exc:
                self._mark_degraded("rebuild", exc)
                raise
            except StoreUnavailableError as exc:
                if snapshot is not None:
                    # published without the replay; checks go to the store
                    self._mark_degraded("rebuild_replay", exc)
                raise
            finally:
                self._rebuild_in_progress = False
                self._pending_adds.clear()
                self._pending_removals.clear()

            self._degraded = False
            self._last_rebuilt_at = utcnow()
            duration_ms = (time.perf_counter() - started) * 1000
            stats = await self._filter.stats()

        logger.info(
            "Membership filter rebuilt",
            extra={
                "implementation": stats.implementation,
                "count": stats.count,
                "snapshot_size": len(snapshot or ()),
                "duration_ms": round(duration_ms, 2),
            },
        )
        return RebuildResult(
            count=stats.count,
            implementation=stats.implementation,
            duration_ms=duration_ms,
            rebuilt_at=self._last_rebuilt_at,
        )

    def _schedule_deferred_rebuild(self) -> None:
        if self._deferred_rebuild is not None and not self._deferred_rebuild.done():
            return
        self._deferred_rebuild = asyncio.create_task(self._run_deferred_rebuild())
        logger.info(
            "Deferred filter rebuild scheduled",
            extra={"delay_seconds": self._rebuild_delay},
        )

    async def _run_deferred_rebuild(self) -> None:
        await asyncio.sleep(self._rebuild_delay)
        try:
            await self.rebuild_filter()
        except (StoreUnavailableError, FilterDegradedError):
            logger.exception("Deferred filter rebuild failed")

    async def run_periodic_rebuild(self, interval_seconds: float) -> None:
        """Rebuild the filter every ``interval_seconds`` until cancelled."""
        logger.info("Periodic filter rebuild starting", extra={"interval_seconds": interval_seconds})
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.rebuild_filter()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Periodic filter rebuild failed")

    async def close(self) -> None:
        task = self._deferred_rebuild
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def get_bloom_stats(self) -> dict[str, Any]:
        try:
            stats = await self._filter.stats()
        except FilterDegradedError as exc:
            self._mark_degraded("stats", exc)
            return {
                "count": 0,
                "implementation": self._filter.implementation,
                "capacity": None,
                "target_error_rate": 0.0,
                "estimated_false_positive_rate": 0.0,
                "ready": self._filter.ready,
                "degraded": True,
                "last_rebuilt_at": self._last_rebuilt_at,
                "consistency_window_seconds": self.consistency_window_seconds,
            }
        return {
            "count": stats.count,
            "implementation": stats.implementation,
            "capacity": stats.capacity,
            "target_error_rate": stats.target_error_rate,
            "estimated_false_positive_rate": stats.estimated_false_positive_rate,
            "ready": stats.ready,
            "degraded": self._degraded,
            "last_rebuilt_at": self._last_rebuilt_at,
            "consistency_window_seconds": self.consistency_window_seconds,
        }

    # -- store pass-throughs ----------------------------------------------

    async def scrub_lead_list(self, phone_numbers: Sequence[str], organization_id: UUID) -> ScrubResult:
        """Scrub a lead list straight against the store, bypassing the filter."""
        return await self._store.scrub(phone_numbers, organization_id)

    async def list_entries(self, organization_id: UUID, **filters: Any) -> Page:
        return await self._store.list_entries(organization_id, **filters)

    async def compliance_report(
        self,
        organization_id: UUID,
        start_date: datetime,
        end_date: datetime,
    ) -> ComplianceReport:
        return await self._store.compliance_report(organization_id, start_date, end_date)

    def export_csv(self, organization_id: UUID) -> AsyncIterator[bytes]:
        return self._store.export_csv(organization_id)
