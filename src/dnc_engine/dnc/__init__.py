"""
Do-Not-Call list management and call-time compliance checks.
"""

from dnc_engine.dnc.models import AuditAction, AuditEntry, DncEntry, DncReason

__all__ = ["AuditAction", "AuditEntry", "DncEntry", "DncReason"]
