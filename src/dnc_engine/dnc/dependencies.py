"""
FastAPI dependencies resolving the engine components held on ``app.state``.
"""

from typing import Annotated

from fastapi import Depends, Request

from dnc_engine.auth.middleware import CurrentUser, get_current_user
from dnc_engine.config import Settings, get_settings
from dnc_engine.dnc.gate import CallBlockingGate
from dnc_engine.dnc.optout import OptOutDetector, TranscriptOptOutHandler
from dnc_engine.dnc.service import ComplianceService
from dnc_engine.shared.ratelimit import RateLimiter


def get_compliance_service(request: Request) -> ComplianceService:
    return request.app.state.compliance_service


def get_call_gate(request: Request) -> CallBlockingGate:
    return request.app.state.call_gate


def get_optout_detector(request: Request) -> OptOutDetector:
    return request.app.state.optout_detector


def get_optout_handler(request: Request) -> TranscriptOptOutHandler:
    return request.app.state.optout_handler


class RateLimit:
    """Per-user budget for one endpoint class (check, read, mutation, bulk, rebuild)."""

    def __init__(self, endpoint_class: str) -> None:
        self.endpoint_class = endpoint_class

    async def __call__(
        self,
        request: Request,
        current_user: Annotated[CurrentUser, Depends(get_current_user)],
        settings: Annotated[Settings, Depends(get_settings)],
    ) -> None:
        limiter: RateLimiter = request.app.state.rate_limiter
        limit = getattr(settings, f"dnc_rate_limit_{self.endpoint_class}")
        await limiter.check(self.endpoint_class, str(current_user.id), limit)


check_rate_limit = RateLimit("check")
read_rate_limit = RateLimit("read")
mutation_rate_limit = RateLimit("mutation")
bulk_rate_limit = RateLimit("bulk")
rebuild_rate_limit = RateLimit("rebuild")
