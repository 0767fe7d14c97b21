"""
Test doubles for the engine's external collaborators.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID


class RecordingLeadLifecycle:
    """Lead-lifecycle collaborator that remembers every notification."""

    def __init__(self) -> None:
        self.opt_outs: list[tuple[UUID, str, str]] = []
        self.reinstated: list[tuple[UUID, str]] = []

    async def on_opt_out(self, organization_id: UUID, phone_number: str, reason: str) -> None:
        self.opt_outs.append((organization_id, phone_number, reason))

    async def on_reinstated(self, organization_id: UUID, phone_number: str) -> None:
        self.reinstated.append((organization_id, phone_number))


class InMemoryDecisionCache:
    def __init__(self) -> None:
        self.values: dict[str, dict[str, Any]] = {}
        self.ttls: dict[str, int] = {}

    async def get(self, key: str) -> dict[str, Any] | None:
        return self.values.get(key)

    async def set(self, key: str, value: dict[str, Any], ttl_seconds: int) -> bool:
        self.values[key] = value
        self.ttls[key] = ttl_seconds
        return True

    async def delete(self, key: str) -> bool:
        self.values.pop(key, None)
        return True


class FakeLLM:
    """LLM gateway returning a canned reply, or raising a canned error."""

    def __init__(self, reply: str = "", error: Exception | None = None) -> None:
        self.reply = reply
        self.error = error
        self.prompts: list[str] = []

    async def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.reply


class FakeDialer:
    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, str]]] = []

    async def place_call(self, to_number: str, metadata: dict[str, str]) -> str:
        self.calls.append((to_number, metadata))
        return f"CA{len(self.calls):04d}"
