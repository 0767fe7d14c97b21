"""
Language-model gateway used by the transcript opt-out detector.
"""

from __future__ import annotations

import json
import re
from typing import Any, Protocol

import httpx

from dnc_engine.config import Settings
from dnc_engine.shared.logging import get_logger

logger = get_logger(__name__)

_FENCED_JSON = re.compile(r"```(?:json)?\s*\n(.*?)\n```", re.DOTALL)
_BARE_JSON = re.compile(r"\{.*\}", re.DOTALL)


class LLMGatewayError(Exception):
    """Raised when the language model cannot produce a usable answer."""


class LLMGatewayProtocol(Protocol):
    async def complete(self, prompt: str) -> str:
        """Return the model's text reply to a single-turn prompt."""
        ...


def extract_json_object(text: str) -> dict[str, Any]:
    """Pull a JSON object out of a model reply, fenced or bare.

    Raises:
        LLMGatewayError: If no JSON object can be parsed.
    """
    match = _FENCED_JSON.search(text) or _BARE_JSON.search(text)
    if not match:
        raise LLMGatewayError("Model reply contains no JSON object")
    raw = match.group(1) if match.re is _FENCED_JSON else match.group(0)
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise LLMGatewayError(f"Model reply is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise LLMGatewayError("Model reply JSON is not an object")
    return data


class HttpLLMGateway:
    """OpenAI-compatible chat completions over HTTP."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        model: str = "gpt-4.1-mini",
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = api_key
        self._endpoint = f"{base_url.rstrip('/')}/chat/completions"
        self._model = model
        self._timeout_seconds = timeout_seconds
        self._client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> HttpLLMGateway | None:
        """Build a gateway, or None when no API key is configured."""
        if not settings.llm_api_key:
            return None
        return cls(
            api_key=settings.llm_api_key,
            base_url=settings.llm_api_base_url,
            model=settings.llm_model,
            timeout_seconds=settings.llm_timeout_seconds,
        )

    async def complete(self, prompt: str) -> str:
        payload = {
            "model": self._model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": 0.2,
            "max_tokens": 400,
        }
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

        try:
            if self._client is not None:
                response = await self._client.post(
                    self._endpoint, json=payload, headers=headers, timeout=self._timeout_seconds
                )
            else:
                async with httpx.AsyncClient(timeout=self._timeout_seconds) as client:
                    response = await client.post(self._endpoint, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise LLMGatewayError(f"LLM request failed: {e}") from e

        if response.status_code != 200:
            logger.warning(
                "LLM request rejected",
                extra={"status_code": response.status_code, "model": self._model},
            )
            raise LLMGatewayError(f"LLM error {response.status_code}")

        try:
            return response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise LLMGatewayError("Unexpected LLM response shape") from e
