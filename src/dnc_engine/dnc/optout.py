"""
Opt-out detection on live call transcripts.

A keyword pass answers immediately; when it finds nothing and a language
model is configured, the model classifies the transcript. Detected opt-outs
are written to the DNC list before the handler returns.

A keyword hit is validated first: a phrase the agent spoke, or one the
agent offered as a question, does not list the number.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from dnc_engine.dnc.llm import LLMGatewayError, LLMGatewayProtocol, extract_json_object
from dnc_engine.dnc.models import SOURCE_CALL_TRANSCRIPT, DncEntry, DncReason
from dnc_engine.dnc.service import ComplianceService
from dnc_engine.shared.logging import get_logger

logger = get_logger(__name__)

# Longest phrases first so the reported phrase is the most specific match.
OPT_OUT_PHRASES: tuple[str, ...] = tuple(
    sorted(
        (
            "remove me from your list",
            "do not call me again",
            "do not call me",
            "don't call me again",
            "don't call me",
            "i want to be removed",
            "stop calling me",
            "take me off your list",
            "unsubscribe",
            "remove my number",
            "delete my number",
            "no more calls",
            "stop these calls",
            "leave me alone",
            "never call again",
            "take me off",
            "remove me",
            "opt out",
            "i opt out",
        ),
        key=len,
        reverse=True,
    )
)

DEFAULT_OPT_OUT_RESPONSE = (
    "I understand and apologize for any inconvenience. I'll remove your number "
    "from our list immediately. You will not receive any more calls from us. "
    "Thank you for your time."
)

KEYWORD_CONFIDENCE = 0.95
_LABEL_CONFIDENCE = {"high": 0.9, "medium": 0.7, "low": 0.4}

SYSTEM_ACTOR_ID = "system:transcript"

OPT_OUT_PROMPT = """You are analyzing a phone call transcript to detect if the prospect is requesting to be removed from the calling list (opt-out/DNC request).

TRANSCRIPT:
\"\"\"
{transcript}
\"\"\"

CONTEXT:
- Call Type: {call_type}

Determine if the prospect is explicitly or implicitly requesting to be removed from the calling list, stop receiving calls, or be added to a Do Not Call list.

DO NOT consider these as opt-outs:
- Simple "not interested right now" (without permanent language)
- "Call me back later"
- "Maybe in the future"
- Asking questions or engaging in conversation

Respond in JSON format:
{{
  "optOut": boolean,
  "confidence": "high" | "medium" | "low",
  "indicativePhrase": "exact phrase from transcript",
  "suggestedResponse": "how the agent should respond to end the call gracefully"
}}"""


FALSE_POSITIVE_PROMPT = """A DNC opt-out phrase was detected: "{phrase}"

Full transcript:
\"\"\"
{transcript}
\"\"\"

Is this a FALSE POSITIVE? Consider:
- Was the phrase used in a question? ("Should I remove you?")
- Was it part of the AI agent's speech? (not the prospect)
- Is there context suggesting the prospect wants to continue? (asking questions, engaged)

Respond with JSON:
{{
  "isFalsePositive": boolean,
  "reasoning": "explanation"
}}"""

AGENT_SPEAKERS = frozenset({"agent", "ai", "assistant", "bot", "caller", "rep", "representative"})

# Offers made to the prospect, not requests made by them.
OFFER_LEADS: tuple[str, ...] = (
    "should i",
    "shall i",
    "should we",
    "do you want me to",
    "do you want us to",
    "would you like me to",
    "would you like us to",
    "want me to",
)

_SPEAKER_LABEL = re.compile(r"^([a-z][a-z ]{0,30}):\s*")
_SENTENCE = re.compile(r"[^.!?]+[.!?]*")


@dataclass(frozen=True)
class OptOutResult:
    opt_out_detected: bool
    confidence: float
    detected_phrase: str | None
    recommended_response: str | None
    method: str  # "keyword" | "llm" | "none"


@dataclass(frozen=True)
class OptOutValidation:
    is_false_positive: bool
    reasoning: str | None
    method: str  # "agent_speech" | "question" | "llm" | "none"


@dataclass(frozen=True)
class SegmentHandlingResult:
    analysis: OptOutResult
    recorded: bool
    entry: DncEntry | None = None
    false_positive: bool = False


@dataclass(frozen=True)
class TranscriptJob:
    id: str
    transcript: str
    context: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class BatchAnalysisItem:
    id: str
    result: OptOutResult | None
    error: str | None = None


def _normalize_text(text: str) -> str:
    return " ".join(text.replace("’", "'").lower().split())


def find_opt_out_phrase(text: str) -> str | None:
    normalized = _normalize_text(text)
    for phrase in OPT_OUT_PHRASES:
        if phrase in normalized:
            return phrase
    return None


def non_request_usage(transcript: str, phrase: str) -> str | None:
    """Classify how ``phrase`` appears when no occurrence is a prospect's request.

    Returns ``"agent_speech"`` or ``"question"`` when every line carrying the
    phrase is spoken by the agent or offers the removal as a question, and
    None as soon as one occurrence reads as a genuine request.
    """
    phrase = _normalize_text(phrase)
    usages: list[str] = []
    for line in transcript.splitlines():
        normalized = _normalize_text(line)
        if phrase not in normalized:
            continue
        label = _SPEAKER_LABEL.match(normalized)
        if label is not None and label.group(1).strip() in AGENT_SPEAKERS:
            usages.append("agent_speech")
            continue
        spoken = normalized[label.end():] if label is not None else normalized
        for sentence in _SENTENCE.findall(spoken):
            if phrase not in sentence:
                continue
            if not sentence.strip().startswith(OFFER_LEADS):
                return None
            usages.append("question")
    return usages[0] if usages else None


def _parse_confidence(value: Any) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return max(0.0, min(1.0, float(value)))
    return _LABEL_CONFIDENCE.get(str(value).strip().lower(), 0.0)


class OptOutDetector:
    def __init__(self, llm: LLMGatewayProtocol | None = None) -> None:
        self._llm = llm

    async def analyze(
        self,
        segment: str,
        transcript_so_far: str = "",
        context: dict[str, Any] | None = None,
    ) -> OptOutResult:
        phrase = find_opt_out_phrase(segment)
        if phrase is not None:
            logger.info("Opt-out detected via keyword matching", extra={"phrase": phrase})
            return OptOutResult(
                opt_out_detected=True,
                confidence=KEYWORD_CONFIDENCE,
                detected_phrase=phrase,
                recommended_response=DEFAULT_OPT_OUT_RESPONSE,
                method="keyword",
            )

        none = OptOutResult(False, 0.0, None, None, "none")
        if self._llm is None:
            return none

        transcript = f"{transcript_so_far}\n{segment}".strip()
        prompt = OPT_OUT_PROMPT.format(
            transcript=transcript,
            call_type=(context or {}).get("callType", "Outbound call"),
        )
        try:
            verdict = extract_json_object(await self._llm.complete(prompt))
        except LLMGatewayError as e:
            logger.warning("Opt-out classification failed; using keyword result", extra={"error": str(e)})
            return none

        if not verdict.get("optOut"):
            return none

        result = OptOutResult(
            opt_out_detected=True,
            confidence=_parse_confidence(verdict.get("confidence")),
            detected_phrase=verdict.get("indicativePhrase") or None,
            recommended_response=verdict.get("suggestedResponse") or DEFAULT_OPT_OUT_RESPONSE,
            method="llm",
        )
        logger.info(
            "Opt-out detected via model classification",
            extra={"confidence": result.confidence, "phrase": result.detected_phrase},
        )
        return result

    async def validate_opt_out(self, transcript: str, detected_phrase: str) -> OptOutValidation:
        """Decide whether a keyword hit is a false positive.

        Agent speech and offers phrased as questions are rejected locally.
        Otherwise the model, when configured, gets the full transcript. A
        model failure counts as a genuine opt-out.
        """
        usage = non_request_usage(transcript, detected_phrase)
        if usage is not None:
            logger.info(
                "Opt-out phrase rejected as false positive",
                extra={"phrase": detected_phrase, "usage": usage},
            )
            return OptOutValidation(True, f"Phrase appears only as {usage.replace('_', ' ')}", usage)

        genuine = OptOutValidation(False, None, "none")
        if self._llm is None:
            return genuine

        prompt = FALSE_POSITIVE_PROMPT.format(phrase=detected_phrase, transcript=transcript)
        try:
            verdict = extract_json_object(await self._llm.complete(prompt))
        except LLMGatewayError as e:
            logger.warning("Opt-out validation failed; keeping the opt-out", extra={"error": str(e)})
            return genuine

        reasoning = verdict.get("reasoning") or None
        if verdict.get("isFalsePositive") is not True:
            return OptOutValidation(False, reasoning, "llm")
        logger.info(
            "Opt-out phrase rejected by model validation",
            extra={"phrase": detected_phrase, "reasoning": reasoning},
        )
        return OptOutValidation(True, reasoning, "llm")

    async def batch_analyze(self, jobs: Sequence[TranscriptJob]) -> list[BatchAnalysisItem]:
        """Analyze transcripts concurrently; one failure does not sink the batch."""
        logger.info("Batch analyzing transcripts", extra={"count": len(jobs)})
        outcomes = await asyncio.gather(
            *(self.analyze(job.transcript, context=job.context) for job in jobs),
            return_exceptions=True,
        )

        items: list[BatchAnalysisItem] = []
        for job, outcome in zip(jobs, outcomes):
            if isinstance(outcome, OptOutResult):
                items.append(BatchAnalysisItem(job.id, outcome))
                continue
            if not isinstance(outcome, Exception):
                raise outcome
            logger.error(
                "Batch transcript analysis failed",
                extra={"transcript_id": job.id, "error": str(outcome)},
            )
            items.append(BatchAnalysisItem(job.id, None, str(outcome) or type(outcome).__name__))
        return items


class TranscriptOptOutHandler:
    """Feeds detected opt-outs into the compliance service."""

    def __init__(
        self,
        detector: OptOutDetector,
        service: ComplianceService,
        min_confidence: float = 0.7,
    ) -> None:
        self._detector = detector
        self._service = service
        self._min_confidence = min_confidence

    async def handle_segment(
        self,
        phone_number: str,
        organization_id: UUID,
        segment: str,
        transcript_so_far: str = "",
        call_id: str | None = None,
        context: dict[str, Any] | None = None,
        actor_id: str = SYSTEM_ACTOR_ID,
    ) -> SegmentHandlingResult:
        """Analyze a segment and, on a confident opt-out, list the number.

        The number is on the DNC list by the time this returns, so the call
        can be ended with the recommended acknowledgement.
        """
        analysis = await self._detector.analyze(segment, transcript_so_far, context)
        if not analysis.opt_out_detected or analysis.confidence < self._min_confidence:
            return SegmentHandlingResult(analysis=analysis, recorded=False)

        if analysis.method == "keyword" and analysis.detected_phrase:
            transcript = f"{transcript_so_far}\n{segment}".strip()
            validation = await self._detector.validate_opt_out(transcript, analysis.detected_phrase)
            if validation.is_false_positive:
                logger.info(
                    "Opt-out not recorded",
                    extra={
                        "organization_id": str(organization_id),
                        "call_id": call_id,
                        "validation": validation.method,
                    },
                )
                return SegmentHandlingResult(analysis=analysis, recorded=False, false_positive=True)

        notes = f"Detected on call {call_id}" if call_id else None
        result = await self._service.add(
            phone_number,
            DncReason.DETECTED_FROM_CALL,
            actor_id,
            organization_id,
            source=SOURCE_CALL_TRANSCRIPT,
            notes=notes,
            detected_phrase=analysis.detected_phrase,
        )
        logger.info(
            "Opt-out recorded from transcript",
            extra={
                "organization_id": str(organization_id),
                "phone_number": result.entry.phone_number,
                "call_id": call_id,
                "method": analysis.method,
            },
        )
        return SegmentHandlingResult(analysis=analysis, recorded=True, entry=result.entry)
