"""
Tests for transcript opt-out detection and the language-model gateway.
"""

import json
from uuid import UUID

import httpx
import pytest

from dnc_engine.dnc.audit import AuditLog
from dnc_engine.dnc.llm import HttpLLMGateway, LLMGatewayError, extract_json_object
from dnc_engine.dnc.models import SOURCE_CALL_TRANSCRIPT, AuditAction, DncReason
from dnc_engine.dnc.optout import (
    DEFAULT_OPT_OUT_RESPONSE,
    KEYWORD_CONFIDENCE,
    OptOutDetector,
    OptOutResult,
    TranscriptJob,
    TranscriptOptOutHandler,
    find_opt_out_phrase,
    non_request_usage,
)
from dnc_engine.dnc.service import ComplianceService
from fakes import FakeLLM


def _verdict(opt_out: bool, confidence: str = "high", phrase: str = "") -> str:
    body = json.dumps(
        {
            "optOut": opt_out,
            "confidence": confidence,
            "indicativePhrase": phrase,
            "suggestedResponse": "Understood, goodbye.",
        }
    )
    return f"Here is my analysis:\n```json\n{body}\n```"


class TestFindOptOutPhrase:
    def test_most_specific_phrase_reported(self) -> None:
        assert find_opt_out_phrase("Please take me off your list now") == "take me off your list"
        assert find_opt_out_phrase("DON'T CALL ME AGAIN") == "don't call me again"

    def test_curly_apostrophe_and_whitespace(self) -> None:
        assert find_opt_out_phrase("Don’t   call\nme") == "don't call me"

    def test_no_match(self) -> None:
        assert find_opt_out_phrase("Call me back later, I'm busy") is None
        assert find_opt_out_phrase("I'm not interested right now") is None


class TestOptOutDetector:
    @pytest.mark.asyncio
    async def test_keyword_match_skips_model(self) -> None:
        llm = FakeLLM(reply=_verdict(False))
        detector = OptOutDetector(llm)

        result = await detector.analyze("Stop calling me!")

        assert result.opt_out_detected is True
        assert result.method == "keyword"
        assert result.confidence == KEYWORD_CONFIDENCE
        assert result.detected_phrase == "stop calling me"
        assert result.recommended_response == DEFAULT_OPT_OUT_RESPONSE
        assert llm.prompts == []

    @pytest.mark.asyncio
    async def test_no_model_no_match(self) -> None:
        result = await OptOutDetector().analyze("Sounds good, tell me more")

        assert result.opt_out_detected is False
        assert result.method == "none"
        assert result.confidence == 0.0

    @pytest.mark.asyncio
    async def test_model_classification(self) -> None:
        llm = FakeLLM(reply=_verdict(True, "high", "quit phoning this house"))
        detector = OptOutDetector(llm)

        result = await detector.analyze(
            "quit phoning this house", "Agent: Hello!", context={"callType": "Survey"}
        )

        assert result.opt_out_detected is True
        assert result.method == "llm"
        assert result.confidence == 0.9
        assert result.detected_phrase == "quit phoning this house"
        assert result.recommended_response == "Understood, goodbye."
        assert "Agent: Hello!" in llm.prompts[0]
        assert "Survey" in llm.prompts[0]

    @pytest.mark.asyncio
    async def test_model_says_no(self) -> None:
        result = await OptOutDetector(FakeLLM(reply=_verdict(False))).analyze("maybe next month")

        assert result.opt_out_detected is False
        assert result.method == "none"

    @pytest.mark.asyncio
    async def test_model_failure_returns_no_opt_out(self) -> None:
        detector = OptOutDetector(FakeLLM(error=LLMGatewayError("timeout")))

        result = await detector.analyze("quit phoning this house")

        assert result.opt_out_detected is False
        assert result.method == "none"

    @pytest.mark.asyncio
    async def test_unparsable_model_reply(self) -> None:
        result = await OptOutDetector(FakeLLM(reply="I cannot tell.")).analyze("hmm")

        assert result.opt_out_detected is False


class TestValidateOptOut:
    def test_agent_speech_and_offers_are_not_requests(self) -> None:
        assert non_request_usage("Agent: Just say remove me from your list anytime.", "remove me") == "agent_speech"
        assert non_request_usage("Prospect: Should I opt out of these surveys?", "i opt out") == "question"
        assert non_request_usage("Would you like me to remove my number, sir", "remove my number") == "question"

    def test_prospect_request_is_genuine(self) -> None:
        transcript = "Agent: Should I remove me from your list? Odd question.\nProspect: Yes. Remove me from your list."

        assert non_request_usage(transcript, "remove me from your list") is None
        assert non_request_usage("Can you take me off your list?", "take me off your list") is None

    @pytest.mark.asyncio
    async def test_agent_speech_rejected_without_model(self) -> None:
        llm = FakeLLM(reply=json.dumps({"isFalsePositive": False, "reasoning": "n/a"}))

        validation = await OptOutDetector(llm).validate_opt_out(
            "Assistant: You can always say stop calling me.", "stop calling me"
        )

        assert validation.is_false_positive is True
        assert validation.method == "agent_speech"
        assert llm.prompts == []

    @pytest.mark.asyncio
    async def test_model_flags_false_positive(self) -> None:
        llm = FakeLLM(reply=json.dumps({"isFalsePositive": True, "reasoning": "quoting a neighbour"}))

        validation = await OptOutDetector(llm).validate_opt_out(
            "My neighbour told them stop calling me, ha. Anyway, tell me more.", "stop calling me"
        )

        assert validation.is_false_positive is True
        assert validation.method == "llm"
        assert validation.reasoning == "quoting a neighbour"
        assert '"stop calling me"' in llm.prompts[0]

    @pytest.mark.asyncio
    async def test_model_failure_keeps_opt_out(self) -> None:
        detector = OptOutDetector(FakeLLM(error=LLMGatewayError("timeout")))

        validation = await detector.validate_opt_out("Stop calling me.", "stop calling me")

        assert validation.is_false_positive is False

    @pytest.mark.asyncio
    async def test_without_model_genuine_by_default(self) -> None:
        validation = await OptOutDetector().validate_opt_out("Stop calling me.", "stop calling me")

        assert validation.is_false_positive is False
        assert validation.method == "none"


class TestBatchAnalyze:
    @pytest.mark.asyncio
    async def test_results_keep_order_and_isolate_failures(self, monkeypatch) -> None:
        detector = OptOutDetector()
        original = detector.analyze

        async def analyze(segment, transcript_so_far="", context=None) -> OptOutResult:
            if segment == "explode":
                raise RuntimeError("transcript store offline")
            return await original(segment, transcript_so_far, context)

        monkeypatch.setattr(detector, "analyze", analyze)

        items = await detector.batch_analyze(
            [
                TranscriptJob("t1", "Please stop calling me"),
                TranscriptJob("t2", "explode"),
                TranscriptJob("t3", "Tell me more", {"callType": "Survey"}),
            ]
        )

        assert [item.id for item in items] == ["t1", "t2", "t3"]
        assert items[0].result is not None and items[0].result.opt_out_detected is True
        assert items[1].result is None
        assert items[1].error == "transcript store offline"
        assert items[2].result is not None and items[2].result.opt_out_detected is False


class TestTranscriptOptOutHandler:
    @pytest.mark.asyncio
    async def test_detected_opt_out_is_listed_before_return(
        self, service: ComplianceService, audit_log: AuditLog, organization_id: UUID
    ) -> None:
        handler = TranscriptOptOutHandler(OptOutDetector(), service)

        result = await handler.handle_segment(
            "212-555-1234", organization_id, "Please remove me from your list", call_id="CA123"
        )

        assert result.recorded is True
        assert result.entry is not None
        assert result.entry.reason == DncReason.DETECTED_FROM_CALL
        assert result.entry.source == SOURCE_CALL_TRANSCRIPT
        assert result.entry.detected_phrase == "remove me from your list"
        assert result.entry.notes == "Detected on call CA123"
        assert (await service.check("+12125551234", organization_id)).on_list is True
        records = await audit_log.entries(organization_id, action=AuditAction.ADDED)
        assert records[0].actor_id == "system:transcript"

    @pytest.mark.asyncio
    async def test_low_confidence_not_recorded(self, service: ComplianceService, organization_id: UUID) -> None:
        detector = OptOutDetector(FakeLLM(reply=_verdict(True, "low", "eh")))
        handler = TranscriptOptOutHandler(detector, service, min_confidence=0.7)

        result = await handler.handle_segment("+12125551234", organization_id, "eh, whatever")

        assert result.analysis.opt_out_detected is True
        assert result.recorded is False
        assert (await service.check("+12125551234", organization_id)).on_list is False

    @pytest.mark.asyncio
    async def test_no_opt_out_not_recorded(self, service: ComplianceService, organization_id: UUID) -> None:
        handler = TranscriptOptOutHandler(OptOutDetector(), service)

        result = await handler.handle_segment("+12125551234", organization_id, "Yes, go ahead")

        assert result.recorded is False
        assert result.entry is None

    @pytest.mark.asyncio
    async def test_agent_spoken_phrase_not_recorded(self, service: ComplianceService, organization_id: UUID) -> None:
        handler = TranscriptOptOutHandler(OptOutDetector(), service)

        result = await handler.handle_segment(
            "+12125551234",
            organization_id,
            "Agent: If you ever want us to stop, just say remove me from your list.",
            transcript_so_far="Prospect: Hi, who is this?",
        )

        assert result.analysis.opt_out_detected is True
        assert result.false_positive is True
        assert result.recorded is False
        assert (await service.check("+12125551234", organization_id)).on_list is False

    @pytest.mark.asyncio
    async def test_validation_failure_still_records(self, service: ComplianceService, organization_id: UUID) -> None:
        detector = OptOutDetector(FakeLLM(error=LLMGatewayError("timeout")))
        handler = TranscriptOptOutHandler(detector, service)

        result = await handler.handle_segment("+12125551234", organization_id, "Prospect: stop calling me")

        assert result.recorded is True
        assert result.false_positive is False
        assert (await service.check("+12125551234", organization_id)).on_list is True


class TestExtractJsonObject:
    def test_fenced(self) -> None:
        assert extract_json_object('```json\n{"optOut": true}\n```') == {"optOut": True}

    def test_bare(self) -> None:
        assert extract_json_object('Answer: {"optOut": false} done') == {"optOut": False}

    def test_missing(self) -> None:
        with pytest.raises(LLMGatewayError):
            extract_json_object("no json here")

    def test_invalid(self) -> None:
        with pytest.raises(LLMGatewayError):
            extract_json_object("{not json}")


class TestHttpLLMGateway:
    @pytest.mark.asyncio
    async def test_posts_chat_completion(self) -> None:
        seen: dict = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"choices": [{"message": {"content": "hello"}}]})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            gateway = HttpLLMGateway("sk-test", base_url="https://llm.example.com/v1/", client=client)
            reply = await gateway.complete("prompt text")

        assert reply == "hello"
        assert seen["url"] == "https://llm.example.com/v1/chat/completions"
        assert seen["auth"] == "Bearer sk-test"
        assert seen["body"]["messages"] == [{"role": "user", "content": "prompt text"}]

    @pytest.mark.asyncio
    async def test_error_status_raises(self) -> None:
        transport = httpx.MockTransport(lambda request: httpx.Response(500, json={"error": "down"}))
        async with httpx.AsyncClient(transport=transport) as client:
            gateway = HttpLLMGateway("sk-test", client=client)
            with pytest.raises(LLMGatewayError):
                await gateway.complete("prompt")

    @pytest.mark.asyncio
    async def test_unexpected_shape_raises(self) -> None:
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"nothing": []}))
        async with httpx.AsyncClient(transport=transport) as client:
            gateway = HttpLLMGateway("sk-test", client=client)
            with pytest.raises(LLMGatewayError):
                await gateway.complete("prompt")

    def test_from_settings_without_key(self, test_settings) -> None:
        assert HttpLLMGateway.from_settings(test_settings) is None
