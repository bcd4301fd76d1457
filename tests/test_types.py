"""Tests for the IR data model, drift log and error taxonomy."""
import pytest

from llmbridge.infrastructure.llm.drift import DriftLog, approximated, clamp, dropped
from llmbridge.infrastructure.llm.exceptions import (
    ProviderError, ProviderErrorKind, RouterExhaustedError, StreamError, ValidationError,
)
from llmbridge.infrastructure.llm.types import (
    ChunkKind, DriftFidelity, DriftStage, FinishReason, GenerationParams, ImagePart,
    IRChatChunk, IRChatMessage, IRChatResponse, Role, TextPart, ToolCall, Usage,
    collect_stream_text,
)

from fakes import ir_request


class TestIRTypes:
    def test_present_params_are_sparse(self):
        params = GenerationParams(temperature=0.2, stop=("END",), extra={"logprobs": True})
        assert params.present() == {"temperature": 0.2, "stop": ("END",), "logprobs": True}
        assert GenerationParams().present() == {}

    def test_message_text_skips_images(self):
        message = IRChatMessage(Role.USER, (TextPart("look "), ImagePart(url="http://x/y.png"), TextPart("here")))
        assert message.is_multipart
        assert message.text == "look here"
        assert not IRChatMessage(Role.USER, "plain").is_multipart

    def test_image_data_url(self):
        assert ImagePart(data="AAAA", media_type="image/jpeg").as_data_url() == "data:image/jpeg;base64,AAAA"
        assert ImagePart(url="http://x/y.png").as_data_url() == "http://x/y.png"

    def test_request_ids_are_unique(self):
        first, second = ir_request(), ir_request()
        assert first.request_id.startswith("req_")
        assert first.request_id != second.request_id

    def test_system_messages(self):
        request = ir_request(system="be brief")
        assert [m.text for m in request.system_messages] == ["be brief"]

    def test_tool_call_arguments(self):
        assert ToolCall("c1", "lookup", '{"q": "x"}').parsed_arguments() == {"q": "x"}
        assert ToolCall("c1", "lookup", "").parsed_arguments() == {}

    def test_usage_total(self):
        assert Usage.of(3, 4) == Usage(3, 4, 7)

    def test_with_drift_appends_without_duplicates(self):
        notice = dropped("seed", DriftStage.EXECUTE, "unsupported", 1)
        other = dropped("top_k", DriftStage.EXECUTE, "unsupported", 5)
        response = IRChatResponse(IRChatMessage(Role.ASSISTANT, "hi"), FinishReason.STOP, drift=(notice,))
        updated = response.with_drift([notice, other])
        assert updated.drift == (notice, other)
        assert response.with_drift([notice]) is response

    def test_collect_stream_text(self):
        chunks = [
            IRChatChunk(0, ChunkKind.CONTENT, delta="Hel"),
            IRChatChunk(1, ChunkKind.CONTENT, delta="lo"),
            IRChatChunk(2, ChunkKind.DONE, finish_reason=FinishReason.STOP),
        ]
        assert collect_stream_text(chunks) == "Hello"
        assert chunks[-1].is_terminal


class TestDriftLog:
    def test_entries_are_deduplicated(self):
        log = DriftLog()
        notice = dropped("seed", DriftStage.EXECUTE, "unsupported", 1)
        log.add(notice)
        log.add(notice)
        assert len(log) == 1
        assert log.fields() == ("seed",)

    def test_clamp_records_approximation(self):
        log = DriftLog()
        assert clamp("temperature", 1.7, 0.0, 1.0, log, backend="claude") == 1.0
        (notice,) = log.notices
        assert notice.fidelity == DriftFidelity.APPROXIMATE
        assert notice.original == 1.7
        assert notice.translated == 1.0
        assert notice.backend == "claude"

    def test_clamp_within_range_is_silent(self):
        log = DriftLog()
        assert clamp("temperature", 0.5, 0.0, 1.0, log) == 0.5
        assert clamp("temperature", None, 0.0, 1.0, log) is None
        assert len(log) == 0

    def test_notice_serializes(self):
        notice = approximated("model", DriftStage.EXECUTE, "pinned", "gpt-4o", "echo-1", "echo")
        assert notice.to_dict() == {
            "field": "model",
            "stage": "execute",
            "fidelity": "approximate",
            "reason": "pinned",
            "original": "gpt-4o",
            "translated": "echo-1",
            "backend": "echo",
        }


class TestErrors:
    @pytest.mark.parametrize("kind,retryable", [
        (ProviderErrorKind.RATE_LIMIT, True),
        (ProviderErrorKind.TIMEOUT, True),
        (ProviderErrorKind.SERVER_FAULT, True),
        (ProviderErrorKind.AUTH, False),
        (ProviderErrorKind.MODEL_NOT_FOUND, False),
        (ProviderErrorKind.INVALID_REQUEST, False),
    ])
    def test_provider_error_retryability(self, kind, retryable):
        assert ProviderError("boom", kind).retryable is retryable

    def test_stream_error_retryable_only_before_delivery(self):
        cause = ProviderError("reset", ProviderErrorKind.SERVER_FAULT)
        assert StreamError("broken", delivered=0, cause=cause).retryable
        assert not StreamError("broken", delivered=2, cause=cause).retryable
        fatal = ProviderError("denied", ProviderErrorKind.AUTH)
        assert not StreamError("broken", delivered=0, cause=fatal).retryable

    def test_stream_error_marks_incomplete(self):
        data = StreamError("broken", delivered=3, partial_content="abc").to_dict()
        assert data["incomplete"] is True
        assert data["delivered"] == 3

    def test_validation_error_names_field(self):
        data = ValidationError("bad", field="messages[0].role").to_dict()
        assert data["type"] == "validation_error"
        assert data["field"] == "messages[0].role"
        assert data["retryable"] is False

    def test_router_exhausted_lists_attempts(self):
        first = ProviderError("down", ProviderErrorKind.SERVER_FAULT, backend="a")
        second = ProviderError("slow", ProviderErrorKind.TIMEOUT, backend="b")
        error = RouterExhaustedError("all failed", last_error=second, attempts=[("a", first), ("b", second)])
        data = error.to_dict()
        assert [a["backend"] for a in data["attempts"]] == ["a", "b"]
        assert data["last_error"]["kind"] == "timeout"
