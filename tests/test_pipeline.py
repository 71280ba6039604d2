"""Tests for the per-image analysis pipeline."""

import json
from unittest.mock import MagicMock

import pytest

from picturetalk.analysis.client import (
    AnalysisParseError,
    ImageEncodingError,
    KimiClient,
    NoResponseDataError,
    SSEEvent,
    TransportError,
)
from picturetalk.analysis.encoding import UPLOAD_FORMATS, encode_for_upload
from picturetalk.analysis.pipeline import (
    AnalysisPipeline,
    build_prompt,
    create_client,
    parse_analysis,
)
from picturetalk.settings import AIProvider, EnglishLevel
from picturetalk.storage.kv_store import CHAT_ID_KEY
from tests.helpers import ANALYSIS_PAYLOAD, ScriptedClient, cmpl_events, make_png

PAYLOAD_TEXT = json.dumps(ANALYSIS_PAYLOAD, ensure_ascii=False)


class TestParseAnalysis:
    def test_valid_payload(self):
        result = parse_analysis(PAYLOAD_TEXT)
        assert [w.word for w in result.words] == ["Stool", "light switch"]

    def test_code_fenced_payload(self):
        result = parse_analysis(f"```json\n{PAYLOAD_TEXT}\n```")
        assert len(result.words) == 2

    def test_empty_buffer(self):
        with pytest.raises(NoResponseDataError, match="No response data received"):
            parse_analysis("")

    @pytest.mark.parametrize("text", ["not json", "{\"words\": []}", "[1, 2]"])
    def test_invalid_payload(self, text):
        with pytest.raises(AnalysisParseError):
            parse_analysis(text)


class TestEncoding:
    def test_first_format_wins(self):
        encoded = encode_for_upload(make_png(40, 30))
        assert encoded.extension == ".webp"
        assert encoded.content_type == "image/webp"
        assert (encoded.width, encoded.height) == (40, 30)
        assert encoded.file_name.endswith(".webp")
        assert encoded.size == len(encoded.data)

    def test_falls_back_when_format_fails(self):
        formats = (("NOPE", ".nope", "image/nope"),) + UPLOAD_FORMATS[1:]
        encoded = encode_for_upload(make_png(), formats)
        assert encoded.extension == ".png"

    def test_unique_file_names(self):
        png = make_png()
        assert encode_for_upload(png).file_name != encode_for_upload(png).file_name

    @pytest.mark.parametrize("data", [b"", b"definitely not an image"])
    def test_unreadable_image(self, data):
        with pytest.raises(ImageEncodingError):
            encode_for_upload(data)

    def test_no_working_format(self):
        with pytest.raises(ImageEncodingError):
            encode_for_upload(make_png(), (("NOPE", ".nope", "image/nope"),))


class TestPrompt:
    def test_level_description_inserted(self):
        prompt = build_prompt(EnglishLevel.IELTS)
        assert EnglishLevel.IELTS.description in prompt
        assert "{level}" not in prompt
        assert '"words"' in prompt


class TestAnalyze:
    def test_success(self, pipeline, client, kv):
        steps, progress = [], []
        result = pipeline.analyze(make_png(), on_progress=progress.append, on_step=steps.append)

        assert [w.word for w in result.words] == ["Stool", "light switch"]
        assert steps == ["session", "encode", "upload", "register", "analyze"]
        assert progress[-1] == json.dumps(ANALYSIS_PAYLOAD)
        assert all(len(a) < len(b) for a, b in zip(progress, progress[1:]))
        assert client.created_chats == ["chat-1"]
        assert kv.get(CHAT_ID_KEY) == "chat-1"
        assert client.uploads[0][2] == "image/webp"
        assert client.registered == [(client.uploads[0][0], 32, 24)]

    def test_reuses_cached_session(self, kv, settings):
        client = ScriptedClient(streams=[cmpl_events(PAYLOAD_TEXT), cmpl_events(PAYLOAD_TEXT)])
        pipeline = AnalysisPipeline(kv, settings, client=client)
        pipeline.analyze(make_png())
        pipeline.analyze(make_png())
        assert client.created_chats == ["chat-1"]
        assert client.stream_calls == ["chat-1", "chat-1"]

    def test_explicit_session(self, pipeline, client):
        pipeline.analyze(make_png(), chat_id="given")
        assert client.created_chats == []
        assert client.stream_calls == ["given"]

    def test_empty_stream_retries_once_with_new_session(self, kv, settings):
        client = ScriptedClient(streams=[[SSEEvent("done")], cmpl_events(PAYLOAD_TEXT)])
        pipeline = AnalysisPipeline(kv, settings, client=client)

        result = pipeline.analyze(make_png())

        assert len(result.words) == 2
        assert client.created_chats == ["chat-1", "chat-2"]
        assert client.stream_calls == ["chat-1", "chat-2"]
        assert kv.get(CHAT_ID_KEY) == "chat-2"

    def test_transport_failure_is_retried(self, kv, settings):
        client = ScriptedClient(streams=[TransportError("reset"), cmpl_events(PAYLOAD_TEXT)])
        pipeline = AnalysisPipeline(kv, settings, client=client)
        assert len(pipeline.analyze(make_png()).words) == 2
        assert client.stream_calls == ["chat-1", "chat-2"]

    def test_second_failure_propagates(self, kv, settings):
        client = ScriptedClient(streams=[[SSEEvent("done")], [SSEEvent("done")]])
        pipeline = AnalysisPipeline(kv, settings, client=client)
        with pytest.raises(NoResponseDataError):
            pipeline.analyze(make_png())
        assert len(client.stream_calls) == 2

    def test_parse_error_after_retry(self, kv, settings):
        client = ScriptedClient(streams=[cmpl_events("garbage"), cmpl_events("still garbage")])
        pipeline = AnalysisPipeline(kv, settings, client=client)
        with pytest.raises(AnalysisParseError):
            pipeline.analyze(make_png())

    def test_ignores_unknown_events_and_stops_at_done(self, kv, settings):
        events = [SSEEvent("req"), *cmpl_events(PAYLOAD_TEXT), SSEEvent("cmpl", "trailing junk")]
        client = ScriptedClient(streams=[events])
        pipeline = AnalysisPipeline(kv, settings, client=client)
        assert len(pipeline.analyze(make_png()).words) == 2

    def test_encoding_failure_skips_network(self, pipeline, client):
        with pytest.raises(ImageEncodingError):
            pipeline.analyze(b"not an image")
        assert client.uploads == []
        assert client.stream_calls == []

    def test_prompt_follows_english_level(self, kv, settings):
        settings.set_english_level(EnglishLevel.GRE)
        client = MagicMock(wraps=ScriptedClient())
        pipeline = AnalysisPipeline(kv, settings, client=client)
        pipeline.analyze(make_png())
        prompt = client.stream_completion.call_args.args[1]
        assert EnglishLevel.GRE.description in prompt


class TestCreateClient:
    def test_kimi_by_default(self, settings):
        settings.set_provider(AIProvider.KIMI)
        assert isinstance(create_client(settings), KimiClient)

    def test_factory_used_per_analysis(self, kv, settings):
        client = ScriptedClient()
        factory = MagicMock(return_value=client)
        pipeline = AnalysisPipeline(kv, settings, client_factory=factory)
        pipeline.analyze(make_png())
        factory.assert_called_once_with(settings)
