"""Tests for the provider gateway."""
import asyncio
import json

import httpx
import pytest

from contextchat.errors import ConfigurationError, ProviderTimeoutError, UpstreamProviderError
from contextchat.services.provider import ProviderGateway, extract_text

from conftest import OPENROUTER_CHAT, RUNPOD_CHAT, completion_json, runpod_output, sse_body


class TestExtractText:
    """First non-empty candidate wins, in a fixed order."""

    def test_output_text_first(self):
        data = {
            "output": {"text": "A", "choices": [{"message": {"content": "B"}}]},
            "choices": [{"message": {"content": "C"}}],
        }
        assert extract_text(data) == "A"

    def test_output_choices_message(self):
        data = {"output": {"choices": [{"message": {"content": "B"}, "text": "T"}]}}
        assert extract_text(data) == "B"

    def test_output_choices_text(self):
        assert extract_text({"output": {"choices": [{"text": "T"}]}}) == "T"

    def test_openai_shape(self):
        assert extract_text(completion_json("C")) == "C"

    def test_top_level_text(self):
        assert extract_text({"text": "D"}) == "D"

    def test_empty_values_are_skipped(self):
        assert extract_text({"output": {"text": ""}, "text": "fallback"}) == "fallback"

    def test_nothing_found(self):
        assert extract_text({}) == ""
        assert extract_text(None) == ""
        assert extract_text({"output": "plain"}) == ""


class TestComplete:

    async def test_envelope_and_auth(self, upstream, gateway):
        upstream.on(RUNPOD_CHAT, httpx.Response(200, json=runpod_output("ok")))
        data = await gateway.complete(RUNPOD_CHAT, "tok", {"a": 1}, timeout=5)

        request = upstream.calls(RUNPOD_CHAT)[0]
        assert json.loads(request.content) == {"input": {"a": 1}}
        assert request.headers["Authorization"] == "Bearer tok"
        assert data["output"]["text"] == "ok"

    async def test_direct_body_without_token(self, upstream, gateway):
        upstream.on(RUNPOD_CHAT, httpx.Response(200, json={"text": "x"}))
        await gateway.complete(RUNPOD_CHAT, None, {"a": 1}, timeout=5, envelope=False)

        request = upstream.calls(RUNPOD_CHAT)[0]
        assert json.loads(request.content) == {"a": 1}
        assert "Authorization" not in request.headers

    async def test_non_ok_raises_with_status_and_body(self, upstream, gateway):
        upstream.on(RUNPOD_CHAT, httpx.Response(503, text="worker cold"))
        with pytest.raises(UpstreamProviderError) as exc_info:
            await gateway.complete(RUNPOD_CHAT, "tok", {}, timeout=5)

        assert exc_info.value.status == 503
        assert exc_info.value.body == "worker cold"
        assert exc_info.value.url == RUNPOD_CHAT
        assert exc_info.value.status_code == 502

    async def test_malformed_json(self, upstream, gateway):
        upstream.on(RUNPOD_CHAT, httpx.Response(200, text="not json"))
        with pytest.raises(UpstreamProviderError, match="Malformed JSON") as exc_info:
            await gateway.complete(RUNPOD_CHAT, "tok", {}, timeout=5)
        assert exc_info.value.status == 200

    async def test_empty_body_is_empty_dict(self, upstream, gateway):
        upstream.on(RUNPOD_CHAT, httpx.Response(200, text=""))
        assert await gateway.complete(RUNPOD_CHAT, "tok", {}, timeout=5) == {}

    async def test_timeout_is_status_zero(self, upstream, gateway):
        def slow(request):
            raise httpx.ReadTimeout("timed out", request=request)

        upstream.on(RUNPOD_CHAT, slow)
        with pytest.raises(ProviderTimeoutError) as exc_info:
            await gateway.complete(RUNPOD_CHAT, "tok", {}, timeout=0.5)

        assert exc_info.value.status == 0
        assert exc_info.value.aborted is True

    async def test_deadline_covers_whole_request(self, upstream, gateway):
        # A response that trickles in never trips a per-phase timeout
        async def trickle(request):
            await asyncio.sleep(1)
            return httpx.Response(200, json=runpod_output("late"))

        upstream.on(RUNPOD_CHAT, trickle)
        with pytest.raises(ProviderTimeoutError) as exc_info:
            await gateway.complete(RUNPOD_CHAT, "tok", {}, timeout=0.05)
        assert exc_info.value.status == 0

    async def test_network_error(self, upstream, gateway):
        def refuse(request):
            raise httpx.ConnectError("refused", request=request)

        upstream.on(RUNPOD_CHAT, refuse)
        with pytest.raises(UpstreamProviderError) as exc_info:
            await gateway.complete(RUNPOD_CHAT, "tok", {}, timeout=5)
        assert exc_info.value.status == 599

    async def test_log_hook_sees_every_call(self, settings, upstream, http_client):
        seen = []
        gateway = ProviderGateway(settings, http_client=http_client, log_hook=seen.append)
        upstream.on(RUNPOD_CHAT, httpx.Response(200, json={}), httpx.Response(500, text="bad"))

        await gateway.complete(RUNPOD_CHAT, "tok", {}, timeout=5)
        with pytest.raises(UpstreamProviderError):
            await gateway.complete(RUNPOD_CHAT, "tok", {}, timeout=5)

        assert [entry["status"] for entry in seen] == [200, 500]
        assert seen[1]["error"]

    async def test_failing_log_hook_does_not_break_call(self, settings, upstream, http_client):
        def broken(info):
            raise RuntimeError("hook down")

        gateway = ProviderGateway(settings, http_client=http_client, log_hook=broken)
        upstream.on(RUNPOD_CHAT, httpx.Response(200, json={"text": "fine"}))
        assert await gateway.complete(RUNPOD_CHAT, "tok", {}, timeout=5) == {"text": "fine"}


class TestRunpodChat:

    async def test_runsync_url_uses_envelope(self, upstream, gateway):
        upstream.on(RUNPOD_CHAT, httpx.Response(200, json=runpod_output("hello")))
        result = await gateway.chat([{"role": "user", "content": "hi"}], max_tokens=64)

        body = upstream.bodies(RUNPOD_CHAT)[0]
        assert body["input"]["messages"] == [{"role": "user", "content": "hi"}]
        assert body["input"]["max_tokens"] == 64
        assert body["input"]["model"] == gateway.settings.CHAT_MODEL
        assert result.text == "hello"

    async def test_openai_path_sends_direct_body(self, settings, upstream, http_client):
        url = "https://pod.test/v1/chat/completions"
        settings.RUNPOD_CHAT_URL = url
        gateway = ProviderGateway(settings, http_client=http_client)
        upstream.on(url, httpx.Response(200, json=completion_json("direct")))

        result = await gateway.chat([{"role": "user", "content": "hi"}])

        body = upstream.bodies(url)[0]
        assert "input" not in body
        assert body["messages"] == [{"role": "user", "content": "hi"}]
        assert result.text == "direct"

    async def test_missing_field_retries_other_shape(self, upstream, gateway):
        upstream.on(
            RUNPOD_CHAT,
            httpx.Response(400, text='{"error": "messages is a required property"}'),
            httpx.Response(200, json=completion_json("second try")),
        )
        result = await gateway.chat([{"role": "user", "content": "hi"}])

        first, second = upstream.bodies(RUNPOD_CHAT)
        assert "input" in first
        assert "input" not in second
        assert result.text == "second try"

    async def test_other_400_is_not_retried(self, upstream, gateway):
        upstream.on(RUNPOD_CHAT, httpx.Response(400, text="bad temperature"))
        with pytest.raises(UpstreamProviderError):
            await gateway.chat([{"role": "user", "content": "hi"}])
        assert len(upstream.calls(RUNPOD_CHAT)) == 1

    async def test_unconfigured_runpod(self, settings, http_client):
        settings.RUNPOD_CHAT_URL = None
        gateway = ProviderGateway(settings, http_client=http_client)
        with pytest.raises(ConfigurationError, match="RUNPOD_CHAT_URL"):
            await gateway.chat([{"role": "user", "content": "hi"}])


class TestOpenRouter:

    async def test_complete_json_reports_usage(self, upstream, gateway):
        upstream.on(OPENROUTER_CHAT, httpx.Response(200, json=completion_json("summary", 300, 90)))
        result = await gateway.complete_json(
            [{"role": "user", "content": "x"}], model="m", temperature=0.1, max_tokens=600
        )

        body = upstream.bodies(OPENROUTER_CHAT)[0]
        assert body["model"] == "m"
        assert body["max_tokens"] == 600
        assert body["temperature"] == 0.1
        assert result.text == "summary"
        assert (result.input_tokens, result.output_tokens) == (300, 90)

    async def test_complete_json_status_error(self, upstream, gateway):
        upstream.on(OPENROUTER_CHAT, httpx.Response(429, json={"error": {"message": "rate limited"}}))
        with pytest.raises(UpstreamProviderError) as exc_info:
            await gateway.complete_json([{"role": "user", "content": "x"}])

        assert exc_info.value.status == 429
        assert "rate limited" in exc_info.value.body

    async def test_complete_json_timeout(self, upstream, gateway):
        def slow(request):
            raise httpx.ReadTimeout("timed out", request=request)

        upstream.on(OPENROUTER_CHAT, slow)
        with pytest.raises(ProviderTimeoutError):
            await gateway.complete_json([{"role": "user", "content": "x"}])

    async def test_stream_complete_yields_raw_bytes(self, upstream, gateway):
        raw = sse_body("Hel", "lo")
        upstream.on(
            OPENROUTER_CHAT,
            httpx.Response(200, headers={"content-type": "text/event-stream"}, content=raw),
        )
        stream = await gateway.stream_complete(
            [{"role": "user", "content": "x"}],
            temperature=0.5,
            max_tokens=2048,
            reasoning={"effort": "high"},
        )
        received = b"".join([chunk async for chunk in stream.iter_bytes()])
        await stream.aclose()

        body = upstream.bodies(OPENROUTER_CHAT)[0]
        assert body["stream"] is True
        assert body["reasoning"] == {"effort": "high"}
        assert body["max_tokens"] == 2048
        assert received == raw

    async def test_stream_complete_fails_before_bytes(self, upstream, gateway):
        upstream.on(OPENROUTER_CHAT, httpx.Response(500, text="upstream exploded"))
        with pytest.raises(UpstreamProviderError) as exc_info:
            await gateway.stream_complete([{"role": "user", "content": "x"}], 0.3, 1024)
        assert exc_info.value.status == 500

    async def test_missing_api_key(self, settings, http_client):
        settings.OPENROUTER_API_KEY = None
        gateway = ProviderGateway(settings, http_client=http_client)
        with pytest.raises(ConfigurationError, match="OPENROUTER_API_KEY"):
            await gateway.complete_json([{"role": "user", "content": "x"}])
