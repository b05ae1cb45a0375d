from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from intake_ai import AnthropicModel, FallbackSummaryModel, ModelCompletion, OpenAICompatibleModel, ProviderError
from intake_ai.providers import build_summary_model, summary_provider_candidates


def _sse_body(events: list[dict | str]) -> bytes:
    lines = []
    for event in events:
        data = event if isinstance(event, str) else json.dumps(event)
        lines.append(f"data: {data}\n\n")
    return "".join(lines).encode("utf-8")


async def _collect(stream) -> list[str]:
    return [chunk async for chunk in stream]


def test_openai_compatible_complete_reads_text_and_usage():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "model": "gpt-4o-mini-2024",
                "choices": [{"message": {"content": "  ## Summary\nStable.  "}}],
                "usage": {"total_tokens": 77},
            },
        )

    model = OpenAICompatibleModel(
        api_key="sk-test",
        model="gpt-4o-mini",
        base_url="https://llm.test/v1",
        transport=httpx.MockTransport(handler),
    )
    completion = asyncio.run(model.complete("prompt text"))
    assert completion == ModelCompletion(text="## Summary\nStable.", model="gpt-4o-mini-2024", tokens_used=77)
    assert seen["url"] == "https://llm.test/v1/chat/completions"
    assert seen["auth"] == "Bearer sk-test"
    assert seen["body"]["messages"] == [{"role": "user", "content": "prompt text"}]


def test_openai_compatible_stream_parses_deltas():
    body = _sse_body(
        [
            {"choices": [{"delta": {"role": "assistant"}}]},
            {"choices": [{"delta": {"content": "## Sum"}}]},
            {"choices": [{"delta": {"content": "mary"}}]},
            "[DONE]",
            {"choices": [{"delta": {"content": "ignored"}}]},
        ]
    )
    transport = httpx.MockTransport(lambda request: httpx.Response(200, content=body))
    model = OpenAICompatibleModel(api_key="k", model="m", base_url="https://llm.test/v1", transport=transport)
    assert asyncio.run(_collect(model.stream("p"))) == ["## Sum", "mary"]


def test_anthropic_stream_parses_content_block_deltas():
    body = _sse_body(
        [
            {"type": "message_start", "message": {"id": "msg_1"}},
            {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Hello"}},
            {"type": "ping"},
            {"type": "content_block_delta", "delta": {"type": "text_delta", "text": " world"}},
            {"type": "message_stop"},
        ]
    )

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["x-api-key"] == "ant-key"
        assert str(request.url) == "https://anthropic.test/v1/messages"
        return httpx.Response(200, content=body)

    model = AnthropicModel(
        api_key="ant-key",
        model="claude-test",
        base_url="https://anthropic.test/v1",
        transport=httpx.MockTransport(handler),
    )
    assert asyncio.run(_collect(model.stream("p"))) == ["Hello", " world"]


def test_anthropic_complete_sums_usage():
    transport = httpx.MockTransport(
        lambda request: httpx.Response(
            200,
            json={
                "model": "claude-test",
                "content": [{"type": "text", "text": "Summary text"}],
                "usage": {"input_tokens": 100, "output_tokens": 20},
            },
        )
    )
    model = AnthropicModel(api_key="k", model="claude-test", base_url="https://a.test/v1", transport=transport)
    completion = asyncio.run(model.complete("p"))
    assert completion.text == "Summary text"
    assert completion.tokens_used == 120


def test_provider_error_message_is_extracted():
    transport = httpx.MockTransport(
        lambda request: httpx.Response(429, json={"error": {"message": "Rate limit exceeded"}})
    )
    model = OpenAICompatibleModel(api_key="k", model="m", base_url="https://llm.test/v1", transport=transport)
    with pytest.raises(ProviderError, match="Rate limit exceeded"):
        asyncio.run(model.complete("p"))
    with pytest.raises(ProviderError, match="Rate limit exceeded"):
        asyncio.run(_collect(model.stream("p")))


def test_fallback_model_moves_to_next_provider():
    failing = OpenAICompatibleModel(
        api_key="k",
        model="down",
        base_url="https://down.test/v1",
        transport=httpx.MockTransport(lambda request: httpx.Response(503, text="unavailable")),
    )
    body = _sse_body([{"choices": [{"delta": {"content": "ok"}}]}, "[DONE]"])
    working = OpenAICompatibleModel(
        api_key="k",
        model="up",
        base_url="https://up.test/v1",
        transport=httpx.MockTransport(lambda request: httpx.Response(200, content=body)),
    )
    chain = FallbackSummaryModel([failing, working])
    assert chain.name == "openai:down"
    assert asyncio.run(_collect(chain.stream("p"))) == ["ok"]


def test_provider_candidates_follow_preference(monkeypatch):
    monkeypatch.setenv("ANTHROPIC_API_KEY", "ant")
    monkeypatch.setenv("OPENAI_API_KEY", "oai")
    monkeypatch.setenv("OPENROUTER_API_KEY", "")
    monkeypatch.setenv("INTAKE_SUMMARY_PROVIDER", "auto")
    assert [candidate["provider"] for candidate in summary_provider_candidates()] == ["anthropic", "openai"]

    monkeypatch.setenv("INTAKE_SUMMARY_PROVIDER", "gpt")
    assert [candidate["provider"] for candidate in summary_provider_candidates()] == ["openai", "anthropic"]

    model = build_summary_model(timeout_seconds=5)
    assert isinstance(model, FallbackSummaryModel)
    assert model.name.startswith("openai:")


def test_no_provider_keys_means_no_model(monkeypatch):
    for key in ("ANTHROPIC_API_KEY", "OPENAI_API_KEY", "OPENROUTER_API_KEY"):
        monkeypatch.setenv(key, "")
    assert build_summary_model() is None
