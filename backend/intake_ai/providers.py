from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any, AsyncIterator, Protocol

import httpx

from logging_config import get_logger

logger = get_logger(__name__)

_OPENAI_API_BASE = os.getenv("OPENAI_API_BASE_URL", "https://api.openai.com/v1").rstrip("/")
_OPENROUTER_API_BASE = os.getenv("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1").rstrip("/")
_ANTHROPIC_API_BASE = os.getenv("ANTHROPIC_API_BASE_URL", "https://api.anthropic.com/v1").rstrip("/")

_SUMMARY_MAX_TOKENS = 1500
_SUMMARY_TEMPERATURE = 0.2


class ProviderError(RuntimeError):
    """Upstream model call failed; the message is the provider's own."""


@dataclass(frozen=True)
class ModelCompletion:
    text: str
    model: str
    tokens_used: int | None = None


class SummaryModel(Protocol):
    name: str

    async def complete(self, prompt: str) -> ModelCompletion: ...

    def stream(self, prompt: str) -> AsyncIterator[str]: ...


def _provider_error_message(response: httpx.Response) -> str:
    message = response.text.strip()
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        err = payload.get("error")
        if isinstance(err, dict):
            msg = err.get("message")
            if isinstance(msg, str) and msg.strip():
                return msg.strip()
        msg = payload.get("message")
        if isinstance(msg, str) and msg.strip():
            return msg.strip()
    return message or f"HTTP {response.status_code}"


def _coerce_completion_text(response_json: dict[str, Any]) -> str:
    choices = response_json.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    message = choices[0].get("message", {})
    content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict):
                text_value = item.get("text")
                if isinstance(text_value, str):
                    parts.append(text_value)
        return "\n".join(parts)
    return ""


def _coerce_anthropic_text(response_json: dict[str, Any]) -> str:
    content = response_json.get("content")
    if not isinstance(content, list):
        return ""
    parts: list[str] = []
    for item in content:
        if not isinstance(item, dict) or item.get("type") != "text":
            continue
        text_value = item.get("text")
        if isinstance(text_value, str):
            parts.append(text_value)
    return "".join(parts).strip()


def _sse_data(line: str) -> str | None:
    if not line.startswith("data:"):
        return None
    return line[5:].strip()


class _HttpSummaryModel:
    provider = "unknown"

    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        base_url: str,
        timeout_seconds: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    @property
    def name(self) -> str:
        return f"{self.provider}:{self.model}"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout_seconds, connect=8.0),
            transport=self._transport,
        )


class OpenAICompatibleModel(_HttpSummaryModel):
    """Chat completions for OpenAI and OpenRouter."""

    def __init__(self, *, provider: str = "openai", **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.provider = provider

    def _headers(self) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if self.provider == "openrouter":
            site_url = (os.getenv("OPENROUTER_SITE_URL") or "").strip()
            app_name = (os.getenv("OPENROUTER_APP_NAME") or "IntakeAI").strip()
            if site_url:
                headers["HTTP-Referer"] = site_url
            if app_name:
                headers["X-Title"] = app_name
        return headers

    def _payload(self, prompt: str, *, stream: bool) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "temperature": _SUMMARY_TEMPERATURE,
            "max_tokens": _SUMMARY_MAX_TOKENS,
            "messages": [{"role": "user", "content": prompt}],
        }
        if stream:
            payload["stream"] = True
        return payload

    async def complete(self, prompt: str) -> ModelCompletion:
        async with self._client() as client:
            response = await client.post(
                f"{self.base_url}/chat/completions",
                headers=self._headers(),
                json=self._payload(prompt, stream=False),
            )
        if response.status_code >= 400:
            raise ProviderError(_provider_error_message(response))
        completion_payload = response.json()
        usage = completion_payload.get("usage") or {}
        return ModelCompletion(
            text=_coerce_completion_text(completion_payload).strip(),
            model=str(completion_payload.get("model") or self.model),
            tokens_used=usage.get("total_tokens"),
        )

    async def stream(self, prompt: str) -> AsyncIterator[str]:
        async with self._client() as client:
            async with client.stream(
                "POST",
                f"{self.base_url}/chat/completions",
                headers=self._headers(),
                json=self._payload(prompt, stream=True),
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise ProviderError(_provider_error_message(response))
                async for line in response.aiter_lines():
                    data = _sse_data(line)
                    if not data:
                        continue
                    if data == "[DONE]":
                        return
                    try:
                        event = json.loads(data)
                    except json.JSONDecodeError:
                        continue
                    choices = event.get("choices") or []
                    if not choices:
                        continue
                    delta = choices[0].get("delta") or {}
                    text = delta.get("content")
                    if isinstance(text, str) and text:
                        yield text


class AnthropicModel(_HttpSummaryModel):
    provider = "anthropic"

    def _headers(self) -> dict[str, str]:
        return {
            "x-api-key": self.api_key,
            "anthropic-version": os.getenv("ANTHROPIC_API_VERSION", "2023-06-01"),
            "Content-Type": "application/json",
        }

    def _payload(self, prompt: str, *, stream: bool) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "max_tokens": _SUMMARY_MAX_TOKENS,
            "temperature": _SUMMARY_TEMPERATURE,
            "messages": [{"role": "user", "content": prompt}],
        }
        if stream:
            payload["stream"] = True
        return payload

    async def complete(self, prompt: str) -> ModelCompletion:
        async with self._client() as client:
            response = await client.post(
                f"{self.base_url}/messages",
                headers=self._headers(),
                json=self._payload(prompt, stream=False),
            )
        if response.status_code >= 400:
            raise ProviderError(_provider_error_message(response))
        completion_payload = response.json()
        usage = completion_payload.get("usage") or {}
        tokens = None
        if usage:
            tokens = int(usage.get("input_tokens") or 0) + int(usage.get("output_tokens") or 0)
        return ModelCompletion(
            text=_coerce_anthropic_text(completion_payload),
            model=str(completion_payload.get("model") or self.model),
            tokens_used=tokens,
        )

    async def stream(self, prompt: str) -> AsyncIterator[str]:
        async with self._client() as client:
            async with client.stream(
                "POST",
                f"{self.base_url}/messages",
                headers=self._headers(),
                json=self._payload(prompt, stream=True),
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise ProviderError(_provider_error_message(response))
                async for line in response.aiter_lines():
                    data = _sse_data(line)
                    if not data:
                        continue
                    try:
                        event = json.loads(data)
                    except json.JSONDecodeError:
                        continue
                    event_type = event.get("type")
                    if event_type == "error":
                        err = event.get("error") or {}
                        raise ProviderError(str(err.get("message") or "Anthropic stream error"))
                    if event_type == "message_stop":
                        return
                    if event_type != "content_block_delta":
                        continue
                    text = (event.get("delta") or {}).get("text")
                    if isinstance(text, str) and text:
                        yield text


def summary_provider_candidates() -> list[dict[str, Any]]:
    provider_preference = (os.getenv("INTAKE_SUMMARY_PROVIDER") or "auto").strip().lower()
    candidates: list[dict[str, Any]] = []

    anthropic_api_key = (os.getenv("ANTHROPIC_API_KEY") or "").strip()
    if anthropic_api_key:
        candidates.append(
            {
                "provider": "anthropic",
                "base_url": _ANTHROPIC_API_BASE,
                "api_key": anthropic_api_key,
                "model": (os.getenv("ANTHROPIC_MODEL") or "claude-3-5-sonnet-latest").strip(),
            }
        )

    openrouter_api_key = (os.getenv("OPENROUTER_API_KEY") or "").strip()
    if openrouter_api_key:
        candidates.append(
            {
                "provider": "openrouter",
                "base_url": _OPENROUTER_API_BASE,
                "api_key": openrouter_api_key,
                "model": (os.getenv("OPENROUTER_MODEL") or "openai/gpt-4o-mini").strip(),
            }
        )

    openai_api_key = (os.getenv("OPENAI_API_KEY") or "").strip()
    if openai_api_key:
        candidates.append(
            {
                "provider": "openai",
                "base_url": _OPENAI_API_BASE,
                "api_key": openai_api_key,
                "model": (os.getenv("INTAKE_SUMMARY_MODEL") or "gpt-4o-mini").strip(),
            }
        )

    if provider_preference in {"", "auto"}:
        return candidates

    aliases = {
        "claude": "anthropic",
        "anthropic": "anthropic",
        "openrouter": "openrouter",
        "openai": "openai",
        "gpt": "openai",
    }
    canonical = aliases.get(provider_preference)
    if not canonical:
        return candidates
    preferred = [candidate for candidate in candidates if candidate["provider"] == canonical]
    others = [candidate for candidate in candidates if candidate["provider"] != canonical]
    return preferred + others


def _model_for(candidate: dict[str, Any], timeout_seconds: float) -> SummaryModel:
    common = {
        "api_key": candidate["api_key"],
        "model": candidate["model"],
        "base_url": candidate["base_url"],
        "timeout_seconds": timeout_seconds,
    }
    if candidate["provider"] == "anthropic":
        return AnthropicModel(**common)
    return OpenAICompatibleModel(provider=candidate["provider"], **common)


class FallbackSummaryModel:
    """Tries each configured provider in preference order.

    A stream only falls through to the next provider when the failure happens
    before the first chunk; once text has reached the caller the error
    propagates.
    """

    def __init__(self, models: list[SummaryModel]) -> None:
        if not models:
            raise ValueError("at least one model is required")
        self.models = models

    @property
    def name(self) -> str:
        return self.models[0].name

    async def complete(self, prompt: str) -> ModelCompletion:
        last_error: Exception | None = None
        for model in self.models:
            try:
                completion = await model.complete(prompt)
            except (ProviderError, httpx.HTTPError) as exc:
                logger.warning("Summary provider call failed", provider=model.name, error=str(exc))
                last_error = exc
                continue
            if completion.text:
                return completion
            logger.warning("Summary provider returned empty text", provider=model.name)
            last_error = ProviderError(f"{model.name} returned an empty completion")
        assert last_error is not None
        raise last_error

    async def stream(self, prompt: str) -> AsyncIterator[str]:
        last_error: Exception | None = None
        for model in self.models:
            upstream = model.stream(prompt)
            started = False
            try:
                async for chunk in upstream:
                    started = True
                    yield chunk
                return
            except (ProviderError, httpx.HTTPError) as exc:
                if started:
                    raise
                logger.warning("Summary provider stream failed", provider=model.name, error=str(exc))
                last_error = exc
            finally:
                await upstream.aclose()
        assert last_error is not None
        raise last_error


def build_summary_model(timeout_seconds: float = 60.0) -> SummaryModel | None:
    candidates = summary_provider_candidates()
    if not candidates:
        logger.info("Summary model unavailable: no provider key found in runtime env")
        return None
    models = [_model_for(candidate, timeout_seconds) for candidate in candidates]
    logger.info("Summary model configured", providers=[model.name for model in models])
    if len(models) == 1:
        return models[0]
    return FallbackSummaryModel(models)
