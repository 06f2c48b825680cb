"""Model provider registry for OpenAI-compatible backends (LM Studio, Ollama, OpenAI)."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, AsyncGenerator

import httpx
import tiktoken

from .config import AgentConfig, ModelProviderConfig
from .utils import to_bounded_json

LOG = logging.getLogger(__name__)

_encoding: Any = None
_encoding_loaded = False


class ModelProviderError(Exception):
    """Raised when a model backend request fails."""


def _get_encoding() -> Any:
    """Return the shared `cl100k_base` encoding, or `None` when it cannot be loaded."""
    global _encoding, _encoding_loaded
    if not _encoding_loaded:
        _encoding_loaded = True
        try:
            _encoding = tiktoken.get_encoding("cl100k_base")
        except Exception as exc:
            LOG.warning("Failed to load tiktoken encoding, token counting may be inaccurate: %s", exc)
            _encoding = None
    return _encoding


def count_tokens(text: str) -> int:
    encoding = _get_encoding()
    if encoding is None:
        return len(text) // 4
    return len(encoding.encode(text, disallowed_special=()))


def count_messages(messages: list[dict[str, Any]]) -> int:
    """Estimate prompt tokens of chat messages (about 4 tokens of framing per message)."""
    total = 0
    for msg in messages:
        total += 4
        content = msg.get("content")
        if isinstance(content, str):
            total += count_tokens(content)
        for call in msg.get("tool_calls") or []:
            fn = call.get("function") or {}
            total += count_tokens(str(fn.get("name") or "")) + count_tokens(str(fn.get("arguments") or ""))
    return total


class ChatModel:
    """Handle to one model id served by a provider."""

    def __init__(self, provider: "ModelProvider", model_id: str) -> None:
        self.provider = provider
        self.model_id = model_id

    def _payload(self, messages: list[dict[str, Any]], tools: list[dict[str, Any]] | None, stream: bool) -> dict[str, Any]:
        payload: dict[str, Any] = {"model": self.model_id, "messages": messages, "stream": stream}
        if tools:
            payload["tools"] = tools
        if stream:
            payload["stream_options"] = {"include_usage": True}
        return payload

    async def complete(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ) -> dict[str, Any]:
        """Run one non-streaming chat completion and return the decoded response."""
        client = self.provider.instance
        payload = self._payload(messages, tools, stream=False)
        LOG.debug(
            "model request provider=%s model=%s stream=false payload=%s",
            self.provider.cfg.id,
            self.model_id,
            to_bounded_json(payload),
        )
        try:
            response = await client.post("/chat/completions", headers=self.provider.headers(), json=payload)
        except httpx.HTTPError as exc:
            raise ModelProviderError(f"Request to model provider '{self.provider.cfg.id}' failed: {exc}") from exc
        if response.status_code >= 400:
            raise ModelProviderError(
                f"Model provider '{self.provider.cfg.id}' returned HTTP {response.status_code}: {response.text[:500]}"
            )
        try:
            data = response.json()
        except json.JSONDecodeError as exc:
            raise ModelProviderError(f"Model provider '{self.provider.cfg.id}' returned non-JSON body") from exc
        if not isinstance(data, dict):
            raise ModelProviderError(f"Model provider '{self.provider.cfg.id}' returned an unexpected body")
        if "error" in data and not data.get("choices"):
            raise ModelProviderError(f"Model provider '{self.provider.cfg.id}' error: {to_bounded_json(data['error'], 500)}")
        return data

    async def stream(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ) -> AsyncGenerator[dict[str, Any], None]:
        """Run one streaming chat completion and yield decoded chunk objects."""
        client = self.provider.instance
        payload = self._payload(messages, tools, stream=True)
        started = time.monotonic()
        chunk_count = 0
        LOG.debug(
            "model stream start provider=%s model=%s payload=%s",
            self.provider.cfg.id,
            self.model_id,
            to_bounded_json(payload),
        )
        try:
            async with client.stream(
                "POST", "/chat/completions", headers=self.provider.headers(), json=payload
            ) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise ModelProviderError(
                        f"Model provider '{self.provider.cfg.id}' returned HTTP {response.status_code}: {body[:500]}"
                    )
                async for line in response.aiter_lines():
                    if not line or not line.startswith("data:"):
                        continue
                    data = line[5:].strip()
                    if data == "[DONE]":
                        break
                    try:
                        chunk = json.loads(data)
                    except json.JSONDecodeError:
                        continue
                    if not isinstance(chunk, dict):
                        continue
                    if "error" in chunk and not chunk.get("choices"):
                        raise ModelProviderError(
                            f"Model provider '{self.provider.cfg.id}' error: {to_bounded_json(chunk['error'], 500)}"
                        )
                    chunk_count += 1
                    yield chunk
        except httpx.HTTPError as exc:
            raise ModelProviderError(f"Stream from model provider '{self.provider.cfg.id}' failed: {exc}") from exc
        finally:
            LOG.debug(
                "model stream closed provider=%s elapsed=%.3fs chunks=%s",
                self.provider.cfg.id,
                time.monotonic() - started,
                chunk_count,
            )

    def count_messages(self, messages: list[dict[str, Any]]) -> int:
        return count_messages(messages)

    def count_tokens(self, text: str) -> int:
        return count_tokens(text)


class ModelProvider:
    """One configured backend; the HTTP instance is created on demand."""

    def __init__(self, cfg: ModelProviderConfig) -> None:
        self.cfg = cfg
        self.models: list[str] = []
        self._client: httpx.AsyncClient | None = None

    @property
    def live(self) -> bool:
        return self._client is not None

    @property
    def instance(self) -> httpx.AsyncClient:
        if self._client is None:
            raise ModelProviderError(f"Model provider '{self.cfg.id}' has no live instance")
        return self._client

    def headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.cfg.api_key:
            headers["Authorization"] = f"Bearer {self.cfg.api_key}"
        return headers

    def create_instance(self) -> None:
        if self._client is not None:
            return
        timeout = httpx.Timeout(connect=10.0, read=self.cfg.request_timeout_seconds, write=120.0, pool=10.0)
        self._client = httpx.AsyncClient(base_url=str(self.cfg.base_url).rstrip("/"), timeout=timeout)
        LOG.info("Model provider instance created provider=%s base_url=%s", self.cfg.id, self.cfg.base_url)

    def model(self, model_id: str) -> ChatModel:
        if not self.live:
            raise ModelProviderError(f"Model provider '{self.cfg.id}' has no live instance")
        return ChatModel(self, model_id)

    async def list_models(self) -> list[str]:
        """Fetch model ids from `GET {base_url}/models`; failures yield an empty list."""
        if self.cfg.kind == "openai" and not self.cfg.api_key:
            LOG.warning("No API key configured for model provider provider=%s", self.cfg.id)
            return []

        url = f"{str(self.cfg.base_url).rstrip('/')}/models"
        try:
            if self._client is not None:
                response = await self._client.get("/models", headers=self.headers())
            else:
                async with httpx.AsyncClient(timeout=httpx.Timeout(10.0)) as client:
                    response = await client.get(url, headers=self.headers())
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, json.JSONDecodeError) as exc:
            LOG.warning("Model listing failed provider=%s error=%s", self.cfg.id, exc)
            return []

        entries = data.get("data") if isinstance(data, dict) else None
        if not isinstance(entries, list):
            return []
        models = [str(entry["id"]) for entry in entries if isinstance(entry, dict) and entry.get("id")]
        if self.cfg.kind == "openai":
            models = [model_id for model_id in models if model_id.startswith("gpt-")]
        return models

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class ModelProviderRegistry:
    """Configured model providers; only providers used by an enabled agent get a live instance."""

    def __init__(self, configs: list[ModelProviderConfig], agent_configs: list[AgentConfig]) -> None:
        used = {agent.model_provider for agent in agent_configs if agent.enabled and agent.model_provider}
        self._providers: dict[str, ModelProvider] = {}
        for cfg in configs:
            if cfg.id in self._providers:
                LOG.warning("Duplicate model provider id skipped provider=%s", cfg.id)
                continue
            provider = ModelProvider(cfg)
            if cfg.id in used:
                provider.create_instance()
            self._providers[cfg.id] = provider

    def get(self, provider_id: str | None) -> ModelProvider | None:
        """Return a provider with a live instance, or `None`."""
        if not provider_id:
            return None
        provider = self._providers.get(provider_id)
        if provider is None or not provider.live:
            return None
        return provider

    async def refresh_models(self) -> dict[str, list[str]]:
        providers = list(self._providers.values())
        results = await asyncio.gather(*(provider.list_models() for provider in providers))
        for provider, models in zip(providers, results):
            provider.models = models
        return self.models_by_provider()

    def models_by_provider(self) -> dict[str, list[str]]:
        return {provider_id: list(provider.models) for provider_id, provider in self._providers.items()}

    async def close(self) -> None:
        for provider in self._providers.values():
            await provider.close()
