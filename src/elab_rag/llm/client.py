"""HTTP client for the external language model service (Ollama)."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx
from langchain_core.messages import BaseMessage

from elab_rag.config import LLMConfig
from elab_rag.errors import ModelTimeoutError, ModelUnavailableError

logger = logging.getLogger(__name__)


def create_chat_model(config: LLMConfig) -> Any:
    """Chat model speaking to Ollama's OpenAI-compatible endpoint.

    Retries are disabled; the caller owns the deadline and the fallback.
    """

    from langchain_openai import ChatOpenAI

    return ChatOpenAI(
        model=config.model,
        base_url=config.base_url.rstrip("/") + "/v1",
        api_key="ollama",
        temperature=config.temperature,
        max_tokens=config.max_tokens,
        timeout=config.timeout_seconds,
        max_retries=0,
    )


class OllamaClient:
    """Health, model discovery and bounded chat against one Ollama server.

    `chat` runs the LangChain chat model under `asyncio.wait_for`, so an
    expired deadline cancels the in-flight request and raises
    `ModelTimeoutError` instead of leaving the caller waiting.
    """

    def __init__(
        self,
        config: LLMConfig | None = None,
        *,
        chat_model: Any | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config or LLMConfig()
        self._chat_model = chat_model
        self._http = http_client or httpx.AsyncClient(base_url=self.config.base_url)

    @property
    def model(self) -> str:
        return self.config.model

    @property
    def base_url(self) -> str:
        return self.config.base_url

    async def health_check(self) -> bool:
        try:
            response = await self._http.get(
                "/api/tags", timeout=self.config.health_timeout_seconds
            )
        except httpx.HTTPError as exc:
            logger.warning("LLM health check failed: %s", exc)
            return False
        return response.is_success

    async def list_models(self) -> list[str]:
        try:
            response = await self._http.get(
                "/api/tags", timeout=self.config.health_timeout_seconds
            )
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Failed to list models: %s", exc)
            return []
        models = payload.get("models", []) if isinstance(payload, dict) else []
        return [str(model.get("name")) for model in models if isinstance(model, dict) and model.get("name")]

    async def get_model_info(self) -> dict[str, Any] | None:
        try:
            response = await self._http.post(
                "/api/show",
                json={"name": self.config.model},
                timeout=self.config.health_timeout_seconds,
            )
        except httpx.HTTPError as exc:
            logger.warning("Failed to read model info: %s", exc)
            return None
        if not response.is_success:
            return None
        try:
            payload = response.json()
        except ValueError as exc:
            logger.warning("Model info is not JSON: %s", exc)
            return None
        return payload if isinstance(payload, dict) else None

    async def chat(self, messages: list[BaseMessage], **options: Any) -> str:
        """Send `messages` and return the reply text.

        Raises:
            ModelTimeoutError: no reply within `timeout_seconds`.
            ModelUnavailableError: the service failed or is not configured.
        """

        try:
            if self._chat_model is None:
                self._chat_model = create_chat_model(self.config)
            reply = await asyncio.wait_for(
                self._chat_model.ainvoke(messages, **options),
                timeout=self.config.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise ModelTimeoutError(
                f"{self.config.model} did not answer within {self.config.timeout_seconds:.0f}s"
            ) from exc
        except Exception as exc:
            raise ModelUnavailableError(f"{self.config.model} chat failed: {exc}") from exc

        return _message_text(reply)

    async def aclose(self) -> None:
        await self._http.aclose()


def _message_text(reply: Any) -> str:
    content = getattr(reply, "content", reply)
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict) and "text" in item:
                parts.append(str(item["text"]))
            else:
                parts.append(str(item))
        return " ".join(parts).strip()
    return str(content).strip()
