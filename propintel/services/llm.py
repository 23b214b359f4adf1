from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any, ClassVar, Sequence

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_ollama import ChatOllama
from tenacity import AsyncRetrying, RetryError, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..core.config import Settings
from ..core.exceptions import PropIntelError
from ..core.logging import get_logger

logger = get_logger(name=__name__)


class LLMError(PropIntelError):
    """Raised when the language model cannot produce a response."""


def _build_base_url(host: str, port: int) -> str:
    base = host.rstrip("/")
    if ":" in base.rsplit("/", maxsplit=1)[-1]:
        return base
    return f"{base}:{port}"


def _messages_from_text(
    prompt: str,
    system_prompt: str | None = None,
) -> Sequence[BaseMessage]:
    messages: list[BaseMessage] = []
    if system_prompt:
        messages.append(SystemMessage(content=system_prompt))
    messages.append(HumanMessage(content=prompt))
    return messages


@dataclass
class LLMService:
    """LangChain client for the Ollama models used by planning and summarization."""

    settings: Settings
    _client: Any
    model: str
    _client_cache: ClassVar[dict[str, Any]] = {}

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        model: str | None = None,
        client: Any | None = None,
    ) -> "LLMService":
        model_name = model or settings.ollama.model
        if client is None:
            cache_key = f"{settings.ollama.host}:{settings.ollama.port}:{model_name}"
            cached = cls._client_cache.get(cache_key)
            if cached is None:
                base_url = _build_base_url(settings.ollama.host, settings.ollama.port)
                cached = ChatOllama(model=model_name, base_url=base_url, temperature=0.0)
                cls._client_cache[cache_key] = cached
            client = cached
        return cls(settings=settings, _client=client, model=model_name)

    async def generate(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        temperature: float | None = None,
    ) -> str:
        """Return the model's text response, retrying transient failures."""
        messages = _messages_from_text(prompt, system_prompt)
        client = self._client
        if temperature is not None and hasattr(client, "bind"):
            client = client.bind(temperature=temperature)

        timeout = self.settings.ollama.request_timeout_seconds
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.settings.ollama.max_retries),
                wait=wait_exponential(multiplier=self.settings.ollama.retry_backoff_seconds, max=10.0),
                retry=retry_if_exception_type((asyncio.TimeoutError, ConnectionError, OSError)),
                reraise=False,
            ):
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        logger.warning(
                            "llm_generation_retry",
                            attempt=attempt.retry_state.attempt_number,
                            model=self.model,
                        )
                    result = await asyncio.wait_for(client.ainvoke(messages), timeout=timeout)
                    return _extract_content(result)
        except RetryError as exc:
            last = exc.last_attempt.exception() if exc.last_attempt else exc
            logger.error("llm_generation_failed", error=str(last), model=self.model)
            raise LLMError(f"LLM generation failed for model {self.model}: {last}") from last
        except LLMError:
            raise
        except Exception as exc:
            logger.error("llm_generation_failed", error=str(exc), model=self.model)
            raise LLMError(f"LLM generation failed for model {self.model}: {exc}") from exc
        raise LLMError(f"LLM generation produced no response for model {self.model}")


def _extract_content(result: Any) -> str:
    content = result.content if isinstance(result, AIMessage) or hasattr(result, "content") else result
    if isinstance(content, list):
        return " ".join(str(item) for item in content)
    return str(content)


def parse_json_object(text: str) -> dict[str, Any]:
    """Parse the first JSON object in a model response, tolerating surrounding prose."""
    trimmed = text.strip()
    try:
        payload = json.loads(trimmed)
    except json.JSONDecodeError:
        start = trimmed.find("{")
        end = trimmed.rfind("}")
        if start == -1 or end == -1 or end <= start:
            raise ValueError("Response did not contain a JSON object") from None
        payload = json.loads(trimmed[start : end + 1])
    if not isinstance(payload, dict):
        raise ValueError("Response JSON must be an object")
    return payload
