"""
Completion service client — Ollama chat model through LangChain

One call per assistant turn, no retry, bounded by LLM_TIMEOUT_SECONDS:

    ChatOllama(base_url=OLLAMA_API_URL, model=OLLAMA_MODEL)
        .ainvoke([SystemMessage, HumanMessage, AIMessage, ..., HumanMessage])
        → AIMessage

Every failure mode (connection error, HTTP error status, timeout, empty
reply) surfaces as UpstreamFailureError so callers handle one error kind.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Protocol

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import BaseMessage
from langchain_ollama import ChatOllama
from ollama import ResponseError

from docchat.core.config import Settings
from docchat.core.errors import UpstreamFailureError

logger = logging.getLogger(__name__)


@dataclass
class CompletionResponse:
    """The result of a single completion call."""
    content:    str
    model_used: str
    latency_ms: float


class CompletionService(Protocol):
    async def complete(self, messages: list[BaseMessage]) -> CompletionResponse: ...


class OllamaCompletionClient:
    """
    Wraps a LangChain chat model. Create once per application.

    Any BaseChatModel works; from_settings() builds the Ollama one.
    """

    def __init__(self, chat_model: BaseChatModel, model: str, timeout: float = 60.0) -> None:
        self._chat    = chat_model
        self._model   = model
        self._timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "OllamaCompletionClient":
        chat_model = ChatOllama(
            base_url=settings.ollama_api_url.rstrip("/"),
            model=settings.ollama_model,
            client_kwargs={"timeout": settings.llm_timeout_seconds},
        )
        logger.info("Completion client initialized | url=%s model=%s", settings.ollama_api_url, settings.ollama_model)
        return cls(chat_model, settings.ollama_model, settings.llm_timeout_seconds)

    async def complete(self, messages: list[BaseMessage]) -> CompletionResponse:
        t0 = time.perf_counter()
        try:
            reply = await asyncio.wait_for(self._chat.ainvoke(messages), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            logger.warning("Completion timed out | model=%s timeout=%.0fs", self._model, self._timeout)
            raise UpstreamFailureError(
                f"Failed to generate response: completion service timed out after {self._timeout:g}s"
            ) from exc
        except ResponseError as exc:
            logger.error("Completion HTTP error | model=%s status=%d error=%s", self._model, exc.status_code, exc.error)
            raise UpstreamFailureError(
                f"Failed to generate response: completion service returned HTTP {exc.status_code}"
            ) from exc
        except Exception as exc:
            logger.error("Completion request failed | model=%s error=%s", self._model, exc)
            raise UpstreamFailureError(f"Failed to generate response: {exc}") from exc

        content = reply.content if isinstance(reply.content, str) else ""
        if not content.strip():
            raise UpstreamFailureError("Failed to generate response: completion service returned no text")

        model_used = (reply.response_metadata or {}).get("model") or self._model
        latency = (time.perf_counter() - t0) * 1000
        logger.info(
            "Completion | model=%s messages=%d response_chars=%d latency_ms=%.1f",
            model_used, len(messages), len(content), latency,
        )
        return CompletionResponse(content=content, model_used=model_used, latency_ms=latency)
