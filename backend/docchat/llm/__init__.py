"""
Completion Package

Grounded prompt construction over LangChain messages plus the client for
the external completion service (Ollama).

Public API::

    from docchat.llm import OllamaCompletionClient, build_messages

    client = OllamaCompletionClient.from_settings(settings)
    reply = await client.complete(build_messages(document_text, history))
"""

from docchat.llm.completion import CompletionResponse, CompletionService, OllamaCompletionClient
from docchat.llm.prompts import build_messages

__all__ = [
    "CompletionResponse",
    "CompletionService",
    "OllamaCompletionClient",
    "build_messages",
]
