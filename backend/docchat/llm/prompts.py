"""
Grounded prompt construction.

The conversation is modelled as LangChain messages:

    SystemMessage   instructions + the document's extracted text
    HumanMessage    user turn        ┐
    AIMessage       assistant turn   ├ full history, sequence order
    HumanMessage    newest question  ┘

The list is passed as-is to the chat model (see completion.py).
"""

from __future__ import annotations

from typing import Iterable

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

SYSTEM_PROMPT_TEMPLATE = """You are a helpful assistant analyzing a document.
Here is the document content that you should reference when answering questions:

{document}

When answering, refer to specific parts of the document if relevant.
If the question cannot be answered based on the document, politely explain that
the information is not available in the document."""


def build_messages(document_text: str, history: Iterable[tuple[str, str]]) -> list[BaseMessage]:
    """
    Build the message list for one turn.

    history: (role, content) pairs in sequence order, role "user" | "assistant",
             including the newest user message.
    """
    messages: list[BaseMessage] = [
        SystemMessage(content=SYSTEM_PROMPT_TEMPLATE.format(document=document_text)),
    ]
    for role, content in history:
        if role == "user":
            messages.append(HumanMessage(content=content))
        elif role == "assistant":
            messages.append(AIMessage(content=content))
        else:
            raise ValueError(f"Unknown message role {role!r}")
    return messages

