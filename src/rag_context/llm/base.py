"""Language model abstraction used by context compression."""

from __future__ import annotations

import os
from typing import Any, Protocol, runtime_checkable

from langchain_core.output_parsers import StrOutputParser
from langchain_core.prompts import ChatPromptTemplate

COMPRESSION_SYSTEM_PROMPT = (
    "You are a helpful assistant that creates concise summaries while preserving "
    "all important information, facts, numbers, and key details."
)


@runtime_checkable
class LanguageModel(Protocol):
    async def complete(self, prompt: str, *, max_tokens: int, temperature: float) -> str:
        """Return the model's completion for a single user prompt."""


class ChatModelLanguageModel:
    """Adapts a LangChain chat model to the `LanguageModel` protocol.

    `max_tokens` and `temperature` are passed as bind-time arguments, which
    chat models such as `ChatOpenAI` forward to the provider.
    """

    def __init__(self, chat_model: Any, system_prompt: str = COMPRESSION_SYSTEM_PROMPT) -> None:
        self.chat_model = chat_model
        self.prompt = ChatPromptTemplate.from_messages(
            [
                ("system", system_prompt),
                ("human", "{input}"),
            ]
        )

    async def complete(self, prompt: str, *, max_tokens: int, temperature: float) -> str:
        model = self.chat_model.bind(max_tokens=max_tokens, temperature=temperature)
        chain = self.prompt | model | StrOutputParser()
        result = await chain.ainvoke({"input": prompt})
        return result.strip()


def create_language_model() -> ChatModelLanguageModel | None:
    """Build the OpenAI-backed model when `OPENAI_API_KEY` is configured."""
    api_key = os.getenv("OPENAI_API_KEY")
    if not api_key:
        return None

    from langchain_openai import ChatOpenAI

    chat_model = ChatOpenAI(model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"), temperature=0)
    return ChatModelLanguageModel(chat_model)
