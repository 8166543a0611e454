"""
Chat model factory for enrichment calls.

Enrichment uses LangChain's ChatOpenAI so LangSmith tracing (enabled by
TracingConfig) captures every abstract / keyword / quiz prompt. Client-side
retries are disabled (max_retries=0): RetryStrategy owns retry policy and
TimeoutManager owns deadlines.
"""

from __future__ import annotations

from typing import Any, Callable

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage

ChatModelFactory = Callable[..., BaseChatModel]


def build_chat_model(
    *,
    temperature: float | None = None,
    max_tokens:  int | None = None,
    json_mode:   bool = False,
    model:       str | None = None,
) -> BaseChatModel:
    from langchain_openai import ChatOpenAI

    from docpipe.core.config import settings

    extra: dict[str, Any] = {}
    if json_mode:
        extra["model_kwargs"] = {"response_format": {"type": "json_object"}}

    return ChatOpenAI(
        model=model or settings.llm_model,
        temperature=settings.llm_temperature if temperature is None else temperature,
        max_tokens=max_tokens,
        api_key=settings.openai_api_key,
        max_retries=0,
        **extra,
    )


def build_messages(system_prompt: str, user_prompt: str) -> list[BaseMessage]:
    """Standard [SystemMessage, HumanMessage] pair."""
    return [
        SystemMessage(content=system_prompt),
        HumanMessage(content=user_prompt),
    ]


def message_text(message: Any) -> str:
    """Flatten an AIMessage (string or content-block list) to plain text."""
    content = getattr(message, "content", message)
    if isinstance(content, str):
        return content.strip()
    if isinstance(content, list):
        parts = [
            block.get("text", "") if isinstance(block, dict) else str(block)
            for block in content
        ]
        return "".join(parts).strip()
    return str(content or "").strip()


async def complete(llm: BaseChatModel, system_prompt: str, user_prompt: str) -> str:
    message = await llm.ainvoke(build_messages(system_prompt, user_prompt))
    return message_text(message)
