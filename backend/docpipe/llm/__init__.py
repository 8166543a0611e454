"""
LLM Package

Chat model construction for enrichment::

    from docpipe.llm import build_chat_model, complete

    llm  = build_chat_model(max_tokens=800, json_mode=True)
    text = await complete(llm, system_prompt, user_prompt)
"""

from docpipe.llm.chat import build_chat_model, build_messages, complete

__all__ = ["build_chat_model", "build_messages", "complete"]
