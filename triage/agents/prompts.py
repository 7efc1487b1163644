"""Prompt assembly for the support agent."""

from __future__ import annotations

from collections.abc import Sequence

from .schemas import KnowledgeSnippet

MAX_CONTEXT_SNIPPETS = 5
MAX_SNIPPET_CHARS = 2000
SNIPPET_DIVIDER = "\n\n---\n\n"
NO_KNOWLEDGE_MARKER = "No relevant knowledge found."

RETRY_INSTRUCTION = (
    "Your previous reply was empty. You must answer the customer in at least one "
    "full sentence. If the knowledge context does not cover the question, say so "
    "and offer to connect them with a human agent."
)

_GUIDELINES = """IMPORTANT GUIDELINES:
1. Only answer questions using the information provided in the KNOWLEDGE CONTEXT below
2. If you cannot find relevant information to answer the question, say "I don't have enough information to answer that question. Let me connect you with a human agent."
3. Be concise but thorough in your responses
4. Always be polite and professional
5. If the customer seems frustrated or asks to speak to a human, acknowledge their request
6. Cite your sources when possible by mentioning the article or document title
7. Never make up information that isn't in the knowledge context
8. Never reply with an empty message; always answer in at least one full sentence"""


def build_knowledge_context(snippets: Sequence[KnowledgeSnippet]) -> str:
    """Render the top snippets as numbered source blocks."""

    blocks = []
    for index, snippet in enumerate(snippets[:MAX_CONTEXT_SNIPPETS], start=1):
        content = snippet.content[:MAX_SNIPPET_CHARS]
        if len(snippet.content) > MAX_SNIPPET_CHARS:
            content += "..."
        blocks.append(f"[Source {index}: {snippet.title}]\n{content}")
    return SNIPPET_DIVIDER.join(blocks) or NO_KNOWLEDGE_MARKER


def build_system_prompt(personality: str | None, knowledge_context: str) -> str:
    personality_line = f"PERSONALITY: {personality}\n" if personality else ""
    return (
        "You are a helpful customer support AI assistant. Your role is to answer "
        "customer questions accurately and helpfully using the provided knowledge "
        "base content.\n\n"
        f"{_GUIDELINES}\n\n"
        f"{personality_line}"
        "KNOWLEDGE CONTEXT:\n"
        f"{knowledge_context or NO_KNOWLEDGE_MARKER}\n\n"
        "If the knowledge context is empty or doesn't contain relevant information, "
        "politely explain that you don't have the information and offer to connect "
        "them with a human agent."
    )


def build_retry_prompt(system_prompt: str) -> str:
    return f"{system_prompt}\n\n{RETRY_INSTRUCTION}"
