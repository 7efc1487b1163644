from triage.agents.prompts import (
    NO_KNOWLEDGE_MARKER,
    RETRY_INSTRUCTION,
    build_knowledge_context,
    build_retry_prompt,
    build_system_prompt,
)
from triage.agents.schemas import KnowledgeSnippet


def _snippet(i, content="body"):
    return KnowledgeSnippet(type="article", id=str(i), title=f"Title {i}", content=content)


def test_empty_context_uses_marker():
    assert build_knowledge_context([]) == NO_KNOWLEDGE_MARKER


def test_context_numbers_top_five_sources():
    context = build_knowledge_context([_snippet(i) for i in range(1, 8)])

    assert context.startswith("[Source 1: Title 1]\nbody")
    assert "[Source 5: Title 5]" in context
    assert "Title 6" not in context
    assert context.count("\n\n---\n\n") == 4


def test_long_snippet_is_truncated():
    context = build_knowledge_context([_snippet(1, "x" * 2500)])
    assert context.endswith("x" * 2000 + "...")


def test_system_prompt_personality_line_is_optional():
    with_personality = build_system_prompt("Cheerful and brief", "CTX")
    without = build_system_prompt(None, "CTX")

    assert "PERSONALITY: Cheerful and brief\n" in with_personality
    assert "PERSONALITY" not in without
    assert "KNOWLEDGE CONTEXT:\nCTX\n\n" in without


def test_system_prompt_with_blank_context():
    assert f"KNOWLEDGE CONTEXT:\n{NO_KNOWLEDGE_MARKER}" in build_system_prompt(None, "")


def test_retry_prompt_appends_instruction():
    assert build_retry_prompt("BASE") == f"BASE\n\n{RETRY_INSTRUCTION}"
