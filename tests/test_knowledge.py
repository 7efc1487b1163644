import uuid

from triage.agents.knowledge import (
    InMemoryKnowledgeRetriever,
    KnowledgeDocument,
    score_relevance,
)


def _doc(tenant_id, id, title, content, type="article", status="published"):
    return KnowledgeDocument(
        tenant_id=tenant_id, type=type, id=id, title=title, content=content, status=status
    )


def test_exact_title_match_scores_highest():
    assert score_relevance("Refund policy", "", "refund policy") == 10 + 5 + 10 + 2 + 2


def test_content_occurrences_are_capped():
    content = "shipping " * 9
    assert score_relevance("Other", content, "shipping") == 5 + 1


def test_short_words_are_ignored():
    assert score_relevance("An FAQ", "nothing here", "to be") == 0


def test_retrieve_ranks_and_limits(tenant_id):
    retriever = InMemoryKnowledgeRetriever(
        [
            _doc(tenant_id, "a", "Shipping times", "We ship worldwide."),
            _doc(tenant_id, "b", "Returns", "Shipping labels are free for returns."),
            _doc(tenant_id, "c", "Careers", "Join us."),
        ]
    )

    snippets = retriever.retrieve(tenant_id, "shipping", ["articles"], limit=5)

    assert [s.id for s in snippets] == ["a", "b"]
    assert snippets[0].relevance_score > snippets[1].relevance_score


def test_retrieve_respects_limit(tenant_id):
    retriever = InMemoryKnowledgeRetriever(
        [_doc(tenant_id, str(i), f"Shipping {i}", "") for i in range(8)]
    )
    snippets = retriever.retrieve(tenant_id, "shipping", ["articles"], limit=3)
    # Equal scores keep insertion order.
    assert [s.id for s in snippets] == ["0", "1", "2"]


def test_retrieve_filters_sources_status_and_tenant(tenant_id):
    retriever = InMemoryKnowledgeRetriever()
    retriever.add(_doc(tenant_id, "draft", "Shipping", "", status="draft"))
    retriever.add(_doc(tenant_id, "internal", "Shipping", "", type="internalArticle", status="draft"))
    retriever.add(
        _doc(tenant_id, "archived", "Shipping", "", type="internalArticle", status="archived")
    )
    retriever.add(_doc(tenant_id, "snippet", "Shipping", "", type="snippet"))
    retriever.add(_doc(uuid.uuid4(), "foreign", "Shipping", ""))

    articles = retriever.retrieve(tenant_id, "shipping", ["articles"])
    internal = retriever.retrieve(tenant_id, "shipping", ["internalArticles", "snippets"])

    assert articles == []
    assert sorted(s.id for s in internal) == ["internal", "snippet"]
    assert retriever.retrieve(tenant_id, "shipping", []) == []
