"""Knowledge retrieval contract plus a small lexical implementation.

Production deployments plug in their own retriever (search index, vector
store). The lexical scorer below ranks published help content by title and
body matches and is what the service uses when nothing better is wired in.
"""

from __future__ import annotations

import re
import threading
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Protocol
from uuid import UUID

import psycopg
from psycopg.rows import dict_row

from .schemas import KnowledgeSnippet

DEFAULT_KNOWLEDGE_LIMIT = 5

# Settings name the collections; snippets carry the singular item type.
SOURCE_TYPES = {
    "articles": "article",
    "internalArticles": "internalArticle",
    "snippets": "snippet",
}


class KnowledgeRetriever(Protocol):
    def retrieve(
        self,
        tenant_id: UUID,
        query: str,
        sources: Sequence[str],
        limit: int = DEFAULT_KNOWLEDGE_LIMIT,
    ) -> list[KnowledgeSnippet]: ...


@dataclass
class KnowledgeDocument:
    tenant_id: UUID
    type: str
    id: str
    title: str
    content: str
    status: str = "published"

    @property
    def searchable(self) -> bool:
        if self.type == "article":
            return self.status == "published"
        if self.type == "internalArticle":
            return self.status != "archived"
        return True


def score_relevance(title: str, content: str, term: str) -> int:
    """Lexical relevance of ``title``/``content`` for a lower-cased ``term``."""

    score = 0
    lowered_title = title.lower()
    lowered_content = content.lower()
    if term in lowered_title:
        score += 10
        if lowered_title.startswith(term):
            score += 5
        if lowered_title == term:
            score += 10
    if term:
        score += min(len(re.findall(re.escape(term), lowered_content)), 5)
    for word in (w for w in term.split() if len(w) > 2):
        if word in lowered_title:
            score += 2
        if word in lowered_content:
            score += 1
    return score


def rank_documents(
    documents: Iterable[KnowledgeDocument],
    query: str,
    sources: Sequence[str],
    limit: int,
) -> list[KnowledgeSnippet]:
    term = query.lower()
    allowed = {SOURCE_TYPES[s] for s in sources if s in SOURCE_TYPES}
    results: list[KnowledgeSnippet] = []
    for doc in documents:
        if doc.type not in allowed or not doc.searchable:
            continue
        score = score_relevance(doc.title, doc.content, term)
        if score > 0:
            results.append(
                KnowledgeSnippet(
                    type=doc.type,
                    id=doc.id,
                    title=doc.title,
                    content=doc.content,
                    relevance_score=score,
                )
            )
    # ``sorted`` is stable, so equal scores keep insertion order.
    results = sorted(results, key=lambda s: s.relevance_score, reverse=True)
    return results[:limit]


class InMemoryKnowledgeRetriever:
    def __init__(self, documents: Iterable[KnowledgeDocument] = ()) -> None:
        self._lock = threading.Lock()
        self._documents = list(documents)

    def add(self, document: KnowledgeDocument) -> None:
        with self._lock:
            self._documents.append(document)

    def retrieve(
        self,
        tenant_id: UUID,
        query: str,
        sources: Sequence[str],
        limit: int = DEFAULT_KNOWLEDGE_LIMIT,
    ) -> list[KnowledgeSnippet]:
        with self._lock:
            documents = [d for d in self._documents if d.tenant_id == tenant_id]
        return rank_documents(documents, query, sources, limit)


class PostgresKnowledgeRetriever:
    """Score the tenant's ``knowledge_items`` rows with :func:`score_relevance`."""

    def __init__(self, conn: psycopg.Connection, scan_limit: int = 2000) -> None:
        self._conn = conn
        self._scan_limit = scan_limit

    def retrieve(
        self,
        tenant_id: UUID,
        query: str,
        sources: Sequence[str],
        limit: int = DEFAULT_KNOWLEDGE_LIMIT,
    ) -> list[KnowledgeSnippet]:
        types = [SOURCE_TYPES[s] for s in sources if s in SOURCE_TYPES]
        if not types:
            return []
        with self._conn.transaction(), self._conn.cursor(row_factory=dict_row) as cur:
            cur.execute(
                """
                SELECT id, type, title, content, status
                FROM knowledge_items
                WHERE tenant_id = %s AND type = ANY(%s)
                ORDER BY updated_at DESC
                LIMIT %s
                """,
                (tenant_id, types, self._scan_limit),
            )
            rows = cur.fetchall()
        documents = [KnowledgeDocument(tenant_id=tenant_id, **row) for row in rows]
        return rank_documents(documents, query, sources, limit)
