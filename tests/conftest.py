"""Shared fixtures: a pinned clock, a small lifelog corpus and collaborator fakes."""

from __future__ import annotations

import asyncio
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

import pytest

from lifelog_search.models import Document
from lifelog_search.service_interfaces import (
    DocumentStoreInterface,
    DocumentStoreUnavailableError,
    ReasoningCollaboratorInterface,
    ReasoningUnavailableError,
    VectorIndexInterface,
    VectorIndexUnavailableError,
)

# Friday
NOW = datetime(2024, 3, 15, 12, 0, 0)


def make_document(
    document_id: str,
    content: str,
    title: str = "",
    days_ago: int = 0,
    hour: int = 10,
    headings: Sequence[str] = (),
) -> Document:
    return Document(
        id=document_id,
        title=title,
        content=content,
        created_at=NOW.replace(hour=hour) - timedelta(days=days_ago),
        duration_seconds=600,
        headings=list(headings),
    )


class InMemoryDocumentStore(DocumentStoreInterface):
    def __init__(self, documents: Sequence[Document], fail: bool = False):
        self.documents = list(documents)
        self.fail = fail
        self.load_calls = 0

    async def load_all(self) -> List[Document]:
        self.load_calls += 1
        if self.fail:
            raise DocumentStoreUnavailableError("store offline")
        return list(self.documents)

    async def load_by_date_range(self, start: date, end: date):
        return [(d.id, d.created_date) for d in self.documents if start <= d.created_date <= end]

    async def load(self, document_id: str, document_date: date) -> Optional[Document]:
        for document in self.documents:
            if document.id == document_id and document.created_date == document_date:
                return document
        return None


class FakeVectorIndex(VectorIndexInterface):
    """Scores stored documents by word overlap with the query."""

    def __init__(
        self,
        fixed_hits: Optional[List[Dict[str, Any]]] = None,
        fail_init: bool = False,
        fail_search: bool = False,
        delay: float = 0.0,
    ):
        self.fixed_hits = fixed_hits
        self.fail_init = fail_init
        self.fail_search = fail_search
        self.delay = delay
        self.documents: Dict[str, Dict[str, Any]] = {}
        self.search_calls: List[str] = []
        self.closed = False

    async def initialize(self) -> None:
        if self.fail_init:
            raise VectorIndexUnavailableError("embedding backend unreachable")

    async def search_by_text(self, query, top_k=10, score_threshold=None, filter_obj=None):
        self.search_calls.append(query)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_search:
            raise RuntimeError("vector backend error")
        if self.fixed_hits is not None:
            return [dict(hit) for hit in self.fixed_hits][:top_k]

        words = set(query.lower().split())
        hits = []
        for stored in self.documents.values():
            overlap = len(words & set(stored["content"].lower().split()))
            if overlap:
                hits.append({
                    "id": stored["id"],
                    "score": overlap / len(words),
                    "content": stored["content"],
                    "metadata": stored.get("metadata", {}),
                })
        hits.sort(key=lambda hit: (-hit["score"], hit["id"]))
        return hits[:top_k]

    async def add_documents(self, documents):
        for document in documents:
            self.documents[document["id"]] = dict(document)

    async def get_documents(self, document_ids):
        return [dict(self.documents[i]) for i in document_ids if i in self.documents]

    async def list_document_ids(self):
        return sorted(self.documents)

    async def stats(self):
        return {"document_count": len(self.documents)}

    async def close(self):
        self.closed = True


class FakeReasoning(ReasoningCollaboratorInterface):
    """Ranks candidates in reverse order and reports canned insights."""

    def __init__(self, available: bool = True, fail: bool = False):
        self.available = available
        self.fail = fail
        self.calls: List[str] = []

    async def is_available(self) -> bool:
        return self.available

    async def execute_complex_search(self, query, candidates, options=None):
        self.calls.append(query)
        if self.fail:
            raise ReasoningUnavailableError("reasoner crashed")
        return {
            "results": list(reversed(candidates)),
            "insights": "Budget came up in two meetings",
            "action_items": ["Send the revised budget"],
            "summary": "Budget discussions",
            "confidence": 0.9,
        }


@pytest.fixture
def now():
    return lambda: NOW


@pytest.fixture
def corpus() -> List[Document]:
    return [
        make_document(
            "lunch-today",
            "Had lunch at Smoothie King with Sarah. We talked about the marketing budget.",
            title="Lunch",
        ),
        make_document(
            "standup-yesterday",
            "Morning standup with the team. Sarah said the budget review is due Friday.",
            title="Standup",
            days_ago=1,
        ),
        make_document(
            "grocery-week",
            "Grocery run. Bought bananas at the smoothie aisle and a king size bed sheet.",
            title="Errands",
            days_ago=6,
        ),
        make_document(
            "planning-old",
            "Quarterly planning session. Decided to hire two engineers next quarter.",
            title="Planning",
            days_ago=30,
        ),
    ]


@pytest.fixture
def store(corpus) -> InMemoryDocumentStore:
    return InMemoryDocumentStore(corpus)


def pytest_runtest_setup(item):
    # Skip integration tests by default when marked
    if "integration" in item.keywords:
        pytest.skip("skipping integration test")
