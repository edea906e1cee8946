"""Tests for BM25 keyword scoring and reciprocal rank fusion."""

from __future__ import annotations

import asyncio
import math

import pytest

from conftest import FakeVectorIndex, make_document
from lifelog_search.hybrid_ranker import (
    CharLengthBM25,
    HybridRanker,
    HybridResult,
    extract_terms,
    reciprocal_rank_fusion,
    term_occurrences,
)


def _keyword(document_id: str, score: float = 1.0) -> HybridResult:
    return HybridResult(id=document_id, score=score, source="keyword", keyword_score=score)


# ---------------------------------------------------------------------------
# Reciprocal rank fusion
# ---------------------------------------------------------------------------


def test_rrf_rewards_documents_found_by_both_lists():
    fused = reciprocal_rank_fusion(
        [_keyword("a"), _keyword("b")],
        [{"id": "b", "score": 0.9}, {"id": "c", "score": 0.8}],
        limit=10,
    )

    assert [r.id for r in fused] == ["b", "a", "c"]
    assert fused[0].score == pytest.approx(0.5 / 62 + 0.5 / 61)
    assert fused[0].source == "hybrid"
    assert fused[0].vector_score == 0.9
    assert fused[2].source == "vector"


def test_rrf_score_falls_with_rank():
    fused = reciprocal_rank_fusion([_keyword(str(i)) for i in range(5)], [], limit=5)
    scores = [r.score for r in fused]
    assert scores == sorted(scores, reverse=True)
    assert len(set(scores)) == 5


def test_rrf_weight_selects_the_dominant_list():
    keyword = [_keyword("kw")]
    vector = [{"id": "vec", "score": 0.5}]

    assert reciprocal_rank_fusion(keyword, vector, 2, hybrid_weight=0.9)[0].id == "kw"
    assert reciprocal_rank_fusion(keyword, vector, 2, hybrid_weight=0.1)[0].id == "vec"


def test_rrf_respects_limit():
    assert len(reciprocal_rank_fusion([_keyword(str(i)) for i in range(5)], [], limit=2)) == 2


def test_extract_terms_adds_naive_stems():
    terms = extract_terms("Running meetings decided on it")
    assert {"running", "runn", "meetings", "meeting", "decided", "decid"} <= terms
    assert "on" not in terms


def test_term_occurrences_keep_repeats_and_stems():
    assert term_occurrences("King meetings, king") == ["king", "meetings", "meeting", "king"]


def test_bm25_uses_plain_idf_and_character_lengths():
    bm25 = CharLengthBM25([["king"], ["king"], ["queen"]], [10, 20, 30], k1=1.2, b=0.75, avg_doc_length=500)

    assert bm25.idf["king"] == pytest.approx(math.log(1.5 / 2.5))
    assert bm25.doc_len == [10, 20, 30]
    assert bm25.avgdl == 500


# ---------------------------------------------------------------------------
# Keyword search and the full ranker
# ---------------------------------------------------------------------------


def test_bm25_finds_rare_terms(corpus):
    ranker = HybridRanker()
    asyncio.run(ranker.initialize(corpus))

    results = ranker.keyword_search("engineers", limit=5)

    assert [r.id for r in results] == ["planning-old"]
    assert results[0].score > 0
    assert results[0].source == "keyword"


def test_keyword_search_with_no_usable_terms(corpus):
    ranker = HybridRanker()
    asyncio.run(ranker.initialize(corpus))
    assert ranker.keyword_search("a an", limit=5) == []


def test_hybrid_search_fuses_vector_hits(corpus):
    vector = FakeVectorIndex(fixed_hits=[
        {"id": "standup-yesterday", "score": 0.9},
        {"id": "planning-old", "score": 0.8},
    ])
    ranker = HybridRanker(vector)
    asyncio.run(ranker.initialize(corpus))

    results = asyncio.run(ranker.search("engineers", top_k=5))

    assert [r.id for r in results] == ["planning-old", "standup-yesterday"]
    assert results[0].source == "hybrid"
    assert results[0].vector_score == 0.8
    assert results[0].keyword_score is not None
    assert vector.search_calls == ["engineers"]


def test_keyword_only_without_vector_index(corpus):
    ranker = HybridRanker()
    asyncio.run(ranker.initialize(corpus))
    assert [r.id for r in asyncio.run(ranker.search("engineers"))] == ["planning-old"]


def test_initializes_from_vector_index_on_first_search():
    vector = FakeVectorIndex()
    asyncio.run(vector.add_documents([{"id": "x", "content": "kayak trip"}]))
    ranker = HybridRanker(vector)

    results = asyncio.run(ranker.search("kayak"))

    assert ranker.initialized
    assert [r.id for r in results] == ["x"]


def test_update_index_and_clear():
    vector = FakeVectorIndex()
    ranker = HybridRanker(vector)
    asyncio.run(vector.add_documents([{"id": "x", "content": "kayak trip"}]))
    asyncio.run(ranker.initialize())

    asyncio.run(vector.add_documents([{"id": "y", "content": "canoe trip"}]))
    asyncio.run(ranker.update_index(["y"]))
    assert ranker.stats()["indexed_documents"] == 2

    ranker.clear_index()
    assert ranker.stats() == {"indexed_documents": 0, "unique_terms": 0}


def test_term_frequency_counts_whole_terms_only():
    ranker = HybridRanker()
    asyncio.run(ranker.initialize([
        make_document("kingdom", "king kingdom kingdom kingdom"),
        make_document("repeated", "king met king"),
        make_document("f1", "lunch with sarah"),
        make_document("f2", "budget review"),
        make_document("f3", "kayak trip"),
    ]))

    results = ranker.keyword_search("king", limit=5)

    assert [r.id for r in results] == ["repeated", "kingdom"]
