"""Hybrid keyword + vector ranking with Reciprocal Rank Fusion.

The keyword side is BM25 (rank_bm25) over its own inverted index; the vector
side is whatever similarity search the vector index collaborator provides.
Because the two score scales are incomparable, the lists are fused by rank
position only: each list contributes ``weight / (k + rank + 1)`` per document.
"""
import asyncio
import logging
import math
import re
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Sequence, Set

from pydantic import BaseModel
from rank_bm25 import BM25Okapi

from lifelog_search.config import SearchConfig
from lifelog_search.models import Document
from lifelog_search.service_interfaces import VectorIndexInterface

# Configure logging
logger = logging.getLogger(__name__)


class HybridResult(BaseModel):
    """A fused result; ``score`` is the RRF score."""
    id: str
    score: float
    content: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    source: str
    keyword_score: Optional[float] = None
    vector_score: Optional[float] = None


def _word_terms(word: str) -> List[str]:
    terms = [word]
    if word.endswith("ing"):
        terms.append(word[:-3])
    elif word.endswith("ed"):
        terms.append(word[:-2])
    elif word.endswith("s") and len(word) > 3:
        terms.append(word[:-1])
    return terms


def term_occurrences(text: str) -> List[str]:
    """Every lowercased word longer than two characters, each followed by its naive stem."""
    occurrences: List[str] = []
    for word in re.split(r"[\s\W]+", text.lower()):
        if len(word) > 2:
            occurrences.extend(_word_terms(word))
    return occurrences


def extract_terms(text: str) -> Set[str]:
    """Lowercased terms longer than two characters plus naive stems."""
    return set(term_occurrences(text))


class CharLengthBM25(BM25Okapi):
    """BM25Okapi normalizing document length in characters against a fixed average.

    IDF keeps the plain ``log((N - df + 0.5) / (df + 0.5))`` form, negative for
    terms found in more than half of the documents, instead of rank_bm25's
    epsilon floor.
    """

    def __init__(self, corpus: List[List[str]], lengths: Sequence[int], k1: float, b: float, avg_doc_length: float):
        super().__init__(corpus, k1=k1, b=b)
        self.doc_len = list(lengths)
        self.avgdl = avg_doc_length

    def _calc_idf(self, nd):
        self.idf = {
            word: math.log((self.corpus_size - freq + 0.5) / (freq + 0.5))
            for word, freq in nd.items()
        }


@dataclass(frozen=True)
class _KeywordIndex:
    document_ids: List[str] = field(default_factory=list)
    postings: Dict[str, FrozenSet[int]] = field(default_factory=dict)
    contents: Dict[str, str] = field(default_factory=dict)
    bm25: Optional[CharLengthBM25] = None


def _build_keyword_index(contents: Dict[str, str], config: SearchConfig) -> _KeywordIndex:
    document_ids = list(contents)
    corpus = [term_occurrences(contents[document_id]) for document_id in document_ids]

    postings: Dict[str, set] = defaultdict(set)
    for row, terms in enumerate(corpus):
        for term in terms:
            postings[term].add(row)

    bm25 = None
    if corpus:
        bm25 = CharLengthBM25(
            corpus,
            [len(contents[document_id]) for document_id in document_ids],
            k1=config.bm25_k1,
            b=config.bm25_b,
            avg_doc_length=config.bm25_avg_doc_length,
        )
    return _KeywordIndex(
        document_ids=document_ids,
        postings={term: frozenset(rows) for term, rows in postings.items()},
        contents=dict(contents),
        bm25=bm25,
    )


def reciprocal_rank_fusion(
    keyword_results: List[HybridResult],
    vector_results: List[Dict[str, Any]],
    limit: int,
    hybrid_weight: float = 0.5,
    k: int = 60
) -> List[HybridResult]:
    """Fuse a keyword list and a vector list by rank.

    Args:
        keyword_results: Keyword results, best first
        vector_results: Vector index results (dicts with id and score), best first
        limit: Maximum fused results
        hybrid_weight: Weight of the keyword list; the vector list gets the rest
        k: RRF smoothing constant

    Returns:
        Fused results sorted by descending RRF score
    """
    keyword_weight = hybrid_weight
    vector_weight = 1 - hybrid_weight
    fused: Dict[str, HybridResult] = {}

    for rank, result in enumerate(keyword_results):
        rrf_score = keyword_weight / (k + rank + 1)
        existing = fused.get(result.id)
        if existing:
            existing.score += rrf_score
            existing.keyword_score = result.keyword_score
        else:
            fused[result.id] = result.model_copy(update={"score": rrf_score, "source": "hybrid"})

    for rank, result in enumerate(vector_results):
        rrf_score = vector_weight / (k + rank + 1)
        existing = fused.get(result["id"])
        if existing:
            existing.score += rrf_score
            existing.vector_score = result.get("score")
            existing.content = existing.content or result.get("content")
            existing.metadata = existing.metadata or result.get("metadata")
        else:
            fused[result["id"]] = HybridResult(
                id=result["id"],
                score=rrf_score,
                content=result.get("content"),
                metadata=result.get("metadata"),
                source="vector",
                vector_score=result.get("score"),
            )

    ranked = sorted(fused.values(), key=lambda r: r.score, reverse=True)
    return ranked[:limit]


class HybridRanker:
    """BM25 keyword search fused with vector similarity search."""

    def __init__(self, vector_index: Optional[VectorIndexInterface] = None, config: Optional[SearchConfig] = None):
        """Initialize the ranker.

        Args:
            vector_index: Vector index collaborator, or None for keyword-only ranking
            config: Search configuration (BM25 and RRF constants)
        """
        self.vector_index = vector_index
        self.config = config or SearchConfig()
        self._index = _KeywordIndex()
        self.initialized = False

    async def initialize(self, documents: Optional[Iterable[Document]] = None) -> None:
        """Build the keyword index.

        Pages through the vector index's stored documents, or indexes the
        given documents directly when provided.
        """
        start_time = time.perf_counter()
        contents: Dict[str, str] = {}

        if documents is not None:
            for document in documents:
                contents[document.id] = document.content
        elif self.vector_index is not None:
            document_ids = await self.vector_index.list_document_ids()
            batch_size = self.config.hybrid_index_batch_size
            for i in range(0, len(document_ids), batch_size):
                batch = await self.vector_index.get_documents(document_ids[i:i + batch_size])
                for stored in batch:
                    if stored.get("content"):
                        contents[stored["id"]] = stored["content"]
                logger.debug(f"Indexed {len(contents)} documents for keyword search")

        self._index = await asyncio.to_thread(_build_keyword_index, contents, self.config)
        self.initialized = True

        elapsed_ms = (time.perf_counter() - start_time) * 1000
        logger.info(
            f"Keyword index built: {len(contents)} documents, "
            f"{len(self._index.postings)} unique terms in {elapsed_ms:.1f}ms"
        )

    async def update_index(self, document_ids: List[str]) -> None:
        """Add or refresh documents fetched from the vector index."""
        if self.vector_index is None:
            return
        stored = await self.vector_index.get_documents(document_ids)
        contents = dict(self._index.contents)
        for document in stored:
            if document.get("content"):
                contents[document["id"]] = document["content"]
        self._index = await asyncio.to_thread(_build_keyword_index, contents, self.config)
        logger.debug(f"Updated keyword index with {len(stored)} documents")

    def clear_index(self) -> None:
        self._index = _KeywordIndex()
        logger.info("Keyword index cleared")

    def stats(self) -> Dict[str, int]:
        return {
            "indexed_documents": len(self._index.contents),
            "unique_terms": len(self._index.postings),
        }

    def keyword_search(self, query: str, limit: int) -> List[HybridResult]:
        """BM25 search over the keyword index.

        Only documents posting at least one query term are scored. Term
        frequency counts whole terms; IDF reflects the document count of the
        index as last built, which every update rebuilds.
        """
        index = self._index
        query_terms = sorted(extract_terms(query))
        if not query_terms or index.bm25 is None:
            return []

        rows = sorted(set().union(*(index.postings.get(term, frozenset()) for term in query_terms)))
        if not rows:
            return []

        scores = index.bm25.get_batch_scores(query_terms, rows)
        ranked = sorted(
            ((index.document_ids[row], float(score)) for row, score in zip(rows, scores)),
            key=lambda item: (-item[1], item[0]),
        )[:limit]
        return [
            HybridResult(
                id=document_id,
                score=score / len(query_terms),
                content=index.contents.get(document_id),
                source="keyword",
                keyword_score=score,
            )
            for document_id, score in ranked
        ]

    async def search(
        self,
        query: str,
        top_k: int = 10,
        hybrid_weight: Optional[float] = None,
        score_threshold: Optional[float] = None
    ) -> List[HybridResult]:
        if not self.initialized:
            await self.initialize()

        if hybrid_weight is None:
            hybrid_weight = self.config.hybrid_weight
        fetch = top_k * 2

        keyword_results, vector_results = await asyncio.gather(
            asyncio.to_thread(self.keyword_search, query, fetch),
            self._vector_search(query, fetch, score_threshold),
        )
        logger.debug(
            f"Hybrid search '{query}': keyword={len(keyword_results)}, vector={len(vector_results)}"
        )

        return reciprocal_rank_fusion(keyword_results, vector_results, top_k, hybrid_weight, self.config.rrf_k)

    async def _vector_search(self, query: str, top_k: int, score_threshold: Optional[float]) -> List[Dict[str, Any]]:
        if self.vector_index is None:
            return []
        return await self.vector_index.search_by_text(query, top_k=top_k, score_threshold=score_threshold)
