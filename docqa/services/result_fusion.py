"""Fusion of vector and lexical result sets into one fair, score-ordered list."""
import logging
from typing import Dict, List, Mapping, Optional, Sequence

from docqa.config import MAX_RESULTS, MAX_CHUNKS_PER_DOCUMENT
from docqa.models.chunk import ScoredChunk

logger = logging.getLogger(__name__)

EMBEDDING_WEIGHT = 0.5
TERM_WEIGHT = 0.5
RANK_BOOST = 0.15  # chunk surfaced by both search methods
CONTEXT_BOOST = 0.1  # chunk boosted for conversational continuity


def ranking_key(scored_chunk: ScoredChunk):
    """Sort key: merged score descending, then document and position for stable ties."""
    return (-scored_chunk.merged_score, scored_chunk.document_id, scored_chunk.chunk.index)


class ResultFusion:
    """Merge embedding and term search results with per-document guarantees."""

    def __init__(self, max_results: int = MAX_RESULTS):
        self.max_results = max_results

    def merge(
        self,
        embedding_results: Sequence[ScoredChunk],
        term_results: Sequence[ScoredChunk],
        is_contextual: bool = False,
        document_relevance: Optional[Mapping[str, float]] = None
    ) -> List[ScoredChunk]:
        """
        Merge results from both search methods.

        Scores:
            merged = clamp(embedding_score, 0, 1) * 0.5 + (term_score / 2) * 0.5
                     + 0.15 if found by both methods
                     + 0.1 if boosted for conversational context

        Selection keeps the best chunk of every document first (documents
        ordered by prior-turn relevance when ``is_contextual``), then fills
        the remaining slots from the leftovers by score.

        Args:
            embedding_results: Vector search results
            term_results: Lexical search results
            is_contextual: Whether this query continues the previous turn's topic
            document_relevance: Prior-turn relevance per document ID

        Returns:
            At most ``max_results`` new ScoredChunk objects sorted by merged_score
        """
        unified: Dict[str, ScoredChunk] = {}
        embedding_ids = set()
        term_ids = set()

        for result in embedding_results:
            embedding_ids.add(result.chunk_id)
            unified[result.chunk_id] = ScoredChunk(
                chunk=result.chunk,
                embedding_score=result.embedding_score,
                embedding_rank=result.embedding_rank,
                boosted_for_context=result.boosted_for_context
            )

        for result in term_results:
            term_ids.add(result.chunk_id)
            entry = unified.get(result.chunk_id)
            if entry is None:
                entry = ScoredChunk(chunk=result.chunk)
                unified[result.chunk_id] = entry
            entry.term_score = result.term_score
            entry.term_rank = result.term_rank
            entry.matched_terms = list(result.matched_terms)

        for chunk_id, entry in unified.items():
            if entry.embedding_score is None:
                entry.embedding_score = 0.0
            if entry.term_score is None:
                entry.term_score = 0.0
            entry.merged_score = self.merged_score(
                embedding_score=entry.embedding_score,
                term_score=entry.term_score,
                found_by_both=chunk_id in embedding_ids and chunk_id in term_ids,
                boosted_for_context=entry.boosted_for_context
            )

        selected = self._select_fair(list(unified.values()), is_contextual, document_relevance or {})

        logger.debug(
            f"Fused {len(embedding_results)} vector and {len(term_results)} term results "
            f"into {len(selected)} chunks (contextual={is_contextual})"
        )
        return selected

    @staticmethod
    def merged_score(
        embedding_score: float,
        term_score: float,
        found_by_both: bool,
        boosted_for_context: bool
    ) -> float:
        normalized_embedding = max(0.0, min(1.0, embedding_score))
        score = normalized_embedding * EMBEDDING_WEIGHT + (term_score / 2) * TERM_WEIGHT
        if found_by_both:
            score += RANK_BOOST
        if boosted_for_context:
            score += CONTEXT_BOOST
        return score

    def _select_fair(
        self,
        candidates: List[ScoredChunk],
        is_contextual: bool,
        document_relevance: Mapping[str, float]
    ) -> List[ScoredChunk]:
        by_document: Dict[str, List[ScoredChunk]] = {}
        for candidate in sorted(candidates, key=ranking_key):
            by_document.setdefault(candidate.document_id, []).append(candidate)

        document_order = list(by_document)
        if is_contextual:
            document_order.sort(key=lambda doc_id: document_relevance.get(doc_id, 0.0), reverse=True)

        # One chunk per represented document first, then the best of the rest
        selected = [by_document[doc_id][0] for doc_id in document_order][:self.max_results]
        leftovers = sorted(
            (c for doc_id in document_order for c in by_document[doc_id][1:]),
            key=ranking_key
        )
        selected.extend(leftovers[:self.max_results - len(selected)])

        selected.sort(key=ranking_key)
        return selected

    @staticmethod
    def reduce_large_result_set(
        results: Sequence[ScoredChunk],
        max_per_document: int = MAX_CHUNKS_PER_DOCUMENT,
        max_results: int = MAX_RESULTS
    ) -> List[ScoredChunk]:
        """Cap each document to ``max_per_document`` chunks, then keep the top ``max_results``."""
        per_document: Dict[str, int] = {}
        reduced: List[ScoredChunk] = []

        for result in sorted(results, key=ranking_key):
            taken = per_document.get(result.document_id, 0)
            if taken < max_per_document:
                per_document[result.document_id] = taken + 1
                reduced.append(result)

        return reduced[:max_results]
