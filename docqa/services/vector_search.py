"""Vector search: cosine similarity ranking balanced across documents."""
import logging
import math
import threading
from typing import Dict, Iterable, List, Optional, Sequence

import numpy as np

from docqa.config import MIN_SIMILARITY
from docqa.errors import RetrievalCancelledError
from docqa.models.chunk import Chunk, ScoredChunk

logger = logging.getLogger(__name__)


def cosine_similarity(vec_a, vec_b) -> float:
    """
    Compute cosine similarity between two vectors.

    Args:
        vec_a: First embedding vector
        vec_b: Second embedding vector

    Returns:
        Similarity in [-1, 1]; 0.0 when either vector has zero length or the
        shapes differ
    """
    a = np.asarray(vec_a, dtype=float)
    b = np.asarray(vec_b, dtype=float)
    if a.size == 0 or a.shape != b.shape:
        return 0.0

    denominator = np.linalg.norm(a) * np.linalg.norm(b)
    if denominator == 0:
        return 0.0
    return float(np.dot(a, b) / denominator)


class VectorSearch:
    """Rank chunks by embedding similarity with a fairness quota across documents."""

    def __init__(self, min_similarity: float = MIN_SIMILARITY):
        """
        Args:
            min_similarity: A chunk only counts as a match when its similarity
                is strictly above this value
        """
        self.min_similarity = min_similarity

    def find_similar(
        self,
        query_embedding,
        chunks: Sequence[Chunk],
        limit: int = 5,
        document_ids: Optional[Iterable[str]] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> List[ScoredChunk]:
        """
        Find the chunks most similar to a query embedding.

        Every document with a match first gets a quota of
        max(1, ceil(limit / documents_with_matches)) chunks; the pooled
        candidates are then sorted and cut to ``limit``, never dropping a
        document's best chunk while ``limit`` covers every document.

        Args:
            query_embedding: Embedding vector of the query
            chunks: Candidate chunks carrying embeddings
            limit: Maximum number of results
            document_ids: Optional document scope; None searches every chunk
            cancel_event: Optional event that aborts the search when set

        Returns:
            ScoredChunks sorted by embedding_score, with 1-based embedding_rank

        Raises:
            ValueError: If query_embedding is empty
            RetrievalCancelledError: If cancel_event is set mid-search
        """
        query = np.asarray(query_embedding, dtype=float)
        if query.size == 0:
            raise ValueError("Query embedding cannot be empty")
        if limit <= 0:
            return []

        scope = set(document_ids) if document_ids is not None else None
        query_norm = np.linalg.norm(query)

        doc_chunks: Dict[str, List[Chunk]] = {}
        skipped = 0
        for chunk in chunks:
            if scope is not None and chunk.document_id not in scope:
                continue
            if chunk.embedding is None:
                skipped += 1
                continue
            doc_chunks.setdefault(chunk.document_id, []).append(chunk)

        if skipped:
            logger.warning(f"Skipped {skipped} chunks without embeddings")

        doc_results: Dict[str, List[ScoredChunk]] = {}
        for document_id, document_chunks in doc_chunks.items():
            if cancel_event is not None and cancel_event.is_set():
                raise RetrievalCancelledError("Vector search cancelled")

            matrix = np.vstack([np.asarray(c.embedding, dtype=float) for c in document_chunks])
            if matrix.shape[1] != query.shape[0]:
                logger.warning(
                    f"Embedding dimension mismatch for document {document_id}: "
                    f"{matrix.shape[1]} != {query.shape[0]}"
                )
                continue

            norms = np.linalg.norm(matrix, axis=1) * query_norm
            dots = matrix @ query
            similarities = np.divide(dots, norms, out=np.zeros_like(dots), where=norms != 0)

            matches = [
                ScoredChunk(chunk=chunk, embedding_score=float(similarity))
                for chunk, similarity in zip(document_chunks, similarities)
                if similarity > self.min_similarity
            ]
            if matches:
                matches.sort(key=lambda sc: sc.embedding_score, reverse=True)
                doc_results[document_id] = matches

        if not doc_results:
            return []

        per_doc_limit = max(1, math.ceil(limit / len(doc_results)))

        # The global cut keeps each document's best chunk before any runner-up
        best_per_doc = [matches[0] for matches in doc_results.values()]
        runners_up = [sc for matches in doc_results.values() for sc in matches[1:per_doc_limit]]
        best_per_doc.sort(key=lambda sc: sc.embedding_score, reverse=True)
        runners_up.sort(key=lambda sc: sc.embedding_score, reverse=True)

        results = best_per_doc[:limit]
        results.extend(runners_up[:limit - len(results)])
        results.sort(key=lambda sc: sc.embedding_score, reverse=True)
        for rank, scored_chunk in enumerate(results, start=1):
            scored_chunk.embedding_rank = rank

        logger.debug(
            f"Vector search over {len(doc_chunks)} documents returned {len(results)} chunks "
            f"(per-document limit {per_doc_limit})"
        )
        return results
