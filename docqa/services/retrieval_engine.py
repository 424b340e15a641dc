"""Retrieval engine orchestrating contextual, standard and term-expansion search."""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence

import numpy as np

from docqa.config import (
    CONTEXT_BOOST_WEIGHT,
    CONTEXT_SIMILARITY_THRESHOLD,
    LARGE_RESULT_THRESHOLD,
    MAX_CHUNKS_PER_DOCUMENT,
    SEARCH_LIMIT,
)
from docqa.errors import CollaboratorUnavailableError, RetrievalCancelledError, SearchFailedError
from docqa.models.chunk import Chunk, ScoredChunk
from docqa.models.conversation import DocumentRelevance, QueryContext
from docqa.services.chunking_engine import ChunkingEngine
from docqa.services.document_store import DocumentStore
from docqa.services.embedding_model import EmbeddingModel
from docqa.services.llm_client import LLMClient
from docqa.services.result_fusion import ResultFusion
from docqa.services.term_search import TermSearch
from docqa.services.vector_search import VectorSearch, cosine_similarity

logger = logging.getLogger(__name__)


class SearchStage(Enum):
    """Search strategies, tried in declaration order until one yields passages."""
    CONTEXTUAL = "contextual"
    STANDARD = "standard"
    TERM_EXPANSION = "term_expansion"


class RetrievalObserver:
    """Receives stage progress notifications. The default implementation ignores them."""

    def stage_started(self, stage: SearchStage) -> None:
        pass

    def stage_finished(self, stage: SearchStage, result_count: int) -> None:
        pass


@dataclass
class RetrievalResult:
    """Outcome of a single retrieval."""
    passages: List[ScoredChunk] = field(default_factory=list)
    stage: Optional[SearchStage] = None
    used_fallback: bool = False
    no_relevant_content: bool = False
    is_contextual: bool = False
    term_overlap: float = 0.0
    related_terms: List[str] = field(default_factory=list)

    @property
    def is_follow_up(self) -> bool:
        return self.is_contextual or self.term_overlap > 0.5


class RetrievalEngine:
    """Find the passages that answer a question, using the conversation's query context."""

    def __init__(
        self,
        store: DocumentStore,
        embedding_model: EmbeddingModel,
        llm_client: Optional[LLMClient] = None,
        chunking_engine: Optional[ChunkingEngine] = None,
        term_search: Optional[TermSearch] = None,
        vector_search: Optional[VectorSearch] = None,
        fusion: Optional[ResultFusion] = None,
        search_limit: int = SEARCH_LIMIT,
        observer: Optional[RetrievalObserver] = None
    ):
        """
        Initialize the retrieval engine.

        Args:
            store: Document store holding embedded chunks
            embedding_model: Embeds questions
            llm_client: Supplies related terms for the term-expansion fallback;
                without it the fallback stage is skipped
            chunking_engine: Chunker exposed through chunk_document
            term_search: Lexical search engine
            vector_search: Vector search engine
            fusion: Result fusion
            search_limit: Candidates requested from each search engine
            observer: Optional stage progress observer
        """
        self.store = store
        self.embedding_model = embedding_model
        self.llm_client = llm_client
        self.chunking_engine = chunking_engine or ChunkingEngine()
        self.term_search = term_search or TermSearch()
        self.vector_search = vector_search or VectorSearch()
        self.fusion = fusion or ResultFusion()
        self.search_limit = search_limit
        self.observer = observer or RetrievalObserver()
        logger.info("Initialized RetrievalEngine")

    def chunk_document(self, text: str, document_id: str = "") -> List[Chunk]:
        return self.chunking_engine.chunk_document(text, document_id)

    def retrieve(
        self,
        question: str,
        document_ids: Optional[Iterable[str]],
        context: QueryContext,
        conversation_history: Optional[List[Dict[str, str]]] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> RetrievalResult:
        """
        Retrieve passages for a question.

        Stages are tried in order:
        1. Contextual: when the question is semantically close (cosine > 0.7)
           to the previous one, vector results from previously relevant
           documents are boosted by 0.15 * relevance.
        2. Standard hybrid search without boost.
        3. Term expansion: related terms from the language model are appended
           to the question and the standard search is rerun.

        The context is updated only when passages are found. Retrievals on the
        same context are serialized by ``context.lock`` in arrival order.

        Args:
            question: User question
            document_ids: Documents to search; None searches every stored document
            context: Conversation query context, read and updated in place
            conversation_history: Previous user/assistant messages for the fallback
            cancel_event: Optional event that aborts retrieval when set

        Returns:
            RetrievalResult; ``no_relevant_content`` is set when every stage
            came back empty

        Raises:
            ValueError: If question is empty
            CollaboratorUnavailableError: If the embedding or language model fails
            SearchFailedError: If both search engines fail
            RetrievalCancelledError: If cancel_event is set
        """
        if not question or not question.strip():
            raise ValueError("Question cannot be empty")

        scope = frozenset(document_ids) if document_ids is not None else None

        with context.lock:
            # Context from another document scope does not carry over
            scope_changed = context.previous_embedding is not None and context.document_scope != scope
            if scope_changed:
                logger.info("Document scope changed, ignoring previous query context")

            self._check_cancelled(cancel_event)
            ids = sorted(scope) if scope is not None else sorted(d.document_id for d in self.store.get_all_documents())
            chunks = [chunk for doc_id in ids for chunk in self.store.get_all_chunks(doc_id)]
            if not chunks:
                logger.info("No chunks available in the selected documents")
                return RetrievalResult(no_relevant_content=True)

            question_embedding = np.asarray(self._embed(question), dtype=float)
            terms = self.term_search.extract_terms(question)
            term_overlap = 0.0
            if context.previous_terms and not scope_changed:
                term_overlap = self.term_search.calculate_term_overlap(terms, context.previous_terms)

            result = RetrievalResult(term_overlap=term_overlap)

            if not scope_changed and self._is_contextual(question_embedding, context):
                result.is_contextual = True
                passages = self._run_stage(
                    SearchStage.CONTEXTUAL, question, question_embedding, chunks, ids, cancel_event,
                    document_relevance=context.relevance_by_document()
                )
                self._accept(result, SearchStage.CONTEXTUAL, passages)

            if not result.passages:
                self._check_cancelled(cancel_event)
                passages = self._run_stage(SearchStage.STANDARD, question, question_embedding, chunks, ids, cancel_event)
                self._accept(result, SearchStage.STANDARD, passages)

            if not result.passages and self.llm_client is not None:
                self._check_cancelled(cancel_event)
                self._expand_terms(result, question, terms, chunks, ids, conversation_history, cancel_event)

            if len(result.passages) > LARGE_RESULT_THRESHOLD:
                result.passages = ResultFusion.reduce_large_result_set(
                    result.passages, MAX_CHUNKS_PER_DOCUMENT, self.fusion.max_results
                )

            if not result.passages:
                logger.info(f"No relevant content found for '{question[:50]}'")
                result.no_relevant_content = True
                return result

            self._check_cancelled(cancel_event)
            self._update_context(context, question_embedding, terms, result.passages, scope)

        logger.info(
            f"Retrieved {len(result.passages)} passages via {result.stage.value} search "
            f"(fallback={result.used_fallback}, contextual={result.is_contextual})"
        )
        return result

    def _expand_terms(
        self,
        result: RetrievalResult,
        question: str,
        terms: List[str],
        chunks: List[Chunk],
        ids: List[str],
        conversation_history: Optional[List[Dict[str, str]]],
        cancel_event: Optional[threading.Event]
    ) -> None:
        logger.info("No results from standard search, trying related terms")
        self.observer.stage_started(SearchStage.TERM_EXPANSION)

        related_terms = self.llm_client.find_related_terms(question, terms, conversation_history)
        if not related_terms:
            self.observer.stage_finished(SearchStage.TERM_EXPANSION, 0)
            return

        expanded_question = f"{question} {' '.join(related_terms)}"
        expanded_embedding = np.asarray(self._embed(expanded_question), dtype=float)
        passages = self._search(expanded_question, expanded_embedding, chunks, ids, cancel_event)
        self.observer.stage_finished(SearchStage.TERM_EXPANSION, len(passages))

        result.related_terms = list(related_terms)
        if passages:
            result.passages = passages
            result.stage = SearchStage.TERM_EXPANSION
            result.used_fallback = True
            logger.info(f"Found {len(passages)} results using related terms")

    def _run_stage(
        self,
        stage: SearchStage,
        question: str,
        question_embedding: np.ndarray,
        chunks: List[Chunk],
        ids: List[str],
        cancel_event: Optional[threading.Event],
        document_relevance: Optional[Dict[str, float]] = None
    ) -> List[ScoredChunk]:
        self.observer.stage_started(stage)
        passages = self._search(question, question_embedding, chunks, ids, cancel_event, document_relevance)
        self.observer.stage_finished(stage, len(passages))
        logger.debug(f"{stage.value} search returned {len(passages)} passages")
        return passages

    @staticmethod
    def _accept(result: RetrievalResult, stage: SearchStage, passages: List[ScoredChunk]) -> None:
        if passages:
            result.passages = passages
            result.stage = stage

    def _search(
        self,
        query: str,
        query_embedding: np.ndarray,
        chunks: Sequence[Chunk],
        ids: List[str],
        cancel_event: Optional[threading.Event],
        document_relevance: Optional[Dict[str, float]] = None
    ) -> List[ScoredChunk]:
        """Run vector and lexical search concurrently over one chunk snapshot and fuse them."""
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="retrieval") as executor:
            vector_future = executor.submit(
                self.vector_search.find_similar, query_embedding, chunks, self.search_limit, ids, cancel_event
            )
            term_future = executor.submit(
                self.term_search.search, query, chunks, self.search_limit, cancel_event
            )

            vector_results, vector_error = self._collect(vector_future, "Vector")
            term_results, term_error = self._collect(term_future, "Term")

        if vector_error is not None and term_error is not None:
            raise SearchFailedError(
                f"Both searches failed: vector ({vector_error}), term ({term_error})"
            ) from vector_error

        if document_relevance:
            vector_results = self._apply_context_boost(vector_results, document_relevance)

        return self.fusion.merge(
            vector_results,
            term_results,
            is_contextual=bool(document_relevance),
            document_relevance=document_relevance
        )

    @staticmethod
    def _collect(future, name: str):
        try:
            return future.result(), None
        except RetrievalCancelledError:
            raise
        except Exception as e:
            logger.warning(f"{name} search failed, continuing with the other signal: {e}")
            return [], e

    @staticmethod
    def _apply_context_boost(
        results: List[ScoredChunk],
        document_relevance: Dict[str, float]
    ) -> List[ScoredChunk]:
        boosted = []
        for result in results:
            relevance = document_relevance.get(result.document_id)
            if relevance is None:
                boosted.append(result)
                continue
            boosted.append(replace(
                result,
                embedding_score=result.embedding_score + relevance * CONTEXT_BOOST_WEIGHT,
                boosted_for_context=True
            ))

        boosted.sort(key=lambda sc: sc.embedding_score, reverse=True)
        for rank, result in enumerate(boosted, start=1):
            result.embedding_rank = rank
        return boosted

    @staticmethod
    def _is_contextual(question_embedding: np.ndarray, context: QueryContext) -> bool:
        if context.previous_embedding is None or not context.relevant_documents:
            return False
        similarity = cosine_similarity(question_embedding, context.previous_embedding)
        logger.debug(f"Similarity with previous question: {similarity:.3f}")
        return similarity > CONTEXT_SIMILARITY_THRESHOLD

    def _embed(self, text: str) -> List[float]:
        try:
            return self.embedding_model.embed_text(text)
        except CollaboratorUnavailableError as e:
            logger.error(f"Failed to embed question: {e}")
            raise

    @staticmethod
    def _update_context(
        context: QueryContext,
        question_embedding: np.ndarray,
        terms: List[str],
        passages: List[ScoredChunk],
        scope
    ) -> None:
        counts: Dict[str, int] = {}
        for passage in passages:
            counts[passage.document_id] = counts.get(passage.document_id, 0) + 1

        context.previous_embedding = question_embedding
        context.relevant_documents = [
            DocumentRelevance(document_id=doc_id, relevance_score=count / len(passages))
            for doc_id, count in counts.items()
        ]
        context.previous_terms = list(terms)
        context.last_passages = list(passages)
        context.document_scope = scope

    @staticmethod
    def _check_cancelled(cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise RetrievalCancelledError("Retrieval cancelled")
