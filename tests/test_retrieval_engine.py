"""Unit tests for RetrievalEngine."""
import threading
import time
from collections import Counter
from unittest.mock import Mock, patch

import numpy as np
import pytest

from docqa.errors import (
    EmptyDocumentError,
    RetrievalCancelledError,
    SearchFailedError,
)
from docqa.models.chunk import Chunk
from docqa.models.conversation import QueryContext
from docqa.services.embedding_model import EmbeddingError
from docqa.services.llm_client import LLMClientError
from docqa.services.retrieval_engine import RetrievalEngine, RetrievalObserver, SearchStage

from conftest import add_documents, make_document


class TestRetrievalEngine:
    """Test suite for RetrievalEngine class."""

    @pytest.fixture
    def mock_llm_client(self):
        """Create a mock LLMClient that finds no related terms."""
        client = Mock()
        client.find_related_terms.return_value = []
        return client

    @pytest.fixture
    def retrieval_engine(self, store, embedder, mock_llm_client):
        """Create a RetrievalEngine over the in-memory store."""
        return RetrievalEngine(store, embedder, mock_llm_client)

    @pytest.fixture
    def context(self):
        return QueryContext()

    def test_initialization(self, retrieval_engine, store, embedder, mock_llm_client):
        """Test that RetrievalEngine initializes correctly."""
        assert retrieval_engine.store is store
        assert retrieval_engine.embedding_model is embedder
        assert retrieval_engine.llm_client is mock_llm_client
        assert retrieval_engine.search_limit == 10

    def test_retrieve_empty_question(self, retrieval_engine, context):
        """Test that an empty question is rejected."""
        with pytest.raises(ValueError, match="Question cannot be empty"):
            retrieval_engine.retrieve("   ", None, context)

    def test_retrieve_without_documents(self, store, context):
        """Test that an empty store yields no relevant content without embedding the question."""
        embedding_model = Mock()
        engine = RetrievalEngine(store, embedding_model)

        result = engine.retrieve("What is the invoice total?", None, context)

        assert result.no_relevant_content
        assert result.passages == []
        embedding_model.embed_text.assert_not_called()

    def test_invoice_ranks_first(self, store, retrieval_engine, context):
        """Test that the document containing the answer ranks first with both signals."""
        ids = add_documents(store, ["Invoice", "Hiking", "Recipe"])

        result = retrieval_engine.retrieve("What is the invoice total?", None, context)

        assert not result.no_relevant_content
        assert result.stage == SearchStage.STANDARD
        top = result.passages[0]
        assert top.document_id == ids["Invoice"]
        assert top.embedding_score > 0
        assert top.term_score > 0
        assert "invoice" in top.matched_terms
        assert "total" in top.matched_terms

    def test_context_updated_after_success(self, corpus, retrieval_engine, context):
        """Test that a successful retrieval records embedding, relevance, terms and passages."""
        result = retrieval_engine.retrieve("Tell me about the hiking trail", None, context)

        assert context.previous_embedding is not None
        assert [(r.document_id, r.relevance_score) for r in context.relevant_documents] == [(corpus["Hiking"], 1.0)]
        assert "hiking" in context.previous_terms
        assert context.last_passages == result.passages
        assert context.document_scope is None

    def test_contextual_boost_for_follow_up(self, corpus, retrieval_engine, context):
        """Test that a similar follow-up boosts chunks from the previously relevant document."""
        retrieval_engine.retrieve("Tell me about the hiking trail", None, context)

        result = retrieval_engine.retrieve("Where does the hiking trail go?", None, context)

        assert result.is_contextual
        assert result.stage == SearchStage.CONTEXTUAL
        assert any(p.boosted_for_context and p.document_id == corpus["Hiking"] for p in result.passages)
        assert result.term_overlap > 0
        assert result.is_follow_up

    def test_unrelated_follow_up_is_not_contextual(self, corpus, retrieval_engine, context):
        """Test that a topic change runs the standard search without boosts."""
        retrieval_engine.retrieve("Tell me about the hiking trail", None, context)

        result = retrieval_engine.retrieve("What is the invoice total?", None, context)

        assert not result.is_contextual
        assert result.stage == SearchStage.STANDARD
        assert not any(p.boosted_for_context for p in result.passages)
        assert context.relevant_documents[0].document_id == corpus["Invoice"]

    def test_scope_change_ignores_previous_context(self, corpus, retrieval_engine, context):
        """Test that changing the document scope starts from a fresh context."""
        retrieval_engine.retrieve("Tell me about the hiking trail", None, context)

        scope = [corpus["Hiking"], corpus["Recipe"]]
        result = retrieval_engine.retrieve("Where does the hiking trail go?", scope, context)

        assert not result.is_contextual
        assert result.term_overlap == 0.0
        assert context.document_scope == frozenset(scope)

    def test_scope_limits_results(self, corpus, retrieval_engine, context):
        """Test that only documents in scope are searched."""
        result = retrieval_engine.retrieve("What is the invoice total?", [corpus["Recipe"]], context)

        assert result.no_relevant_content
        assert all(p.document_id == corpus["Recipe"] for p in result.passages)

    def test_term_expansion_fallback(self, corpus, retrieval_engine, mock_llm_client, context):
        """Test that related terms rescue a question with no direct matches."""
        mock_llm_client.find_related_terms.return_value = ["vacation", "leave"]
        history = [{"role": "user", "content": "Hi"}]

        result = retrieval_engine.retrieve("How much PTO do I get?", None, context, history)

        assert result.used_fallback
        assert result.stage == SearchStage.TERM_EXPANSION
        assert result.related_terms == ["vacation", "leave"]
        assert result.passages[0].document_id == corpus["Leave Policy"]
        args = mock_llm_client.find_related_terms.call_args[0]
        assert args[0] == "How much PTO do I get?"
        assert "pto" in args[1]
        assert args[2] == history
        # The context keeps the original question's embedding
        assert not np.any(context.previous_embedding)

    def test_term_expansion_without_results(self, corpus, retrieval_engine, mock_llm_client, context):
        """Test that used_fallback stays False when the expanded query finds nothing."""
        mock_llm_client.find_related_terms.return_value = ["zebra", "giraffe"]

        result = retrieval_engine.retrieve("How much PTO do I get?", None, context)

        assert result.no_relevant_content
        assert not result.used_fallback
        assert result.passages == []
        assert context.previous_embedding is None

    def test_no_fallback_without_llm_client(self, corpus, store, embedder, context):
        """Test that the fallback stage is skipped when no language model is configured."""
        engine = RetrievalEngine(store, embedder)

        result = engine.retrieve("How much PTO do I get?", None, context)

        assert result.no_relevant_content
        assert not result.used_fallback

    def test_fallback_not_used_when_standard_search_succeeds(
        self, corpus, retrieval_engine, mock_llm_client, context
    ):
        """Test that related terms are only requested when earlier stages find nothing."""
        result = retrieval_engine.retrieve("What is the invoice total?", None, context)

        assert not result.used_fallback
        mock_llm_client.find_related_terms.assert_not_called()

    def test_embedding_failure_leaves_context_unchanged(self, corpus, store, embedder, context):
        """Test that a collaborator failure propagates and the context is untouched."""
        embedding_model = Mock(wraps=embedder)
        engine = RetrievalEngine(store, embedding_model)
        engine.retrieve("Tell me about the hiking trail", None, context)
        previous_passages = list(context.last_passages)
        previous_terms = list(context.previous_terms)

        embedding_model.embed_text.side_effect = EmbeddingError("UNAVAILABLE", "Embedding service down")

        with pytest.raises(EmbeddingError):
            engine.retrieve("What is the invoice total?", None, context)

        assert context.last_passages == previous_passages
        assert context.previous_terms == previous_terms
        assert context.relevant_documents[0].document_id == corpus["Hiking"]

    def test_llm_failure_during_fallback(self, corpus, retrieval_engine, mock_llm_client, context):
        """Test that a language model failure in the fallback propagates."""
        mock_llm_client.find_related_terms.side_effect = LLMClientError("API_ERROR", "Groq API error")

        with pytest.raises(LLMClientError):
            retrieval_engine.retrieve("How much PTO do I get?", None, context)

        assert context.previous_embedding is None

    def test_vector_failure_degrades_to_term_results(self, corpus, retrieval_engine, context):
        """Test that a failing vector search still returns lexical matches."""
        with patch.object(retrieval_engine.vector_search, "find_similar", side_effect=RuntimeError("index down")):
            result = retrieval_engine.retrieve("What is the invoice total?", None, context)

        assert result.passages[0].document_id == corpus["Invoice"]
        assert result.passages[0].embedding_score == 0.0
        assert result.passages[0].term_score > 0

    def test_term_failure_degrades_to_vector_results(self, corpus, retrieval_engine, context):
        """Test that a failing lexical search still returns vector matches."""
        with patch.object(retrieval_engine.term_search, "search", side_effect=RuntimeError("regex error")):
            result = retrieval_engine.retrieve("What is the invoice total?", None, context)

        assert result.passages[0].document_id == corpus["Invoice"]
        assert result.passages[0].term_score == 0.0
        assert result.passages[0].embedding_score > 0

    def test_both_searches_failing(self, corpus, retrieval_engine, context):
        """Test that SearchFailedError is raised when neither signal is available."""
        with patch.object(retrieval_engine.vector_search, "find_similar", side_effect=RuntimeError("index down")), \
                patch.object(retrieval_engine.term_search, "search", side_effect=RuntimeError("regex error")):
            with pytest.raises(SearchFailedError):
                retrieval_engine.retrieve("What is the invoice total?", None, context)

        assert context.previous_embedding is None

    def test_cancelled_before_start(self, corpus, retrieval_engine, context):
        """Test that a cancelled retrieval raises and leaves the context unchanged."""
        cancel_event = threading.Event()
        cancel_event.set()

        with pytest.raises(RetrievalCancelledError):
            retrieval_engine.retrieve("What is the invoice total?", None, context, cancel_event=cancel_event)

        assert context.previous_embedding is None

    def test_cancelled_during_search(self, corpus, store, embedder, context):
        """Test that cancelling while a stage runs aborts the searches."""
        cancel_event = threading.Event()
        observer = Mock(spec=RetrievalObserver)
        observer.stage_started.side_effect = lambda stage: cancel_event.set()
        engine = RetrievalEngine(store, embedder, observer=observer)

        with pytest.raises(RetrievalCancelledError):
            engine.retrieve("What is the invoice total?", None, context, cancel_event=cancel_event)

        assert context.last_passages == []

    def test_observer_receives_stage_events(self, corpus, store, embedder, context):
        """Test that stage progress is reported to the observer."""
        observer = Mock(spec=RetrievalObserver)
        engine = RetrievalEngine(store, embedder, observer=observer)

        result = engine.retrieve("What is the invoice total?", None, context)

        observer.stage_started.assert_called_once_with(SearchStage.STANDARD)
        observer.stage_finished.assert_called_once_with(SearchStage.STANDARD, len(result.passages))

    def test_large_result_set_is_reduced(self, store, embedder, context):
        """Test that more than five passages are capped at three per document."""
        chunks_a = [
            Chunk(chunk_id="", document_id="", index=i, text=f"Invoice {i}: the invoice total is {i}00 dollars.")
            for i in range(6)
        ]
        chunks_b = [
            Chunk(chunk_id="", document_id="", index=i, text=f"Payment {i} settles the invoice total.")
            for i in range(2)
        ]
        store.store_document(make_document("Invoices A"), chunks_a)
        store.store_document(make_document("Invoices B"), chunks_b)
        engine = RetrievalEngine(store, embedder)

        result = engine.retrieve("What is the invoice total?", None, context)

        per_document = Counter(p.document_id for p in result.passages)
        assert len(result.passages) <= 8
        assert max(per_document.values()) <= 3
        assert len(per_document) == 2

    def test_term_expansion_results_are_reduced(self, store, embedder, mock_llm_client, context):
        """Test that passages found through related terms get the same per-document cap."""
        chunks = [
            Chunk(chunk_id="", document_id="", index=i, text=f"Cake layer {i}: the cake needs flour.")
            for i in range(8)
        ]
        store.store_document(make_document("Baking"), chunks)
        engine = RetrievalEngine(store, embedder, mock_llm_client)
        mock_llm_client.find_related_terms.return_value = ["cake"]

        result = engine.retrieve("How do I bake a gateau?", None, context)

        assert result.stage == SearchStage.TERM_EXPANSION
        assert result.used_fallback
        assert len(result.passages) == 3

    def test_context_lock_held_during_retrieval(self, corpus, store, embedder, context):
        """Test that retrievals on one context are serialized by its lock."""
        lock_states = []

        def embed(text):
            lock_states.append(context.lock.locked())
            return embedder.embed_text(text)

        embedding_model = Mock()
        embedding_model.embed_text.side_effect = embed
        engine = RetrievalEngine(store, embedding_model)

        engine.retrieve("What is the invoice total?", None, context)

        assert lock_states == [True]
        assert not context.lock.locked()

    def test_deterministic_ordering(self, corpus, retrieval_engine):
        """Test that identical inputs produce identical rankings."""
        first = retrieval_engine.retrieve("trail river mountain invoice", None, QueryContext())
        second = retrieval_engine.retrieve("trail river mountain invoice", None, QueryContext())

        assert [(p.chunk_id, p.merged_score) for p in first.passages] == \
            [(p.chunk_id, p.merged_score) for p in second.passages]

    def test_queued_retrievals_update_context_in_arrival_order(self, corpus, retrieval_engine, context):
        """Test that the latest question's context update is the one that remains."""
        context.lock.acquire()
        threads = []
        for i, question in enumerate(["What is the invoice total?", "Where does the hiking trail go?"]):
            thread = threading.Thread(target=retrieval_engine.retrieve, args=(question, None, context), daemon=True)
            thread.start()
            threads.append(thread)
            deadline = time.monotonic() + 5
            while context.lock.waiting < i + 2:
                assert time.monotonic() < deadline
                time.sleep(0.01)
        context.lock.release()

        for thread in threads:
            thread.join(timeout=5)

        assert "hiking" in context.previous_terms
        assert context.last_passages[0].document_id == corpus["Hiking"]

    def test_chunk_document_passthrough(self, retrieval_engine):
        """Test that chunk_document delegates to the chunking engine."""
        chunks = retrieval_engine.chunk_document("A short document. It has two sentences.", "doc_x")
        assert [c.chunk_id for c in chunks] == ["doc_x_0"]

        with pytest.raises(EmptyDocumentError):
            retrieval_engine.chunk_document("   ")
