"""Unit tests for ResultFusion."""
import pytest

from docqa.models.chunk import Chunk, ScoredChunk
from docqa.services.result_fusion import ResultFusion


def _scored(document_id, index, embedding_score=None, term_score=None, boosted=False):
    return ScoredChunk(
        chunk=Chunk(chunk_id=f"{document_id}_{index}", document_id=document_id, index=index, text="text"),
        embedding_score=embedding_score,
        term_score=term_score,
        boosted_for_context=boosted
    )


class TestResultFusion:
    """Test suite for ResultFusion class."""

    @pytest.fixture
    def fusion(self):
        return ResultFusion()

    def test_merged_score_formula(self):
        assert ResultFusion.merged_score(0.8, 4.0, True, False) == pytest.approx(0.4 + 1.0 + 0.15)
        assert ResultFusion.merged_score(0.8, 4.0, True, True) == pytest.approx(0.4 + 1.0 + 0.15 + 0.1)
        assert ResultFusion.merged_score(0.8, 0.0, False, False) == pytest.approx(0.4)

    def test_embedding_score_is_clamped(self):
        assert ResultFusion.merged_score(1.3, 0.0, False, True) == pytest.approx(0.5 + 0.1)
        assert ResultFusion.merged_score(-0.5, 2.0, False, False) == pytest.approx(0.5)

    def test_found_by_both_methods(self, fusion):
        embedding_results = [_scored("doc_a", 0, embedding_score=0.8), _scored("doc_b", 0, embedding_score=0.9)]
        term_results = [_scored("doc_a", 0, term_score=4.0)]

        merged = fusion.merge(embedding_results, term_results)

        by_id = {m.chunk_id: m for m in merged}
        assert by_id["doc_a_0"].merged_score == pytest.approx(0.4 + 1.0 + 0.15)
        assert by_id["doc_a_0"].embedding_score == 0.8
        assert by_id["doc_a_0"].term_score == 4.0
        assert by_id["doc_b_0"].merged_score == pytest.approx(0.45)
        assert by_id["doc_b_0"].term_score == 0.0
        assert [m.chunk_id for m in merged] == ["doc_a_0", "doc_b_0"]

    def test_term_only_result(self, fusion):
        merged = fusion.merge([], [_scored("doc_a", 0, term_score=2.0)])
        assert merged[0].embedding_score == 0.0
        assert merged[0].merged_score == pytest.approx(0.5)

    def test_inputs_are_not_mutated(self, fusion):
        embedding_results = [_scored("doc_a", 0, embedding_score=0.8)]
        fusion.merge(embedding_results, [])
        assert embedding_results[0].merged_score == 0.0

    def test_capped_at_max_results(self, fusion):
        embedding_results = [_scored(f"doc_{i}", 0, embedding_score=0.5 + i / 100) for i in range(12)]
        assert len(fusion.merge(embedding_results, [])) == 8

    def test_every_document_represented(self, fusion):
        """Test that a low-scoring document keeps its best chunk despite a dominant one."""
        embedding_results = [_scored("doc_a", i, embedding_score=0.95 - i / 100) for i in range(10)]
        embedding_results.append(_scored("doc_b", 0, embedding_score=0.1))

        merged = fusion.merge(embedding_results, [])

        assert len(merged) == 8
        assert "doc_b_0" in [m.chunk_id for m in merged]
        assert merged[-1].chunk_id == "doc_b_0"

    def test_contextual_document_order(self):
        """Test that prior relevance decides which documents get a slot when space is short."""
        fusion = ResultFusion(max_results=2)
        embedding_results = [
            _scored("doc_x", 0, embedding_score=0.9),
            _scored("doc_y", 0, embedding_score=0.8),
            _scored("doc_z", 0, embedding_score=0.3),
        ]

        plain = fusion.merge(embedding_results, [])
        contextual = fusion.merge(embedding_results, [], is_contextual=True, document_relevance={"doc_z": 1.0})

        assert [m.document_id for m in plain] == ["doc_x", "doc_y"]
        assert [m.document_id for m in contextual] == ["doc_x", "doc_z"]

    def test_context_boost_flag(self, fusion):
        merged = fusion.merge([_scored("doc_a", 0, embedding_score=0.6, boosted=True)], [])
        assert merged[0].boosted_for_context
        assert merged[0].merged_score == pytest.approx(0.3 + 0.1)

    def test_ties_break_deterministically(self, fusion):
        embedding_results = [
            _scored("doc_b", 1, embedding_score=0.5),
            _scored("doc_a", 2, embedding_score=0.5),
            _scored("doc_a", 1, embedding_score=0.5),
        ]

        merged = fusion.merge(embedding_results, [])

        assert [m.chunk_id for m in merged] == ["doc_a_1", "doc_a_2", "doc_b_1"]

    def test_reduce_large_result_set(self):
        results = [_scored("doc_a", i, embedding_score=0.9) for i in range(5)]
        results += [_scored("doc_b", i, embedding_score=0.5) for i in range(2)]
        for r in results:
            r.merged_score = r.embedding_score

        reduced = ResultFusion.reduce_large_result_set(results)

        assert [r.chunk_id for r in reduced] == ["doc_a_0", "doc_a_1", "doc_a_2", "doc_b_0", "doc_b_1"]
