"""Unit tests for the ingestion command."""
import pytest
from unittest.mock import Mock, patch

from docqa import ingest_documents
from docqa.errors import EmptyDocumentError
from docqa.services.chunking_engine import ChunkingEngine
from docqa.services.document_loader import DocumentLoader


@pytest.fixture
def docs_dir(tmp_path):
    (tmp_path / "invoice.txt").write_text("Invoice\n\nThe invoice total is 450 dollars.", encoding="utf-8")
    (tmp_path / "trail.md").write_text("# Trail\n\nThe hiking trail climbs the mountain.", encoding="utf-8")
    return tmp_path


class TestIngestDocuments:

    def test_parse_args(self):
        args = ingest_documents.parse_args(["docs", "--clear"])
        assert args.directory == "docs"
        assert args.clear is True

    def test_ingest_directory(self, docs_dir):
        vector_store = Mock()
        vector_store.store_document.side_effect = ["doc_1", "doc_2"]

        stored = ingest_documents.ingest_directory(str(docs_dir), vector_store, DocumentLoader(), ChunkingEngine())

        assert stored == 2
        titles = [call[0][0].title for call in vector_store.store_document.call_args_list]
        assert titles == ["Invoice", "Trail"]

    def test_ingest_directory_skips_failed_documents(self, docs_dir):
        vector_store = Mock()
        vector_store.store_document.side_effect = [EmptyDocumentError("empty"), "doc_2"]

        stored = ingest_documents.ingest_directory(str(docs_dir), vector_store, DocumentLoader(), ChunkingEngine())

        assert stored == 1

    def test_clear_existing_data(self):
        vector_store = Mock()
        vector_store.count.side_effect = [5, 0]

        ingest_documents.clear_existing_data(vector_store)

        vector_store.clear.assert_called_once()

    def test_clear_skipped_when_empty(self):
        vector_store = Mock()
        vector_store.count.return_value = 0

        ingest_documents.clear_existing_data(vector_store)

        vector_store.clear.assert_not_called()

    @patch('docqa.ingest_documents.VectorStore')
    @patch('docqa.ingest_documents.EmbeddingModel')
    def test_main_exits_when_nothing_ingested(self, mock_embedding_model, mock_vector_store, tmp_path):
        with pytest.raises(SystemExit) as exc_info:
            ingest_documents.main([str(tmp_path)])

        assert exc_info.value.code == 1
        mock_embedding_model.return_value.warmup.assert_called_once()

    @patch('docqa.ingest_documents.VectorStore')
    @patch('docqa.ingest_documents.EmbeddingModel')
    def test_main_success(self, mock_embedding_model, mock_vector_store, docs_dir):
        store = mock_vector_store.return_value
        store.store_document.return_value = "doc_1"
        store.count.return_value = 2

        ingest_documents.main([str(docs_dir), "--clear"])

        store.clear.assert_called_once()
        assert store.store_document.call_count == 2
