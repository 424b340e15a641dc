"""Document store implementation backed by Supabase (PostgreSQL + pgvector)."""
import json
import logging
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional

import numpy as np
from supabase import create_client, Client

from docqa.config import SUPABASE_URL, SUPABASE_KEY
from docqa.errors import DocumentNotFoundError
from docqa.models.chunk import Chunk, ScoredChunk
from docqa.models.document import Document
from docqa.services.document_store import (
    EXPORT_FORMAT_VERSION,
    chunk_from_export,
    chunk_to_export,
    embed_chunks,
    new_document_id,
    utc_now_iso,
    validate_export,
)
from docqa.services.embedding_model import EmbeddingModel
from docqa.services.vector_search import VectorSearch

logger = logging.getLogger(__name__)


class VectorStore:
    """Store documents and chunk embeddings in Supabase tables."""

    def __init__(
        self,
        embedding_model: EmbeddingModel,
        supabase_url: str = SUPABASE_URL,
        supabase_key: str = SUPABASE_KEY,
        documents_table: str = "documents",
        chunks_table: str = "document_chunks",
        vector_search: Optional[VectorSearch] = None
    ):
        """
        Initialize the vector store with Supabase client.

        Args:
            embedding_model: EmbeddingModel instance for generating embeddings
            supabase_url: Supabase project URL
            supabase_key: Supabase API key
            documents_table: Table holding document metadata
            chunks_table: Table holding chunk text and embeddings
            vector_search: Similarity engine used for scoped search

        Raises:
            ValueError: If Supabase credentials are missing
        """
        if not supabase_url or not supabase_key:
            raise ValueError("SUPABASE_URL and SUPABASE_KEY environment variables are required")

        self.embedding_model = embedding_model
        self.documents_table = documents_table
        self.chunks_table = chunks_table
        self.vector_search = vector_search or VectorSearch()

        self.client: Client = create_client(supabase_url, supabase_key)

        logger.info(f"Initialized VectorStore with tables: {documents_table}, {chunks_table}")

    def store_document(self, document: Document, chunks: List[Chunk]) -> str:
        """
        Store a document and its chunks, embedding chunks in batches.

        Args:
            document: Document metadata
            chunks: Chunks produced by the chunking engine

        Returns:
            ID of the stored document

        Raises:
            ValueError: If chunks list is empty
            RuntimeError: If database operation fails
        """
        if not chunks:
            raise ValueError("Chunks list cannot be empty")

        document_id = document.document_id or new_document_id()
        logger.info(f"Adding document {document_id} with {len(chunks)} chunks to vector store...")

        embedded = embed_chunks(self.embedding_model, chunks)

        try:
            document_record = replace(document, document_id=document_id, chunk_count=len(chunks)).to_dict()
            self.client.table(self.documents_table).upsert(document_record).execute()

            records = []
            for chunk in embedded:
                record = chunk_to_export(chunk)
                record["chunk_id"] = f"{document_id}_{chunk.index}"
                record["document_id"] = document_id
                record["chunk_index"] = record.pop("index")
                records.append(record)

            # Use upsert to handle duplicate chunk_ids
            self.client.table(self.chunks_table).upsert(records).execute()

            logger.info(f"Successfully stored document {document_id}")
            return document_id

        except Exception as e:
            error_msg = f"Failed to store document in vector store: {str(e)}"
            logger.error(error_msg)
            raise RuntimeError(error_msg)

    def get_document(self, document_id: str) -> Optional[Document]:
        try:
            response = self.client.table(self.documents_table).select("*").eq("document_id", document_id).execute()
        except Exception as e:
            error_msg = f"Failed to load document {document_id}: {str(e)}"
            logger.error(error_msg)
            raise RuntimeError(error_msg)

        if not response.data:
            return None
        return self._row_to_document(response.data[0])

    def get_all_documents(self) -> List[Document]:
        try:
            response = self.client.table(self.documents_table).select("*").execute()
        except Exception as e:
            error_msg = f"Failed to list documents: {str(e)}"
            logger.error(error_msg)
            raise RuntimeError(error_msg)

        return [self._row_to_document(row) for row in response.data]

    def get_all_chunks(self, document_id: str) -> List[Chunk]:
        """
        Load every chunk of a document, ordered by chunk index.

        Raises:
            RuntimeError: If database operation fails
        """
        try:
            response = (
                self.client.table(self.chunks_table)
                .select("*")
                .eq("document_id", document_id)
                .order("chunk_index")
                .execute()
            )
        except Exception as e:
            error_msg = f"Failed to load chunks for document {document_id}: {str(e)}"
            logger.error(error_msg)
            raise RuntimeError(error_msg)

        document = self.get_document(document_id)
        title = document.title if document else None
        return [self._row_to_chunk(row, title) for row in response.data]

    def find_similar_chunks(
        self,
        query_embedding,
        limit: int = 5,
        document_ids: Optional[Iterable[str]] = None
    ) -> List[ScoredChunk]:
        """
        Find chunks most similar to the query within the given documents.

        Args:
            query_embedding: Embedding vector for user query
            limit: Number of chunks to retrieve
            document_ids: Document scope; None searches every stored document

        Returns:
            ScoredChunks ranked by cosine similarity with per-document fairness
        """
        ids = list(document_ids) if document_ids is not None else [d.document_id for d in self.get_all_documents()]
        chunks = [chunk for doc_id in ids for chunk in self.get_all_chunks(doc_id)]
        return self.vector_search.find_similar(query_embedding, chunks, limit, ids)

    def delete_document(self, document_id: str) -> bool:
        if self.get_document(document_id) is None:
            return False
        try:
            self.client.table(self.chunks_table).delete().eq("document_id", document_id).execute()
            self.client.table(self.documents_table).delete().eq("document_id", document_id).execute()
            logger.info(f"Deleted document {document_id}")
            return True
        except Exception as e:
            error_msg = f"Failed to delete document {document_id}: {str(e)}"
            logger.error(error_msg)
            raise RuntimeError(error_msg)

    def export_document(self, document_id: str) -> Dict[str, Any]:
        document = self.get_document(document_id)
        if document is None:
            raise DocumentNotFoundError(f"Document not found: {document_id}")

        metadata = document.to_dict()
        metadata.pop("document_id")
        return {
            "version": EXPORT_FORMAT_VERSION,
            "exported_at": utc_now_iso(),
            "metadata": metadata,
            "chunks": [chunk_to_export(c) for c in self.get_all_chunks(document_id)],
        }

    def import_document(self, export_data: Dict[str, Any]) -> str:
        validate_export(export_data)

        metadata = export_data["metadata"]
        document_id = new_document_id()
        document = Document(
            document_id=document_id,
            title=metadata.get("title") or metadata.get("filename") or document_id,
            word_count=int(metadata.get("word_count", 0)),
            file_type=metadata.get("file_type", "text/plain"),
            date_processed=utc_now_iso(),
            filename=metadata.get("filename", ""),
            file_size=int(metadata.get("file_size", 0)),
            imported=True
        )
        chunks = [chunk_from_export(c, document_id, document.title) for c in export_data["chunks"]]
        return self.store_document(document, chunks)

    def get_stats(self) -> Dict[str, int]:
        try:
            documents = self.client.table(self.documents_table).select("document_id", count="exact").execute()
        except Exception as e:
            error_msg = f"Failed to count documents in vector store: {str(e)}"
            logger.error(error_msg)
            raise RuntimeError(error_msg)
        return {
            "document_count": documents.count if documents.count is not None else 0,
            "chunk_count": self.count(),
        }

    def clear(self) -> None:
        """
        Clear all documents and chunks from the vector store.

        Useful for testing or reindexing.

        Raises:
            RuntimeError: If database operation fails
        """
        try:
            self.client.table(self.chunks_table).delete().neq("chunk_id", "").execute()
            self.client.table(self.documents_table).delete().neq("document_id", "").execute()
            logger.info("Cleared all documents from vector store")
        except Exception as e:
            error_msg = f"Failed to clear vector store: {str(e)}"
            logger.error(error_msg)
            raise RuntimeError(error_msg)

    def count(self) -> int:
        """
        Get the total number of chunks in the vector store.

        Raises:
            RuntimeError: If database operation fails
        """
        try:
            response = self.client.table(self.chunks_table).select("chunk_id", count="exact").execute()
            return response.count if response.count is not None else 0
        except Exception as e:
            error_msg = f"Failed to count chunks in vector store: {str(e)}"
            logger.error(error_msg)
            raise RuntimeError(error_msg)

    @staticmethod
    def _row_to_document(row: Dict[str, Any]) -> Document:
        return Document(
            document_id=row["document_id"],
            title=row["title"],
            word_count=row.get("word_count", 0),
            file_type=row.get("file_type", "text/plain"),
            date_processed=row.get("date_processed", ""),
            filename=row.get("filename", ""),
            file_size=row.get("file_size", 0),
            chunk_count=row.get("chunk_count", 0),
            imported=bool(row.get("imported", False))
        )

    @staticmethod
    def _row_to_chunk(row: Dict[str, Any], document_title: Optional[str]) -> Chunk:
        embedding = row.get("embedding")
        # pgvector columns come back as their text form, e.g. "[0.1,0.2]"
        if isinstance(embedding, str):
            embedding = json.loads(embedding)
        return Chunk(
            chunk_id=row["chunk_id"],
            document_id=row["document_id"],
            index=row["chunk_index"],
            text=row["text"],
            word_count=row.get("word_count", 0),
            section=row.get("section"),
            section_title=row.get("section_title"),
            embedding=None if embedding is None else np.asarray(embedding, dtype=float),
            document_title=document_title
        )
