"""Storage collaborator interface and an in-process document store."""
import logging
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Protocol

import numpy as np

from docqa.config import EMBEDDING_BATCH_SIZE
from docqa.errors import DocumentNotFoundError
from docqa.models.chunk import Chunk, ScoredChunk
from docqa.models.document import Document
from docqa.services.embedding_model import EmbeddingModel
from docqa.services.vector_search import VectorSearch

logger = logging.getLogger(__name__)

EXPORT_FORMAT_VERSION = 1


class DocumentStore(Protocol):
    """Interface the retrieval engine and the API use to reach stored documents.

    Chunks returned by a store always carry a populated embedding.
    """

    def store_document(self, document: Document, chunks: List[Chunk]) -> str:
        ...

    def get_document(self, document_id: str) -> Optional[Document]:
        ...

    def get_all_documents(self) -> List[Document]:
        ...

    def get_all_chunks(self, document_id: str) -> List[Chunk]:
        ...

    def find_similar_chunks(
        self,
        query_embedding,
        limit: int = 5,
        document_ids: Optional[Iterable[str]] = None
    ) -> List[ScoredChunk]:
        ...

    def delete_document(self, document_id: str) -> bool:
        ...

    def export_document(self, document_id: str) -> Dict[str, Any]:
        ...

    def import_document(self, export_data: Dict[str, Any]) -> str:
        ...

    def get_stats(self) -> Dict[str, int]:
        ...

    def clear(self) -> None:
        ...


def new_document_id() -> str:
    return f"doc_{uuid.uuid4().hex[:12]}"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def embed_chunks(
    embedding_model: Optional[EmbeddingModel],
    chunks: List[Chunk],
    batch_size: int = EMBEDDING_BATCH_SIZE
) -> List[Chunk]:
    """
    Attach embeddings to chunks that do not have one yet.

    Args:
        embedding_model: Embedding collaborator; required only when some chunk lacks an embedding
        chunks: Chunks to embed
        batch_size: Texts per embedding request

    Returns:
        New Chunk objects, all carrying an embedding

    Raises:
        ValueError: If embeddings are missing and no embedding model is configured
        EmbeddingError: If the embedding service fails
    """
    missing = [i for i, c in enumerate(chunks) if c.embedding is None]
    embedded = list(chunks)
    if not missing:
        return embedded

    if embedding_model is None:
        raise ValueError("Chunks without embeddings require an embedding model")

    logger.debug(f"Generating embeddings for {len(missing)} chunks...")
    for start in range(0, len(missing), batch_size):
        batch = missing[start:start + batch_size]
        vectors = embedding_model.embed_batch([chunks[i].text for i in batch])
        for i, vector in zip(batch, vectors):
            embedded[i] = replace(chunks[i], embedding=np.asarray(vector, dtype=float))

    return embedded


def chunk_to_export(chunk: Chunk) -> Dict[str, Any]:
    return {
        "index": chunk.index,
        "text": chunk.text,
        "word_count": chunk.word_count,
        "section": chunk.section,
        "section_title": chunk.section_title,
        "embedding": None if chunk.embedding is None else [float(x) for x in chunk.embedding],
    }


def chunk_from_export(data: Dict[str, Any], document_id: str, document_title: Optional[str]) -> Chunk:
    embedding = data.get("embedding")
    return Chunk(
        chunk_id=f"{document_id}_{data['index']}",
        document_id=document_id,
        index=int(data["index"]),
        text=data["text"],
        word_count=int(data.get("word_count") or len(data["text"].split())),
        section=data.get("section"),
        section_title=data.get("section_title"),
        embedding=None if embedding is None else np.asarray(embedding, dtype=float),
        document_title=document_title
    )


def validate_export(export_data: Dict[str, Any]) -> None:
    if (
        not isinstance(export_data, dict)
        or not isinstance(export_data.get("metadata"), dict)
        or not isinstance(export_data.get("chunks"), list)
    ):
        raise ValueError("Invalid import data format")


class InMemoryDocumentStore:
    """Keeps documents and embedded chunks for the lifetime of the process."""

    def __init__(
        self,
        embedding_model: Optional[EmbeddingModel] = None,
        vector_search: Optional[VectorSearch] = None
    ):
        """
        Args:
            embedding_model: Used to embed chunks stored without embeddings
            vector_search: Similarity engine behind find_similar_chunks
        """
        self.embedding_model = embedding_model
        self.vector_search = vector_search or VectorSearch()
        self._documents: Dict[str, Document] = {}
        self._chunks: Dict[str, List[Chunk]] = {}
        self._lock = threading.RLock()
        logger.info("Initialized InMemoryDocumentStore")

    def store_document(self, document: Document, chunks: List[Chunk]) -> str:
        """
        Store a document with its chunks, embedding any chunk that lacks a vector.

        Returns:
            ID of the stored document
        """
        if not chunks:
            raise ValueError("Chunks list cannot be empty")

        document_id = document.document_id or new_document_id()
        embedded = embed_chunks(self.embedding_model, chunks)

        stored_chunks = [
            replace(
                chunk,
                chunk_id=f"{document_id}_{chunk.index}",
                document_id=document_id,
                document_title=document.title
            )
            for chunk in embedded
        ]
        stored_document = replace(document, document_id=document_id, chunk_count=len(stored_chunks))

        with self._lock:
            self._documents[document_id] = stored_document
            self._chunks[document_id] = stored_chunks

        logger.info(f"Stored document {document_id} ({document.title}) with {len(stored_chunks)} chunks")
        return document_id

    def get_document(self, document_id: str) -> Optional[Document]:
        with self._lock:
            return self._documents.get(document_id)

    def get_all_documents(self) -> List[Document]:
        with self._lock:
            return list(self._documents.values())

    def get_all_chunks(self, document_id: str) -> List[Chunk]:
        with self._lock:
            return list(self._chunks.get(document_id, []))

    def find_similar_chunks(
        self,
        query_embedding,
        limit: int = 5,
        document_ids: Optional[Iterable[str]] = None
    ) -> List[ScoredChunk]:
        with self._lock:
            ids = list(document_ids) if document_ids is not None else list(self._chunks)
            candidates = [c for doc_id in ids for c in self._chunks.get(doc_id, [])]
        return self.vector_search.find_similar(query_embedding, candidates, limit, ids)

    def delete_document(self, document_id: str) -> bool:
        with self._lock:
            removed = self._documents.pop(document_id, None)
            self._chunks.pop(document_id, None)
        if removed:
            logger.info(f"Deleted document {document_id}")
        return removed is not None

    def export_document(self, document_id: str) -> Dict[str, Any]:
        """
        Export a document with all its chunks and embeddings.

        Raises:
            DocumentNotFoundError: If the document does not exist
        """
        with self._lock:
            document = self._documents.get(document_id)
            chunks = list(self._chunks.get(document_id, []))
        if document is None:
            raise DocumentNotFoundError(f"Document not found: {document_id}")

        metadata = document.to_dict()
        metadata.pop("document_id")
        return {
            "version": EXPORT_FORMAT_VERSION,
            "exported_at": utc_now_iso(),
            "metadata": metadata,
            "chunks": [chunk_to_export(c) for c in chunks],
        }

    def import_document(self, export_data: Dict[str, Any]) -> str:
        """
        Import a document with pre-calculated embeddings.

        Returns:
            ID of the imported document

        Raises:
            ValueError: If the export data is malformed
        """
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

        logger.info(f"Importing document '{document.title}' with {len(chunks)} chunks")
        return self.store_document(document, chunks)

    def get_stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "document_count": len(self._documents),
                "chunk_count": sum(len(c) for c in self._chunks.values()),
            }

    def clear(self) -> None:
        with self._lock:
            self._documents.clear()
            self._chunks.clear()
        logger.info("Cleared all documents from the in-memory store")
