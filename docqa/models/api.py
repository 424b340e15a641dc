"""Request and response schemas for the HTTP API."""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class DocumentUploadRequest(BaseModel):
    """Raw document text submitted for chunking and indexing."""
    text: str = Field(..., min_length=1)
    filename: str = Field(..., min_length=1)
    file_type: str = "text/plain"


class DocumentResponse(BaseModel):
    document_id: str
    title: str
    word_count: int
    file_type: str
    date_processed: str
    chunk_count: int
    imported: bool = False


class QueryRequest(BaseModel):
    question: str = Field(..., min_length=1)
    document_ids: Optional[List[str]] = None  # None means every stored document
    conversation_id: Optional[str] = None


class TokenUsage(BaseModel):
    input: int
    output: int


class Source(BaseModel):
    """A passage handed to the language model, addressable by its citation index."""
    citation: int
    document_id: str
    document_title: Optional[str] = None
    chunk_index: int
    text: str
    merged_score: float
    embedding_score: Optional[float] = None
    term_score: Optional[float] = None
    matched_terms: List[str] = []
    boosted_for_context: bool = False


class QueryResponse(BaseModel):
    answer: str
    sources: List[Source]
    conversation_id: str
    used_fallback: bool = False
    no_relevant_content: bool = False
    tokens: Optional[TokenUsage] = None
    latency_ms: int = 0
    metadata: Dict[str, Any] = {}
