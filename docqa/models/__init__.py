"""Data models for the DocQA service."""
from .document import Document
from .chunk import Chunk, ScoredChunk
from .conversation import Conversation, Turn, QueryContext, DocumentRelevance, TicketLock
from .api import (
    DocumentUploadRequest,
    DocumentResponse,
    QueryRequest,
    QueryResponse,
    Source,
    TokenUsage,
)

__all__ = [
    "Document",
    "Chunk",
    "ScoredChunk",
    "Conversation",
    "Turn",
    "QueryContext",
    "DocumentRelevance",
    "TicketLock",
    "DocumentUploadRequest",
    "DocumentResponse",
    "QueryRequest",
    "QueryResponse",
    "Source",
    "TokenUsage",
]
