"""Chunk data models."""
from dataclasses import dataclass, field
from typing import Optional, List
import numpy as np


@dataclass
class Chunk:
    """Represents a document chunk for retrieval."""
    chunk_id: str  # Format: "{document_id}_{chunk_index}"
    document_id: str
    index: int
    text: str
    word_count: int = 0
    section: Optional[int] = None
    section_title: Optional[str] = None
    embedding: Optional[np.ndarray] = None
    document_title: Optional[str] = None


@dataclass
class ScoredChunk:
    """Per-query projection of a chunk with the scores of every search signal.

    A score or rank is None when the corresponding search method did not
    surface the chunk.
    """
    chunk: Chunk
    embedding_score: Optional[float] = None
    term_score: Optional[float] = None
    embedding_rank: Optional[int] = None
    term_rank: Optional[int] = None
    merged_score: float = 0.0
    boosted_for_context: bool = False
    matched_terms: List[str] = field(default_factory=list)

    @property
    def chunk_id(self) -> str:
        return self.chunk.chunk_id

    @property
    def document_id(self) -> str:
        return self.chunk.document_id

    @property
    def text(self) -> str:
        return self.chunk.text
