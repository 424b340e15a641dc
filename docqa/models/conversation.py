"""Conversation data models."""
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, FrozenSet, List, Optional

import numpy as np

from docqa.models.chunk import ScoredChunk


@dataclass
class Turn:
    """Represents a single turn in a conversation."""
    query: str
    response: str
    timestamp: datetime


@dataclass
class DocumentRelevance:
    """Fraction of a turn's passages that came from one document."""
    document_id: str
    relevance_score: float


class TicketLock:
    """Mutex that is granted to waiting threads in the order they asked for it."""

    def __init__(self):
        self._condition = threading.Condition()
        self._next_ticket = 0
        self._now_serving = 0

    def acquire(self) -> None:
        with self._condition:
            ticket = self._next_ticket
            self._next_ticket += 1
            while ticket != self._now_serving:
                self._condition.wait()

    def release(self) -> None:
        with self._condition:
            if self._now_serving == self._next_ticket:
                raise RuntimeError("release unlocked lock")
            self._now_serving += 1
            self._condition.notify_all()

    def locked(self) -> bool:
        with self._condition:
            return self._now_serving != self._next_ticket

    @property
    def waiting(self) -> int:
        """Number of threads holding or queued for the lock."""
        with self._condition:
            return self._next_ticket - self._now_serving

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()


@dataclass
class QueryContext:
    """Retrieval state carried from one question to the next.

    Only the retrieval engine mutates it, and only while holding ``lock``.
    Queued retrievals take the lock in arrival order, so the latest question
    always writes the context last.
    """
    previous_embedding: Optional[np.ndarray] = None
    relevant_documents: List[DocumentRelevance] = field(default_factory=list)
    previous_terms: List[str] = field(default_factory=list)
    last_passages: List[ScoredChunk] = field(default_factory=list)
    document_scope: Optional[FrozenSet[str]] = None
    lock: TicketLock = field(default_factory=TicketLock, repr=False, compare=False)

    def reset(self) -> None:
        """Forget everything learned from previous turns."""
        self.previous_embedding = None
        self.relevant_documents = []
        self.previous_terms = []
        self.last_passages = []
        self.document_scope = None

    def relevance_by_document(self) -> Dict[str, float]:
        return {r.document_id: r.relevance_score for r in self.relevant_documents}

    def resolve_citation(self, citation_index: int) -> Optional[ScoredChunk]:
        """Look up the passage behind a 1-based citation marker like ``[2]``."""
        if 1 <= citation_index <= len(self.last_passages):
            return self.last_passages[citation_index - 1]
        return None


@dataclass
class Conversation:
    """Represents a multi-turn conversation."""
    conversation_id: str
    turns: List[Turn]
    created_at: datetime
    query_context: QueryContext = field(default_factory=QueryContext)
