"""Error types raised by the retrieval core and its collaborators."""
from dataclasses import dataclass, field
from typing import Any, Dict


class DocQAError(Exception):
    """Base class for all DocQA errors."""


class EmptyDocumentError(DocQAError):
    """Raised when a document has no text to chunk."""


@dataclass
class CollaboratorError:
    """Structured description of a failed call to an external collaborator."""
    collaborator: str  # "embedding" or "llm"
    code: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)


class CollaboratorUnavailableError(DocQAError):
    """An external collaborator (embedding model, language model) could not serve a request."""

    def __init__(self, error: CollaboratorError):
        self.error = error
        super().__init__(error.message)


class SearchFailedError(DocQAError):
    """Both the vector and the lexical search failed for a query."""


class RetrievalCancelledError(DocQAError):
    """The caller cancelled a retrieval before it completed."""


class DocumentNotFoundError(DocQAError):
    """The requested document does not exist in the store."""
