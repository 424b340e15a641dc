"""Document data models."""
from dataclasses import dataclass, asdict
from typing import Any, Dict


@dataclass
class Document:
    """Metadata for a loaded document. Immutable once stored."""
    document_id: str
    title: str
    word_count: int
    file_type: str
    date_processed: str  # ISO-8601
    filename: str = ""
    file_size: int = 0
    chunk_count: int = 0
    imported: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
