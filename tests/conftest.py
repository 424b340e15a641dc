"""Shared fixtures: a deterministic embedder and a small in-memory corpus."""
import re

import pytest

from docqa.models.document import Document
from docqa.services.chunking_engine import ChunkingEngine
from docqa.services.document_store import InMemoryDocumentStore

VOCABULARY = [
    "invoice", "total", "dollars", "payment",
    "hiking", "trail", "mountain", "river",
    "recipe", "flour", "cake",
    "vacation", "leave", "policy", "employees",
]

TOKEN = re.compile(r"\w+")

CORPUS = {
    "Invoice": "The invoice total is 450 dollars. Payment is due within thirty days.",
    "Hiking": "The hiking trail climbs the mountain ridge. The trail offers views of the river valley.",
    "Recipe": "The recipe needs flour, sugar and butter for the cake.",
    "Leave Policy": "Employees receive twenty days of vacation leave per year under the leave policy.",
}


class KeywordEmbedder:
    """Deterministic embedder with one dimension per vocabulary word.

    Texts without any vocabulary word embed to the zero vector, which is
    similar to nothing.
    """

    def __init__(self, vocabulary=VOCABULARY):
        self.vocabulary = list(vocabulary)
        self._index = {word: i for i, word in enumerate(self.vocabulary)}

    def embed_text(self, text):
        if not text or not text.strip():
            raise ValueError("Text cannot be empty")
        vector = [0.0] * len(self.vocabulary)
        for token in TOKEN.findall(text.lower()):
            idx = self._index.get(token)
            if idx is not None:
                vector[idx] += 1.0
        return vector

    def embed_batch(self, texts):
        return [self.embed_text(t) for t in texts]


def make_document(title, text="", file_type="text/plain"):
    return Document(
        document_id="",
        title=title,
        word_count=len(text.split()),
        file_type=file_type,
        date_processed="2024-01-01T00:00:00+00:00",
        filename=f"{title.lower().replace(' ', '_')}.txt"
    )


def add_documents(store, titles):
    """Chunk and store corpus documents, returning {title: document_id}."""
    chunker = ChunkingEngine()
    ids = {}
    for title in titles:
        text = CORPUS[title]
        ids[title] = store.store_document(make_document(title, text), chunker.chunk_document(text))
    return ids


@pytest.fixture
def embedder():
    return KeywordEmbedder()


@pytest.fixture
def store(embedder):
    return InMemoryDocumentStore(embedder)


@pytest.fixture
def corpus(store):
    return add_documents(store, CORPUS)
