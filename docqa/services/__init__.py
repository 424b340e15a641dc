"""Services for DocQA."""
from .chunking_engine import ChunkingEngine
from .term_search import TermSearch
from .vector_search import VectorSearch
from .result_fusion import ResultFusion
from .retrieval_engine import RetrievalEngine, RetrievalObserver, RetrievalResult, SearchStage
from .document_loader import DocumentLoader
from .document_store import DocumentStore, InMemoryDocumentStore
from .vector_store import VectorStore
from .embedding_model import EmbeddingModel, EmbeddingError
from .llm_client import LLMClient, LLMResponse, LLMClientError
from .conversation_manager import ConversationManager

__all__ = [
    'ChunkingEngine', 'TermSearch', 'VectorSearch', 'ResultFusion',
    'RetrievalEngine', 'RetrievalObserver', 'RetrievalResult', 'SearchStage',
    'DocumentLoader', 'DocumentStore', 'InMemoryDocumentStore', 'VectorStore',
    'EmbeddingModel', 'EmbeddingError', 'LLMClient', 'LLMResponse', 'LLMClientError',
    'ConversationManager',
]
