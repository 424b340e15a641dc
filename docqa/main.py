"""Main entry point for the DocQA hybrid retrieval API."""
import logging
import time
from typing import Any, Dict, List

from fastapi import FastAPI, HTTPException
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware

from docqa import __version__
from docqa.config import CORS_ORIGINS, LOG_FORMAT, LOG_LEVEL, PORT, STORAGE_BACKEND
from docqa.errors import CollaboratorUnavailableError, DocumentNotFoundError, EmptyDocumentError
from docqa.logger import setup_logging
from docqa.models.api import (
    DocumentResponse,
    DocumentUploadRequest,
    QueryRequest,
    QueryResponse,
    Source,
    TokenUsage,
)
from docqa.models.chunk import ScoredChunk
from docqa.models.document import Document
from docqa.services.conversation_manager import ConversationManager
from docqa.services.document_loader import DocumentLoader
from docqa.services.document_store import DocumentStore, InMemoryDocumentStore
from docqa.services.embedding_model import EmbeddingModel
from docqa.services.llm_client import LLMClient
from docqa.services.retrieval_engine import RetrievalEngine
from docqa.services.vector_store import VectorStore

if LOG_FORMAT == "json":
    setup_logging(LOG_LEVEL)

logger = logging.getLogger(__name__)

NO_RELEVANT_CONTENT_ANSWER = (
    "I couldn't find any relevant information about that in the selected documents. "
    "Try rephrasing the question or selecting different documents."
)

app = FastAPI(
    title="DocQA",
    description="Question answering over uploaded documents with hybrid retrieval",
    version=__version__
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Initialize services (will be done on startup)
document_store: DocumentStore = None
retrieval_engine: RetrievalEngine = None
llm_client: LLMClient = None
conversation_manager: ConversationManager = None


@app.on_event("startup")
async def startup_event():
    """Initialize services on startup."""
    global document_store, retrieval_engine, llm_client, conversation_manager

    logger.info(f"Initializing DocQA services (storage backend: {STORAGE_BACKEND})...")

    try:
        embedding_model = EmbeddingModel()

        if STORAGE_BACKEND == "supabase":
            document_store = VectorStore(embedding_model)
        else:
            document_store = InMemoryDocumentStore(embedding_model)
        logger.info(f"Initialized {type(document_store).__name__}")

        llm_client = LLMClient()
        retrieval_engine = RetrievalEngine(document_store, embedding_model, llm_client)
        conversation_manager = ConversationManager()

        logger.info("All services initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize services: {e}", exc_info=True)
        raise


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "message": "DocQA API"}


@app.get("/health")
async def health():
    """Detailed health check."""
    return {
        "status": "healthy",
        "service": "docqa",
        "version": __version__,
        "storage_backend": STORAGE_BACKEND
    }


def _document_response(document: Document) -> DocumentResponse:
    return DocumentResponse(
        document_id=document.document_id,
        title=document.title,
        word_count=document.word_count,
        file_type=document.file_type,
        date_processed=document.date_processed,
        chunk_count=document.chunk_count,
        imported=document.imported
    )


def _source(citation: int, passage: ScoredChunk) -> Source:
    return Source(
        citation=citation,
        document_id=passage.document_id,
        document_title=passage.chunk.document_title,
        chunk_index=passage.chunk.index,
        text=passage.text,
        merged_score=passage.merged_score,
        embedding_score=passage.embedding_score,
        term_score=passage.term_score,
        matched_terms=passage.matched_terms,
        boosted_for_context=passage.boosted_for_context
    )


def _collaborator_error(e: CollaboratorUnavailableError) -> HTTPException:
    logger.error(f"{e.error.collaborator} collaborator error: {e.error.message}")
    return HTTPException(
        status_code=503,
        detail={
            "error": {
                "collaborator": e.error.collaborator,
                "code": e.error.code,
                "message": e.error.message,
                "details": e.error.details
            }
        }
    )


def _ingest(request: DocumentUploadRequest) -> Document:
    metadata = DocumentLoader.extract_metadata(request.text, request.filename, request.file_type)
    chunks = retrieval_engine.chunk_document(request.text)
    document_id = document_store.store_document(metadata, chunks)
    return document_store.get_document(document_id)


@app.post("/documents", response_model=DocumentResponse)
async def upload_document(request: DocumentUploadRequest) -> DocumentResponse:
    """Chunk, embed and store a document's text."""
    try:
        document = await run_in_threadpool(_ingest, request)
    except (EmptyDocumentError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except CollaboratorUnavailableError as e:
        raise _collaborator_error(e)

    logger.info(f"Uploaded document {document.document_id} ({document.chunk_count} chunks)")
    return _document_response(document)


@app.get("/documents", response_model=List[DocumentResponse])
async def list_documents() -> List[DocumentResponse]:
    documents = await run_in_threadpool(document_store.get_all_documents)
    return [_document_response(d) for d in documents]


@app.delete("/documents/{document_id}")
async def delete_document(document_id: str):
    deleted = await run_in_threadpool(document_store.delete_document, document_id)
    if not deleted:
        raise HTTPException(status_code=404, detail=f"Document not found: {document_id}")
    return {"status": "deleted", "document_id": document_id}


@app.get("/documents/{document_id}/export")
async def export_document(document_id: str) -> Dict[str, Any]:
    """Export a document with its chunks and pre-computed embeddings."""
    try:
        return await run_in_threadpool(document_store.export_document, document_id)
    except DocumentNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@app.post("/documents/import", response_model=DocumentResponse)
async def import_document(export_data: Dict[str, Any]) -> DocumentResponse:
    """Import a previously exported document without re-embedding it."""
    try:
        document_id = await run_in_threadpool(document_store.import_document, export_data)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except CollaboratorUnavailableError as e:
        raise _collaborator_error(e)

    return _document_response(document_store.get_document(document_id))


@app.post("/query", response_model=QueryResponse)
async def query_endpoint(request: QueryRequest) -> QueryResponse:
    """
    Answer a question from the stored documents.

    Retrieval runs the contextual, standard and term-expansion stages; the
    answer cites passages by their position in ``sources``.

    Args:
        request: QueryRequest with question, optional document scope and conversation_id

    Returns:
        QueryResponse with answer, sources, and conversation_id

    Raises:
        HTTPException: For validation errors or collaborator failures
    """
    start_time = time.time()

    try:
        if not request.question.strip():
            raise HTTPException(status_code=400, detail="Question field is required and cannot be empty")

        logger.info(f"Processing query: {request.question[:100]}...")

        conversation = conversation_manager.get_or_create_conversation(request.conversation_id)
        conversation_id = conversation.conversation_id
        history = conversation_manager.get_history(conversation_id)

        result = await run_in_threadpool(
            retrieval_engine.retrieve,
            request.question,
            request.document_ids,
            conversation.query_context,
            history
        )

        tokens = None
        if result.no_relevant_content:
            answer = NO_RELEVANT_CONTENT_ANSWER
        else:
            llm_response = await run_in_threadpool(
                llm_client.get_answer, request.question, result.passages, history
            )
            answer = llm_response.text
            tokens = TokenUsage(input=llm_response.tokens_input, output=llm_response.tokens_output)

        conversation_manager.add_turn(conversation_id, request.question, answer)

        total_latency_ms = int((time.time() - start_time) * 1000)
        response = QueryResponse(
            answer=answer,
            sources=[_source(i, p) for i, p in enumerate(result.passages, start=1)],
            conversation_id=conversation_id,
            used_fallback=result.used_fallback,
            no_relevant_content=result.no_relevant_content,
            tokens=tokens,
            latency_ms=total_latency_ms,
            metadata={
                "stage": result.stage.value if result.stage else None,
                "is_contextual": result.is_contextual,
                "is_follow_up": result.is_follow_up,
                "related_terms": result.related_terms,
                "chunks_retrieved": len(result.passages)
            }
        )

        logger.info(f"Query processed successfully in {total_latency_ms}ms")
        return response

    except HTTPException:
        raise
    except CollaboratorUnavailableError as e:
        raise _collaborator_error(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Unexpected error processing query: {e}", exc_info=True)
        raise HTTPException(
            status_code=500,
            detail=f"Internal server error: {str(e)}"
        )


@app.post("/conversations/{conversation_id}/clear")
async def clear_conversation(conversation_id: str):
    cleared = await run_in_threadpool(conversation_manager.clear_conversation, conversation_id)
    if not cleared:
        raise HTTPException(status_code=404, detail=f"Conversation not found: {conversation_id}")
    return {"status": "cleared", "conversation_id": conversation_id}


@app.get("/conversations/{conversation_id}/citations/{citation}", response_model=Source)
async def get_citation(conversation_id: str, citation: int) -> Source:
    """Resolve a citation marker like [2] from the conversation's latest answer."""
    conversation = conversation_manager.get_conversation(conversation_id)
    if conversation is None:
        raise HTTPException(status_code=404, detail=f"Conversation not found: {conversation_id}")

    passage = conversation.query_context.resolve_citation(citation)
    if passage is None:
        raise HTTPException(status_code=404, detail=f"Citation [{citation}] not found")
    return _source(citation, passage)


if __name__ == "__main__":
    import uvicorn
    logger.info(f"Starting DocQA API on port {PORT}")
    uvicorn.run(app, host="0.0.0.0", port=PORT)
