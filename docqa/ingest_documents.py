"""
Document ingestion script for DocQA.

This script:
1. Optionally clears existing data from Supabase
2. Loads every supported file (.txt, .md, .html, .pdf, .csv) from a directory
3. Chunks each document
4. Generates embeddings using HuggingFace API
5. Stores documents and chunks in Supabase

Usage:
    python -m docqa.ingest_documents <directory> [--clear]
"""
import argparse
import logging
import sys

from docqa.config import HUGGINGFACE_API_KEY, SUPABASE_URL, SUPABASE_KEY
from docqa.errors import DocQAError
from docqa.services.chunking_engine import ChunkingEngine
from docqa.services.document_loader import DocumentLoader
from docqa.services.embedding_model import EmbeddingModel
from docqa.services.vector_store import VectorStore

logger = logging.getLogger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Ingest a directory of documents into Supabase")
    parser.add_argument("directory", help="Directory containing documents to ingest")
    parser.add_argument("--clear", action="store_true", help="Delete all stored documents first")
    return parser.parse_args(argv)


def clear_existing_data(vector_store: VectorStore) -> None:
    logger.info("Clearing existing data from database...")
    count_before = vector_store.count()
    logger.info(f"Found {count_before} existing chunks")

    if count_before > 0:
        vector_store.clear()
        logger.info(f"Cleared {count_before - vector_store.count()} chunks")
    else:
        logger.info("No existing data to clear")


def ingest_directory(
    directory: str,
    vector_store: VectorStore,
    document_loader: DocumentLoader,
    chunking_engine: ChunkingEngine
) -> int:
    """
    Load, chunk and store every document in a directory.

    Returns:
        Number of documents stored
    """
    documents = document_loader.load_directory(directory)
    stored = 0

    for metadata, text in documents:
        logger.info(f"Processing {metadata.filename}...")
        try:
            chunks = chunking_engine.chunk_document(text)
            document_id = vector_store.store_document(metadata, chunks)
        except DocQAError as e:
            logger.error(f"  Skipping {metadata.filename}: {e}")
            continue
        stored += 1
        logger.info(f"  Stored {document_id} with {len(chunks)} chunks")

    return stored


def main(argv=None):
    """Main ingestion process."""
    args = parse_args(argv)

    try:
        logger.info("=" * 60)
        logger.info("Starting DocQA Document Ingestion")
        logger.info("=" * 60)

        embedding_model = EmbeddingModel(api_key=HUGGINGFACE_API_KEY)
        vector_store = VectorStore(
            embedding_model=embedding_model,
            supabase_url=SUPABASE_URL,
            supabase_key=SUPABASE_KEY
        )

        if args.clear:
            clear_existing_data(vector_store)

        logger.info("Warming up embedding model...")
        embedding_model.warmup()

        stored = ingest_directory(args.directory, vector_store, DocumentLoader(), ChunkingEngine())
        if stored == 0:
            logger.error(f"No documents ingested from {args.directory}")
            sys.exit(1)

        logger.info("=" * 60)
        logger.info("INGESTION COMPLETE!")
        logger.info(f"Documents stored: {stored}")
        logger.info(f"Chunks in database: {vector_store.count()}")
        logger.info("=" * 60)

    except KeyboardInterrupt:
        logger.warning("\nIngestion interrupted by user")
        sys.exit(1)
    except Exception as e:
        logger.error(f"\nIngestion failed: {str(e)}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
