"""Document loading service: text extraction and metadata for supported file types."""
import csv
import io
import logging
import os
import re
from datetime import datetime, timezone
from typing import List, Optional, Tuple, Union

import fitz  # PyMuPDF

from docqa.errors import EmptyDocumentError
from docqa.models.document import Document
from docqa.services.chunking_engine import count_words

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = {
    ".txt": "text/plain",
    ".md": "text/markdown",
    ".html": "text/html",
    ".htm": "text/html",
    ".pdf": "application/pdf",
    ".csv": "text/csv",
}

HTML_TAG = re.compile(r'<[^>]+>')
MAX_TITLE_LENGTH = 100


class DocumentLoader:
    """Extracts plain text and metadata from uploaded or on-disk documents."""

    def __init__(self, docs_directory: Optional[str] = None):
        """
        Initialize DocumentLoader.

        Args:
            docs_directory: Directory scanned by load_directory
        """
        self.docs_directory = docs_directory

    @staticmethod
    def file_type_for(filename: str) -> str:
        extension = os.path.splitext(filename)[1].lower()
        if extension not in SUPPORTED_EXTENSIONS:
            raise ValueError(f"Unsupported file type: {extension or filename}")
        return SUPPORTED_EXTENSIONS[extension]

    def extract_text(self, source: Union[str, bytes], filename: str) -> str:
        """
        Extract text from a file path or raw bytes.

        Args:
            source: Path to the file, or its raw content
            filename: Original file name, used to pick the extractor

        Returns:
            Extracted text

        Raises:
            ValueError: If the file type is not supported
            EmptyDocumentError: If no text could be extracted
        """
        file_type = self.file_type_for(filename)

        if isinstance(source, str):
            with open(source, "rb") as f:
                content = f.read()
        else:
            content = source

        if file_type == "application/pdf":
            text = self._extract_pdf(content, filename)
        elif file_type == "text/csv":
            text = self._extract_csv(content.decode("utf-8", errors="replace"))
        else:
            text = content.decode("utf-8", errors="replace")

        if not text.strip():
            raise EmptyDocumentError(f"No text could be extracted from {filename}")
        return text

    @staticmethod
    def _extract_pdf(content: bytes, filename: str) -> str:
        try:
            pdf_document = fitz.open(stream=content, filetype="pdf")
        except Exception as e:
            logger.error(f"Failed to open PDF {filename}: {str(e)}")
            raise ValueError(f"Could not read PDF {filename}: {e}")

        try:
            pages = [page.get_text() for page in pdf_document]
        finally:
            pdf_document.close()

        logger.debug(f"Extracted {len(pages)} pages from {filename}")
        return "\n\n".join(p.strip() for p in pages if p.strip())

    @staticmethod
    def _extract_csv(content: str) -> str:
        """Flatten rows into paragraphs of ``column: value`` lines."""
        reader = csv.DictReader(io.StringIO(content))
        rows = []
        for row in reader:
            lines = [f"{key}: {value}" for key, value in row.items() if key and value]
            if lines:
                rows.append("\n".join(lines))
        return "\n\n".join(rows)

    @staticmethod
    def extract_metadata(text: str, filename: str, file_type: str, file_size: int = 0) -> Document:
        """
        Build document metadata. The title is the first short line that is not
        markup, falling back to the file name without extension.
        """
        title = os.path.splitext(os.path.basename(filename))[0]
        for line in text.splitlines():
            candidate = HTML_TAG.sub("", line).strip().lstrip("#").strip()
            if candidate and len(candidate) <= MAX_TITLE_LENGTH and not candidate.startswith(("<", "{", "[")):
                title = candidate
                break

        return Document(
            document_id="",
            title=title,
            word_count=count_words(text),
            file_type=file_type,
            date_processed=datetime.now(timezone.utc).isoformat(),
            filename=filename,
            file_size=file_size or len(text.encode("utf-8"))
        )

    def load_directory(self, directory: Optional[str] = None) -> List[Tuple[Document, str]]:
        """
        Load every supported file in a directory.

        Returns:
            (metadata, text) pairs; unreadable or empty files are skipped
        """
        directory = directory or self.docs_directory
        documents: List[Tuple[Document, str]] = []

        if not directory or not os.path.isdir(directory):
            logger.error(f"Documents directory not found: {directory}")
            return documents

        filenames = [
            f for f in sorted(os.listdir(directory))
            if os.path.splitext(f)[1].lower() in SUPPORTED_EXTENSIONS
        ]
        logger.info(f"Found {len(filenames)} supported files in {directory}")

        for filename in filenames:
            filepath = os.path.join(directory, filename)
            try:
                text = self.extract_text(filepath, filename)
            except (ValueError, EmptyDocumentError, OSError) as e:
                logger.error(f"Error loading {filename}: {str(e)}")
                # Skip unreadable file and continue
                continue

            metadata = self.extract_metadata(
                text, filename, self.file_type_for(filename), os.path.getsize(filepath)
            )
            documents.append((metadata, text))
            logger.info(f"Loaded {filename}: {metadata.word_count} words")

        logger.info(f"Successfully loaded {len(documents)} documents")
        return documents
