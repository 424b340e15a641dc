"""Chunking engine that splits document text into overlapping word-budgeted passages."""
import logging
import math
import re
from typing import List, Optional, Tuple

from docqa.config import CHUNK_SIZE, CHUNK_OVERLAP, LARGE_DOCUMENT_CHARS
from docqa.errors import EmptyDocumentError
from docqa.models.chunk import Chunk

logger = logging.getLogger(__name__)

PARAGRAPH_BREAK = re.compile(r'\n[ \t]*\n')
SENTENCE_BOUNDARY = re.compile(r'([.!?])\s+')
EXCESS_NEWLINES = re.compile(r'\n{3,}')

# Heuristic markers for coarse sections in very large documents
SECTION_MARKERS = [
    re.compile(r'(?:CHAPTER|Chapter)\s+\w+.*?\n'),
    re.compile(r'(?:SECTION|Section)\s+\w+.*?\n'),
    re.compile(r'\n[A-Z][A-Z ]{8,}[A-Z]\n'),  # all-caps line, 10+ chars
    re.compile(r'\n={3,}\n'),
    re.compile(r'\n-{3,}\n'),
    re.compile(r'\n\*{3,}\n'),
]
HEADING_LINE = re.compile(r'^(?:(?:CHAPTER|Chapter|SECTION|Section)\s+\w+.*|[A-Z][A-Z ]{8,}[A-Z])$')
DIVIDER_LINE = re.compile(r'^(?:={3,}|-{3,}|\*{3,})$')

# (text, word_count, section, section_title)
ChunkPiece = Tuple[str, int, Optional[int], Optional[str]]


def count_words(text: str) -> int:
    return len(text.split())


class ChunkingEngine:
    """Segments document text into retrievable chunks."""

    def __init__(
        self,
        chunk_size: int = CHUNK_SIZE,
        chunk_overlap: int = CHUNK_OVERLAP,
        large_document_chars: int = LARGE_DOCUMENT_CHARS
    ):
        """
        Initialize ChunkingEngine.

        Args:
            chunk_size: Maximum chunk size in words
            chunk_overlap: Maximum number of words carried over from the previous
                chunk when packing sentences
            large_document_chars: Text length above which the document is first
                partitioned into coarse sections
        """
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if chunk_overlap < 0 or chunk_overlap >= chunk_size:
            raise ValueError("chunk_overlap must be non-negative and smaller than chunk_size")

        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.large_document_chars = large_document_chars

    def chunk_document(self, text: str, document_id: str = "") -> List[Chunk]:
        """
        Split document text into ordered chunks.

        Args:
            text: Extracted document text
            document_id: Owning document ID, used to build chunk IDs

        Returns:
            List of Chunk objects with contiguous indexes starting at 0

        Raises:
            EmptyDocumentError: If the text is empty or whitespace only
        """
        if not text or not text.strip():
            raise EmptyDocumentError("Document text is empty; nothing to chunk")

        if len(text) > self.large_document_chars:
            pieces = self._chunk_large_document(text)
        else:
            pieces = [(t, wc, None, None) for t, wc in self._chunk_text(text)]

        chunks = [
            Chunk(
                chunk_id=f"{document_id}_{idx}",
                document_id=document_id,
                index=idx,
                text=chunk_text,
                word_count=word_count,
                section=section,
                section_title=section_title
            )
            for idx, (chunk_text, word_count, section, section_title) in enumerate(pieces)
        ]

        logger.info(f"Created {len(chunks)} chunks from {len(text)} characters")
        return chunks

    def _chunk_text(self, text: str) -> List[Tuple[str, int]]:
        """Chunk a (section of) document by paragraphs, or by sentences when paragraphs are scarce."""
        clean_text = self._normalize(text)
        paragraphs = [p.strip() for p in PARAGRAPH_BREAK.split(clean_text) if p.strip()]

        if len(paragraphs) < 5:
            return self._pack_sentences(self._split_sentences(clean_text))

        return self._pack_paragraphs(paragraphs)

    @staticmethod
    def _normalize(text: str) -> str:
        text = text.replace('\r\n', '\n').replace('\r', '\n')
        return EXCESS_NEWLINES.sub('\n\n', text).strip()

    @staticmethod
    def _split_sentences(text: str) -> List[str]:
        marked = SENTENCE_BOUNDARY.sub(r'\1\n', text)
        return [s.strip() for s in marked.split('\n') if s.strip()]

    def _split_words(self, sentence: str) -> List[str]:
        """Hard-split a sentence longer than the budget into budget-sized word windows."""
        words = sentence.split()
        return [
            ' '.join(words[i:i + self.chunk_size])
            for i in range(0, len(words), self.chunk_size)
        ]

    def _pack_sentences(self, sentences: List[str]) -> List[Tuple[str, int]]:
        """
        Greedily pack sentences into chunks, seeding each new chunk with the
        tail of the previous one.

        Args:
            sentences: Sentences in document order

        Returns:
            List of (chunk text, word count) tuples
        """
        units: List[str] = []
        for sentence in sentences:
            if count_words(sentence) > self.chunk_size:
                units.extend(self._split_words(sentence))
            else:
                units.append(sentence)

        chunks: List[Tuple[str, int]] = []
        current: List[str] = []
        current_words = 0

        for sentence in units:
            word_count = count_words(sentence)

            if not current or current_words + word_count <= self.chunk_size:
                current.append(sentence)
                current_words += word_count
                continue

            chunks.append((' '.join(current), current_words))

            overlap = self._overlap_tail(current, self.chunk_size - word_count)
            current = overlap + [sentence]
            current_words = sum(count_words(s) for s in overlap) + word_count

        if current:
            chunks.append((' '.join(current), current_words))

        return chunks

    def _overlap_tail(self, sentences: List[str], room: int) -> List[str]:
        """Take up to the last 3 sentences, newest first, while they fit the overlap budget."""
        budget = min(self.chunk_overlap, room)
        tail: List[str] = []
        tail_words = 0

        for sentence in reversed(sentences[-3:]):
            word_count = count_words(sentence)
            if tail_words + word_count > budget:
                break
            tail.insert(0, sentence)
            tail_words += word_count

        return tail

    def _pack_paragraphs(self, paragraphs: List[str]) -> List[Tuple[str, int]]:
        """Greedily pack paragraphs; oversized paragraphs are re-split into sentences."""
        chunks: List[Tuple[str, int]] = []
        current: List[str] = []
        current_words = 0

        for paragraph in paragraphs:
            word_count = count_words(paragraph)

            if word_count > self.chunk_size:
                if current:
                    chunks.append(('\n\n'.join(current), current_words))
                    current = []
                    current_words = 0
                chunks.extend(self._pack_sentences(self._split_sentences(paragraph)))
            elif not current or current_words + word_count <= self.chunk_size:
                current.append(paragraph)
                current_words += word_count
            else:
                chunks.append(('\n\n'.join(current), current_words))
                current = [paragraph]
                current_words = word_count

        if current:
            chunks.append(('\n\n'.join(current), current_words))

        return chunks

    def _chunk_large_document(self, text: str) -> List[ChunkPiece]:
        """Partition a very large document into sections and chunk each one independently."""
        # Section markers and paragraph alignment expect "\n" line endings
        sections = self._find_sections(self._normalize(text))
        logger.info(f"Large document ({len(text)} chars) split into {len(sections)} sections")

        pieces: List[ChunkPiece] = []
        for section_idx, section in enumerate(sections):
            title = self._section_title(section, section_idx)
            for chunk_text, word_count in self._chunk_text(section):
                pieces.append((chunk_text, word_count, section_idx, title))

        return pieces

    def _find_sections(self, text: str) -> List[str]:
        """
        Find natural sections in a document.

        Falls back to 5-10 roughly equal splits, each ending at a paragraph
        break when one exists in its last 30%, when fewer than 3 natural
        sections are found.
        """
        break_points = {0, len(text)}
        for pattern in SECTION_MARKERS:
            for match in pattern.finditer(text):
                break_points.add(match.start())

        points = sorted(break_points)
        sections = [
            text[start:end]
            for start, end in zip(points, points[1:])
            if text[start:end].strip()
        ]
        if len(sections) >= 3:
            return sections

        target_sections = min(10, max(5, len(text) // 100_000))
        section_size = math.ceil(len(text) / target_sections)

        sections = []
        start = 0
        while start < len(text):
            piece = text[start:start + section_size]
            if start + section_size < len(text):
                cut = piece.rfind('\n\n')
                if cut > len(piece) * 0.7:
                    piece = piece[:cut]
            if piece.strip():
                sections.append(piece)
            start += len(piece)

        return sections

    @staticmethod
    def _section_title(section: str, section_idx: int) -> str:
        for line in section.split('\n'):
            line = line.strip()
            if not line or DIVIDER_LINE.match(line):
                continue
            if HEADING_LINE.match(line):
                return line[:120]
            break
        return f"Section {section_idx + 1}"
