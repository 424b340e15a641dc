"""Lexical search: key-term extraction, variant expansion and term-overlap scoring."""
import logging
import math
import re
import threading
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence

from docqa.errors import RetrievalCancelledError
from docqa.models.chunk import Chunk, ScoredChunk

logger = logging.getLogger(__name__)

STOP_WORDS = frozenset([
    'a', 'an', 'the', 'and', 'or', 'but', 'in', 'on', 'at', 'to', 'for', 'with',
    'by', 'about', 'as', 'into', 'like', 'through', 'after', 'over', 'between',
    'out', 'against', 'during', 'without', 'before', 'under', 'around', 'among',
    'is', 'are', 'was', 'were', 'be', 'been', 'being', 'have', 'has', 'had',
    'do', 'does', 'did', 'can', 'could', 'will', 'would', 'shall', 'should',
    'may', 'might', 'must', 'of', 'from', 'then', 'than', 'so', 'that',
    # question words and pronouns that carry no topic
    'what', 'which', 'who', 'whom', 'whose', 'when', 'where', 'why', 'how',
    'this', 'these', 'those', 'there', 'their', 'its', 'it', 'me', 'you', 'your',
])

# Phrases never span punctuation
PHRASE_BOUNDARY = re.compile(r'[.,;:!?()\[\]{}"]+')
NON_WORD = re.compile(r"[^\w\s]")

CORE_TERM_WEIGHT = 3
VARIANT_TERM_WEIGHT = 1
EXACT_MATCH_BONUS = 2
DIVERSITY_BONUS = 1.5
DENSITY_BONUS = 2


@dataclass(frozen=True)
class _TermMatcher:
    term: str
    exact_pattern: re.Pattern
    weight: int


class TermSearch:
    """Extracts key terms from questions and ranks chunks by term overlap."""

    def extract_terms(self, query: str) -> List[str]:
        """
        Extract important terms and candidate phrases from a user query.

        Args:
            query: User question

        Returns:
            Duplicate-free list: single words first (query order), then
            bigrams and trigrams of non-stop words
        """
        segments = [
            NON_WORD.sub('', segment).split()
            for segment in PHRASE_BOUNDARY.split(query.lower())
        ]

        terms: List[str] = []
        seen = set()

        def add(term: str) -> None:
            if term not in seen:
                seen.add(term)
                terms.append(term)

        for words in segments:
            for word in words:
                if len(word) > 2 and word not in STOP_WORDS:
                    add(word)

        for phrase in self._extract_phrases(segments):
            add(phrase)

        return terms

    @staticmethod
    def _extract_phrases(segments: Sequence[Sequence[str]]) -> List[str]:
        bigrams: List[str] = []
        trigrams: List[str] = []

        for words in segments:
            for i in range(len(words) - 1):
                pair = words[i:i + 2]
                if not any(w in STOP_WORDS for w in pair):
                    bigrams.append(' '.join(pair))
            for i in range(len(words) - 2):
                triple = words[i:i + 3]
                if not any(w in STOP_WORDS for w in triple):
                    trigrams.append(' '.join(triple))

        return bigrams + trigrams

    @staticmethod
    def generate_variants(terms: Iterable[str]) -> List[str]:
        """
        Expand terms with simple morphological variants.

        Args:
            terms: Extracted terms

        Returns:
            The original terms followed by their variants, without duplicates
        """
        terms = list(terms)
        variants: Dict[str, None] = dict.fromkeys(terms)

        def add(variant: str) -> None:
            if len(variant) >= 3:
                variants.setdefault(variant, None)

        for term in terms:
            if term.endswith('s'):
                add(term[:-1])
            else:
                add(term + 's')

            if term.endswith('ing') and len(term) > 5:
                add(term[:-3])  # searching -> search
                add(term[:-3] + 'e')  # making -> make

            if term.endswith('ed') and len(term) > 4:
                add(term[:-2])  # searched -> search
                add(term[:-1])  # used -> use

            if term.startswith(('un', 'in', 're')):
                add(term[2:])

        return list(variants)

    @staticmethod
    def _build_matchers(terms: Iterable[str], core_terms: Iterable[str]) -> List[_TermMatcher]:
        core = set(core_terms)
        return [
            _TermMatcher(
                term=term,
                exact_pattern=re.compile(r'\b' + re.escape(term) + r'\b'),
                weight=CORE_TERM_WEIGHT if term in core else VARIANT_TERM_WEIGHT
            )
            for term in terms
        ]

    def score_chunk(self, text: str, terms: Iterable[str], core_terms: Iterable[str] = ()) -> float:
        """
        Score a chunk's text against a set of search terms.

        Args:
            text: Chunk text
            terms: Search terms including variants
            core_terms: Terms taken straight from the question (weighted 3x)

        Returns:
            Non-negative match score, 0 when nothing matched
        """
        return self._score(text, self._build_matchers(terms, core_terms))

    @staticmethod
    def _score(text: str, matchers: List[_TermMatcher]) -> float:
        if not text:
            return 0.0

        chunk_text = text.lower()
        score = 0.0
        exact_terms = set()

        for matcher in matchers:
            exact_count = len(matcher.exact_pattern.findall(chunk_text))
            partial_count = max(0, chunk_text.count(matcher.term) - exact_count)

            # Square roots keep a single repeated term from dominating
            score += (math.sqrt(exact_count) * EXACT_MATCH_BONUS * matcher.weight
                      + math.sqrt(partial_count) * matcher.weight)

            if exact_count > 0:
                exact_terms.add(matcher.term)
                if ' ' in matcher.term:
                    score += 2 * matcher.weight

        distinct = len(exact_terms)
        if distinct > 1:
            score += math.sqrt(distinct) * DIVERSITY_BONUS

        text_length = len(chunk_text)
        if distinct > 0:
            density = min(1.0, distinct / (text_length / 100))
            score += density * DENSITY_BONUS

        return score / math.sqrt(text_length / 500)

    def search(
        self,
        query: str,
        chunks: Sequence[Chunk],
        limit: int = 5,
        cancel_event: Optional[threading.Event] = None
    ) -> List[ScoredChunk]:
        """
        Perform term-based search with per-document balancing.

        Each document contributes at most ceil(limit / 2) chunks before the
        global cut, so a single document cannot fill the whole result set.

        Args:
            query: User question
            chunks: Candidate chunks (any number of documents)
            limit: Maximum number of results
            cancel_event: Optional event that aborts the search when set

        Returns:
            Chunks with term_score > 0, sorted by score, with 1-based term_rank
            and the query terms found in each chunk

        Raises:
            RetrievalCancelledError: If cancel_event is set mid-search
        """
        terms = self.extract_terms(query)
        if not terms or not chunks or limit <= 0:
            return []

        core_terms = terms[:math.ceil(len(terms) / 2)]
        matchers = self._build_matchers(self.generate_variants(terms), core_terms)

        doc_chunks: Dict[str, List[Chunk]] = {}
        for chunk in chunks:
            doc_chunks.setdefault(chunk.document_id, []).append(chunk)

        per_doc_cap = math.ceil(limit / 2)
        results: List[ScoredChunk] = []

        for document_id, document_chunks in doc_chunks.items():
            if cancel_event is not None and cancel_event.is_set():
                raise RetrievalCancelledError("Lexical search cancelled")

            scored: List[ScoredChunk] = []
            for chunk in document_chunks:
                score = self._score(chunk.text, matchers)
                if score <= 0:
                    continue
                lower_text = chunk.text.lower()
                scored.append(ScoredChunk(
                    chunk=chunk,
                    term_score=score,
                    matched_terms=[term for term in terms if term in lower_text]
                ))

            scored.sort(key=lambda sc: sc.term_score, reverse=True)
            results.extend(scored[:per_doc_cap])

        results.sort(key=lambda sc: sc.term_score, reverse=True)
        results = results[:limit]
        for rank, scored_chunk in enumerate(results, start=1):
            scored_chunk.term_rank = rank

        logger.debug(
            f"Term search for {len(terms)} terms over {len(doc_chunks)} documents "
            f"returned {len(results)} chunks"
        )
        return results

    @staticmethod
    def calculate_term_overlap(current_terms: Sequence[str], previous_terms: Sequence[str]) -> float:
        """
        Fraction of current terms that overlap (by containment) with previous terms.

        Returns:
            Ratio between 0 and 1
        """
        if not current_terms:
            return 0.0

        overlap_count = sum(
            1 for term in current_terms
            if any(prev in term or term in prev for prev in previous_terms)
        )
        return overlap_count / len(current_terms)
