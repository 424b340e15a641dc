"""LLM Client for Groq API integration: grounded answers and related-term expansion."""
import json
import re
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence
from groq import Groq
from groq import RateLimitError, AuthenticationError, APIError, APITimeoutError
import logging

from docqa.config import GROQ_API_KEY, ANSWER_MODEL, LLM_TEMPERATURE, LLM_MAX_TOKENS
from docqa.errors import CollaboratorError, CollaboratorUnavailableError
from docqa.models.chunk import ScoredChunk

logger = logging.getLogger(__name__)

Message = Dict[str, str]

ANSWER_SYSTEM_PROMPT = (
    "You are a helpful assistant that answers questions based on the provided document excerpts. "
    "Only use the information from the excerpts to answer. If the answer cannot be found in the excerpts, "
    "say \"I don't have enough information in the document to answer that question.\" "
    "When citing information, refer to the excerpt numbers like this: [1], [2], etc."
)

MULTI_DOCUMENT_PROMPT = (
    "You have access to multiple documents. When citing information, reference the document "
    "source that's indicated with each excerpt. Organize your answer to clearly distinguish information "
    "from different documents when appropriate, especially if they contain different or contradictory information."
)

FOLLOW_UP_PROMPT = (
    "Maintain consistency with your previous answers when addressing follow-up questions. "
    "If the user refers to previous questions or your previous answers, use the conversation history to provide context."
)

RELATED_TERMS_SYSTEM_PROMPT = (
    "You are an AI that helps expand search queries when initial searches yield no results. "
    "For a given question and its extracted search terms, you should generate alternative terms, "
    "synonyms, related concepts, and broader category terms that might help find relevant information. "
    "Return your response as a JSON array of strings containing only the alternative search terms."
)

JSON_ARRAY = re.compile(r'\[.*\]', re.DOTALL)
QUOTED_STRING = re.compile(r'"([^"]+)"')


@dataclass
class LLMResponse:
    """Response from LLM generation."""
    text: str
    tokens_input: int
    tokens_output: int
    latency_ms: int
    model_used: str


class LLMClientError(CollaboratorUnavailableError):
    """Language model call failed; carries a structured CollaboratorError."""

    def __init__(self, code: str, message: str, details: Optional[dict] = None):
        super().__init__(CollaboratorError(
            collaborator="llm",
            code=code,
            message=message,
            details=details or {}
        ))


class LLMClient:
    """Client for interfacing with Groq API for text generation."""

    def __init__(self, api_key: Optional[str] = None, model: str = ANSWER_MODEL):
        """
        Initialize LLM client with Groq API key.

        Args:
            api_key: Groq API key (defaults to GROQ_API_KEY from environment)
            model: Chat model used for answers and term expansion
        """
        self.api_key = api_key or GROQ_API_KEY
        if not self.api_key:
            raise ValueError("GROQ_API_KEY must be provided or set in environment")

        self.model = model
        self.client = Groq(api_key=self.api_key)
        logger.info("LLMClient initialized successfully")

    def generate(
        self,
        messages: List[Message],
        max_tokens: int = LLM_MAX_TOKENS,
        temperature: float = LLM_TEMPERATURE
    ) -> LLMResponse:
        """
        Generate a chat completion using Groq API.

        Args:
            messages: Chat messages with 'role' and 'content'
            max_tokens: Maximum tokens to generate
            temperature: Sampling temperature

        Returns:
            LLMResponse with text, token counts, and latency

        Raises:
            LLMClientError: Structured error with code, message, and details
        """
        start_time = time.time()

        try:
            logger.debug(f"Generating response with model: {self.model}")

            response = self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                max_tokens=max_tokens,
                temperature=temperature
            )

            latency_ms = int((time.time() - start_time) * 1000)
            text = (response.choices[0].message.content or "").strip()
            tokens_input = response.usage.prompt_tokens
            tokens_output = response.usage.completion_tokens

            logger.info(
                f"Generated response: model={self.model}, "
                f"input_tokens={tokens_input}, output_tokens={tokens_output}, "
                f"latency={latency_ms}ms"
            )

            return LLMResponse(
                text=text,
                tokens_input=tokens_input,
                tokens_output=tokens_output,
                latency_ms=latency_ms,
                model_used=self.model
            )

        except RateLimitError as e:
            raise self._error(
                "RATE_LIMIT_ERROR",
                "Rate limit exceeded. Please try again in a few moments.",
                start_time, e, retry_after=60
            )
        except AuthenticationError as e:
            raise self._error(
                "AUTHENTICATION_ERROR",
                "Authentication failed. Please check your API key.",
                start_time, e
            )
        except APITimeoutError as e:
            raise self._error("TIMEOUT_ERROR", "Request timed out. Please try again.", start_time, e)
        except APIError as e:
            raise self._error("API_ERROR", f"Groq API error: {str(e)}", start_time, e)
        except Exception as e:
            raise self._error(
                "UNKNOWN_ERROR",
                f"Unexpected error during generation: {str(e)}",
                start_time, e, error_type=type(e).__name__
            )

    def _error(self, code: str, message: str, start_time: float, original: Exception, **extra) -> LLMClientError:
        latency_ms = int((time.time() - start_time) * 1000)
        details = {
            "model": self.model,
            "latency_ms": latency_ms,
            "original_error": str(original),
            **extra
        }
        logger.error(
            f"{code}: model={self.model}, latency={latency_ms}ms, error={original}",
            exc_info=True,
            extra={"error_code": code, "error_details": details}
        )
        return LLMClientError(code, message, details)

    def get_answer(
        self,
        question: str,
        passages: Sequence[ScoredChunk],
        conversation_history: Optional[List[Message]] = None
    ) -> LLMResponse:
        """
        Answer a question grounded in ranked passages.

        Args:
            question: User question
            passages: Fused retrieval output, in citation order
            conversation_history: Previous user/assistant messages

        Returns:
            LLMResponse whose text cites passages as [1], [2], ...
        """
        messages = self.build_messages(question, passages, conversation_history)
        return self.generate(messages)

    @staticmethod
    def build_messages(
        question: str,
        passages: Sequence[ScoredChunk],
        conversation_history: Optional[List[Message]] = None
    ) -> List[Message]:
        """
        Build the chat messages for a grounded answer.

        Args:
            question: User question
            passages: Ranked passages; their 1-based position is the citation index
            conversation_history: Previous user/assistant messages

        Returns:
            System prompt, history, then the excerpts plus question
        """
        excerpts = []
        for idx, passage in enumerate(passages, start=1):
            title = passage.chunk.document_title
            doc_info = f' (from "{title}")' if title else ""
            excerpts.append(f"[{idx}]{doc_info} {passage.text}")
        context = "\n\n".join(excerpts)

        is_multi_document = len({p.document_id for p in passages}) > 1

        system_prompt = ANSWER_SYSTEM_PROMPT
        if is_multi_document:
            system_prompt += "\n\n" + MULTI_DOCUMENT_PROMPT
        if conversation_history:
            system_prompt += "\n\n" + FOLLOW_UP_PROMPT

        messages: List[Message] = [{"role": "system", "content": system_prompt}]
        if conversation_history:
            messages.extend(conversation_history)

        source = "multiple documents" if is_multi_document else "a document"
        messages.append({
            "role": "user",
            "content": (
                f"Here are excerpts from {source}:\n\n{context}\n\n"
                f"Based only on these excerpts, answer the following question: {question}"
            )
        })
        return messages

    def find_related_terms(
        self,
        question: str,
        original_terms: Sequence[str],
        conversation_history: Optional[List[Message]] = None
    ) -> List[str]:
        """
        Ask the model for alternative search terms when a search found nothing.

        Args:
            question: The question that yielded no results
            original_terms: Terms extracted from the question
            conversation_history: Previous user/assistant messages

        Returns:
            List of alternative terms, synonyms and broader concepts

        Raises:
            LLMClientError: If the call fails or the reply holds no usable terms
        """
        conversation_context = ""
        if conversation_history:
            recent_history = conversation_history[-4:]
            conversation_context = "\n".join(
                f"{'User' if msg['role'] == 'user' else 'Assistant'}: {msg['content'][:200]}..."
                for msg in recent_history
            )

        user_prompt = (
            f"I searched for information using these terms but found no results: {', '.join(original_terms)}\n\n"
            f"My original question was: \"{question}\"\n\n"
        )
        if conversation_context:
            user_prompt += f"Recent conversation context:\n{conversation_context}\n\n"
        user_prompt += (
            "Please generate alternative search terms, synonyms, related concepts, and broader category terms "
            "that might help find relevant information. Only include terms that are likely to appear in documents.\n\n"
            "Format your response as a JSON array of strings, for example:\n"
            "[\"term1\", \"term2\", \"related phrase\", \"broader concept\"]"
        )

        response = self.generate([
            {"role": "system", "content": RELATED_TERMS_SYSTEM_PROMPT},
            {"role": "user", "content": user_prompt}
        ])

        terms = self.parse_related_terms(response.text)
        if terms is None:
            logger.error(f"Could not parse related terms from response: {response.text[:200]}")
            raise LLMClientError(
                "MALFORMED_RESPONSE",
                "Language model did not return a list of related terms",
                {"model": self.model, "response": response.text[:200]}
            )

        logger.info(f"Found {len(terms)} related terms for '{question[:50]}'")
        return terms

    @staticmethod
    def parse_related_terms(text: str) -> Optional[List[str]]:
        """
        Extract a list of terms from a model reply.

        Returns:
            The terms, or None when the reply contains no JSON array and no
            quoted strings
        """
        match = JSON_ARRAY.search(text)
        if match:
            try:
                parsed = json.loads(match.group(0))
                if isinstance(parsed, list):
                    return [str(t).strip() for t in parsed if str(t).strip()]
            except json.JSONDecodeError:
                logger.warning("Related terms reply is not valid JSON, extracting quoted strings")

        quoted = [t.strip() for t in QUOTED_STRING.findall(text) if t.strip()]
        return quoted or None
