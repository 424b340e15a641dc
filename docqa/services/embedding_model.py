"""Client for the embedding collaborator, served by the Hugging Face Inference API."""
import time
import logging
from typing import List, Optional

import httpx

from docqa.config import (
    EMBEDDING_MAX_RETRIES,
    EMBEDDING_MODEL,
    EMBEDDING_RETRY_DELAY,
    EMBEDDING_TIMEOUT,
    HUGGINGFACE_API_KEY,
)
from docqa.errors import CollaboratorError, CollaboratorUnavailableError

logger = logging.getLogger(__name__)

INFERENCE_URL = "https://api-inference.huggingface.co/models/{model}"
MAX_BACKOFF_SECONDS = 60.0

# Statuses that are never retried: (error code, message)
STATUS_ERRORS = {
    401: ("AUTHENTICATION_ERROR", "Invalid API key"),
    429: ("RATE_LIMIT_ERROR", "Rate limit exceeded. Please try again later."),
}


class EmbeddingError(CollaboratorUnavailableError):
    """The embedding service failed to produce vectors."""

    def __init__(self, code: str, message: str, details: Optional[dict] = None):
        super().__init__(CollaboratorError(
            collaborator="embedding",
            code=code,
            message=message,
            details=details or {}
        ))


class EmbeddingModel:
    """Turns question and chunk text into fixed-length vectors for cosine search.

    The same input always maps to the same vector, which keeps similarity
    comparisons across a conversation stable.
    """

    def __init__(
        self,
        api_key: str = HUGGINGFACE_API_KEY,
        model_name: str = EMBEDDING_MODEL,
        max_retries: int = EMBEDDING_MAX_RETRIES,
        initial_delay: float = EMBEDDING_RETRY_DELAY,
        timeout: float = EMBEDDING_TIMEOUT
    ):
        """
        Args:
            api_key: Hugging Face API key
            model_name: Sentence embedding model served by the Inference API
            max_retries: Attempts made for 503s, timeouts and network errors
            initial_delay: First back-off delay in seconds, doubled per attempt
            timeout: Request timeout in seconds
        """
        if not api_key:
            raise ValueError("HUGGINGFACE_API_KEY environment variable is required")

        self.api_key = api_key
        self.model_name = model_name
        self.max_retries = max_retries
        self.initial_delay = initial_delay
        self.timeout = timeout
        self.api_url = INFERENCE_URL.format(model=model_name)

        logger.info(f"Initialized EmbeddingModel with model: {model_name}")

    def embed_text(self, text: str) -> List[float]:
        """
        Embed one question or passage.

        Raises:
            ValueError: If text is empty
            EmbeddingError: If the service fails
        """
        if not text or not text.strip():
            raise ValueError("Text cannot be empty")

        return self._embed_with_retry([text])[0]

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """
        Embed several chunks in one request; vectors come back in input order.

        Raises:
            ValueError: If texts is empty or any entry is blank
            EmbeddingError: If the service fails
        """
        if not texts:
            raise ValueError("Texts list cannot be empty")

        empty = sum(1 for t in texts if not t or not t.strip())
        if empty:
            raise ValueError(f"Batch contains {empty} empty texts")

        return self._embed_with_retry(texts)

    def _embed_with_retry(self, texts: List[str]) -> List[List[float]]:
        """
        POST texts to the inference endpoint, backing off on 503s and transport errors.

        Free-tier models sleep and take 15-20s to load on first query, so a
        503 or a timeout is retried; any other failure is raised at once.

        Raises:
            EmbeddingError: If the request fails or every attempt is used up
        """
        payload = {"inputs": texts, "options": {"wait_for_model": True}}
        delay = self.initial_delay
        last_error = None

        for attempt in range(1, self.max_retries + 1):
            start_time = time.time()
            try:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.post(self.api_url, headers=self._headers(), json=payload)
            except httpx.TimeoutException:
                last_error = f"Request timeout after {self.timeout}s"
            except httpx.RequestError as e:
                last_error = f"Network error: {str(e)}"
            else:
                if response.status_code != 503:
                    embeddings = self._parse_response(response, len(texts))
                    logger.debug(
                        f"Embedded {len(texts)} texts in {time.time() - start_time:.2f}s (attempt {attempt})"
                    )
                    return embeddings
                last_error = "Model is loading"

            logger.warning(f"{last_error} on attempt {attempt}/{self.max_retries}")
            if attempt < self.max_retries:
                time.sleep(delay)
                delay = min(delay * 2, MAX_BACKOFF_SECONDS)

        error_msg = f"Failed to generate embeddings after {self.max_retries} attempts. Last error: {last_error}"
        logger.error(error_msg)
        raise EmbeddingError("UNAVAILABLE", error_msg, {"attempts": self.max_retries})

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json"
        }

    @staticmethod
    def _parse_response(response: httpx.Response, expected: int) -> List[List[float]]:
        """Turn a non-503 response into vectors or a structured EmbeddingError."""
        if response.status_code in STATUS_ERRORS:
            code, message = STATUS_ERRORS[response.status_code]
            logger.error(f"Hugging Face API returned {response.status_code}: {message}")
            raise EmbeddingError(code, message, {"status_code": response.status_code})

        if response.status_code != 200:
            error_msg = f"API request failed with status {response.status_code}: {response.text}"
            logger.error(error_msg)
            raise EmbeddingError("API_ERROR", error_msg, {"status_code": response.status_code})

        embeddings = response.json()
        if not isinstance(embeddings, list) or len(embeddings) != expected:
            raise EmbeddingError(
                "MALFORMED_RESPONSE",
                "Embedding response does not match the request",
                {"expected": expected}
            )
        return embeddings

    def warmup(self) -> bool:
        """Embed a throwaway query so the hosted model is loaded before real traffic."""
        try:
            self.embed_text("warmup query")
        except EmbeddingError as e:
            logger.error(f"Model warmup failed: {str(e)}")
            return False
        logger.info("Embedding model is warm")
        return True
