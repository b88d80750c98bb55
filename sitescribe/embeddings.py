"""Embeddings providers.

Providers implement LangChain's ``Embeddings`` interface so they can be reused
by other LangChain components, plus ``embed_texts`` / ``estimate_tokens`` used
by the indexing pipeline.
"""

import logging
import math
import re
import sys
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, as_completed

import requests
from langchain_core.embeddings import Embeddings
from tqdm import tqdm

from .config import SiteScribeConfig
from .errors import ConfigMissingError, RateLimitedError, VectorBackendUnavailableError

logger = logging.getLogger(__name__)

MAX_RETRY_DELAY = 5.0
RETRY_BASE_DELAY = 0.3

_WORD_RE = re.compile(r"[A-Za-z0-9_]+")
_PUNCT_RE = re.compile(r"[^\s\w]")
_CJK_RE = re.compile(r"[\u3400-\u9fff]")


def estimate_tokens(text: str) -> int:
    """Conservative token estimate: the larger of a char-based and a lexical estimate."""
    normalized = text.strip()
    if not normalized:
        return 0

    word_count = len(_WORD_RE.findall(normalized))
    punctuation_count = len(_PUNCT_RE.findall(normalized))
    cjk_count = len(_CJK_RE.findall(normalized))

    char_estimate = math.ceil(len(normalized) / 4)
    lexical_estimate = math.ceil(word_count * 1.25 + punctuation_count * 0.45 + cjk_count * 1.6)
    return max(1, char_estimate, lexical_estimate)


def retry_delay(attempt: int) -> float:
    """Backoff before retry number ``attempt`` (1-based), in seconds."""
    return min(2**attempt * RETRY_BASE_DELAY, MAX_RETRY_DELAY)


def is_retryable_status(status: int | None) -> bool:
    return status == 429 or (status is not None and status >= 500)


class EmbeddingsProvider(Embeddings, ABC):
    """Base class for embeddings providers."""

    def __init__(self, model_id: str):
        self.model_id = model_id

    @abstractmethod
    def embed_texts(self, texts: list[str], model_id: str | None = None) -> list[list[float]]:
        """Embed texts, returning exactly one vector per input in input order."""

    def estimate_tokens(self, text: str) -> int:
        return estimate_tokens(text)

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        return self.embed_texts(texts, self.model_id)

    def embed_query(self, text: str) -> list[float]:
        return self.embed_texts([text], self.model_id)[0]


class OpenAIEmbeddingsProvider(EmbeddingsProvider):
    """OpenAI-compatible ``/embeddings`` client with batching, bounded concurrency and retries."""

    def __init__(
        self,
        api_key: str,
        model_id: str,
        api_base: str = "https://api.openai.com/v1",
        batch_size: int = 64,
        concurrency: int = 8,
        max_retries: int = 5,
        request_timeout: float = 60.0,
        show_progress: bool = False,
    ):
        """Initialize the provider.

        Args:
            api_key: API key sent as a bearer token
            model_id: Default model to embed with
            api_base: Base URL of the API (e.g., "https://api.openai.com/v1")
            batch_size: Texts per request
            concurrency: Maximum in-flight requests
            max_retries: Attempts per batch for 429 and 5xx responses
            request_timeout: HTTP read timeout in seconds
            show_progress: Show a progress bar over batches
        """
        super().__init__(model_id)
        self.api_key = api_key
        self.endpoint = f"{api_base.rstrip('/')}/embeddings"
        self.batch_size = batch_size
        self.concurrency = concurrency
        self.max_retries = max_retries
        self.request_timeout = request_timeout
        self.show_progress = show_progress

    def embed_texts(self, texts: list[str], model_id: str | None = None) -> list[list[float]]:
        if not texts:
            return []

        model = model_id or self.model_id
        batches = [texts[i : i + self.batch_size] for i in range(0, len(texts), self.batch_size)]
        outputs: list[list[list[float]] | None] = [None] * len(batches)

        executor = ThreadPoolExecutor(max_workers=min(self.concurrency, len(batches)))
        try:
            future_to_position = {
                executor.submit(self._embed_with_retry, batch, model): position
                for position, batch in enumerate(batches)
            }

            pbar = tqdm(
                as_completed(future_to_position),
                total=len(batches),
                desc="Embedding",
                unit="batch",
                disable=not self.show_progress,
                file=sys.stderr,
            )
            for future in pbar:
                # Any failure aborts the whole embed stage
                outputs[future_to_position[future]] = future.result()
        except Exception:
            # Queued batches are dropped so no further requests are sent
            executor.shutdown(wait=False, cancel_futures=True)
            raise
        executor.shutdown()

        return [vector for batch_vectors in outputs for vector in batch_vectors or []]

    def _embed_with_retry(self, texts: list[str], model: str) -> list[list[float]]:
        attempt = 0
        while True:
            attempt += 1
            try:
                response = requests.post(
                    self.endpoint,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    json={"model": model, "input": texts, "encoding_format": "float"},
                    timeout=(10, self.request_timeout),
                )
                response.raise_for_status()
            except requests.HTTPError as e:
                status = e.response.status_code if e.response is not None else None
                if not is_retryable_status(status) or attempt >= self.max_retries:
                    if status == 429:
                        raise RateLimitedError(f"Embedding API rate limit exceeded after {attempt} attempts") from e
                    raise VectorBackendUnavailableError(f"Embedding request failed ({status}): {e}") from e
                delay = retry_delay(attempt)
                logger.warning(f"[EMBED] HTTP {status}, retrying batch in {delay:.1f}s (attempt {attempt})")
                time.sleep(delay)
                continue
            except requests.RequestException as e:
                raise VectorBackendUnavailableError(f"Embedding request failed: {e}") from e

            data = response.json().get("data", [])
            # Entries carry their input index; sort so vectors line up with inputs
            data = sorted(data, key=lambda entry: entry.get("index", 0))
            return [entry["embedding"] for entry in data]


class SentenceTransformerEmbeddings(EmbeddingsProvider):
    """Local embeddings via sentence-transformers (requires the ``local`` extra)."""

    def __init__(self, model_id: str = "all-MiniLM-L6-v2", batch_size: int = 64):
        super().__init__(model_id)
        self.batch_size = batch_size
        self._model = None

    def _load(self):
        if self._model is None:
            from sentence_transformers import SentenceTransformer

            start = time.time()
            self._model = SentenceTransformer(self.model_id)
            logger.info(f"[EMBED] ✓ Embedding model loaded in {time.time() - start:.1f}s")
        return self._model

    def embed_texts(self, texts: list[str], model_id: str | None = None) -> list[list[float]]:
        if not texts:
            return []
        vectors = self._load().encode(texts, batch_size=self.batch_size, normalize_embeddings=True)
        return [list(map(float, vector)) for vector in vectors]


def create_embeddings_provider(config: SiteScribeConfig) -> EmbeddingsProvider:
    """Build the configured embeddings provider.

    Raises:
        ConfigMissingError: If the OpenAI provider is selected without an API key
    """
    settings = config.embeddings
    if settings.provider == "local":
        return SentenceTransformerEmbeddings(settings.model, batch_size=settings.batch_size)

    api_key = settings.api_key
    if not api_key:
        raise ConfigMissingError(f"Missing embeddings API key: set {settings.api_key_env}")

    return OpenAIEmbeddingsProvider(
        api_key=api_key,
        model_id=settings.model,
        api_base=settings.api_base,
        batch_size=settings.batch_size,
        concurrency=settings.concurrency,
        max_retries=settings.max_retries,
        request_timeout=settings.request_timeout,
        show_progress=config.show_progress,
    )
