"""
Embedder
========
Turn chunks into embedding vectors through the OpenAI embeddings endpoint.

Requests run on a small thread pool so at most ``embed_concurrency`` are in
flight. Each chunk gets its own retry budget; one chunk that still fails
fails the whole set.
"""

from __future__ import annotations

import logging
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from typing import Sequence

import requests

from config import API_CONFIG, PROCESSING, get_api_key
from errors import EmbeddingError
from models import Chunk
from retry import RetryPolicy

log = logging.getLogger("embedder")


class Embedder:
    """Generate embeddings with bounded concurrency."""

    def __init__(
        self,
        max_workers: int = PROCESSING["embed_concurrency"],
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.api_key = get_api_key("openai")
        self.config = API_CONFIG["openai"]
        self.max_workers = max_workers
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=PROCESSING["embed_attempts"],
        )

    def is_available(self) -> bool:
        return bool(self.api_key)

    def embed_chunks(self, chunks: Sequence[Chunk]) -> list[list[float]]:
        """Return one vector per chunk, in chunk order. Raises EmbeddingError."""
        if not chunks:
            return []

        log.info("Generating embeddings for %d chunks (%d in flight)", len(chunks), self.max_workers)
        vectors: list[list[float] | None] = [None] * len(chunks)
        executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="embed")
        try:
            futures = {
                executor.submit(self._embed_with_retry, chunk.content): i
                for i, chunk in enumerate(chunks)
            }
            done, _ = wait(futures, return_when=FIRST_EXCEPTION)
            for future in done:
                exc = future.exception()
                if exc is not None:
                    index = futures[future]
                    raise EmbeddingError(
                        f"Embedding failed for chunk {chunks[index].chunk_index}: {exc}"
                    ) from exc
            for future, index in futures.items():
                vectors[index] = future.result()
        finally:
            executor.shutdown(wait=True, cancel_futures=True)

        log.info("All %d embeddings generated", len(vectors))
        return [v for v in vectors if v is not None]

    def embed_text(self, text: str) -> list[float]:
        """Embed a single piece of text (one HTTP request, no retry)."""
        if not self.api_key:
            raise EmbeddingError("OpenAI API key not set (OPENAI_API_KEY)")

        max_chars = self.config["max_input_chars"]
        payload = {
            "model": self.config["model"],
            "input": text[:max_chars],
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        response = requests.post(
            self.config["base_url"],
            headers=headers,
            json=payload,
            timeout=self.config["timeout"],
        )
        response.raise_for_status()

        data = response.json().get("data") or []
        if not data or not data[0].get("embedding"):
            raise EmbeddingError("Embedding response contained no vector")
        return data[0]["embedding"]

    # ---- helpers -----------------------------------------------------------

    def _embed_with_retry(self, text: str) -> list[float]:
        return self.retry_policy.call(self.embed_text, text)
