"""Embedding provider client (OpenAI-compatible API).

Works against OpenAI or any compatible host (DeepInfra by default) via
``base_url``. Inputs are sent in batches of at most :data:`MAX_BATCH_SIZE`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, List, Sequence

import numpy as np
from openai import AsyncOpenAI

from muse_memory.memory.errors import EmbeddingProviderError, ValidationError

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 32
MAX_INPUT_CHARS = 32_000


@dataclass(slots=True)
class EmbeddingResult:
    embeddings: List[np.ndarray]
    model: str
    dimensions: int


class EmbeddingClient:
    def __init__(
        self,
        *,
        api_key: str | None,
        model: str,
        dim: int,
        base_url: str | None = None,
        timeout: float = 30.0,
        client: Any = None,
    ) -> None:
        self.model = model
        self.dim = dim
        self._configured = bool(api_key) or client is not None
        self._client = client
        if self._client is None and api_key:
            self._client = AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout)

    @classmethod
    def from_settings(cls, settings, **kwargs) -> "EmbeddingClient":
        return cls(
            api_key=settings.API_KEY,
            model=settings.EMB_MODEL_ID,
            dim=settings.EMB_DIM,
            base_url=settings.BASE_URL,
            timeout=settings.TIMEOUT,
            **kwargs,
        )

    @property
    def configured(self) -> bool:
        return self._configured

    async def embed(self, texts: Sequence[str]) -> EmbeddingResult:
        """
        Return one float32 vector per input, in input order.

        :raises ValidationError: empty input list or an input over the size cap.
        :raises EmbeddingProviderError: provider missing, failing, or returning
            vectors of the wrong size.
        """
        if not texts:
            raise ValidationError("No texts to embed")
        for i, text in enumerate(texts):
            if len(text) > MAX_INPUT_CHARS:
                raise ValidationError(
                    f"Embedding input {i} exceeds {MAX_INPUT_CHARS} characters"
                )
        if not self._configured:
            raise EmbeddingProviderError("Embedding service not configured")

        vectors: List[np.ndarray] = []
        for start in range(0, len(texts), MAX_BATCH_SIZE):
            batch = list(texts[start : start + MAX_BATCH_SIZE])
            try:
                resp = await self._client.embeddings.create(model=self.model, input=batch)
            except Exception as e:
                logger.error("Embedding request failed (batch=%d): %s", len(batch), e)
                raise EmbeddingProviderError(f"Failed to generate embeddings: {e}") from e

            data = sorted(resp.data, key=lambda d: d.index)
            if len(data) != len(batch):
                raise EmbeddingProviderError(
                    f"Provider returned {len(data)} embeddings for {len(batch)} inputs"
                )
            for item in data:
                vec = np.asarray(item.embedding, dtype=np.float32)
                if vec.size != self.dim:
                    raise EmbeddingProviderError(
                        f"Unexpected embedding size {vec.size} != {self.dim} for model {self.model}"
                    )
                vectors.append(vec)

        return EmbeddingResult(embeddings=vectors, model=self.model, dimensions=self.dim)

    async def embed_one(self, text: str) -> np.ndarray:
        result = await self.embed([text])
        return result.embeddings[0]


__all__ = ["EmbeddingClient", "EmbeddingResult", "MAX_BATCH_SIZE", "MAX_INPUT_CHARS"]
