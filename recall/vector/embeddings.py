"""
Embedding providers.

Every provider embeds a batch of texts for a model name and reports its
vector dimension. Failures are raised as RateLimited, Unavailable or
InvalidInput so the pipeline can decide what to retry.
"""

from abc import ABC, abstractmethod
import hashlib
import re
from typing import List, Optional

import numpy as np
import requests

from ..core.errors import InvalidInput, ProviderError, RateLimited, Unavailable

_TOKEN = re.compile(r"\w+", re.UNICODE)
_INPUT_INDEX = re.compile(r"input\[(\d+)\]")


class IEmbeddingProvider(ABC):
    """Abstract interface for embedding providers."""

    @abstractmethod
    def embed(self, texts: List[str], model: Optional[str] = None) -> List[List[float]]:
        """Generate one embedding vector per text, in input order."""
        pass

    @abstractmethod
    def get_dimension(self) -> int:
        """Get the dimension of the embedding vectors."""
        pass

    def embed_text(self, text: str) -> List[float]:
        """Generate embedding vector for a single text."""
        return self.embed([text])[0]


class HashingEmbedding(IEmbeddingProvider):
    """Deterministic feature-hashing embedding provider.

    Each word is hashed into a signed bucket, so texts that share words get
    similar vectors. Reproducible and offline, which makes it the default
    for local development and tests.
    """

    def __init__(self, dimension: int = 384):
        self.dimension = dimension

    def embed(self, texts: List[str], model: Optional[str] = None) -> List[List[float]]:
        return [self._embed_one(text) for text in texts]

    def _embed_one(self, text: str) -> List[float]:
        vector = np.zeros(self.dimension, dtype=np.float32)
        tokens = _TOKEN.findall(text.lower()) or [text]
        for token in tokens:
            digest = hashlib.md5(token.encode("utf-8")).digest()
            bucket = int.from_bytes(digest[:4], "little") % self.dimension
            sign = 1.0 if digest[4] & 1 else -1.0
            vector[bucket] += sign

        norm = np.linalg.norm(vector)
        if norm == 0:
            # Colliding tokens cancelled out; fall back to a single bucket
            vector[int.from_bytes(hashlib.md5(text.encode("utf-8")).digest()[:4], "little") % self.dimension] = 1.0
            norm = 1.0
        return (vector / norm).tolist()

    def get_dimension(self) -> int:
        """Get the dimension of the embedding vectors."""
        return self.dimension


class SentenceTransformerEmbedding(IEmbeddingProvider):
    """Sentence transformers embedding provider using pre-trained models."""

    def __init__(self, model_name: str = "all-mpnet-base-v2"):
        self.model_name = model_name
        self._model = None
        self._dimension = None

    @property
    def model(self):
        if self._model is None:
            from sentence_transformers import SentenceTransformer
            self._model = SentenceTransformer(self.model_name)
        return self._model

    def embed(self, texts: List[str], model: Optional[str] = None) -> List[List[float]]:
        """Generate embedding vectors using sentence transformers."""
        embeddings = self.model.encode(list(texts), convert_to_numpy=True, normalize_embeddings=True)
        return [row.tolist() for row in embeddings]

    def get_dimension(self) -> int:
        """Get the dimension of the embedding vectors."""
        if self._dimension is None:
            self._dimension = self.model.get_sentence_embedding_dimension()
        return self._dimension


class OpenAIEmbeddingProvider(IEmbeddingProvider):
    """HTTP provider for OpenAI-compatible /embeddings endpoints."""

    def __init__(self, api_key: str, base_url: str = "https://api.openai.com/v1",
                 model_name: str = "text-embedding-3-small", dimension: int = 1536,
                 timeout: float = 30.0, session: requests.Session = None):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model_name = model_name
        self.dimension = dimension
        self.timeout = timeout
        self.session = session or requests.Session()

    def embed(self, texts: List[str], model: Optional[str] = None) -> List[List[float]]:
        payload = {"input": list(texts), "model": model or self.model_name}
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

        try:
            response = self.session.post(
                f"{self.base_url}/embeddings", json=payload, headers=headers, timeout=self.timeout
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            raise Unavailable(f"Embedding provider unreachable: {e}")

        if response.status_code == 429:
            raise RateLimited(
                _error_message(response), retry_after=_retry_after(response)
            )
        if response.status_code >= 500:
            raise Unavailable(_error_message(response), status_code=response.status_code)
        if response.status_code in (400, 422):
            message = _error_message(response)
            indices = [int(i) for i in _INPUT_INDEX.findall(message)]
            raise InvalidInput(message, status_code=response.status_code, indices=indices)
        if response.status_code >= 400:
            raise ProviderError(_error_message(response), status_code=response.status_code)

        data = response.json().get("data", [])
        if len(data) != len(texts):
            raise Unavailable(f"Provider returned {len(data)} embeddings for {len(texts)} inputs")
        return [row["embedding"] for row in sorted(data, key=lambda row: row.get("index", 0))]

    def get_dimension(self) -> int:
        return self.dimension


def _error_message(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return f"HTTP {response.status_code}: {response.text[:200]}"
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return error.get("message") or f"HTTP {response.status_code}"
    return f"HTTP {response.status_code}: {body}"


def _retry_after(response: requests.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None
