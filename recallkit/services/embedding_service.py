"""Embedding providers and the vector math used for recall and consolidation."""

from __future__ import annotations

import hashlib
import logging
import re
from typing import Any, List, Optional, Protocol, Sequence

import numpy as np

from recallkit.config import EmbeddingConfig
from recallkit.core.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "sentence-transformers/all-MiniLM-L6-v2"

_TOKEN_RE = re.compile(r"[a-z0-9]+")


class EmbeddingProvider(Protocol):
    dimensions: int

    def embed(self, text: str) -> List[float]:
        ...


class HashingEmbeddingProvider:
    """Feature-hashing bag of words, L2-normalized.

    Needs no model download, so it is the offline default and what the
    tests run against.
    """

    def __init__(self, dimensions: int = 384):
        self.dimensions = dimensions

    def _bucket(self, token: str) -> tuple[int, float]:
        digest = hashlib.md5(token.encode("utf-8")).digest()
        index = int.from_bytes(digest[:4], "little") % self.dimensions
        sign = 1.0 if digest[4] & 1 else -1.0
        return index, sign

    def embed(self, text: str) -> List[float]:
        vector = np.zeros(self.dimensions)
        for token in _TOKEN_RE.findall((text or "").lower()):
            if len(token) < 2:
                continue
            index, sign = self._bucket(token)
            vector[index] += sign
        norm = np.linalg.norm(vector)
        if norm > 0:
            vector /= norm
        return vector.tolist()


class SentenceTransformerEmbeddingProvider:
    """Sentence embeddings from a local ``sentence-transformers`` model.

    The library is imported up front so a missing ``embeddings`` extra fails
    at startup; the model itself loads on the first ``embed`` call.
    """

    def __init__(self, model_name: str = DEFAULT_MODEL, dimensions: int = 384, device: Optional[str] = None):
        try:
            from sentence_transformers import SentenceTransformer
        except ImportError as e:
            raise ConfigurationError(
                "The sentence-transformers embedder needs the 'embeddings' extra "
                "(pip install recallkit[embeddings])"
            ) from e
        self._model_cls = SentenceTransformer
        self.model_name = model_name
        self.dimensions = dimensions
        self._device = device
        self._model: Any = None

    def _load(self) -> Any:
        if self._model is None:
            logger.info("Loading embedding model %s", self.model_name)
            self._model = self._model_cls(self.model_name, device=self._device)
            actual = self._model.get_sentence_embedding_dimension()
            if actual and actual != self.dimensions:
                logger.warning(
                    "Model %s produces %d dimensions (configured %d); using the model's",
                    self.model_name, actual, self.dimensions,
                )
                self.dimensions = actual
        return self._model

    def embed(self, text: str) -> List[float]:
        vector = self._load().encode(text or "", normalize_embeddings=True)
        return np.asarray(vector, dtype=float).tolist()


def build_embedder(cfg: EmbeddingConfig) -> EmbeddingProvider:
    if cfg.provider == "sentence-transformers":
        return SentenceTransformerEmbeddingProvider(cfg.model, cfg.dimensions, device=cfg.device)
    return HashingEmbeddingProvider(cfg.dimensions)


def cosine_scores(query: Sequence[float], vectors: Sequence[Sequence[float]]) -> np.ndarray:
    """Cosine of ``query`` against each row of ``vectors`` (all the same size)."""
    if len(vectors) == 0:
        return np.zeros(0)
    matrix = np.asarray(vectors, dtype=float)
    q = np.asarray(query, dtype=float)
    denom = np.linalg.norm(matrix, axis=1) * np.linalg.norm(q)
    denom[denom == 0] = 1.0
    return matrix @ q / denom


def cosine_matrix(vectors: Sequence[Sequence[float]]) -> np.ndarray:
    """Pairwise cosine similarities of equally sized vectors."""
    if len(vectors) == 0:
        return np.zeros((0, 0))
    matrix = np.asarray(vectors, dtype=float)
    norms = np.linalg.norm(matrix, axis=1)
    denom = norms[:, None] * norms[None, :]
    denom[denom == 0] = 1.0
    return (matrix @ matrix.T) / denom
