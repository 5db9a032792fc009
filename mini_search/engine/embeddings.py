"""Sentence embeddings for documents and queries.

Text is encoded by a pretrained sentence-transformers model, mean-pooled
over non-padding tokens and L2-normalised, so cosine similarity between two
vectors is their dot product. Vectors are float32 whatever precision the
model runs at.
"""

import logging
import os
import time
from abc import ABC, abstractmethod
from pathlib import Path

import numpy as np
import torch
from sentence_transformers import SentenceTransformer

from .config import SearchConfig
from .exceptions import EmbeddingError

logger = logging.getLogger(__name__)

TORCH_DTYPES = {"fp32": torch.float32, "fp16": torch.float16, "bf16": torch.bfloat16}


def detect_device() -> str:
    """Auto-detect best device (MPS for Apple Silicon, CUDA for NVIDIA, else CPU)."""
    if torch.backends.mps.is_available():
        return "mps"
    if torch.cuda.is_available():
        return "cuda"
    return "cpu"


def normalize_rows(vectors: np.ndarray) -> list[np.ndarray | None]:
    """L2-normalise each row; rows with a zero or non-finite norm become None."""
    vectors = np.asarray(vectors, dtype=np.float32)
    norms = np.linalg.norm(vectors, axis=1)
    rows: list[np.ndarray | None] = []
    for vector, norm in zip(vectors, norms):
        if not np.isfinite(norm) or norm == 0:
            rows.append(None)
        else:
            rows.append((vector / norm).astype(np.float32))
    return rows


class Embedder(ABC):
    """Maps text to a unit-length float32 vector of fixed dimension."""

    dimension: int
    batch_size: int = 32

    @abstractmethod
    def _encode(self, texts: list[str]) -> np.ndarray:
        """Encode non-empty texts into an array of shape (len(texts), dimension)."""

    def embed(self, text: str) -> np.ndarray:
        """Embed a single text.

        Raises:
            EmbeddingError: If the text is empty or the encoder fails
        """
        if not text or not text.strip():
            raise EmbeddingError("Cannot embed empty text")
        try:
            vectors = self._checked_encode([text])
        except EmbeddingError:
            raise
        except Exception as e:
            raise EmbeddingError(f"Encoder failed: {e}") from e

        vector = normalize_rows(vectors)[0]
        if vector is None:
            raise EmbeddingError("Encoder produced a zero or non-finite vector")
        return vector

    def embed_batch(self, texts: list[str], batch_size: int | None = None) -> list[np.ndarray | None]:
        """Embed many texts.

        Texts are encoded in batches of ``batch_size``. When a batch fails,
        its texts are retried one at a time so a single bad input only costs
        its own embedding.

        Returns:
            One vector per input text, or None where the embedding is unavailable
        """
        results: list[np.ndarray | None] = [None] * len(texts)
        pending = [(i, text) for i, text in enumerate(texts) if text and text.strip()]
        if len(pending) < len(texts):
            logger.debug(f"[EMBED] Skipping {len(texts) - len(pending)} empty texts")

        size = batch_size or self.batch_size
        for start in range(0, len(pending), size):
            batch = pending[start : start + size]
            try:
                vectors = self._checked_encode([text for _, text in batch])
            except Exception as e:
                logger.warning(f"[EMBED] Batch of {len(batch)} failed ({e}), retrying one by one")
                for i, text in batch:
                    try:
                        results[i] = self.embed(text)
                    except EmbeddingError as item_error:
                        logger.warning(f"[EMBED] Embedding unavailable for text #{i}: {item_error}")
                continue

            for (i, _), vector in zip(batch, normalize_rows(vectors)):
                results[i] = vector
        return results

    def _checked_encode(self, texts: list[str]) -> np.ndarray:
        vectors = np.asarray(self._encode(texts), dtype=np.float32)
        if vectors.shape != (len(texts), self.dimension):
            raise EmbeddingError(
                f"Encoder returned shape {vectors.shape}, expected ({len(texts)}, {self.dimension})"
            )
        return vectors


class SentenceTransformerEmbedder(Embedder):
    """Embedder backed by a local sentence-transformers model directory."""

    def __init__(
        self,
        model_dir: str | Path,
        max_seq_length: int = 256,
        precision: str = "fp32",
        device: str | None = None,
        batch_size: int = 32,
    ):
        """Load the model.

        Args:
            model_dir: Directory with the model config, weights and tokenizer
            max_seq_length: Inputs are truncated to this many tokens
            precision: "fp32", "fp16" or "bf16"; applied once here, never per call
            device: Torch device (None = auto-detect)
            batch_size: Default batch size for ``embed_batch``
        """
        if precision not in TORCH_DTYPES:
            raise ValueError(f"Unknown precision {precision!r}")
        self.model_dir = Path(model_dir)
        if not self.model_dir.is_dir():
            raise FileNotFoundError(f"Model directory not found: {self.model_dir}")

        # Tokenizer threads fight with our own worker threads
        os.environ.setdefault("TOKENIZERS_PARALLELISM", "false")

        self.device = device or detect_device()
        self.precision = precision
        self.batch_size = batch_size

        logger.info(f"[EMBED] Loading sentence encoder from {self.model_dir} (device: {self.device})...")
        start = time.time()
        self.model = SentenceTransformer(str(self.model_dir), device=self.device)
        self.model.max_seq_length = max_seq_length
        if precision != "fp32":
            self.model.to(TORCH_DTYPES[precision])
        self.model.eval()

        dimension = self.model.get_sentence_embedding_dimension()
        if dimension is None:
            dimension = int(self._encode(["dimension check"]).shape[1])
        self.dimension = dimension
        logger.info(
            f"[EMBED] ✓ Encoder loaded in {time.time() - start:.1f}s "
            f"(dimension: {self.dimension}, precision: {precision}, max_seq_length: {max_seq_length})"
        )

    @classmethod
    def from_config(cls, config: SearchConfig) -> "SentenceTransformerEmbedder":
        return cls(
            config.model_dir,
            max_seq_length=config.max_seq_length,
            precision=config.precision,
            device=config.device,
            batch_size=config.embed_batch_size,
        )

    def _encode(self, texts: list[str]) -> np.ndarray:
        with torch.inference_mode():
            embeddings = self.model.encode(
                texts,
                batch_size=len(texts),
                convert_to_tensor=True,
                normalize_embeddings=False,
                show_progress_bar=False,
            )
        return embeddings.float().cpu().numpy()
