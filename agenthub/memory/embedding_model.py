"""Embedding model bootstrap for the memory subsystem.

Architectural role:
    Provides the `SentenceTransformer` used by `EternalMemory` to vectorize turns and
    queries. The loader decides CPU vs CUDA execution once and the resulting
    `Embedder` is constructed during startup, not on first request.

Design intent:
    - Keep embedding initialization centralized.
    - Apply a conservative VRAM gate before enabling GPU execution.
    - Produce L2-normalized float32 vectors so FAISS inner product equals cosine.
"""

import logging
import os

import faiss
import numpy as np


logger = logging.getLogger(__name__)


EMBED_MODEL = "intfloat/multilingual-e5-small"


def has_enough_vram(min_required_mb: int = 800) -> bool:
    """Return whether enough free GPU memory is available for embeddings.

    Args:
        min_required_mb: Minimum required free VRAM in megabytes.

    Returns:
        `True` when CUDA is available and free VRAM exceeds the threshold.
    """
    import torch

    if not torch.cuda.is_available():
        return False

    free_mem, _total_mem = torch.cuda.mem_get_info()
    free_mb = free_mem / 1024 / 1024

    logger.info("Free VRAM: %.0f MB", free_mb)

    return free_mb > min_required_mb


def load_model(model_name=EMBED_MODEL):
    """Load a `SentenceTransformer` on CUDA when VRAM allows, otherwise on CPU.

    Side effects:
        - Imports `torch`/`sentence_transformers` lazily.
        - Sets `CUDA_VISIBLE_DEVICES=""` in CPU fallback mode.
    """
    logger.info("Loading embedding model %s", model_name)

    try:
        use_gpu = has_enough_vram()
    except Exception:
        logger.exception("VRAM check failed")
        use_gpu = False

    if not use_gpu:
        logger.info("Insufficient VRAM detected. Forcing CPU mode.")
        os.environ["CUDA_VISIBLE_DEVICES"] = ""

    from sentence_transformers import SentenceTransformer

    device = "cuda" if use_gpu else "cpu"
    logger.info("Loading embeddings on %s", device.upper())

    return SentenceTransformer(model_name, device=device)


class Embedder:
    """Thin wrapper producing normalized E5-style embeddings.

    Any object with a compatible `encode(list[str]) -> array` method and a
    `get_sentence_embedding_dimension()` method can be wrapped, which is how tests
    supply a deterministic model.
    """

    def __init__(self, model):
        self._model = model
        self.dimension = int(model.get_sentence_embedding_dimension())

    @classmethod
    def from_name(cls, model_name=EMBED_MODEL):
        return cls(load_model(model_name))

    def _encode(self, texts):
        vecs = self._model.encode(texts)
        vecs = np.array(vecs).astype("float32")
        if vecs.ndim == 1:
            vecs = vecs.reshape(1, -1)
        faiss.normalize_L2(vecs)
        return vecs

    def embed_query(self, text):
        """Embed a search query (E5 `query:` prefix). Returns a 1 x d matrix."""
        return self._encode(["query: " + str(text).strip()])

    def embed_passage(self, text):
        """Embed a stored text unit (E5 `passage:` prefix). Returns a 1 x d matrix."""
        return self._encode(["passage: " + str(text).strip()])

    def embed_passages(self, texts):
        """Embed many stored text units at once. Returns an n x d matrix."""
        return self._encode(["passage: " + str(t).strip() for t in texts])
