import hashlib
import re

import numpy as np
import pytest

from rag_demo import Embedder, KnowledgeBase, LiteVectorStore

ENV_KEYS = [
    "EMBED_PROVIDER", "LOCAL_EMBED_MODEL", "GEMINI_EMBED_MODEL", "GOOGLE_API_KEY",
    "VECTOR_BACKEND", "INDEX_DIR", "QDRANT_URL", "QDRANT_API_KEY", "QDRANT_HOST",
    "QDRANT_PORT", "QDRANT_COLLECTION", "EMBED_DIM", "CHUNK_SIZE", "CHUNK_OVERLAP",
    "RETRIEVAL_K", "MIN_SCORE", "DOCUMENTS_DIR", "LOG_LEVEL",
]


class HashingEmbedder(Embedder):
    """Deterministic bag-of-words embedder; identical text gives identical vectors."""

    def __init__(self, dimension=384):
        self.dimension = dimension
        self.calls = []

    def embed(self, texts):
        self.calls.append(list(texts))
        out = np.zeros((len(texts), self.dimension), dtype=np.float32)
        for row, text in enumerate(texts):
            for tok in re.findall(r"[a-z0-9']+", text.lower()):
                idx = int(hashlib.md5(tok.encode()).hexdigest(), 16) % self.dimension
                out[row, idx] += 1.0
        return out


class FailingEmbedder(Embedder):
    dimension = 384

    def embed(self, texts):
        raise RuntimeError("model unavailable")


@pytest.fixture
def clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    # keep load_dotenv from picking up a developer's .env
    monkeypatch.setattr("rag_demo.load_dotenv", lambda *a, **k: False)
    return monkeypatch


@pytest.fixture
def embedder():
    return HashingEmbedder()


@pytest.fixture
def store():
    return LiteVectorStore(index_dir=None, dimension=384)


@pytest.fixture
def kb(embedder, store):
    return KnowledgeBase(embedder, store, chunk_size=300, chunk_overlap=50)
