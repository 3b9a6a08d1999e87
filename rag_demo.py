# rag_demo.py — local RAG demo core (embeddings, vector stores, indexing, retrieval)

import os
import re
import json
import hashlib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Iterator, List, Optional

import numpy as np
from dotenv import load_dotenv
import google.generativeai as genai
from qdrant_client import QdrantClient
from qdrant_client.http import models as qmodels


logger = logging.getLogger(__name__)


# =========================
# Errors
# =========================

class RAGError(Exception):
    """Base class for every error raised by the demo."""


class ConfigurationError(RAGError):
    pass


class StartupError(RAGError):
    pass


class IndexingError(RAGError):
    pass


class QueryError(RAGError):
    pass


# =========================
# Config
# =========================

def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from e


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from e


@dataclass
class Settings:
    """
    Runtime configuration. Defaults reproduce the original demo: MiniLM
    embeddings (384 dims), 300/50 character chunks, top 3 matches above 0.5.
    """
    embed_provider: str = "local"
    local_embed_model: str = "sentence-transformers/all-MiniLM-L6-v2"
    gemini_embed_model: str = "models/embedding-001"
    google_api_key: Optional[str] = None

    vector_backend: str = "local"
    index_dir: Optional[str] = "./lite_index"
    qdrant_url: Optional[str] = None
    qdrant_api_key: Optional[str] = None
    qdrant_host: str = "localhost"
    qdrant_port: int = 6333
    collection: str = "rag_knowledge_base"
    dimension: int = 384

    chunk_size: int = 300
    chunk_overlap: int = 50
    top_k: int = 3
    min_score: float = 0.5

    documents_dir: Optional[str] = None
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()

        settings = cls(
            embed_provider=os.getenv("EMBED_PROVIDER", cls.embed_provider).strip().lower(),
            local_embed_model=os.getenv("LOCAL_EMBED_MODEL", cls.local_embed_model),
            gemini_embed_model=os.getenv("GEMINI_EMBED_MODEL", cls.gemini_embed_model),
            google_api_key=(os.getenv("GOOGLE_API_KEY") or "").strip() or None,
            vector_backend=os.getenv("VECTOR_BACKEND", cls.vector_backend).strip().lower(),
            index_dir=os.getenv("INDEX_DIR", cls.index_dir),
            qdrant_url=(os.getenv("QDRANT_URL") or "").strip() or None,
            qdrant_api_key=(os.getenv("QDRANT_API_KEY") or "").strip() or None,
            qdrant_host=os.getenv("QDRANT_HOST", cls.qdrant_host).strip(),
            qdrant_port=_env_int("QDRANT_PORT", cls.qdrant_port),
            collection=os.getenv("QDRANT_COLLECTION", cls.collection).strip(),
            dimension=_env_int("EMBED_DIM", cls.dimension),
            chunk_size=_env_int("CHUNK_SIZE", cls.chunk_size),
            chunk_overlap=_env_int("CHUNK_OVERLAP", cls.chunk_overlap),
            top_k=_env_int("RETRIEVAL_K", cls.top_k),
            min_score=_env_float("MIN_SCORE", cls.min_score),
            documents_dir=(os.getenv("DOCUMENTS_DIR") or "").strip() or None,
            log_level=os.getenv("LOG_LEVEL", cls.log_level).strip().upper(),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        validate_chunking(self.chunk_size, self.chunk_overlap)
        if self.embed_provider not in ("local", "gemini"):
            raise ConfigurationError(f"Unknown EMBED_PROVIDER {self.embed_provider!r}")
        if self.embed_provider == "gemini" and not self.google_api_key:
            raise ConfigurationError("EMBED_PROVIDER=gemini requires GOOGLE_API_KEY")
        if self.vector_backend not in ("local", "qdrant"):
            raise ConfigurationError(f"Unknown VECTOR_BACKEND {self.vector_backend!r}")
        if self.dimension <= 0:
            raise ConfigurationError("EMBED_DIM must be positive")
        if self.top_k < 1:
            raise ConfigurationError("RETRIEVAL_K must be at least 1")
        if not 0.0 <= self.min_score <= 1.0:
            raise ConfigurationError("MIN_SCORE must be between 0 and 1")


def configure_logging(level: str = "WARNING") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# =========================
# Helpers
# =========================

def validate_chunking(chunk_size: int, overlap: int) -> None:
    if chunk_size <= 0:
        raise ConfigurationError(f"chunk_size must be positive, got {chunk_size}")
    if overlap < 0:
        raise ConfigurationError(f"overlap must not be negative, got {overlap}")
    if overlap >= chunk_size:
        raise ConfigurationError(
            f"overlap ({overlap}) must be smaller than chunk_size ({chunk_size})"
        )


def chunk_text(text: str, chunk_size: int = 300, overlap: int = 50) -> Iterator[str]:
    """
    Split ``text`` into windows of at most ``chunk_size`` characters where
    consecutive windows share exactly ``overlap`` characters. Only the last
    window may be shorter. Parameters are checked before iteration starts.
    """
    validate_chunking(chunk_size, overlap)
    return _windows(text, chunk_size, overlap)


def _windows(text: str, chunk_size: int, overlap: int) -> Iterator[str]:
    i = 0
    while i < len(text):
        j = min(i + chunk_size, len(text))
        yield text[i:j]
        i = j - overlap if j < len(text) else j


def collapse_whitespace(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def point_id(source: str, chunk_id: int) -> int:
    # Use unsigned IDs so backends like Qdrant accept them.
    h = hashlib.blake2b(f"{source}:{chunk_id}".encode(), digest_size=8).digest()
    return int.from_bytes(h, "big", signed=False)


def _normalize_rows(mat: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(mat, axis=1, keepdims=True)
    norms[norms == 0] = 1
    return mat / norms


@dataclass
class Document:
    source: str
    text: str


@dataclass
class Match:
    text: str
    score: float
    source: Optional[str] = None
    chunk_id: Optional[int] = None


@dataclass
class QueryOutcome:
    question: str
    matches: List[Match] = field(default_factory=list)
    error: Optional[QueryError] = None

    @property
    def status(self) -> str:
        if self.error is not None:
            return "error"
        return "ok" if self.matches else "empty"


@dataclass
class IndexReport:
    documents: int = 0
    segments: int = 0


def _match_from_payload(payload: dict, score: float) -> Match:
    return Match(
        text=payload.get("text", ""),
        score=float(score),
        source=payload.get("source"),
        chunk_id=payload.get("chunk_id"),
    )


def _summarize_sources(payloads: Iterable[dict]) -> List[dict]:
    seen = {}
    for p in payloads:
        src = p.get("source")
        if not src:
            continue
        seen.setdefault(src, {"source": src, "chunks": 0, "latest_timestamp": ""})
        seen[src]["chunks"] += 1
        ts = p.get("timestamp") or ""
        if ts > seen[src]["latest_timestamp"]:
            seen[src]["latest_timestamp"] = ts
    return sorted(seen.values(), key=lambda x: x["source"])


# =========================
# Embedders
# =========================

class Embedder(ABC):
    """Turns text into fixed-length float vectors."""

    dimension: int

    @abstractmethod
    def embed(self, texts: List[str]) -> np.ndarray:
        """Return an ``(len(texts), dimension)`` float32 array."""

    def embed_one(self, text: str) -> np.ndarray:
        return self.embed([text])[0]


class LocalEmbedder(Embedder):
    def __init__(self, model_name: str = "sentence-transformers/all-MiniLM-L6-v2"):
        try:
            from sentence_transformers import SentenceTransformer
        except ImportError as e:
            raise StartupError(
                "Local embedding model requested but sentence-transformers is not installed. "
                "pip install sentence-transformers"
            ) from e

        self.model_name = model_name
        self._encoder = SentenceTransformer(model_name)
        self.dimension = int(self._encoder.get_sentence_embedding_dimension())
        logger.info("Loaded %s (%d dims)", model_name, self.dimension)

    def embed(self, texts: List[str]) -> np.ndarray:
        logger.debug("Embedding %d texts via %s", len(texts), self.model_name)
        vecs = self._encoder.encode(
            texts, convert_to_numpy=True, normalize_embeddings=False
        )
        return np.asarray(vecs, dtype=np.float32).reshape(len(texts), -1)


class GeminiEmbedder(Embedder):
    def __init__(self, api_key: str, model_name: str = "models/embedding-001"):
        genai.configure(api_key=api_key)
        self.model_name = model_name
        # Output size depends on the model.
        r = genai.embed_content(model=model_name, content="dimension check")
        self.dimension = len(r["embedding"])
        logger.info("Using %s (%d dims)", model_name, self.dimension)

    def embed(self, texts: List[str]) -> np.ndarray:
        logger.debug("Embedding %d texts via %s", len(texts), self.model_name)
        vectors = []
        for t in texts:
            r = genai.embed_content(model=self.model_name, content=t)
            vectors.append(r["embedding"])
        return np.array(vectors, dtype=np.float32).reshape(len(texts), -1)


# =========================
# Vector Stores
# =========================

class VectorStore(ABC):
    dimension: int

    @abstractmethod
    def upsert(self, ids, vectors: np.ndarray, payloads: List[dict]) -> None:
        ...

    @abstractmethod
    def search(self, qvec: np.ndarray, k: int = 3, min_score: float = 0.0) -> List[Match]:
        """Top ``k`` entries scoring at least ``min_score``, best first."""

    @abstractmethod
    def delete_source(self, source: str) -> None:
        """Remove every entry whose payload came from ``source``."""

    @abstractmethod
    def count(self) -> int:
        ...

    @abstractmethod
    def reset(self) -> None:
        ...

    @abstractmethod
    def list_sources(self) -> List[dict]:
        ...


class LiteVectorStore(VectorStore):
    """
    Exact cosine search over an in-process NumPy matrix. With an
    ``index_dir`` the matrix and payloads are saved after every upsert and
    reloaded on start; with ``index_dir=None`` everything stays in memory.
    """

    def __init__(self, index_dir: Optional[str] = "./lite_index", dimension: int = 384):
        self.index_dir = index_dir
        self.dimension = dimension
        if index_dir:
            os.makedirs(index_dir, exist_ok=True)

        self.vectors = None
        self.ids = None
        self.payloads = []

        self._load()

    def _load(self):
        if not self.index_dir:
            return
        try:
            vectors = np.load(f"{self.index_dir}/vectors.npy")
            ids = np.load(f"{self.index_dir}/ids.npy")
            with open(f"{self.index_dir}/payloads.json") as f:
                payloads = json.load(f)
        except FileNotFoundError:
            return
        if vectors.ndim != 2 or vectors.shape[1] != self.dimension:
            raise StartupError(
                f"Index at {self.index_dir} holds {vectors.shape[-1]}-dim vectors, "
                f"expected {self.dimension}; reset it with `python ingest.py --reset`"
            )
        self.vectors, self.ids, self.payloads = vectors, ids, payloads

    def _save(self):
        if not self.index_dir or self.vectors is None:
            return
        np.save(f"{self.index_dir}/vectors.npy", self.vectors)
        np.save(f"{self.index_dir}/ids.npy", self.ids)
        with open(f"{self.index_dir}/payloads.json", "w") as f:
            json.dump(self.payloads, f)

    def upsert(self, ids, vectors, payloads):
        ids = np.asarray(ids, dtype=np.uint64)
        vectors = _normalize_rows(np.asarray(vectors, dtype=np.float32))

        if self.vectors is None:
            self.vectors = vectors
            self.ids = ids
            self.payloads = list(payloads)
        else:
            # Drop any existing rows that are being replaced.
            keep = ~np.isin(self.ids, ids)
            self.vectors = np.vstack([self.vectors[keep], vectors])
            self.ids = np.concatenate([self.ids[keep], ids])
            self.payloads = [p for p, k in zip(self.payloads, keep) if k] + list(payloads)
        self._save()

    def search(self, qvec, k=3, min_score=0.0):
        if self.vectors is None or self.vectors.size == 0:
            return []

        qvec = np.asarray(qvec, dtype=np.float32)
        qvec = qvec / (np.linalg.norm(qvec) or 1)
        sims = np.dot(self.vectors, qvec)
        idxs = np.argsort(-sims, kind="stable")

        results = []
        for i in idxs:
            if sims[i] < min_score:
                break
            results.append(_match_from_payload(self.payloads[i], sims[i]))
            if len(results) == k:
                break

        return results

    def delete_source(self, source):
        if self.ids is None:
            return
        keep = np.array([p.get("source") != source for p in self.payloads], dtype=bool)
        if keep.all():
            return
        self.vectors = self.vectors[keep]
        self.ids = self.ids[keep]
        self.payloads = [p for p, k in zip(self.payloads, keep) if k]
        self._save()

    def count(self):
        return 0 if self.ids is None else int(self.ids.size)

    def reset(self):
        self.vectors, self.ids, self.payloads = None, None, []
        if self.index_dir:
            for name in ("vectors.npy", "ids.npy", "payloads.json"):
                path = os.path.join(self.index_dir, name)
                if os.path.exists(path):
                    os.remove(path)

    def list_sources(self):
        return _summarize_sources(self.payloads)


class QdrantVectorStore(VectorStore):
    def __init__(self, collection, dimension=384, url=None, api_key=None,
                 host="localhost", port=6333, client=None):
        self.collection = collection
        self.dimension = dimension
        if client is not None:
            self.client = client
        elif url:
            self.client = QdrantClient(url=url, api_key=api_key)
        else:
            self.client = QdrantClient(host=host, port=port)
        self._ensure_collection()

    def _ensure_collection(self):
        if self.client.collection_exists(self.collection):
            info = self.client.get_collection(self.collection)
            size = info.config.params.vectors.size
            if size != self.dimension:
                raise StartupError(
                    f"Qdrant collection {self.collection!r} has vector size {size}, "
                    f"expected {self.dimension}"
                )
            return
        self.client.create_collection(
            collection_name=self.collection,
            vectors_config=qmodels.VectorParams(size=self.dimension, distance=qmodels.Distance.COSINE),
        )
        logger.info("Created collection %s (%d dims)", self.collection, self.dimension)

    def upsert(self, ids, vectors, payloads):
        points = []
        for i, v in enumerate(vectors):
            points.append(
                qmodels.PointStruct(
                    id=int(ids[i]),
                    vector=np.asarray(v, dtype=np.float32).tolist(),
                    payload=payloads[i]
                )
            )
        self.client.upsert(collection_name=self.collection, points=points, wait=True)

    def search(self, qvec, k=3, min_score=0.0):
        res = self.client.query_points(
            collection_name=self.collection,
            query=np.asarray(qvec, dtype=np.float32).tolist(),
            limit=k,
            score_threshold=min_score,
            with_payload=True,
        )
        return [_match_from_payload(r.payload or {}, r.score) for r in res.points]

    def delete_source(self, source):
        self.client.delete(
            collection_name=self.collection,
            points_selector=qmodels.FilterSelector(
                filter=qmodels.Filter(must=[
                    qmodels.FieldCondition(key="source", match=qmodels.MatchValue(value=source))
                ])
            ),
            wait=True,
        )

    def count(self):
        return int(self.client.count(collection_name=self.collection, exact=True).count)

    def reset(self):
        self.client.delete_collection(self.collection)
        self._ensure_collection()

    def list_sources(self):
        payloads = []
        page = None
        while True:
            scroll_res, page = self.client.scroll(
                collection_name=self.collection,
                with_payload=True,
                limit=128,
                offset=page
            )
            payloads.extend(p.payload or {} for p in scroll_res)
            if not page:
                break
        return _summarize_sources(payloads)


# =========================
# KnowledgeBase
# =========================

class KnowledgeBase:
    """Indexes documents into a vector store and answers similarity queries."""

    def __init__(self, embedder: Embedder, store: VectorStore,
                 chunk_size: int = 300, chunk_overlap: int = 50):
        validate_chunking(chunk_size, chunk_overlap)
        self.embedder = embedder
        self.store = store
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap

    # -------- Ingestion --------

    def ingest_text(self, text: str, source: str) -> int:
        chunks = list(chunk_text(text, self.chunk_size, self.chunk_overlap))
        if not chunks:
            self._drop_source(source)
            return 0

        try:
            vectors = self.embedder.embed(chunks)
        except Exception as e:
            raise IndexingError(f"Embedding failed for {source}: {e}") from e

        if vectors.ndim != 2 or vectors.shape[1] != self.store.dimension:
            raise IndexingError(
                f"Embedding for {source} has dimension {vectors.shape[-1]}, "
                f"store expects {self.store.dimension}"
            )

        now = datetime.now(timezone.utc).isoformat()
        ids = np.array([point_id(source, i) for i in range(len(chunks))], dtype=np.uint64)
        payloads = [
            {
                "source": source,
                "chunk_id": i,
                "text": ch,
                "timestamp": now
            }
            for i, ch in enumerate(chunks)
        ]

        # Every earlier chunk of this source goes, not just the ids rewritten below.
        self._drop_source(source)
        try:
            self.store.upsert(ids, vectors, payloads)
        except Exception as e:
            raise IndexingError(f"Store upsert failed for {source}: {e}") from e
        logger.info("Indexed %s: %d segments", source, len(chunks))
        return len(chunks)

    def _drop_source(self, source: str):
        try:
            self.store.delete_source(source)
        except Exception as e:
            raise IndexingError(f"Could not remove old entries for {source}: {e}") from e

    def ingest(self, documents: Iterable[Document]) -> IndexReport:
        report = IndexReport()
        for doc in documents:
            report.segments += self.ingest_text(doc.text, source=doc.source)
            report.documents += 1
        return report

    # -------- Retrieval --------

    def retrieve(self, question: str, k: int = 3, min_score: float = 0.5) -> List[Match]:
        try:
            qv = self.embedder.embed_one(question)
        except Exception as e:
            raise QueryError(f"Embedding failed: {e}") from e
        try:
            return list(self.store.search(qv, k=k, min_score=min_score))
        except Exception as e:
            raise QueryError(f"Search failed: {e}") from e

    def query(self, question: str, k: int = 3, min_score: float = 0.5) -> QueryOutcome:
        try:
            matches = self.retrieve(question, k=k, min_score=min_score)
        except QueryError as e:
            logger.debug("Query %r failed", question, exc_info=True)
            return QueryOutcome(question, error=e)
        return QueryOutcome(question, matches=matches)

    # -------- Maintenance --------

    def reset(self):
        self.store.reset()

    def count(self) -> int:
        return self.store.count()

    def list_sources(self):
        return self.store.list_sources()


def build_embedder(settings: Settings) -> Embedder:
    if settings.embed_provider == "gemini":
        return GeminiEmbedder(
            api_key=settings.google_api_key,
            model_name=settings.gemini_embed_model,
        )
    return LocalEmbedder(settings.local_embed_model)


def build_store(settings: Settings) -> VectorStore:
    if settings.vector_backend == "qdrant":
        return QdrantVectorStore(
            collection=settings.collection,
            dimension=settings.dimension,
            url=settings.qdrant_url,
            api_key=settings.qdrant_api_key,
            host=settings.qdrant_host,
            port=settings.qdrant_port,
        )
    return LiteVectorStore(settings.index_dir, dimension=settings.dimension)


def build_knowledge_base(settings: Settings) -> KnowledgeBase:
    """Create the embedder and store once; any failure becomes a StartupError."""
    try:
        embedder = build_embedder(settings)
    except RAGError:
        raise
    except Exception as e:
        raise StartupError(f"Could not load embedding model: {e}") from e

    if embedder.dimension != settings.dimension:
        raise StartupError(
            f"Embedding model produces {embedder.dimension}-dim vectors "
            f"but EMBED_DIM is {settings.dimension}"
        )

    try:
        store = build_store(settings)
    except RAGError:
        raise
    except Exception as e:
        raise StartupError(f"Could not connect to vector store: {e}") from e

    return KnowledgeBase(embedder, store, settings.chunk_size, settings.chunk_overlap)
