"""
Pytest fixtures and fakes for RAGChat tests.

No test talks to Gemini or MongoDB: the embedder, chat models, list store
and rate limiter are in-process fakes.  LanceDB runs for real on tmp_path.
"""

import hashlib
import math
import re
import time

import pytest
from langchain_core.language_models.fake_chat_models import FakeListChatModel
from langchain_core.messages import AIMessage, AIMessageChunk

from ragchat.src.core.models import QueryMatch, RateLimitResult, SaveStatus
from ragchat.src.database.history import HistoryStore, slice_inclusive
from ragchat.src.database.vector_store import VectorStore

_TOKEN_RE = re.compile(r"\w+")


# ---------------------------------------------------------------------------
# Embedder
# ---------------------------------------------------------------------------

class HashingEmbedder:
    """Deterministic bag-of-words embedder: shared words mean closer vectors."""

    def __init__(self, dimension=64):
        self.dimension = dimension
        self.calls = 0

    def _vector(self, text):
        vector = [0.0] * self.dimension
        for token in _TOKEN_RE.findall(text.lower()):
            bucket = int(hashlib.md5(token.encode("utf-8")).hexdigest(), 16) % self.dimension
            vector[bucket] += 1.0
        norm = math.sqrt(sum(v * v for v in vector)) or 1.0
        return [v / norm for v in vector]

    def embed_documents(self, texts):
        self.calls += 1
        return [self._vector(t) for t in texts]

    def embed_query(self, text):
        return self._vector(text)


class FailingEmbedder(HashingEmbedder):
    def embed_documents(self, texts):
        raise RuntimeError("embedding service down")


class ShortEmbedder(HashingEmbedder):
    """Drops the last vector of every batch."""

    def embed_documents(self, texts):
        return super().embed_documents(texts)[:-1]


# ---------------------------------------------------------------------------
# List store
# ---------------------------------------------------------------------------

class InMemoryListStore:
    """ListStore with an injectable clock so TTL expiry is testable."""

    def __init__(self, clock=None):
        self.clock = clock or time.monotonic
        self.lists = {}
        self.expiry = {}
        self.fail = False
        self.pushes = 0

    def _check(self):
        if self.fail:
            raise ConnectionError("list store unreachable")

    def _evict(self, key):
        expires_at = self.expiry.get(key)
        if expires_at is not None and expires_at <= self.clock():
            self.lists.pop(key, None)
            self.expiry.pop(key, None)

    async def push_front(self, key, *values):
        self._check()
        self._evict(key)
        self.pushes += 1
        items = self.lists.setdefault(key, [])
        for value in values:
            items.insert(0, value)

    async def range(self, key, start, end):
        self._check()
        self._evict(key)
        return slice_inclusive(self.lists.get(key, []), start, end)

    async def expire(self, key, seconds):
        self._check()
        if key in self.lists:
            self.expiry[key] = self.clock() + seconds

    async def delete(self, key):
        self._check()
        self.lists.pop(key, None)
        self.expiry.pop(key, None)


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


# ---------------------------------------------------------------------------
# Chat models
# ---------------------------------------------------------------------------

class RecordingChatModel:
    """Chat model that records every prompt and answers with a fixed text."""

    model = "fake-model-1"

    def __init__(self, answer="Paris is the capital of France.", chunk_size=5):
        self.answer = answer
        self.chunk_size = chunk_size
        self.prompts = []
        self.stream_closed = False

    async def ainvoke(self, input, **kwargs):
        self.prompts.append(input[0].content)
        return AIMessage(content=self.answer)

    async def astream(self, input, **kwargs):
        self.prompts.append(input[0].content)
        try:
            for i in range(0, len(self.answer), self.chunk_size):
                yield AIMessageChunk(content=self.answer[i : i + self.chunk_size])
        finally:
            self.stream_closed = True


class PlainIteratorChatModel(RecordingChatModel):
    """Streams through a bare async iterator that has no aclose()."""

    class _Chunks:
        def __init__(self, parts):
            self._parts = iter(parts)

        def __aiter__(self):
            return self

        async def __anext__(self):
            try:
                return AIMessageChunk(content=next(self._parts))
            except StopIteration:
                raise StopAsyncIteration from None

    def astream(self, input, **kwargs):
        self.prompts.append(input[0].content)
        return self._Chunks(self.answer[i : i + self.chunk_size] for i in range(0, len(self.answer), self.chunk_size))


class FailingChatModel:
    """Fails on invoke, and mid-way through a stream."""

    model = "broken-model"

    async def ainvoke(self, input, **kwargs):
        raise RuntimeError("model unavailable")

    async def astream(self, input, **kwargs):
        yield AIMessageChunk(content="partial ")
        raise RuntimeError("stream broke")


# ---------------------------------------------------------------------------
# Vector store / rate limiter
# ---------------------------------------------------------------------------

class FakeVectorStore:
    """Returns canned matches and records every call."""

    def __init__(self, matches=None, save_status=SaveStatus.SUCCESS, error=None):
        self.matches = list(matches or [])
        self.save_status = save_status
        self.error = error
        self.saved = []
        self.queries = []
        self.deleted = []
        self.resets = []

    def save(self, records):
        if self.error is not None:
            raise self.error
        self.saved.extend(records)
        return self.save_status

    def query(self, query, top_k=5, namespace="", filter=None):
        self.queries.append({"query": query, "top_k": top_k, "namespace": namespace})
        return list(self.matches)[:top_k]

    def delete(self, ids, namespace=""):
        if self.error is not None:
            raise self.error
        self.deleted.append((list(ids), namespace))

    def reset(self, namespace=None):
        if self.error is not None:
            raise self.error
        self.resets.append(namespace)


class FakeRateLimiter:
    """Allows *budget* calls per key, then refuses."""

    def __init__(self, budget=10, window_ms=60_000):
        self.budget = budget
        self.window_ms = window_ms
        self.counts = {}

    async def limit(self, key):
        self.counts[key] = self.counts.get(key, 0) + 1
        count = self.counts[key]
        reset = int(time.time() * 1000) + self.window_ms
        return RateLimitResult(success=count <= self.budget, limit=self.budget, remaining=max(self.budget - count, 0), reset=reset)


def match(score, text, id=None):
    return QueryMatch(id=id or f"m-{score}", score=score, metadata={"text": text})


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def embedder():
    return HashingEmbedder()


@pytest.fixture
def vector_store(tmp_path, embedder):
    """Real LanceDB store in a per-test directory."""
    return VectorStore(embedder=embedder, db_path=str(tmp_path / "lancedb"), table_name="context")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def list_store(clock):
    return InMemoryListStore(clock=clock)


@pytest.fixture
def history(list_store):
    return HistoryStore(store=list_store, default_history_length=5)


@pytest.fixture
def fake_llm():
    return FakeListChatModel(responses=["Paris is the capital of France."])
