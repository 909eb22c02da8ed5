"""Tests for core.rag_engine — RAGChat pipeline."""

import asyncio

import pytest

from conftest import FailingChatModel, FakeRateLimiter, FakeVectorStore, PlainIteratorChatModel, RecordingChatModel, match
from ragchat.config.prompt_templates import NO_CONTEXT, NO_HISTORY
from ragchat.src.core import rag_engine
from ragchat.src.core.exceptions import ConfigurationError, GenerationFailure, StoreFailure, ValidationError
from ragchat.src.core.models import ChatDefaults, ChatOptions, ChatStatus, Message
from ragchat.src.core.rag_engine import RAGChat


def _chat(rag, question="What is the capital of France?", **options):
    options.setdefault("streaming", False)
    return asyncio.run(rag.chat(question, options))


def _all_messages(history, session_id=None):
    return asyncio.run(history.get_messages(session_id=session_id, amount=[0, -1]))


async def _consume(stream):
    return "".join([part async for part in stream])


# ---------------------------------------------------------------------------
# End-to-end
# ---------------------------------------------------------------------------

class TestEndToEnd:

    def test_paris(self, vector_store, history, fake_llm):
        rag = RAGChat(vector_store=vector_store, history=history, model=fake_llm)
        assert asyncio.run(rag.context.add({"data_type": "text", "data": "Paris is the capital of France."})) == "OK"
        before = len(_all_messages(history))

        response = _chat(rag, similarity_threshold=0.3, top_k=1)

        assert response.status is ChatStatus.OK
        assert "Paris" in response.context
        assert response.output == "Paris is the capital of France."

        messages = _all_messages(history)
        assert len(messages) == before + 2
        assistant, user = messages[0], messages[1]
        assert user.role == "user"
        assert user.content == "What is the capital of France?"
        assert assistant.role == "assistant"
        assert assistant.content == "Paris is the capital of France."

    def test_accessors(self, vector_store, history, fake_llm):
        rag = RAGChat(vector_store=vector_store, history=history, model=fake_llm)
        assert rag.history is history
        asyncio.run(rag.context.add({"data_type": "text", "data": "x"}))
        assert vector_store.count() == 1

    def test_second_turn_sees_first(self, vector_store, history):
        model = RecordingChatModel(answer="It is Paris.")
        rag = RAGChat(vector_store=vector_store, history=history, model=model)
        _chat(rag, "First question?")
        response = _chat(rag, "Second question?")
        assert [m.content for m in response.history] == ["First question?", "It is Paris."]
        assert "USER MESSAGE: First question?\nYOUR MESSAGE: It is Paris." in model.prompts[-1]


# ---------------------------------------------------------------------------
# Retrieval and prompt preparation
# ---------------------------------------------------------------------------

class TestRetrieve:

    def test_threshold_filter_and_order(self, history):
        store = FakeVectorStore([match(0.9, "high"), match(0.4, "low"), match(0.6, "mid")])
        rag = RAGChat(vector_store=store, history=history, model=RecordingChatModel())
        response = _chat(rag, similarity_threshold=0.5)
        assert response.context == "high\nmid"

    def test_ties_keep_store_order(self, history):
        store = FakeVectorStore([match(0.7, "first", id="a"), match(0.8, "best", id="b"), match(0.7, "second", id="c")])
        rag = RAGChat(vector_store=store, history=history, model=RecordingChatModel())
        assert _chat(rag).context == "best\nfirst\nsecond"

    def test_custom_metadata_key(self, history):
        store = FakeVectorStore([match(0.9, "ignored")])
        store.matches[0].metadata["body"] = "from body"
        rag = RAGChat(vector_store=store, history=history, model=RecordingChatModel())
        assert _chat(rag, metadata_key="body").context == "from body"

    def test_query_arguments(self, history):
        store = FakeVectorStore()
        rag = RAGChat(vector_store=store, history=history, model=RecordingChatModel())
        _chat(rag, "Where?", top_k=3, namespace="docs")
        assert store.queries == [{"query": "Where?", "top_k": 3, "namespace": "docs"}]

    def test_camel_case_query_options(self, history):
        store = FakeVectorStore()
        rag = RAGChat(vector_store=store, history=history, model=RecordingChatModel())
        _chat(rag, "Where?", topK=1, namespace="docs")
        assert store.queries == [{"query": "Where?", "top_k": 1, "namespace": "docs"}]

    def test_camel_case_threshold(self, history):
        store = FakeVectorStore([match(0.9, "a"), match(0.35, "b")])
        rag = RAGChat(vector_store=store, history=history, model=RecordingChatModel())
        assert _chat(rag, similarityThreshold=0.3).context == "a\nb"

    def test_empty_sections_use_fillers(self, history):
        model = RecordingChatModel()
        rag = RAGChat(vector_store=FakeVectorStore(), history=history, model=model)
        _chat(rag)
        assert NO_CONTEXT in model.prompts[0]
        assert NO_HISTORY in model.prompts[0]

    def test_history_window_oldest_first(self, history):
        async def seed():
            for i in range(4):
                await history.add_message(Message(role="user" if i % 2 == 0 else "assistant", content=f"m{i}"), session_id="s")

        asyncio.run(seed())
        rag = RAGChat(vector_store=FakeVectorStore(), history=history, model=RecordingChatModel())
        response = _chat(rag, session_id="s", history_length=2)
        assert [m.content for m in response.history] == ["m2", "m3"]

    def test_custom_prompt(self, history):
        model = RecordingChatModel()
        store = FakeVectorStore([match(0.9, "ctx")])
        rag = RAGChat(vector_store=store, history=history, model=model, prompt="Q={question} C={context} H={chat_history}")
        _chat(rag, "why?")
        assert model.prompts == [f"Q=why? C=ctx H={NO_HISTORY}"]

    def test_custom_prompt_unknown_placeholder(self, history):
        with pytest.raises(ConfigurationError):
            RAGChat(vector_store=FakeVectorStore(), history=history, model=RecordingChatModel(), prompt="{question} {user}")

    def test_braces_in_context_are_literal(self, history):
        model = RecordingChatModel()
        store = FakeVectorStore([match(0.9, "a dict looks like {key}")])
        rag = RAGChat(vector_store=store, history=history, model=model)
        _chat(rag)
        assert "a dict looks like {key}" in model.prompts[0]

    def test_vector_store_failure_propagates(self, history):
        class BrokenStore(FakeVectorStore):
            def query(self, *args, **kwargs):
                raise StoreFailure("vector")

        rag = RAGChat(vector_store=BrokenStore(), history=history, model=RecordingChatModel())
        with pytest.raises(StoreFailure):
            _chat(rag)
        assert _all_messages(history) == []


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

class TestPersist:

    def test_session_and_metadata(self, history):
        rag = RAGChat(vector_store=FakeVectorStore(), history=history, model=RecordingChatModel())
        _chat(rag, session_id="s1", metadata={"source": "web"})
        assistant, user = _all_messages(history, "s1")
        assert assistant.metadata == {"source": "web", "model": "fake-model-1"}
        assert user.metadata is None
        assert user.id and assistant.id and user.id != assistant.id

    def test_history_ttl_applied(self, history, clock):
        rag = RAGChat(vector_store=FakeVectorStore(), history=history, model=RecordingChatModel())
        _chat(rag, history_ttl=30)
        clock.advance(31)
        assert _all_messages(history) == []

    def test_constructor_defaults(self, history):
        defaults = ChatDefaults(session_id="from-defaults", history_length=1)
        rag = RAGChat(vector_store=FakeVectorStore(), history=history, model=RecordingChatModel(), defaults=defaults)
        _chat(rag)
        assert len(_all_messages(history, "from-defaults")) == 2

    def test_exchange_written_in_one_store_call(self, history, list_store):
        rag = RAGChat(vector_store=FakeVectorStore(), history=history, model=RecordingChatModel())
        _chat(rag, "Q?")
        assert list_store.pushes == 1
        assistant, user = _all_messages(history)
        assert (assistant.role, user.role) == ("assistant", "user")


# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------

class TestRateLimit:

    def test_denied_call_does_not_persist(self, history):
        model = RecordingChatModel()
        limiter = FakeRateLimiter(budget=1)
        rag = RAGChat(vector_store=FakeVectorStore(), history=history, model=model, ratelimit=limiter)

        assert _chat(rag).status is ChatStatus.OK
        before = _all_messages(history)

        response = _chat(rag)
        assert response.denied
        assert response.retry_after > 0
        assert response.output == ""
        assert _all_messages(history) == before
        assert len(model.prompts) == 1

    def test_denied_before_retrieval(self, history):
        store = FakeVectorStore()
        rag = RAGChat(vector_store=store, history=history, model=RecordingChatModel(), ratelimit=FakeRateLimiter(budget=0))
        assert _chat(rag).status is ChatStatus.DENIED
        assert store.queries == []

    def test_limit_keyed_by_ratelimit_session(self, history):
        limiter = FakeRateLimiter()
        rag = RAGChat(vector_store=FakeVectorStore(), history=history, model=RecordingChatModel(), ratelimit=limiter)
        _chat(rag, ratelimit_session_id="user-42")
        assert limiter.counts == {"user-42": 1}


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------

class TestGenerate:

    def test_failure_leaves_history_unchanged(self, history):
        rag = RAGChat(vector_store=FakeVectorStore(), history=history, model=FailingChatModel())
        with pytest.raises(GenerationFailure) as exc_info:
            _chat(rag)
        assert isinstance(exc_info.value.original_error, RuntimeError)
        assert _all_messages(history) == []

    def test_stream_persists_after_exhaustion(self, history):
        model = RecordingChatModel(answer="Paris, of course.", chunk_size=4)
        rag = RAGChat(vector_store=FakeVectorStore(), history=history, model=model)

        async def run():
            response = await rag.chat("Capital?", ChatOptions(streaming=True))
            assert response.output == ""
            assert await history.get_messages(amount=[0, -1]) == []
            return await _consume(response.stream)

        assert asyncio.run(run()) == "Paris, of course."
        assistant, user = _all_messages(history)
        assert assistant.content == "Paris, of course."
        assert user.content == "Capital?"

    def test_abandoned_stream_does_not_persist(self, history):
        model = RecordingChatModel(answer="a long answer that streams", chunk_size=2)
        rag = RAGChat(vector_store=FakeVectorStore(), history=history, model=model)

        async def run():
            response = await rag.chat("Q?", {"streaming": True})
            first = await response.stream.__anext__()
            await response.stream.aclose()
            return first

        assert asyncio.run(run()) == "a "
        assert model.stream_closed
        assert _all_messages(history) == []

    def test_broken_stream_raises_and_does_not_persist(self, history):
        rag = RAGChat(vector_store=FakeVectorStore(), history=history, model=FailingChatModel())

        async def run():
            response = await rag.chat("Q?", {"streaming": True})
            await _consume(response.stream)

        with pytest.raises(GenerationFailure):
            asyncio.run(run())
        assert _all_messages(history) == []

    def test_langchain_fake_model_streams(self, history, fake_llm):
        rag = RAGChat(vector_store=FakeVectorStore(), history=history, model=fake_llm)

        async def run():
            response = await rag.chat("Q?", {"streaming": True})
            return await _consume(response.stream)

        assert asyncio.run(run()) == "Paris is the capital of France."
        assert len(_all_messages(history)) == 2

    def test_plain_async_iterator_stream(self, history):
        rag = RAGChat(vector_store=FakeVectorStore(), history=history, model=PlainIteratorChatModel(answer="Paris, of course.", chunk_size=3))

        async def run():
            response = await rag.chat("Q?", {"streaming": True})
            return await _consume(response.stream)

        assert asyncio.run(run()) == "Paris, of course."
        assert _all_messages(history)[0].content == "Paris, of course."


# ---------------------------------------------------------------------------
# Validation and configuration
# ---------------------------------------------------------------------------

class TestValidation:

    @pytest.mark.parametrize("question", ["", "   ", None])
    def test_empty_question(self, history, question):
        rag = RAGChat(vector_store=FakeVectorStore(), history=history, model=RecordingChatModel())
        with pytest.raises(ValidationError):
            asyncio.run(rag.chat(question, {"streaming": False}))

    @pytest.mark.parametrize("options", [{}, {"streaming": False, "top_k": 0}, {"streaming": False, "similarity_threshold": 1.5}, {"streaming": False, "nameSpace": "docs"}])
    def test_invalid_options(self, history, options):
        rag = RAGChat(vector_store=FakeVectorStore(), history=history, model=RecordingChatModel())
        with pytest.raises(ValidationError):
            asyncio.run(rag.chat("Q?", options))

    def test_missing_api_key_without_model(self, monkeypatch, history):
        monkeypatch.setattr(rag_engine.settings, "GOOGLE_API_KEY", None)
        with pytest.raises(ConfigurationError):
            RAGChat(vector_store=FakeVectorStore(), history=history)
