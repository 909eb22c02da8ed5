"""
RAGChat - Chat Orchestrator
============================
Orchestrates one retrieval-augmented chat turn over the context,
history and rate-limit layers.

Architecture (OOP)
------------------
``ChatModel``
    Structural type for the language model: ``ainvoke`` for a full
    answer, ``astream`` for incremental chunks.  Every LangChain chat
    model (``ChatGoogleGenerativeAI`` included) already satisfies it.

``RAGChat``
    Stateless pipeline orchestrator.  Flow:
        1. RATE_CHECK → count the call against ``ratelimit_session_id``;
           a refusal ends the call with status ``DENIED``.
        2. RETRIEVE   → vector query ∥ history window (``asyncio.gather``).
        3. PREPARE    → threshold filter, score sort, prompt population.
        4. GENERATE   → ``ainvoke`` or, when streaming, ``astream``.
        5. PERSIST    → user question then assistant answer, with TTL.

    A failed generation raises ``GenerationFailure`` and persists nothing.
    A streamed answer is persisted only once the caller has consumed the
    whole stream; closing the iterator early closes the model stream and
    skips PERSIST.

Usage:
    from ragchat.src.core.rag_engine import RAGChat
    rag = RAGChat()
    await rag.context.add({"data_type": "text", "data": "Paris is the capital of France."})
    response = await rag.chat("What is the capital of France?", {"streaming": False})
"""

from __future__ import annotations

import asyncio
import contextlib
import string
import time
import uuid
from collections.abc import AsyncIterator, Mapping, Sequence
from typing import Any, Protocol, runtime_checkable

from langchain_core.messages import HumanMessage
from pydantic import ValidationError as PydanticValidationError

from ragchat.config.prompt_templates import ASSISTANT_LABEL, DEFAULT_PROMPT_TEMPLATE, NO_CONTEXT, NO_HISTORY, PROMPT_PLACEHOLDERS, USER_LABEL
from ragchat.config.settings import settings
from ragchat.src.core.context import ContextService
from ragchat.src.core.exceptions import ConfigurationError, GenerationFailure, ValidationError
from ragchat.src.core.models import ChatDefaults, ChatOptions, ChatResponse, ChatStatus, Message, QueryMatch
from ragchat.src.database.history import HistoryStore
from ragchat.src.database.ratelimit import RateLimiter
from ragchat.src.database.vector_store import VectorStore
from ragchat.src.utils.logger import get_logger

logger = get_logger(__name__)


# ══════════════════════════════════════════════════════════════════════
#  CHAT MODEL PROTOCOL
# ══════════════════════════════════════════════════════════════════════


@runtime_checkable
class ChatModel(Protocol):
    """Anything that can answer a list of chat messages, whole or streamed."""

    async def ainvoke(self, input: Any, **kwargs: Any) -> Any: ...

    def astream(self, input: Any, **kwargs: Any) -> AsyncIterator[Any]: ...


def _content_text(message: Any) -> str:
    """Extract plain text from a LangChain message or chunk."""
    content = getattr(message, "content", message)
    if isinstance(content, str):
        return content
    if isinstance(content, Sequence):
        # Multi-part content: keep the text parts only
        parts = [p if isinstance(p, str) else p.get("text", "") for p in content if isinstance(p, (str, Mapping))]
        return "".join(parts)
    return str(content)


def _validate_prompt(template: str) -> str:
    """Reject templates with placeholders other than the three supported ones."""
    try:
        fields = {name for _, name, _, _ in string.Formatter().parse(template) if name is not None}
    except ValueError as exc:
        raise ConfigurationError("Prompt template is not a valid format string", str(exc)) from exc
    unknown = fields - PROMPT_PLACEHOLDERS
    if unknown:
        raise ConfigurationError("Prompt template uses unsupported placeholders", f"unknown={sorted(unknown)}, allowed={sorted(PROMPT_PLACEHOLDERS)}")
    return template


# ══════════════════════════════════════════════════════════════════════
#  RAG CHAT
# ══════════════════════════════════════════════════════════════════════


class RAGChat:
    """
    Retrieval-augmented chat over a vector store and a session history.

    Parameters
    ----------
    vector_store
        An initialised ``VectorStore``.  Defaults to one built from settings.
    history
        A ``HistoryStore``.  Defaults to the MongoDB-backed store.
    model
        Any ``ChatModel``.  Defaults to Gemini via LangChain (requires
        ``GOOGLE_API_KEY``).
    ratelimit
        Optional ``RateLimiter``.  Without one, RATE_CHECK is skipped.
    prompt
        Optional ``str.format`` template using ``{chat_history}``,
        ``{context}`` and ``{question}``.
    defaults
        Chat defaults merged under every call's ``ChatOptions``.
        Defaults to ``ChatDefaults.from_settings(settings)``.
    """

    __slots__ = ("_store", "_context", "_history", "_llm", "_ratelimit", "_prompt", "_defaults")

    def __init__(self, vector_store: VectorStore | None = None, history: HistoryStore | None = None, model: ChatModel | None = None, ratelimit: RateLimiter | None = None, prompt: str | None = None, defaults: ChatDefaults | None = None) -> None:
        self._store = vector_store if vector_store is not None else VectorStore()
        self._context = ContextService(self._store)
        self._history = history if history is not None else HistoryStore()
        self._llm = model if model is not None else self._init_llm()
        self._ratelimit = ratelimit
        self._prompt = _validate_prompt(prompt or DEFAULT_PROMPT_TEMPLATE)
        self._defaults = defaults or ChatDefaults.from_settings(settings)


    @staticmethod
    def _init_llm() -> ChatModel:
        """Initialise the Gemini LLM via LangChain."""
        if settings.GOOGLE_API_KEY is None:
            raise ConfigurationError("RAGChat requires either a chat model or GOOGLE_API_KEY.")
        from langchain_google_genai import ChatGoogleGenerativeAI

        llm = ChatGoogleGenerativeAI(model=settings.LLM_MODEL, temperature=settings.LLM_TEMPERATURE, google_api_key=settings.GOOGLE_API_KEY.get_secret_value())
        logger.info("LLM initialised: %s (temperature=%.1f)", settings.LLM_MODEL, settings.LLM_TEMPERATURE)
        return llm


    @property
    def context(self) -> ContextService:
        return self._context


    @property
    def history(self) -> HistoryStore:
        return self._history


    @property
    def model_name(self) -> str | None:
        """Name reported by the chat model, if it exposes one."""
        for attr in ("model", "model_name"):
            name = getattr(self._llm, attr, None)
            if isinstance(name, str) and name:
                return name
        return None


    async def chat(self, question: str, options: ChatOptions | Mapping[str, Any]) -> ChatResponse:
        """
        Answer *question* grounded in the vector store and the session history.

        Returns
        -------
        ChatResponse
            ``OK`` with ``output`` (or ``stream`` when streaming), or
            ``DENIED`` with ``retry_after`` when the rate limiter refuses.

        Raises
        ------
        ValidationError
            Empty question or malformed options.
        StoreFailure
            The vector, history or rate-limit store failed.
        GenerationFailure
            The model call failed (non-streaming; streaming raises while iterating).
        """
        if not isinstance(question, str) or not question.strip():
            raise ValidationError("Question must be a non-empty string", repr(question))
        streaming, resolved = self._resolve(options)
        t_start = time.perf_counter()

        # ── 1. Rate check ─────────────────────────────────────────────
        ratelimit = None
        if self._ratelimit is not None:
            ratelimit = await self._ratelimit.limit(resolved.ratelimit_session_id)
            if not ratelimit.success:
                logger.warning("[CHAT] Rate limit exceeded for '%s'; retry in %.0fs.", resolved.ratelimit_session_id, ratelimit.retry_after)
                return ChatResponse(status=ChatStatus.DENIED, retry_after=ratelimit.retry_after, ratelimit=ratelimit)

        # ── 2. Retrieve (vector query ∥ history window) ───────────────
        t_retrieve = time.perf_counter()
        matches, recent = await asyncio.gather(
            asyncio.to_thread(self._store.query, question, top_k=resolved.top_k, namespace=resolved.namespace),
            self._history.get_messages(session_id=resolved.session_id, amount=resolved.history_length),
        )
        retrieve_ms = (time.perf_counter() - t_retrieve) * 1000
        logger.info("[CHAT] Retrieved %d match(es) and %d message(s) in %.1fms", len(matches), len(recent), retrieve_ms)

        # ── 3. Prepare ────────────────────────────────────────────────
        context = self._build_context(matches, resolved.similarity_threshold, resolved.metadata_key)
        history = list(reversed(recent))
        prompt = self._prompt.format(chat_history=self._format_history(history), context=context or NO_CONTEXT, question=question)
        messages = [HumanMessage(content=prompt)]

        # ── 4/5. Generate + persist ───────────────────────────────────
        if streaming:
            stream = self._stream(messages, question, resolved)
            return ChatResponse(status=ChatStatus.OK, stream=stream, context=context, history=history, ratelimit=ratelimit)

        t_llm = time.perf_counter()
        try:
            response = await self._llm.ainvoke(messages)
        except Exception as exc:
            logger.exception("[CHAT] LLM call failed.")
            raise GenerationFailure(exc) from exc
        answer = _content_text(response)
        llm_ms = (time.perf_counter() - t_llm) * 1000
        logger.info("[CHAT] LLM response: %.1fms (%d chars)", llm_ms, len(answer))

        await self._persist(question, answer, resolved)

        total_ms = (time.perf_counter() - t_start) * 1000
        logger.info("[CHAT] Pipeline total: %.1fms (retrieve=%.1f, llm=%.1f)", total_ms, retrieve_ms, llm_ms)
        return ChatResponse(status=ChatStatus.OK, output=answer, context=context, history=history, ratelimit=ratelimit)

    # ══════════════════════════════════════════════════════════════════
    #  STREAMING
    # ══════════════════════════════════════════════════════════════════

    async def _stream(self, messages: list[HumanMessage], question: str, resolved: ChatDefaults) -> AsyncIterator[str]:
        """Yield the answer as it arrives; persist only after the model stream ends."""
        parts: list[str] = []
        t_llm = time.perf_counter()
        try:
            chunks = self._llm.astream(messages)
            # Plain async iterators have nothing to close
            closer = contextlib.aclosing(chunks) if hasattr(chunks, "aclose") else contextlib.nullcontext(chunks)
            async with closer:
                async for chunk in chunks:
                    text = _content_text(chunk)
                    if text:
                        parts.append(text)
                        yield text
        except Exception as exc:
            logger.exception("[CHAT] LLM stream failed after %d chunk(s).", len(parts))
            raise GenerationFailure(exc, "Language model stream failed") from exc

        answer = "".join(parts)
        logger.info("[CHAT] LLM stream complete: %.1fms (%d chars)", (time.perf_counter() - t_llm) * 1000, len(answer))
        await self._persist(question, answer, resolved)

    # ══════════════════════════════════════════════════════════════════
    #  HELPERS
    # ══════════════════════════════════════════════════════════════════

    def _resolve(self, options: ChatOptions | Mapping[str, Any]) -> tuple[bool, ChatDefaults]:
        try:
            if not isinstance(options, ChatOptions):
                options = ChatOptions.model_validate(options)
        except PydanticValidationError as exc:
            raise ValidationError("Invalid chat options", str(exc)) from exc
        return options.streaming, options.resolve(self._defaults)


    async def _persist(self, question: str, answer: str, resolved: ChatDefaults) -> None:
        """Append the user question and the assistant answer to the session in one write."""
        metadata = dict(resolved.metadata)
        if self.model_name:
            metadata["model"] = self.model_name

        user = Message(role="user", content=question, id=uuid.uuid4().hex)
        assistant = Message(role="assistant", content=answer, metadata=metadata or None, id=uuid.uuid4().hex)

        await self._history.add_messages([user, assistant], session_id=resolved.session_id, session_ttl=resolved.history_ttl)
        logger.info("[CHAT] Exchange persisted to session '%s'.", resolved.session_id)


    @staticmethod
    def _build_context(matches: list[QueryMatch], threshold: float, metadata_key: str) -> str:
        """Keep matches scoring at least *threshold*, best first, ties in store order."""
        kept = sorted((m for m in matches if m.score >= threshold), key=lambda m: m.score, reverse=True)
        logger.debug("[CHAT] %d/%d match(es) passed threshold %.2f.", len(kept), len(matches), threshold)
        return "\n".join(str(m.metadata[metadata_key]) for m in kept if m.metadata.get(metadata_key) is not None)


    @staticmethod
    def _format_history(messages: list[Message]) -> str:
        """Format oldest-first messages into a readable conversation block."""
        if not messages:
            return NO_HISTORY
        return "\n".join(f"{USER_LABEL if m.role == 'user' else ASSISTANT_LABEL}: {m.content}" for m in messages)
