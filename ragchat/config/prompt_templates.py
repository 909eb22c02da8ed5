"""
RAGChat - Prompt Templates
===========================
Centralised prompt management for the chat pipeline.  All prompts live
here so they can be versioned and reviewed independently of application
logic.

Every chat template is a ``str.format`` template exposing exactly three
placeholders: ``{chat_history}``, ``{context}`` and ``{question}``.

Exports
-------
DEFAULT_PROMPT_TEMPLATE, PROMPT_PLACEHOLDERS, NO_HISTORY, NO_CONTEXT,
USER_LABEL, ASSISTANT_LABEL.
"""

# ══════════════════════════════════════════════════════════════════════
#  PLACEHOLDERS
# ══════════════════════════════════════════════════════════════════════

PROMPT_PLACEHOLDERS: frozenset[str] = frozenset({"chat_history", "context", "question"})


# ══════════════════════════════════════════════════════════════════════
#  DEFAULT CHAT PROMPT
# ══════════════════════════════════════════════════════════════════════

DEFAULT_PROMPT_TEMPLATE: str = """You are a friendly AI assistant augmented with a vector store.
To help you answer the questions, a context will be provided. This context is generated by querying the vector store with the user question.
Answer the question at the end using only the information available in the context and chat history.
If the answer is not available in the chat history or context, do not answer the question and politely let the user know that you can only answer if the answer is available in context or the chat history.

-------------
Chat history:
{chat_history}
-------------
Context:
{context}
-------------

Question: {question}
Helpful answer:"""


# ══════════════════════════════════════════════════════════════════════
#  EMPTY-SECTION FILLERS & ROLE LABELS
# ══════════════════════════════════════════════════════════════════════

NO_HISTORY: str = "(No previous conversation.)"
NO_CONTEXT: str = "(No relevant context found.)"

USER_LABEL: str = "USER MESSAGE"
ASSISTANT_LABEL: str = "YOUR MESSAGE"
