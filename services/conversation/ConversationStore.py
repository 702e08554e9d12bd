import asyncio
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable

from services.conversation.models.Message import ChatTurn, FormattedHistory, Message
from services.rag.RAGDocumentStore import RAGDocumentStore
from services.rag.models.ChunkDocument import RetrievalResult
from shared.helper.HelperConfig import HelperConfig
from shared.resilience.LruTtlCache import make_dedup_key

DEFAULT_PROMPT = "Please continue our conversation."

BASE_PREAMBLE = (
    "You are a coding assistant with retrieval-augmented generation. "
    "Excerpts from the user's indexed codebase are attached below when they are relevant to the question."
)

RAG_INSTRUCTION = (
    "Please use this context to give specific, actionable answers that follow the patterns "
    "and architecture of the existing codebase. Say so when the context does not cover the question."
)


@dataclass
class Session:
    created: float
    last_accessed: float
    messages: list[Message] = field(default_factory=list)
    rag_context: list[RetrievalResult] = field(default_factory=list)
    last_fingerprint: str | None = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class ConversationStore:
    """Per-session message logs with TTL expiry, LRU eviction and RAG-augmented history assembly.

    Sessions are kept in last-access order so the least recently used one can
    be evicted in O(1) once ``session_limit`` is exceeded. Each session has a
    single-writer flag: a message arriving while another is being added to the
    same session is dropped, as is a message identical to the previous one.
    """

    def __init__(
        self,
        helper_config: HelperConfig,
        rag_store: RAGDocumentStore | None = None,
        ttl_ms: float | None = None,
        session_limit: int | None = None,
        cleanup_interval_ms: float | None = None,
        clock: Callable[[], float] | None = None,
    ):
        self.logging = helper_config.get_logger()
        self.rag_store = rag_store
        self.ttl_ms = ttl_ms if ttl_ms is not None else helper_config.get_number_val("CONVERSATION_TTL_MS", default=30 * 60 * 1000)
        self.session_limit = int(session_limit or helper_config.get_number_val("CONVERSATION_SESSION_LIMIT", default=1000))
        self.cleanup_interval_ms = cleanup_interval_ms or helper_config.get_number_val("CONVERSATION_CLEANUP_INTERVAL_MS", default=5 * 60 * 1000)
        self._clock = clock or (lambda: time.time() * 1000)

        self._sessions: OrderedDict[str, Session] = OrderedDict()
        self._cleanup_task: asyncio.Task | None = None

    ##########################################
    ################ CORE ####################
    ##########################################

    async def add_message(self, session_id: str, role: str, content: str, metadata: dict | None = None) -> Message | None:
        """Append a message to a session, creating the session if needed.

        User messages refresh the session's RAG context first; a retrieval
        failure is logged and the message is still added.

        Returns:
            Message | None: The stored message, or None if it duplicated the
            previous message or another write to the session was in progress.
        """
        session = self._touch(session_id, create=True)
        fingerprint = make_dedup_key({"role": role, "content": content, "metadata": metadata or {}})
        if fingerprint == session.last_fingerprint:
            return None
        if session.lock.locked():
            return None

        async with session.lock:
            if role == "user" and self.rag_store is not None:
                try:
                    session.rag_context = await self.rag_store.retrieve(content, max_results=3)
                except Exception as e:
                    self.logging.warning("RAG retrieval failed for session %s: %s", session_id, e)

            message = Message(role=role, content=content, timestamp=int(self._clock()), metadata=metadata or None)
            session.messages.append(message)
            session.last_fingerprint = fingerprint
            session.last_accessed = self._clock()
            return message

    async def add_feedback(self, session_id: str, feedback: str, feedback_type: str = "correction") -> Message | None:
        """Record user feedback as a system message tagged with its type."""
        return await self.add_message(
            session_id,
            "system",
            f"User feedback ({feedback_type}): {feedback}",
            {"type": "feedback", "feedbackType": feedback_type},
        )

    def get_conversation(self, session_id: str) -> list[Message]:
        session = self._touch(session_id, create=False)
        return list(session.messages) if session else []

    def clear(self, session_id: str) -> bool:
        return self._sessions.pop(session_id, None) is not None

    ##########################################
    ############### FORMATTING ###############
    ##########################################

    def get_formatted_history(self, session_id: str) -> FormattedHistory:
        """Split a session into preamble, paired history turns and the current user message."""
        messages = self.get_conversation(session_id)
        system_messages = [m.content for m in messages if m.role == "system"]
        dialogue = [m for m in messages if m.role != "system"]

        chat_history: list[ChatTurn] = []
        for i in range(0, len(dialogue) - 1, 2):
            user_msg, assistant_msg = dialogue[i], dialogue[i + 1]
            if user_msg.role == "user" and assistant_msg.role == "assistant":
                chat_history.append(ChatTurn(role="USER", message=user_msg.content))
                chat_history.append(ChatTurn(role="CHATBOT", message=assistant_msg.content))

        last = dialogue[-1] if dialogue else None
        current = last.content if last is not None and last.role == "user" else DEFAULT_PROMPT
        return FormattedHistory(
            preamble="\n\n".join(system_messages) or None,
            chat_history=chat_history,
            message=current,
        )

    def get_formatted_history_with_rag(self, session_id: str) -> FormattedHistory:
        history = self.get_formatted_history(session_id)
        session = self._sessions.get(session_id)
        if session is not None and session.rag_context:
            history.preamble = self.build_enhanced_preamble(history.preamble, self.format_rag_context(session.rag_context))
        return history

    @staticmethod
    def format_rag_context(results: list[RetrievalResult]) -> str:
        sections = []
        for idx, result in enumerate(results, start=1):
            meta = result.document.metadata
            sections.append(
                f"## Relevant Code Context {idx}\n"
                f"**File**: {meta.file_path}\n"
                f"**Type**: {meta.category} ({meta.language})\n"
                f"**Relevance**: {result.score * 100:.1f}%\n\n"
                f"```{meta.language}\n{result.document.content}\n```"
            )
        return "# Retrieved Codebase Context\n\n" + "\n\n".join(sections) + "\n\n" + RAG_INSTRUCTION

    @staticmethod
    def build_enhanced_preamble(preamble: str | None, rag_context: str) -> str:
        parts = [BASE_PREAMBLE]
        if preamble:
            parts.append(preamble)
        parts.append(rag_context)
        return "\n\n".join(parts)

    ##########################################
    ############### EXPIRY ###################
    ##########################################

    def cleanup_expired(self) -> int:
        """Drop sessions idle for longer than the TTL. Returns the number removed."""
        cutoff = self._clock() - self.ttl_ms
        expired = [sid for sid, session in self._sessions.items() if session.last_accessed < cutoff]
        for sid in expired:
            del self._sessions[sid]
        if expired:
            self.logging.debug("Expired %d idle conversations", len(expired))
        return len(expired)

    def start_cleanup(self) -> None:
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.get_running_loop().create_task(self._cleanup_loop())

    async def shutdown(self) -> None:
        if self._cleanup_task is not None and not self._cleanup_task.done():
            self._cleanup_task.cancel()
            await asyncio.gather(self._cleanup_task, return_exceptions=True)
        self._cleanup_task = None

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval_ms / 1000)
            self.cleanup_expired()

    ##########################################
    ################ GETTER ##################
    ##########################################

    def get_stats(self) -> dict:
        return {
            "activeConversations": len(self._sessions),
            "totalMessages": sum(len(s.messages) for s in self._sessions.values()),
            "ragEnabled": self.rag_store is not None,
        }

    def get_rag_context(self, session_id: str) -> list[RetrievalResult]:
        session = self._sessions.get(session_id)
        return list(session.rag_context) if session else []

    ##########################################
    ############### HELPERS ##################
    ##########################################

    def _touch(self, session_id: str, create: bool) -> Session | None:
        session = self._sessions.get(session_id)
        now = self._clock()
        if session is None:
            if not create:
                return None
            session = Session(created=now, last_accessed=now)
            self._sessions[session_id] = session
            while len(self._sessions) > self.session_limit:
                evicted, _ = self._sessions.popitem(last=False)
                self.logging.debug("Evicted least recently used conversation %s", evicted)
        else:
            session.last_accessed = now
            self._sessions.move_to_end(session_id)
        return session
