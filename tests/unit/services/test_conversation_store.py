import asyncio

from services.conversation.ConversationStore import DEFAULT_PROMPT, ConversationStore
from services.rag.models.ChunkDocument import ChunkDocument, ChunkMetadata, RetrievalResult


class FakeClock:
    def __init__(self):
        self.now = 1_000.0

    def __call__(self) -> float:
        return self.now


class StubRagStore:
    def __init__(self, results=None, error: Exception | None = None):
        self.results = results or []
        self.error = error
        self.queries: list[str] = []

    async def retrieve(self, query, max_results=5):
        self.queries.append(query)
        if self.error is not None:
            raise self.error
        return self.results[:max_results]


def add(store: ConversationStore, *messages):
    async def scenario():
        return [await store.add_message(*m) for m in messages]

    return asyncio.run(scenario())


def test_identical_consecutive_messages_are_stored_once(helper_config):
    store = ConversationStore(helper_config)
    results = add(store, ("s", "user", "x"), ("s", "user", "x"))

    assert results[1] is None
    assert [m.content for m in store.get_conversation("s")] == ["x"]


def test_same_content_with_different_role_is_kept(helper_config):
    store = ConversationStore(helper_config)
    add(store, ("s", "user", "x"), ("s", "assistant", "x"))
    assert len(store.get_conversation("s")) == 2


def test_formatted_history_pairs_turns_and_uses_system_preamble(helper_config):
    store = ConversationStore(helper_config)
    add(
        store,
        ("s", "system", "Be terse."),
        ("s", "user", "hello"),
        ("s", "assistant", "hi"),
        ("s", "user", "how are you?"),
    )

    history = store.get_formatted_history("s")

    assert history.preamble == "Be terse."
    assert [(t.role, t.message) for t in history.chat_history] == [("USER", "hello"), ("CHATBOT", "hi")]
    assert history.message == "how are you?"


def test_default_prompt_when_last_message_is_not_from_user(helper_config):
    store = ConversationStore(helper_config)
    add(store, ("s", "user", "hello"), ("s", "assistant", "hi"))
    assert store.get_formatted_history("s").message == DEFAULT_PROMPT


def test_rag_context_is_added_to_preamble(helper_config):
    document = ChunkDocument(
        content="def handler(): pass",
        metadata=ChunkMetadata(file_path="/repo/app.py", language="python", category="source"),
    )
    rag = StubRagStore([RetrievalResult(document=document, score=0.876, match_type="semantic")])
    store = ConversationStore(helper_config, rag_store=rag)
    add(store, ("s", "user", "where is the handler?"))

    preamble = store.get_formatted_history_with_rag("s").preamble

    assert rag.queries == ["where is the handler?"]
    assert "# Retrieved Codebase Context" in preamble
    assert "**File**: /repo/app.py" in preamble
    assert "**Relevance**: 87.6%" in preamble
    assert "```python\ndef handler(): pass\n```" in preamble


def test_rag_failure_does_not_block_message(helper_config):
    store = ConversationStore(helper_config, rag_store=StubRagStore(error=RuntimeError("index down")))
    add(store, ("s", "user", "hello"))

    assert len(store.get_conversation("s")) == 1
    assert store.get_formatted_history_with_rag("s").preamble is None


def test_feedback_is_stored_as_tagged_system_message(helper_config):
    store = ConversationStore(helper_config)
    asyncio.run(store.add_feedback("s", "wrong file", "correction"))

    message = store.get_conversation("s")[0]
    assert message.role == "system"
    assert message.content == "User feedback (correction): wrong file"
    assert message.metadata == {"type": "feedback", "feedbackType": "correction"}


def test_least_recently_used_session_is_evicted(helper_config):
    store = ConversationStore(helper_config, session_limit=2)
    add(store, ("a", "user", "1"), ("b", "user", "2"))
    store.get_conversation("a")
    add(store, ("c", "user", "3"))

    assert store.get_conversation("b") == []
    assert len(store.get_conversation("a")) == 1
    assert store.get_stats()["activeConversations"] == 2


def test_idle_sessions_expire(helper_config):
    clock = FakeClock()
    store = ConversationStore(helper_config, ttl_ms=100, clock=clock)
    add(store, ("old", "user", "1"))
    clock.now += 50
    add(store, ("new", "user", "2"))
    clock.now += 60

    assert store.cleanup_expired() == 1
    assert store.get_conversation("old") == []
    assert len(store.get_conversation("new")) == 1


def test_reading_unknown_session_does_not_create_it(helper_config):
    store = ConversationStore(helper_config)
    assert store.get_conversation("nope") == []
    assert store.get_stats()["activeConversations"] == 0


def test_clear_drops_session(helper_config):
    store = ConversationStore(helper_config)
    add(store, ("s", "user", "x"))
    assert store.clear("s") is True
    assert store.clear("s") is False


class SlowRagStore(StubRagStore):
    def __init__(self):
        super().__init__()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def retrieve(self, query, max_results=5):
        self.entered.set()
        await self.release.wait()
        return []


def test_concurrent_write_to_busy_session_is_dropped(helper_config):
    async def scenario():
        rag = SlowRagStore()
        store = ConversationStore(helper_config, rag_store=rag)
        first = asyncio.create_task(store.add_message("s", "user", "first"))
        await rag.entered.wait()
        second = await store.add_message("s", "user", "second")
        rag.release.set()
        return store, await first, second

    store, first, second = asyncio.run(scenario())

    assert first is not None and first.content == "first"
    assert second is None
    assert [m.content for m in store.get_conversation("s")] == ["first"]


def test_parallel_writes_keep_a_single_message(helper_config):
    async def scenario():
        rag = SlowRagStore()
        store = ConversationStore(helper_config, rag_store=rag)

        async def release_later():
            await rag.entered.wait()
            await asyncio.sleep(0)
            rag.release.set()

        results = await asyncio.gather(
            store.add_message("s", "user", "one"),
            store.add_message("s", "user", "two"),
            release_later(),
        )
        return store, results[:2]

    store, results = asyncio.run(scenario())

    assert sum(result is None for result in results) == 1
    assert len(store.get_conversation("s")) == 1
