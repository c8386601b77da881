import asyncio

import pytest

from kbsearch.chat_service import ChatService
from kbsearch.conversation import ConversationManager, GenerationInProgressError
from kbsearch.llm import RuntimeLLMClient
from kbsearch.parsers import UploadedFile
from kbsearch.prompting import NO_READABLE_DOCUMENTS_MESSAGE
from kbsearch.session_store import (
    DOCUMENTS_KEY,
    MESSAGES_KEY,
    InMemorySessionStore,
    load_snapshot,
)


def _run(manager, query, on_update=None):
    async def run():
        updates = []
        async for message in manager.send_message(query):
            updates.append(message)
            if on_update is not None:
                on_update(updates)
        return updates

    return asyncio.run(run())


class FailingStore(InMemorySessionStore):
    def write(self, key, value):
        raise OSError("disk full")


def test_ingest_adds_new_names_and_skips_duplicates(make_manager):
    manager = make_manager()
    added, skipped = manager.ingest(
        [
            UploadedFile("a.txt", "text/plain", b"alpha"),
            UploadedFile("a.txt", "text/plain", b"second copy"),
            UploadedFile("b.png", "image/png", b"img"),
        ]
    )
    assert [d.name for d in added] == ["a.txt", "b.png"]
    assert [d.name for d in skipped] == ["a.txt"]
    assert manager.get_document("a.txt").content == "alpha"
    assert manager.get_document("b.png").readable is False

    added, skipped = manager.ingest([UploadedFile("a.txt", "text/plain", b"again")])
    assert added == []
    assert len(manager.documents) == 2


def test_remove_and_clear_are_persisted(make_manager, make_doc):
    store = InMemorySessionStore()
    manager = make_manager(store=store)
    manager.add_documents([make_doc("a.txt"), make_doc("b.txt")])

    assert manager.remove_document("a.txt") is True
    assert manager.remove_document("missing.txt") is False
    assert [d.name for d in load_snapshot(store).documents] == ["b.txt"]

    assert manager.clear_documents() == 1
    assert load_snapshot(store).documents == []


def test_full_answer_streams_and_extracts_citations(make_manager, make_doc):
    manager = make_manager(["The answer is 42.\n[Sou", "rce: doc1.txt]"])
    manager.add_documents([make_doc("doc1.txt", "forty-two")])

    updates = _run(manager, "What is the answer?")

    assert updates[0].content == ""
    assert updates[0].citations is None
    final = manager.messages
    assert [m.role for m in final] == ["user", "model"]
    assert final[0].content == "What is the answer?"
    assert final[1].content == "The answer is 42."
    assert final[1].citations == ["doc1.txt"]
    assert manager.is_generating is False


def test_generating_flag_is_set_only_while_streaming(make_manager, make_doc):
    manager = make_manager(["a", "b"])
    manager.add_documents([make_doc("a.txt")])
    observed = []

    _run(manager, "q", on_update=lambda updates: observed.append(manager.is_generating))

    assert observed and all(observed)
    assert manager.is_generating is False


def test_stop_keeps_partial_answer(make_manager, make_doc):
    manager = make_manager(["Hello", " world", " and", " more"])
    manager.add_documents([make_doc("a.txt")])

    def stop_at_two_fragments(updates):
        if len(updates) == 3:
            assert manager.stop_generation() is True

    _run(manager, "q", on_update=stop_at_two_fragments)

    assert manager.messages[-1].content == "Hello world"
    assert manager.is_generating is False
    assert manager.stop_generation() is False


def test_transport_error_is_appended_to_partial_answer(make_manager, make_doc):
    manager = make_manager(["Partial answer"], fail_after=1, error="boom")
    manager.add_documents([make_doc("a.txt")])

    _run(manager, "q")

    assert manager.messages[-1].content == "Partial answer\n\nSorry, an error occurred: boom"
    assert manager.is_generating is False


def test_missing_credential_becomes_single_error_message(make_manager, make_doc):
    manager = make_manager(["never"], configured=False)
    manager.add_documents([make_doc("a.txt")])

    updates = _run(manager, "q")

    assert len(manager.messages) == 2
    assert manager.messages[-1].content.startswith("Error: ")
    assert "GEMINI_API_KEY" in manager.messages[-1].content
    assert updates[-1] == manager.messages[-1]
    assert manager.is_generating is False


def test_only_unreadable_documents_yield_advisory(make_manager, make_doc):
    manager = make_manager(["never"])
    manager.add_documents([make_doc("bad.pdf", "error", readable=False)])

    _run(manager, "q")

    assert manager.messages[-1].content == NO_READABLE_DOCUMENTS_MESSAGE
    assert manager.messages[-1].citations is None


def test_second_send_while_generating_is_rejected(make_manager, make_doc):
    manager = make_manager(["a", "b"])
    manager.add_documents([make_doc("a.txt")])

    async def run():
        first = manager.send_message("one")
        await first.__anext__()
        assert manager.is_generating is True
        with pytest.raises(GenerationInProgressError):
            await manager.send_message("two").__anext__()
        with pytest.raises(GenerationInProgressError):
            manager.new_chat()
        await first.aclose()

    asyncio.run(run())
    assert manager.is_generating is False
    assert [m.content for m in manager.messages if m.role == "user"] == ["one"]


def test_new_chat_clears_messages_but_keeps_documents(make_manager, make_doc):
    store = InMemorySessionStore()
    manager = make_manager(["ok"], store=store)
    manager.add_documents([make_doc("a.txt")])
    _run(manager, "q")

    manager.new_chat()

    assert manager.messages == []
    assert len(manager.documents) == 1
    assert load_snapshot(store).messages == []


def test_reload_restores_session_in_idle_state(make_manager, make_doc):
    store = InMemorySessionStore()
    first = make_manager(["The answer.\n[Source: a.txt]"], store=store)
    first.add_documents([make_doc("a.txt")])
    _run(first, "q")

    second = make_manager(store=store)
    second.load()

    assert second.documents == first.documents
    assert second.messages == first.messages
    assert second.messages[-1].citations == ["a.txt"]
    assert second.is_generating is False


def test_corrupt_session_is_discarded_on_load(make_manager):
    store = InMemorySessionStore({DOCUMENTS_KEY: "[]", MESSAGES_KEY: "not json at all"})
    manager = make_manager(store=store)

    manager.load()

    assert manager.documents == []
    assert manager.messages == []
    assert store.read(DOCUMENTS_KEY) is None
    assert store.read(MESSAGES_KEY) is None


def test_persistence_failures_do_not_break_the_session(make_manager, make_doc):
    manager = make_manager(["fine"], store=FailingStore())
    manager.add_documents([make_doc("a.txt")])

    _run(manager, "q")

    assert manager.messages[-1].content == "fine"
    assert manager.is_generating is False


@pytest.mark.parametrize(
    "llm, expected",
    [
        (RuntimeLLMClient(provider="mistral"), "Unsupported provider: mistral"),
        (RuntimeLLMClient(provider="ollama", ollama_model=""), "No model configured"),
    ],
)
def test_unusable_provider_becomes_single_error_message(make_doc, llm, expected):
    store = InMemorySessionStore()
    manager = ConversationManager(store, ChatService(llm))
    manager.add_documents([make_doc("a.txt")])

    updates = _run(manager, "q")

    assert [m.role for m in manager.messages] == ["user", "model"]
    assert manager.messages[-1].content.startswith("Error: ")
    assert expected in manager.messages[-1].content
    assert updates[-1] == manager.messages[-1]
    assert load_snapshot(store).messages == manager.messages
    assert manager.is_generating is False


def test_reload_mid_stream_comes_back_idle(make_manager, make_doc):
    store = InMemorySessionStore()
    first = make_manager(["partial", " rest"], store=store)
    first.add_documents([make_doc("a.txt")])

    async def run():
        stream = first.send_message("q")
        await stream.__anext__()
        await stream.__anext__()
        assert first.is_generating is True

        second = make_manager(store=store)
        second.load()
        await stream.aclose()
        return second

    second = asyncio.run(run())

    assert second.is_generating is False
    assert [(m.role, m.content) for m in second.messages] == [("user", "q"), ("model", "partial")]
    assert second.documents == first.documents
