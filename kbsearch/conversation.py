from __future__ import annotations

import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Iterable

from kbsearch.chat_service import CancellationToken, ChatService
from kbsearch.citations import extract_citations
from kbsearch.config import settings
from kbsearch.llm import LLMConfigurationError
from kbsearch.models import ChatMessage, DocumentFile
from kbsearch.parsers import UploadedFile, ingest_files
from kbsearch.prompting import ContextTooLargeError
from kbsearch.session_store import (
    CorruptSessionError,
    SessionStore,
    discard_snapshot,
    load_snapshot,
    save_documents,
    save_messages,
)


def _build_session_logger() -> logging.Logger:
    logger = logging.getLogger("kbsearch.session")
    logger.setLevel(logging.INFO)
    logger.propagate = False
    if logger.handlers:
        return logger
    log_path = Path(settings.data_dir) / "log.txt"
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_path, encoding="utf-8")
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(message)s"))
    logger.addHandler(handler)
    return logger


SESSION_LOGGER = _build_session_logger()


class GenerationInProgressError(RuntimeError):
    """Raised when a request needs the conversation idle but an answer is streaming."""


@dataclass(frozen=True)
class StreamState:
    raw: str = ""
    message: ChatMessage = field(default_factory=lambda: ChatMessage(role="model", content=""))


def apply_fragment(state: StreamState, fragment: str) -> StreamState:
    raw = state.raw + fragment
    extracted = extract_citations(raw)
    return StreamState(
        raw=raw,
        message=ChatMessage(role="model", content=extracted.content, citations=extracted.citations),
    )


@dataclass
class ConversationState:
    messages: list[ChatMessage] = field(default_factory=list)
    cancel_token: CancellationToken | None = None

    @property
    def generating(self) -> bool:
        return self.cancel_token is not None


class ConversationManager:
    def __init__(self, store: SessionStore, chat_service: ChatService) -> None:
        self.store = store
        self.chat_service = chat_service
        self._documents: list[DocumentFile] = []
        self._state = ConversationState()

    @property
    def documents(self) -> list[DocumentFile]:
        return list(self._documents)

    @property
    def messages(self) -> list[ChatMessage]:
        return list(self._state.messages)

    @property
    def is_generating(self) -> bool:
        return self._state.generating

    def load(self) -> None:
        try:
            snapshot = load_snapshot(self.store)
        except CorruptSessionError as exc:
            SESSION_LOGGER.error(f"discarding corrupt saved session | {exc}")
            discard_snapshot(self.store)
            snapshot = None
        self._documents = list(snapshot.documents) if snapshot else []
        self._state = ConversationState(messages=list(snapshot.messages) if snapshot else [])
        SESSION_LOGGER.info(
            f"session loaded | documents={len(self._documents)} messages={len(self._state.messages)}"
        )

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------
    def get_document(self, name: str) -> DocumentFile | None:
        return next((doc for doc in self._documents if doc.name == name), None)

    def add_documents(self, documents: Iterable[DocumentFile]) -> tuple[list[DocumentFile], list[DocumentFile]]:
        existing = {doc.name for doc in self._documents}
        added: list[DocumentFile] = []
        skipped: list[DocumentFile] = []
        for doc in documents:
            if doc.name in existing:
                skipped.append(doc)
                continue
            existing.add(doc.name)
            added.append(doc)
        if added:
            self._documents = [*self._documents, *added]
            self._persist_documents()
        return added, skipped

    def ingest(self, files: Iterable[UploadedFile]) -> tuple[list[DocumentFile], list[DocumentFile]]:
        documents = ingest_files(files)
        for doc in documents:
            if not doc.readable:
                SESSION_LOGGER.warning(f"unreadable upload | name={doc.name} | {doc.content}")
        return self.add_documents(documents)

    def remove_document(self, name: str) -> bool:
        remaining = [doc for doc in self._documents if doc.name != name]
        if len(remaining) == len(self._documents):
            return False
        self._documents = remaining
        self._persist_documents()
        return True

    def clear_documents(self) -> int:
        removed = len(self._documents)
        self._documents = []
        self._persist_documents()
        return removed

    # ------------------------------------------------------------------
    # Conversation
    # ------------------------------------------------------------------
    def new_chat(self) -> None:
        if self.is_generating:
            raise GenerationInProgressError("Stop the current answer before starting a new chat.")
        self._state.messages = []
        self._persist_messages()

    def stop_generation(self) -> bool:
        token = self._state.cancel_token
        if token is None:
            return False
        token.cancel()
        SESSION_LOGGER.info("generation stop requested")
        return True

    async def send_message(self, query: str) -> AsyncIterator[ChatMessage]:
        """Run one generation, yielding the model message after every change.

        Requires an idle conversation. The in-progress flag is cleared exactly
        once when the stream ends, however it ends.
        """
        if self.is_generating:
            raise GenerationInProgressError("An answer is already being generated.")
        token = CancellationToken()
        self._state.cancel_token = token
        outcome = "aborted"
        SESSION_LOGGER.info(f"generation started | documents={len(self._documents)} query_chars={len(query)}")
        try:
            self._append_message(ChatMessage(role="user", content=query))

            stream = StreamState()
            self._append_message(stream.message)
            yield stream.message

            try:
                fragments = self.chat_service.generate_answer_stream(self.documents, query, token)
                async with aclosing(fragments):
                    async for fragment in fragments:
                        if token.cancelled:
                            break
                        stream = apply_fragment(stream, fragment)
                        self._replace_last_message(stream.message)
                        yield stream.message
            except (LLMConfigurationError, ContextTooLargeError) as exc:
                outcome = "rejected"
                SESSION_LOGGER.error(f"generation rejected | {exc}")
                failed = ChatMessage(role="model", content=f"Error: {exc}")
                self._replace_last_message(failed)
                yield failed
                return
            outcome = "cancelled" if token.cancelled else "completed"
        finally:
            self._state.cancel_token = None
            SESSION_LOGGER.info(f"generation finished | outcome={outcome}")

    def _append_message(self, message: ChatMessage) -> None:
        self._state.messages = [*self._state.messages, message]
        self._persist_messages()

    def _replace_last_message(self, message: ChatMessage) -> None:
        self._state.messages = [*self._state.messages[:-1], message]
        self._persist_messages()

    def _persist_documents(self) -> None:
        try:
            save_documents(self.store, self._documents)
        except Exception as exc:
            SESSION_LOGGER.error(f"failed to save documents | {exc}")

    def _persist_messages(self) -> None:
        try:
            save_messages(self.store, self._state.messages)
        except Exception as exc:
            SESSION_LOGGER.error(f"failed to save messages | {exc}")
