import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Protocol

from pydantic import TypeAdapter

from kbsearch.models import ChatMessage, DocumentFile


DOCUMENTS_KEY = "rag_documents"
MESSAGES_KEY = "rag_messages"

_DOCUMENTS = TypeAdapter(list[DocumentFile])
_MESSAGES = TypeAdapter(list[ChatMessage])


class SessionStore(Protocol):
    def read(self, key: str) -> str | None: ...

    def write(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class InMemorySessionStore:
    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._blobs: dict[str, str] = dict(initial or {})

    def read(self, key: str) -> str | None:
        return self._blobs.get(key)

    def write(self, key: str, value: str) -> None:
        self._blobs[key] = value

    def delete(self, key: str) -> None:
        self._blobs.pop(key, None)


class SqliteSessionStore:
    def __init__(self, db_path: str) -> None:
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.db_path = db_path

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def init_schema(self) -> None:
        with self.connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS session_blobs (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                """
            )

    def read(self, key: str) -> str | None:
        with self.connect() as conn:
            row = conn.execute("SELECT value FROM session_blobs WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def write(self, key: str, value: str) -> None:
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO session_blobs(key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                """,
                (key, value, datetime.now(timezone.utc).isoformat()),
            )

    def delete(self, key: str) -> None:
        with self.connect() as conn:
            conn.execute("DELETE FROM session_blobs WHERE key = ?", (key,))


@dataclass
class SessionSnapshot:
    documents: list[DocumentFile] = field(default_factory=list)
    messages: list[ChatMessage] = field(default_factory=list)


class CorruptSessionError(ValueError):
    """Raised when a stored session blob cannot be decoded."""


def load_snapshot(store: SessionStore) -> SessionSnapshot:
    """Decode both blobs. Raises CorruptSessionError if either is unreadable."""
    raw_documents = store.read(DOCUMENTS_KEY)
    raw_messages = store.read(MESSAGES_KEY)
    try:
        documents = _DOCUMENTS.validate_json(raw_documents) if raw_documents else []
        messages = _MESSAGES.validate_json(raw_messages) if raw_messages else []
    except ValueError as exc:
        raise CorruptSessionError(str(exc)) from exc
    return SessionSnapshot(documents=documents, messages=messages)


def discard_snapshot(store: SessionStore) -> None:
    store.delete(DOCUMENTS_KEY)
    store.delete(MESSAGES_KEY)


def save_documents(store: SessionStore, documents: list[DocumentFile]) -> None:
    store.write(DOCUMENTS_KEY, _DOCUMENTS.dump_json(documents).decode("utf-8"))


def save_messages(store: SessionStore, messages: list[ChatMessage]) -> None:
    store.write(MESSAGES_KEY, _MESSAGES.dump_json(messages).decode("utf-8"))
