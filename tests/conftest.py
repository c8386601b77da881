import os
import tempfile

# Settings are read at import time; point everything at a scratch dir first.
os.environ["KBSEARCH_DATA_DIR"] = tempfile.mkdtemp(prefix="kbsearch-tests-")
os.environ["OPEN_BROWSER"] = "0"
os.environ["LLM_PROVIDER"] = "gemini"
os.environ["GEMINI_API_KEY"] = ""
os.environ.pop("API_KEY", None)
os.environ.pop("SQLITE_PATH", None)
os.environ.pop("MAX_CONTEXT_CHARS", None)

import pytest

from kbsearch.chat_service import ChatService
from kbsearch.conversation import ConversationManager
from kbsearch.llm import MissingCredentialError
from kbsearch.models import DocumentFile
from kbsearch.session_store import InMemorySessionStore


class FakeLLM:
    provider = "fake"
    model = "fake-model"

    def __init__(self, fragments=(), *, fail_after=None, error="stream broke", configured=True):
        self.fragments = list(fragments)
        self.fail_after = fail_after
        self.error = error
        self.configured = configured
        self.prompts: list[str] = []

    def require_configured(self) -> None:
        if not self.configured:
            raise MissingCredentialError("GEMINI_API_KEY (or API_KEY) environment variable not set")

    async def stream_text(self, prompt: str):
        self.prompts.append(prompt)
        for idx, fragment in enumerate(self.fragments):
            if self.fail_after is not None and idx == self.fail_after:
                raise RuntimeError(self.error)
            yield fragment
        if self.fail_after is not None and self.fail_after >= len(self.fragments):
            raise RuntimeError(self.error)


@pytest.fixture
def make_llm():
    return FakeLLM


@pytest.fixture
def make_doc():
    def _make(name: str, content: str = "some text", readable: bool = True) -> DocumentFile:
        return DocumentFile(name=name, content=content, source_type="text/plain", readable=readable)

    return _make


@pytest.fixture
def make_manager():
    def _make(fragments=(), store=None, **llm_kwargs) -> ConversationManager:
        llm = FakeLLM(fragments, **llm_kwargs)
        return ConversationManager(store if store is not None else InMemorySessionStore(), ChatService(llm))

    return _make
