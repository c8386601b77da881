from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class DocumentFile(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    content: str
    source_type: str = ""
    readable: bool


class ChatMessage(BaseModel):
    role: Literal["user", "model"]
    content: str
    citations: list[str] | None = None


class DocumentSummary(BaseModel):
    name: str
    source_type: str
    readable: bool
    content_chars: int


class UploadDocumentsResponse(BaseModel):
    added: list[DocumentSummary]
    skipped: list[str] = Field(default_factory=list)


class RemoveDocumentsResponse(BaseModel):
    ok: bool
    removed: int = 0


class ChatRequest(BaseModel):
    message: str = Field(min_length=1)


class StopResponse(BaseModel):
    ok: bool
    stopped: bool


class SessionStatusResponse(BaseModel):
    generating: bool
    document_count: int
    readable_document_count: int
    message_count: int
    ready: bool


class LLMSettingsResponse(BaseModel):
    provider: str
    model: str
    base_url: str
    configured: bool


def summarize_document(doc: DocumentFile) -> DocumentSummary:
    return DocumentSummary(
        name=doc.name,
        source_type=doc.source_type,
        readable=doc.readable,
        content_chars=len(doc.content),
    )
