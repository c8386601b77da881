from pathlib import Path
import sys
import json
import os
import socket
import threading
import webbrowser
from contextlib import aclosing
from typing import Any

from fastapi import FastAPI, File, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse

# Allow running as `python kbsearch/main.py` in addition to module mode.
if __package__ is None or __package__ == "":
    sys.path.append(str(Path(__file__).resolve().parents[1]))

from kbsearch.chat_service import ChatService
from kbsearch.config import ensure_runtime_dirs, settings
from kbsearch.conversation import ConversationManager, GenerationInProgressError
from kbsearch.llm import RuntimeLLMClient
from kbsearch.models import (
    ChatMessage,
    ChatRequest,
    DocumentFile,
    DocumentSummary,
    LLMSettingsResponse,
    RemoveDocumentsResponse,
    SessionStatusResponse,
    StopResponse,
    UploadDocumentsResponse,
    summarize_document,
)
from kbsearch.parsers import UploadedFile
from kbsearch.session_store import SqliteSessionStore


ensure_runtime_dirs()


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except Exception:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = (os.getenv(name, "1" if default else "0") or "").strip().lower()
    return raw in {"1", "true", "yes", "on"}


app = FastAPI(title="kbsearch API", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

store = SqliteSessionStore(settings.session_db_path)
store.init_schema()
llm = RuntimeLLMClient(
    provider=settings.llm_provider,
    gemini_api_key=settings.gemini_api_key,
    gemini_model=settings.gemini_model,
    gemini_base_url=settings.gemini_base_url,
    openai_api_key=settings.openai_api_key,
    openai_model=settings.openai_model,
    openai_base_url=settings.openai_base_url,
    ollama_base_url=settings.ollama_base_url,
    ollama_model=settings.ollama_model,
    stream_timeout=settings.llm_stream_timeout_sec,
    connect_timeout=settings.llm_connect_timeout_sec,
)
chat_service = ChatService(llm, max_context_chars=settings.max_context_chars)
manager = ConversationManager(store, chat_service)
manager.load()

AUTO_OPEN_URL = f"http://{os.getenv('KBSEARCH_HOST', '127.0.0.1')}:{_env_int('KBSEARCH_PORT', 8080)}"


@app.on_event("startup")
def open_browser_after_startup() -> None:
    if not settings.open_browser or getattr(app.state, "browser_open_scheduled", False):
        return
    app.state.browser_open_scheduled = True
    threading.Timer(0.2, lambda: webbrowser.open(AUTO_OPEN_URL)).start()


def _sse(event: str, data: Any) -> str:
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n"


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/")
def root() -> dict[str, str]:
    return {"message": "kbsearch API is running", "docs": "/docs", "health": "/health"}


@app.get("/settings/llm", response_model=LLMSettingsResponse)
def get_llm_settings() -> LLMSettingsResponse:
    return LLMSettingsResponse(**llm.get_runtime_config())


@app.get("/session", response_model=SessionStatusResponse)
def get_session_status() -> SessionStatusResponse:
    documents = manager.documents
    return SessionStatusResponse(
        generating=manager.is_generating,
        document_count=len(documents),
        readable_document_count=sum(1 for doc in documents if doc.readable),
        message_count=len(manager.messages),
        ready=bool(documents),
    )


@app.post("/documents", response_model=UploadDocumentsResponse)
async def upload_documents(files: list[UploadFile] = File(...)) -> UploadDocumentsResponse:
    if not files:
        raise HTTPException(status_code=400, detail="No files uploaded")

    uploads: list[UploadedFile] = []
    for idx, file in enumerate(files):
        uploads.append(
            UploadedFile(
                name=file.filename or f"file_{idx}",
                media_type=file.content_type or "",
                data=await file.read(),
            )
        )
        await file.close()

    added, skipped = manager.ingest(uploads)
    return UploadDocumentsResponse(
        added=[summarize_document(doc) for doc in added],
        skipped=[doc.name for doc in skipped],
    )


@app.get("/documents", response_model=list[DocumentSummary])
def list_documents() -> list[DocumentSummary]:
    return [summarize_document(doc) for doc in manager.documents]


@app.get("/documents/{name}", response_model=DocumentFile)
def preview_document(name: str) -> DocumentFile:
    doc = manager.get_document(name)
    if doc is None:
        raise HTTPException(status_code=404, detail="document not found")
    return doc


@app.delete("/documents/{name}", response_model=RemoveDocumentsResponse)
def remove_document(name: str) -> RemoveDocumentsResponse:
    if not manager.remove_document(name):
        raise HTTPException(status_code=404, detail="document not found")
    return RemoveDocumentsResponse(ok=True, removed=1)


@app.delete("/documents", response_model=RemoveDocumentsResponse)
def clear_documents() -> RemoveDocumentsResponse:
    return RemoveDocumentsResponse(ok=True, removed=manager.clear_documents())


@app.get("/messages", response_model=list[ChatMessage])
def list_messages() -> list[ChatMessage]:
    return manager.messages


@app.delete("/messages")
def new_chat():
    try:
        manager.new_chat()
    except GenerationInProgressError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return {"ok": True}


@app.post("/chat/stream")
async def chat_stream(request: ChatRequest):
    message = request.message.strip()
    if not message:
        raise HTTPException(status_code=400, detail="message is required")
    if not manager.documents:
        raise HTTPException(status_code=400, detail="Please upload a document first.")
    if manager.is_generating:
        raise HTTPException(status_code=409, detail="An answer is already being generated.")

    conversation = manager

    async def generate():
        try:
            async with aclosing(conversation.send_message(message)) as updates:
                async for update in updates:
                    yield _sse("message", update.model_dump())
        except RuntimeError as exc:
            yield _sse("error", {"error": str(exc)})
        yield _sse(
            "done",
            {"generating": conversation.is_generating, "message_count": len(conversation.messages)},
        )

    return StreamingResponse(generate(), media_type="text/event-stream")


@app.post("/chat/stop", response_model=StopResponse)
def stop_generation() -> StopResponse:
    return StopResponse(ok=True, stopped=manager.stop_generation())


if __name__ == "__main__":
    import uvicorn

    host = os.getenv("KBSEARCH_HOST", "127.0.0.1")
    start_port = _env_int("KBSEARCH_PORT", 8080)
    port_tries = max(1, _env_int("KBSEARCH_PORT_TRIES", 20))
    reload_enabled = _env_bool("KBSEARCH_RELOAD", False)

    chosen_port: int | None = None
    for offset in range(port_tries):
        candidate = start_port + offset
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            try:
                sock.bind((host, candidate))
                chosen_port = candidate
                break
            except OSError:
                continue

    if chosen_port is None:
        print(
            f"Unable to bind any port in range {start_port}-{start_port + port_tries - 1} "
            f"on host {host}."
        )
        raise SystemExit(1)

    # The app is re-imported by uvicorn; pass the chosen port through the environment.
    os.environ["KBSEARCH_PORT"] = str(chosen_port)
    print(f"Starting server at http://{host}:{chosen_port}/docs")
    uvicorn.run("kbsearch.main:app", host=host, port=chosen_port, reload=reload_enabled)
