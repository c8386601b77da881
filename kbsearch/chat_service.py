from __future__ import annotations

import json
import logging
from contextlib import aclosing
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Iterable

from kbsearch.citations import extract_citations
from kbsearch.config import settings
from kbsearch.llm import RuntimeLLMClient
from kbsearch.models import DocumentFile
from kbsearch.prompting import assemble_prompt, estimate_tokens


def _build_token_logger() -> logging.Logger:
    logger = logging.getLogger("kbsearch.tokens")
    logger.setLevel(logging.INFO)
    logger.propagate = False
    if logger.handlers:
        return logger
    log_path = Path(settings.data_dir) / "token_logs.txt"
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_path, encoding="utf-8")
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(handler)
    return logger


TOKEN_LOGGER = _build_token_logger()

ERROR_FRAGMENT_PREFIX = "\n\nSorry, an error occurred: "
UNKNOWN_ERROR_FRAGMENT = "\n\nAn unknown error occurred while generating the answer."


def error_fragment(exc: BaseException) -> str:
    message = str(exc).strip()
    if not message:
        return UNKNOWN_ERROR_FRAGMENT
    return f"{ERROR_FRAGMENT_PREFIX}{message}"


class CancellationToken:
    """Stop flag shared between a running generation and whoever may stop it."""

    def __init__(self) -> None:
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True


class ChatService:
    def __init__(self, llm: RuntimeLLMClient, max_context_chars: int = 0) -> None:
        self.llm = llm
        self.max_context_chars = max(0, int(max_context_chars))

    async def generate_answer_stream(
        self,
        documents: Iterable[DocumentFile],
        query: str,
        cancel_token: CancellationToken,
    ) -> AsyncIterator[str]:
        """Yield answer fragments for ``query`` grounded in ``documents``.

        Raises LLMConfigurationError or ContextTooLargeError before the first
        fragment. Transport failures never escape: they become one trailing
        error fragment. A cancelled token ends the sequence at the next
        fragment boundary without yielding anything further.
        """
        self.llm.require_configured()
        plan = assemble_prompt(documents, query, self.max_context_chars)
        if plan.short_circuit:
            yield plan.advisory
            return

        call_id = str(datetime.now(timezone.utc).timestamp()).replace(".", "")[-12:]
        prompt_tokens = estimate_tokens(plan.prompt)
        self._log_token_metrics(
            event="answer_stream_request",
            call_id=call_id,
            data={
                "input_tokens_est": estimate_tokens(query),
                "prompt_tokens_est": prompt_tokens,
                "context_chars": plan.context_chars,
                "documents": len(plan.document_names),
            },
        )

        answer = ""
        outcome = "aborted"
        try:
            try:
                async with aclosing(self.llm.stream_text(plan.prompt)) as fragments:
                    async for fragment in fragments:
                        if cancel_token.cancelled:
                            outcome = "cancelled"
                            break
                        answer += fragment
                        yield fragment
                if outcome == "aborted":
                    outcome = "completed"
            except RuntimeError as exc:
                outcome = "error"
                tail = error_fragment(exc)
                answer += tail
                yield tail
        finally:
            # Also runs when the consumer closes the stream early.
            self._log_token_metrics(
                event="answer_stream_response",
                call_id=call_id,
                data={
                    "outcome": outcome,
                    "output_tokens_est": estimate_tokens(answer),
                    "output_chars": len(answer),
                    "citations": len(extract_citations(answer).citations or []),
                    "total_tokens_est": prompt_tokens + estimate_tokens(answer),
                },
            )

    def _log_token_metrics(self, *, event: str, call_id: str, data: dict[str, Any]) -> None:
        payload = {
            "ts_utc": datetime.now(timezone.utc).isoformat(timespec="seconds"),
            "event": event,
            "call_id": call_id,
            "provider": self.llm.provider,
            "model": self.llm.model,
            **data,
        }
        TOKEN_LOGGER.info(json.dumps(payload, ensure_ascii=False))
