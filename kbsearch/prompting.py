import re
from dataclasses import dataclass, field
from typing import Iterable

from kbsearch.models import DocumentFile


NO_READABLE_DOCUMENTS_MESSAGE = (
    "I can't answer without any readable documents. "
    "Please upload some supported files (e.g., TXT, PDF, DOCX)."
)

DOCUMENT_DELIMITER = "\n\n---\n\n"

PROMPT_TEMPLATE = """You are an intelligent assistant. Your task is to answer the user's question based ONLY on the provided context from the documents.
Your answer MUST be grounded in the information within the documents.
After providing your answer, you MUST cite the source document(s) you used by adding a line at the very end in the format: "[Source: document_name.ext]".
If you use multiple documents, cite each one on a new line in the same format.
If the answer is not found within the context, you MUST state that you could not find an answer in the provided documents and do not cite any sources.
Do not use any external knowledge. Be concise and accurate.

--- CONTEXT START ---
{context}
--- CONTEXT END ---

Question: "{query}"

Answer:"""

_PLACEHOLDER = re.compile(r"\{(context|query)\}")


class ContextTooLargeError(ValueError):
    """Raised when the grounding context exceeds the configured character budget."""


@dataclass
class AssembledPrompt:
    prompt: str | None
    advisory: str | None = None
    document_names: list[str] = field(default_factory=list)
    context_chars: int = 0

    @property
    def short_circuit(self) -> bool:
        return self.prompt is None


def readable_documents(documents: Iterable[DocumentFile]) -> list[DocumentFile]:
    return [doc for doc in documents if doc.readable]


def build_context(documents: Iterable[DocumentFile]) -> str:
    return DOCUMENT_DELIMITER.join(f"[Document: {doc.name}]\n{doc.content}" for doc in documents)


def build_prompt(context: str, query: str) -> str:
    # Single pass over the template so braces inside documents are never re-expanded.
    values = {"context": context, "query": query}
    return _PLACEHOLDER.sub(lambda match: values[match.group(1)], PROMPT_TEMPLATE)


def assemble_prompt(
    documents: Iterable[DocumentFile],
    query: str,
    max_context_chars: int = 0,
) -> AssembledPrompt:
    readable = readable_documents(documents)
    if not readable:
        return AssembledPrompt(prompt=None, advisory=NO_READABLE_DOCUMENTS_MESSAGE)

    context = build_context(readable)
    if max_context_chars > 0 and len(context) > max_context_chars:
        raise ContextTooLargeError(
            f"The uploaded documents contain {len(context)} characters, "
            f"which exceeds the configured limit of {max_context_chars}. "
            "Remove some documents and try again."
        )
    return AssembledPrompt(
        prompt=build_prompt(context, query),
        document_names=[doc.name for doc in readable],
        context_chars=len(context),
    )


def estimate_tokens(text: str) -> int:
    if not text:
        return 0
    # Lightweight estimator: word/punct segments with a small overhead factor.
    segments = re.findall(r"\w+|[^\w\s]", str(text), flags=re.UNICODE)
    return int(max(1, round(len(segments) * 1.05)))
