import re
from dataclasses import dataclass


CITATION_PATTERN = re.compile(r"\[Source: (.*?)\]")


@dataclass(frozen=True)
class ExtractedAnswer:
    content: str
    citations: list[str] | None


def extract_citations(text: str) -> ExtractedAnswer:
    """Split accumulated model output into visible prose and cited source names.

    Always call this on the whole buffer received so far: a marker can be split
    across two stream fragments and only matches once both halves arrived.
    Duplicate names are kept in order of appearance. ``citations`` is ``None``
    when the text carries no marker at all.
    """
    names = CITATION_PATTERN.findall(text)
    content = CITATION_PATTERN.sub("", text).strip()
    return ExtractedAnswer(content=content, citations=names or None)
