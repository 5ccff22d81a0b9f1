from __future__ import annotations

import re
from typing import Iterable, Sequence

from modules.episode_types import Notebook, Source

NO_RELEVANT_SOURCE = (
    "No relevant source was found in this notebook for the request. "
    "Reason carefully from general knowledge and say so when the sources do not cover a point."
)
SMALL_VAULT_SIZE = 2


def _query_terms(query: str | Iterable[str]) -> list[str]:
    if not isinstance(query, str):
        query = " ".join(str(q) for q in query)
    terms: list[str] = []
    for token in re.findall(r"\w+", query.lower()):
        if len(token) > 2 and token not in terms:
            terms.append(token)
    return terms


def score_source(source: Source, terms: Sequence[str]) -> int:
    content = (source.content or "").lower()
    return sum(1 for term in terms if term in content)


def _block(rank: int, source: Source, max_chars: int | None) -> str:
    content = source.content or ""
    if max_chars is not None and len(content) > max_chars:
        content = content[:max_chars].rstrip()
    return f"SOURCE {rank} ({source.title}):\n{content}"


def rank_sources(
    notebook: Notebook,
    query: str | Iterable[str],
    k: int,
) -> list[Source]:
    """
    Pick the sources worth sending along with a generation call.

    Small notebooks (two sources or fewer) are sent whole, regardless of score or k.
    Larger ones only contribute sources that share at least one query term.
    """
    sources = list(notebook.sources)
    if not sources:
        return []
    terms = _query_terms(query)
    scored = [(score_source(s, terms), i, s) for i, s in enumerate(sources)]
    # Stable on original position for equal scores.
    scored.sort(key=lambda item: (-item[0], item[1]))
    if len(sources) <= SMALL_VAULT_SIZE:
        return [s for _, _, s in scored]
    return [s for score, _, s in scored if score > 0][: max(0, k)]


def select_grounding(
    notebook: Notebook,
    query: str | Iterable[str],
    k: int = 3,
    max_chars_per_source: int | None = None,
) -> str:
    picked = rank_sources(notebook, query, k)
    if not picked:
        return NO_RELEVANT_SOURCE
    return "\n\n".join(
        _block(rank, source, max_chars_per_source)
        for rank, source in enumerate(picked, start=1)
    )


def format_source_blocks(sources: Sequence[Source], max_chars: int | None = None) -> str:
    if not sources:
        return NO_RELEVANT_SOURCE
    return "\n\n".join(
        _block(rank, source, max_chars) for rank, source in enumerate(sources, start=1)
    )
