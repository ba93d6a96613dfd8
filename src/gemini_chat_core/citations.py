"""
Grounding and URL-context metadata parsing.

Turns the provider's grounding chunks/supports into ``GroundingMetadata``
with de-duplicated sources. Two de-duplication policies:

- ``"domain"``: one source per site (``www.`` ignored)
- ``"url"``: one source per normalized URL
"""

from __future__ import annotations

from typing import Any, Literal
from urllib.parse import urlsplit

from gemini_chat_core.types import GroundingMetadata, GroundingSource, SupportSegment, enum_name
from gemini_chat_core.urls import normalize_url

DedupeMode = Literal["domain", "url"]

# Grounding chunks usually point at this redirector; the title then holds the real domain
REDIRECT_HOSTS = frozenset(["vertexaisearch.cloud.google.com"])


def extract_domain(url: str) -> str:
    """Hostname without a leading ``www.``; empty string for unparsable input."""
    try:
        host = urlsplit(url).hostname or ""
    except ValueError:
        return ""
    return host.removeprefix("www.")


def _source_domain(url: str, title: str) -> str:
    domain = extract_domain(url)
    if domain in REDIRECT_HOSTS and title and " " not in title and "." in title:
        return title.lower().removeprefix("www.")
    return domain


def _dedupe_key(source: GroundingSource, mode: DedupeMode) -> str:
    if mode == "url":
        return normalize_url(source.url)
    return source.domain or normalize_url(source.url)


def deduplicate_sources(
    sources: list[GroundingSource],
    mode: DedupeMode = "domain",
) -> tuple[list[GroundingSource], dict[int, int]]:
    """Drop repeated sources, keeping the first.

    Returns the unique sources and a map from each original index to its
    index in the unique list.
    """
    unique: list[GroundingSource] = []
    index_map: dict[int, int] = {}
    positions: dict[str, int] = {}
    for i, source in enumerate(sources):
        key = _dedupe_key(source, mode)
        if key not in positions:
            positions[key] = len(unique)
            unique.append(source)
        index_map[i] = positions[key]
    return unique, index_map


def _grounding_of(raw: Any) -> Any:
    candidates = getattr(raw, "candidates", None)
    if candidates:
        return getattr(candidates[0], "grounding_metadata", None)
    if hasattr(raw, "grounding_metadata"):
        return raw.grounding_metadata
    return raw


def parse_grounding_metadata(raw: Any, *, dedupe: DedupeMode = "domain") -> GroundingMetadata:
    """Parse a response, candidate or grounding-metadata object."""
    gm = _grounding_of(raw)
    if gm is None:
        return GroundingMetadata()

    sources: list[GroundingSource] = []
    # Chunks without a web URI are skipped, so chunk and source positions differ
    chunk_to_source: dict[int, int] = {}
    for i, chunk in enumerate(getattr(gm, "grounding_chunks", None) or []):
        web = getattr(chunk, "web", None)
        url = getattr(web, "uri", None) if web else None
        if not url:
            continue
        title = getattr(web, "title", None) or "Untitled"
        chunk_to_source[i] = len(sources)
        sources.append(
            GroundingSource(
                id=f"src-{len(sources)}",
                url=url,
                title=title,
                domain=_source_domain(url, title),
            )
        )

    unique, index_map = deduplicate_sources(sources, dedupe)
    unique = [
        GroundingSource(id=f"src-{i}", url=s.url, title=s.title, domain=s.domain)
        for i, s in enumerate(unique)
    ]

    supports: list[SupportSegment] = []
    for support in getattr(gm, "grounding_supports", None) or []:
        segment = getattr(support, "segment", None)
        text = getattr(segment, "text", None) if segment else None
        if not text:
            continue
        indices: list[int] = []
        for chunk_index in getattr(support, "grounding_chunk_indices", None) or []:
            source_index = chunk_to_source.get(chunk_index)
            if source_index is None:
                continue
            mapped = index_map[source_index]
            if mapped not in indices:
                indices.append(mapped)
        supports.append(
            SupportSegment(
                text=text,
                start_index=getattr(segment, "start_index", None),
                end_index=getattr(segment, "end_index", None),
                source_indices=tuple(indices),
            )
        )

    queries = [q for q in (getattr(gm, "web_search_queries", None) or []) if q]
    return GroundingMetadata(sources=unique, supports=supports, search_queries=queries)


# =============================================================================
# URL Context
# =============================================================================

_URL_STATUS_BUCKETS = {
    "URL_RETRIEVAL_STATUS_SUCCESS": "retrieved",
    "URL_RETRIEVAL_STATUS_ERROR": "failed",
    "URL_RETRIEVAL_STATUS_UNSAFE": "unsafe",
}


def parse_url_context_metadata(raw: Any) -> dict[str, list[str]]:
    """Summarize which URLs the model's URL-context tool actually retrieved."""
    candidates = getattr(raw, "candidates", None)
    candidate = candidates[0] if candidates else raw
    meta = getattr(candidate, "url_context_metadata", None)

    summary: dict[str, list[str]] = {"retrieved": [], "failed": [], "unsafe": []}
    for entry in getattr(meta, "url_metadata", None) or []:
        url = getattr(entry, "retrieved_url", None)
        if not url:
            continue
        status = enum_name(getattr(entry, "url_retrieval_status", None))
        summary[_URL_STATUS_BUCKETS.get(status, "failed")].append(url)
    return summary


def url_retrieval_summary(summary: dict[str, list[str]]) -> str | None:
    total = sum(len(v) for v in summary.values())
    if not total:
        return None
    text = f"Retrieved {len(summary['retrieved'])} of {total} URL(s)"
    problems = len(summary["failed"]) + len(summary["unsafe"])
    if problems:
        text += f"; {problems} could not be read"
    return text
