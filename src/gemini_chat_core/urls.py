"""
URL context resolution with SSRF protection.

Finds literal URLs in the user's latest message, checks each one is safe to
touch, then resolves it with a HEAD request so only allow-listed content
types under the size ceiling are handed to the model's URL-context tool.

Security: Blocks requests to private IPs, localhost, and cloud metadata endpoints.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import re
import socket
from collections.abc import Iterable
from dataclasses import dataclass
from urllib.parse import urlsplit, urlunsplit

import httpx

from gemini_chat_core.config import (
    ALLOWED_URL_CONTENT_PREFIXES,
    ALLOWED_URL_CONTENT_TYPES,
    LOGGER_NAME,
    MAX_URL_CONTENT_SIZE_MB,
    MAX_URLS_PER_REQUEST,
    URL_RESOLVE_TIMEOUT,
)

logger = logging.getLogger(LOGGER_NAME)

# =============================================================================
# SSRF Protection
# =============================================================================

# Hosts that are always blocked (case-insensitive)
BLOCKED_HOSTS: frozenset[str] = frozenset([
    "localhost",
    "localhost.localdomain",
    "127.0.0.1",
    "::1",
    "[::1]",
    "0.0.0.0",
    "metadata.google.internal",
    "metadata.goog",
    "169.254.169.254",  # AWS/GCP/Azure metadata
])

# Private IPv4 prefixes to block
BLOCKED_PREFIXES: tuple[str, ...] = (
    "10.",
    "172.16.", "172.17.", "172.18.", "172.19.",
    "172.20.", "172.21.", "172.22.", "172.23.",
    "172.24.", "172.25.", "172.26.", "172.27.",
    "172.28.", "172.29.", "172.30.", "172.31.",
    "192.168.",
    "127.",
    "169.254.",  # Link-local / cloud metadata
)

# IPv6 prefixes, only checked for literal IPv6 hosts
BLOCKED_IPV6_PREFIXES: tuple[str, ...] = (
    "fd",  # unique local (fd00::/8)
    "fc",  # unique local (fc00::/7)
    "fe80:",  # link-local
)


def is_private_ip(host: str) -> bool:
    """Check if a host resolves to a private IP address."""
    host = host.lower().strip("[]")
    if host in BLOCKED_HOSTS:
        return True

    if any(host.startswith(prefix) for prefix in BLOCKED_PREFIXES):
        return True
    if ":" in host and any(host.startswith(prefix) for prefix in BLOCKED_IPV6_PREFIXES):
        return True

    try:
        addrs = socket.getaddrinfo(host, None, socket.AF_UNSPEC, socket.SOCK_STREAM)
        for addr_info in addrs:
            ip_str = str(addr_info[4][0])
            try:
                ip = ipaddress.ip_address(ip_str)
                if ip.is_private or ip.is_loopback or ip.is_link_local or ip.is_reserved:
                    return True
            except ValueError:
                continue
    except (socket.gaierror, UnicodeError):
        # Unresolvable here; the provider fetches it, not us
        pass

    return False


def validate_url(url: str) -> tuple[bool, str]:
    """
    Validate a URL for SSRF safety.

    Returns (is_valid, error_message).
    """
    try:
        parsed = urlsplit(url)
    except ValueError as e:
        return False, f"Invalid URL: {e}"

    if not parsed.scheme or not parsed.netloc:
        return False, "URL must have scheme (http/https) and host"

    if parsed.scheme.lower() not in ("http", "https"):
        return False, f"Unsupported scheme: {parsed.scheme}. Only http/https allowed."

    hostname = parsed.hostname
    if not hostname:
        return False, "URL must have a valid hostname"

    if is_private_ip(hostname):
        return False, f"SSRF blocked: {hostname} resolves to private/internal address"

    return True, ""


# =============================================================================
# Extraction
# =============================================================================

URL_PATTERN = re.compile(r"https?://[^\s<>\"'`]+", re.IGNORECASE)
_TRAILING_PUNCTUATION = ".,;:!?)]}'\""
_DEFAULT_PORTS = {"http": 80, "https": 443}

MAX_URL_CONTENT_BYTES = MAX_URL_CONTENT_SIZE_MB * 1024 * 1024

USER_AGENT = "Mozilla/5.0 (compatible; GeminiChatCore/1.0)"


def normalize_url(url: str) -> str:
    """Canonical form used for de-duplication.

    Lower-cases scheme and host, drops default ports, fragments and a
    trailing slash; keeps the query string.
    """
    parts = urlsplit(url.strip())
    scheme = parts.scheme.lower()
    host = (parts.hostname or "").lower()
    try:
        port = parts.port
    except ValueError:
        port = None
    netloc = host if port in (None, _DEFAULT_PORTS.get(scheme)) else f"{host}:{port}"
    path = parts.path.rstrip("/")
    return urlunsplit((scheme, netloc, path, parts.query, ""))


def _strip_trailing(url: str) -> str:
    while url and url[-1] in _TRAILING_PUNCTUATION:
        # Keep a closing paren that balances one inside the URL (wiki links)
        if url[-1] == ")" and url.count("(") >= url.count(")"):
            break
        url = url[:-1]
    return url


def extract_urls(text: str | None, limit: int = MAX_URLS_PER_REQUEST) -> list[str]:
    """Literal http(s) URLs in ``text``, de-duplicated and capped."""
    if not text:
        return []
    seen: set[str] = set()
    urls: list[str] = []
    for match in URL_PATTERN.finditer(text):
        url = _strip_trailing(match.group(0))
        key = normalize_url(url)
        if not url or key in seen:
            continue
        seen.add(key)
        urls.append(url)
        if len(urls) >= limit:
            break
    return urls


def validate_url_count(urls: Iterable[str], limit: int = MAX_URLS_PER_REQUEST) -> tuple[bool, str]:
    count = len(list(urls))
    if count > limit:
        return False, f"Too many URLs ({count}). Maximum is {limit} per request."
    return True, ""


# =============================================================================
# Resolution
# =============================================================================


@dataclass(frozen=True, slots=True)
class ResolvedUrl:
    url: str
    final_url: str
    content_type: str | None = None
    size_bytes: int | None = None


def is_allowed_content_type(content_type: str | None) -> bool:
    if not content_type:
        # Servers that omit it are usually serving HTML
        return True
    media_type = content_type.split(";", 1)[0].strip().lower()
    return media_type in ALLOWED_URL_CONTENT_TYPES or media_type.startswith(ALLOWED_URL_CONTENT_PREFIXES)


async def _head(http: httpx.AsyncClient, url: str) -> httpx.Response:
    response = await http.head(url)
    if response.status_code in (403, 405, 501):
        # Some servers refuse HEAD; a streamed GET gives us the headers without the body
        async with http.stream("GET", url) as streamed:
            return streamed
    return response


async def resolve_url(http: httpx.AsyncClient, url: str) -> ResolvedUrl | None:
    """Resolve one URL; None when it is unsafe, unreachable or not allowed."""
    is_valid, error_msg = await asyncio.to_thread(validate_url, url)
    if not is_valid:
        logger.warning("   ❌ URL rejected: %s", error_msg)
        return None

    try:
        response = await _head(http, url)
        response.raise_for_status()
    except httpx.HTTPError as e:
        logger.warning("   ⚠️ Could not resolve %s: %s", url, e)
        return None

    final_url = str(response.url)
    if final_url != url:
        is_valid, error_msg = await asyncio.to_thread(validate_url, final_url)
        if not is_valid:
            logger.warning("   ❌ Redirect rejected: %s", error_msg)
            return None

    content_type = response.headers.get("content-type")
    if not is_allowed_content_type(content_type):
        logger.info("   ⏭️ Skipping %s: content type %s not allowed", url, content_type)
        return None

    size: int | None = None
    content_length = response.headers.get("content-length")
    if content_length and content_length.isdigit():
        size = int(content_length)
        if size > MAX_URL_CONTENT_BYTES:
            logger.info(
                "   ⏭️ Skipping %s: %.1fMB exceeds %dMB",
                url, size / 1024 / 1024, MAX_URL_CONTENT_SIZE_MB,
            )
            return None

    return ResolvedUrl(url=url, final_url=final_url, content_type=content_type, size_bytes=size)


async def resolve_urls(
    urls: Iterable[str],
    *,
    limit: int = MAX_URLS_PER_REQUEST,
    transport: httpx.AsyncBaseTransport | None = None,
) -> list[ResolvedUrl]:
    """Resolve candidate URLs concurrently, dedupe by final URL and cap the count."""
    candidates = list(dict.fromkeys(urls))
    if not candidates:
        return []

    logger.info("🔗 Resolving %d URL(s) for URL context", len(candidates))
    async with httpx.AsyncClient(
        timeout=URL_RESOLVE_TIMEOUT,
        follow_redirects=True,
        headers={"User-Agent": USER_AGENT},
        transport=transport,
    ) as http:
        results = await asyncio.gather(*(resolve_url(http, u) for u in candidates))

    resolved: list[ResolvedUrl] = []
    seen: set[str] = set()
    for item in results:
        if item is None:
            continue
        key = normalize_url(item.final_url)
        if key in seen:
            continue
        seen.add(key)
        resolved.append(item)
        if len(resolved) >= limit:
            break
    return resolved
