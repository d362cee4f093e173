"""
Fingerprinting for cache and in-flight dedup keys. [IV]

Both fingerprints are SHA-256 truncated to 128 bits. With 10^9 entries the
birthday bound puts the collision probability near 1.5e-21.
"""
from __future__ import annotations

import hashlib
import re
import string
from urllib.parse import quote, urlsplit, urlunsplit

from .types import Fingerprint

DIGEST_HEX_CHARS = 32

_DEFAULT_PORTS = {"http": 80, "https": 443}

_UNRESERVED = frozenset(string.ascii_letters + string.digits + "-._~")
_ESCAPE_RE = re.compile(r"%([0-9A-Fa-f]{2})")
_LONE_PERCENT_RE = re.compile(r"%(?![0-9A-Fa-f]{2})")
_PATH_SAFE = "/:@!$&'()*+,;=-._~%"
_QUERY_SAFE = _PATH_SAFE + "?"


def _normalize_escapes(component: str, safe: str) -> str:
    """Percent-encode raw unsafe characters, uppercase existing escapes and
    decode only escapes of unreserved characters. Escaped delimiters such as
    `%2F` and bytes that are not valid UTF-8 stay escaped."""

    def _escape(match: "re.Match[str]") -> str:
        char = chr(int(match.group(1), 16))
        return char if char in _UNRESERVED else f"%{match.group(1).upper()}"

    component = _LONE_PERCENT_RE.sub("%25", component)
    component = quote(component, safe=safe)
    return _ESCAPE_RE.sub(_escape, component)


def normalize_reference(source_reference: str) -> str:
    """Canonical form of a URL: lowercase scheme/host, no default port or
    fragment, "/" for an empty path, query parameters sorted.

    Percent-escapes are kept byte-exact apart from unreserved characters,
    so URLs that differ only in an escaped delimiter stay distinct."""
    parts = urlsplit(source_reference.strip())
    scheme = parts.scheme.lower()
    host = (parts.hostname or "").lower()
    try:
        port = parts.port
    except ValueError:
        port = None
    # Credentials never take part in identity
    netloc = f"[{host}]" if ":" in host else host
    if port is not None and _DEFAULT_PORTS.get(scheme) != port:
        netloc = f"{netloc}:{port}"
    path = _normalize_escapes(parts.path, _PATH_SAFE) or "/"
    params = [_normalize_escapes(p, _QUERY_SAFE) for p in parts.query.split("&") if p]
    query = "&".join(sorted(params))
    return urlunsplit((scheme, netloc, path, query, ""))


def _digest(domain: bytes, payload: bytes) -> str:
    h = hashlib.sha256()
    h.update(domain)
    h.update(b"\x00")
    h.update(payload)
    return h.hexdigest()[:DIGEST_HEX_CHARS]


def fingerprint_reference(source_reference: str) -> Fingerprint:
    """Cheap pre-fetch identity derived from the normalized URL."""
    normalized = normalize_reference(source_reference)
    return Fingerprint("ref", _digest(b"embedbot/ref/v1", normalized.encode("utf-8")))


def fingerprint_content(data: bytes) -> Fingerprint:
    """Durable cache key derived from the fetched bytes."""
    return Fingerprint("content", _digest(b"embedbot/content/v1", bytes(data)))
