"""
Byte-signature content sniffing backed by libmagic (python-magic).
"""
from __future__ import annotations

import mimetypes
from functools import lru_cache
from typing import Optional

from ..utils.logging import get_logger

logger = get_logger(__name__)

SNIFF_PREFIX_BYTES = 4096

GENERIC_TYPES = {"application/octet-stream", "application/x-empty", "inode/x-empty"}

EXECUTABLE_TYPES = {
    "application/x-executable",
    "application/x-dosexec",
    "application/x-msdownload",
    "application/x-mach-binary",
    "application/x-sharedlib",
    "application/x-pie-executable",
    "application/vnd.microsoft.portable-executable",
    "application/x-elf",
}

# Extensions libmagic/mimetypes pick poorly for media we actually produce
_PREFERRED_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "audio/mpeg": ".mp3",
    "audio/mp4": ".m4a",
    "video/mp4": ".mp4",
    "video/quicktime": ".mov",
    "video/x-matroska": ".mkv",
    "video/webm": ".webm",
    "text/plain": ".txt",
}


@lru_cache(maxsize=1)
def _magic():
    # libmagic is loaded on first use so importing the pipeline never needs it
    import magic

    return magic.Magic(mime=True)


def sniff_content_type(prefix: bytes) -> Optional[str]:
    """Best-effort MIME type from the leading bytes; None when undetermined."""
    if not prefix:
        return None
    try:
        sniffed = _magic().from_buffer(bytes(prefix[:SNIFF_PREFIX_BYTES]))
    except Exception as e:
        logger.warning(f"⚠️ Content sniff failed: {e}", extra={"subsys": "fetch"})
        return None
    if not sniffed:
        return None
    return sniffed.split(";")[0].strip().lower()


def normalize_mime(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    return value.split(";")[0].strip().lower() or None


def is_executable_type(content_type: Optional[str]) -> bool:
    return normalize_mime(content_type) in EXECUTABLE_TYPES


def resolve_content_type(declared: Optional[str], sniffed: Optional[str], filename: Optional[str] = None) -> str:
    """Sniffed type wins unless it is generic; then declared; then a name guess."""
    declared = normalize_mime(declared)
    sniffed = normalize_mime(sniffed)
    if sniffed and sniffed not in GENERIC_TYPES:
        return sniffed
    if declared and declared not in GENERIC_TYPES:
        return declared
    if filename:
        guessed, _ = mimetypes.guess_type(filename)
        if guessed:
            return guessed
    return sniffed or declared or "application/octet-stream"


def types_disagree(declared: Optional[str], sniffed: Optional[str]) -> bool:
    declared = normalize_mime(declared)
    sniffed = normalize_mime(sniffed)
    if not declared or not sniffed or sniffed in GENERIC_TYPES or declared in GENERIC_TYPES:
        return False
    return declared != sniffed


def extension_for(content_type: str) -> str:
    ct = normalize_mime(content_type) or "application/octet-stream"
    if ct in _PREFERRED_EXTENSIONS:
        return _PREFERRED_EXTENSIONS[ct]
    return mimetypes.guess_extension(ct) or ".bin"


def extensions_for(content_type: str) -> set:
    ct = normalize_mime(content_type) or "application/octet-stream"
    exts = set(mimetypes.guess_all_extensions(ct))
    exts.add(extension_for(ct))
    if ct == "image/jpeg":
        exts.update({".jpeg", ".jpe"})
    return exts
