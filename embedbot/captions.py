"""Reply caption composition from page metadata and probed media info."""
from __future__ import annotations

import html
from dataclasses import dataclass
from typing import Optional, Pattern, Sequence

from .metadata import PageMetadata
from .pipeline.types import MediaInfo


@dataclass
class Caption:
    body: str = ""
    html_body: str = ""

    @property
    def is_empty(self) -> bool:
        return not self.body and not self.html_body


def _html_text(value: str) -> str:
    return html.escape(value, quote=False).replace("\n", "<br/>")


def format_duration(seconds: float) -> str:
    total = int(round(seconds))
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def describe_media(info: Optional[MediaInfo]) -> Optional[str]:
    if info is None:
        return None
    parts = []
    if info.width and info.height:
        parts.append(f"{info.width}x{info.height}")
    if info.duration_seconds and not info.is_still_image:
        parts.append(format_duration(info.duration_seconds))
    return ", ".join(parts) or None


def compose_caption(
    meta: Optional[PageMetadata],
    ignored_title_patterns: Sequence[Pattern[str]] = (),
    has_media: bool = False,
    media_info: Optional[MediaInfo] = None,
) -> Caption:
    """Plain and HTML bodies for the reply event.

    Titles matching an ignored pattern (e.g. "Video File") are dropped. The
    HTML body quotes title and description and starts with a line break when
    media is attached.
    """
    title = meta.title if meta else None
    description = meta.description if meta else None
    if title is not None and any(p.search(title) for p in ignored_title_patterns):
        title = None

    if title and description:
        body = f"{title}: {description}"
    else:
        body = title or description or ""

    html_body = ""
    if title or description:
        strong = f"<strong>{_html_text(title)}{':' if description else ''}</strong>" if title else ""
        para = f"<p>{_html_text(description)}</p>" if description else ""
        html_body = f"{'<br/>' if has_media else ''}<blockquote>{strong}{para}</blockquote>"

    details = describe_media(media_info)
    if details:
        body = f"{body} ({details})" if body else details
        html_body = f"{html_body}<p><em>{_html_text(details)}</em></p>"

    return Caption(body=body, html_body=html_body)
