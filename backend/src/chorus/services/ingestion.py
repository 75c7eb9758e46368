"""Ingestion previews: inline summaries of uploaded data files."""

import csv
import io
import logging
from typing import Awaitable, Callable

import httpx

from chorus_models import TextPart
from chorus.config import settings
from chorus.models import Attachment

logger = logging.getLogger(__name__)

Downloader = Callable[[str], Awaitable[bytes]]

CSV_MEDIA_TYPES = {"text/csv", "application/csv", "application/vnd.ms-excel"}


async def download_attachment(url: str) -> bytes:
    """Fetch attachment bytes from file storage."""
    async with httpx.AsyncClient(timeout=60.0, follow_redirects=True) as client:
        response = await client.get(url)
        response.raise_for_status()
        return response.content


def is_csv(attachment: Attachment) -> bool:
    if attachment.type != "file":
        return False
    if attachment.media_type in CSV_MEDIA_TYPES:
        return True
    return (attachment.filename or attachment.url).lower().endswith(".csv")


def _markdown_row(cells: list[str]) -> str:
    return "| " + " | ".join(c.replace("|", "\\|").strip() for c in cells) + " |"


def render_csv_preview(name: str, content: bytes, max_rows: int) -> str | None:
    """Markdown preview of a CSV: header, the first rows and the row count."""
    text = content.decode("utf-8-sig", errors="replace")
    rows = list(csv.reader(io.StringIO(text)))
    if not rows:
        return None
    header, body = rows[0], rows[1:]
    width = len(header)
    lines = [
        f"[Data preview of {name}: {len(body)} rows, {width} columns]",
        _markdown_row(header),
        "| " + " | ".join("---" for _ in header) + " |",
    ]
    for row in body[:max_rows]:
        lines.append(_markdown_row((row + [""] * width)[:width]))
    if len(body) > max_rows:
        lines.append(f"... {len(body) - max_rows} more rows not shown")
    return "\n".join(lines)


async def build_preview_parts(
    attachments: list[Attachment],
    download: Downloader = download_attachment,
    max_rows: int | None = None,
) -> list[TextPart]:
    """One text part per CSV attachment. Unreadable files are skipped."""
    parts: list[TextPart] = []
    for attachment in attachments:
        if not is_csv(attachment):
            continue
        name = attachment.filename or attachment.url.rsplit("/", 1)[-1]
        try:
            content = await download(attachment.url)
            preview = render_csv_preview(
                name, content, max_rows if max_rows is not None else settings.csv_preview_rows
            )
        except Exception as e:
            logger.warning(f"Skipping preview for {name}: {e}")
            continue
        if preview:
            parts.append(TextPart(text=preview))
    return parts
