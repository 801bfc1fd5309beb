"""Shareable download links and their QR codes."""

from __future__ import annotations

from urllib.parse import quote

import segno

DOWNLOAD_PATH = "/api/files/download/"


def build_download_url(base_url: str, stored_name: str) -> str:
    """Absolute URL a second device opens to fetch ``stored_name``."""
    return f"{base_url.rstrip('/')}{DOWNLOAD_PATH}{quote(stored_name, safe='')}"


def render_qr_data_uri(url: str, scale: int = 6) -> str:
    """Render ``url`` as a PNG QR code embedded in a ``data:`` URI."""
    qr = segno.make(url, error="m", micro=False)
    return qr.png_data_uri(scale=scale, border=2)
