"""Stored-name generation for uploaded files."""

from __future__ import annotations

import re
import secrets
import unicodedata
from pathlib import PurePosixPath
from typing import TYPE_CHECKING

from backend.services.datetime_service import epoch_millis, now_utc

if TYPE_CHECKING:
    from datetime import datetime

MAX_STEM_LENGTH = 80
MAX_EXTENSION_LENGTH = 16

_STORED_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9._-]*$")


def display_name(declared_name: str) -> str:
    """Strip any client-side directory components from a declared filename.

    Browsers on some platforms send full paths (``C:\\Users\\me\\photo.jpg``).
    """
    name = declared_name.replace("\\", "/").rsplit("/", 1)[-1].strip()
    return name.replace("\x00", "")


def split_extension(name: str) -> tuple[str, str]:
    """Split ``name`` into (stem, lowercase extension without the dot)."""
    path = PurePosixPath(name)
    suffix = path.suffix
    if not suffix or len(suffix) > MAX_EXTENSION_LENGTH + 1:
        return name, ""
    return name[: -len(suffix)], suffix[1:].lower()


def sanitize_stem(stem: str) -> str:
    """Reduce a filename stem to a filesystem- and URL-safe slug.

    - Normalize unicode to ASCII (NFKD)
    - Lowercase, replace runs of other characters with single hyphens
    - Truncate to 80 chars without cutting mid-word when possible
    - Return "file" for an empty result
    """
    text = unicodedata.normalize("NFKD", stem).encode("ascii", "ignore").decode("ascii")
    text = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    if not text:
        return "file"
    if len(text) > MAX_STEM_LENGTH:
        truncated = text[:MAX_STEM_LENGTH]
        last_hyphen = truncated.rfind("-")
        if last_hyphen > 0:
            truncated = truncated[:last_hyphen]
        text = truncated.rstrip("-")
    return text


def generate_stored_name(original_name: str, now: datetime | None = None) -> str:
    """Generate a collision-resistant stored name.

    Form: ``<slug(stem)>-<epoch millis>-<6 hex chars>[.<ext>]``. The timestamp
    keeps names sortable; the random token separates uploads of the same name
    within one millisecond.
    """
    stem, ext = split_extension(display_name(original_name))
    ext = re.sub(r"[^a-z0-9]", "", ext)
    millis = epoch_millis(now or now_utc())
    name = f"{sanitize_stem(stem)}-{millis}-{secrets.token_hex(3)}"
    return f"{name}.{ext}" if ext else name


def is_valid_stored_name(stored_name: str) -> bool:
    """Whether ``stored_name`` could have been produced by ``generate_stored_name``."""
    return bool(_STORED_NAME_RE.match(stored_name)) and ".." not in stored_name
