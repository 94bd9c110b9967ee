"""File helpers for reading project documents and writing state atomically."""

from __future__ import annotations

import codecs
import locale
import os
import tempfile
from pathlib import Path
from typing import Iterable

__all__ = [
    "DEFAULT_DOCUMENT_EXTENSIONS",
    "read_text",
    "write_text",
    "is_supported_document",
]

DEFAULT_DOCUMENT_EXTENSIONS: tuple[str, ...] = (".md", ".markdown", ".txt", ".rst")

# longest first: the UTF-32 LE mark starts with the UTF-16 LE one
_BOMS: tuple[tuple[bytes, str], ...] = (
    (codecs.BOM_UTF32_LE, "utf-32-le"),
    (codecs.BOM_UTF32_BE, "utf-32-be"),
    (codecs.BOM_UTF8, "utf-8-sig"),
    (codecs.BOM_UTF16_LE, "utf-16-le"),
    (codecs.BOM_UTF16_BE, "utf-16-be"),
)


def read_text(
    path: Path | str,
    *,
    encoding: str | None = None,
    errors: str = "strict",
    normalize_newlines: bool = True,
) -> str:
    """Decode a document, guessing the encoding from its BOM or content.

    Without a BOM the bytes are tried as UTF-8, then the locale's preferred
    encoding, then Latin-1 (which accepts anything). A leading BOM character
    is dropped, and CRLF/CR line endings become ``\\n`` unless
    ``normalize_newlines`` is false.
    """

    raw = Path(path).read_bytes()
    text = raw.decode(encoding or _guess_encoding(raw), errors=errors)
    if text.startswith("\ufeff"):
        text = text[1:]
    if normalize_newlines and "\r" in text:
        text = text.replace("\r\n", "\n").replace("\r", "\n")
    return text


def write_text(path: Path | str, content: str, *, encoding: str = "utf-8") -> Path:
    """Replace ``path`` with ``content`` via a sibling temp file and ``os.replace``."""

    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    descriptor, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
    replaced = False
    try:
        with os.fdopen(descriptor, "w", encoding=encoding, newline="") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, target)
        replaced = True
    finally:
        if not replaced:  # pragma: no cover - write failed midway
            Path(tmp_name).unlink(missing_ok=True)
    return target


def is_supported_document(
    path: Path | str | None,
    extensions: Iterable[str] = DEFAULT_DOCUMENT_EXTENSIONS,
) -> bool:
    """``True`` when ``path`` ends in one of ``extensions`` (case-insensitive)."""

    suffix = Path(str(path)).suffix.lower() if path else ""
    return bool(suffix) and suffix in {ext.lower() for ext in extensions}


def _guess_encoding(raw: bytes) -> str:
    for bom, name in _BOMS:
        if raw.startswith(bom):
            return name
    candidates = dict.fromkeys(("utf-8", locale.getpreferredencoding(False) or "utf-8", "latin-1"))
    for candidate in candidates:
        try:
            raw.decode(candidate)
        except (UnicodeDecodeError, LookupError):
            continue
        return candidate
    return "latin-1"
