"""Handover document naming."""

import re
import unicodedata

_WHITESPACE = re.compile(r"\s+")


def sanitize_document_name(name: str) -> str:
    """
    Normalize an uploaded handover document name for storage.

    Accents are stripped (NFD decomposition, combining marks removed) and
    whitespace runs become a single underscore.  ``Biên bản bàn giao.pdf``
    becomes ``Bien_ban_ban_giao.pdf``.
    """
    decomposed = unicodedata.normalize("NFD", name.strip())
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    stripped = stripped.replace("đ", "d").replace("Đ", "D")
    return _WHITESPACE.sub("_", stripped)
