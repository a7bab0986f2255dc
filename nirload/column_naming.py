from __future__ import annotations

import re
import unicodedata
from typing import Iterable, List, Optional

SEPARATOR_RE = re.compile(r"[\s\-/\\.]+")
INVALID_CHARS_RE = re.compile(r"[^A-Za-z0-9_]")


def sanitize_column_name(text: Optional[str], position: int) -> str:
    """Turn raw header text into an identifier made of [A-Za-z0-9_].

    Spaces, dashes, slashes and dots become underscores, accents are folded
    to ASCII and anything else is dropped. A header that sanitizes to nothing
    becomes ``_<position>`` (0-based column position); one starting with a
    digit gets a leading underscore.

    >>> sanitize_column_name("Date/Time", 1)
    'Date_Time'
    >>> sanitize_column_name("", 2)
    '_2'
    >>> sanitize_column_name("31 CH", 0)
    '_31_CH'
    """
    s = "" if text is None else str(text).strip()
    s = unicodedata.normalize("NFKD", s).encode("ascii", "ignore").decode("ascii")
    s = SEPARATOR_RE.sub("_", s)
    s = INVALID_CHARS_RE.sub("", s)
    if not s:
        return f"_{position}"
    if s[0].isdigit():
        s = f"_{s}"
    return s


def unique_column_names(
    headers: Iterable[Optional[str]],
    reserved: Iterable[str] = (),
) -> List[str]:
    """Sanitize headers in order, appending _1, _2, ... on collision.

    Names in ``reserved`` are treated as already taken.

    >>> unique_column_names(["A", "A", ""])
    ['A', 'A_1', '_2']
    """
    names: List[str] = []
    seen = set(reserved)
    for position, header in enumerate(headers):
        base = sanitize_column_name(header, position)
        name = base
        counter = 1
        while name in seen:
            name = f"{base}_{counter}"
            counter += 1
        seen.add(name)
        names.append(name)
    return names


__all__ = ["sanitize_column_name", "unique_column_names"]
