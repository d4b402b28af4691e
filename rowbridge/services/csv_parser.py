"""Delimited-text line parsing."""

import re
from typing import List, Optional, Set, Tuple

_LINE_BREAK = re.compile(r"\r?\n")
_NOISE_LINE = re.compile(r"^[\"',\s]*$")


def _scan(
    line: str, delimiter: str, literals: Set[int]
) -> Tuple[List[str], Optional[int]]:
    """Split one line; returns the fields and the index of a quote left open.

    Quote characters whose index is in ``literals`` are kept as text.
    """
    fields: List[str] = []
    current: List[str] = []
    in_quotes = False
    opened_at: Optional[int] = None
    i = 0
    length = len(line)

    while i < length:
        char = line[i]
        if char == '"' and i not in literals:
            if in_quotes and i + 1 < length and line[i + 1] == '"':
                current.append('"')
                i += 1
            else:
                in_quotes = not in_quotes
                opened_at = i if in_quotes else None
        elif char == delimiter and not in_quotes:
            fields.append("".join(current).strip())
            current = []
        else:
            current.append(char)
        i += 1

    fields.append("".join(current).strip())
    return fields, opened_at


def parse_line(line: str, delimiter: str = ",") -> List[str]:
    """
    Split a single line into trimmed fields.

    Quote characters toggle quoting wherever they appear in a field, and a
    doubled quote inside a quoted section yields one literal quote. An empty
    or separator-only line gives ``[]``.

    Malformed quoting never raises: when a quote is opened and never closed,
    that opening quote is treated as an ordinary character and the line is
    read again, so the remaining delimiters still split fields.
    """
    if not line or not line.strip():
        return []

    literals: Set[int] = set()
    fields, unmatched = _scan(line, delimiter, literals)
    while unmatched is not None:
        literals.add(unmatched)
        fields, unmatched = _scan(line, delimiter, literals)
    if not any(fields):
        return []
    return fields


def split_lines(content: str) -> List[str]:
    """Trimmed non-noise lines of ``content``.

    Lines consisting only of quotes, commas and whitespace carry no data and
    are dropped.
    """
    lines = []
    for raw in _LINE_BREAK.split(content):
        line = raw.strip()
        if line and not _NOISE_LINE.match(line):
            lines.append(line)
    return lines


def clean_header(name: str) -> str:
    """Strip whitespace and quote characters from a header name."""
    return name.strip().replace('"', "").replace("'", "").strip()


def parse_headers(content: str, delimiter: str = ",") -> List[str]:
    """Column names from the first data line; empty names are dropped."""
    lines = split_lines(content)
    if not lines:
        return []
    return [name for name in (clean_header(c) for c in parse_line(lines[0], delimiter)) if name]
