"""Locale detection for delimited spectrum tables."""

from __future__ import annotations

from collections import Counter
from typing import Dict, List, Optional, Tuple

# (delimiter, decimal) pairs, in order of preference when they score equally.
CANDIDATES: Tuple[Tuple[str, str], ...] = (
    (",", "."),
    (";", "."),
    ("\t", "."),
    (";", ","),
    ("\t", ","),
)

DEFAULT_LOCALE = {"decimal": ".", "delimiter": ","}


def _number(text: str, decimal: str) -> Optional[float]:
    text = text.strip()
    if decimal != ".":
        if "." in text:
            return None
        text = text.replace(decimal, ".")
    try:
        return float(text)
    except ValueError:
        return None


def _score(lines: List[str], delimiter: str, decimal: str) -> Tuple[int, int]:
    """Rows that split into the most common all-numeric width, and that width."""

    widths: Counter = Counter()
    for line in lines:
        fields = line.split(delimiter)
        if len(fields) < 2:
            continue
        if all(_number(field, decimal) is not None for field in fields):
            widths[len(fields)] += 1
    if not widths:
        return 0, 0
    width, rows = widths.most_common(1)[0]
    return rows, width


def sniff_locale(sample: str) -> Dict[str, str]:
    """Guess the delimiter and decimal separator of a spectrum table.

    Every candidate pair is tried on the sample and the one under which the
    most rows read as numeric records of one width wins. Header and comment
    lines simply fail to parse and do not count.
    """

    lines = [ln for ln in sample.splitlines() if ln.strip()] if sample else []
    best = None
    best_score = (0, 0)
    for delimiter, decimal in CANDIDATES:
        score = _score(lines, delimiter, decimal)
        if score > best_score:
            best, best_score = (delimiter, decimal), score
    if best is None:
        return dict(DEFAULT_LOCALE)
    return {"decimal": best[1], "delimiter": best[0]}
