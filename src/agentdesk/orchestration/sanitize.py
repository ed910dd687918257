"""Speech-friendly text cleanup for streamed model output.

Each rule is a regex substitution that never looks past a newline, so a
delta can be cleaned on its own. ``sanitize`` reapplies the rules until
nothing changes, which makes it idempotent.
"""
from __future__ import annotations

import re
from typing import List, Tuple

_RULES: List[Tuple[re.Pattern[str], str]] = [
    # inline markers
    (re.compile(r"\*+"), ""),
    (re.compile(r"`+"), ""),
    (re.compile(r"#+[ \t]?"), ""),
    (re.compile(r"\[([^\[\]\n]+)\]\([^()\s]*\)"), r"\1"),
    # line-level markers
    (re.compile(r"^[ \t]*(?:-{3,}|={3,})[ \t]*$", re.M), ""),
    (re.compile(r"^\|.*\|$", re.M), ""),
    (re.compile(r"^-[ \t]+", re.M), ""),
]


def _apply_once(text: str) -> str:
    for pattern, repl in _RULES:
        text = pattern.sub(repl, text)
    return text


def sanitize(text: str) -> str:
    if not text:
        return text
    current = text
    while True:
        cleaned = _apply_once(current)
        # every effective rule shortens the text, so this terminates
        if cleaned == current:
            return cleaned
        current = cleaned
