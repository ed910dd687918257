"""Cleanup for voice-dictated messages before they are matched.

Only corrections that are unambiguous in their context are applied; plain
homophones are left alone.
"""
from __future__ import annotations

import re
from typing import Dict, List, Tuple

from pydantic import BaseModel, Field

SPACED_ACRONYMS = ("a i", "m l", "g p t", "a p i", "u i", "u x", "c s s", "h t m l", "j s", "s q l")

COMPOUNDS: List[Tuple[str, str]] = [
    (r"\bdata\s+base\b", "database"),
    (r"\bdata\s+set\b", "dataset"),
    (r"\bbest\s+(bait|fishing|lure)\b", r"bass \1"),
]

CONTEXT_PATTERNS: List[Tuple[Tuple[str, ...], Dict[str, str]]] = [
    # fishing
    (("fish", "fishing", "lake", "rod", "reel"), {"base bait": "bass bait", "base fishing": "bass fishing"}),
    # data / BI
    (("data", "chart", "dashboard", "report", "analysis", "visual"), {
        "tablo": "tableau",
        "table low": "tableau",
        "power be i": "power bi",
        "power bee": "power bi",
        "date up": "data",
    }),
    # programming
    (("code", "program", "function", "variable", "script"), {
        "pie thon": "python",
        "java script": "javascript",
        "type script": "typescript",
    }),
    # AI / ML
    (("model", "train", "predict", "algorithm", "neural"), {
        "machine lurning": "machine learning",
        "deep lurning": "deep learning",
        "neural net work": "neural network",
    }),
]

VOICE_CORRECTIONS: Dict[str, str] = {
    "tablo": "tableau",
    "power bee": "power bi",
    "my sequel": "mysql",
    "no sequel": "nosql",
}


class Correction(BaseModel):
    original: str
    corrected: str
    confidence: float


class CorrectionResult(BaseModel):
    original: str
    corrected: str
    corrections: List[Correction] = Field(default_factory=list)

    @property
    def changed(self) -> bool:
        return self.corrected != self.original

    @property
    def confidence(self) -> float:
        return max((c.confidence for c in self.corrections), default=1.0)


def _sub_word(text: str, wrong: str, right: str) -> str:
    return re.sub(rf"\b{re.escape(wrong)}\b", right, text, flags=re.I)


def fix_spacing(text: str) -> str:
    for spaced in SPACED_ACRONYMS:
        letters = spaced.split()
        pattern = r"\b" + r"\s+".join(letters) + r"\b"
        text = re.sub(pattern, "".join(letters), text, flags=re.I)
    for pattern, repl in COMPOUNDS:
        text = re.sub(pattern, repl, text, flags=re.I)
    return text


def apply_context(text: str) -> str:
    lowered = text.lower()
    for keywords, corrections in CONTEXT_PATTERNS:
        if any(k in lowered for k in keywords):
            for wrong, right in corrections.items():
                text = _sub_word(text, wrong, right)
    return text


def correct_message(text: str) -> CorrectionResult:
    result = CorrectionResult(original=text, corrected=text)
    current = text

    spaced = fix_spacing(current)
    if spaced != current:
        result.corrections.append(Correction(original=current, corrected=spaced, confidence=0.9))
        current = spaced

    contextual = apply_context(current)
    if contextual != current:
        result.corrections.append(Correction(original=current, corrected=contextual, confidence=0.85))
        current = contextual

    for wrong, right in VOICE_CORRECTIONS.items():
        updated = _sub_word(current, wrong, right)
        if updated != current:
            result.corrections.append(Correction(original=wrong, corrected=right, confidence=0.7))
            current = updated

    result.corrected = current
    return result
