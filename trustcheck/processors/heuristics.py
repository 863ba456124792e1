from __future__ import annotations

import re

from trustcheck.models.types import CLAIM_MAX_CHARS, StageVerdict

HEURISTIC_MODEL = "heuristic-v1"
MIN_CLAIM_CHARS = 8

_SUBJECTIVE_VERB_RE = re.compile(
    r"^\s*(?:(?:i|we)\s+(am|are|was|were|think|feel|believe|guess|hope|love|hate|like|want|wish)"
    r"|i'm|we're)\b",
    re.IGNORECASE,
)
_NUMBER_RE = re.compile(r"\d")
_UNIT_RE = re.compile(
    r"\b(meters?|metres?|km|kilometers?|kilometres?|ft|feet|miles?|kg|kilograms?|"
    r"grams?|lbs?|pounds?|percent|degrees?|celsius|fahrenheit|years?|million|billion|"
    r"thousand|hundred|dozen)\b",
    re.IGNORECASE,
)
_COPULA_RE = re.compile(r"\b\w+\s+(is|are|was|were)\s+\w+", re.IGNORECASE)


def looks_factual_claim(text: str) -> bool:
    """Cheap pre-filter: does *text* read like a checkable statement of fact?"""
    t = (text or "").strip()
    if len(t) < MIN_CLAIM_CHARS:
        return False
    if _SUBJECTIVE_VERB_RE.match(t):
        return False
    return bool(_NUMBER_RE.search(t) or _UNIT_RE.search(t) or _COPULA_RE.search(t))


def fallback_verdict(text: str) -> StageVerdict:
    claim = (text or "").strip()[:CLAIM_MAX_CHARS]
    if looks_factual_claim(text):
        return StageVerdict("unverified", 0.6, claim, HEURISTIC_MODEL)
    return StageVerdict("opinion", 0.4, claim, HEURISTIC_MODEL)
