"""File-backed fact rules.

Rules live in a JSON list and are evaluated in file order; the first rule that
fires decides the verdict. The rule set is held as an immutable tuple that is
swapped in one assignment on reload, so a reader never observes a half-parsed
file.
"""
from __future__ import annotations

import json
import logging
import os
import re
import threading
from dataclasses import dataclass
from typing import Any, Iterable

from trustcheck.models.types import CLAIM_MAX_CHARS, StageVerdict, is_verdict

logger = logging.getLogger(__name__)

FILE_RULES_MODEL = "rules-file-v1"
BUILTIN_RULES_MODEL = "rules-builtin-v1"

RULE_TYPES = ("containsAny", "containsAll", "equals", "regex", "numberRange")

NUMBER_RE = re.compile(
    r"(\d+(?:\.\d+)?)\s*(m|meter|meters|km|kilometer|kilometers|ft|feet)?\b"
)

_REGEX_FLAGS = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL}
_WHITESPACE_RE = re.compile(r"\s+")


def normalize(text: Any) -> str:
    return _WHITESPACE_RE.sub(" ", str(text or "").lower().strip())


def _flags_from(spec: str) -> int:
    flags = 0
    for letter in spec:
        flags |= _REGEX_FLAGS.get(letter, 0)
    return flags


def _normalized_list(data: dict, key: str) -> tuple[str, ...]:
    values = data.get(key)
    if values is None:
        return ()
    if not isinstance(values, list):
        raise ValueError(f"{key} must be a list, got {type(values).__name__}")
    return tuple(n for n in (normalize(v) for v in values) if n)


@dataclass(frozen=True)
class Rule:
    type: str
    verdict: str = "false"
    confidence: float = 0.8
    keywords: tuple[str, ...] = ()
    text: str = ""
    pattern: str = ""
    regex: re.Pattern | None = None
    patterns: tuple[str, ...] = ()
    true_range: tuple[float, float] | None = None
    true_verdict: str = "true"
    if_outside_verdict: str = "false"
    confidence_true: float = 0.8
    confidence_false: float = 0.8

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Rule":
        """Build a rule from one JSON object. Raises ValueError on a bad shape."""
        if not isinstance(data, dict):
            raise ValueError("rule must be an object")
        rule_type = data.get("type") or "containsAny"
        if rule_type not in RULE_TYPES:
            raise ValueError(f"unknown rule type {rule_type!r}")

        base_conf = data.get("confidence")
        if base_conf is None:
            base_conf = data.get("confidenceFalse")
        if base_conf is None:
            base_conf = data.get("confidenceTrue")
        base_conf = float(0.8 if base_conf is None else base_conf)

        verdicts = {
            "verdict": data.get("verdict") or "false",
            "trueVerdict": data.get("trueVerdict") or "true",
            "ifOutsideVerdict": data.get("ifOutsideVerdict") or "false",
        }
        for key, value in verdicts.items():
            if not is_verdict(value):
                raise ValueError(f"invalid {key} {value!r}")

        regex = None
        pattern = str(data.get("pattern") or "")
        if rule_type == "regex":
            try:
                regex = re.compile(pattern, _flags_from(str(data.get("flags") or "i")))
            except re.error as exc:
                logger.warning("Rule regex %r does not compile, rule disabled: %s", pattern, exc)

        true_range = None
        raw_range = data.get("trueRange")
        if isinstance(raw_range, (list, tuple)) and len(raw_range) >= 2:
            try:
                true_range = (float(raw_range[0]), float(raw_range[1]))
            except (TypeError, ValueError):
                true_range = None

        conf_true = data.get("confidenceTrue")
        conf_false = data.get("confidenceFalse")
        return cls(
            type=rule_type,
            verdict=verdicts["verdict"],
            confidence=base_conf,
            keywords=_normalized_list(data, "keywords"),
            text=normalize(data.get("text")),
            pattern=pattern,
            regex=regex,
            patterns=_normalized_list(data, "patterns"),
            true_range=true_range,
            true_verdict=verdicts["trueVerdict"],
            if_outside_verdict=verdicts["ifOutsideVerdict"],
            confidence_true=float(base_conf if conf_true is None else conf_true),
            confidence_false=float(base_conf if conf_false is None else conf_false),
        )

    def evaluate(self, raw: str, norm: str) -> tuple[str, float] | None:
        if self.type == "containsAll":
            if self.keywords and all(k in norm for k in self.keywords):
                return self.verdict, self.confidence
        elif self.type == "containsAny":
            if self.keywords and any(k in norm for k in self.keywords):
                return self.verdict, self.confidence
        elif self.type == "equals":
            if self.text == norm:
                return self.verdict, self.confidence
        elif self.type == "regex":
            if self.regex is not None and self.regex.search(raw):
                return self.verdict, self.confidence
        elif self.type == "numberRange":
            return self._evaluate_range(norm)
        return None

    def _evaluate_range(self, norm: str) -> tuple[str, float] | None:
        if self.patterns and not any(p in norm for p in self.patterns):
            return None
        if self.true_range is None:
            return None
        match = NUMBER_RE.search(norm)
        if not match:
            return None
        value = float(match.group(1))
        low, high = self.true_range
        if low <= value <= high:
            return self.true_verdict, self.confidence_true
        return self.if_outside_verdict, self.confidence_false


def parse_rules(data: Any) -> tuple[Rule, ...]:
    if not isinstance(data, list):
        raise ValueError("rules file must contain a JSON list")
    rules: list[Rule] = []
    for index, item in enumerate(data):
        try:
            rules.append(Rule.from_dict(item))
        except (ValueError, TypeError) as exc:
            logger.warning("Skipping rule #%d: %s", index, exc)
    return tuple(rules)


def match_rule(text: str, rules: Iterable[Rule]) -> StageVerdict | None:
    """Return the verdict of the first rule that fires on *text*, or None."""
    raw = str(text or "")
    norm = normalize(raw)
    for rule in rules:
        try:
            hit = rule.evaluate(raw, norm)
        except Exception as exc:
            logger.warning("Rule %s raised, skipping: %s", rule.type, exc)
            continue
        if hit is not None:
            verdict, confidence = hit
            return StageVerdict(
                verdict=verdict,
                confidence=confidence,
                claim=raw[:CLAIM_MAX_CHARS],
                model=FILE_RULES_MODEL,
            )
    return None


class RuleBook:
    """Owns the current rule snapshot and reloads it when the file changes."""

    def __init__(self, path: str) -> None:
        self._path = path
        self._rules: tuple[Rule, ...] = ()
        self._mtime: float | None = None
        self._reload_lock = threading.Lock()
        self.refresh()

    @property
    def rules(self) -> tuple[Rule, ...]:
        return self._rules

    def refresh(self) -> bool:
        """Reload the file if its mtime changed. Returns True when a new set was swapped in."""
        with self._reload_lock:
            try:
                mtime = os.stat(self._path).st_mtime
            except FileNotFoundError:
                if self._mtime is None:
                    return False
                logger.warning("Rules file %s disappeared, dropping %d rules", self._path, len(self._rules))
                self._rules = ()
                self._mtime = None
                return True
            except OSError as exc:
                logger.warning("Cannot stat rules file %s: %s", self._path, exc)
                return False

            if mtime == self._mtime:
                return False

            try:
                with open(self._path, encoding="utf-8") as f:
                    rules = parse_rules(json.load(f))
            except (OSError, ValueError) as exc:
                logger.warning("Rules reload failed, keeping previous set: %s", exc)
                return False

            self._rules = rules
            self._mtime = mtime
            logger.info("Loaded %d fact rules from %s", len(rules), self._path)
            return True

    def match(self, text: str) -> StageVerdict | None:
        return match_rule(text, self._rules)


_BANGLADESH_RE = re.compile(r"bangladesh .*biggest country|biggest country .*bangladesh")
_EIFFEL_HEIGHT_RE = re.compile(r"(\d+)\s*(m|meter|meters)\b")
_FREE_COUNTRY_RE = re.compile(r"is a free country")


def builtin_verdict(text: str) -> StageVerdict | None:
    """Hardcoded rules that ship with the service, used after the file rules."""
    raw = str(text or "")
    t = raw.lower().strip()
    claim = raw[:CLAIM_MAX_CHARS]

    if _BANGLADESH_RE.search(t):
        return StageVerdict("false", 0.9, claim, BUILTIN_RULES_MODEL)

    if "eiffel" in t:
        match = _EIFFEL_HEIGHT_RE.search(t)
        if match:
            height = int(match.group(1))
            # ~324 m including the antenna
            if 300 <= height <= 330:
                return StageVerdict("true", 0.85, claim, BUILTIN_RULES_MODEL)
            return StageVerdict("false", 0.9, claim, BUILTIN_RULES_MODEL)

    if _FREE_COUNTRY_RE.search(t):
        return StageVerdict("opinion", 0.6, claim, BUILTIN_RULES_MODEL)

    return None
