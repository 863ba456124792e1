from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from trustcheck.models.types import CLAIM_MAX_CHARS, Evidence, JobHint, Post, StageVerdict
from trustcheck.pipeline.rate_limit import HourlyBudget
from trustcheck.processors.classifier import GeminiClassifier
from trustcheck.processors.heuristics import HEURISTIC_MODEL, looks_factual_claim
from trustcheck.processors.rules import RuleBook, builtin_verdict

logger = logging.getLogger(__name__)

DEFAULT_AI_CONFIDENCE = 0.7

_STANCE_BY_VERDICT = {"true": "support", "false": "refute", "misleading": "refute"}


@dataclass
class StageContext:
    post: Post
    hint: JobHint = field(default_factory=JobHint)
    ai_planned: bool = False
    ai_attempted: bool = False

    @property
    def ai_pending(self) -> bool:
        return self.ai_planned and not self.ai_attempted


class Stage(Protocol):
    name: str

    def attempt(self, text: str, context: StageContext) -> StageVerdict | None:
        ...


class FileRulesStage:
    name = "rules-file"

    def __init__(self, rulebook: RuleBook) -> None:
        self._rulebook = rulebook

    def attempt(self, text: str, context: StageContext) -> StageVerdict | None:
        return self._rulebook.match(text)


class BuiltinRulesStage:
    name = "rules-builtin"

    def attempt(self, text: str, context: StageContext) -> StageVerdict | None:
        return builtin_verdict(text)


class HeuristicStage:
    """Low-confidence ``unverified`` for claim-like text when the AI will not look at it."""

    name = "heuristic"

    def attempt(self, text: str, context: StageContext) -> StageVerdict | None:
        if context.ai_pending:
            return None
        if looks_factual_claim(text):
            return StageVerdict("unverified", 0.6, text.strip()[:CLAIM_MAX_CHARS], HEURISTIC_MODEL)
        return None


class AIStage:
    name = "ai"

    def __init__(self, classifier: GeminiClassifier, budget: HourlyBudget) -> None:
        self._classifier = classifier
        self._budget = budget

    @property
    def available(self) -> bool:
        return self._classifier.available

    def attempt(self, text: str, context: StageContext) -> StageVerdict | None:
        if not context.ai_planned or context.ai_attempted:
            return None
        context.ai_attempted = True

        if not context.hint.admin_override and not self._budget.try_acquire():
            logger.info("AI stage skipped for post %s: budget", context.post.id)
            return None

        result = self._classifier.classify(text, image_url=context.post.image_url or None)
        if not result.ok:
            logger.warning(
                "AI stage failed for post %s: %s %s",
                context.post.id,
                result.error,
                (result.detail or "")[:200],
            )
            return None

        evidence = []
        if result.explanation:
            evidence.append(
                Evidence(
                    title="Model explanation",
                    snippet=result.explanation[:1000],
                    stance=_STANCE_BY_VERDICT.get(result.verdict or "", "neutral"),
                )
            )
        confidence = result.confidence if result.confidence is not None else DEFAULT_AI_CONFIDENCE
        return StageVerdict(
            verdict=result.verdict or "unverified",
            confidence=confidence,
            claim=text.strip()[:CLAIM_MAX_CHARS],
            model=self._classifier.tag,
            evidence=evidence,
        )


def build_stages(
    settings: Any,
    rulebook: RuleBook | None,
    classifier: GeminiClassifier | None,
    budget: HourlyBudget | None,
) -> list[Stage]:
    """Order the cascade from configuration: rules-first (default) or AI-first."""
    local: list[Stage] = []
    if settings.rules_enabled:
        if rulebook is not None:
            local.append(FileRulesStage(rulebook))
        local.append(BuiltinRulesStage())
    if settings.heuristics_enabled:
        local.append(HeuristicStage())

    if classifier is None or budget is None:
        return local

    ai = AIStage(classifier, budget)
    if settings.rules_first:
        return [*local, ai]
    return [ai, *local]
