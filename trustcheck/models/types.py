from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

VERDICTS = ("true", "false", "misleading", "unverified", "opinion", "outdated", "satire")
STANCES = ("support", "refute", "neutral")
SUBJECT_TYPES = ("user", "page")
TIERS = ("provisional", "low", "normal", "high")

UNVERIFIED = "unverified"
CLAIM_MAX_CHARS = 500


def is_verdict(value: Any) -> bool:
    return isinstance(value, str) and value in VERDICTS


def clamp_confidence(value: Any, default: float = 0.0) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if number != number:  # NaN
        return default
    return max(0.0, min(1.0, number))


@dataclass
class Post:
    """A post as seen by the pipeline. Owned by the posts subsystem."""

    id: str
    author_id: str
    text: str = ""
    image_url: str = ""
    page_id: str | None = None
    author_role: str = "user"
    created_at: datetime | None = None
    expires_at: datetime | None = None
    is_permanent: bool = False
    retention: str = "normal"


@dataclass
class PostEngagement:
    post: Post
    reactions: int = 0
    unique_reactors: int = 0
    comments: int = 0


@dataclass
class Evidence:
    title: str = ""
    url: str = ""
    snippet: str = ""
    stance: str = "neutral"

    def to_dict(self) -> dict[str, str]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Evidence":
        stance = data.get("stance", "neutral")
        return cls(
            title=str(data.get("title", "") or ""),
            url=str(data.get("url", "") or ""),
            snippet=str(data.get("snippet", "") or ""),
            stance=stance if stance in STANCES else "neutral",
        )


@dataclass
class StageVerdict:
    """A verdict produced by one stage of the classification cascade."""

    verdict: str
    confidence: float
    claim: str = ""
    model: str = ""
    evidence: list[Evidence] = field(default_factory=list)


@dataclass
class FactCheckResult:
    """One classification event for a post. Rows are append-only."""

    id: str
    post_id: str
    verdict: str
    confidence: float
    created_at: datetime
    claim: str = ""
    topic: str = ""
    model: str = ""
    evidence: list[Evidence] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "post": self.post_id,
            "claim": self.claim,
            "verdict": self.verdict,
            "confidence": self.confidence,
            "topic": self.topic,
            "evidence": [e.to_dict() for e in self.evidence],
            "model": self.model,
            "createdAt": self.created_at.isoformat(),
        }


@dataclass
class TrustScore:
    score: int
    conf_low: int
    conf_high: int
    tier: str


@dataclass
class TrustSnapshot:
    """Aggregated trust for a user or page, derived from fact-check results."""

    subject_type: str
    subject_id: str
    posts_checked: int = 0
    posts_true: int = 0
    posts_false: int = 0
    posts_misleading: int = 0
    score: int = 50
    conf_low: int = 0
    conf_high: int = 100
    tier: str = "provisional"
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "subjectType": self.subject_type,
            "subject": self.subject_id,
            "postsChecked": self.posts_checked,
            "postsTrue": self.posts_true,
            "postsFalse": self.posts_false,
            "postsMisleading": self.posts_misleading,
            "score": self.score,
            "confLow": self.conf_low,
            "confHigh": self.conf_high,
            "tier": self.tier,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass
class JobHint:
    """Soft flags attached to an enqueue request."""

    force_ai: bool = False
    admin_override: bool = False
    reason: str = ""


@dataclass
class Job:
    post_id: str
    hint: JobHint = field(default_factory=JobHint)

    def to_dict(self) -> dict[str, Any]:
        return {"postId": self.post_id, "hint": asdict(self.hint)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Job":
        hint = data.get("hint") or {}
        return cls(
            post_id=str(data["postId"]),
            hint=JobHint(
                force_ai=bool(hint.get("force_ai", False)),
                admin_override=bool(hint.get("admin_override", False)),
                reason=str(hint.get("reason", "") or ""),
            ),
        )


@dataclass
class ClassifierResult:
    """Outcome of an AI classification call. ``ok`` is False on any failure."""

    ok: bool
    verdict: str | None = None
    confidence: float | None = None
    explanation: str = ""
    error: str | None = None
    detail: str | None = None

    @classmethod
    def failure(cls, error: str, detail: str | None = None) -> "ClassifierResult":
        return cls(ok=False, error=error, detail=detail)
