"""Bayesian trust score with a confidence band.

A Beta(prior_alpha, prior_beta) prior is updated with ``true`` verdicts as
successes and ``false``/``misleading`` verdicts as failures. The score is the
posterior mean; the band is a normal approximation of the posterior.
"""
from __future__ import annotations

import math

from trustcheck.models.types import TrustScore

PRIOR_ALPHA = 8.0
PRIOR_BETA = 8.0
MATURITY_MIN = 10
Z_95 = 1.96

HIGH_TRUST_MEAN = 0.70
LOW_TRUST_MEAN = 0.40


def beta_mean(alpha: float, beta: float) -> float:
    return alpha / (alpha + beta)


def beta_interval(alpha: float, beta: float, z: float = Z_95) -> tuple[float, float]:
    n = alpha + beta
    p = alpha / n
    variance = (alpha * beta) / ((n * n) * (n + 1))
    d = z * math.sqrt(variance)
    return max(0.0, p - d), min(1.0, p + d)


def tier_for(mean: float, checks: int, maturity_min: int = MATURITY_MIN) -> str:
    if checks < maturity_min:
        return "provisional"
    if mean >= HIGH_TRUST_MEAN:
        return "high"
    if mean < LOW_TRUST_MEAN:
        return "low"
    return "normal"


def compute_trust(
    true_count: int = 0,
    false_count: int = 0,
    misleading_count: int = 0,
    *,
    prior_alpha: float = PRIOR_ALPHA,
    prior_beta: float = PRIOR_BETA,
    maturity_min: int = MATURITY_MIN,
) -> TrustScore:
    good = max(0, int(true_count or 0))
    bad = max(0, int(false_count or 0)) + max(0, int(misleading_count or 0))

    alpha = prior_alpha + good
    beta = prior_beta + bad

    mean = beta_mean(alpha, beta)
    low, high = beta_interval(alpha, beta)

    return TrustScore(
        score=round(mean * 100),
        conf_low=round(low * 100),
        conf_high=round(high * 100),
        tier=tier_for(mean, good + bad, maturity_min),
    )
