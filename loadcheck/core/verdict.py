"""Pass/fail evaluation of level results against thresholds."""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence

from .config import ThresholdConfig

if TYPE_CHECKING:
    from .scheduler import LevelResult


AUTH = "auth"
SUCCESS_RATE = "success_rate"
THROUGHPUT = "throughput"
LATENCY = "latency"
CHANNEL = "channel"

SUGGESTIONS: Dict[str, List[str]] = {
    AUTH: [
        "Implement connection pooling for the auth backend",
        "Increase server resources or raise connection limits",
    ],
    SUCCESS_RATE: [
        "Verify that all API endpoints are reachable under load",
        "Check for rate limiting on the API",
        "Implement connection pooling for the database",
    ],
    LATENCY: [
        "Optimize database queries",
        "Implement caching for frequently read endpoints",
    ],
    THROUGHPUT: [
        "Scale out the API behind a load balancer",
        "Increase worker processes or event-loop capacity on the server",
    ],
    CHANNEL: [
        "Review the Socket.IO server configuration",
        "Check CORS settings for the real-time endpoint",
    ],
}


@dataclass(frozen=True)
class Violation:
    """A single failing check."""

    check: str
    observed: float
    required: float
    message: str


@dataclass
class Verdict:
    """Evaluation of one level."""

    passed: bool
    reasons: List[str] = field(default_factory=list)
    violations: List[Violation] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passed": self.passed,
            "reasons": list(self.reasons),
            "violations": [asdict(v) for v in self.violations],
        }


@dataclass
class RunVerdict:
    """Evaluation of a whole run."""

    all_claims_verified: bool
    reasons: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)
    max_capacity: Optional[Dict[str, Any]] = None
    assessment: Dict[str, str] = field(default_factory=dict)
    overall_score: float = 0.0
    score_label: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _tier(value: float, excellent: float, good: float) -> str:
    if value >= excellent:
        return "EXCELLENT"
    if value >= good:
        return "GOOD"
    return "LIMITED"


def score_label(score: float) -> str:
    if score >= 0.8:
        return "LEGENDARY"
    if score >= 0.6:
        return "EXCELLENT"
    if score >= 0.4:
        return "GOOD"
    return "NEEDS IMPROVEMENT"


class VerdictEngine:
    """Applies a ``ThresholdConfig`` to level results.

    A level passes when every configured check holds:

    - ``authenticated_count >= population * auth_fraction``
    - ``success_rate >= min_success_rate_percent`` (skipped when
      ``api_calls_per_actor`` is 0)
    - ``throughput >= min_throughput_per_second`` when set
    - ``p95_latency <= max_p95_latency_ms`` when set
    - ``channels_opened >= population * min_channel_fraction`` when set

    Each failing check contributes exactly one reason. An empty level
    (``population == 0``) passes vacuously.
    """

    def __init__(self, thresholds: Optional[ThresholdConfig] = None):
        self.thresholds = thresholds or ThresholdConfig()

    def evaluate(self, result: "LevelResult") -> Verdict:
        if result.population == 0:
            return Verdict(passed=True)

        t = self.thresholds
        violations: List[Violation] = []

        required_auth = result.population * t.auth_fraction
        if result.authenticated_count < required_auth:
            violations.append(Violation(
                AUTH,
                result.authenticated_count,
                required_auth,
                f"authentication: {result.authenticated_count}/{result.population} users authenticated, "
                f"need at least {math.ceil(required_auth)} ({t.auth_fraction:.0%})",
            ))

        if result.api_calls_per_actor > 0 and result.success_rate < t.min_success_rate_percent:
            violations.append(Violation(
                SUCCESS_RATE,
                result.success_rate,
                t.min_success_rate_percent,
                f"API success rate {result.success_rate:.1f}% is below {t.min_success_rate_percent:g}%",
            ))

        if t.min_throughput_per_second is not None and result.throughput < t.min_throughput_per_second:
            violations.append(Violation(
                THROUGHPUT,
                result.throughput,
                t.min_throughput_per_second,
                f"throughput {result.throughput:.1f} req/s is below {t.min_throughput_per_second:g} req/s",
            ))

        if t.max_p95_latency_ms is not None and result.p95_latency > t.max_p95_latency_ms:
            violations.append(Violation(
                LATENCY,
                result.p95_latency,
                t.max_p95_latency_ms,
                f"p95 latency {result.p95_latency:.0f}ms exceeds {t.max_p95_latency_ms:g}ms",
            ))

        if t.min_channel_fraction is not None:
            required_channels = result.population * t.min_channel_fraction
            if result.channels_opened < required_channels:
                violations.append(Violation(
                    CHANNEL,
                    result.channels_opened,
                    required_channels,
                    f"real-time channels: {result.channels_opened}/{result.population} opened, "
                    f"need at least {math.ceil(required_channels)} ({t.min_channel_fraction:.0%})",
                ))

        return Verdict(
            passed=not violations,
            reasons=[v.message for v in violations],
            violations=violations,
        )

    def summarize(self, results: Sequence["LevelResult"]) -> RunVerdict:
        """Aggregate the verdicts of every level that ran."""
        if not results:
            return RunVerdict(all_claims_verified=False, reasons=["no load levels were run"])

        reasons: List[str] = []
        failed_checks: List[str] = []
        for result in results:
            verdict = self.evaluate(result)
            reasons.extend(f"{result.name}: {reason}" for reason in verdict.reasons)
            for v in verdict.violations:
                if v.check not in failed_checks:
                    failed_checks.append(v.check)

        suggestions: List[str] = []
        for check in failed_checks:
            for suggestion in SUGGESTIONS.get(check, []):
                if suggestion not in suggestions:
                    suggestions.append(suggestion)

        capacity = self.max_capacity(results)
        score = self.overall_score(results[-1])
        return RunVerdict(
            all_claims_verified=not reasons,
            reasons=reasons,
            suggestions=suggestions,
            max_capacity=capacity,
            assessment=self.assess(capacity),
            overall_score=score,
            score_label=score_label(score),
        )

    def max_capacity(self, results: Sequence["LevelResult"]) -> Optional[Dict[str, Any]]:
        """Largest level that passed, or ``None``."""
        best = None
        for result in results:
            if result.passed and result.population > 0:
                if best is None or result.population >= best.population:
                    best = result
        if best is None:
            return None
        return {
            "level": best.name,
            "users": best.population,
            "throughput": best.throughput,
            "success_rate": best.success_rate,
            "p95_latency": best.p95_latency,
        }

    @staticmethod
    def assess(capacity: Optional[Dict[str, Any]]) -> Dict[str, str]:
        """EXCELLENT / GOOD / LIMITED tiers for the achieved capacity."""
        if capacity is None:
            return {"users": "LIMITED", "throughput": "LIMITED", "reliability": "LIMITED"}
        return {
            "users": _tier(capacity["users"], 50, 25),
            "throughput": _tier(capacity["throughput"], 100, 50),
            "reliability": _tier(capacity["success_rate"], 95, 85),
        }

    def overall_score(self, result: "LevelResult") -> float:
        """Average of auth, API, real-time, throughput and latency scores in [0, 1]."""
        if result.population == 0:
            return 0.0
        auth_score = result.authenticated_count / result.population
        api_score = result.success_rate / 100 if result.api_calls else 0.0
        if result.messages_sent:
            realtime_score = result.messages_delivered / result.messages_sent
        else:
            realtime_score = result.channels_opened / result.population
        target = self.thresholds.min_throughput_per_second or 100.0
        throughput_score = min(1.0, result.throughput / target) if target > 0 else 1.0
        if result.api_calls and result.successful_api_calls:
            latency_score = min(1.0, max(0.0, 1 - (result.p95_latency - 100) / 400))
        else:
            latency_score = 0.0
        scores = [auth_score, api_score, realtime_score, throughput_score, latency_score]
        return sum(scores) / len(scores)
