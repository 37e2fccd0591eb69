"""Per-session performance metrics: model call latency, tokens, cache hits, retries, judge timing."""

from dataclasses import dataclass, field

SLOW_RESPONSE_SEC = 10.0
SLOW_CONSENSUS_SEC = 5.0
LOW_MATCH_SCORE = 70.0


@dataclass
class CallRecord:
    role: str                  # persona role, e.g. "persona_a", "judge"
    round_number: int
    latency_sec: float
    token_count: int | None
    cached: bool = False
    attempts: int = 1


@dataclass
class MetricsSummary:
    calls: int
    cache_hits: int
    retries: int
    failures: int
    total_tokens: int
    avg_response_sec: float
    avg_consensus_sec: float
    avg_match_score: float
    adjustments: int


@dataclass
class SessionMetrics:
    """Accumulates call and timing records for one discussion."""

    calls: list[CallRecord] = field(default_factory=list)
    consensus_times: list[float] = field(default_factory=list)
    match_scores: list[float] = field(default_factory=list)
    failures: int = 0
    adjustments: int = 0

    def record_call(
        self,
        role: str,
        round_number: int,
        latency_sec: float,
        token_count: int | None,
        cached: bool = False,
        attempts: int = 1,
    ) -> None:
        self.calls.append(CallRecord(role, round_number, latency_sec, token_count, cached, attempts))

    def record_failure(self) -> None:
        self.failures += 1

    def record_consensus(self, duration_sec: float, match_score: float) -> None:
        self.consensus_times.append(duration_sec)
        self.match_scores.append(match_score)

    def record_adjustment(self) -> None:
        self.adjustments += 1

    def summary(self) -> MetricsSummary:
        live = [c for c in self.calls if not c.cached]
        return MetricsSummary(
            calls=len(self.calls),
            cache_hits=len(self.calls) - len(live),
            retries=sum(c.attempts - 1 for c in live),
            failures=self.failures,
            total_tokens=sum(c.token_count or 0 for c in live),
            avg_response_sec=_mean([c.latency_sec for c in live]),
            avg_consensus_sec=_mean(self.consensus_times),
            avg_match_score=_mean(self.match_scores),
            adjustments=self.adjustments,
        )

    def latency_by_role(self) -> dict[str, float]:
        """Mean latency of uncached calls, keyed by role."""
        grouped: dict[str, list[float]] = {}
        for call in self.calls:
            if not call.cached:
                grouped.setdefault(call.role, []).append(call.latency_sec)
        return {role: _mean(values) for role, values in grouped.items()}

    def detect_issues(self) -> list[str]:
        summary = self.summary()
        issues: list[str] = []
        if summary.avg_response_sec > SLOW_RESPONSE_SEC:
            issues.append(f"Slow model responses (avg {summary.avg_response_sec:.1f}s > {SLOW_RESPONSE_SEC:.0f}s)")
        if summary.avg_consensus_sec > SLOW_CONSENSUS_SEC:
            issues.append(f"Slow consensus detection (avg {summary.avg_consensus_sec:.1f}s > {SLOW_CONSENSUS_SEC:.0f}s)")
        if self.match_scores and summary.avg_match_score < LOW_MATCH_SCORE:
            issues.append(f"Low question match (avg {summary.avg_match_score:.0f} < {LOW_MATCH_SCORE:.0f})")
        if summary.failures:
            issues.append(f"{summary.failures} model call(s) failed")
        return issues

    def report_lines(self) -> list[str]:
        summary = self.summary()
        lines = [
            f"- Model calls: {summary.calls} ({summary.cache_hits} from cache, {summary.retries} retries)",
            f"- Tokens: {summary.total_tokens}",
            f"- Avg response time: {summary.avg_response_sec:.2f}s",
            f"- Avg consensus detection time: {summary.avg_consensus_sec:.2f}s",
            f"- Avg question match score: {summary.avg_match_score:.0f}",
            f"- Strategy adjustments: {summary.adjustments}",
        ]
        for role, latency in sorted(self.latency_by_role().items()):
            lines.append(f"- {role}: {latency:.2f}s avg")
        lines += [f"- Issue: {issue}" for issue in self.detect_issues()]
        return lines


def _mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0
