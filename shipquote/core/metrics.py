"""
Process-wide pipeline metrics.

Counters live on a dedicated CollectorRegistry so they can be exported by
whatever HTTP layer embeds the pipeline, and read back in tests through
BookingMetrics.snapshot(). Values accumulate for the process lifetime.
"""
from typing import Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Histogram

from shipquote.config import settings

REGISTRY = CollectorRegistry(auto_describe=True)

_NS = settings.METRICS_NAMESPACE

# ============= BOOKING METRICS =============

booking_attempts_total = Counter(
    'booking_attempts_total',
    'Carrier booking attempts issued by the fallback engine',
    ['provider'],
    namespace=_NS,
    registry=REGISTRY,
)

booking_success_total = Counter(
    'booking_success_total',
    'Successful carrier bookings',
    ['provider', 'fallback_used'],
    namespace=_NS,
    registry=REGISTRY,
)

booking_failure_total = Counter(
    'booking_failure_total',
    'Failed booking calls by failure stage',
    ['stage'],
    namespace=_NS,
    registry=REGISTRY,
)

booking_fallback_total = Counter(
    'booking_fallback_total',
    'Fallbacks to the next ranked option after a recoverable error',
    ['from_provider', 'to_provider'],
    namespace=_NS,
    registry=REGISTRY,
)

booking_exhausted_total = Counter(
    'booking_exhausted_total',
    'Booking calls that ran out of ranked options',
    namespace=_NS,
    registry=REGISTRY,
)

booking_non_recoverable_stop_total = Counter(
    'booking_non_recoverable_stop_total',
    'Booking calls stopped by a non-recoverable (post-AWB) error',
    namespace=_NS,
    registry=REGISTRY,
)

# ============= QUOTE METRICS =============

quote_sessions_total = Counter(
    'quote_sessions_total',
    'Quote sessions created',
    ['confidence'],
    namespace=_NS,
    registry=REGISTRY,
)

quote_candidates_dropped_total = Counter(
    'quote_candidates_dropped_total',
    'Candidates excluded from a quote because pricing failed',
    ['reason'],
    namespace=_NS,
    registry=REGISTRY,
)

quote_duration_seconds = Histogram(
    'quote_duration_seconds',
    'Time to build a quote session',
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
    namespace=_NS,
    registry=REGISTRY,
)

quote_options_count = Histogram(
    'quote_options_count',
    'Options per quote session',
    buckets=[0, 1, 2, 3, 5, 8, 13],
    namespace=_NS,
    registry=REGISTRY,
)


class FailureStage:
    BEFORE_AWB = "before_awb"
    AFTER_AWB = "after_awb"
    UNKNOWN = "unknown"


class BookingMetrics:
    """Thin recorder over the module counters."""

    def record_attempt(self, provider: str) -> None:
        booking_attempts_total.labels(provider=provider).inc()

    def record_success(self, provider: str, attempt_number: int, fallback_used: bool) -> None:
        booking_success_total.labels(
            provider=provider, fallback_used=str(fallback_used).lower()
        ).inc()

    def record_failure(
        self,
        stage: str,
        exhausted: bool = False,
        non_recoverable_stop: bool = False,
    ) -> None:
        booking_failure_total.labels(stage=stage).inc()
        if exhausted:
            booking_exhausted_total.inc()
        if non_recoverable_stop:
            booking_non_recoverable_stop_total.inc()

    def record_fallback(self, from_provider: str, to_provider: str) -> None:
        booking_fallback_total.labels(
            from_provider=from_provider, to_provider=to_provider
        ).inc()

    @staticmethod
    def _sum(name: str) -> float:
        total = 0.0
        for metric in REGISTRY.collect():
            for sample in metric.samples:
                if sample.name == f"{_NS}_{name}":
                    total += sample.value
        return total

    def snapshot(self) -> Dict[str, float]:
        """Current cumulative totals, summed across labels."""
        return {
            "attempts": self._sum("booking_attempts_total"),
            "successes": self._sum("booking_success_total"),
            "failures": self._sum("booking_failure_total"),
            "fallbacks": self._sum("booking_fallback_total"),
            "exhausted": self._sum("booking_exhausted_total"),
            "non_recoverable_stops": self._sum("booking_non_recoverable_stop_total"),
        }


class QuoteMetrics:

    def record_quote(
        self,
        duration_seconds: float,
        options_count: int,
        confidence: Optional[str],
    ) -> None:
        quote_duration_seconds.observe(duration_seconds)
        quote_options_count.observe(options_count)
        quote_sessions_total.labels(confidence=(confidence or "none").lower()).inc()

    def record_dropped_candidate(self, reason: str) -> None:
        quote_candidates_dropped_total.labels(reason=reason).inc()


booking_metrics = BookingMetrics()
quote_metrics = QuoteMetrics()
