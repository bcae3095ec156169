"""Request outcome events and the observers that consume them."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional

from ..common.metrics import GLOBAL_REGISTRY, Counter, Histogram, MetricsRegistry


class RequestOutcome(str, enum.Enum):
    SKIP = "skip"
    HIT = "hit"
    MISS_SUCCESS = "miss-success"
    MISS_ERROR = "miss-error"


@dataclass(frozen=True)
class OutcomeEvent:
    outcome: RequestOutcome
    depot: str
    bytes: Optional[int] = None
    error: Optional[str] = None


class CacheObserver:
    """Receives request events from the orchestrator.

    Calls are synchronous and made from request tasks; implementations must
    be safe under concurrent use and must not block.
    """

    def request_received(self) -> None:
        pass

    def outcome(self, event: OutcomeEvent) -> None:
        pass

    def upstream_bytes(self, depot: str, size: int) -> None:
        pass

    def request_finished(self, depot: str, duration: float) -> None:
        pass


class MetricsObserver(CacheObserver):
    """Observer feeding the Prometheus text registry."""

    def __init__(self, registry: MetricsRegistry = GLOBAL_REGISTRY) -> None:
        self.requests = registry.register(Counter("lancache_requests_total", "The total number of processed requests."))
        self.duration = registry.register(
            Histogram(
                "lancache_http_duration_seconds",
                description="The response time of requests.",
                labelnames=("depot",),
            )
        )
        self.hits = registry.register(
            Counter("lancache_cache_hits_total", "The total number of cache hits.", labelnames=("depot",))
        )
        self.hit_bytes = registry.register(
            Counter(
                "lancache_cache_hit_bytes_total",
                "The total number of bytes served from the cache.",
                labelnames=("depot",),
            )
        )
        self.misses = registry.register(
            Counter("lancache_cache_misses_total", "The total number of cache misses.", labelnames=("depot",))
        )
        self.miss_bytes = registry.register(
            Counter(
                "lancache_cache_miss_bytes_total",
                "The total number of bytes fetched from the upstream server.",
                labelnames=("depot",),
            )
        )
        self.miss_errors = registry.register(
            Counter(
                "lancache_cache_miss_errors_total",
                "The total number of cache misses that failed to populate the cache.",
                labelnames=("depot",),
            )
        )
        self.skips = registry.register(
            Counter("lancache_cache_skips_total", "The total number of cache skips.", labelnames=("depot",))
        )

    def request_received(self) -> None:
        self.requests.inc()

    def outcome(self, event: OutcomeEvent) -> None:
        if event.outcome is RequestOutcome.SKIP:
            self.skips.inc(depot=event.depot)
        elif event.outcome is RequestOutcome.HIT:
            self.hits.inc(depot=event.depot)
            self.hit_bytes.inc(event.bytes or 0, depot=event.depot)
        elif event.outcome is RequestOutcome.MISS_SUCCESS:
            self.misses.inc(depot=event.depot)
        else:
            self.misses.inc(depot=event.depot)
            self.miss_errors.inc(depot=event.depot)

    def upstream_bytes(self, depot: str, size: int) -> None:
        self.miss_bytes.inc(size, depot=depot)

    def request_finished(self, depot: str, duration: float) -> None:
        self.duration.observe(duration, depot=depot)
