"""
Performance tracking for the routing pipeline.

This module records what happened during each route calculation so that
hosts can display routing health and so the router can tune itself when
calculations get slow.

It captures:
- Per-calculation records (duration, stage timings, crossings, fallback use)
- A smoothed average and percentiles of recent calculation times
- Cache hits, fallback usage and degradation events
- Recommendations derived from the above

Usage:
    >>> router = LinkRouter()
    >>> router.calculate_routes(links, nodes)
    >>> print(router.metrics.summary())
"""

import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional

# Smoothing factor of the average calculation time
EMA_ALPHA = 0.1

# Number of recent durations kept for percentiles
RECENT_TIMES = 100

# Number of calculation records kept
LOG_SIZE = 50

PERCENTILES = (50, 75, 90, 95)


@dataclass
class CalculationRecord:
    """
    Record of one route calculation.

    Attributes:
        duration_ms: Wall-clock time of the whole calculation.
        route_count: Routes returned.
        crossings_before: Crossings in the initial route set.
        crossings_after: Crossings after optimization.
        used_fallback: True when fallback or default routes were returned.
        algorithm: Routing algorithm of the returned routes.
        stages: Stage name -> duration in milliseconds.
        timestamp: Unix time at which the record was created.
    """

    duration_ms: float
    route_count: int = 0
    crossings_before: int = 0
    crossings_after: int = 0
    used_fallback: bool = False
    algorithm: str = ""
    stages: Dict[str, float] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def __str__(self) -> str:
        stages = ", ".join(f"{name}={ms:.1f}ms" for name, ms in self.stages.items())
        fallback = " [fallback]" if self.used_fallback else ""
        return (
            f"{self.duration_ms:.1f}ms {self.algorithm} routes={self.route_count} "
            f"crossings={self.crossings_before}->{self.crossings_after}"
            f"{fallback} ({stages})"
        )


@dataclass
class DegradationEvent:
    """A calculation that exceeded the fallback threshold."""

    duration_ms: float
    threshold_ms: float
    action: str
    timestamp: float = field(default_factory=time.time)


@dataclass
class Recommendation:
    """
    A suggested configuration change.

    Attributes:
        kind: Area of concern ("performance", "cache", "stability").
        severity: "medium" or "high".
        message: Human-readable explanation.
        action: Machine-readable action name.
    """

    kind: str
    severity: str
    message: str
    action: str


@dataclass
class PerformanceMetrics:
    """
    Running performance statistics of a router.

    Attributes:
        total_calculations: Calculations that were not served from cache.
        average_calculation_time: Exponential moving average, milliseconds.
        last_calculation_time: Duration of the latest calculation.
        cache_hits: Calls answered from the route cache.
        fallback_usage: Calculations that returned fallback or default routes.
        crossing_reduction: Fraction of crossings removed by the latest
            optimization.
        auto_optimizations: Self-tuning adjustments applied.
        recent_times: Latest calculation durations.
        calculation_log: Latest calculation records.
        degradation_events: Slow calculations and the action taken.
    """

    total_calculations: int = 0
    average_calculation_time: float = 0.0
    last_calculation_time: float = 0.0
    cache_hits: int = 0
    fallback_usage: int = 0
    crossing_reduction: float = 0.0
    auto_optimizations: int = 0
    recent_times: Deque[float] = field(default_factory=lambda: deque(maxlen=RECENT_TIMES))
    calculation_log: Deque[CalculationRecord] = field(
        default_factory=lambda: deque(maxlen=LOG_SIZE)
    )
    degradation_events: List[DegradationEvent] = field(default_factory=list)

    @property
    def cache_hit_rate(self) -> float:
        """Share of calls answered from cache."""
        requests = self.cache_hits + self.total_calculations
        return self.cache_hits / requests if requests else 0.0

    def record_cache_hit(self) -> None:
        self.cache_hits += 1

    def record_calculation(self, record: CalculationRecord) -> None:
        """Fold a finished calculation into the running statistics."""
        self.total_calculations += 1
        if self.total_calculations == 1:
            self.average_calculation_time = record.duration_ms
        else:
            self.average_calculation_time = (
                EMA_ALPHA * record.duration_ms
                + (1 - EMA_ALPHA) * self.average_calculation_time
            )
        self.last_calculation_time = record.duration_ms
        self.recent_times.append(record.duration_ms)
        self.calculation_log.append(record)
        if record.used_fallback:
            self.fallback_usage += 1
        elif record.crossings_before:
            self.crossing_reduction = (
                record.crossings_before - record.crossings_after
            ) / record.crossings_before

    def record_degradation(self, duration_ms: float, threshold_ms: float, action: str) -> None:
        self.degradation_events.append(DegradationEvent(duration_ms, threshold_ms, action))

    def percentiles(self) -> Dict[str, float]:
        """Nearest-rank p50/p75/p90/p95 of recent calculation times."""
        if not self.recent_times:
            return {f"p{p}": 0.0 for p in PERCENTILES}
        ordered = sorted(self.recent_times)
        result = {}
        for p in PERCENTILES:
            rank = max(0, min(len(ordered) - 1, -(-p * len(ordered) // 100) - 1))
            result[f"p{p}"] = ordered[rank]
        return result

    def recommendations(self, fallback_threshold: float) -> List[Recommendation]:
        """
        Suggest configuration changes based on the current statistics.

        Args:
            fallback_threshold: Configured fallback threshold in milliseconds.
        """
        recs = []
        if self.average_calculation_time > fallback_threshold * 0.8:
            recs.append(
                Recommendation(
                    "performance",
                    "high",
                    "Consider lowering max_iterations or enabling early termination",
                    "optimize_iterations",
                )
            )
        if self.cache_hit_rate < 0.3 and self.total_calculations > 10:
            recs.append(
                Recommendation(
                    "cache",
                    "medium",
                    "Low cache hit rate; review how often the configuration changes",
                    "review_config_stability",
                )
            )
        if self.fallback_usage > self.total_calculations * 0.2:
            recs.append(
                Recommendation(
                    "stability",
                    "high",
                    "Fallback routing is frequent; consider a more stable configuration",
                    "stabilize_config",
                )
            )
        return recs

    def snapshot(self) -> Dict[str, Any]:
        """Plain-data view for observability consumers."""
        return {
            "total_calculations": self.total_calculations,
            "average_calculation_time": self.average_calculation_time,
            "last_calculation_time": self.last_calculation_time,
            "percentiles": self.percentiles(),
            "cache_hits": self.cache_hits,
            "cache_hit_rate": self.cache_hit_rate,
            "fallback_usage": self.fallback_usage,
            "crossing_reduction": self.crossing_reduction,
            "auto_optimizations": self.auto_optimizations,
            "degradation_events": len(self.degradation_events),
        }

    def summary(self) -> str:
        """Human-readable report of the statistics and the latest calculations."""
        pct = self.percentiles()
        lines = [
            "=" * 60,
            "ROUTING PERFORMANCE SUMMARY",
            "=" * 60,
            "",
            f"Calculations: {self.total_calculations}",
            f"Average time: {self.average_calculation_time:.1f}ms "
            f"(last {self.last_calculation_time:.1f}ms)",
            "Percentiles: " + ", ".join(f"{k}={v:.1f}ms" for k, v in pct.items()),
            f"Cache hits: {self.cache_hits} ({self.cache_hit_rate:.0%})",
            f"Fallback usage: {self.fallback_usage}",
            f"Crossing reduction: {self.crossing_reduction:.0%}",
            f"Auto-optimizations: {self.auto_optimizations}",
            "",
            f"Recent calculations: {len(self.calculation_log)}",
        ]
        for record in list(self.calculation_log)[-10:]:
            lines.append(f"  {record}")
        if self.degradation_events:
            lines.append("")
            lines.append("Degradation events:")
            for event in self.degradation_events[-5:]:
                lines.append(
                    f"  {event.duration_ms:.1f}ms > {event.threshold_ms:.0f}ms: {event.action}"
                )
        return "\n".join(lines)

    def latest(self) -> Optional[CalculationRecord]:
        return self.calculation_log[-1] if self.calculation_log else None
