"""
Routing orchestrator.

LinkRouter ties the pipeline together:
1. Hierarchy mapping (NodeHierarchyMapper)
2. Route calculation (RouteCalculator)
3. Crossing optimization (CrossingResolver)

Each stage runs on a worker thread under its own share of the configured
time budget. When a stage fails or overruns, a simplified fallback pass is
tried, then plain straight routes. Results are cached by a digest of the
inputs, the configuration and the options.

The router also owns the performance metrics and the self-tuning that
reacts to slow calculations.
"""

import hashlib
import json
import logging
import threading
import time
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .config import (
    ConfigUpdateResult,
    RoutingConfig,
    configuration_schema,
)
from .crossings import CrossingResolver, ResolutionStats
from .hierarchy import HierarchyMap, NodeDataProvider, NodeHierarchyMapper, simple_hierarchy
from .metrics import CalculationRecord, PerformanceMetrics, Recommendation
from .models import (
    InvalidRecordError,
    Link,
    LinkLike,
    Node,
    NodeLike,
    Route,
    coerce_links,
    coerce_nodes,
)
from .route_calculator import RouteCalculator, default_routes

logger = logging.getLogger(__name__)

# Share of max_calculation_time given to each stage
HIERARCHY_BUDGET = 0.3
ROUTES_BUDGET = 0.7

# Maximum entries kept in each cache
ROUTE_CACHE_SIZE = 64
HIERARCHY_CACHE_SIZE = 16

# Auto-optimization
AUTO_OPTIMIZATION_TRIGGER = 0.8
SEVERE_DEGRADATION = 1.5
MODERATE_DEGRADATION = 1.2
TREND_MIN_CALCULATIONS = 10

EXPORT_FORMAT_VERSION = "1.0.0"

# Settings applied by set_visual_quality()
VISUAL_QUALITY_PRESETS: Dict[str, Dict[str, Any]] = {
    "fast": {
        "visual_quality": "fast",
        "performance_mode": "fast",
        "smoothness": 0.4,
        "precision": 0.02,
        "max_iterations": 25,
    },
    "balanced": {
        "visual_quality": "balanced",
        "performance_mode": "balanced",
        "smoothness": 0.7,
        "precision": 0.01,
        "max_iterations": 50,
    },
    "high": {
        "visual_quality": "high",
        "performance_mode": "quality",
        "smoothness": 0.9,
        "precision": 0.005,
        "max_iterations": 100,
    },
}


class RoutingError(Exception):
    """Raised when no routes could be produced and degradation is disabled."""


class RoutingTimeoutError(RoutingError):
    """A pipeline stage exceeded its time budget."""


class LinkRouter:
    """
    Computes, optimizes and caches link routes.

    Only one calculation runs at a time; concurrent callers wait for the
    current one and then see its cached result. Configuration snapshots are
    immutable, so a calculation always sees one consistent configuration.

    Example:
        >>> router = LinkRouter()
        >>> routes = router.calculate_routes(
        ...     [{"source": 0, "target": 1, "value": 600}],
        ...     [{"name": "A", "x": 0.0, "y": 0.2}, {"name": "B", "x": 1.0, "y": 0.8}],
        ... )
        >>> routes[0].id
        'route_0_1_0'
    """

    def __init__(
        self,
        config: Optional[RoutingConfig] = None,
        provider: Optional[NodeDataProvider] = None,
        seed: Optional[int] = None,
        max_workers: int = 2,
    ):
        """
        Initialize the router.

        Args:
            config: Initial configuration. Defaults to RoutingConfig().
            provider: Optional node metadata provider for hierarchy mapping.
            seed: Seed for the crossing resolver's random nudges. With a
                fixed seed, repeated cold-cache calculations are identical.
            max_workers: Worker threads for pipeline stages.
        """
        self._config = config or RoutingConfig()
        self.seed = seed
        self.mapper = NodeHierarchyMapper(provider)
        self.metrics = PerformanceMetrics()

        self._lock = threading.RLock()
        self._calculating = False
        self._max_workers = max_workers
        self._executor = self._new_executor()
        self._route_cache: "OrderedDict[str, List[Route]]" = OrderedDict()
        self._hierarchy_cache: "OrderedDict[str, HierarchyMap]" = OrderedDict()

    @property
    def config(self) -> RoutingConfig:
        """Current configuration snapshot."""
        return self._config

    # --- Lifecycle ---

    def close(self) -> None:
        """Shut down the worker threads. Running stages are not interrupted."""
        self._executor.shutdown(wait=False)

    def _new_executor(self) -> ThreadPoolExecutor:
        return ThreadPoolExecutor(
            max_workers=self._max_workers, thread_name_prefix="sankeyroute"
        )

    def _replace_executor(self) -> None:
        """
        Swap in a fresh worker pool after a stage overran its budget.

        The overrunning stage keeps its thread until it returns; the old pool
        is shut down without waiting so it exits once that thread is free.
        Later stages never queue behind it.
        """
        self._executor.shutdown(wait=False)
        self._executor = self._new_executor()

    def __enter__(self) -> "LinkRouter":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def is_ready(self) -> bool:
        """True when no calculation is in flight."""
        return not self._calculating

    def reset(self) -> None:
        """Clear caches and performance metrics."""
        with self._lock:
            self._clear_caches()
            self.metrics = PerformanceMetrics()
        logger.info("Router reset")

    # --- Route calculation ---

    def calculate_routes(
        self,
        links: Sequence[LinkLike],
        nodes: Sequence[NodeLike],
        options: Optional[Dict[str, Any]] = None,
    ) -> List[Route]:
        """
        Compute optimized routes for all links.

        Args:
            links: Link records or dicts with source, target and value.
            nodes: Node records or dicts with name, x and y.
            options: Optional overrides. Supported keys are ``algorithm``
                (a routing algorithm name) and ``optimize`` (False skips
                crossing optimization).

        Returns:
            One route per valid link, in link order.

        Raises:
            RoutingError: If every fallback failed and graceful degradation
                is disabled.
        """
        options = dict(options or {})
        with self._lock:
            self._calculating = True
            try:
                return self._calculate(list(links), list(nodes), options)
            finally:
                self._calculating = False

    def _calculate(
        self, raw_links: List[LinkLike], raw_nodes: List[NodeLike], options: Dict[str, Any]
    ) -> List[Route]:
        config = self._config
        if not config.enable_routing:
            logger.debug("Routing disabled; returning straight routes")
            return default_routes(raw_links, raw_nodes)

        start = time.perf_counter()
        record = CalculationRecord(
            duration_ms=0.0, algorithm=options.get("algorithm") or config.routing_algorithm
        )
        try:
            links = coerce_links(raw_links)
            nodes = coerce_nodes(raw_nodes)
        except InvalidRecordError as exc:
            logger.warning("Unreadable input records: %s; using fallback", exc)
            routes = self._fallback(raw_links, raw_nodes, config, exc, record)
            record.used_fallback = True
            return self._finish(record, routes, start, config)

        key = self._cache_key(links, nodes, config, options)
        if config.cache_enabled and key in self._route_cache:
            self._route_cache.move_to_end(key)
            self.metrics.record_cache_hit()
            logger.debug("Route cache hit %s", key[:12])
            return [route.clone() for route in self._route_cache[key]]

        try:
            routes, hierarchy = self._run_pipeline(links, nodes, config, options, record)
        except Exception as exc:
            logger.warning("Route calculation failed: %s; using fallback", exc, exc_info=True)
            routes = self._fallback(links, nodes, config, exc, record)
            record.used_fallback = True
        else:
            if config.cache_enabled:
                self._store(self._route_cache, key, [r.clone() for r in routes], ROUTE_CACHE_SIZE)
                self._store(
                    self._hierarchy_cache,
                    self._hierarchy_key(links, nodes),
                    hierarchy,
                    HIERARCHY_CACHE_SIZE,
                )
        return self._finish(record, routes, start, config)

    def _finish(
        self, record: CalculationRecord, routes: List[Route], start: float, config: RoutingConfig
    ) -> List[Route]:
        """Record a finished calculation and run the performance checks."""
        record.duration_ms = (time.perf_counter() - start) * 1000
        record.route_count = len(routes)
        self.metrics.record_calculation(record)
        logger.debug("Calculated routes: %s", record)

        self._check_performance(record.duration_ms, config)
        if config.performance_monitoring:
            logger.info("\n%s", self.metrics.summary())
        return routes


    def _run_pipeline(
        self,
        links: List[Link],
        nodes: List[Node],
        config: RoutingConfig,
        options: Dict[str, Any],
        record: CalculationRecord,
    ) -> Tuple[List[Route], HierarchyMap]:
        hierarchy_key = self._hierarchy_key(links, nodes)
        hierarchy = self._hierarchy_cache.get(hierarchy_key) if config.cache_enabled else None
        if hierarchy is None:
            hierarchy = self._run_stage(
                "hierarchy",
                config.max_calculation_time * HIERARCHY_BUDGET,
                record,
                lambda should_stop: self.mapper.map_hierarchy(nodes, links),
            )

        def compute(
            should_stop: Callable[[], bool]
        ) -> Tuple[List[Route], Optional[ResolutionStats]]:
            calculator = RouteCalculator(config, should_stop=should_stop)
            routes = calculator.calculate_optimized_routes(
                links, nodes, hierarchy, algorithm=options.get("algorithm")
            )
            if not config.link_avoidance or options.get("optimize") is False:
                return routes, None
            resolver = CrossingResolver(config, seed=self.seed)
            return resolver.optimize(routes, should_stop=should_stop)

        routes, stats = self._run_stage(
            "routes", config.max_calculation_time * ROUTES_BUDGET, record, compute
        )
        if stats is not None:
            record.crossings_before = stats.initial_crossings
            record.crossings_after = stats.final_crossings
        return routes, hierarchy

    def _run_stage(
        self,
        name: str,
        budget_ms: float,
        record: CalculationRecord,
        func: Callable[[Callable[[], bool]], Any],
    ) -> Any:
        """
        Run one stage on a worker thread under a time budget.

        The stage receives a ``should_stop`` callable that turns True once the
        budget has elapsed. A timed-out stage may keep running in the
        background, but its result is discarded and the worker pool is
        replaced so the next stage gets a free thread.
        """
        stop = threading.Event()
        start = time.perf_counter()
        future = self._executor.submit(func, stop.is_set)
        try:
            return future.result(timeout=budget_ms / 1000)
        except FutureTimeoutError:
            stop.set()
            if not future.cancel():
                self._replace_executor()
            raise RoutingTimeoutError(
                f"{name} stage exceeded its {budget_ms:.0f}ms budget"
            ) from None
        finally:
            record.stages[name] = (time.perf_counter() - start) * 1000

    def _fallback(
        self,
        links: Sequence[LinkLike],
        nodes: Sequence[NodeLike],
        config: RoutingConfig,
        error: Exception,
        record: CalculationRecord,
    ) -> List[Route]:
        """
        Simplified routing, then straight routes, in that order.

        Unreadable records make the simplified pass fail; the straight
        routes skip them.
        """
        start = time.perf_counter()
        try:
            if not config.enable_fallback:
                raise error
            fallback = config.for_fallback()
            record.algorithm = fallback.routing_algorithm
            hierarchy = simple_hierarchy(nodes, links)
            routes = RouteCalculator(fallback).calculate_optimized_routes(
                links, nodes, hierarchy, skip_invalid=True
            )
            if fallback.link_avoidance:
                routes, stats = CrossingResolver(fallback, seed=self.seed).optimize(routes)
                record.crossings_before = stats.initial_crossings
                record.crossings_after = stats.final_crossings
            logger.info("Fallback routing produced %d routes", len(routes))
            return routes
        except Exception as exc:
            if not config.graceful_degradation:
                raise RoutingError(f"Route calculation failed: {error}") from exc
            logger.warning("Fallback routing failed: %s; using straight routes", exc)
            record.algorithm = "default"
            return default_routes(links, nodes)
        finally:
            record.stages["fallback"] = (time.perf_counter() - start) * 1000

    def optimize_routes(self, routes: Sequence[Route]) -> List[Route]:
        """
        Run crossing optimization on existing routes.

        Args:
            routes: Routes to optimize; not modified.

        Returns:
            A new, optimized list of routes.
        """
        with self._lock:
            resolver = CrossingResolver(self._config, seed=self.seed)
            optimized, stats = resolver.optimize(routes)
            self.metrics.crossing_reduction = stats.reduction
        logger.debug(
            "Optimized %d routes: crossings %d -> %d",
            len(optimized),
            stats.initial_crossings,
            stats.final_crossings,
        )
        return optimized

    # --- Caching ---

    @staticmethod
    def _cache_key(
        links: List[Link], nodes: List[Node], config: RoutingConfig, options: Dict[str, Any]
    ) -> str:
        payload = {
            "links": [[link.source, link.target, link.value, link.color] for link in links],
            "nodes": [[node.name, node.x, node.y, node.value] for node in nodes],
            "config": config.to_dict(),
            "options": options,
        }
        encoded = json.dumps(payload, sort_keys=True, default=str)
        return hashlib.sha256(encoded.encode("utf-8")).hexdigest()

    @staticmethod
    def _hierarchy_key(links: List[Link], nodes: List[Node]) -> str:
        payload = {
            "links": [[link.source, link.target, link.value] for link in links],
            "nodes": [[node.name, node.x, node.y, node.value, node.customdata] for node in nodes],
        }
        encoded = json.dumps(payload, sort_keys=True, default=str)
        return hashlib.sha256(encoded.encode("utf-8")).hexdigest()

    @staticmethod
    def _store(cache: "OrderedDict[str, Any]", key: str, value: Any, limit: int) -> None:
        cache[key] = value
        cache.move_to_end(key)
        while len(cache) > limit:
            cache.popitem(last=False)

    def _clear_caches(self) -> None:
        self._route_cache.clear()
        self._hierarchy_cache.clear()

    def clear_cache(self) -> None:
        """Drop all cached routes and hierarchies."""
        with self._lock:
            self._clear_caches()
        logger.debug("Route caches cleared")

    # --- Configuration ---

    def update_config(self, updates: Dict[str, Any]) -> ConfigUpdateResult:
        """
        Apply a partial configuration update.

        Invalid or unknown fields are rejected individually and reported in
        the result; the rest are applied. Changing a field that affects route
        geometry clears the route cache.
        """
        return self._apply_config(updates, preserve_cache=False)

    def _apply_config(self, updates: Dict[str, Any], preserve_cache: bool) -> ConfigUpdateResult:
        with self._lock:
            new_config, result = self._config.with_updates(updates)
            if result.updated:
                self._config = new_config
                # Hierarchies depend on the inputs only
                if result.cache_invalidated and not preserve_cache:
                    self._route_cache.clear()
                logger.info(
                    "Configuration v%d: %s",
                    new_config.version,
                    ", ".join(f"{k}={v[1]!r}" for k, v in result.applied.items()),
                )
            return result

    def get_configuration_schema(self) -> List[Dict[str, Any]]:
        return configuration_schema()

    def reset_to_defaults(self) -> ConfigUpdateResult:
        """Restore every field to its default and clear the caches."""
        with self._lock:
            result = self._apply_config(RoutingConfig().to_dict(), preserve_cache=True)
            self._clear_caches()
        return result

    def set_visual_quality(self, quality: str) -> ConfigUpdateResult:
        """
        Apply a visual quality preset.

        Args:
            quality: "fast", "balanced" or "high".
        """
        preset = VISUAL_QUALITY_PRESETS.get(quality)
        if preset is None:
            return ConfigUpdateResult(
                rejected={
                    "visual_quality": f"visual_quality must be one of "
                    f"{', '.join(VISUAL_QUALITY_PRESETS)}, got {quality!r}"
                }
            )
        return self.update_config(preset)

    def set_adaptive_features(self, enabled: bool) -> ConfigUpdateResult:
        """Turn the adaptive curvature, separation, avoidance and progressive features on or off."""
        return self.update_config(
            {
                "adaptive_curvature": enabled,
                "adaptive_separation": enabled,
                "smart_avoidance": enabled,
                "progressive_optimization": enabled,
            }
        )

    def set_performance_quality_balance(self, balance: float) -> ConfigUpdateResult:
        """
        Interpolate settings between fastest (0) and highest quality (1).

        Args:
            balance: Value in [0, 1].
        """
        if isinstance(balance, bool) or not isinstance(balance, (int, float)) or not (
            0 <= balance <= 1
        ):
            return ConfigUpdateResult(
                rejected={"balance": f"balance must be between 0 and 1, got {balance!r}"}
            )
        return self.update_config(
            {
                "max_iterations": int(20 + balance * 80),
                "precision": 0.02 - balance * 0.015,
                "smoothness": 0.4 + balance * 0.5,
                "max_calculation_time": 200 + balance * 800,
                "adaptive_curvature": balance > 0.3,
                "smart_avoidance": balance > 0.5,
            }
        )

    def export_configuration(self) -> Dict[str, Any]:
        """Current configuration and metrics as plain data."""
        with self._lock:
            return {
                "config": self._config.to_dict(),
                "config_version": self._config.version,
                "metrics": self.metrics.snapshot(),
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "version": EXPORT_FORMAT_VERSION,
            }

    def import_configuration(self, data: Dict[str, Any]) -> ConfigUpdateResult:
        """
        Apply a configuration produced by export_configuration().

        A payload without a ``config`` mapping is rejected as a whole.
        """
        config = data.get("config") if isinstance(data, dict) else None
        if not isinstance(config, dict):
            return ConfigUpdateResult(rejected={"config": "invalid configuration data"})
        return self.update_config(config)

    # --- Metrics and self-tuning ---

    def get_performance_metrics(self) -> Dict[str, Any]:
        with self._lock:
            snapshot = self.metrics.snapshot()
            snapshot.update(
                {
                    "is_calculating": self._calculating,
                    "cache_size": len(self._route_cache),
                    "hierarchy_cache_size": len(self._hierarchy_cache),
                    "config_version": self._config.version,
                    "recommendations": [
                        vars(rec) for rec in self.generate_recommendations()
                    ],
                }
            )
            return snapshot

    def get_routing_quality_metrics(self) -> Dict[str, Any]:
        """Rounded metrics for display."""
        metrics = self.metrics
        config = self._config
        return {
            "average_calculation_time": round(metrics.average_calculation_time),
            "last_calculation_time": round(metrics.last_calculation_time),
            "total_calculations": metrics.total_calculations,
            "crossing_reduction": round(metrics.crossing_reduction * 100),
            "cache_hit_rate": round(metrics.cache_hit_rate * 100),
            "routing_enabled": config.enable_routing,
            "current_algorithm": config.routing_algorithm,
            "performance_mode": config.performance_mode,
            "fallback_usage": metrics.fallback_usage,
            "auto_optimizations": metrics.auto_optimizations,
            "percentiles": metrics.percentiles(),
        }

    def generate_recommendations(self) -> List[Recommendation]:
        return self.metrics.recommendations(self._config.fallback_threshold)

    def apply_recommendations(
        self, recommendations: Optional[List[Recommendation]] = None
    ) -> Tuple[List[str], ConfigUpdateResult]:
        """
        Apply the configuration changes behind recommendations.

        Args:
            recommendations: Recommendations to apply. Defaults to
                generate_recommendations().

        Returns:
            Tuple of (descriptions of the actions taken, update result).
        """
        with self._lock:
            recs = self.generate_recommendations() if recommendations is None else recommendations
            actions: List[str] = []
            updates: Dict[str, Any] = {}
            for rec in recs:
                if rec.action == "optimize_iterations":
                    updates["max_iterations"] = max(20, int(self._config.max_iterations * 0.8))
                    updates["early_termination"] = True
                    actions.append("Reduced iterations and enabled early termination")
                elif rec.action == "review_config_stability":
                    actions.append("Configuration stability review recommended")
                elif rec.action == "stabilize_config":
                    updates["adaptive_curvature"] = False
                    updates["smart_avoidance"] = False
                    updates["performance_mode"] = "balanced"
                    actions.append("Disabled adaptive features for stability")
            result = self.update_config(updates) if updates else ConfigUpdateResult()
        return actions, result

    def _check_performance(self, duration_ms: float, config: RoutingConfig) -> None:
        """React to slow calculations by tuning the configuration."""
        threshold = config.fallback_threshold
        if duration_ms > threshold:
            logger.warning(
                "Route calculation took %.1fms, over the %.0fms threshold", duration_ms, threshold
            )

        if not config.auto_optimization:
            return

        if duration_ms > threshold * AUTO_OPTIMIZATION_TRIGGER:
            updates, action = self._auto_optimizations(duration_ms / threshold, config)
            self.metrics.record_degradation(duration_ms, threshold, action)
            result = self._apply_config(updates, preserve_cache=True)
            if result.updated:
                self.metrics.auto_optimizations += 1
                logger.info("Auto-optimization (%s) after %.1fms", action, duration_ms)

        if (
            config.progressive_optimization
            and self.metrics.total_calculations > TREND_MIN_CALCULATIONS
            and self.metrics.average_calculation_time > threshold * AUTO_OPTIMIZATION_TRIGGER
        ):
            self._gradual_optimization()

    @staticmethod
    def _auto_optimizations(
        severity: float, config: RoutingConfig
    ) -> Tuple[Dict[str, Any], str]:
        if severity > SEVERE_DEGRADATION:
            return {
                "performance_mode": "fast",
                "max_iterations": max(10, int(config.max_iterations * 0.5)),
            }, "fast mode, fewer iterations"
        if severity > MODERATE_DEGRADATION:
            return {
                "adaptive_curvature": False,
                "adaptive_separation": False,
                "smart_avoidance": False,
                "precision": min(0.02, config.precision * 1.5),
            }, "adaptive features off, coarser precision"
        return {"early_termination": True}, "early termination"

    def _gradual_optimization(self) -> None:
        config = self._config
        updates: Dict[str, Any] = {}
        if config.max_iterations > 20:
            updates["max_iterations"] = config.max_iterations - 5
        if config.precision < 0.015:
            updates["precision"] = config.precision * 1.1
        if not config.early_termination:
            updates["early_termination"] = True
        if updates:
            logger.info("Gradual optimization: average time is trending up")
            self._apply_config(updates, preserve_cache=True)

