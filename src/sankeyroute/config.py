"""
Routing configuration.

The active configuration is an immutable, versioned snapshot. Updates go
through ``RoutingConfig.with_updates`` which validates every field on its
own, applies the valid ones to a new snapshot and reports the rest as
rejected. A rejected field never raises out of an update.

Provides:
- ``RoutingConfig``: the frozen configuration record with all defaults
- ``CONFIG_SCHEMA``: per-field type, range, default and UI metadata
- Primitive validators raising ``ConfigValidationError``
- ``ConfigUpdateResult``: what an update applied and rejected
"""

import dataclasses
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

ROUTING_ALGORITHMS = ("bezier-optimized", "spline-smooth", "arc-minimal", "simple-curve")
PERFORMANCE_MODES = ("fast", "balanced", "quality")
VISUAL_QUALITIES = ("fast", "balanced", "high")

# Fields whose change alters route geometry, so cached routes become stale
SIGNIFICANT_FIELDS = frozenset(
    {
        "routing_algorithm",
        "fallback_algorithm",
        "curvature",
        "link_separation",
        "avoidance_radius",
        "performance_mode",
        "visual_quality",
        "max_iterations",
        "adaptive_curvature",
        "adaptive_separation",
        "smart_avoidance",
    }
)


class ConfigValidationError(ValueError):
    """Raised when a configuration value fails validation."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


# ---------------------------------------------------------------------------
# Primitive validators
# ---------------------------------------------------------------------------


def validate_number(
    value: Any,
    field_name: str,
    *,
    min_val: Optional[float] = None,
    max_val: Optional[float] = None,
    min_exclusive: bool = False,
) -> float:
    """Validate a finite numeric value and optional range."""
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        raise ConfigValidationError(
            f"'{field_name}' must be a number, got {type(value).__name__}."
        )
    val = float(value)
    if not math.isfinite(val):
        raise ConfigValidationError(f"'{field_name}' must be finite, got {val}.")
    if min_val is not None:
        if min_exclusive and val <= min_val:
            raise ConfigValidationError(f"'{field_name}' must be > {min_val}, got {val}.")
        if not min_exclusive and val < min_val:
            raise ConfigValidationError(f"'{field_name}' must be >= {min_val}, got {val}.")
    if max_val is not None and val > max_val:
        raise ConfigValidationError(f"'{field_name}' must be <= {max_val}, got {val}.")
    return val


def validate_int(
    value: Any,
    field_name: str,
    *,
    min_val: Optional[int] = None,
    max_val: Optional[int] = None,
) -> int:
    """Validate an integer value and optional range."""
    if not isinstance(value, int) or isinstance(value, bool):
        raise ConfigValidationError(
            f"'{field_name}' must be an integer, got {type(value).__name__}."
        )
    if min_val is not None and value < min_val:
        raise ConfigValidationError(f"'{field_name}' must be >= {min_val}, got {value}.")
    if max_val is not None and value > max_val:
        raise ConfigValidationError(f"'{field_name}' must be <= {max_val}, got {value}.")
    return value


def validate_bool(value: Any, field_name: str) -> bool:
    """Ensure *value* is a boolean."""
    if not isinstance(value, bool):
        raise ConfigValidationError(
            f"'{field_name}' must be a boolean, got {type(value).__name__}."
        )
    return value


def validate_enum(value: Any, field_name: str, allowed: Sequence[str]) -> str:
    """Validate that a string value is one of the allowed choices."""
    if not isinstance(value, str):
        raise ConfigValidationError(
            f"'{field_name}' must be a string, got {type(value).__name__}."
        )
    normalized = value.strip().lower()
    if normalized not in allowed:
        choices = ", ".join(allowed)
        raise ConfigValidationError(
            f"'{field_name}' must be one of [{choices}], got '{value}'."
        )
    return normalized


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FieldSpec:
    """
    Contract and UI metadata for one configuration field.

    Attributes:
        name: Field name on RoutingConfig.
        kind: One of "number", "int", "bool", "enum".
        default: Default value.
        min_val: Lower bound for numeric fields.
        max_val: Upper bound for numeric fields.
        min_exclusive: True when the lower bound itself is not allowed.
        options: Allowed values for enum fields.
        label: Short human-readable name.
        description: One-line explanation for UI tooltips.
        category: UI grouping ("general", "visual", "collision", ...).
    """

    name: str
    kind: str
    default: Any
    min_val: Optional[float] = None
    max_val: Optional[float] = None
    min_exclusive: bool = False
    options: Tuple[str, ...] = ()
    label: str = ""
    description: str = ""
    category: str = "advanced"

    @property
    def significant(self) -> bool:
        return self.name in SIGNIFICANT_FIELDS

    def validate(self, value: Any) -> Any:
        """Return the normalized value or raise ConfigValidationError."""
        if self.kind == "bool":
            return validate_bool(value, self.name)
        if self.kind == "enum":
            return validate_enum(value, self.name, self.options)
        if self.kind == "int":
            return validate_int(
                value,
                self.name,
                min_val=None if self.min_val is None else int(self.min_val),
                max_val=None if self.max_val is None else int(self.max_val),
            )
        return validate_number(
            value,
            self.name,
            min_val=self.min_val,
            max_val=self.max_val,
            min_exclusive=self.min_exclusive,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "name": self.name,
            "type": self.kind,
            "default": self.default,
            "label": self.label,
            "description": self.description,
            "category": self.category,
        }
        if self.kind in ("number", "int"):
            data["min"] = self.min_val
            data["max"] = self.max_val
            data["min_exclusive"] = self.min_exclusive
        if self.kind == "enum":
            data["options"] = list(self.options)
        return data


def _num(name, default, lo, hi, label, description, category="visual", open_low=False):
    return FieldSpec(
        name, "number", default, lo, hi, open_low,
        label=label, description=description, category=category,
    )


def _flag(name, default, label, description, category="advanced"):
    return FieldSpec(name, "bool", default, label=label, description=description, category=category)


CONFIG_SCHEMA: Tuple[FieldSpec, ...] = (
    _flag("enable_routing", True, "Enable routing",
          "Compute optimized curved routes instead of straight links", "general"),
    # Curvature
    _num("curvature", 0.3, 0.0, 1.0, "Curvature",
         "Link curvature (0 = straight, 1 = strongly curved)"),
    _num("min_curvature", 0.1, 0.0, 1.0, "Minimum curvature",
         "Lower clamp applied to the base curvature"),
    _num("max_curvature", 0.8, 0.0, 1.0, "Maximum curvature",
         "Upper clamp applied to the base curvature"),
    _num("curvature_step", 0.05, 0.0, 0.1, "Curvature step",
         "Smallest curvature increment used when resolving crossings", open_low=True),
    # Separation
    _num("link_separation", 0.02, 0.0, 0.2, "Link separation",
         "Minimum distance between parallel links"),
    _num("group_separation", 0.05, 0.0, 0.3, "Group separation",
         "Spacing between groups of parallel links"),
    _num("min_separation", 0.01, 0.0, 0.1, "Minimum separation",
         "Lower clamp applied to the effective link separation"),
    _num("max_separation", 0.1, 0.0, 0.3, "Maximum separation",
         "Upper clamp applied to the effective link separation"),
    _num("separation_multiplier", 1.0, 0.0, 3.0, "Separation multiplier",
         "Scale factor applied to the link separation", open_low=True),
    # Avoidance
    _num("avoidance_radius", 0.05, 0.0, 0.3, "Avoidance radius",
         "Clearance kept around nodes and crossing points", "collision"),
    _num("avoidance_strength", 1.0, 0.0, 2.0, "Avoidance strength",
         "Scale factor for layering and deviation offsets", "collision"),
    _num("avoidance_decay", 0.8, 0.0, 1.0, "Avoidance decay",
         "Falloff of avoidance influence along a route", "collision"),
    _flag("node_avoidance", True, "Node avoidance",
          "Bend routes around nodes they would otherwise pass through", "collision"),
    _flag("link_avoidance", True, "Link avoidance",
          "Run crossing optimization after computing routes", "collision"),
    # Algorithm
    FieldSpec("routing_algorithm", "enum", "bezier-optimized", options=ROUTING_ALGORITHMS,
              label="Routing algorithm", description="Algorithm used to compute routes",
              category="algorithm"),
    FieldSpec("fallback_algorithm", "enum", "simple-curve", options=ROUTING_ALGORITHMS,
              label="Fallback algorithm",
              description="Algorithm used when the primary calculation fails or times out",
              category="algorithm"),
    FieldSpec("max_iterations", "int", 50, 1, 200, label="Maximum iterations",
              description="Upper bound on crossing-resolution passes", category="algorithm"),
    _num("convergence_threshold", 0.001, 0.0, 0.1, "Convergence threshold",
         "Stop when the reduction since the first pass is below this fraction",
         "algorithm", open_low=True),
    # Flow priorities
    _num("priority_primary", 1.0, 0.0, 2.0, "Primary priority",
         "Weight of primary flows", "priorities"),
    _num("priority_secondary", 0.8, 0.0, 2.0, "Secondary priority",
         "Weight of secondary flows", "priorities"),
    _num("priority_transformation", 0.6, 0.0, 2.0, "Transformation priority",
         "Weight of transformation flows", "priorities"),
    _num("priority_distribution", 0.4, 0.0, 2.0, "Distribution priority",
         "Weight of distribution flows", "priorities"),
    # Performance
    FieldSpec("performance_mode", "enum", "balanced", options=PERFORMANCE_MODES,
              label="Performance mode", description="Balance between speed and routing quality",
              category="performance"),
    FieldSpec("visual_quality", "enum", "balanced", options=VISUAL_QUALITIES,
              label="Visual quality", description="Curve smoothness level",
              category="visual"),
    _num("max_calculation_time", 500.0, 0.0, 5000.0, "Maximum calculation time (ms)",
         "Time budget before falling back to simpler routing", "performance", open_low=True),
    _num("fallback_threshold", 1000.0, 0.0, 10000.0, "Fallback threshold (ms)",
         "Calculation time that triggers automatic optimization", "performance", open_low=True),
    _num("smoothness", 0.7, 0.0, 1.0, "Smoothness", "Curve smoothness"),
    _num("precision", 0.01, 0.0, 0.1, "Precision",
         "Sampling step for collision and crossing checks (smaller is finer)",
         "performance", open_low=True),
    # Adaptive features
    _flag("adaptive_curvature", True, "Adaptive curvature",
          "Increase curvature of crossing secondary links"),
    _flag("adaptive_separation", True, "Adaptive separation",
          "Widen separation when many crossings remain"),
    _flag("smart_avoidance", True, "Smart avoidance",
          "Detour a route around the other route's endpoint when nudges fail"),
    _flag("early_termination", True, "Early termination",
          "Stop optimizing after two passes without fewer crossings", "performance"),
    _flag("progressive_optimization", True, "Progressive optimization",
          "Apply gradual self-tuning after slow calculations", "performance"),
    _flag("auto_optimization", True, "Auto-optimization",
          "Tune the configuration automatically when calculations are slow", "performance"),
    # Robustness
    _flag("enable_fallback", True, "Enable fallback",
          "Retry with a simpler algorithm when the calculation fails", "general"),
    _flag("graceful_degradation", True, "Graceful degradation",
          "Return straight routes instead of raising when everything fails", "general"),
    _flag("cache_enabled", True, "Cache routes",
          "Reuse routes for identical inputs and configuration", "performance"),
    _flag("performance_monitoring", False, "Performance monitoring",
          "Log a metrics summary after every calculation", "debug"),
)

SCHEMA_BY_NAME: Dict[str, FieldSpec] = {spec.name: spec for spec in CONFIG_SCHEMA}


# ---------------------------------------------------------------------------
# Configuration snapshot
# ---------------------------------------------------------------------------


@dataclass
class ConfigUpdateResult:
    """
    Outcome of a configuration update.

    Attributes:
        applied: Field name -> (previous value, new value) for applied changes.
        rejected: Field name -> reason for every rejected field.
        cache_invalidated: True when a significant field changed.
    """

    applied: Dict[str, Tuple[Any, Any]] = field(default_factory=dict)
    rejected: Dict[str, str] = field(default_factory=dict)
    cache_invalidated: bool = False

    @property
    def updated(self) -> bool:
        return bool(self.applied)


@dataclass(frozen=True)
class RoutingConfig:
    """
    Immutable routing configuration snapshot.

    Field defaults mirror CONFIG_SCHEMA. ``version`` increases by one each
    time an update produces a new snapshot.
    """

    enable_routing: bool = True
    curvature: float = 0.3
    min_curvature: float = 0.1
    max_curvature: float = 0.8
    curvature_step: float = 0.05
    link_separation: float = 0.02
    group_separation: float = 0.05
    min_separation: float = 0.01
    max_separation: float = 0.1
    separation_multiplier: float = 1.0
    avoidance_radius: float = 0.05
    avoidance_strength: float = 1.0
    avoidance_decay: float = 0.8
    node_avoidance: bool = True
    link_avoidance: bool = True
    routing_algorithm: str = "bezier-optimized"
    fallback_algorithm: str = "simple-curve"
    max_iterations: int = 50
    convergence_threshold: float = 0.001
    priority_primary: float = 1.0
    priority_secondary: float = 0.8
    priority_transformation: float = 0.6
    priority_distribution: float = 0.4
    performance_mode: str = "balanced"
    visual_quality: str = "balanced"
    max_calculation_time: float = 500.0
    fallback_threshold: float = 1000.0
    smoothness: float = 0.7
    precision: float = 0.01
    adaptive_curvature: bool = True
    adaptive_separation: bool = True
    smart_avoidance: bool = True
    early_termination: bool = True
    progressive_optimization: bool = True
    auto_optimization: bool = True
    enable_fallback: bool = True
    graceful_degradation: bool = True
    cache_enabled: bool = True
    performance_monitoring: bool = False
    version: int = 0

    # --- Derived values ---

    @property
    def effective_separation(self) -> float:
        """Link separation scaled by the multiplier and clamped to its bounds."""
        lo, hi = sorted((self.min_separation, self.max_separation))
        return min(max(self.link_separation * self.separation_multiplier, lo), hi)

    @property
    def base_curvature(self) -> float:
        lo, hi = sorted((self.min_curvature, self.max_curvature))
        return min(max(self.curvature, lo), hi)

    @property
    def crossing_samples(self) -> int:
        """Polyline segments per route for crossing detection (30 by default)."""
        return max(10, int(round(0.3 / self.precision)))

    @property
    def collision_samples(self) -> int:
        """Curve samples for node collision checks (20 by default)."""
        return max(10, int(round(0.2 / self.precision)))

    def to_dict(self, include_version: bool = False) -> Dict[str, Any]:
        data = dataclasses.asdict(self)
        if not include_version:
            data.pop("version")
        return data

    # --- Updates ---

    def with_updates(self, updates: Dict[str, Any]) -> Tuple["RoutingConfig", ConfigUpdateResult]:
        """
        Validate and apply a partial update.

        Each field is validated on its own; invalid or unknown fields are
        recorded in the result and leave the current value untouched.
        Changing ``performance_mode`` or ``visual_quality`` also adjusts the
        dependent iteration, time, precision and smoothness settings.

        Args:
            updates: Mapping of field name to new value.

        Returns:
            Tuple of (new snapshot, update result). The snapshot is ``self``
            when nothing was applied.
        """
        result = ConfigUpdateResult()
        changes: Dict[str, Any] = {}

        for name, value in updates.items():
            spec = SCHEMA_BY_NAME.get(name)
            if spec is None:
                result.rejected[name] = f"unknown configuration field '{name}'"
                continue
            try:
                normalized = spec.validate(value)
            except ConfigValidationError as exc:
                result.rejected[name] = exc.message
                continue
            if normalized != getattr(self, name):
                changes[name] = normalized

        if "performance_mode" in changes or "visual_quality" in changes:
            changes.update(_mode_adjustments(dataclasses.replace(self, **changes)))
            changes = {k: v for k, v in changes.items() if v != getattr(self, k)}

        for name in result.rejected:
            logger.warning("Rejected configuration field: %s", result.rejected[name])

        if not changes:
            return self, result

        for name, value in changes.items():
            result.applied[name] = (getattr(self, name), value)
        result.cache_invalidated = any(name in SIGNIFICANT_FIELDS for name in changes)
        new_config = dataclasses.replace(self, version=self.version + 1, **changes)
        return new_config, result

    def for_fallback(self) -> "RoutingConfig":
        """Simplified snapshot used when the primary calculation fails."""
        return dataclasses.replace(
            self,
            routing_algorithm=self.fallback_algorithm,
            max_iterations=min(self.max_iterations, 10),
            adaptive_curvature=False,
            adaptive_separation=False,
            smart_avoidance=False,
        )


def _mode_adjustments(config: RoutingConfig) -> Dict[str, Any]:
    """Settings implied by the performance mode and visual quality."""
    adjusted: Dict[str, Any] = {}
    if config.performance_mode == "fast":
        adjusted["max_iterations"] = min(config.max_iterations, 25)
        adjusted["max_calculation_time"] = min(config.max_calculation_time, 200.0)
        adjusted["precision"] = max(config.precision, 0.02)
    elif config.performance_mode == "quality":
        adjusted["max_iterations"] = max(config.max_iterations, 75)
        adjusted["max_calculation_time"] = max(config.max_calculation_time, 1000.0)
        adjusted["precision"] = min(config.precision, 0.005)

    if config.visual_quality == "fast":
        adjusted["smoothness"] = min(config.smoothness, 0.5)
    elif config.visual_quality == "high":
        adjusted["smoothness"] = max(config.smoothness, 0.9)
    return adjusted


def configuration_schema() -> List[Dict[str, Any]]:
    """Flat schema a host UI can turn into controls."""
    return [spec.to_dict() for spec in CONFIG_SCHEMA]
