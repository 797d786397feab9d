"""Unit tests for the config module."""

import dataclasses

import pytest

from sankeyroute.config import (
    CONFIG_SCHEMA,
    SCHEMA_BY_NAME,
    ConfigValidationError,
    RoutingConfig,
    configuration_schema,
    validate_bool,
    validate_enum,
    validate_int,
    validate_number,
)

NUMERIC_FIELDS = [spec for spec in CONFIG_SCHEMA if spec.kind in ("number", "int")]


class TestValidators:
    """Tests for the primitive validators."""

    def test_number_in_range(self):
        """Test an in-range number is returned as float."""
        assert validate_number(1, "x", min_val=0, max_val=2) == 1.0

    def test_number_rejects_bool(self):
        """Test booleans are not numbers."""
        with pytest.raises(ConfigValidationError):
            validate_number(True, "x")

    @pytest.mark.parametrize("value", [float("nan"), float("inf")])
    def test_number_rejects_non_finite(self, value):
        """Test NaN and infinity are rejected."""
        with pytest.raises(ConfigValidationError):
            validate_number(value, "x")

    def test_exclusive_minimum(self):
        """Test an exclusive lower bound rejects the bound itself."""
        with pytest.raises(ConfigValidationError, match="> 0"):
            validate_number(0, "x", min_val=0, min_exclusive=True)

    def test_int_rejects_float(self):
        """Test integer fields reject floats."""
        with pytest.raises(ConfigValidationError):
            validate_int(2.5, "n")

    def test_bool(self):
        """Test boolean validation."""
        assert validate_bool(False, "flag") is False
        with pytest.raises(ConfigValidationError):
            validate_bool("yes", "flag")

    def test_enum_normalizes_case(self):
        """Test enum values are stripped and lowercased."""
        assert validate_enum(" Fast ", "mode", ("fast", "balanced")) == "fast"

    def test_enum_rejects_unknown(self):
        """Test unknown enum values list the choices."""
        with pytest.raises(ConfigValidationError, match="fast, balanced"):
            validate_enum("turbo", "mode", ("fast", "balanced"))


class TestSchema:
    """Tests for CONFIG_SCHEMA."""

    def test_schema_matches_config_fields(self):
        """Test every config field except version has a schema entry."""
        fields = {f.name for f in dataclasses.fields(RoutingConfig)} - {"version"}
        assert fields == set(SCHEMA_BY_NAME)

    def test_defaults_match(self):
        """Test schema defaults equal the dataclass defaults."""
        config = RoutingConfig()
        for spec in CONFIG_SCHEMA:
            assert getattr(config, spec.name) == spec.default, spec.name

    def test_defaults_validate(self):
        """Test every default passes its own validator."""
        for spec in CONFIG_SCHEMA:
            spec.validate(spec.default)

    def test_flat_schema(self):
        """Test the UI schema carries ranges and options."""
        schema = {entry["name"]: entry for entry in configuration_schema()}
        assert schema["curvature"]["min"] == 0.0
        assert schema["curvature"]["max"] == 1.0
        assert schema["routing_algorithm"]["options"] == [
            "bezier-optimized",
            "spline-smooth",
            "arc-minimal",
            "simple-curve",
        ]
        assert schema["cache_enabled"]["type"] == "bool"


class TestDerivedValues:
    """Tests for computed configuration properties."""

    def test_effective_separation(self):
        """Test the separation multiplier is clamped to the bounds."""
        assert RoutingConfig().effective_separation == pytest.approx(0.02)
        wide = RoutingConfig(separation_multiplier=3.0, link_separation=0.05)
        assert wide.effective_separation == pytest.approx(0.1)
        assert RoutingConfig(link_separation=0.0).effective_separation == pytest.approx(0.01)

    def test_base_curvature_clamped(self):
        """Test curvature below the minimum is raised to it."""
        assert RoutingConfig(curvature=0.05).base_curvature == pytest.approx(0.1)

    def test_sample_counts(self):
        """Test sample counts follow the precision."""
        assert RoutingConfig().crossing_samples == 30
        assert RoutingConfig().collision_samples == 20
        assert RoutingConfig(precision=0.1).crossing_samples == 10


class TestUpdates:
    """Tests for RoutingConfig.with_updates."""

    def test_rejected_curvature_keeps_value(self):
        """Test an out-of-range curvature is reported and not applied."""
        config = RoutingConfig()
        new_config, result = config.with_updates({"curvature": 5})
        assert new_config.curvature == 0.3
        assert "curvature" in result.rejected
        assert "curvature" not in result.applied
        assert not result.updated
        assert new_config is config

    def test_partial_update(self):
        """Test valid fields apply even when others are rejected."""
        new_config, result = RoutingConfig().with_updates(
            {"curvature": 0.5, "max_iterations": -1, "nonsense": 1}
        )
        assert new_config.curvature == 0.5
        assert new_config.max_iterations == 50
        assert result.applied == {"curvature": (0.3, 0.5)}
        assert set(result.rejected) == {"max_iterations", "nonsense"}

    def test_version_increments(self):
        """Test each applied update produces a new version."""
        first, _ = RoutingConfig().with_updates({"smoothness": 0.5})
        second, _ = first.with_updates({"smoothness": 0.6})
        unchanged, _ = second.with_updates({"smoothness": 0.6})
        assert (first.version, second.version, unchanged.version) == (1, 2, 2)

    def test_significant_field_invalidates_cache(self):
        """Test geometry fields invalidate the cache and others do not."""
        _, significant = RoutingConfig().with_updates({"link_separation": 0.03})
        _, cosmetic = RoutingConfig().with_updates({"performance_monitoring": True})
        assert significant.cache_invalidated
        assert not cosmetic.cache_invalidated

    def test_fast_mode_side_effects(self):
        """Test fast mode caps iterations and time and coarsens precision."""
        config, result = RoutingConfig().with_updates({"performance_mode": "fast"})
        assert config.max_iterations == 25
        assert config.max_calculation_time == 200.0
        assert config.precision == 0.02
        assert "max_iterations" in result.applied

    def test_quality_mode_side_effects(self):
        """Test quality mode raises iterations and time and refines precision."""
        config, _ = RoutingConfig().with_updates({"performance_mode": "quality"})
        assert config.max_iterations == 75
        assert config.max_calculation_time == 1000.0
        assert config.precision == 0.005

    def test_visual_quality_side_effects(self):
        """Test visual quality adjusts smoothness."""
        high, _ = RoutingConfig().with_updates({"visual_quality": "high"})
        fast, _ = RoutingConfig().with_updates({"visual_quality": "fast"})
        assert high.smoothness == 0.9
        assert fast.smoothness == 0.5

    def test_fallback_snapshot(self):
        """Test the fallback snapshot simplifies the algorithm."""
        fallback = RoutingConfig(max_iterations=50).for_fallback()
        assert fallback.routing_algorithm == "simple-curve"
        assert fallback.max_iterations == 10
        assert not fallback.adaptive_curvature
        assert not fallback.adaptive_separation
        assert not fallback.smart_avoidance


class TestRangeProperty:
    """Every numeric field accepts values inside its range and rejects the rest."""

    @pytest.mark.parametrize("spec", NUMERIC_FIELDS, ids=lambda s: s.name)
    def test_below_minimum_rejected(self, spec):
        """Test a value below the minimum leaves the field unchanged."""
        config = RoutingConfig()
        low = spec.min_val - 1
        new_config, result = config.with_updates({spec.name: low})
        assert spec.name in result.rejected
        assert getattr(new_config, spec.name) == getattr(config, spec.name)

    @pytest.mark.parametrize("spec", NUMERIC_FIELDS, ids=lambda s: s.name)
    def test_above_maximum_rejected(self, spec):
        """Test a value above the maximum leaves the field unchanged."""
        config = RoutingConfig()
        high = spec.max_val + 1
        new_config, result = config.with_updates({spec.name: high})
        assert spec.name in result.rejected
        assert getattr(new_config, spec.name) == getattr(config, spec.name)

    @pytest.mark.parametrize("spec", NUMERIC_FIELDS, ids=lambda s: s.name)
    def test_maximum_accepted(self, spec):
        """Test the upper bound itself is accepted."""
        value = int(spec.max_val) if spec.kind == "int" else spec.max_val
        new_config, result = RoutingConfig().with_updates({spec.name: value})
        assert spec.name not in result.rejected
        assert getattr(new_config, spec.name) == value

    @pytest.mark.parametrize(
        "spec", [s for s in NUMERIC_FIELDS if s.min_exclusive], ids=lambda s: s.name
    )
    def test_exclusive_minimum_rejected(self, spec):
        """Test fields with an open lower bound reject the bound."""
        _, result = RoutingConfig().with_updates({spec.name: spec.min_val})
        assert spec.name in result.rejected
