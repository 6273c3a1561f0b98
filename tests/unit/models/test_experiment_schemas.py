"""Tests for experiment and feature flag schemas."""

import pytest
from pydantic import ValidationError

from src.models.db.experiment import ExperimentStatus
from src.models.domain.experiment import (
    ConversionMetric,
    ExperimentCreate,
    StatisticalConfig,
    VariantCreate,
    build_variants,
    experiment_config_errors,
)
from src.models.domain.feature_flag import FeatureFlagCreate
from tests.factories import make_experiment


def _variants(*weights: int, control: bool = True) -> list[VariantCreate]:
    return [
        VariantCreate(name=f"v{i}", traffic_weight=w, is_control=control and i == 0)
        for i, w in enumerate(weights)
    ]


def _metrics(primary: bool = True) -> list[ConversionMetric]:
    return [ConversionMetric(name="purchase", is_primary=primary)]


class TestExperimentConfigErrors:
    """Tests for experiment definition validation."""

    def test_valid_definition(self) -> None:
        assert experiment_config_errors(_variants(50, 50), _metrics()) == []

    def test_weights_must_sum_to_100(self) -> None:
        errors = experiment_config_errors(_variants(50, 49), _metrics())

        assert errors == ["Variant traffic weights must sum to 100 (got 99)"]

    def test_requires_control(self) -> None:
        errors = experiment_config_errors(_variants(50, 50, control=False), _metrics())

        assert errors == ["Experiment must have at least one control variant"]

    def test_requires_primary_metric(self) -> None:
        errors = experiment_config_errors(_variants(100), _metrics(primary=False))

        assert errors == ["Experiment must have at least one primary metric"]

    def test_metric_names_unique(self) -> None:
        metrics = [
            ConversionMetric(name="purchase", is_primary=True),
            ConversionMetric(name="purchase"),
        ]

        assert experiment_config_errors(_variants(100), metrics) == [
            "Metric names must be unique"
        ]

    def test_collects_every_problem(self) -> None:
        errors = experiment_config_errors(_variants(30, control=False), _metrics(primary=False))

        assert len(errors) == 3


class TestBuildVariants:
    """Tests for variant id derivation."""

    def test_ids_follow_definition_order(self) -> None:
        variants = build_variants("checkout_flow", _variants(20, 30, 50))

        assert [v.id for v in variants] == [
            "checkout_flow_variant_0",
            "checkout_flow_variant_1",
            "checkout_flow_variant_2",
        ]
        assert [v.traffic_weight for v in variants] == [20, 30, 50]
        assert variants[0].is_control is True


class TestSchemas:
    """Field-level validation."""

    def test_statistical_config_defaults(self) -> None:
        config = StatisticalConfig()

        assert config.confidence_level == 0.95
        assert config.z_score == 1.96
        assert config.minimum_sample_size == 1000
        assert config.minimum_runtime_hours == 168
        assert config.maximum_runtime_days == 30

    @pytest.mark.parametrize(("level", "z"), [(0.90, 1.645), (0.99, 2.576)])
    def test_z_scores(self, level: float, z: float) -> None:
        assert StatisticalConfig(confidence_level=level).z_score == z

    def test_rejects_unknown_confidence_level(self) -> None:
        with pytest.raises(ValidationError):
            StatisticalConfig(confidence_level=0.97)

    def test_rejects_unknown_power(self) -> None:
        with pytest.raises(ValidationError):
            StatisticalConfig(power=0.5)

    def test_variant_weight_bounds(self) -> None:
        with pytest.raises(ValidationError):
            VariantCreate(name="v", traffic_weight=101)

    def test_variant_config_is_flat(self) -> None:
        VariantCreate(name="v", traffic_weight=50, config={"color": "green", "limit": 3})

        with pytest.raises(ValidationError):
            VariantCreate(name="v", traffic_weight=50, config={"nested": {"a": 1}})

    def test_feature_key_pattern(self) -> None:
        with pytest.raises(ValidationError):
            ExperimentCreate(
                name="Checkout",
                feature_key="checkout flow",
                variants=_variants(100),
                metrics=_metrics(),
            )

    def test_flag_rollout_bounds(self) -> None:
        with pytest.raises(ValidationError):
            FeatureFlagCreate(key="new_checkout", name="New checkout", rollout_percentage=101)


class TestExperimentRead:
    """Tests for the cached experiment snapshot."""

    def test_snapshot_is_frozen(self) -> None:
        experiment = make_experiment()

        with pytest.raises(ValidationError):
            experiment.name = "changed"  # type: ignore[misc]

    def test_helpers(self) -> None:
        experiment = make_experiment(status=ExperimentStatus.PAUSED)

        assert experiment.is_active is False
        assert experiment.control_variant is not None
        assert experiment.control_variant.id == "checkout_flow_variant_0"
        assert experiment.primary_metric_names == {"purchase"}
        assert experiment.get_variant("checkout_flow_variant_1") is not None
        assert experiment.get_variant("missing") is None
