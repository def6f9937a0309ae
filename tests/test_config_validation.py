"""Tests for config and weight-profile validation.

Verifies that:
- Valid production config and seed profiles pass validation
- Negative weights are rejected
- Unknown benchmark columns, categories and metric names are rejected
- Missing keys fall back to defaults
- Missing profiles are a configuration error; all-zero profiles are not
"""

import sys
from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
from data_sources import (
    InMemoryWeightProfileSource,
    YamlWeightProfileSource,
    profile_from_mapping,
    profiles_from_rows,
)
from schemas import (
    BenchmarkAssignment,
    CategoryWeights,
    ConfigurationError,
    RunConfig,
    ScoreWeightProfile,
    validate_benchmark_column,
)

ROOT = Path(__file__).resolve().parent.parent


class TestRunConfigValidation:
    def test_production_config_passes(self):
        """The actual config.yaml should pass validation."""
        with open(ROOT / "config.yaml") as f:
            cfg = yaml.safe_load(f)
        rc = RunConfig(**cfg)
        assert rc.scoring.default_profile == "BASE"
        assert rc.scoring.min_constituents == 10
        assert rc.price_history.lookback_convention == "calendar"

    def test_empty_config_uses_defaults(self):
        rc = RunConfig()
        assert rc.scoring.default_benchmark_column == "BENCHMARK1"
        assert rc.scoring.revision_lookback_days == 90
        assert rc.scoring.unassigned_benchmark == "none"
        assert rc.price_history.drawdown_window == 252
        assert rc.output.excel_file == "scores.xlsx"

    def test_benchmark_column_normalized(self):
        rc = RunConfig(scoring={"default_benchmark_column": " benchmark2 "})
        assert rc.scoring.default_benchmark_column == "BENCHMARK2"

    def test_unknown_benchmark_column_rejected(self):
        with pytest.raises(ValidationError, match="default_benchmark_column"):
            RunConfig(scoring={"default_benchmark_column": "BENCHMARK9"})

    def test_min_constituents_must_be_positive(self):
        with pytest.raises(ValidationError):
            RunConfig(scoring={"min_constituents": 0})

    def test_revision_lookback_restricted(self):
        with pytest.raises(ValidationError):
            RunConfig(scoring={"revision_lookback_days": 60})

    def test_lookback_convention_restricted(self):
        with pytest.raises(ValidationError):
            RunConfig(price_history={"lookback_convention": "business"})

    def test_blank_default_profile_rejected(self):
        with pytest.raises(ValidationError, match="default_profile"):
            RunConfig(scoring={"default_profile": "  "})


class TestBenchmarkColumns:
    @pytest.mark.parametrize("col", ["BENCHMARK1", "benchmark2", "Benchmark3",
                                     "BENCHMARK_CUSTOM"])
    def test_known(self, col):
        assert validate_benchmark_column(col) == col.upper()

    @pytest.mark.parametrize("col", ["BENCHMARK4", "", None, "SPX"])
    def test_unknown(self, col):
        with pytest.raises(ConfigurationError):
            validate_benchmark_column(col)

    def test_assignment_resolve(self):
        a = BenchmarkAssignment(ticker="aapl", benchmark1=" spy ", benchmark2="#N/A")
        assert a.ticker == "AAPL"
        assert a.resolve("BENCHMARK1") == "SPY"
        assert a.resolve("benchmark2") is None
        assert a.resolve("BENCHMARK_CUSTOM") is None
        with pytest.raises(ConfigurationError):
            a.resolve("BENCHMARK5")


class TestSeedProfiles:
    def test_three_profiles(self, profiles):
        assert profiles.names() == ["AGGRESSIVE", "BASE", "CAUTIOUS"]

    @pytest.mark.parametrize("name,weights", [
        ("BASE", (0.40, 0.30, 0.15, 0.15)),
        ("CAUTIOUS", (0.40, 0.10, 0.25, 0.25)),
        ("AGGRESSIVE", (0.40, 0.50, 0.05, 0.05)),
    ])
    def test_category_weights(self, profiles, name, weights):
        cw = profiles.get(name).category_weights()
        assert (cw["VALUE"], cw["MOMENTUM"], cw["QUALITY"], cw["RISK"]) == weights

    def test_metric_weights_from_labels(self, base_profile):
        assert base_profile.metric_weight("VALUE", "target_price_upside") == 0.40
        assert base_profile.metric_weight("MOMENTUM", "return_12m_ex_1m") == 0.30
        assert base_profile.metric_weight("QUALITY", "accruals") == 0.20
        assert base_profile.metric_weight("RISK", "volatility") == 0.30
        assert base_profile.metric_weight("RISK", "financial_leverage") == 0.25

    def test_lookup_case_insensitive(self, profiles):
        assert profiles.get("cautious").name == "CAUTIOUS"

    def test_unknown_profile(self, profiles):
        with pytest.raises(ConfigurationError, match="not found"):
            profiles.get("MOONSHOT")


class TestWeightProfileModels:
    def test_negative_category_weight_rejected(self):
        with pytest.raises(ValidationError, match="Weight must be >= 0"):
            CategoryWeights(category_weight=-0.1)

    def test_negative_metric_weight_rejected(self):
        with pytest.raises(ValidationError, match="Weight must be >= 0"):
            CategoryWeights(category_weight=1.0, metric_weights={"beta": -1.0})

    def test_unknown_category_rejected(self):
        with pytest.raises(ValidationError, match="Unknown categories"):
            ScoreWeightProfile(name="X", categories={"GROWTH": CategoryWeights()})

    def test_missing_category_weighs_zero(self):
        p = ScoreWeightProfile(name="X", categories={
            "VALUE": CategoryWeights(category_weight=1.0)})
        assert p.category_weights() == {"VALUE": 1.0, "MOMENTUM": 0.0,
                                        "QUALITY": 0.0, "RISK": 0.0}
        assert p.metric_weight("RISK", "beta") == 0.0

    def test_all_zero_profile_is_valid(self):
        p = profile_from_mapping("ZERO", {"VALUE": {"weight": 0, "metrics": {"P/E": 0}}})
        src = InMemoryWeightProfileSource([p])
        assert src.get("zero").category_weights()["VALUE"] == 0.0


class TestProfileRows:
    ROWS = [
        {"profile_name": "base", "category": "VALUE", "metric_name": None,
         "metric_weight": None, "category_weight": 0.4},
        {"profile_name": "base", "category": "VALUE", "metric_name": "P/E",
         "metric_weight": 0.2, "category_weight": 0.4},
        {"profile_name": "base", "category": "VALUE", "metric_name": "TGT PRICE",
         "metric_weight": 0.4, "category_weight": None},
        {"profile_name": "base", "category": "RISK", "metric_name": "Beta 3-Yr",
         "metric_weight": 0.25, "category_weight": 0.15},
    ]

    def test_rows_build_profile(self):
        profiles = profiles_from_rows(self.ROWS)
        p = profiles["BASE"]
        assert p.category_weights()["VALUE"] == 0.4
        assert p.category_weights()["RISK"] == 0.15
        assert p.metric_weight("VALUE", "pe_ratio") == 0.2
        assert p.metric_weight("VALUE", "target_price_upside") == 0.4
        assert p.metric_weight("RISK", "beta") == 0.25

    def test_unknown_metric_label(self):
        rows = [{"profile_name": "X", "category": "VALUE", "metric_name": "P/B",
                 "metric_weight": 1.0, "category_weight": 1.0}]
        with pytest.raises(ConfigurationError, match="Unknown metric"):
            profiles_from_rows(rows)

    def test_metric_in_wrong_category(self):
        rows = [{"profile_name": "X", "category": "QUALITY", "metric_name": "P/E",
                 "metric_weight": 1.0, "category_weight": 1.0}]
        with pytest.raises(ConfigurationError, match="belongs to VALUE"):
            profiles_from_rows(rows)

    def test_unknown_category(self):
        rows = [{"profile_name": "X", "category": "SIZE", "metric_name": None,
                 "metric_weight": None, "category_weight": 1.0}]
        with pytest.raises(ConfigurationError, match="Unknown category"):
            profiles_from_rows(rows)

    def test_profile_with_no_rows_not_found(self):
        src = InMemoryWeightProfileSource(profiles_from_rows(self.ROWS))
        with pytest.raises(ConfigurationError):
            src.get("AGGRESSIVE")

    def test_yaml_rows_section(self, tmp_path):
        path = tmp_path / "profiles.yaml"
        path.write_text(yaml.safe_dump({"rows": self.ROWS}))
        src = YamlWeightProfileSource(path)
        assert src.names() == ["BASE"]
        assert src.get("BASE").metric_weight("VALUE", "pe_ratio") == 0.2
