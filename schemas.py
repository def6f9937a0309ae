#!/usr/bin/env python3
"""
Typed schemas for the Security Scoring Engine.

Provides Pydantic models for data validation at pipeline boundaries.
These schemas are documentation-as-code: they define what the scoring
core consumes (fundamental snapshots, price-history snapshots, benchmark
assignments, weight profiles) and what it produces (metrics + score
records), making the null-tolerant contract explicit and testable.
"""

import math
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


CATEGORIES = ("VALUE", "MOMENTUM", "QUALITY", "RISK")
BENCHMARK_COLUMNS = ("BENCHMARK1", "BENCHMARK2", "BENCHMARK3", "BENCHMARK_CUSTOM")

# Spreadsheet error / placeholder strings that mean "no value".
NA_SENTINELS = {
    "", "-", "#N/A", "#N/A N/A", "N/A", "NA", "#VALUE!", "#DIV/0!",
    "#REF!", "NaN", "nan", "None", "null",
}


class ConfigurationError(ValueError):
    """Run-level failure: unknown profile, benchmark column or metric name."""


def normalize_ticker(value) -> Optional[str]:
    """Canonical ticker form: trimmed, uppercased; blank -> None."""
    if value is None:
        return None
    if isinstance(value, float) and math.isnan(value):
        return None
    s = str(value).strip().upper()
    if s in {"", "-", "N/A", "#N/A", "NAN", "NONE"}:
        return None
    return s


def parse_number(value) -> Optional[float]:
    """Parse a spreadsheet cell into a float, or None when not numeric.

    Accepts numbers, numeric strings (with optional thousands separators,
    a trailing '%' or a leading '$') and maps every sentinel in
    NA_SENTINELS, NaN and +/-inf to None.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        f = float(value)
        return f if math.isfinite(f) else None
    s = str(value).strip()
    if s in NA_SENTINELS:
        return None
    s = s.replace(",", "").rstrip("%").lstrip("$").strip()
    try:
        f = float(s)
    except ValueError:
        return None
    return f if math.isfinite(f) else None


class _NumericRecord(BaseModel):
    """Base for snapshot records: every float field is parsed leniently."""

    @field_validator("*", mode="before")
    @classmethod
    def _coerce_numbers(cls, v, info):
        if info.field_name == "ticker":
            return v
        return parse_number(v)

    @field_validator("ticker", mode="after", check_fields=False)
    @classmethod
    def _canonical_ticker(cls, v: str) -> str:
        t = normalize_ticker(v)
        if t is None:
            raise ValueError("ticker must be a non-empty symbol")
        return t


class RawFundamentalRecord(_NumericRecord):
    """One security's point-in-time fundamental fields.

    Populated once at the ingestion boundary (see
    data_sources.FUNDAMENTAL_COLUMN_MAP); every field except the ticker
    is optional and None means "not available".
    """
    ticker: str

    # Price / consensus
    price: Optional[float] = None
    target_price: Optional[float] = None
    week52_high: Optional[float] = None

    # Estimates (next twelve months) now and N days prior
    eps_ntm: Optional[float] = None
    eps_ntm_30d_ago: Optional[float] = None
    eps_ntm_90d_ago: Optional[float] = None
    sales_ntm: Optional[float] = None
    sales_ntm_30d_ago: Optional[float] = None
    sales_ntm_90d_ago: Optional[float] = None

    # Last-quarter surprises
    eps_surprise: Optional[float] = None
    sales_surprise: Optional[float] = None

    # Trailing fundamentals
    sales_ltm: Optional[float] = None
    ebitda_ltm: Optional[float] = None
    gross_profit_ltm: Optional[float] = None
    total_assets: Optional[float] = None
    fcf: Optional[float] = None
    accruals: Optional[float] = None
    net_debt: Optional[float] = None
    roic_ttm: Optional[float] = None
    roic_3yr: Optional[float] = None

    # Valuation multiples
    pe_ntm: Optional[float] = None
    ev_ebitda_ntm: Optional[float] = None
    ev_sales_ntm: Optional[float] = None

    # Risk
    beta_3yr: Optional[float] = None
    volatility: Optional[float] = None

    model_config = ConfigDict(frozen=True)


class PriceHistorySnapshot(_NumericRecord):
    """Current price, lagged prices and trailing max drawdown for one ticker.

    Lagged prices and the drawdown are None when history is insufficient
    or the lookup failed.
    """
    ticker: str
    current_price: Optional[float] = None
    price_30d_ago: Optional[float] = None
    price_90d_ago: Optional[float] = None
    price_365d_ago: Optional[float] = None
    max_drawdown: Optional[float] = None

    model_config = ConfigDict(frozen=True)


class IndividualMetrics(BaseModel):
    """Derived per-security factor metrics in natural units.

    Direction-of-goodness is owned by factor_engine.METRIC_DIR, not here.
    """
    ticker: str

    # VALUE
    pe_ratio: Optional[float] = None
    ev_ebitda: Optional[float] = None
    ev_sales: Optional[float] = None
    target_price_upside: Optional[float] = None

    # MOMENTUM
    return_12m_ex_1m: Optional[float] = None
    return_3m: Optional[float] = None
    pct_52w_high: Optional[float] = None
    eps_surprise: Optional[float] = None
    revenue_surprise: Optional[float] = None
    eps_revision: Optional[float] = None
    revenue_revision: Optional[float] = None

    # QUALITY
    roic_ttm: Optional[float] = None
    roic_3yr: Optional[float] = None
    gross_profitability: Optional[float] = None
    accruals: Optional[float] = None
    fcf_to_assets: Optional[float] = None
    ebitda_margin: Optional[float] = None

    # RISK
    beta: Optional[float] = None
    volatility: Optional[float] = None
    max_drawdown: Optional[float] = None          # positive decline fraction
    financial_leverage: Optional[float] = None    # net debt / EBITDA

    model_config = ConfigDict(frozen=True)


class BenchmarkAssignment(BaseModel):
    """Up to four benchmark tickers assigned to one security."""
    ticker: str
    benchmark1: Optional[str] = None
    benchmark2: Optional[str] = None
    benchmark3: Optional[str] = None
    benchmark_custom: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @field_validator("*", mode="before")
    @classmethod
    def _canonical(cls, v):
        return normalize_ticker(v)

    def resolve(self, column: str) -> Optional[str]:
        """Benchmark ticker for a column name such as 'BENCHMARK1'."""
        return getattr(self, validate_benchmark_column(column).lower())


def validate_benchmark_column(column: str) -> str:
    col = str(column or "").strip().upper()
    if col not in BENCHMARK_COLUMNS:
        raise ConfigurationError(
            f"Unknown benchmark column '{column}' "
            f"(expected one of {', '.join(BENCHMARK_COLUMNS)})"
        )
    return col


# =========================================================================
# Weight profiles
# =========================================================================

class CategoryWeights(BaseModel):
    """Category weight plus relative metric weights inside the category."""
    category_weight: float = 0.0
    metric_weights: dict[str, float] = {}

    @field_validator("category_weight")
    @classmethod
    def weight_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError(f"Weight must be >= 0, got {v}")
        return v

    @field_validator("metric_weights")
    @classmethod
    def metric_weights_non_negative(cls, v: dict) -> dict:
        for name, w in v.items():
            if w < 0:
                raise ValueError(f"Weight must be >= 0, got {w} for '{name}'")
        return v


class ScoreWeightProfile(BaseModel):
    """Named, immutable weight configuration for one scoring run.

    Weights are relative: neither category weights nor metric weights
    need to sum to 1. A missing category or metric weighs 0.
    """
    name: str
    categories: dict[str, CategoryWeights] = {}

    model_config = ConfigDict(frozen=True)

    @field_validator("categories")
    @classmethod
    def known_categories(cls, v: dict) -> dict:
        unknown = sorted(set(v) - set(CATEGORIES))
        if unknown:
            raise ValueError(f"Unknown categories {unknown} (expected {list(CATEGORIES)})")
        return v

    def category_weights(self) -> dict[str, float]:
        return {c: (self.categories[c].category_weight if c in self.categories else 0.0)
                for c in CATEGORIES}

    def metric_weight(self, category: str, metric: str) -> float:
        cat = self.categories.get(category)
        if cat is None:
            return 0.0
        return float(cat.metric_weights.get(metric, 0.0))


# =========================================================================
# Output
# =========================================================================

class ScoreRecord(BaseModel):
    """Scores for a single security (output only, never persisted here)."""
    ticker: str
    benchmark: Optional[str] = None
    metrics: IndividualMetrics
    scores: dict[str, Optional[float]] = {}
    score_paths: dict[str, str] = {}

    value_score: Optional[float] = Field(None, ge=0, le=100)
    momentum_score: Optional[float] = Field(None, ge=0, le=100)
    quality_score: Optional[float] = Field(None, ge=0, le=100)
    risk_score: Optional[float] = Field(None, ge=0, le=100)
    total_score: Optional[float] = Field(None, ge=0, le=100)

    model_config = ConfigDict(frozen=True)


# =========================================================================
# RunConfig: top-level config schema
# =========================================================================

class RunConfig(BaseModel):
    """Schema for validated config.yaml contents."""

    class ScoringConfig(BaseModel):
        default_profile: str = "BASE"
        default_benchmark_column: str = "BENCHMARK1"
        min_constituents: int = Field(10, ge=1)
        revision_lookback_days: Literal[30, 90] = 90
        unassigned_benchmark: Literal["none", "universe"] = "none"
        max_workers: int = Field(1, ge=1)

        @field_validator("default_benchmark_column")
        @classmethod
        def known_column(cls, v: str) -> str:
            if v.strip().upper() not in BENCHMARK_COLUMNS:
                raise ValueError(f"default_benchmark_column must be one of {BENCHMARK_COLUMNS}")
            return v.strip().upper()

    class PriceHistoryConfig(BaseModel):
        lookback_convention: Literal["calendar", "trading"] = "calendar"
        drawdown_window: int = Field(252, ge=2)
        max_retries: int = Field(3, ge=1)
        batch_size: int = Field(10, ge=1)
        max_workers: int = Field(3, ge=1)

    class DataConfig(BaseModel):
        data_dir: str = "data"
        weight_profiles_file: str = "weight_profiles.yaml"

    class OutputConfig(BaseModel):
        excel_file: str = "scores.xlsx"
        sheet_name: str = "Scores"
        diagnostics_file: str = "diagnostics.csv"

    scoring: ScoringConfig = ScoringConfig()
    price_history: PriceHistoryConfig = PriceHistoryConfig()
    data: DataConfig = DataConfig()
    output: OutputConfig = OutputConfig()

    @model_validator(mode="after")
    def _profile_named(self) -> "RunConfig":
        if not self.scoring.default_profile.strip():
            raise ValueError("scoring.default_profile must not be empty")
        return self
