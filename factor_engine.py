#!/usr/bin/env python3
"""
Security Scoring Engine - Factor Engine
=======================================
Percentile-normalized scoring of securities across four factor
categories (VALUE, MOMENTUM, QUALITY, RISK) with configurable weight
profiles.

Two reference populations are used:

* Benchmark-relative metrics (valuation multiples, price momentum,
  beta / volatility / drawdown) are ranked against the constituents of
  the security's assigned benchmark. When fewer than ``min_constituents``
  constituents have data for a metric, the metric falls back to a ratio
  (or difference) against the benchmark instrument itself.
* Stock-specific metrics (surprises, estimate revisions, target upside,
  all of QUALITY, financial leverage) are always ranked against the
  whole universe, since benchmark instruments carry no earnings data.

All scores live on a 0-100 scale. None is carried through everywhere:
a None score never becomes 0 inside a composite.
"""

from typing import Iterable, Optional

import numpy as np
import pandas as pd
from scipy.stats import percentileofscore

from schemas import CATEGORIES, IndividualMetrics, ScoreWeightProfile

# =========================================================================
# A. Metric tables
# =========================================================================
CAT_METRICS = {
    "VALUE":    ["pe_ratio", "ev_ebitda", "ev_sales", "target_price_upside"],
    "MOMENTUM": ["return_12m_ex_1m", "return_3m", "pct_52w_high",
                 "eps_surprise", "revenue_surprise", "eps_revision", "revenue_revision"],
    "QUALITY":  ["roic_ttm", "roic_3yr", "gross_profitability", "accruals",
                 "fcf_to_assets", "ebitda_margin"],
    "RISK":     ["beta", "volatility", "max_drawdown", "financial_leverage"],
}

METRIC_COLS = [m for cat in CATEGORIES for m in CAT_METRICS[cat]]

METRIC_CATEGORY = {m: cat for cat, ms in CAT_METRICS.items() for m in ms}

# True = higher is better, False = lower is better
METRIC_DIR = {
    "pe_ratio": False, "ev_ebitda": False, "ev_sales": False,
    "target_price_upside": True,
    "return_12m_ex_1m": True, "return_3m": True, "pct_52w_high": True,
    "eps_surprise": True, "revenue_surprise": True,
    "eps_revision": True, "revenue_revision": True,
    "roic_ttm": True, "roic_3yr": True, "gross_profitability": True,
    "accruals": False,                                 # lower accruals = higher earnings quality
    "fcf_to_assets": True, "ebitda_margin": True,
    "beta": False, "volatility": False,
    "max_drawdown": False,                             # positive decline magnitude
    "financial_leverage": False,
}

# Ranked against the assigned benchmark's constituents.
BENCHMARK_RELATIVE_METRICS = [
    "pe_ratio", "ev_ebitda", "ev_sales",
    "return_3m", "return_12m_ex_1m", "pct_52w_high",
    "beta", "volatility", "max_drawdown",
]

# Always ranked against the whole universe.
UNIVERSE_METRICS = [m for m in METRIC_COLS if m not in BENCHMARK_RELATIVE_METRICS]

# How the single-benchmark fallback compares stock vs. benchmark instrument.
# "ratio" needs both values > 0; "difference" is used for return-like
# metrics that can legitimately be negative.
RELATIVE_MODE = {
    "pe_ratio": "ratio", "ev_ebitda": "ratio", "ev_sales": "ratio",
    "return_3m": "difference", "return_12m_ex_1m": "difference",
    "pct_52w_high": "difference",
    "beta": "ratio", "volatility": "ratio", "max_drawdown": "ratio",
}

# Display labels used by weight-profile rows -> metric keys.
METRIC_LABELS = {
    "P/E": "pe_ratio",
    "EV/EBITDA": "ev_ebitda",
    "EV/Sales": "ev_sales",
    "TGT PRICE": "target_price_upside",
    "12M Return ex 1M": "return_12m_ex_1m",
    "3M Return": "return_3m",
    "52-Week High %": "pct_52w_high",
    "EPS Surprise": "eps_surprise",
    "Rev Surprise": "revenue_surprise",
    "NTM EPS Change": "eps_revision",
    "NTM Rev Change": "revenue_revision",
    "ROIC TTM": "roic_ttm",
    "ROIC 3-Yr": "roic_3yr",
    "Gross Profitability": "gross_profitability",
    "Accruals": "accruals",
    "FCF": "fcf_to_assets",
    "EBITDA Margin": "ebitda_margin",
    "Beta 3-Yr": "beta",
    "30-Day Volatility": "volatility",
    "60-Day Volatility": "volatility",
    "Max Drawdown": "max_drawdown",
    "Financial Leverage": "financial_leverage",
}

# Score paths reported per metric in diagnostics.
PATH_CONSTITUENT = "constituent"
PATH_BENCHMARK_RATIO = "benchmark_ratio"
PATH_UNIVERSE = "universe"
PATH_UNAVAILABLE = "unavailable"

DEFAULT_MIN_CONSTITUENTS = 10


def resolve_metric_name(name: str) -> Optional[str]:
    """Map a display label or snake_case key to a metric key (None if unknown)."""
    if name in METRIC_DIR:
        return name
    key = METRIC_LABELS.get(name)
    if key is not None:
        return key
    folded = {k.lower(): v for k, v in METRIC_LABELS.items()}
    return folded.get(str(name).strip().lower())


def _is_missing(v) -> bool:
    return v is None or (isinstance(v, float) and np.isnan(v))


# =========================================================================
# B. Percentile ranker
# =========================================================================
def percentile_rank(value: Optional[float], population: Iterable,
                    invert: bool = False) -> Optional[float]:
    """Rank ``value`` against ``population`` on a 0-100 scale.

    score = (#worse + 0.5 * #equal) / n * 100, where "worse" means smaller
    for higher-is-better metrics and larger when ``invert`` is True
    (lower-is-better). None / NaN population entries are ignored; the
    result is None if ``value`` is None or nothing is left to rank against.
    """
    if _is_missing(value):
        return None
    vals = pd.Series(list(population), dtype="float64").dropna().to_numpy()
    if vals.size == 0:
        return None
    v = float(value)
    if invert:
        vals, v = -vals, -v
    # kind="mean" averages the strict and weak percentiles, which is
    # exactly the half-count tie rule.
    return float(percentileofscore(vals, v, kind="mean"))


class ReferencePopulation:
    """Metric distributions for one reference group (universe or benchmark).

    Built once per run from a metrics frame (build_metrics_frame output)
    and only read afterwards, so it can be shared across worker threads.
    """

    def __init__(self, name: str, frame: pd.DataFrame):
        self.name = name
        self.frame = frame
        self._values = {
            col: frame[col].dropna().to_numpy(dtype=float)
            for col in METRIC_COLS if col in frame.columns
        }

    def __len__(self) -> int:
        return len(self.frame)

    @property
    def tickers(self) -> list:
        return list(self.frame.index)

    def values(self, metric: str) -> np.ndarray:
        return self._values.get(metric, np.empty(0))

    def usable_count(self, metric: str) -> int:
        return int(self.values(metric).size)

    def rank(self, metric: str, value: Optional[float]) -> Optional[float]:
        return percentile_rank(value, self.values(metric), invert=not METRIC_DIR[metric])


# =========================================================================
# C. Benchmark-relative scoring
# =========================================================================
def benchmark_relative_score(stock_value: Optional[float],
                             benchmark_value: Optional[float],
                             higher_is_better: bool = True,
                             mode: str = "ratio") -> Optional[float]:
    """Score a stock against a single benchmark instrument (0-100, parity = 50).

    ratio mode (both values must be > 0), r = stock / benchmark:
        higher-is-better: r >= 1 -> 50 + (r - 1) * 100, r < 1 -> 50 * r
        lower-is-better:  r <= 1 -> 50 + (1 - r) * 100, r > 1 -> 50 / r
    difference mode, d = stock - benchmark (sign flipped when lower is better):
        50 + d * 100
    Clamped to [0, 100].
    """
    if _is_missing(stock_value) or _is_missing(benchmark_value):
        return None
    if mode == "difference":
        d = stock_value - benchmark_value
        if not higher_is_better:
            d = -d
        score = 50.0 + d * 100.0
    elif mode == "ratio":
        if stock_value <= 0 or benchmark_value <= 0:
            return None
        r = stock_value / benchmark_value
        if higher_is_better:
            score = 50.0 + (r - 1.0) * 100.0 if r >= 1 else 50.0 * r
        else:
            score = 50.0 + (1.0 - r) * 100.0 if r <= 1 else 50.0 / r
    else:
        raise ValueError(f"Unknown relative mode '{mode}'")
    return max(0.0, min(100.0, score))


def constituent_percentile_scores(metrics: IndividualMetrics,
                                  population: ReferencePopulation,
                                  metric_keys: Iterable[str] = BENCHMARK_RELATIVE_METRICS) -> dict:
    """Percentile-rank each benchmark-relative metric within the constituents."""
    return {m: population.rank(m, getattr(metrics, m)) for m in metric_keys}


def benchmark_ratio_scores(metrics: IndividualMetrics,
                           benchmark_metrics: Optional[IndividualMetrics],
                           metric_keys: Iterable[str] = BENCHMARK_RELATIVE_METRICS) -> dict:
    """Score each benchmark-relative metric against the benchmark instrument."""
    out = {}
    for m in metric_keys:
        bench_v = getattr(benchmark_metrics, m) if benchmark_metrics is not None else None
        out[m] = benchmark_relative_score(getattr(metrics, m), bench_v,
                                          METRIC_DIR[m], RELATIVE_MODE[m])
    return out


def score_benchmark_relative(metrics: IndividualMetrics,
                             population: Optional[ReferencePopulation],
                             benchmark_metrics: Optional[IndividualMetrics],
                             min_constituents: int = DEFAULT_MIN_CONSTITUENTS,
                             assigned: bool = True,
                             unassigned_population: Optional[ReferencePopulation] = None):
    """Apply the constituent -> single-benchmark -> None fallback per metric.

    Returns (scores, paths) dicts keyed by metric. A metric uses the
    constituent population when it has at least ``min_constituents``
    non-null values for that metric; otherwise it is scored against the
    benchmark instrument; if the instrument has no value either, the
    score is None. Securities without an assignment are either ranked
    against ``unassigned_population`` (when given) or left None.
    """
    scores, paths = {}, {}
    for m in BENCHMARK_RELATIVE_METRICS:
        value = getattr(metrics, m)
        if not assigned:
            if unassigned_population is not None:
                scores[m] = unassigned_population.rank(m, value)
                paths[m] = PATH_UNIVERSE
            else:
                scores[m] = None
                paths[m] = PATH_UNAVAILABLE
            continue
        if population is not None and population.usable_count(m) >= min_constituents:
            scores[m] = population.rank(m, value)
            paths[m] = PATH_CONSTITUENT
            continue
        bench_v = getattr(benchmark_metrics, m) if benchmark_metrics is not None else None
        if _is_missing(bench_v):
            scores[m] = None
            paths[m] = PATH_UNAVAILABLE
            continue
        scores[m] = benchmark_relative_score(value, bench_v, METRIC_DIR[m], RELATIVE_MODE[m])
        paths[m] = PATH_BENCHMARK_RATIO
    return scores, paths


def universe_percentile_scores(metrics: IndividualMetrics,
                               universe: ReferencePopulation,
                               metric_keys: Iterable[str] = UNIVERSE_METRICS) -> dict:
    """Percentile-rank the stock-specific metrics against the whole universe."""
    return {m: universe.rank(m, getattr(metrics, m)) for m in metric_keys}


# =========================================================================
# D. Composite scores
# =========================================================================
def weighted_average(scores: list, weights: list) -> Optional[float]:
    """Weighted mean over the non-null scores only.

    Weights of null scores leave both numerator and denominator; the
    result is None when nothing (or only zero weight) remains.
    Summation runs in list order so results are bit-reproducible.
    """
    if len(scores) != len(weights):
        raise ValueError("scores and weights must have the same length")
    weighted_sum = 0.0
    weight_sum = 0.0
    for s, w in zip(scores, weights):
        if _is_missing(s):
            continue
        weighted_sum += s * w
        weight_sum += w
    if weight_sum <= 0:
        return None
    return max(0.0, min(100.0, weighted_sum / weight_sum))


def compute_composite_scores(per_metric_scores: dict,
                             profile: ScoreWeightProfile) -> dict:
    """Category composites {value_score, momentum_score, quality_score, risk_score}."""
    out = {}
    for cat in CATEGORIES:
        metrics = CAT_METRICS[cat]
        out[f"{cat.lower()}_score"] = weighted_average(
            [per_metric_scores.get(m) for m in metrics],
            [profile.metric_weight(cat, m) for m in metrics],
        )
    return out


def compute_total_score(composites: dict, category_weights: dict) -> Optional[float]:
    """Weighted average of the four category composites (same null rule)."""
    return weighted_average(
        [composites.get(f"{cat.lower()}_score") for cat in CATEGORIES],
        [float(category_weights.get(cat, 0.0)) for cat in CATEGORIES],
    )


def compute_factor_contributions(composites: dict, category_weights: dict) -> dict:
    """Points each category adds to the total score.

    contrib_C = composite_C * w_C / sum of weights of non-null composites,
    so the contributions sum to the total score.
    """
    present = {cat: composites.get(f"{cat.lower()}_score") for cat in CATEGORIES}
    weight_sum = sum(float(category_weights.get(cat, 0.0))
                     for cat, v in present.items() if not _is_missing(v))
    out = {}
    for cat, v in present.items():
        w = float(category_weights.get(cat, 0.0))
        out[f"{cat.lower()}_contrib"] = (v * w / weight_sum
                                         if not _is_missing(v) and weight_sum > 0 else 0.0)
    return out
