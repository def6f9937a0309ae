#!/usr/bin/env python3
"""
Metric Extractor
================
Turns one security's RawFundamentalRecord + PriceHistorySnapshot into an
IndividualMetrics record (~21 metrics across VALUE / MOMENTUM / QUALITY /
RISK). Pure: no I/O, and missing or non-numeric inputs yield None for the
affected metric rather than an exception or a zero.

Every metric is kept in its natural direction (P/E is just P/E);
whether lower or higher is better lives in factor_engine.METRIC_DIR.
"""

import warnings
from typing import Iterable, Optional

import pandas as pd

from schemas import (
    IndividualMetrics,
    PriceHistorySnapshot,
    RawFundamentalRecord,
    parse_number,
)

__all__ = ["parse_number", "extract_metrics", "build_metrics_frame", "metrics_to_row"]


def _ratio(num: Optional[float], den: Optional[float],
           positive_den: bool = True) -> Optional[float]:
    """num / den, or None when either side is missing or den is invalid."""
    if num is None or den is None:
        return None
    if den == 0 or (positive_den and den < 0):
        return None
    return num / den


def _simple_return(current: Optional[float], past: Optional[float]) -> Optional[float]:
    """(current / past) - 1; both prices must be positive."""
    if current is None or past is None or current <= 0 or past <= 0:
        return None
    return current / past - 1.0


def _revision(now: Optional[float], prior: Optional[float]) -> Optional[float]:
    """(now - prior) / |prior|, None when the prior estimate is missing or zero."""
    if now is None or prior is None or prior == 0:
        return None
    return (now - prior) / abs(prior)


def _positive(v: Optional[float]) -> Optional[float]:
    return v if v is not None and v > 0 else None


def extract_metrics(raw: RawFundamentalRecord,
                    prices: Optional[PriceHistorySnapshot],
                    revision_lookback_days: int = 90) -> IndividualMetrics:
    """Compute IndividualMetrics for one security.

    Parameters
    ----------
    raw : RawFundamentalRecord
        Fundamental snapshot (typed at the ingestion boundary).
    prices : PriceHistorySnapshot or None
        Price-history snapshot; None means the lookup failed and every
        price-derived metric is None.
    revision_lookback_days : int
        Which prior estimate drives EPS / revenue revisions (30 or 90).
    """
    if prices is None:
        prices = PriceHistorySnapshot(ticker=raw.ticker)
    ticker = raw.ticker
    rec = {"ticker": ticker}

    current = _positive(prices.current_price)
    # Consensus upside is universe-ranked and the universe population is
    # built from fundamentals alone, so it uses the snapshot price only.
    snapshot_price = _positive(raw.price)
    # The 52-week high is ranked against populations that carry prices.
    ref_price = snapshot_price or current

    # -- VALUE --
    try:
        rec["pe_ratio"] = _positive(raw.pe_ntm)
        rec["ev_ebitda"] = _positive(raw.ev_ebitda_ntm)
        rec["ev_sales"] = _positive(raw.ev_sales_ntm)
        rec["target_price_upside"] = (
            (raw.target_price - snapshot_price) / snapshot_price
            if raw.target_price is not None and snapshot_price is not None else None
        )
    except (TypeError, ValueError, ZeroDivisionError) as e:
        warnings.warn(f"{ticker}: value metrics failed: {type(e).__name__}: {e}")

    # -- MOMENTUM --
    try:
        # 12-1 momentum: price one month ago relative to twelve months ago.
        rec["return_12m_ex_1m"] = _simple_return(prices.price_30d_ago, prices.price_365d_ago)
        rec["return_3m"] = _simple_return(current, prices.price_90d_ago)
        high = _positive(raw.week52_high)
        rec["pct_52w_high"] = (ref_price / high - 1.0) if (ref_price and high) else None
        rec["eps_surprise"] = raw.eps_surprise
        rec["revenue_surprise"] = raw.sales_surprise
        if revision_lookback_days == 30:
            eps_prior, sales_prior = raw.eps_ntm_30d_ago, raw.sales_ntm_30d_ago
        else:
            eps_prior, sales_prior = raw.eps_ntm_90d_ago, raw.sales_ntm_90d_ago
        rec["eps_revision"] = _revision(raw.eps_ntm, eps_prior)
        rec["revenue_revision"] = _revision(raw.sales_ntm, sales_prior)
    except (TypeError, ValueError, ZeroDivisionError) as e:
        warnings.warn(f"{ticker}: momentum metrics failed: {type(e).__name__}: {e}")

    # -- QUALITY --
    try:
        rec["roic_ttm"] = raw.roic_ttm
        rec["roic_3yr"] = raw.roic_3yr
        rec["gross_profitability"] = _ratio(raw.gross_profit_ltm, raw.total_assets)
        rec["accruals"] = raw.accruals
        rec["fcf_to_assets"] = _ratio(raw.fcf, raw.total_assets)
        rec["ebitda_margin"] = _ratio(raw.ebitda_ltm, raw.sales_ltm)
    except (TypeError, ValueError, ZeroDivisionError) as e:
        warnings.warn(f"{ticker}: quality metrics failed: {type(e).__name__}: {e}")

    # -- RISK --
    try:
        rec["beta"] = raw.beta_3yr
        rec["volatility"] = raw.volatility
        # Stored as a positive decline so that lower is better.
        rec["max_drawdown"] = abs(prices.max_drawdown) if prices.max_drawdown is not None else None
        rec["financial_leverage"] = _ratio(raw.net_debt, raw.ebitda_ltm)
    except (TypeError, ValueError, ZeroDivisionError) as e:
        warnings.warn(f"{ticker}: risk metrics failed: {type(e).__name__}: {e}")

    return IndividualMetrics(**rec)


def metrics_to_row(m: IndividualMetrics) -> dict:
    return m.model_dump()


def build_metrics_frame(metrics: Iterable[IndividualMetrics]) -> pd.DataFrame:
    """Stack IndividualMetrics into a DataFrame indexed by ticker.

    Missing metrics are NaN in the frame; the column set is always the
    full IndividualMetrics field list, even for an empty input.
    """
    cols = [f for f in IndividualMetrics.model_fields if f != "ticker"]
    rows = [metrics_to_row(m) for m in metrics]
    if not rows:
        return pd.DataFrame(columns=cols, index=pd.Index([], name="ticker"), dtype=float)
    df = pd.DataFrame(rows).set_index("ticker")
    df = df[~df.index.duplicated(keep="first")]
    return df[cols].astype(float)
