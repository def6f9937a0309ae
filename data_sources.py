#!/usr/bin/env python3
"""
Data sources for the Security Scoring Engine.

The scoring core never performs I/O itself; it asks four collaborators
for already-resolved data:

    fundamentals.get_many(tickers) -> {ticker: RawFundamentalRecord}
    prices.get_many(tickers)       -> {ticker: PriceHistorySnapshot}
    memberships.constituents(bm)   -> [ticker, ...]
    profiles.get(name)             -> ScoreWeightProfile

Missing tickers are simply omitted from the returned dicts; a source
never raises for an individual ticker. Only profile lookups raise
(ConfigurationError), since an unknown profile rejects the whole run.

Concrete adapters here:
  - in-memory sources (tests, notebooks)
  - CSV snapshot loaders (fundamentals / benchmarks / constituents / prices)
  - YAML weight profiles (nested form or flat rows)
  - yfinance price history with retry + backoff
"""

import time
import warnings
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Iterable, Optional

import numpy as np
import pandas as pd
import yaml
import yfinance as yf

from factor_engine import METRIC_CATEGORY, resolve_metric_name
from schemas import (
    BENCHMARK_COLUMNS,
    CATEGORIES,
    NA_SENTINELS,
    BenchmarkAssignment,
    CategoryWeights,
    ConfigurationError,
    PriceHistorySnapshot,
    RawFundamentalRecord,
    ScoreWeightProfile,
    normalize_ticker,
)

# =========================================================================
# A. Spreadsheet column map (ingestion boundary)
# =========================================================================
# Snapshot headers -> RawFundamentalRecord fields. Field names themselves
# are accepted too, so a pre-normalized CSV loads without a map.
FUNDAMENTAL_COLUMN_MAP = {
    "Ticker": "ticker",
    "PRICE": "price",
    "Consensus Price Target": "target_price",
    "52 week high": "week52_high",
    "EPS EST NTM": "eps_ntm",
    "EPS EST NTM - 30 days ago": "eps_ntm_30d_ago",
    "EPS EST NTM - 90 days ago": "eps_ntm_90d_ago",
    "Sales EST NTM": "sales_ntm",
    "SALES EST NTM - 30 days ago": "sales_ntm_30d_ago",
    "SALES EST NTM - 90 days ago": "sales_ntm_90d_ago",
    "EPS surprise last qtr": "eps_surprise",
    "SALES surprise last qtr": "sales_surprise",
    "Sales LTM": "sales_ltm",
    "EBITDA LTM": "ebitda_ltm",
    "Gross Profit LTM": "gross_profit_ltm",
    "Total assets": "total_assets",
    "FCF": "fcf",
    "acrcrurals %": "accruals",
    "ND": "net_debt",
    "ROIC 1 YR": "roic_ttm",
    "ROIC  3YR": "roic_3yr",
    "P/E NTM": "pe_ntm",
    "EV/EBITDA - NTM": "ev_ebitda_ntm",
    "EV/Sales - NTM": "ev_sales_ntm",
    "3 yr beta": "beta_3yr",
    "2 month vol": "volatility",
}

PRICE_COLUMNS = ["current_price", "price_30d_ago", "price_90d_ago",
                 "price_365d_ago", "max_drawdown"]


def _field_for_header(header: str) -> Optional[str]:
    if header in FUNDAMENTAL_COLUMN_MAP:
        return FUNDAMENTAL_COLUMN_MAP[header]
    if header in RawFundamentalRecord.model_fields:
        return header
    # Case-insensitive match as a last resort ("TICKER", "Price", ...)
    lowered = header.strip().lower()
    for k, v in FUNDAMENTAL_COLUMN_MAP.items():
        if k.lower() == lowered:
            return v
    return lowered if lowered in RawFundamentalRecord.model_fields else None


def _read_csv(path) -> pd.DataFrame:
    """Read a snapshot CSV as strings; sentinel parsing happens in the schemas."""
    return pd.read_csv(path, dtype=str, keep_default_na=False)


def fundamentals_from_rows(rows: Iterable[dict]) -> dict:
    """Build {ticker: RawFundamentalRecord} from header-keyed rows.

    Unknown headers are ignored, rows without a usable ticker are dropped
    and the first row wins for duplicate tickers.
    """
    out = {}
    for row in rows:
        data = {}
        for header, value in row.items():
            field = _field_for_header(str(header))
            if field is not None:
                data[field] = value
        ticker = normalize_ticker(data.get("ticker"))
        if ticker is None or ticker in out:
            continue
        data["ticker"] = ticker
        out[ticker] = RawFundamentalRecord(**data)
    return out


def load_fundamentals_csv(path) -> dict:
    df = _read_csv(path)
    return fundamentals_from_rows(df.to_dict(orient="records"))


def load_benchmark_assignments_csv(path) -> dict:
    """Ticker + BENCHMARK1/2/3/BENCHMARK_CUSTOM columns -> {ticker: BenchmarkAssignment}."""
    df = _read_csv(path)
    cols = {c.strip().upper(): c for c in df.columns}
    ticker_col = cols.get("TICKER")
    if ticker_col is None:
        raise ValueError(f"{path}: benchmark file has no Ticker column")
    out = {}
    for row in df.to_dict(orient="records"):
        ticker = normalize_ticker(row.get(ticker_col))
        if ticker is None or ticker in out:
            continue
        data = {"ticker": ticker}
        for bc in BENCHMARK_COLUMNS:
            if bc in cols:
                data[bc.lower()] = row.get(cols[bc])
        out[ticker] = BenchmarkAssignment(**data)
    return out


def load_constituents_csv(path) -> dict:
    """Benchmark membership -> {benchmark: [tickers]}.

    Two layouts are understood:
      long  - columns ``benchmark, ticker`` (one row per membership)
      wide  - a ``Ticker`` column plus one column per benchmark ticker;
              a blank / '-' / '#N/A' / '0' cell means "not a member".
    """
    df = _read_csv(path)
    lower = {c.strip().lower(): c for c in df.columns}
    members: dict = {}
    if "benchmark" in lower and "ticker" in lower:
        for row in df.to_dict(orient="records"):
            bm = normalize_ticker(row.get(lower["benchmark"]))
            t = normalize_ticker(row.get(lower["ticker"]))
            if bm and t and t not in members.setdefault(bm, []):
                members[bm].append(t)
        return members

    ticker_col = lower.get("ticker")
    if ticker_col is None:
        raise ValueError(f"{path}: constituents file has no Ticker column")
    for col in df.columns:
        if col == ticker_col:
            continue
        bm = normalize_ticker(col)
        if bm is None:
            continue
        flags = df[col].astype(str).str.strip()
        is_member = ~flags.isin(list(NA_SENTINELS | {"0", "FALSE", "False", "false"}))
        tickers = [normalize_ticker(t) for t in df.loc[is_member, ticker_col]]
        members[bm] = list(dict.fromkeys(t for t in tickers if t))
    return members


def load_prices_csv(path) -> dict:
    """ticker + PRICE_COLUMNS -> {ticker: PriceHistorySnapshot}."""
    df = _read_csv(path)
    lower = {c.strip().lower(): c for c in df.columns}
    if "ticker" not in lower:
        raise ValueError(f"{path}: price file has no ticker column")
    out = {}
    for row in df.to_dict(orient="records"):
        ticker = normalize_ticker(row.get(lower["ticker"]))
        if ticker is None or ticker in out:
            continue
        data = {c: row.get(lower[c]) for c in PRICE_COLUMNS if c in lower}
        out[ticker] = PriceHistorySnapshot(ticker=ticker, **data)
    return out


# =========================================================================
# B. In-memory sources
# =========================================================================
def _by_ticker(records) -> dict:
    if isinstance(records, dict):
        items = records.items()
    else:
        items = ((r.ticker, r) for r in records)
    out = {}
    for k, v in items:
        t = normalize_ticker(k)
        if t is not None and v is not None:
            out.setdefault(t, v)
    return out


class InMemoryFundamentalSource:
    def __init__(self, records=()):
        self._records = _by_ticker(records)

    def tickers(self) -> list:
        return sorted(self._records)

    def get_many(self, tickers: Iterable[str]) -> dict:
        out = {}
        for t in tickers:
            key = normalize_ticker(t)
            if key in self._records:
                out[key] = self._records[key]
        return out


class InMemoryPriceHistorySource(InMemoryFundamentalSource):
    """Same lookup contract as the fundamental source, for PriceHistorySnapshot."""


class InMemoryMembershipSource:
    def __init__(self, members: Optional[dict] = None):
        self._members = {}
        for bm, tickers in (members or {}).items():
            key = normalize_ticker(bm)
            if key is None:
                continue
            canon = (normalize_ticker(t) for t in tickers)
            self._members[key] = list(dict.fromkeys(t for t in canon if t))

    def benchmarks(self) -> list:
        return sorted(self._members)

    def constituents(self, benchmark: str) -> list:
        """Member tickers of ``benchmark``; [] when unknown."""
        return list(self._members.get(normalize_ticker(benchmark), []))


# =========================================================================
# C. Weight profiles
# =========================================================================
def _resolve_metric(category: str, name: str) -> str:
    key = resolve_metric_name(name)
    if key is None:
        raise ConfigurationError(f"Unknown metric '{name}' in category {category}")
    if METRIC_CATEGORY[key] != category:
        raise ConfigurationError(
            f"Metric '{name}' belongs to {METRIC_CATEGORY[key]}, not {category}")
    return key


def _resolve_category(name: str) -> str:
    cat = str(name or "").strip().upper()
    if cat not in CATEGORIES:
        raise ConfigurationError(f"Unknown category '{name}' (expected {list(CATEGORIES)})")
    return cat


def profile_from_mapping(name: str, data: dict) -> ScoreWeightProfile:
    """Nested form: {CATEGORY: {weight: w, metrics: {metric: w, ...}}}."""
    categories = {}
    for cat_name, body in (data or {}).items():
        cat = _resolve_category(cat_name)
        body = body or {}
        metric_weights = {}
        for metric, w in (body.get("metrics") or {}).items():
            metric_weights[_resolve_metric(cat, metric)] = float(w)
        categories[cat] = CategoryWeights(
            category_weight=float(body.get("weight", 0.0) or 0.0),
            metric_weights=metric_weights,
        )
    return ScoreWeightProfile(name=str(name).strip().upper(), categories=categories)


def profiles_from_rows(rows: Iterable[dict]) -> dict:
    """Flat rows -> {profile_name: ScoreWeightProfile}.

    Each row has profile_name, category, metric_name, metric_weight and
    category_weight. A row whose metric_name is empty carries only the
    category weight; any row may restate it.
    """
    nested: dict = {}
    for row in rows:
        pname = str(row.get("profile_name") or "").strip().upper()
        if not pname:
            continue
        cat = _resolve_category(row.get("category"))
        entry = nested.setdefault(pname, {}).setdefault(cat, {"weight": 0.0, "metrics": {}})
        cw = row.get("category_weight")
        if cw is not None and not (isinstance(cw, float) and np.isnan(cw)):
            entry["weight"] = float(cw)
        metric = row.get("metric_name")
        if metric is None or (isinstance(metric, float) and np.isnan(metric)) \
                or not str(metric).strip():
            continue
        mw = row.get("metric_weight")
        entry["metrics"][_resolve_metric(cat, str(metric).strip())] = float(mw or 0.0)
    return {name: profile_from_mapping(name, body) for name, body in nested.items()}


class InMemoryWeightProfileSource:
    def __init__(self, profiles=()):
        if isinstance(profiles, dict):
            profiles = profiles.values()
        self._profiles = {p.name.strip().upper(): p for p in profiles}

    def names(self) -> list:
        return sorted(self._profiles)

    def get(self, name: str) -> ScoreWeightProfile:
        key = str(name or "").strip().upper()
        if key not in self._profiles:
            raise ConfigurationError(
                f"Weight profile '{name}' not found (available: {', '.join(self.names()) or 'none'})")
        return self._profiles[key]


class YamlWeightProfileSource(InMemoryWeightProfileSource):
    """weight_profiles.yaml with a ``profiles:`` mapping and/or ``rows:`` list."""

    def __init__(self, path):
        self.path = Path(path)
        with open(self.path) as f:
            raw = yaml.safe_load(f) or {}
        if not isinstance(raw, dict):
            raise ConfigurationError(f"{self.path}: expected a mapping at top level")
        profiles = [profile_from_mapping(n, body)
                    for n, body in (raw.get("profiles") or {}).items()]
        from_rows = profiles_from_rows(raw.get("rows") or [])
        names = {p.name for p in profiles}
        profiles.extend(p for n, p in from_rows.items() if n not in names)
        super().__init__(profiles)


# =========================================================================
# D. Price history (yfinance)
# =========================================================================
_NON_RETRYABLE_PATTERNS = ["404", "no data", "not found", "delisted"]

LOOKBACK_DAYS = (30, 90, 365)
# Session counts standing in for the calendar lookbacks under the
# trading-day convention.
TRADING_SESSIONS = {30: 21, 90: 63, 365: 252}


def _naive_index(closes: pd.Series) -> pd.Series:
    idx = pd.DatetimeIndex(closes.index)
    if idx.tz is not None:
        idx = idx.tz_localize(None)
    s = pd.Series(closes.to_numpy(dtype=float), index=idx).sort_index()
    return s[~s.index.duplicated(keep="last")]


def max_drawdown(closes: pd.Series, window: int = 252) -> Optional[float]:
    """Largest peak-to-trough decline over the last ``window`` closes (>= 0)."""
    tail = closes.dropna().iloc[-window:]
    if len(tail) < 2:
        return None
    running_peak = tail.cummax()
    dd = (tail / running_peak - 1.0).min()
    return float(abs(dd))


def snapshot_from_closes(ticker: str, closes: pd.Series,
                         as_of=None,
                         convention: str = "calendar",
                         drawdown_window: int = 252) -> PriceHistorySnapshot:
    """Build a PriceHistorySnapshot from a daily close series.

    calendar: the session closest to ``as_of - N days``; None when the
              history starts after that date.
    trading:  the close TRADING_SESSIONS[N] sessions before the last one.
    """
    if closes is None or len(closes) == 0:
        return PriceHistorySnapshot(ticker=ticker)
    closes = _naive_index(closes).dropna()
    closes = closes[closes > 0]
    if closes.empty:
        return PriceHistorySnapshot(ticker=ticker)

    as_of = pd.Timestamp(as_of) if as_of is not None else closes.index[-1]
    if as_of.tzinfo is not None:
        as_of = as_of.tz_localize(None)
    closes = closes[closes.index <= as_of]
    if closes.empty:
        return PriceHistorySnapshot(ticker=ticker)

    lagged = {}
    for days in LOOKBACK_DAYS:
        if convention == "trading":
            n = TRADING_SESSIONS[days]
            lagged[days] = float(closes.iloc[-1 - n]) if len(closes) > n else None
        elif convention == "calendar":
            target = as_of - pd.Timedelta(days=days)
            if target < closes.index[0]:
                lagged[days] = None
            else:
                pos = closes.index.get_indexer([target], method="nearest")[0]
                lagged[days] = float(closes.iloc[pos])
        else:
            raise ValueError(f"Unknown lookback convention '{convention}'")

    return PriceHistorySnapshot(
        ticker=ticker,
        current_price=float(closes.iloc[-1]),
        price_30d_ago=lagged[30],
        price_90d_ago=lagged[90],
        price_365d_ago=lagged[365],
        max_drawdown=max_drawdown(closes, drawdown_window),
    )


def fetch_closes(ticker: str, max_retries: int = 3, period: str = "2y") -> Optional[pd.Series]:
    """Daily closes for one ticker via yfinance, or None.

    Implements exponential backoff retry (1s / 2s / 4s). Non-retryable
    errors (404, delisted, no data) fail immediately.
    """
    last_err = None
    for attempt in range(max_retries):
        try:
            hist = yf.Ticker(ticker).history(period=period, auto_adjust=False)
            if hist is None or hist.empty or "Close" not in hist.columns:
                last_err = "no data returned"
                break
            return hist["Close"]
        except Exception as exc:
            last_err = str(exc)
            if any(p in last_err.lower() for p in _NON_RETRYABLE_PATTERNS):
                break
        if attempt < max_retries - 1:
            time.sleep(2 ** attempt)
    warnings.warn(f"{ticker}: price history unavailable after {max_retries} attempt(s): {last_err}")
    return None


class YFinancePriceHistorySource:
    """PriceHistorySource backed by yfinance daily history.

    Tickers whose history cannot be fetched are omitted from get_many().
    """

    def __init__(self, lookback_convention: str = "calendar",
                 drawdown_window: int = 252, max_retries: int = 3,
                 batch_size: int = 10, max_workers: int = 3,
                 as_of=None, period: str = "2y"):
        self.lookback_convention = lookback_convention
        self.drawdown_window = drawdown_window
        self.max_retries = max_retries
        self.batch_size = batch_size
        self.max_workers = max_workers
        self.as_of = as_of
        self.period = period

    @classmethod
    def from_config(cls, cfg) -> "YFinancePriceHistorySource":
        ph = cfg.price_history
        return cls(lookback_convention=ph.lookback_convention,
                   drawdown_window=ph.drawdown_window,
                   max_retries=ph.max_retries,
                   batch_size=ph.batch_size,
                   max_workers=ph.max_workers)

    def get(self, ticker: str) -> Optional[PriceHistorySnapshot]:
        closes = fetch_closes(ticker, max_retries=self.max_retries, period=self.period)
        if closes is None:
            return None
        snap = snapshot_from_closes(ticker, closes, as_of=self.as_of,
                                    convention=self.lookback_convention,
                                    drawdown_window=self.drawdown_window)
        return snap if snap.current_price is not None else None

    def get_many(self, tickers: Iterable[str]) -> dict:
        tickers = list(dict.fromkeys(t for t in (normalize_ticker(x) for x in tickers) if t))
        out = {}
        n_batches = (len(tickers) + self.batch_size - 1) // self.batch_size
        for bi in range(n_batches):
            batch = tickers[bi * self.batch_size:(bi + 1) * self.batch_size]
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                futs = {pool.submit(self.get, t): t for t in batch}
                for fut in as_completed(futs):
                    t = futs[fut]
                    try:
                        snap = fut.result()
                    except Exception as e:
                        warnings.warn(f"{t}: price snapshot failed: {type(e).__name__}: {e}")
                        continue
                    if snap is not None:
                        out[t] = snap
        return out
