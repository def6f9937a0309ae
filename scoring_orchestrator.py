#!/usr/bin/env python3
"""
Scoring Orchestrator
====================
One scoring run, start to finish:

  1. Load universe      fundamentals for the whole universe, price history
                        for the selected securities (all, or one page)
  2. Universe population  metrics extracted once for the whole universe
  3. Resolve benchmarks the caller-selected benchmark column per security
  4. Constituent populations  built once per distinct benchmark and kept
                        in a run-scoped BenchmarkPopulationCache
  5. Score              metric -> percentile / benchmark-relative -> composites
  6. Emit and order     sorted ScoreRecords + metadata + diagnostics

Securities missing fundamentals or price history are excluded and
reported in diagnostics / metadata (skipped_count). Only configuration
problems (unknown profile or benchmark column) abort a run.
"""

import logging
import math
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Iterable, Mapping, Optional

import pandas as pd
from pydantic import BaseModel, ConfigDict, Field

from factor_engine import (
    BENCHMARK_RELATIVE_METRICS,
    CAT_METRICS,
    DEFAULT_MIN_CONSTITUENTS,
    METRIC_COLS,
    PATH_BENCHMARK_RATIO,
    PATH_CONSTITUENT,
    PATH_UNAVAILABLE,
    PATH_UNIVERSE,
    ReferencePopulation,
    compute_composite_scores,
    compute_factor_contributions,
    compute_total_score,
    score_benchmark_relative,
    universe_percentile_scores,
)
from metric_extractor import build_metrics_frame, extract_metrics
from schemas import (
    CATEGORIES,
    ConfigurationError,
    IndividualMetrics,
    RawFundamentalRecord,
    ScoreRecord,
    ScoreWeightProfile,
    normalize_ticker,
    validate_benchmark_column,
)

SORT_FIELDS = ("total_score", "value_score", "momentum_score",
               "quality_score", "risk_score", "ticker")

SKIP_NO_FUNDAMENTALS = "no_fundamentals"
SKIP_NO_PRICES = "no_price_history"
SKIP_NO_DATA = "no_fundamentals_or_price_history"


# =========================================================================
# A. Input selection (whole universe or one page)
# =========================================================================
class Selection(BaseModel):
    """Which slice of the universe a run scores.

    Pages are 1-based and taken from the universe ordered by canonical
    ticker, so the same page always holds the same securities.
    """
    page_number: Optional[int] = Field(None, ge=1)
    page_size: Optional[int] = Field(None, ge=1)

    model_config = ConfigDict(frozen=True)

    @classmethod
    def all(cls) -> "Selection":
        return cls()

    @classmethod
    def page(cls, page: int, page_size: int) -> "Selection":
        return cls(page_number=page, page_size=page_size)

    @property
    def is_paged(self) -> bool:
        return self.page_number is not None and self.page_size is not None

    def apply(self, tickers: list) -> list:
        ordered = sorted(tickers)
        if not self.is_paged:
            return ordered
        start = (self.page_number - 1) * self.page_size
        return ordered[start:start + self.page_size]

    def total_pages(self, total_count: int) -> int:
        if not self.is_paged:
            return 1 if total_count else 0
        return math.ceil(total_count / self.page_size)


# =========================================================================
# B. Diagnostics
# =========================================================================
SEVERITY_ORDER = {"ERROR": 0, "WARNING": 1, "INFO": 2}


class ScoringDiagnostics:
    """Observable side-channel of a run: skips, fallbacks and data issues."""

    def __init__(self):
        self.skipped: list = []
        self.benchmarks: dict = {}
        self.paths: dict = {}
        self.issues: list = []

    def add_issue(self, severity: str, issue_type: str, description: str,
                  ticker: Optional[str] = None, benchmark: Optional[str] = None):
        self.issues.append({
            "severity": severity, "issue_type": issue_type,
            "ticker": ticker, "benchmark": benchmark,
            "description": description,
        })

    def add_skipped(self, ticker: str, reason: str):
        self.skipped.append({"ticker": ticker, "reason": reason})
        self.add_issue("WARNING", reason, f"{ticker} excluded from scoring ({reason})",
                       ticker=ticker)

    def sorted_issues(self) -> list:
        return sorted(self.issues, key=lambda i: (SEVERITY_ORDER.get(i["severity"], 9),
                                                  i["ticker"] or "", i["issue_type"]))

    def metric_path(self, ticker: str, metric: str) -> Optional[str]:
        return self.paths.get(ticker, {}).get(metric)

    def path_counts(self) -> dict:
        counts = {p: 0 for p in (PATH_CONSTITUENT, PATH_BENCHMARK_RATIO,
                                 PATH_UNIVERSE, PATH_UNAVAILABLE)}
        for per_metric in self.paths.values():
            for p in per_metric.values():
                counts[p] = counts.get(p, 0) + 1
        return counts

    def severity_counts(self) -> dict:
        counts = {s: 0 for s in SEVERITY_ORDER}
        for i in self.issues:
            counts[i["severity"]] = counts.get(i["severity"], 0) + 1
        return counts

    def summary(self) -> dict:
        return {
            "skipped": len(self.skipped),
            "benchmarks": {bm: a["status"] for bm, a in sorted(self.benchmarks.items())},
            "paths": self.path_counts(),
            "issues": self.severity_counts(),
        }

    def to_frame(self) -> pd.DataFrame:
        """Flatten into one table (benchmark analysis rows first, then issues)."""
        cols = ["Section", "Severity", "Ticker", "Benchmark", "Issue_Type", "Description"]
        rows = []
        for bm, a in sorted(self.benchmarks.items()):
            sev = {"OK": "INFO"}.get(a["status"], a["status"])
            rows.append({
                "Section": "benchmark", "Severity": sev, "Ticker": None,
                "Benchmark": bm, "Issue_Type": f"benchmark_{a['status'].lower()}",
                "Description": a["message"],
            })
        for i in self.sorted_issues():
            rows.append({
                "Section": "issue", "Severity": i["severity"], "Ticker": i["ticker"],
                "Benchmark": i["benchmark"], "Issue_Type": i["issue_type"],
                "Description": i["description"],
            })
        return pd.DataFrame(rows, columns=cols)


def analyze_weight_profile(profile: ScoreWeightProfile,
                           diagnostics: ScoringDiagnostics) -> None:
    """Flag weight settings that make categories or the total always null/inert."""
    cat_w = profile.category_weights()
    if all(w == 0 for w in cat_w.values()):
        diagnostics.add_issue("ERROR", "weights_all_zero",
                              f"Profile {profile.name}: every category weight is 0; "
                              "total score will be null for all securities")
    for cat in CATEGORIES:
        metric_total = sum(profile.metric_weight(cat, m) for m in CAT_METRICS[cat])
        if metric_total == 0:
            sev = "ERROR" if cat_w[cat] > 0 else "WARNING"
            diagnostics.add_issue(sev, "category_no_metric_weights",
                                  f"Profile {profile.name}: {cat} has no metric weights; "
                                  f"its composite will be null")
        elif cat_w[cat] == 0:
            diagnostics.add_issue("WARNING", "category_zero_weight",
                                  f"Profile {profile.name}: {cat} category weight is 0; "
                                  "it is computed but does not contribute to total score")


# =========================================================================
# C. Run-scoped benchmark population cache
# =========================================================================
class BenchmarkPopulationCache:
    """Read-through cache of constituent populations, keyed by benchmark ticker.

    One instance per run. The first request for a benchmark fetches its
    constituent list, extracts metrics for members that have both
    fundamentals and price history, and stores the resulting
    ReferencePopulation; later requests reuse it. Metrics already
    extracted for scored securities are reused via seed().
    """

    def __init__(self, fundamentals, prices, memberships,
                 revision_lookback_days: int = 90):
        self._fundamentals = fundamentals
        self._prices = prices
        self._memberships = memberships
        self._lookback = revision_lookback_days
        self._metrics: dict = {}
        self._unavailable: set = set()
        self._populations: dict = {}
        self._constituents: dict = {}
        self._instruments: dict = {}
        self._lock = threading.Lock()
        self.builds = 0

    def seed(self, metrics: Mapping[str, IndividualMetrics]) -> None:
        """Register metrics extracted elsewhere (fundamentals + prices present)."""
        with self._lock:
            for t, m in metrics.items():
                self._metrics.setdefault(t, m)

    def __contains__(self, benchmark: str) -> bool:
        return normalize_ticker(benchmark) in self._populations

    def __len__(self) -> int:
        return len(self._populations)

    def _ensure_metrics(self, tickers: list) -> None:
        need = [t for t in tickers if t not in self._metrics and t not in self._unavailable]
        if not need:
            return
        fund = self._fundamentals.get_many(need)
        px = self._prices.get_many(need)
        for t in need:
            if t in fund and t in px:
                self._metrics[t] = extract_metrics(fund[t], px[t], self._lookback)
            else:
                self._unavailable.add(t)

    def population(self, benchmark: str) -> ReferencePopulation:
        key = normalize_ticker(benchmark)
        with self._lock:
            if key not in self._populations:
                members = [t for t in (normalize_ticker(x)
                                       for x in self._memberships.constituents(key)) if t]
                members = list(dict.fromkeys(members))
                self._ensure_metrics(members)
                frame = build_metrics_frame(self._metrics[t] for t in members
                                            if t in self._metrics)
                self._constituents[key] = members
                self._populations[key] = ReferencePopulation(key, frame)
                self.builds += 1
            return self._populations[key]

    def constituents(self, benchmark: str) -> list:
        self.population(benchmark)
        return list(self._constituents[normalize_ticker(benchmark)])

    def benchmark_metrics(self, benchmark: str) -> Optional[IndividualMetrics]:
        """Metrics of the benchmark instrument itself (None if it has no data)."""
        key = normalize_ticker(benchmark)
        with self._lock:
            if key not in self._instruments:
                fund = self._fundamentals.get_many([key]).get(key)
                px = self._prices.get_many([key]).get(key)
                if fund is None and px is None:
                    self._instruments[key] = None
                else:
                    raw = fund if fund is not None else RawFundamentalRecord(ticker=key)
                    self._instruments[key] = extract_metrics(raw, px, self._lookback)
            return self._instruments[key]


# =========================================================================
# D. Per-security scoring
# =========================================================================
def score_security(metrics: IndividualMetrics,
                   benchmark: Optional[str],
                   universe: ReferencePopulation,
                   cache: BenchmarkPopulationCache,
                   profile: ScoreWeightProfile,
                   min_constituents: int = DEFAULT_MIN_CONSTITUENTS,
                   unassigned_population: Optional[ReferencePopulation] = None) -> ScoreRecord:
    """Metric scores -> category composites -> total for one security."""
    if benchmark is not None:
        population = cache.population(benchmark)
        bench_metrics = cache.benchmark_metrics(benchmark)
    else:
        population, bench_metrics = None, None

    rel_scores, rel_paths = score_benchmark_relative(
        metrics, population, bench_metrics,
        min_constituents=min_constituents,
        assigned=benchmark is not None,
        unassigned_population=unassigned_population,
    )
    uni_scores = universe_percentile_scores(metrics, universe)

    scores = {m: rel_scores[m] if m in rel_scores else uni_scores[m] for m in METRIC_COLS}
    paths = {m: rel_paths.get(m, PATH_UNIVERSE) for m in METRIC_COLS}

    composites = compute_composite_scores(scores, profile)
    total = compute_total_score(composites, profile.category_weights())
    return ScoreRecord(
        ticker=metrics.ticker, benchmark=benchmark, metrics=metrics,
        scores=scores, score_paths=paths, total_score=total, **composites,
    )


# =========================================================================
# E. Ordering
# =========================================================================
def sort_records(records: Iterable[ScoreRecord], sort_by: str = "total_score",
                 ascending: bool = False) -> list:
    """Order records by a score field or ticker.

    Null scores always sort last whatever the direction; ties break on
    ticker ascending.
    """
    if sort_by not in SORT_FIELDS:
        raise ConfigurationError(f"Unknown sort field '{sort_by}' (expected one of {SORT_FIELDS})")
    records = list(records)
    if sort_by == "ticker":
        return sorted(records, key=lambda r: r.ticker, reverse=not ascending)
    present = [r for r in records if getattr(r, sort_by) is not None]
    missing = [r for r in records if getattr(r, sort_by) is None]
    sign = 1.0 if ascending else -1.0
    present.sort(key=lambda r: (sign * getattr(r, sort_by), r.ticker))
    missing.sort(key=lambda r: r.ticker)
    return present + missing


def records_to_frame(records: Iterable[ScoreRecord],
                     profile: Optional[ScoreWeightProfile] = None) -> pd.DataFrame:
    """Flatten ScoreRecords into one row per security (record order kept)."""
    rows = []
    for r in records:
        row = {
            "Ticker": r.ticker, "Benchmark": r.benchmark,
            "Total": r.total_score, "Value": r.value_score,
            "Momentum": r.momentum_score, "Quality": r.quality_score,
            "Risk": r.risk_score,
        }
        if profile is not None:
            composites = {f"{c.lower()}_score": getattr(r, f"{c.lower()}_score")
                          for c in CATEGORIES}
            row.update(compute_factor_contributions(composites, profile.category_weights()))
        for m in METRIC_COLS:
            row[m] = getattr(r.metrics, m)
        for m in METRIC_COLS:
            row[f"{m}_score"] = r.scores.get(m)
        rows.append(row)
    return pd.DataFrame(rows)


# =========================================================================
# F. Run
# =========================================================================
class ScoringResult:
    """Ordered ScoreRecords plus run metadata and diagnostics."""

    def __init__(self, records: list, metadata: dict, diagnostics: ScoringDiagnostics,
                 profile: ScoreWeightProfile):
        self.records = records
        self.metadata = metadata
        self.diagnostics = diagnostics
        self.profile = profile

    def __len__(self) -> int:
        return len(self.records)

    def get(self, ticker: str) -> Optional[ScoreRecord]:
        key = normalize_ticker(ticker)
        for r in self.records:
            if r.ticker == key:
                return r
        return None

    def to_frame(self) -> pd.DataFrame:
        return records_to_frame(self.records, self.profile)


def _analyze_benchmark(benchmark: str, cache: BenchmarkPopulationCache,
                       assigned: int, min_constituents: int) -> dict:
    """Status of one benchmark population.

    The fallback is decided per metric, so the status follows the
    weakest benchmark-relative metric: usable_count is the smallest
    per-metric count of non-null constituent values.
    """
    members = cache.constituents(benchmark)
    population = cache.population(benchmark)
    per_metric = {m: population.usable_count(m) for m in BENCHMARK_RELATIVE_METRICS}
    usable = min(per_metric.values())
    fallback = [m for m, n in per_metric.items() if n < min_constituents]
    has_instrument = cache.benchmark_metrics(benchmark) is not None
    if not members:
        status = "ERROR"
        message = (f"{benchmark}: no constituents recorded; "
                   + ("scoring against the benchmark instrument" if has_instrument
                      else "benchmark-relative metrics unavailable"))
    elif fallback:
        status = "WARNING"
        message = (f"{benchmark}: {len(fallback)} metric(s) have fewer than "
                   f"{min_constituents} usable constituents (of {len(members)}); "
                   f"benchmark-ratio scoring for {', '.join(fallback)}")
    else:
        status = "OK"
        message = (f"{benchmark}: every metric has at least {usable} of "
                   f"{len(members)} constituents usable")
    return {
        "benchmark": benchmark, "constituent_count": len(members),
        "members_with_data": len(population), "usable_count": usable,
        "fallback_metrics": fallback, "securities_assigned": assigned,
        "instrument_data": has_instrument, "status": status, "message": message,
    }


def run_scoring(universe: Iterable[str], fundamentals, prices, memberships, profiles,
                assignments: Mapping, profile_name: str = "BASE",
                benchmark_column: str = "BENCHMARK1",
                selection: Optional[Selection] = None,
                sort_by: str = "total_score", ascending: bool = False,
                min_constituents: int = DEFAULT_MIN_CONSTITUENTS,
                revision_lookback_days: int = 90,
                unassigned_benchmark: str = "none",
                max_workers: int = 1, ctx=None) -> ScoringResult:
    """Score the selected securities of ``universe``.

    Parameters
    ----------
    universe : iterable of str
        Every ticker in scope; the universe reference population is
        always built from all of them, even when ``selection`` is a page.
    fundamentals, prices, memberships, profiles
        Collaborator sources (see data_sources).
    assignments : mapping
        {ticker: BenchmarkAssignment}.
    profile_name, benchmark_column : str
        Weight profile and benchmark column for this run. Unknown values
        raise ConfigurationError before any data is loaded.
    unassigned_benchmark : {"none", "universe"}
        Treatment of securities with no benchmark in the chosen column.
    ctx : RunContext, optional
        Supplies the run logger; the module logger is used otherwise.
    """
    log = ctx.log if ctx is not None else logging.getLogger("scoring")
    selection = selection or Selection.all()

    # -- 0. Configuration (run-level failures only) --
    column = validate_benchmark_column(benchmark_column)
    profile = profiles.get(profile_name)
    if sort_by not in SORT_FIELDS:
        raise ConfigurationError(f"Unknown sort field '{sort_by}' (expected one of {SORT_FIELDS})")
    if unassigned_benchmark not in ("none", "universe"):
        raise ConfigurationError(f"Unknown unassigned_benchmark policy '{unassigned_benchmark}'")
    diagnostics = ScoringDiagnostics()
    analyze_weight_profile(profile, diagnostics)

    # -- 1. Load universe --
    all_tickers = sorted({t for t in (normalize_ticker(x) for x in universe) if t})
    selected = selection.apply(all_tickers)
    log.info(f"Scoring {len(selected)} of {len(all_tickers)} securities "
             f"(profile={profile.name}, benchmark={column})",
             extra={"phase": "load", "count": len(selected)})
    fund_all = fundamentals.get_many(all_tickers)
    px_sel = prices.get_many(selected)

    # -- 2. Universe reference population --
    # Universe-ranked metrics are all fundamental-derived, so this is
    # built from fundamentals alone and is the same for every page.
    universe_frame = build_metrics_frame(
        extract_metrics(fund_all[t], None, revision_lookback_days)
        for t in all_tickers if t in fund_all)
    universe_pop = ReferencePopulation("UNIVERSE", universe_frame)
    log.info(f"Universe population built ({len(universe_pop)} securities)",
             extra={"phase": "universe", "count": len(universe_pop)})

    # -- 3. Resolve benchmark assignments; drop securities without data --
    to_score = []
    for t in selected:
        has_f, has_p = t in fund_all, t in px_sel
        if not has_f or not has_p:
            reason = (SKIP_NO_DATA if not has_f and not has_p
                      else SKIP_NO_FUNDAMENTALS if not has_f else SKIP_NO_PRICES)
            diagnostics.add_skipped(t, reason)
            log.warning(f"{t}: skipped ({reason})", extra={"ticker": t, "phase": "resolve"})
            continue
        assignment = assignments.get(t)
        bm = assignment.resolve(column) if assignment is not None else None
        if bm is None:
            diagnostics.add_issue("INFO", "no_benchmark",
                                  f"{t} has no {column} assignment", ticker=t)
        to_score.append((t, bm))

    metrics = {t: extract_metrics(fund_all[t], px_sel[t], revision_lookback_days)
               for t, _ in to_score}

    # -- 4. Constituent populations (built before any scoring) --
    cache = BenchmarkPopulationCache(fundamentals, prices, memberships,
                                     revision_lookback_days=revision_lookback_days)
    cache.seed(metrics)
    assigned_counts: dict = {}
    for _, bm in to_score:
        if bm is not None:
            assigned_counts[bm] = assigned_counts.get(bm, 0) + 1
    for bm in sorted(assigned_counts):
        analysis = _analyze_benchmark(bm, cache, assigned_counts[bm], min_constituents)
        diagnostics.benchmarks[bm] = analysis
        level = logging.INFO if analysis["status"] == "OK" else logging.WARNING
        log.log(level, analysis["message"],
                extra={"benchmark": bm, "phase": "benchmark", "count": analysis["usable_count"]})
        if analysis["status"] != "OK":
            diagnostics.add_issue(analysis["status"], "benchmark_population",
                                  analysis["message"], benchmark=bm)

    unassigned_pop = None
    if unassigned_benchmark == "universe" and any(bm is None for _, bm in to_score):
        # Benchmark-relative metrics need prices, so this population
        # uses price history for the whole universe.
        px_all = dict(px_sel)
        px_all.update(prices.get_many([t for t in all_tickers if t not in px_sel]))
        unassigned_pop = ReferencePopulation("UNIVERSE", build_metrics_frame(
            metrics[t] if t in metrics
            else extract_metrics(fund_all[t], px_all[t], revision_lookback_days)
            for t in all_tickers if t in fund_all and t in px_all))

    # -- 5. Score each security --
    def _score(item):
        t, bm = item
        return score_security(metrics[t], bm, universe_pop, cache, profile,
                              min_constituents=min_constituents,
                              unassigned_population=unassigned_pop)

    if max_workers > 1 and len(to_score) > 1:
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            records = list(pool.map(_score, to_score))
    else:
        records = [_score(item) for item in to_score]

    for r in records:
        diagnostics.paths[r.ticker] = dict(r.score_paths)
        if r.total_score is None:
            diagnostics.add_issue("WARNING", "null_total_score",
                                  f"{r.ticker}: no category composite could be computed",
                                  ticker=r.ticker)
    log.info(f"Scored {len(records)} securities, skipped {len(diagnostics.skipped)}",
             extra={"phase": "score", "count": len(records)})

    # -- 6. Emit and order --
    records = sort_records(records, sort_by, ascending)
    metadata = {
        "profile": profile.name,
        "benchmark_column": column,
        "scored_count": len(records),
        "skipped_count": len(diagnostics.skipped),
        "input_count": len(selected),
        "total_count": len(all_tickers),
        "page": selection.page_number,
        "page_size": selection.page_size,
        "total_pages": selection.total_pages(len(all_tickers)),
        "sort_by": sort_by,
        "ascending": ascending,
        "benchmarks_built": cache.builds,
    }
    return ScoringResult(records, metadata, diagnostics, profile)


def run_scoring_with_config(cfg, universe, fundamentals, prices, memberships, profiles,
                            assignments, profile_name: Optional[str] = None,
                            benchmark_column: Optional[str] = None, **kwargs) -> ScoringResult:
    """run_scoring with defaults taken from a validated RunConfig."""
    sc = cfg.scoring
    return run_scoring(
        universe, fundamentals, prices, memberships, profiles, assignments,
        profile_name=profile_name or sc.default_profile,
        benchmark_column=benchmark_column or sc.default_benchmark_column,
        min_constituents=sc.min_constituents,
        revision_lookback_days=sc.revision_lookback_days,
        unassigned_benchmark=sc.unassigned_benchmark,
        max_workers=sc.max_workers,
        **kwargs,
    )
