#!/usr/bin/env python3
"""
Security Scoring Engine: Master Entry Point
==========================================
Scores a snapshot directory against a weight profile and benchmark column:

    python run_scoring.py                          # BASE / BENCHMARK1, all securities
    python run_scoring.py --profile CAUTIOUS --benchmark BENCHMARK2
    python run_scoring.py --page 2 --page-size 50
    python run_scoring.py --sort ticker --ascending --no-excel

Snapshot directory (``--data-dir``, default from config.yaml):
    fundamentals.csv   spreadsheet export (see data_sources.FUNDAMENTAL_COLUMN_MAP)
    benchmarks.csv     Ticker, BENCHMARK1, BENCHMARK2, BENCHMARK3, BENCHMARK_CUSTOM
    constituents.csv   benchmark membership (long or wide layout)
    prices.csv         optional; without it prices come from yfinance
"""

import argparse
import sys
import time
from pathlib import Path

import numpy as np
import yaml
from openpyxl import Workbook
from pydantic import ValidationError

from data_sources import (
    InMemoryFundamentalSource,
    InMemoryMembershipSource,
    InMemoryPriceHistorySource,
    YamlWeightProfileSource,
    YFinancePriceHistorySource,
    load_benchmark_assignments_csv,
    load_constituents_csv,
    load_fundamentals_csv,
    load_prices_csv,
)
from factor_engine import METRIC_COLS
from run_context import RunContext
from schemas import ConfigurationError, RunConfig
from scoring_orchestrator import SORT_FIELDS, Selection, ScoringResult, run_scoring_with_config

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------
ROOT = Path(__file__).resolve().parent


# ---------------------------------------------------------------------------
# CLI argument parsing
# ---------------------------------------------------------------------------
def parse_args(argv=None):
    p = argparse.ArgumentParser(
        description="Security Scoring Engine")
    p.add_argument("--config", type=str, default=str(ROOT / "config.yaml"),
                   help="Path to config.yaml")
    p.add_argument("--profile", type=str, default=None,
                   help="Weight profile name (default: scoring.default_profile)")
    p.add_argument("--benchmark", type=str, default=None,
                   help="Benchmark column: BENCHMARK1, BENCHMARK2, BENCHMARK3 "
                        "or BENCHMARK_CUSTOM")
    p.add_argument("--page", type=int, default=None,
                   help="1-based page of the universe (ordered by ticker)")
    p.add_argument("--page-size", type=int, default=50,
                   help="Securities per page when --page is given")
    p.add_argument("--sort", type=str, default="total_score", choices=SORT_FIELDS,
                   help="Sort field for the output")
    p.add_argument("--ascending", action="store_true",
                   help="Sort ascending (null scores stay last)")
    p.add_argument("--data-dir", type=str, default=None,
                   help="Snapshot directory (default: data.data_dir)")
    p.add_argument("--no-excel", action="store_true",
                   help="Skip writing the Excel workbook")
    return p.parse_args(argv)


# ---------------------------------------------------------------------------
# Config loader with error handling
# ---------------------------------------------------------------------------
def load_config_safe(path) -> tuple:
    """Load and validate config.yaml; exit with a clear message on failure."""
    config_path = Path(path)
    if not config_path.exists():
        print(f"\n  ERROR: config.yaml not found at {config_path}")
        sys.exit(1)
    try:
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        if not isinstance(raw, dict):
            raise ValueError("config.yaml is empty or malformed")
        return RunConfig(**raw), raw
    except (yaml.YAMLError, ValueError, ValidationError) as e:
        print(f"\n  ERROR: Failed to parse config.yaml: {e}")
        sys.exit(1)


def _resolve(path_str: str, base: Path) -> Path:
    p = Path(path_str)
    return p if p.is_absolute() else base / p


# ---------------------------------------------------------------------------
# Snapshot loading
# ---------------------------------------------------------------------------
def load_sources(data_dir: Path, cfg: RunConfig, config_dir: Path) -> dict:
    """Wire the collaborator sources for one snapshot directory."""
    fund_path = data_dir / "fundamentals.csv"
    if not fund_path.exists():
        raise FileNotFoundError(f"{fund_path} not found")
    fundamentals = load_fundamentals_csv(fund_path)

    bm_path = data_dir / "benchmarks.csv"
    assignments = load_benchmark_assignments_csv(bm_path) if bm_path.exists() else {}

    cons_path = data_dir / "constituents.csv"
    members = load_constituents_csv(cons_path) if cons_path.exists() else {}

    px_path = data_dir / "prices.csv"
    if px_path.exists():
        prices = InMemoryPriceHistorySource(load_prices_csv(px_path))
        price_origin = "prices.csv"
    else:
        prices = YFinancePriceHistorySource.from_config(cfg)
        price_origin = "yfinance"

    profiles = YamlWeightProfileSource(_resolve(cfg.data.weight_profiles_file, config_dir))

    universe = sorted(assignments) if assignments else sorted(fundamentals)
    return {
        "universe": universe,
        "fundamentals": InMemoryFundamentalSource(fundamentals),
        "prices": prices,
        "memberships": InMemoryMembershipSource(members),
        "profiles": profiles,
        "assignments": assignments,
        "price_origin": price_origin,
    }


# ---------------------------------------------------------------------------
# Excel writer
# ---------------------------------------------------------------------------
SCORE_COLUMNS = [
    ("Ticker", "Ticker"), ("Benchmark", "Benchmark"),
    ("Total", "Total_Score"), ("Value", "Value"), ("Momentum", "Momentum"),
    ("Quality", "Quality"), ("Risk", "Risk"),
    ("value_contrib", "Val_Contrib"), ("momentum_contrib", "Mom_Contrib"),
    ("quality_contrib", "Qual_Contrib"), ("risk_contrib", "Risk_Contrib"),
]


def write_excel(result: ScoringResult, out_path: Path, sheet: str = "Scores") -> str:
    """Write one row per scored security: composites, contributions, metric scores."""
    df = result.to_frame()
    col_map = SCORE_COLUMNS + [(f"{m}_score", f"{m}_pct") for m in METRIC_COLS]

    wb = Workbook()
    ws = wb.active
    ws.title = sheet
    ws.append([h for _, h in col_map])

    for _, row in df.iterrows():
        vals = []
        for src, _ in col_map:
            v = row.get(src)
            if v is None or (isinstance(v, float) and np.isnan(v)):
                vals.append(None)
            elif src.endswith("_contrib"):
                vals.append(round(v, 2))
            elif isinstance(v, float):
                vals.append(round(v, 1))
            else:
                vals.append(v)
        ws.append(vals)

    wb.save(str(out_path))
    return str(out_path)


# ---------------------------------------------------------------------------
# Diagnostics printer
# ---------------------------------------------------------------------------
def print_summary(result: ScoringResult, price_origin: str, excel_path, diag_path,
                  total_time: float):
    meta = result.metadata
    diag = result.diagnostics.summary()

    print()
    print("============================================")
    print("  SECURITY SCORING ENGINE — RUN SUMMARY")
    print("============================================")
    print(f"Profile:                  {meta['profile']}")
    print(f"Benchmark column:         {meta['benchmark_column']}")
    if meta["page"] is not None:
        print(f"Page:                     {meta['page']} / {meta['total_pages']} "
              f"(size {meta['page_size']})")
    print(f"Universe:                 {meta['total_count']} securities")
    print(f"Price history:            {price_origin}")
    print("--------------------------------------------")

    print("SCORING:")
    print(f"  Securities in scope:    {meta['input_count']}")
    print(f"  Scored:                 {meta['scored_count']}")
    print(f"  Skipped (missing data): {meta['skipped_count']}")
    print(f"  Benchmarks built:       {meta['benchmarks_built']}")
    for bm, status in diag["benchmarks"].items():
        print(f"    {bm + ':':<22s} {status}")
    print("  Metric scoring paths:")
    for path, n in diag["paths"].items():
        print(f"    {path + ':':<22s} {n}")
    print("--------------------------------------------")

    print("TOP 10:")
    for r in result.records[:10]:
        total = f"{r.total_score:6.1f}" if r.total_score is not None else "   n/a"
        print(f"  {r.ticker:<8s} {total}   ({r.benchmark or '-'})")
    print("--------------------------------------------")

    print("DIAGNOSTICS:")
    print(f"  Errors:                 {diag['issues']['ERROR']}")
    print(f"  Warnings:               {diag['issues']['WARNING']}")
    print(f"  Info:                   {diag['issues']['INFO']}")
    print(f"  Report:                 {diag_path}")
    print("--------------------------------------------")
    print(f"Excel:                    {excel_path or '(skipped — --no-excel)'}")
    print(f"Total runtime:            {total_time}s")
    print("============================================")


# ---------------------------------------------------------------------------
# MAIN
# ---------------------------------------------------------------------------
def main(argv=None, runs_dir=None) -> int:
    t0 = time.time()
    args = parse_args(argv)

    # ---- 0. Config ----
    cfg, raw_cfg = load_config_safe(args.config)
    config_dir = Path(args.config).resolve().parent

    # ---- 1. Run context ----
    ctx = RunContext(runs_dir=runs_dir)
    print("============================================")
    print(f"  SECURITY SCORING ENGINE  [run_id={ctx.run_id}]")
    print("============================================")
    ctx.save_config(raw_cfg)

    # ---- 2. Sources ----
    data_dir = _resolve(args.data_dir or cfg.data.data_dir, config_dir)
    print(f"Loading snapshot from {data_dir} ...")
    try:
        sources = load_sources(data_dir, cfg, config_dir)
    except (FileNotFoundError, ValueError) as e:
        print(f"\n  ERROR: {e}")
        ctx.log.error(f"Snapshot load failed: {e}", extra={"phase": "load"})
        ctx.close()
        return 1
    price_origin = sources.pop("price_origin")

    # ---- 3. Score ----
    selection = (Selection.page(args.page, args.page_size)
                 if args.page is not None else Selection.all())
    try:
        result = run_scoring_with_config(
            cfg, profile_name=args.profile, benchmark_column=args.benchmark,
            selection=selection, sort_by=args.sort, ascending=args.ascending,
            ctx=ctx, **sources)
    except ConfigurationError as e:
        print(f"\n  ERROR: {e}")
        ctx.log.error(f"Run rejected: {e}", extra={"phase": "init"})
        ctx.close()
        return 2

    # ---- 4. Outputs ----
    excel_path = None
    if not args.no_excel:
        print("\nWriting Excel workbook...")
        try:
            excel_path = write_excel(result, ctx.run_dir / cfg.output.excel_file,
                                     cfg.output.sheet_name)
        except PermissionError:
            print(f"\n  ERROR: Cannot write {cfg.output.excel_file}.")
            print("  Close the file in Excel and re-run.")
            ctx.close()
            return 1
        print(f"  Written: {excel_path}")

    diag_path = ctx.save_result(result, cfg.output.diagnostics_file)["diagnostics"]

    total_time = round(time.time() - t0, 1)
    print_summary(result, price_origin, excel_path, diag_path, total_time)

    ctx.save_metadata(result, {
        "cli_flags": vars(args),
        "config_hash": ctx.config_hash(raw_cfg),
        "price_origin": price_origin,
        "total_time_seconds": total_time,
    })
    print(f"\n  Run artifacts saved to: {ctx.run_dir}")
    ctx.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
