#!/usr/bin/env python3
"""
Run Context
===========
Per-run bookkeeping for the Security Scoring Engine. Each run gets its
own directory ``runs/<run_id>/`` holding:

  run.log                 JSON-lines log (one object per record)
  config.yaml             the config the run was started with
  diagnostics.csv         ScoringDiagnostics flattened to one table
  universe.json           tickers scored / skipped
  effective_weights.json  the weight profile actually applied
  meta.json               timings, versions, run metadata

Usage:
    ctx = RunContext()
    ctx.save_config(raw_cfg)
    result = run_scoring(..., ctx=ctx)      # logs through ctx.log
    ctx.save_result(result)
    ctx.save_metadata(result, {"cli_flags": ...})
    ctx.close()
"""

import hashlib
import json
import logging
import platform
import subprocess
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path

import pandas as pd
import yaml

ROOT = Path(__file__).resolve().parent
RUNS_DIR = ROOT / "runs"

# Structured fields copied from ``extra={...}`` into each JSON log line.
LOG_FIELDS = ("run_id", "phase", "step", "ticker", "benchmark", "metric", "value", "count")

# Config sections that change scores; everything else is presentation.
HASHED_SECTIONS = ("scoring", "price_history")

TRACKED_PACKAGES = ("numpy", "pandas", "scipy", "pydantic", "pyyaml", "openpyxl", "yfinance")


class _JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
            "level": record.levelname,
            "logger": record.name,
            "func": record.funcName,
            "msg": record.getMessage(),
        }
        for key in LOG_FIELDS:
            val = getattr(record, key, None)
            if val is not None:
                entry[key] = val
        return json.dumps(entry, default=str)


class RunContext:
    """Directory, logger and artifact writer for one scoring run."""

    def __init__(self, run_id: str | None = None, runs_dir: Path | None = None,
                 console: bool = True):
        self.run_id = run_id or datetime.now().strftime("%Y%m%d_%H%M%S_") + uuid.uuid4().hex[:6]
        self.start_time = datetime.now()
        self.run_dir = Path(runs_dir or RUNS_DIR) / self.run_id
        self.run_dir.mkdir(parents=True, exist_ok=True)

        self.log = logging.getLogger(f"scoring.{self.run_id}")
        self.log.setLevel(logging.DEBUG)
        self.log.propagate = False
        self._detach_handlers()

        fh = logging.FileHandler(str(self.run_dir / "run.log"), encoding="utf-8")
        fh.setFormatter(_JSONFormatter())
        self.log.addHandler(fh)

        if console:
            ch = logging.StreamHandler(sys.stdout)
            ch.setLevel(logging.INFO)
            ch.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s",
                                              datefmt="%H:%M:%S"))
            self.log.addHandler(ch)

        self.log.info("Run started", extra={"run_id": self.run_id, "phase": "init"})

    def _detach_handlers(self):
        for h in list(self.log.handlers):
            h.flush()
            h.close()
        self.log.handlers.clear()

    def close(self):
        """Flush and detach handlers; the log file stays on disk."""
        self._detach_handlers()

    def path(self, name: str) -> Path:
        return self.run_dir / name

    # -----------------------------------------------------------------
    # Config
    # -----------------------------------------------------------------
    def save_config(self, cfg: dict) -> Path:
        path = self.path("config.yaml")
        with open(path, "w") as f:
            yaml.safe_dump(cfg, f, default_flow_style=False, sort_keys=False)
        self.log.info("Config snapshot saved", extra={"phase": "init"})
        return path

    @staticmethod
    def config_hash(cfg: dict) -> str:
        """Short deterministic hash of the score-affecting config sections.

        Two runs with equal hashes, the same weight profile and the same
        input snapshot produce identical score records.
        """
        relevant = {k: cfg.get(k, {}) for k in HASHED_SECTIONS}
        raw = json.dumps(relevant, sort_keys=True, default=str)
        return hashlib.sha256(raw.encode()).hexdigest()[:12]

    # -----------------------------------------------------------------
    # Artifacts
    # -----------------------------------------------------------------
    def save_artifact(self, name: str, df: pd.DataFrame) -> Path:
        """Write a table as ``<name>.csv``."""
        path = self.path(f"{name}.csv")
        df.to_csv(str(path), index=False)
        self.log.info(f"Artifact saved: {name} ({len(df)} rows)",
                      extra={"phase": "artifact", "step": name, "count": len(df)})
        return path

    def save_result(self, result, diagnostics_file: str = "diagnostics.csv") -> dict:
        """Write the diagnostics table, universe and effective weights of a run."""
        paths = {"diagnostics": self.save_artifact(Path(diagnostics_file).stem,
                                                   result.diagnostics.to_frame())}

        universe = {
            "scored": sorted(r.ticker for r in result.records),
            "skipped": sorted(s["ticker"] for s in result.diagnostics.skipped),
        }
        universe["scored_count"] = len(universe["scored"])
        universe["skipped_count"] = len(universe["skipped"])
        paths["universe"] = self._write_json("universe.json", universe)

        paths["weights"] = self._write_json("effective_weights.json",
                                            result.profile.model_dump())
        return paths

    def save_metadata(self, result=None, extra: dict | None = None) -> Path:
        """Write meta.json; call once at the end of the run."""
        end_time = datetime.now()
        meta = {
            "run_id": self.run_id,
            "start_time": self.start_time.isoformat(),
            "end_time": end_time.isoformat(),
            "elapsed_seconds": round((end_time - self.start_time).total_seconds(), 1),
            "git_sha": _get_git_sha(),
            "python_version": sys.version,
            "platform": platform.platform(),
            "packages": _get_package_versions(),
        }
        if result is not None:
            meta["scoring"] = result.metadata
            meta["diagnostics"] = result.diagnostics.summary()
        if extra:
            meta.update(extra)
        path = self._write_json("meta.json", meta)
        self.log.info("Run metadata saved", extra={"phase": "done", "run_id": self.run_id})
        return path

    def _write_json(self, name: str, data: dict) -> Path:
        path = self.path(name)
        with open(path, "w") as f:
            json.dump(data, f, indent=2, default=str)
        return path


def _get_git_sha() -> str:
    """Current commit SHA, or 'unknown' outside a git checkout."""
    try:
        out = subprocess.run(["git", "rev-parse", "HEAD"], capture_output=True,
                             text=True, timeout=5, cwd=str(ROOT))
    except (FileNotFoundError, subprocess.TimeoutExpired):
        return "unknown"
    return out.stdout.strip() if out.returncode == 0 else "unknown"


def _get_package_versions() -> dict:
    import importlib.metadata

    versions = {}
    for pkg in TRACKED_PACKAGES:
        try:
            versions[pkg] = importlib.metadata.version(pkg)
        except importlib.metadata.PackageNotFoundError:
            versions[pkg] = "unknown"
    return versions
