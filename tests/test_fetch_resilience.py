"""Tests for the data-source layer: snapshot CSV parsing, price-history
snapshot math, and yfinance retry / fail-soft behaviour.

No network access: yfinance is patched throughout.
"""

import sys
import warnings
from pathlib import Path
from unittest.mock import MagicMock, patch

import numpy as np
import pandas as pd
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
from data_sources import (
    FUNDAMENTAL_COLUMN_MAP,
    _NON_RETRYABLE_PATTERNS,
    InMemoryFundamentalSource,
    InMemoryMembershipSource,
    YFinancePriceHistorySource,
    fetch_closes,
    fundamentals_from_rows,
    load_benchmark_assignments_csv,
    load_constituents_csv,
    load_fundamentals_csv,
    load_prices_csv,
    max_drawdown,
    snapshot_from_closes,
)
from schemas import RawFundamentalRecord


def _daily_closes(n=400, start="2024-01-01", tz=None) -> pd.Series:
    """Calendar-daily closes 100, 101, 102, ... (one per day, weekends included)."""
    idx = pd.date_range(start, periods=n, freq="D", tz=tz)
    return pd.Series(100.0 + np.arange(n), index=idx)


# =====================================================================
# SNAPSHOT CSV PARSING
# =====================================================================

class TestFundamentalsCsv:
    def test_headers_mapped_and_sentinels_parsed(self, tmp_path):
        path = tmp_path / "fundamentals.csv"
        path.write_text(
            'Ticker,PRICE,P/E NTM,ROIC  3YR,acrcrurals %,ND,Unrelated\n'
            'aapl,190.5,28.1,0.31,-0.02,"1,200",x\n'
            'XOM,#N/A,#N/A N/A,0.12,#VALUE!,-,y\n'
            ',10,10,10,10,10,z\n'
        )
        recs = load_fundamentals_csv(path)
        assert sorted(recs) == ["AAPL", "XOM"]
        a = recs["AAPL"]
        assert a.price == 190.5
        assert a.pe_ntm == 28.1
        assert a.roic_3yr == 0.31
        assert a.accruals == -0.02
        assert a.net_debt == 1200.0
        x = recs["XOM"]
        assert x.price is None and x.pe_ntm is None and x.accruals is None
        assert x.net_debt is None

    def test_field_names_accepted(self):
        recs = fundamentals_from_rows([{"ticker": "msft", "pe_ntm": "30"}])
        assert recs["MSFT"].pe_ntm == 30.0

    def test_first_duplicate_wins(self):
        recs = fundamentals_from_rows([{"Ticker": "A", "PRICE": "1"},
                                       {"Ticker": "a ", "PRICE": "2"}])
        assert recs["A"].price == 1.0

    def test_map_targets_are_record_fields(self):
        for field in FUNDAMENTAL_COLUMN_MAP.values():
            assert field in RawFundamentalRecord.model_fields


class TestMembershipCsv:
    def test_wide_layout(self, tmp_path):
        path = tmp_path / "constituents.csv"
        path.write_text("Ticker,SPY,qqq\nAAPL,1,1\nXOM,1,-\nTSLA,,X\nIBM,#N/A,0\n")
        members = load_constituents_csv(path)
        assert members == {"SPY": ["AAPL", "XOM"], "QQQ": ["AAPL", "TSLA"]}

    def test_long_layout(self, tmp_path):
        path = tmp_path / "constituents.csv"
        path.write_text("benchmark,ticker\nspy,aapl\nSPY,MSFT\nspy,aapl\nqqq,nvda\n")
        members = load_constituents_csv(path)
        assert members == {"SPY": ["AAPL", "MSFT"], "QQQ": ["NVDA"]}

    def test_missing_ticker_column(self, tmp_path):
        path = tmp_path / "constituents.csv"
        path.write_text("Symbol,SPY\nAAPL,1\n")
        with pytest.raises(ValueError, match="Ticker"):
            load_constituents_csv(path)

    def test_unknown_benchmark_is_empty(self):
        src = InMemoryMembershipSource({"spy": ["aapl", "AAPL", "msft"]})
        assert src.constituents("SPY") == ["AAPL", "MSFT"]
        assert src.constituents("IWM") == []


class TestBenchmarkAndPriceCsv:
    def test_assignments(self, tmp_path):
        path = tmp_path / "benchmarks.csv"
        path.write_text("Ticker,BENCHMARK1,BENCHMARK2,Benchmark_Custom\n"
                        "aapl,spy,#N/A,xlk\nmsft,SPY,,\n")
        out = load_benchmark_assignments_csv(path)
        assert out["AAPL"].resolve("BENCHMARK1") == "SPY"
        assert out["AAPL"].resolve("BENCHMARK2") is None
        assert out["AAPL"].resolve("BENCHMARK_CUSTOM") == "XLK"
        assert out["MSFT"].resolve("BENCHMARK3") is None

    def test_prices(self, tmp_path):
        path = tmp_path / "prices.csv"
        path.write_text("ticker,current_price,price_30d_ago,price_90d_ago,"
                        "price_365d_ago,max_drawdown\n"
                        "AAPL,190,185,170,150,0.12\nmsft,400,,,,\n")
        out = load_prices_csv(path)
        assert out["AAPL"].price_365d_ago == 150.0
        assert out["MSFT"].current_price == 400.0
        assert out["MSFT"].max_drawdown is None

    def test_in_memory_source_omits_missing(self):
        src = InMemoryFundamentalSource([RawFundamentalRecord(ticker="A")])
        assert list(src.get_many(["a", "B"])) == ["A"]


# =====================================================================
# PRICE-HISTORY SNAPSHOT MATH
# =====================================================================

class TestSnapshotFromCloses:
    def test_calendar_lookback(self):
        snap = snapshot_from_closes("T", _daily_closes())
        assert snap.current_price == 499.0
        assert snap.price_30d_ago == 469.0
        assert snap.price_90d_ago == 409.0
        assert snap.price_365d_ago == 134.0

    def test_trading_lookback(self):
        snap = snapshot_from_closes("T", _daily_closes(), convention="trading")
        assert snap.price_30d_ago == 499.0 - 21
        assert snap.price_90d_ago == 499.0 - 63
        assert snap.price_365d_ago == 499.0 - 252

    def test_calendar_picks_nearest_session(self):
        closes = _daily_closes(400)
        # Remove the exact target date; the neighbouring session is used.
        target = closes.index[-1] - pd.Timedelta(days=30)
        closes = closes.drop(target)
        snap = snapshot_from_closes("T", closes)
        assert snap.price_30d_ago in (468.0, 470.0)

    def test_short_history_gives_none(self):
        snap = snapshot_from_closes("T", _daily_closes(100))
        assert snap.price_30d_ago is not None
        assert snap.price_365d_ago is None

    def test_timezone_aware_index(self):
        snap = snapshot_from_closes("T", _daily_closes(tz="America/New_York"))
        assert snap.price_90d_ago == 409.0

    def test_as_of_truncates(self):
        closes = _daily_closes(400)
        snap = snapshot_from_closes("T", closes, as_of=closes.index[199])
        assert snap.current_price == 299.0
        assert snap.price_30d_ago == 269.0

    def test_empty_series(self):
        snap = snapshot_from_closes("T", pd.Series(dtype=float))
        assert snap.current_price is None
        assert snapshot_from_closes("T", None).max_drawdown is None

    def test_unknown_convention(self):
        with pytest.raises(ValueError):
            snapshot_from_closes("T", _daily_closes(), convention="weekly")


class TestMaxDrawdown:
    def test_positive_fraction(self):
        closes = pd.Series([100.0, 120.0, 90.0, 130.0, 117.0])
        assert max_drawdown(closes) == pytest.approx(0.25)

    def test_monotonic_rise_is_zero(self):
        assert max_drawdown(pd.Series([1.0, 2.0, 3.0])) == 0.0

    def test_window_limits_lookback(self):
        closes = pd.Series([100.0, 50.0] + [60.0 + i for i in range(10)])
        assert max_drawdown(closes, window=10) == 0.0
        assert max_drawdown(closes, window=12) == pytest.approx(0.5)

    def test_too_short(self):
        assert max_drawdown(pd.Series([5.0])) is None


# =====================================================================
# YFINANCE RETRY BEHAVIOUR
# =====================================================================

class TestFetchCloses:
    @patch("data_sources.time.sleep")
    @patch("data_sources.yf.Ticker")
    def test_success_first_try(self, mock_ticker, mock_sleep):
        hist = pd.DataFrame({"Close": [1.0, 2.0]},
                            index=pd.date_range("2024-01-01", periods=2))
        mock_ticker.return_value.history.return_value = hist
        closes = fetch_closes("AAPL")
        assert list(closes) == [1.0, 2.0]
        mock_sleep.assert_not_called()

    @patch("data_sources.time.sleep")
    @patch("data_sources.yf.Ticker")
    def test_retries_with_backoff(self, mock_ticker, mock_sleep):
        mock_ticker.return_value.history.side_effect = Exception("Connection reset")
        with pytest.warns(UserWarning, match="price history unavailable"):
            assert fetch_closes("AAPL", max_retries=3) is None
        assert mock_ticker.return_value.history.call_count == 3
        assert [c.args[0] for c in mock_sleep.call_args_list] == [1, 2]

    @patch("data_sources.time.sleep")
    @patch("data_sources.yf.Ticker")
    def test_non_retryable_fails_fast(self, mock_ticker, mock_sleep):
        mock_ticker.return_value.history.side_effect = Exception("404 Not Found: delisted")
        with pytest.warns(UserWarning):
            assert fetch_closes("GONE", max_retries=3) is None
        assert mock_ticker.return_value.history.call_count == 1
        mock_sleep.assert_not_called()

    @patch("data_sources.time.sleep")
    @patch("data_sources.yf.Ticker")
    def test_empty_history_fails_fast(self, mock_ticker, mock_sleep):
        mock_ticker.return_value.history.return_value = pd.DataFrame()
        with pytest.warns(UserWarning):
            assert fetch_closes("EMPTY") is None
        assert mock_ticker.return_value.history.call_count == 1

    @patch("data_sources.time.sleep")
    @patch("data_sources.yf.Ticker")
    def test_recovers_after_transient_error(self, mock_ticker, mock_sleep):
        hist = pd.DataFrame({"Close": [5.0]}, index=pd.date_range("2024-01-01", periods=1))
        mock_ticker.return_value.history.side_effect = [Exception("timeout"), hist]
        assert list(fetch_closes("AAPL")) == [5.0]
        mock_sleep.assert_called_once_with(1)

    def test_patterns(self):
        assert any(p in "404 client error" for p in _NON_RETRYABLE_PATTERNS)
        assert not any(p in "read timed out" for p in _NON_RETRYABLE_PATTERNS)


class TestYFinanceSource:
    def test_get_many_omits_failures(self):
        closes = _daily_closes()

        def fake_fetch(ticker, **kwargs):
            return None if ticker == "BAD" else closes

        src = YFinancePriceHistorySource(batch_size=2, max_workers=2)
        with patch("data_sources.fetch_closes", side_effect=fake_fetch):
            out = src.get_many(["aapl", "BAD", "MSFT", "AAPL"])
        assert sorted(out) == ["AAPL", "MSFT"]
        assert out["AAPL"].price_90d_ago == 409.0

    def test_from_config(self, cfg):
        src = YFinancePriceHistorySource.from_config(cfg)
        assert src.lookback_convention == "calendar"
        assert src.drawdown_window == 252
        assert src.max_retries == 3

    def test_worker_exception_is_contained(self):
        src = YFinancePriceHistorySource()
        src.get = MagicMock(side_effect=RuntimeError("boom"))
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            out = src.get_many(["AAPL"])
        assert out == {}
        assert any("boom" in str(w.message) for w in caught)
