"""Property and invariant tests for the scoring core.

These tests verify structural invariants that must hold regardless of
input data, including:
  - Percentile bounds and determinism
  - Tie law and direction law
  - Null propagation through composites (never silently 0)
  - Renormalization over present weights
"""

import sys
from pathlib import Path

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
from factor_engine import (
    CAT_METRICS,
    METRIC_COLS,
    benchmark_relative_score,
    compute_composite_scores,
    compute_total_score,
    percentile_rank,
    weighted_average,
)
from schemas import CATEGORIES, CategoryWeights, ScoreWeightProfile


@pytest.fixture
def rng():
    return np.random.default_rng(7)


class TestPercentileBounds:
    @pytest.mark.parametrize("seed", range(5))
    def test_in_range(self, seed):
        rng = np.random.default_rng(seed)
        pop = list(rng.normal(0, 1, 50))
        for v in list(rng.normal(0, 3, 20)) + pop[:5]:
            for invert in (False, True):
                r = percentile_rank(v, pop, invert)
                assert 0.0 <= r <= 100.0

    def test_deterministic(self, rng):
        pop = list(rng.normal(0, 1, 200))
        v = pop[17]
        assert percentile_rank(v, pop, True) == percentile_rank(v, pop, True)
        assert percentile_rank(v, pop, False) == percentile_rank(v, list(pop), False)

    def test_order_of_population_irrelevant(self, rng):
        pop = list(rng.normal(0, 1, 40))
        shuffled = list(rng.permutation(pop))
        assert percentile_rank(pop[3], pop) == pytest.approx(percentile_rank(pop[3], shuffled))


class TestTieLaw:
    @pytest.mark.parametrize("k", [1, 2, 5])
    def test_copies_are_neither_better_nor_worse(self, k):
        others = [1.0, 2.0, 4.0, 5.0]
        pop = others + [3.0] * k
        n = len(pop)
        expected = (2 + 0.5 * k) / n * 100
        assert percentile_rank(3.0, pop) == pytest.approx(expected)
        assert percentile_rank(3.0, pop, invert=True) == pytest.approx(expected)

    def test_equal_values_get_equal_scores(self):
        pop = [1.0, 3.0, 3.0, 3.0, 9.0]
        assert len({percentile_rank(v, pop) for v in (3.0, 3.0, 3.0)}) == 1


class TestDirectionLaw:
    def test_higher_is_better(self, rng):
        pop = sorted(rng.normal(0, 1, 30))
        a, b = pop[5], pop[20]
        assert percentile_rank(a, pop) < percentile_rank(b, pop)

    def test_inverted(self, rng):
        pop = sorted(rng.normal(0, 1, 30))
        a, b = pop[5], pop[20]
        assert percentile_rank(a, pop, invert=True) > percentile_rank(b, pop, invert=True)

    def test_symmetry(self):
        pop = [1.0, 2.0, 3.0, 4.0, 5.0, 6.0]
        for v in pop:
            assert percentile_rank(v, pop) + percentile_rank(v, pop, True) == pytest.approx(100.0)


class TestNullPropagation:
    def test_null_value(self):
        assert percentile_rank(None, [1, 2]) is None

    def test_empty_filtered_population(self):
        assert percentile_rank(1.0, [None, None]) is None

    def test_null_never_zero_in_composite(self):
        profile = ScoreWeightProfile(name="P", categories={
            "RISK": CategoryWeights(category_weight=1.0,
                                    metric_weights={"beta": 1.0, "max_drawdown": 1.0}),
        })
        with_null = compute_composite_scores({"beta": 80.0, "max_drawdown": None}, profile)
        assert with_null["risk_score"] == pytest.approx(80.0)

    def test_ratio_null(self):
        assert benchmark_relative_score(None, None) is None


class TestRenormalization:
    def test_null_weight_leaves_denominator(self):
        """{m1: 80 w1, m2: null w1, m3: 40 w2} -> (80 + 80) / 3, not (80 + 0 + 80) / 4."""
        assert weighted_average([80.0, None, 40.0], [1.0, 1.0, 2.0]) == pytest.approx(53.3333, abs=1e-4)

    def test_category_composite_example(self):
        profile = ScoreWeightProfile(name="P", categories={
            "QUALITY": CategoryWeights(category_weight=1.0, metric_weights={
                "roic_ttm": 1.0, "roic_3yr": 1.0, "accruals": 2.0}),
        })
        out = compute_composite_scores(
            {"roic_ttm": 80.0, "roic_3yr": None, "accruals": 40.0}, profile)
        assert out["quality_score"] == pytest.approx(160.0 / 3)

    def test_scaling_weights_is_invariant(self, rng):
        scores = list(rng.uniform(0, 100, 6))
        weights = list(rng.uniform(0.1, 1, 6))
        assert weighted_average(scores, weights) == pytest.approx(
            weighted_average(scores, [w * 7 for w in weights]))


class TestCompositeBounds:
    @pytest.mark.parametrize("seed", range(5))
    def test_composites_and_total_in_range(self, seed):
        rng = np.random.default_rng(seed)
        profile = ScoreWeightProfile(name="R", categories={
            cat: CategoryWeights(category_weight=float(rng.uniform(0, 1)),
                                 metric_weights={m: float(rng.uniform(0, 1))
                                                 for m in CAT_METRICS[cat]})
            for cat in CATEGORIES
        })
        scores = {m: (None if rng.random() < 0.3 else float(rng.uniform(0, 100)))
                  for m in METRIC_COLS}
        comps = compute_composite_scores(scores, profile)
        total = compute_total_score(comps, profile.category_weights())
        for v in list(comps.values()) + [total]:
            assert v is None or 0.0 <= v <= 100.0

    def test_recompute_is_identical(self):
        profile = ScoreWeightProfile(name="R", categories={
            cat: CategoryWeights(category_weight=0.25,
                                 metric_weights={m: 0.1 * (i + 1)
                                                 for i, m in enumerate(CAT_METRICS[cat])})
            for cat in CATEGORIES
        })
        scores = {m: 10.0 + 3.3 * i for i, m in enumerate(METRIC_COLS)}
        first = compute_composite_scores(scores, profile)
        second = compute_composite_scores(dict(reversed(list(scores.items()))), profile)
        assert first == second
