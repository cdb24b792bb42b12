"""Tests for SE quantile grouping, per-group EIV estimation and MAF trend fits."""

import numpy as np
import pandas as pd
import pytest
from scipy import stats

from eafertility.analysis import (
    DegenerateRegressionError,
    EIVAnalyzer,
    GroupAssigner,
    GroupEstimator,
    TrendFitter,
    correct_attenuation,
)
from eafertility.data import generate_sample_summary_stats, merge_summary_stats


def single_group_estimate(beta_ea, beta_ncb, se_ea):
    """Reference EIV estimate for one group, computed directly with scipy."""
    beta_ea = np.asarray(beta_ea, dtype=float)
    se_ea = np.asarray(se_ea, dtype=float)

    beta_hat = stats.linregress(beta_ea, beta_ncb).slope
    var_beta_hat = np.var(beta_ea, ddof=1)
    var_error = np.mean(se_ea ** 2)
    return {
        "var_beta_hat": var_beta_hat,
        "var_error": var_error,
        "var_beta": var_beta_hat - var_error,
        "beta": float(correct_attenuation(beta_hat, var_beta_hat, var_error)),
    }


def grouping_config(n_groups):
    return {"analysis": {"grouping": {"n_groups": n_groups}}}


class TestGroupAssigner:
    def test_quantile_probabilities_are_squared(self):
        probs = GroupAssigner.quantile_probabilities(4)
        np.testing.assert_allclose(probs, [0, 1 / 16, 4 / 16, 9 / 16, 1])

    def test_boundaries_are_monotone_with_k_groups(self, snp_table):
        assigner = GroupAssigner(grouping_config(1000))
        edges = assigner.boundaries(snp_table["se_ea"])

        assert np.all(np.diff(edges) > 0)
        assert abs((len(edges) - 1) - 1000) <= 1

    def test_every_record_gets_exactly_one_group(self, snp_table):
        grouped = GroupAssigner(grouping_config(1000)).assign(snp_table)

        assert len(grouped) == len(snp_table)
        assert grouped["group"].notna().all()
        assert grouped["rsid"].is_unique
        assert set(grouped["rsid"]) == set(snp_table["rsid"])
        assert grouped["group"].min() == 0
        assert grouped["group"].max() == 999

    def test_records_lie_inside_their_interval(self, snp_table):
        grouped = GroupAssigner(grouping_config(200)).assign(snp_table)

        assert (grouped["se_ea"] >= grouped["se_lower"]).all()
        assert (grouped["se_ea"] <= grouped["se_upper"]).all()
        np.testing.assert_allclose(
            grouped["se_mid"], (grouped["se_lower"] + grouped["se_upper"]) / 2
        )

    def test_groups_are_finer_at_low_se(self):
        table = pd.DataFrame({"se_ea": np.linspace(0.001, 0.101, 10001)})
        grouped = GroupAssigner({"analysis": {"grouping": {"n_groups": 10}}}).assign(table)
        sizes = grouped.groupby("group").size()

        assert sizes.iloc[0] < sizes.iloc[-1]
        assert sizes.is_monotonic_increasing

    def test_boundary_ties_go_to_lower_group(self):
        table = pd.DataFrame({"se_ea": [0.1, 0.2, 0.3, 0.4, 0.5]})
        grouped = GroupAssigner(grouping_config(2)).assign(table)

        # boundaries at probabilities 0, 0.25, 1 -> 0.1, 0.2, 0.5
        assert grouped["group"].tolist() == [0, 0, 1, 1, 1]

    def test_duplicate_boundaries_collapse(self):
        table = pd.DataFrame({"se_ea": [0.01] * 50 + [0.02] * 50})
        grouped = GroupAssigner(grouping_config(10)).assign(table)

        assert len(grouped) == 100
        assert grouped["group"].nunique() <= 2

    def test_too_few_records_raises(self):
        with pytest.raises(ValueError, match="at least two"):
            GroupAssigner(grouping_config(10)).assign(pd.DataFrame({"se_ea": [0.1]}))

    def test_identical_values_raise(self):
        with pytest.raises(ValueError, match="identical"):
            GroupAssigner(grouping_config(10)).assign(pd.DataFrame({"se_ea": [0.1] * 5}))


class TestCorrection:
    def test_two_snp_group(self):
        grouped = pd.DataFrame({
            "group": [0, 0],
            "beta_ea": [0.02, -0.01],
            "beta_ncb": [0.5, -0.1],
            "se_ea": [0.01, 0.01],
            "maf": [0.2, 0.3],
        })

        row = GroupEstimator({}).estimate(grouped).iloc[0]

        var_beta_hat = np.var([0.02, -0.01], ddof=1)
        assert row["var_beta_hat"] == pytest.approx(var_beta_hat)
        assert row["var_beta_hat"] == pytest.approx(0.00045)
        assert row["var_error"] == pytest.approx(0.0001)
        assert row["var_beta"] == pytest.approx(0.00035)
        assert row["beta_hat"] == pytest.approx(20.0)
        assert row["beta"] == pytest.approx(20.0 * 0.00045 / 0.00035)
        assert row["mean_maf"] == pytest.approx(0.25)

    def test_non_positive_signal_variance_gives_missing_beta(self):
        grouped = pd.DataFrame({
            "group": [0, 0, 0],
            "beta_ea": [0.01, -0.01, 0.0],
            "beta_ncb": [0.2, -0.3, 0.1],
            "se_ea": [0.05, 0.05, 0.05],
            "maf": [0.01, 0.01, 0.01],
        })

        row = GroupEstimator({}).estimate(grouped).iloc[0]

        assert np.isfinite(row["beta_hat"])
        assert row["var_beta"] <= 0
        assert np.isnan(row["beta"])
        assert not row["identifiable"]
        assert not row["degenerate"]

    def test_single_record_group_is_degenerate(self):
        grouped = pd.DataFrame({
            "group": [0, 1, 1, 1],
            "beta_ea": [0.01, 0.02, -0.01, 0.03],
            "beta_ncb": [0.2, 0.5, -0.1, 0.4],
            "se_ea": [0.001, 0.002, 0.002, 0.002],
            "maf": [0.4, 0.3, 0.3, 0.3],
        })

        results = GroupEstimator({}).estimate(grouped).set_index("group")

        assert results.loc[0, "degenerate"]
        assert np.isnan(results.loc[0, "beta_hat"])
        assert np.isnan(results.loc[0, "beta"])
        assert not results.loc[1, "degenerate"]
        assert np.isfinite(results.loc[1, "beta"])

    def test_matches_single_group_formula(self, snp_table):
        grouped = GroupAssigner(grouping_config(50)).assign(snp_table)
        results = GroupEstimator({}).estimate(grouped).set_index("group")

        for label in [0, 25, 49]:
            members = grouped[grouped["group"] == label]
            expected = single_group_estimate(members["beta_ea"], members["beta_ncb"], members["se_ea"])
            slope = stats.linregress(members["beta_ea"], members["beta_ncb"]).slope

            assert results.loc[label, "beta_hat"] == pytest.approx(slope, rel=1e-8)
            for key in ["var_beta_hat", "var_error", "var_beta", "beta"]:
                assert results.loc[label, key] == pytest.approx(expected[key], rel=1e-8, nan_ok=True)

    def test_formula_over_random_inputs(self):
        rng = np.random.default_rng(1)
        beta_hat = rng.normal(0, 10, 500)
        var_beta_hat = rng.uniform(0, 1, 500)
        var_error = rng.uniform(0, 1, 500)

        beta = correct_attenuation(beta_hat, var_beta_hat, var_error)

        positive = var_beta_hat > var_error
        np.testing.assert_allclose(
            beta[positive],
            beta_hat[positive] * var_beta_hat[positive] / (var_beta_hat[positive] - var_error[positive]),
        )
        assert np.isnan(beta[~positive]).all()

    def test_homogeneity_flag(self):
        grouped = pd.DataFrame({
            "group": [0, 0, 0, 1, 1, 1],
            "beta_ea": [0.01, 0.02, -0.01, 0.02, -0.01, 0.03],
            "beta_ncb": [0.2, 0.3, -0.1, 0.5, -0.1, 0.4],
            "se_ea": [0.010, 0.0101, 0.0099, 0.01, 0.02, 0.03],
            "maf": [0.4, 0.4, 0.4, 0.1, 0.1, 0.1],
        })

        results = GroupEstimator(
            {"analysis": {"estimation": {"homogeneity_threshold": 0.1}}}
        ).estimate(grouped).set_index("group")

        assert results.loc[0, "se_homogeneous"]
        assert not results.loc[1, "se_homogeneous"]
        assert results.loc[1, "se_cv"] == pytest.approx(0.5)

    def test_missing_columns_raise(self):
        with pytest.raises(ValueError, match="maf"):
            GroupEstimator({}).estimate(pd.DataFrame(columns=["group", "beta_ea", "beta_ncb", "se_ea"]))


def make_group_results(maf, beta, homogeneous=None):
    maf = np.asarray(maf, dtype=float)
    return pd.DataFrame({
        "group": np.arange(len(maf)),
        "mean_maf": maf,
        "beta": np.asarray(beta, dtype=float),
        "se_homogeneous": np.ones(len(maf), dtype=bool) if homogeneous is None else homogeneous,
    })


class TestTrendFitter:
    def test_recovers_exact_line(self):
        maf = np.linspace(0.01, 0.5, 20)
        fit = TrendFitter({}).fit(make_group_results(maf, -50 + 30 * maf))

        assert fit.intercept == pytest.approx(-50)
        assert fit.slope == pytest.approx(30)
        assert fit.n_groups == 20
        assert fit.n_excluded == 0

    def test_missing_betas_are_excluded_and_counted(self):
        maf = np.linspace(0.01, 0.5, 20)
        beta = -50 + 30 * maf
        beta[[2, 5, 7]] = np.nan

        fit = TrendFitter({}).fit(make_group_results(maf, beta))

        assert fit.n_groups == 17
        assert fit.n_excluded == 3
        assert fit.slope == pytest.approx(30)

    def test_maf_filter_is_a_subset(self):
        rng = np.random.default_rng(4)
        maf = np.linspace(0.01, 0.5, 60)
        beta = -60 + 20 * maf + rng.normal(0, 5, 60)
        beta[:4] = np.nan
        results = make_group_results(maf, beta)

        fitter = TrendFitter({})
        full = fitter.fit(results)
        filtered = fitter.fit(results, min_maf=0.1)

        assert filtered.n_groups <= full.n_groups
        assert filtered.n_groups == int(((maf > 0.1) & ~np.isnan(beta)).sum())
        assert filtered.min_maf == 0.1
        assert 0 <= filtered.slope_pvalue <= 1

    def test_slope_pvalue_matches_linregress(self):
        rng = np.random.default_rng(5)
        maf = rng.uniform(0, 0.5, 40)
        beta = -60 + 40 * maf + rng.normal(0, 10, 40)

        fit = TrendFitter({}).fit(make_group_results(maf, beta))
        reference = stats.linregress(maf, beta)

        assert fit.slope == pytest.approx(reference.slope)
        assert fit.intercept == pytest.approx(reference.intercept)
        assert fit.slope_pvalue == pytest.approx(reference.pvalue)
        assert fit.slope_se == pytest.approx(reference.stderr)

    def test_is_deterministic(self):
        maf = np.linspace(0.01, 0.5, 30)
        results = make_group_results(maf, np.sin(maf * 10))

        assert TrendFitter({}).fit(results) == TrendFitter({}).fit(results)

    def test_require_homogeneous(self):
        maf = np.linspace(0.01, 0.5, 10)
        homogeneous = np.array([True] * 6 + [False] * 4)
        fit = TrendFitter({}).fit(make_group_results(maf, maf, homogeneous), require_homogeneous=True)

        assert fit.n_groups == 6

    def test_too_few_groups_raise(self):
        results = make_group_results([0.1, 0.2, 0.3], [1.0, np.nan, 2.0])

        with pytest.raises(DegenerateRegressionError):
            TrendFitter({}).fit(results)

    def test_fit_all_includes_maf_filtered_fit(self):
        maf = np.linspace(0.01, 0.5, 30)
        fits = TrendFitter({"analysis": {"trend": {"min_maf": 0.2}}}).fit_all(
            make_group_results(maf, 2 * maf)
        )

        assert set(fits) == {"all_groups", "maf_above_0.2"}
        assert fits["maf_above_0.2"].n_groups < fits["all_groups"].n_groups

    def test_fit_all_keeps_unfiltered_fit_when_maf_floor_leaves_too_few_groups(self):
        maf = np.linspace(0.01, 0.09, 30)
        fits = TrendFitter({"analysis": {"trend": {"min_maf": 0.1}}}).fit_all(
            make_group_results(maf, -60 + 100 * maf)
        )

        assert fits["maf_above_0.1"] is None
        assert fits["all_groups"].n_groups == 30
        assert fits["all_groups"].slope == pytest.approx(100)

    def test_fit_all_still_raises_when_unfiltered_fit_is_degenerate(self):
        results = make_group_results([0.2, 0.3], [1.0, 2.0])

        with pytest.raises(DegenerateRegressionError):
            TrendFitter({}).fit_all(results)


class TestEIVAnalyzer:
    def test_run_analysis(self, snp_table):
        config = {"analysis": {"grouping": {"n_groups": 100}, "trend": {"min_maf": 0.1}}}
        results = EIVAnalyzer(config).run_analysis(snp_table)

        group_results = results["group_results"]
        assert len(group_results) == 100
        assert group_results["n"].sum() == len(snp_table)
        assert set(results["trend"]) == {"all_groups", "maf_above_0.1"}
        assert results["summary"]["n_snps"] == len(snp_table)

        # the sample data has a constant true slope of -60
        common = group_results[group_results["mean_maf"] > 0.1]
        assert common["beta"].mean() == pytest.approx(-60, rel=0.2)

    def test_run_analysis_without_common_variants(self):
        ea_stats, ncb_stats = generate_sample_summary_stats(
            n_snps=20000, maf_range=(0.005, 0.09), seed=13
        )
        table = merge_summary_stats(ea_stats, ncb_stats)

        results = EIVAnalyzer(grouping_config(100)).run_analysis(table)

        assert results["trend"]["maf_above_0.1"] is None
        assert results["trend"]["all_groups"].n_groups >= 3
        assert len(results["group_results"]) == 100
