"""Pytest configuration and fixtures for eafertility tests."""

import matplotlib

matplotlib.use("Agg")

import pytest  # noqa: E402

from eafertility.data import generate_sample_summary_stats, merge_summary_stats  # noqa: E402


@pytest.fixture(scope="session")
def sample_stats():
    """EA and NCB tables with 300k SNPs and a log-uniform MAF spectrum."""
    return generate_sample_summary_stats(n_snps=300000, seed=7)


@pytest.fixture(scope="session")
def snp_table(sample_stats):
    """Merged working table built from sample_stats."""
    ea_stats, ncb_stats = sample_stats
    return merge_summary_stats(ea_stats, ncb_stats)


@pytest.fixture
def base_config(tmp_path):
    """Small configuration writing into a temporary results directory."""
    return {
        "data": {"demo": False},
        "analysis": {
            "grouping": {"n_groups": 100, "column": "se_ea"},
            "estimation": {"homogeneity_threshold": 0.1},
            "trend": {"min_maf": 0.1, "require_homogeneous": False},
        },
        "simulation": {"enabled": True, "n": 300000, "seed": 11, "noise_sd": 1.0, "n_groups": 100},
        "visualization": {"output_format": ["png"], "dpi": 50, "figure_size": [6, 4]},
        "output": {"results_dir": str(tmp_path / "results")},
    }
