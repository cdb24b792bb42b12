"""End-to-end tests for the pipeline and its command line entry point."""

from pathlib import Path

import pandas as pd
import pytest
import yaml

from eafertility.pipeline import EIVPipeline, PipelineStageError, main


@pytest.fixture
def demo_config(base_config):
    base_config["data"] = {"demo": True, "demo_snps": 50000}
    base_config["simulation"]["n"] = 50000
    base_config["visualization"]["output_format"] = ["png", "html"]
    return base_config


class TestEIVPipeline:
    def test_full_run_writes_outputs(self, demo_config):
        results = EIVPipeline(demo_config).run_full_pipeline()
        results_dir = Path(demo_config["output"]["results_dir"])

        for name in ["group_results.csv", "analysis_results.yaml", "analysis_summary.txt",
                     "simulation_constant.csv", "group_betas.png", "group_betas_interactive.html"]:
            assert (results_dir / name).exists(), name

        group_results = pd.read_csv(results_dir / "group_results.csv")
        assert len(group_results) == results["summary"]["n_groups"]
        assert group_results["n"].sum() == 50000

        with open(results_dir / "analysis_results.yaml") as f:
            record = yaml.safe_load(f)
        assert set(record["trend"]) == {"all_groups", "maf_above_0.1"}
        assert set(record["simulation"]) == {"constant", "linear", "proportional", "quadratic"}
        assert "group_results" not in record

    def test_simulation_can_be_disabled(self, demo_config):
        demo_config["simulation"]["enabled"] = False

        results = EIVPipeline(demo_config).run_full_pipeline()

        assert results["simulation"] == {}
        assert not (Path(demo_config["output"]["results_dir"]) / "simulation_constant.csv").exists()

    def test_maf_floor_above_every_group_records_missing_fit(self, demo_config):
        demo_config["analysis"]["trend"]["min_maf"] = 0.6
        demo_config["simulation"]["enabled"] = False

        results = EIVPipeline(demo_config).run_full_pipeline()
        results_dir = Path(demo_config["output"]["results_dir"])

        assert results["trend"]["maf_above_0.6"] is None
        assert results["trend"]["all_groups"]["n_groups"] >= 3
        assert (results_dir / "group_betas.png").exists()

        with open(results_dir / "analysis_results.yaml") as f:
            record = yaml.safe_load(f)
        assert record["trend"]["maf_above_0.6"] is None

        summary = (results_dir / "analysis_summary.txt").read_text()
        assert "maf_above_0.6: not fitted" in summary

    def test_missing_input_fails_at_load_stage(self, base_config, tmp_path):
        base_config["data"] = {
            "ea_file": str(tmp_path / "missing_ea.txt"),
            "ncb_file": str(tmp_path / "missing_ncb.txt"),
        }

        with pytest.raises(PipelineStageError) as excinfo:
            EIVPipeline(base_config).run_full_pipeline()

        assert excinfo.value.stage == "load"
        assert "missing_ea.txt" in str(excinfo.value)


class TestMain:
    def write_config(self, config, tmp_path):
        path = tmp_path / "config.yaml"
        with open(path, "w") as f:
            yaml.safe_dump(config, f)
        return path

    def test_returns_zero_on_success(self, demo_config, tmp_path):
        config_path = self.write_config(demo_config, tmp_path)
        output_dir = tmp_path / "cli_results"

        exit_code = main([str(config_path), "--output-dir", str(output_dir), "--skip-simulation"])

        assert exit_code == 0
        assert (output_dir / "group_results.csv").exists()
        assert not (output_dir / "simulation_constant.csv").exists()

    def test_reports_missing_fit(self, demo_config, tmp_path, capsys):
        demo_config["analysis"]["trend"]["min_maf"] = 0.6
        config_path = self.write_config(demo_config, tmp_path)

        assert main([str(config_path), "--skip-simulation"]) == 0
        assert "maf_above_0.6: not fitted" in capsys.readouterr().out

    def test_returns_one_on_failure(self, base_config, tmp_path):
        base_config["data"] = {"ea_file": str(tmp_path / "nope.txt"), "ncb_file": str(tmp_path / "nope2.txt")}
        config_path = self.write_config(base_config, tmp_path)

        assert main([str(config_path)]) == 1
