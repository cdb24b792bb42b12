"""
Main pipeline for the grouped EIV analysis of EA and fertility summary statistics.

"""

import yaml
import logging
import sys
from pathlib import Path
from datetime import datetime
from typing import Dict, Optional
import argparse
import traceback

import numpy as np
import pandas as pd

from .data import SummaryStatsLoader
from .analysis import EIVAnalyzer
from .simulation import (
    SimulationHarness,
    relationships_from_config,
    degradation_trend,
    recovery_by_maf_band,
    summarize_recovery,
)
from .visualization import EIVPlotter

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class PipelineStageError(Exception):
    """A pipeline stage failed; the message names the stage."""

    def __init__(self, stage: str, message: str):
        self.stage = stage
        super().__init__(f"Stage '{stage}' failed: {message}")


def setup_logging(log_file: Optional[str] = None, level: int = logging.INFO) -> None:
    """Log to stdout and, if given, to a file."""
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)


def load_config(config_path) -> Dict:
    """Load configuration from YAML file."""
    try:
        with open(config_path, 'r') as f:
            config = yaml.safe_load(f)
    except Exception as e:
        logger.error(f"Failed to load configuration: {e}")
        raise
    return config or {}


class EIVPipeline:
    """
    Orchestrates loading, grouped estimation, simulation checks, figures and output.
    """

    def __init__(self, config: Dict, config_path: Optional[str] = None):
        """
        Initialize the pipeline.

        Args:
            config: parsed configuration dictionary
            config_path: path the configuration was read from, for the record
        """
        self.config = config
        self.config_path = config_path
        self.results_dir = Path(self.config.setdefault('output', {}).setdefault('results_dir', 'results'))

        self.loader = SummaryStatsLoader(self.config)
        self.analyzer = EIVAnalyzer(self.config)
        self.simulation_enabled = self.config.get('simulation', {}).get('enabled', True)

        self.results_dir.mkdir(parents=True, exist_ok=True)

        logger.info(f"Initialized EIV pipeline (config: {config_path or 'in-memory'})")

    @classmethod
    def from_yaml(cls, config_path: str) -> "EIVPipeline":
        return cls(load_config(config_path), config_path=config_path)

    def run_full_pipeline(self) -> Dict:
        """
        Run every stage in order.

        Returns:
            Dictionary containing all results
        """
        logger.info("=" * 80)
        logger.info("STARTING GROUPED EIV ANALYSIS PIPELINE")
        logger.info("=" * 80)

        start_time = datetime.now()

        try:
            logger.info("Step 1: Loading and merging summary statistics...")
            snp_table = self._run_stage('load', self.loader.load_and_merge)

            logger.info("Step 2: Grouped EIV estimation and trend fits...")
            analysis_results = self._run_stage('analysis', self.analyzer.run_analysis, snp_table)

            simulation_results = {}
            if self.simulation_enabled:
                logger.info("Step 3: Simulation checks...")
                simulation_results = self._run_stage('simulation', self._run_simulations, snp_table)
            else:
                logger.info("Step 3: Simulation checks disabled")

            logger.info("Step 4: Generating figures...")
            plots = self._generate_visualizations(analysis_results, snp_table, simulation_results)

            logger.info("Step 5: Saving results...")
            final_results = self._compile_results(snp_table, analysis_results, simulation_results, plots)
            self._run_stage('save', self._save_results, final_results)

            duration = datetime.now() - start_time
            logger.info("=" * 80)
            logger.info(f"PIPELINE COMPLETED SUCCESSFULLY in {duration}")
            logger.info("=" * 80)

            return final_results

        except PipelineStageError as e:
            logger.error(f"Pipeline failed: {e}")
            logger.error(traceback.format_exc())
            raise

    def _run_stage(self, stage: str, func, *args):
        try:
            return func(*args)
        except Exception as e:
            raise PipelineStageError(stage, f"{type(e).__name__}: {e}") from e

    def _run_simulations(self, snp_table: pd.DataFrame) -> Dict[str, pd.DataFrame]:
        """Run the harness once per configured relationship."""
        harness = SimulationHarness(self.config)
        relationships = relationships_from_config(self.config)
        outputs = harness.run_all(snp_table, relationships)

        min_maf = self.config.get('analysis', {}).get('trend', {}).get('min_maf', 0.1)
        for name, results in outputs.items():
            recovery = summarize_recovery(results, min_maf=min_maf or 0.0)
            logger.info(
                f"Simulation '{name}': mean corrected {recovery['mean_corrected_beta']:.2f}, "
                f"uncorrected {recovery['mean_uncorrected_beta']:.2f}, "
                f"truth {recovery['mean_true_beta']:.2f} (groups with MAF > {min_maf})"
            )
            degradation = degradation_trend(results)
            logger.info(
                f"Simulation '{name}': Spearman rho of error vs MAF below "
                f"{degradation['max_maf']} = {degradation['spearman_rho']:.2f} "
                f"({degradation['n_groups']} groups)"
            )
        return outputs

    def _generate_visualizations(self, analysis_results, snp_table, simulation_results) -> Dict:
        """Figures never abort the run."""
        try:
            plotter = EIVPlotter(self.config)
            plots = plotter.create_report(analysis_results, snp_table, simulation_results)
            logger.info(f"Generated {len(plots)} figures")
            return plots
        except Exception as e:
            logger.warning(f"Visualization generation failed: {e}")
            return {'error': str(e)}

    def _compile_results(self, snp_table, analysis_results, simulation_results, plots) -> Dict:
        """Compile all results into final output."""
        min_maf = self.config.get('analysis', {}).get('trend', {}).get('min_maf', 0.1) or 0.0

        return {
            'metadata': {
                'analysis_date': datetime.now().isoformat(),
                'config_path': self.config_path,
                'config_used': self.config,
            },
            'summary': analysis_results['summary'],
            'trend': {
                name: fit.to_dict() if fit is not None else None
                for name, fit in analysis_results['trend'].items()
            },
            'group_results': analysis_results['group_results'],
            'simulation': {
                name: {
                    'recovery': summarize_recovery(results, min_maf=min_maf),
                    'by_maf_band': recovery_by_maf_band(results),
                    'degradation': degradation_trend(results),
                    'group_results': results,
                }
                for name, results in simulation_results.items()
            },
            'visualizations': plots,
        }

    def _save_results(self, results: Dict) -> None:
        """Write tables, a YAML record and a text summary to the results directory."""
        group_file = self.results_dir / 'group_results.csv'
        results['group_results'].to_csv(group_file, index=False)
        logger.info(f"Group results saved to {group_file}")

        for name, sim in results['simulation'].items():
            sim_file = self.results_dir / f'simulation_{name}.csv'
            sim['group_results'].to_csv(sim_file, index=False)
            logger.info(f"Simulation results saved to {sim_file}")

        record = {key: value for key, value in results.items() if key != 'group_results'}
        record['simulation'] = {
            name: {key: value for key, value in sim.items() if key != 'group_results'}
            for name, sim in results['simulation'].items()
        }

        results_file = self.results_dir / 'analysis_results.yaml'
        with open(results_file, 'w') as f:
            yaml.safe_dump(self._make_serializable(record), f, default_flow_style=False,
                           indent=2, sort_keys=False)
        logger.info(f"Results saved to {results_file}")

        summary_file = self.results_dir / 'analysis_summary.txt'
        with open(summary_file, 'w') as f:
            self._write_text_summary(results, f)
        logger.info(f"Summary saved to {summary_file}")

    def _make_serializable(self, obj):
        """Convert object to be YAML serializable."""
        if isinstance(obj, dict):
            return {str(k): self._make_serializable(v) for k, v in obj.items()}
        elif isinstance(obj, (list, tuple)):
            return [self._make_serializable(v) for v in obj]
        elif isinstance(obj, np.ndarray):
            return self._make_serializable(obj.tolist())
        elif isinstance(obj, pd.DataFrame):
            return self._make_serializable(obj.astype(object).to_dict('records'))
        elif isinstance(obj, pd.Interval):
            return str(obj)
        elif isinstance(obj, (np.bool_,)):
            return bool(obj)
        elif isinstance(obj, (np.integer, np.floating)):
            obj = obj.item()
        if isinstance(obj, float) and np.isnan(obj):
            return None
        if isinstance(obj, (pd.Timestamp, datetime)):
            return str(obj)
        return obj

    def _write_text_summary(self, results: Dict, f):
        """Write human-readable summary to text file."""
        f.write("GROUPED EIV ANALYSIS SUMMARY\n")
        f.write("=" * 50 + "\n\n")

        f.write(f"Analysis Date: {results['metadata']['analysis_date']}\n")

        summary = results['summary']
        f.write("Dataset Size:\n")
        f.write(f"  - SNPs: {summary['n_snps']:,}\n")
        f.write(f"  - Groups: {summary['n_groups']:,}\n")
        f.write(f"  - Groups without corrected beta: {summary['n_missing_beta']:,}\n")
        f.write(f"  - Groups failing SE homogeneity: {summary['n_heterogeneous_groups']:,}\n\n")

        f.write("MAF TREND OF CORRECTED BETA:\n")
        for name, fit in results['trend'].items():
            if fit is None:
                f.write(f"  • {name}: not fitted (fewer than 3 usable groups)\n")
                continue
            f.write(
                f"  • {name}: intercept {fit['intercept']:.3f}, slope {fit['slope']:.3f} "
                f"(SE {fit['slope_se']:.3f}, p = {fit['slope_pvalue']:.3g}, "
                f"{fit['n_groups']} groups, {fit['n_excluded']} excluded)\n"
            )

        if results['simulation']:
            f.write("\nSIMULATION CHECKS:\n")
            for name, sim in results['simulation'].items():
                recovery = sim['recovery']
                f.write(
                    f"  • {name}: truth {recovery['mean_true_beta']:.2f}, "
                    f"corrected {recovery['mean_corrected_beta']:.2f}, "
                    f"uncorrected {recovery['mean_uncorrected_beta']:.2f} "
                    f"(groups with MAF > {recovery['min_maf']})\n"
                )

        plots = results.get('visualizations', {})
        if 'error' not in plots:
            f.write(f"\nFigures generated: {len(plots)}\n")


def main(argv=None):
    """Main entry point for the pipeline."""
    parser = argparse.ArgumentParser(description='Grouped errors-in-variables analysis of EA and NCB')
    parser.add_argument('config', help='Path to configuration YAML file')
    parser.add_argument('--output-dir', help='Override output directory', default=None)
    parser.add_argument('--skip-simulation', action='store_true', help='Skip simulation checks')
    parser.add_argument('--log-file', help='Also write the log to this file', default=None)

    args = parser.parse_args(argv)

    setup_logging(args.log_file)

    try:
        config = load_config(args.config)
        if args.output_dir:
            config.setdefault('output', {})['results_dir'] = args.output_dir
        if args.skip_simulation:
            config.setdefault('simulation', {})['enabled'] = False

        pipeline = EIVPipeline(config, config_path=args.config)
        results = pipeline.run_full_pipeline()

        print("\n" + "=" * 80)
        print("ANALYSIS COMPLETED SUCCESSFULLY!")
        print("=" * 80)

        for name, fit in results['trend'].items():
            if fit is None:
                print(f"  • {name}: not fitted")
            else:
                print(f"  • {name}: slope {fit['slope']:.2f} (p = {fit['slope_pvalue']:.3g})")

        print(f"\nResults saved to: {pipeline.results_dir}")

        return 0

    except Exception as e:
        logger.error(f"Pipeline execution failed: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
