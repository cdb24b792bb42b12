"""
Visualization module for the grouped EIV analysis.

"""

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns
import plotly.express as px
from typing import Dict, Optional
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


class EIVPlotter:
    """
    Figures for group estimates, trend fits and simulation checks.
    """

    def __init__(self, config: Dict):
        self.config = config
        vis_config = config.get('visualization', {})
        self.output_formats = vis_config.get('output_format', ['png'])
        self.dpi = vis_config.get('dpi', 150)
        self.figure_size = tuple(vis_config.get('figure_size', [10, 6]))
        self.color_palette = vis_config.get('color_palette', 'Set1')
        self.results_dir = Path(config.get('output', {}).get('results_dir', 'results'))

        plt.style.use('default')
        sns.set_palette(self.color_palette)

        self.results_dir.mkdir(parents=True, exist_ok=True)

    def create_report(self, analysis_results: Dict, snp_table: Optional[pd.DataFrame] = None,
                      simulation_results: Optional[Dict[str, pd.DataFrame]] = None) -> Dict:
        """
        Create every figure the available results support.

        Args:
            analysis_results: output of EIVAnalyzer.run_analysis
            snp_table: merged working table
            simulation_results: {relationship name: per-group simulation results}

        Returns:
            Dictionary with paths to generated plots
        """
        plot_paths = {}

        logger.info("Creating figures...")

        group_results = analysis_results.get('group_results')
        if group_results is not None and len(group_results) > 0:
            plot_paths['group_betas'] = self._plot_group_betas(
                group_results, analysis_results.get('trend', {})
            )
            plot_paths['se_homogeneity'] = self._plot_se_homogeneity(group_results)
            plot_paths['group_betas_interactive'] = self._plot_interactive_groups(group_results)

        if snp_table is not None and len(snp_table) > 0:
            plot_paths['snp_overview'] = self._plot_snp_overview(snp_table)

        for name, results in (simulation_results or {}).items():
            plot_paths[f'simulation_{name}'] = self._plot_simulation_recovery(name, results)

        return {key: path for key, path in plot_paths.items() if path}

    def _plot_group_betas(self, group_results: pd.DataFrame, trend: Dict) -> Optional[str]:
        """Corrected and uncorrected group slopes against mean MAF, with trend lines."""
        try:
            fig, ax = plt.subplots(figsize=self.figure_size)

            ax.scatter(group_results['mean_maf'], group_results['beta_hat'], s=12,
                       alpha=0.5, color='grey', label='Uncorrected')
            ax.scatter(group_results['mean_maf'], group_results['beta'], s=12,
                       alpha=0.7, color='steelblue', label='EIV corrected')

            maf_grid = np.linspace(0, group_results['mean_maf'].max(), 100)
            fitted = [(name, fit) for name, fit in trend.items() if fit is not None]
            for (name, fit), style in zip(fitted, ['-', '--', ':']):
                lower = fit.min_maf if fit.min_maf is not None else 0
                grid = maf_grid[maf_grid > lower]
                ax.plot(grid, fit.intercept + fit.slope * grid, linestyle=style, color='darkred',
                        label=f'{name}: slope {fit.slope:.1f} (p={fit.slope_pvalue:.2g})')

            ax.axhline(0, color='black', linewidth=0.5)
            ax.set_xlabel('Mean minor allele frequency of group')
            ax.set_ylabel('Effect of EA on NCB (per group)')
            ax.set_title('Group Estimates of the EA-NCB Relationship')
            ax.legend()
            ax.grid(True, alpha=0.3)

            plt.tight_layout()

            path = self._save_plot(fig, 'group_betas')
            plt.close(fig)

            return path

        except Exception as e:
            logger.warning(f"Failed to create group beta plot: {e}")
            return None

    def _plot_se_homogeneity(self, group_results: pd.DataFrame) -> Optional[str]:
        """Within-group SE coefficient of variation against mean MAF."""
        try:
            threshold = self.config.get('analysis', {}).get('estimation', {}).get(
                'homogeneity_threshold', 0.1
            )

            fig, ax = plt.subplots(figsize=self.figure_size)
            ax.scatter(group_results['mean_maf'], group_results['se_cv'], s=10, alpha=0.7,
                       c=np.where(group_results['se_homogeneous'], 'seagreen', 'orange'))
            ax.axhline(threshold, color='red', linestyle='--', label=f'Threshold: {threshold}')
            ax.set_xlabel('Mean minor allele frequency of group')
            ax.set_ylabel('SD(SE) / mean(SE)')
            ax.set_title('Within-Group Heterogeneity of Standard Errors')
            ax.legend()
            ax.grid(True, alpha=0.3)

            plt.tight_layout()

            path = self._save_plot(fig, 'se_homogeneity')
            plt.close(fig)

            return path

        except Exception as e:
            logger.warning(f"Failed to create SE homogeneity plot: {e}")
            return None

    def _plot_snp_overview(self, snp_table: pd.DataFrame) -> Optional[str]:
        """MAF and SE distributions of the working table."""
        try:
            fig, axes = plt.subplots(1, 2, figsize=(15, 5))

            axes[0].hist(snp_table['maf'].dropna(), bins=50, alpha=0.7, color='skyblue')
            axes[0].set_xlabel('Minor Allele Frequency')
            axes[0].set_ylabel('Number of SNPs')
            axes[0].set_title('MAF Distribution')
            axes[0].grid(True, alpha=0.3)

            axes[1].hist(np.log10(snp_table['se_ea'].dropna()), bins=50, alpha=0.7,
                         color='lightcoral')
            axes[1].set_xlabel('log10(SE of EA effect)')
            axes[1].set_ylabel('Number of SNPs')
            axes[1].set_title('Standard Error Distribution')
            axes[1].grid(True, alpha=0.3)

            plt.tight_layout()

            path = self._save_plot(fig, 'snp_overview')
            plt.close(fig)

            return path

        except Exception as e:
            logger.warning(f"Failed to create SNP overview plot: {e}")
            return None

    def _plot_simulation_recovery(self, name: str, results: pd.DataFrame) -> Optional[str]:
        """Recovered group slopes against the known true relationship."""
        try:
            fig, ax = plt.subplots(figsize=self.figure_size)

            ax.scatter(results['mean_maf'], results['beta_hat'], s=10, alpha=0.5,
                       color='grey', label='Uncorrected')
            ax.scatter(results['mean_maf'], results['beta'], s=10, alpha=0.7,
                       color='steelblue', label='EIV corrected')

            ordered = results.sort_values('mean_maf')
            ax.plot(ordered['mean_maf'], ordered['true_beta'], color='black', linewidth=2,
                    label='Truth')
            ax.axvline(0.05, color='orange', linestyle=':', label='MAF = 0.05')

            ax.set_xlabel('Mean minor allele frequency of group')
            ax.set_ylabel('Effect of EA on NCB (per group)')
            ax.set_title(f'Simulation: {name} relationship')
            ax.legend()
            ax.grid(True, alpha=0.3)

            plt.tight_layout()

            path = self._save_plot(fig, f'simulation_{name}')
            plt.close(fig)

            return path

        except Exception as e:
            logger.warning(f"Failed to create simulation plot for {name}: {e}")
            return None

    def _plot_interactive_groups(self, group_results: pd.DataFrame) -> Optional[str]:
        """Interactive scatter of corrected group slopes."""
        try:
            if 'html' not in self.output_formats:
                return None

            plot_data = group_results.dropna(subset=['beta'])
            if len(plot_data) == 0:
                return None

            fig = px.scatter(
                plot_data,
                x='mean_maf',
                y='beta',
                color='se_homogeneous',
                title='EIV-Corrected Group Estimates',
                labels={
                    'mean_maf': 'Mean MAF',
                    'beta': 'Corrected beta',
                    'se_homogeneous': 'SE homogeneous',
                },
                hover_data=['group', 'n', 'beta_hat', 'mean_se', 'se_cv']
            )
            fig.update_layout(width=1200, height=600)

            return self._save_plotly_figure(fig, 'group_betas_interactive')

        except Exception as e:
            logger.warning(f"Failed to create interactive group plot: {e}")
            return None

    def _save_plot(self, fig, filename: str) -> Optional[str]:
        """Save matplotlib figure in multiple formats."""
        saved_paths = []

        for fmt in self.output_formats:
            if fmt in ['png', 'pdf', 'svg', 'jpg']:
                filepath = self.results_dir / f"{filename}.{fmt}"
                fig.savefig(filepath, dpi=self.dpi, bbox_inches='tight', format=fmt)
                saved_paths.append(str(filepath))

        return saved_paths[0] if saved_paths else None

    def _save_plotly_figure(self, fig, filename: str) -> Optional[str]:
        """Save plotly figure as standalone HTML."""
        filepath = self.results_dir / f"{filename}.html"
        fig.write_html(str(filepath))
        return str(filepath)
