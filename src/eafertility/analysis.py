"""
Grouped errors-in-variables analysis of EA and NCB effect sizes.

SNPs are grouped by quantiles of the EA standard error. Within each group the NCB
effect is regressed on the EA effect and the slope is corrected for attenuation
caused by noise in the EA estimates. The corrected slopes are then regressed on
mean group MAF.
"""

import numpy as np
import pandas as pd
import statsmodels.api as sm
from dataclasses import dataclass, asdict
from typing import Dict, Optional
import logging

logger = logging.getLogger(__name__)


class DegenerateRegressionError(Exception):
    """Raised when a regression has too few usable points or no spread in x."""
    pass


@dataclass
class TrendFit:
    """
    OLS fit of corrected group beta on mean group MAF.
    """
    intercept: float
    slope: float
    slope_pvalue: float
    intercept_se: float
    slope_se: float
    r_squared: float
    n_groups: int                    # groups used in the fit
    n_excluded: int                  # groups dropped for a missing corrected beta
    min_maf: Optional[float] = None  # MAF floor applied, if any

    def to_dict(self) -> Dict:
        return asdict(self)


def correct_attenuation(beta_hat, var_beta_hat, var_error):
    """
    Undo the attenuation of an OLS slope caused by noise in the regressor.

    beta = beta_hat * var_beta_hat / (var_beta_hat - var_error), and NaN wherever
    var_beta_hat - var_error is not positive.
    """
    beta_hat = np.asarray(beta_hat, dtype=float)
    var_beta_hat = np.asarray(var_beta_hat, dtype=float)
    var_beta = var_beta_hat - np.asarray(var_error, dtype=float)

    with np.errstate(divide='ignore', invalid='ignore'):
        beta = np.where(var_beta > 0, beta_hat * var_beta_hat / var_beta, np.nan)
    return beta


class GroupAssigner:
    """
    Assigns SNPs to groups bounded by standard-error quantiles.

    Boundaries sit at probabilities (n / K)^2 for n = 0..K, so groups are narrow at
    low standard error and wide at high standard error.
    """

    def __init__(self, config: Dict):
        self.config = config
        grouping = config.get('analysis', {}).get('grouping', {})
        self.n_groups = grouping.get('n_groups', 1000)
        self.column = grouping.get('column', 'se_ea')

    @staticmethod
    def quantile_probabilities(n_groups: int) -> np.ndarray:
        return (np.arange(n_groups + 1) / n_groups) ** 2

    def boundaries(self, values) -> np.ndarray:
        """Sorted, de-duplicated quantile boundaries of values."""
        if self.n_groups < 1:
            raise ValueError(f"Group count must be positive, got {self.n_groups}")

        values = np.asarray(values, dtype=float)
        if len(values) < 2:
            raise ValueError(f"Need at least two SNPs to form groups, got {len(values)}")

        edges = np.quantile(values, self.quantile_probabilities(self.n_groups))
        return np.unique(edges)

    def assign(self, table: pd.DataFrame) -> pd.DataFrame:
        """
        Label every SNP with its group.

        Args:
            table: working table containing the grouping column

        Returns:
            Copy of table with group, se_lower, se_upper and se_mid columns
        """
        if self.column not in table.columns:
            raise ValueError(f"Grouping column '{self.column}' not found")

        values = table[self.column]
        edges = self.boundaries(values)
        if len(edges) < 2:
            raise ValueError(f"All values of '{self.column}' are identical; cannot form groups")

        n_collapsed = self.n_groups + 1 - len(edges)
        if n_collapsed:
            logger.warning(f"Collapsed {n_collapsed} duplicated quantile boundaries")

        codes = pd.cut(values, bins=edges, labels=False, include_lowest=True, right=True)
        codes = codes.astype(int).to_numpy()

        grouped = table.copy()
        grouped['group'] = codes
        grouped['se_lower'] = edges[codes]
        grouped['se_upper'] = edges[codes + 1]
        grouped['se_mid'] = (grouped['se_lower'] + grouped['se_upper']) / 2

        logger.info(
            f"Assigned {len(grouped):,} SNPs to {grouped['group'].nunique()} of "
            f"{len(edges) - 1} groups"
        )
        return grouped


class GroupEstimator:
    """
    Per-group OLS slope of NCB on EA effects with errors-in-variables correction.
    """

    REQUIRED_COLUMNS = ['group', 'beta_ea', 'beta_ncb', 'se_ea', 'maf']

    def __init__(self, config: Dict):
        self.config = config
        estimation = config.get('analysis', {}).get('estimation', {})
        self.homogeneity_threshold = estimation.get('homogeneity_threshold', 0.1)

    def estimate(self, grouped: pd.DataFrame) -> pd.DataFrame:
        """
        Estimate raw and corrected slopes for every group.

        Args:
            grouped: output of GroupAssigner.assign

        Returns:
            One row per group, ordered by group label
        """
        missing = [col for col in self.REQUIRED_COLUMNS if col not in grouped.columns]
        if missing:
            raise ValueError(f"Grouped table is missing columns: {', '.join(missing)}")

        by_group = grouped.groupby('group', sort=True)

        # Centre within group before forming sums of squares
        x_c = grouped['beta_ea'] - by_group['beta_ea'].transform('mean')
        y_c = grouped['beta_ncb'] - by_group['beta_ncb'].transform('mean')
        sums = pd.DataFrame({
            'group': grouped['group'],
            'sxx': x_c ** 2,
            'sxy': x_c * y_c,
            'se2': grouped['se_ea'] ** 2,
        }).groupby('group', sort=True).agg(
            sxx=('sxx', 'sum'),
            sxy=('sxy', 'sum'),
            var_error=('se2', 'mean'),
        )

        aggregations = {
            'n': ('beta_ea', 'size'),
            'mean_beta_ea': ('beta_ea', 'mean'),
            'mean_beta_ncb': ('beta_ncb', 'mean'),
            'mean_se': ('se_ea', 'mean'),
            'sd_se': ('se_ea', 'std'),
            'mean_maf': ('maf', 'mean'),
        }
        for col in ['se_lower', 'se_upper', 'se_mid']:
            if col in grouped.columns:
                aggregations[col] = (col, 'first')

        results = by_group.agg(**aggregations).join(sums)

        n = results['n'].to_numpy()
        sxx = results['sxx'].to_numpy()
        degenerate = (n < 2) | ~(sxx > 0)

        with np.errstate(divide='ignore', invalid='ignore'):
            var_beta_hat = np.where(n > 1, sxx / (n - 1), np.nan)
            beta_hat = np.where(degenerate, np.nan, results['sxy'].to_numpy() / sxx)

        results['beta_hat'] = beta_hat
        results['var_beta_hat'] = var_beta_hat
        results['var_beta'] = results['var_beta_hat'] - results['var_error']
        results['beta'] = correct_attenuation(beta_hat, var_beta_hat, results['var_error'])
        results['degenerate'] = degenerate
        results['identifiable'] = (results['var_beta'] > 0) & ~degenerate
        results['se_cv'] = results['sd_se'] / results['mean_se']
        results['se_homogeneous'] = results['se_cv'] <= self.homogeneity_threshold

        results = results.drop(columns=['sxx', 'sxy']).reset_index()

        n_degenerate = int(results['degenerate'].sum())
        if n_degenerate:
            logger.warning(
                f"{n_degenerate} groups are degenerate (fewer than two SNPs or no spread "
                f"in EA effects); their slopes are missing"
            )
        n_unidentified = int((~results['identifiable'] & ~results['degenerate']).sum())
        if n_unidentified:
            logger.warning(
                f"{n_unidentified} groups have non-positive signal variance; "
                f"their corrected beta is missing"
            )
        n_heterogeneous = int((~results['se_homogeneous']).sum())
        if n_heterogeneous:
            logger.info(
                f"{n_heterogeneous} groups exceed the SE homogeneity threshold "
                f"(cv > {self.homogeneity_threshold})"
            )

        return results


class TrendFitter:
    """
    OLS of corrected group beta on mean group MAF.
    """

    def __init__(self, config: Dict):
        self.config = config
        trend = config.get('analysis', {}).get('trend', {})
        self.min_maf = trend.get('min_maf', 0.1)
        self.require_homogeneous = trend.get('require_homogeneous', False)

    def fit(self, group_results: pd.DataFrame, min_maf: Optional[float] = None,
            require_homogeneous: Optional[bool] = None) -> TrendFit:
        """
        Fit beta ~ mean_maf over groups with a corrected beta.

        Args:
            group_results: output of GroupEstimator.estimate
            min_maf: if set, keep only groups with mean_maf > min_maf
            require_homogeneous: if True, keep only groups passing the SE homogeneity check

        Returns:
            TrendFit
        """
        if require_homogeneous is None:
            require_homogeneous = self.require_homogeneous

        missing = group_results['beta'].isna()
        n_excluded = int(missing.sum())
        usable = group_results[~missing]

        if min_maf is not None:
            usable = usable[usable['mean_maf'] > min_maf]
        if require_homogeneous:
            usable = usable[usable['se_homogeneous']]

        if len(usable) < 3:
            raise DegenerateRegressionError(
                f"Trend fit needs at least 3 groups with a corrected beta, got {len(usable)}"
            )

        maf = usable['mean_maf'].to_numpy(dtype=float)
        if np.ptp(maf) == 0:
            raise DegenerateRegressionError("All usable groups share the same mean MAF")

        X = sm.add_constant(maf, has_constant='add')
        model = sm.OLS(usable['beta'].to_numpy(dtype=float), X).fit()

        return TrendFit(
            intercept=float(model.params[0]),
            slope=float(model.params[1]),
            slope_pvalue=float(model.pvalues[1]),
            intercept_se=float(model.bse[0]),
            slope_se=float(model.bse[1]),
            r_squared=float(model.rsquared),
            n_groups=len(usable),
            n_excluded=n_excluded,
            min_maf=min_maf,
        )

    def fit_all(self, group_results: pd.DataFrame) -> Dict[str, Optional[TrendFit]]:
        """
        Unfiltered fit plus the MAF-floor robustness fit.

        The robustness fit is None when too few groups pass the MAF floor; the
        unfiltered fit still raises DegenerateRegressionError.
        """
        fits = {'all_groups': self.fit(group_results)}
        if self.min_maf is not None:
            name = f'maf_above_{self.min_maf}'
            try:
                fits[name] = self.fit(group_results, min_maf=self.min_maf)
            except DegenerateRegressionError as e:
                logger.warning(f"Skipping trend fit '{name}': {e}")
                fits[name] = None
        return fits


class EIVAnalyzer:
    """
    Runs grouping, per-group estimation and trend fitting on a working table.
    """

    def __init__(self, config: Dict):
        self.config = config
        self.group_assigner = GroupAssigner(config)
        self.group_estimator = GroupEstimator(config)
        self.trend_fitter = TrendFitter(config)

    def estimate_groups(self, snp_table: pd.DataFrame) -> pd.DataFrame:
        """Group SNPs and return the per-group regression results."""
        grouped = self.group_assigner.assign(snp_table)
        return self.group_estimator.estimate(grouped)

    def run_analysis(self, snp_table: pd.DataFrame) -> Dict:
        """
        Run the full grouped EIV analysis.

        Args:
            snp_table: merged working table from SummaryStatsLoader

        Returns:
            Dictionary with group_results, trend fits and a summary
        """
        results = {}

        logger.info("Estimating per-group slopes...")
        results['group_results'] = self.estimate_groups(snp_table)

        logger.info("Fitting MAF trend...")
        results['trend'] = self.trend_fitter.fit_all(results['group_results'])
        for name, fit in results['trend'].items():
            if fit is None:
                continue
            logger.info(
                f"Trend ({name}): beta = {fit.intercept:.2f} + {fit.slope:.2f} * MAF "
                f"(p = {fit.slope_pvalue:.3g}, {fit.n_groups} groups)"
            )

        results['summary'] = self._generate_summary(snp_table, results)
        return results

    def _generate_summary(self, snp_table: pd.DataFrame, results: Dict) -> Dict:
        """Counts and headline numbers for the report."""
        group_results = results['group_results']
        return {
            'n_snps': len(snp_table),
            'n_groups': len(group_results),
            'n_degenerate_groups': int(group_results['degenerate'].sum()),
            'n_missing_beta': int(group_results['beta'].isna().sum()),
            'n_heterogeneous_groups': int((~group_results['se_homogeneous']).sum()),
            'median_corrected_beta': float(group_results['beta'].median()),
            'median_uncorrected_beta': float(group_results['beta_hat'].median()),
        }
