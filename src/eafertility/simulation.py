"""
Simulation checks for the grouped errors-in-variables correction.

Synthetic EA and NCB effects are generated under a known relationship, using the
standard errors and allele frequencies of the real data as a template. The grouped
estimator is re-run on the synthetic table and its corrected slopes are compared
with the known truth.

Recovery is expected to degrade below MAF ~0.05: there the noise variance is close
to the signal variance and standard errors vary more within a group.
"""

import numpy as np
import pandas as pd
from scipy import stats
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence
import copy
import logging

from .analysis import GroupAssigner, GroupEstimator

logger = logging.getLogger(__name__)

DEFAULT_MAF_BANDS = (0.0, 0.01, 0.025, 0.05, 0.1, 0.2, 0.5)


@dataclass
class SimulationConfig:
    """
    Explicit settings for one simulation run.
    """
    n: int = 300000          # simulated SNPs
    seed: int = 2024         # base RNG seed
    noise_sd: float = 1.0    # SD of noise added to the NCB effect
    n_groups: int = 1000     # SE quantile groups

    @classmethod
    def from_dict(cls, config: Dict) -> "SimulationConfig":
        sim = config.get('simulation', {})
        default_groups = config.get('analysis', {}).get('grouping', {}).get('n_groups', cls.n_groups)
        return cls(
            n=int(sim.get('n', cls.n)),
            seed=int(sim.get('seed', cls.seed)),
            noise_sd=float(sim.get('noise_sd', cls.noise_sd)),
            n_groups=int(sim.get('n_groups', default_groups)),
        )


@dataclass
class TrueRelationship:
    """
    Known mapping from (true EA effect, MAF) to true NCB effect.

    The NCB effect is the EA effect times a MAF-dependent slope:
        constant:     value
        linear:       intercept + slope * maf
        proportional: slope * maf
        quadratic:    intercept + linear * maf + quadratic * maf^2
    """
    name: str
    kind: str
    params: Dict = field(default_factory=dict)

    REQUIRED_PARAMS = {
        'constant': ('value',),
        'linear': ('intercept', 'slope'),
        'proportional': ('slope',),
        'quadratic': ('intercept', 'linear', 'quadratic'),
    }

    def __post_init__(self):
        if self.kind not in self.REQUIRED_PARAMS:
            raise ValueError(
                f"Unknown relationship kind '{self.kind}'; "
                f"expected one of {sorted(self.REQUIRED_PARAMS)}"
            )
        missing = [p for p in self.REQUIRED_PARAMS[self.kind] if p not in self.params]
        if missing:
            raise ValueError(f"Relationship '{self.name}' is missing parameters: {missing}")

    def slope(self, maf) -> np.ndarray:
        maf = np.asarray(maf, dtype=float)
        p = self.params
        if self.kind == 'constant':
            return np.full_like(maf, p['value'])
        if self.kind == 'linear':
            return p['intercept'] + p['slope'] * maf
        if self.kind == 'proportional':
            return p['slope'] * maf
        return p['intercept'] + p['linear'] * maf + p['quadratic'] * maf ** 2

    def __call__(self, true_effect, maf) -> np.ndarray:
        return np.asarray(true_effect, dtype=float) * self.slope(maf)


DEFAULT_RELATIONSHIPS = [
    TrueRelationship('constant', 'constant', {'value': -60.0}),
    TrueRelationship('linear', 'linear', {'intercept': -90.0, 'slope': 150.0}),
    TrueRelationship('proportional', 'proportional', {'slope': -250.0}),
    TrueRelationship('quadratic', 'quadratic', {'intercept': -100.0, 'linear': 400.0, 'quadratic': -600.0}),
]


def relationships_from_config(config: Dict) -> List[TrueRelationship]:
    """Build relationships from the simulation section, falling back to the defaults."""
    entries = config.get('simulation', {}).get('relationships')
    if not entries:
        return list(DEFAULT_RELATIONSHIPS)
    return [
        TrueRelationship(entry['name'], entry['kind'], dict(entry.get('params', {})))
        for entry in entries
    ]


class SimulationHarness:
    """
    Generates synthetic summary statistics and re-runs the grouped estimator on them.
    """

    def __init__(self, config: Dict, sim_config: Optional[SimulationConfig] = None):
        self.config = config
        self.sim_config = sim_config or SimulationConfig.from_dict(config)

        analysis_config = copy.deepcopy(config)
        grouping = analysis_config.setdefault('analysis', {}).setdefault('grouping', {})
        grouping['n_groups'] = self.sim_config.n_groups

        self.group_assigner = GroupAssigner(analysis_config)
        self.group_estimator = GroupEstimator(analysis_config)

    @staticmethod
    def true_effect_sd(template: pd.DataFrame) -> float:
        """
        SD of true EA effects implied by the real data: sqrt(var(beta_ea) - mean(se)^2).
        """
        signal_var = template['beta_ea'].var() - template['se_ea'].mean() ** 2
        if not signal_var > 0:
            raise ValueError(
                f"Observed EA variance does not exceed the noise variance "
                f"(difference {signal_var:.3g}); cannot simulate true effects"
            )
        return float(np.sqrt(signal_var))

    def simulate_population(self, template: pd.DataFrame,
                            relationship: Callable, seed=None) -> pd.DataFrame:
        """
        Draw a synthetic SNP table.

        Args:
            template: real working table supplying se_ea and maf
            relationship: f(true_ea, maf) -> true NCB effect
            seed: int or numpy SeedSequence; defaults to the configured seed

        Returns:
            DataFrame with true and observed EA/NCB effects
        """
        n = self.sim_config.n
        rng = np.random.default_rng(self.sim_config.seed if seed is None else seed)

        rows = rng.choice(len(template), size=n, replace=n > len(template))
        se = template['se_ea'].to_numpy(dtype=float)[rows]
        maf = template['maf'].to_numpy(dtype=float)[rows]

        true_beta_ea = rng.normal(0, self.true_effect_sd(template), n)
        beta_ea = true_beta_ea + rng.normal(0, 1, n) * se
        true_beta_ncb = relationship(true_beta_ea, maf)
        beta_ncb = true_beta_ncb + rng.normal(0, self.sim_config.noise_sd, n)

        return pd.DataFrame({
            'rsid': [f"sim{i + 1}" for i in range(n)],
            'se_ea': se,
            'maf': maf,
            'true_beta_ea': true_beta_ea,
            'beta_ea': beta_ea,
            'true_beta_ncb': true_beta_ncb,
            'beta_ncb': beta_ncb,
        })

    def run(self, template: pd.DataFrame, relationship: Callable, seed=None) -> pd.DataFrame:
        """
        Simulate, group, estimate and compare against the known truth.

        Returns:
            Per-group results with true_beta = f(1, mean_maf), error and abs_error
        """
        name = getattr(relationship, 'name', getattr(relationship, '__name__', 'custom'))
        logger.info(f"Simulating {self.sim_config.n:,} SNPs under '{name}' relationship")

        population = self.simulate_population(template, relationship, seed=seed)
        grouped = self.group_assigner.assign(population)
        results = self.group_estimator.estimate(grouped)

        results['relationship'] = name
        results['true_beta'] = relationship(1.0, results['mean_maf'].to_numpy())
        results['error'] = results['beta'] - results['true_beta']
        results['abs_error'] = results['error'].abs()
        results['uncorrected_error'] = results['beta_hat'] - results['true_beta']

        return results

    def run_all(self, template: pd.DataFrame,
                relationships: Sequence[Callable]) -> Dict[str, pd.DataFrame]:
        """Run each relationship independently with its own child seed."""
        children = np.random.SeedSequence(self.sim_config.seed).spawn(len(relationships))
        outputs = {}
        for relationship, child in zip(relationships, children):
            results = self.run(template, relationship, seed=child)
            outputs[results['relationship'].iloc[0]] = results
        return outputs


def recovery_by_maf_band(results: pd.DataFrame,
                         edges: Sequence[float] = DEFAULT_MAF_BANDS) -> pd.DataFrame:
    """
    Mean and median absolute recovery error of corrected betas per MAF band.

    Groups with a missing corrected beta are counted in n_missing, not in the errors.
    """
    bands = pd.cut(results['mean_maf'], bins=list(edges), include_lowest=True)
    summary = results.groupby(bands, observed=False).agg(
        n_groups=('abs_error', 'size'),
        n_missing=('beta', lambda b: int(b.isna().sum())),
        mean_abs_error=('abs_error', 'mean'),
        median_abs_error=('abs_error', 'median'),
        mean_true_beta=('true_beta', 'mean'),
    )
    summary.index.name = 'maf_band'
    return summary.reset_index()


def summarize_recovery(results: pd.DataFrame, min_maf: float = 0.1) -> Dict:
    """
    Compare corrected and uncorrected betas with the truth for groups above min_maf.
    """
    above = results[results['mean_maf'] > min_maf]
    return {
        'min_maf': min_maf,
        'n_groups': len(above),
        'n_missing_beta': int(above['beta'].isna().sum()),
        'mean_true_beta': float(above['true_beta'].mean()),
        'mean_corrected_beta': float(above['beta'].mean()),
        'mean_uncorrected_beta': float(above['beta_hat'].mean()),
        'mean_abs_error': float(above['abs_error'].mean()),
        'mean_abs_uncorrected_error': float(above['uncorrected_error'].abs().mean()),
    }


def degradation_trend(results: pd.DataFrame, max_maf: float = 0.05) -> Dict:
    """
    Spearman correlation of absolute recovery error with mean MAF below max_maf.

    A negative rho means the error grows as MAF falls. Groups with a missing
    corrected beta are left out; rho and p are NaN with fewer than three groups.
    """
    below = results[(results['mean_maf'] < max_maf) & results['abs_error'].notna()]

    rho, pvalue = np.nan, np.nan
    if len(below) >= 3:
        rho, pvalue = stats.spearmanr(below['mean_maf'], below['abs_error'])

    return {
        'max_maf': max_maf,
        'n_groups': len(below),
        'spearman_rho': float(rho),
        'pvalue': float(pvalue),
    }
