"""
Data loading and preprocessing module for GWAS summary statistics.

This module reads the educational attainment (EA) and number-of-children-born (NCB)
summary statistic tables, maps their columns onto a canonical layout, joins them
on rsID and derives the minor allele frequency used downstream.
"""

import pandas as pd
import numpy as np
from typing import Dict, Optional
from pathlib import Path
import logging

logger = logging.getLogger(__name__)

# Lower-cased source header -> canonical column name
COLUMN_ALIASES = {
    'snp': 'rsid',
    'rsid': 'rsid',
    'rs': 'rsid',
    'markername': 'rsid',
    'variant_id': 'rsid',
    'a1': 'effect_allele',
    'ea': 'effect_allele',
    'effect_allele': 'effect_allele',
    'allele1': 'effect_allele',
    'a2': 'other_allele',
    'oa': 'other_allele',
    'nea': 'other_allele',
    'other_allele': 'other_allele',
    'allele2': 'other_allele',
    'beta': 'beta',
    'b': 'beta',
    'effect': 'beta',
    'z': 'beta',
    'zscore': 'beta',
    'z_score': 'beta',
    'se': 'se',
    'standard_error': 'se',
    'stderr': 'se',
    'eaf': 'eaf',
    'freq': 'eaf',
    'frq': 'eaf',
    'freq1': 'eaf',
    'eaf_hrc': 'eaf',
    'effect_allele_frequency': 'eaf',
}

EA_REQUIRED = ['rsid', 'effect_allele', 'beta', 'se']
NCB_REQUIRED = ['rsid', 'effect_allele', 'beta']


class SummaryStatsError(Exception):
    """Raised when a summary statistics table cannot be used."""
    pass


def compute_maf(eaf) -> np.ndarray:
    """Fold an allele frequency onto the minor allele: min(eaf, 1 - eaf)."""
    eaf = np.asarray(eaf, dtype=float)
    return np.where(eaf < 0.5, eaf, 1 - eaf)


class SummaryStatsLoader:
    """
    Loads the two per-SNP tables and produces one merged working table.
    """

    def __init__(self, config: Dict):
        self.config = config
        data_config = config.get('data', {})
        self.ea_file = data_config.get('ea_file')
        self.ncb_file = data_config.get('ncb_file')
        self.sep = data_config.get('sep')
        self.demo = data_config.get('demo', False)
        self.demo_snps = data_config.get('demo_snps', 300000)
        self.demo_seed = data_config.get('demo_seed', 42)
        self.flip_mismatched = data_config.get('flip_mismatched', False)
        self.ea_columns = data_config.get('ea_columns') or {}
        self.ncb_columns = data_config.get('ncb_columns') or {}

    def load_and_merge(self) -> pd.DataFrame:
        """
        Load both tables and join them.

        Returns:
            DataFrame with columns rsid, effect_allele, beta_ea, se_ea, eaf, maf, beta_ncb
        """
        if self.demo:
            logger.warning("Demo mode enabled. Generating sample summary statistics.")
            ea_stats, ncb_stats = generate_sample_summary_stats(
                n_snps=self.demo_snps,
                seed=self.demo_seed
            )
        else:
            logger.info(f"Loading EA summary statistics from {self.ea_file}")
            ea_stats = self.read_table(self.ea_file, self.ea_columns, EA_REQUIRED)
            logger.info(f"Loading NCB summary statistics from {self.ncb_file}")
            ncb_stats = self.read_table(self.ncb_file, self.ncb_columns, NCB_REQUIRED)

        merged = merge_summary_stats(ea_stats, ncb_stats, flip_mismatched=self.flip_mismatched)

        # Source tables are not needed past this point
        del ea_stats, ncb_stats

        return merged

    def read_table(self, path, column_overrides: Optional[Dict] = None,
                   required: Optional[list] = None) -> pd.DataFrame:
        """Read one delimited table and rename its columns to canonical names."""
        if path is None or not Path(path).exists():
            raise SummaryStatsError(f"Summary statistics file not found: {path}")

        if self.sep:
            read_kwargs = {'sep': self.sep}
        elif str(path).endswith(('.csv', '.csv.gz')):
            read_kwargs = {'sep': ','}
        else:
            read_kwargs = {'sep': r'\s+'}

        try:
            table = pd.read_csv(path, **read_kwargs)
        except Exception as e:
            logger.error(f"Error reading {path}: {e}")
            raise SummaryStatsError(f"Could not parse {path}: {e}") from e

        table = canonicalize_columns(table, column_overrides)

        missing = [col for col in (required or []) if col not in table.columns]
        if missing:
            raise SummaryStatsError(
                f"{path} is missing required columns: {', '.join(missing)}"
            )

        logger.info(f"Read {len(table):,} rows from {Path(path).name}")
        return table


def canonicalize_columns(table: pd.DataFrame, column_overrides: Optional[Dict] = None) -> pd.DataFrame:
    """
    Rename source columns to canonical names.

    Explicit overrides ({canonical: source}) win over the alias table.
    Only the first source column mapping to a canonical name is kept.
    """
    overrides = {source: canonical for canonical, source in (column_overrides or {}).items()}

    rename = {}
    for col in table.columns:
        if col in overrides:
            rename[col] = overrides[col]

    taken = set(rename.values())
    for col in table.columns:
        if col in rename:
            continue
        canonical = COLUMN_ALIASES.get(str(col).strip().lower())
        if canonical and canonical not in taken:
            rename[col] = canonical
            taken.add(canonical)

    keep = list(rename.keys())
    return table[keep].rename(columns=rename)


def merge_summary_stats(ea_stats: pd.DataFrame, ncb_stats: pd.DataFrame,
                        flip_mismatched: bool = False) -> pd.DataFrame:
    """
    Inner-join EA and NCB tables on rsID and keep SNPs with a matching effect allele.

    Args:
        ea_stats: canonical EA table (rsid, effect_allele, beta, se, eaf)
        ncb_stats: canonical NCB table (rsid, effect_allele, beta)
        flip_mismatched: if both tables carry other_allele, keep SNPs whose alleles are
            swapped between tables and negate the NCB effect

    Returns:
        Merged working table
    """
    ea = ea_stats.rename(columns={
        'beta': 'beta_ea', 'se': 'se_ea',
        'effect_allele': 'effect_allele_ea', 'other_allele': 'other_allele_ea',
    })
    ncb = ncb_stats.rename(columns={
        'beta': 'beta_ncb', 'se': 'se_ncb',
        'effect_allele': 'effect_allele_ncb', 'other_allele': 'other_allele_ncb',
    })

    if 'eaf' not in ea.columns:
        if 'eaf' not in ncb.columns:
            raise SummaryStatsError("Neither table provides an allele frequency column")
        logger.info("EA table has no allele frequency; using NCB frequencies")
    else:
        ncb = ncb.drop(columns=['eaf'], errors='ignore')

    for name, table in (('EA', ea), ('NCB', ncb)):
        n_dup = int(table['rsid'].duplicated().sum())
        if n_dup:
            logger.warning(f"{name} table has {n_dup:,} duplicated rsIDs; keeping the first")
    ea = ea.drop_duplicates('rsid')
    ncb = ncb.drop_duplicates('rsid')

    merged = pd.merge(ea, ncb, on='rsid', how='inner')
    logger.info(
        f"Joined {len(ea):,} EA and {len(ncb):,} NCB SNPs into {len(merged):,} shared SNPs"
    )

    if len(merged) == 0:
        raise SummaryStatsError("No SNPs shared between the EA and NCB tables")

    allele_ea = merged['effect_allele_ea'].astype(str).str.upper()
    allele_ncb = merged['effect_allele_ncb'].astype(str).str.upper()
    matched = allele_ea == allele_ncb

    if flip_mismatched and {'other_allele_ea', 'other_allele_ncb'} <= set(merged.columns):
        other_ea = merged['other_allele_ea'].astype(str).str.upper()
        other_ncb = merged['other_allele_ncb'].astype(str).str.upper()
        flipped = ~matched & (allele_ea == other_ncb) & (other_ea == allele_ncb)
        merged.loc[flipped, 'beta_ncb'] = -merged.loc[flipped, 'beta_ncb']
        logger.info(f"Flipped NCB effect for {int(flipped.sum()):,} allele-swapped SNPs")
        matched = matched | flipped

    n_mismatch = int((~matched).sum())
    if n_mismatch:
        logger.info(f"Dropped {n_mismatch:,} SNPs with mismatched effect alleles")
    merged = merged[matched].copy()

    merged['effect_allele'] = merged['effect_allele_ea']
    columns = ['rsid', 'effect_allele', 'beta_ea', 'se_ea', 'eaf', 'beta_ncb']
    if 'other_allele_ea' in merged.columns:
        merged['other_allele'] = merged['other_allele_ea']
        columns.insert(2, 'other_allele')
    merged = merged[columns].copy()

    merged = apply_quality_filters(merged)
    merged['maf'] = compute_maf(merged['eaf'])

    logger.info(f"Working table has {len(merged):,} SNPs")
    return merged.reset_index(drop=True)


def apply_quality_filters(table: pd.DataFrame) -> pd.DataFrame:
    """Drop rows with missing values, non-positive SE, or frequencies outside [0, 1]."""
    numeric = ['beta_ea', 'se_ea', 'eaf', 'beta_ncb']
    for col in numeric:
        table[col] = pd.to_numeric(table[col], errors='coerce')

    keep = table[numeric].notna().all(axis=1)
    keep &= table['se_ea'] > 0
    keep &= table['eaf'].between(0, 1)

    n_dropped = int((~keep).sum())
    if n_dropped:
        logger.warning(f"Dropped {n_dropped:,} SNPs failing quality filters")

    return table[keep].copy()


def generate_sample_summary_stats(n_snps: int = 300000, gwas_n: int = 100000,
                                  effect_sd: float = 0.02, ncb_slope: float = -60.0,
                                  maf_range: tuple = (0.005, 0.5),
                                  seed: int = 42) -> tuple:
    """
    Generate EA and NCB tables with a realistic standard-error structure.

    MAF is log-uniform over maf_range so rare variants are well represented, and the
    EA standard error follows 1 / sqrt(2 * maf * (1 - maf) * gwas_n). NCB effects are
    z-score-like, with unit noise around ncb_slope times the true EA effect.

    Returns:
        Tuple of (ea_stats, ncb_stats) in canonical column layout
    """
    rng = np.random.default_rng(seed)

    low, high = maf_range
    maf = np.exp(rng.uniform(np.log(low), np.log(high), n_snps))
    flip = rng.random(n_snps) < 0.5
    eaf = np.where(flip, 1 - maf, maf)

    se = 1.0 / np.sqrt(2 * maf * (1 - maf) * gwas_n)
    true_effect = rng.normal(0, effect_sd, n_snps)
    beta_ea = true_effect + rng.normal(0, se)
    beta_ncb = ncb_slope * true_effect + rng.normal(0, 1.0, n_snps)

    rsids = np.array([f"rs{i + 1}" for i in range(n_snps)])
    alleles = rng.choice(np.array(['A', 'C', 'G', 'T']), n_snps)

    ea_stats = pd.DataFrame({
        'rsid': rsids,
        'effect_allele': alleles,
        'beta': beta_ea,
        'se': se,
        'eaf': eaf,
    })
    ncb_stats = pd.DataFrame({
        'rsid': rsids,
        'effect_allele': alleles,
        'beta': beta_ncb,
    })

    return ea_stats, ncb_stats
