"""
eafertility
"""

__version__ = "0.1.0"

from .data import SummaryStatsLoader, SummaryStatsError, compute_maf
from .analysis import (
    GroupAssigner,
    GroupEstimator,
    TrendFitter,
    TrendFit,
    EIVAnalyzer,
    DegenerateRegressionError,
)
from .simulation import SimulationHarness, SimulationConfig, TrueRelationship
from .visualization import EIVPlotter
from .pipeline import EIVPipeline, PipelineStageError

__all__ = [
    "SummaryStatsLoader",
    "SummaryStatsError",
    "compute_maf",
    "GroupAssigner",
    "GroupEstimator",
    "TrendFitter",
    "TrendFit",
    "EIVAnalyzer",
    "DegenerateRegressionError",
    "SimulationHarness",
    "SimulationConfig",
    "TrueRelationship",
    "EIVPlotter",
    "EIVPipeline",
    "PipelineStageError",
]
