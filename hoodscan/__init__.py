"""Neighborhood scanning of spatially resolved single-cell data."""

from .aggregation import HoodAggregator, ProbabilityMatrix, merge_by_group
from .cells import Cell, CellTable
from .clustering import ClusterAssignment, NeighborhoodClusterer, evaluate_cluster_numbers
from .colocalization import ColocalizationAnalyzer, ColocalizationMatrix
from .data_preparation import load_cell_table, read_vocabulary
from .errors import (
    DegenerateNeighborhood,
    HoodscanError,
    HoodscanWarning,
    InvalidK,
    MissingCoordinates,
    UndefinedCorrelation,
    UnknownType
)
from .metrics import MetricsCalculator, compute_entropy, compute_perplexity
from .neighborhoods import NeighborhoodFinder, NeighborSets
from .pipeline import ScanContext, ScanParameters, ScanResult, run_neighborhood_scan
from .probability import KERNELS, HoodProbabilityEstimator, get_kernel
from .spatial_index import SpatialIndex

__version__ = '0.1.0'
