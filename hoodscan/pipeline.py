"""
End-to-end neighborhood scan.

Runs the stages in order, passing immutable values from one to the next:

1. SPATIAL INDEX: k-d tree over cell coordinates
2. NEIGHBORS: the k nearest other cells of every cell
3. PROBABILITIES: distance-weighted type distribution of each neighborhood
4. AGGREGATION: one cells x types probability matrix
5. DOWNSTREAM: entropy/perplexity, type colocalization and cellular
   neighborhood clustering, all started only once the matrix is complete
"""

import json
import time
import warnings
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict, Optional, Tuple

import anndata as ad
import numpy as np
import pandas as pd

from .aggregation import HoodAggregator, ProbabilityMatrix
from .cells import CellTable
from .clustering import RANDOM_STATE, ClusterAssignment, NeighborhoodClusterer, check_n_clusters
from .colocalization import ColocalizationAnalyzer, ColocalizationMatrix
from .errors import HoodscanWarning
from .metrics import MetricsCalculator
from .neighborhoods import NeighborhoodFinder, NeighborSets
from .probability import HoodProbabilityEstimator
from .spatial_index import SpatialIndex, check_k


@dataclass(frozen=True)
class ScanParameters:
    """
    Parameters of one neighborhood scan.

    Parameters:
    -----------
    k : int, default=20
        Number of nearest neighbors per cell
    n_clusters : int, optional
        Number of cellular neighborhoods; clustering is skipped when None
    kernel : str, default='gaussian'
        Distance kernel: 'gaussian', 'inverse' or 'uniform'
    tau : float, optional
        Gaussian bandwidth; None derives it from the data
    offset, power : float
        Inverse-distance kernel parameters
    cluster_algorithm : str, default='kmeans'
        'kmeans' or 'minibatch'
    cluster_metric : str, default='euclidean'
        'euclidean' or 'hellinger'
    correlation_method : str, default='pearson'
        'pearson' or 'spearman'
    random_state : int
        Clustering seed
    n_init : int
        k-means initializations
    n_workers : int
        Worker threads for the per-cell stages
    batch_size : int
        Cells per worker task
    """
    k: int = 20
    n_clusters: Optional[int] = None
    kernel: str = 'gaussian'
    tau: Optional[float] = None
    offset: float = 1.0
    power: float = 1.0
    cluster_algorithm: str = 'kmeans'
    cluster_metric: str = 'euclidean'
    correlation_method: str = 'pearson'
    random_state: int = RANDOM_STATE
    n_init: int = 10
    n_workers: int = 1
    batch_size: int = 2048

    def kernel_params(self) -> Dict[str, float]:
        if self.kernel == 'gaussian':
            return {'tau': self.tau}
        if self.kernel == 'inverse':
            return {'offset': self.offset, 'power': self.power}
        return {}

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class ScanContext:
    """Run-scoped state: the cells, the parameters and the shared spatial index."""
    cells: CellTable
    parameters: ScanParameters
    index: SpatialIndex

    @classmethod
    def create(cls, cells: CellTable, parameters: ScanParameters) -> 'ScanContext':
        # Fail on bad k or K before any work is done.
        check_k(parameters.k, cells.n_cells)
        if parameters.n_clusters is not None:
            check_n_clusters(parameters.n_clusters, cells.n_cells)
        return cls(cells, parameters, SpatialIndex(cells.coordinates))


@dataclass(frozen=True)
class ScanResult:
    """All artifacts of one neighborhood scan."""
    parameters: ScanParameters
    kernel: Dict[str, object]
    neighbors: NeighborSets
    probabilities: ProbabilityMatrix
    metrics: pd.DataFrame
    colocalization: ColocalizationMatrix
    clusters: Optional[ClusterAssignment]
    warnings: Tuple[str, ...] = ()

    @property
    def vocabulary(self) -> tuple:
        return self.probabilities.vocabulary

    def summary(self) -> dict:
        """JSON-ready description of the run and its headline numbers."""
        summary = {
            'analysis_type': 'Neighborhood Scan',
            'total_cells': int(self.probabilities.shape[0]),
            'vocabulary': list(self.vocabulary),
            'parameters': self.parameters.to_dict(),
            'kernel': self.kernel,
            'degenerate_cells': int(self.metrics['degenerate'].sum()),
            'mean_entropy': float(self.metrics['entropy'].mean()),
            'mean_perplexity': float(self.metrics['perplexity'].mean()),
            'undefined_correlations': list(self.colocalization.undefined),
            'warnings': list(self.warnings),
        }
        if self.clusters is not None:
            summary['cn_distribution'] = self.clusters.sizes.to_dict()
            summary['cn_profiles'] = self.clusters.profiles.to_dict(orient='index')
        return _convert_to_native(summary)

    def save(self, output_dir) -> Path:
        """
        Write the results as CSV tables plus a JSON summary.

        Files: hood_probabilities.csv, hood_metrics.csv, colocalization.csv,
        scan_summary.json and, when clustering ran, clusters.csv and
        cluster_profiles.csv.
        """
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        print(f"\nSaving results to: {output_dir}")

        self.probabilities.to_frame().to_csv(output_dir / 'hood_probabilities.csv',
                                             index_label='cell_id')
        self.metrics.to_csv(output_dir / 'hood_metrics.csv', index_label='cell_id')
        self.colocalization.correlations.to_csv(output_dir / 'colocalization.csv')
        if self.clusters is not None:
            self.clusters.labels.to_csv(output_dir / 'clusters.csv', index_label='cell_id')
            self.clusters.profiles.to_csv(output_dir / 'cluster_profiles.csv')

        with open(output_dir / 'scan_summary.json', 'w') as f:
            json.dump(self.summary(), f, indent=2)

        print(f"  ✓ Saved {len(list(output_dir.glob('*')))} files")
        return output_dir

    def annotate(self, adata: ad.AnnData, copy: bool = False) -> Optional[ad.AnnData]:
        """
        Store the results on an AnnData object with the same cells.

        Writes obsm['hood_probabilities'], obs['hood_entropy'],
        obs['hood_perplexity'], obs['hood_degenerate'], obs['hood_cluster'],
        obsp['hood_connectivities'], obsp['hood_distances'] and
        uns['hoodscan']. Cells are matched by obs_names, so their order may
        differ from the scan order.
        """
        adata = adata.copy() if copy else adata
        cell_ids = self.probabilities.cell_ids
        obs_names = pd.Index([str(name) for name in adata.obs_names])
        order = cell_ids.get_indexer(obs_names)
        if len(obs_names) != len(cell_ids) or (order < 0).any():
            raise ValueError("AnnData obs_names do not match the scanned cells")

        adata.obsm['hood_probabilities'] = self.probabilities.values[order].copy()
        adata.obs['hood_entropy'] = self.metrics['entropy'].to_numpy()[order]
        adata.obs['hood_perplexity'] = self.metrics['perplexity'].to_numpy()[order]
        adata.obs['hood_degenerate'] = self.metrics['degenerate'].to_numpy()[order]
        if self.clusters is not None:
            labels = self.clusters.labels.to_numpy()[order]
            adata.obs['hood_cluster'] = pd.Categorical(
                labels, categories=list(range(self.clusters.n_clusters))
            )

        connectivities, distances = self.neighbors.to_sparse()
        adata.obsp['hood_connectivities'] = connectivities[order][:, order]
        adata.obsp['hood_distances'] = distances[order][:, order]

        # h5ad cannot store None
        parameters = {key: value for key, value in self.parameters.to_dict().items()
                      if value is not None}
        adata.uns['hoodscan'] = {
            'vocabulary': list(self.vocabulary),
            'parameters': _convert_to_native(parameters),
            'kernel': _convert_to_native(self.kernel),
            'colocalization': self.colocalization.correlations.to_numpy(),
            'undefined_correlations': list(self.colocalization.undefined),
        }
        if self.clusters is not None:
            adata.uns['hoodscan']['cluster_profiles'] = self.clusters.profiles.to_numpy()

        return adata if copy else None


def _convert_to_native(obj):
    # numpy scalars and arrays are not JSON serializable
    if isinstance(obj, np.integer):
        return int(obj)
    elif isinstance(obj, np.floating):
        return None if np.isnan(obj) else float(obj)
    elif isinstance(obj, float):
        return None if np.isnan(obj) else obj
    elif isinstance(obj, np.bool_):
        return bool(obj)
    elif isinstance(obj, np.ndarray):
        return [_convert_to_native(item) for item in obj.tolist()]
    elif isinstance(obj, dict):
        return {str(k): _convert_to_native(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [_convert_to_native(item) for item in obj]
    return obj


def run_neighborhood_scan(
        cells: CellTable,
        parameters: Optional[ScanParameters] = None,
        **overrides
) -> ScanResult:
    """
    Run the complete neighborhood scan on one cell table.

    Parameters:
    -----------
    cells : CellTable
        Validated cells with coordinates and type labels
    parameters : ScanParameters, optional
        Run parameters; defaults when omitted
    **overrides
        Individual ScanParameters fields, e.g. k=10, n_clusters=6

    Returns:
    --------
    result : ScanResult

    Raises InvalidK, MissingCoordinates or UnknownType on invalid input.
    Degenerate neighborhoods and undefined correlations do not stop the run;
    they are flagged in the result and listed in `result.warnings`.
    """
    if parameters is None:
        parameters = ScanParameters(**overrides)
    elif overrides:
        parameters = ScanParameters(**{**parameters.to_dict(), **overrides})

    print("=" * 60)
    print("NEIGHBORHOOD SCAN PIPELINE")
    print("=" * 60)
    print(f"Cells: {cells.n_cells}, types: {len(cells.vocabulary)}")
    print(f"Parameters: k={parameters.k}, kernel={parameters.kernel}, "
          f"n_clusters={parameters.n_clusters}")

    start_time = time.time()
    context = ScanContext.create(cells, parameters)

    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter('always', HoodscanWarning)

        # Step 1-2: neighbor sets
        neighbors = NeighborhoodFinder(
            parameters.k,
            n_workers=parameters.n_workers,
            batch_size=parameters.batch_size
        ).find(context.cells, index=context.index)

        # Step 3: probability rows
        estimator = HoodProbabilityEstimator(
            context.cells.vocabulary,
            kernel=parameters.kernel,
            n_workers=parameters.n_workers,
            batch_size=parameters.batch_size,
            **parameters.kernel_params()
        )
        blocks = estimator.estimate(context.cells, neighbors)

        # Step 4: the matrix is complete before anything downstream starts
        probabilities = HoodAggregator(context.cells.vocabulary, context.cells.cell_ids).aggregate(blocks)

        # Step 5: downstream analyses
        metrics = MetricsCalculator().compute(probabilities)
        colocalization = ColocalizationAnalyzer(method=parameters.correlation_method).compute(probabilities)

        clusters = None
        if parameters.n_clusters is not None:
            clusters = NeighborhoodClusterer(
                parameters.n_clusters,
                algorithm=parameters.cluster_algorithm,
                metric=parameters.cluster_metric,
                random_state=parameters.random_state,
                n_init=parameters.n_init
            ).fit(probabilities)

    for caught_warning in caught:
        warnings.warn_explicit(caught_warning.message, caught_warning.category,
                               caught_warning.filename, caught_warning.lineno)
    scan_warnings = tuple(
        f"{w.category.__name__}: {w.message}" for w in caught
        if issubclass(w.category, HoodscanWarning)
    )

    kernel = {'name': estimator.kernel_.name, **estimator.kernel_.params()}
    result = ScanResult(
        parameters=parameters,
        kernel=kernel,
        neighbors=neighbors,
        probabilities=probabilities,
        metrics=metrics,
        colocalization=colocalization,
        clusters=clusters,
        warnings=scan_warnings
    )

    print("\n" + "=" * 60)
    print("PIPELINE COMPLETE!")
    print("=" * 60)
    print(f"Total processing time: {time.time() - start_time:.1f} seconds")
    if scan_warnings:
        print(f"Warnings ({len(scan_warnings)}):")
        for message in scan_warnings:
            print(f"  - {message}")
    return result
