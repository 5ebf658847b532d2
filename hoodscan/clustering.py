"""
Cellular neighborhood detection by clustering probability rows.

Cells are grouped by the composition of their neighborhood, not by their own
type: two cells of different types end up in the same cellular neighborhood
(CN) when their surroundings look alike. The method follows Schürch et al.
(2020), "Coordinated cellular neighborhoods orchestrate antitumoral immunity
at the colorectal cancer invasive front", Cell.
"""

import numbers
from dataclasses import dataclass
from typing import Iterable, Optional

import numpy as np
import pandas as pd
from scipy.spatial.distance import cdist
from sklearn.cluster import KMeans, MiniBatchKMeans
from sklearn.metrics import (
    calinski_harabasz_score,
    davies_bouldin_score,
    silhouette_score
)

from .aggregation import ProbabilityMatrix
from .cells import CellTable
from .errors import InvalidK

ALGORITHMS = ('kmeans', 'minibatch')
METRICS = ('euclidean', 'hellinger')
RANDOM_STATE = 220705


def check_n_clusters(n_clusters, n_cells: int) -> int:
    if isinstance(n_clusters, bool) or not isinstance(n_clusters, numbers.Integral):
        raise InvalidK(f"Number of clusters must be an integer, got {n_clusters!r}")
    n_clusters = int(n_clusters)
    if n_clusters <= 0:
        raise InvalidK(f"Number of clusters must be positive, got {n_clusters}")
    if n_clusters > n_cells:
        raise InvalidK(f"Cannot form {n_clusters} clusters from {n_cells} cells")
    return n_clusters


@dataclass(frozen=True)
class ClusterAssignment:
    """
    Cluster label per cell plus the mean probability profile of each cluster.

    `labels` maps cell id to a label in [0, n_clusters). `profiles` has one
    row per cluster and one column per type; clusters without cells have a
    NaN profile.
    """
    labels: pd.Series
    profiles: pd.DataFrame
    n_clusters: int
    inertia: float
    algorithm: str
    metric: str
    random_state: int

    @property
    def sizes(self) -> pd.Series:
        return self.labels.value_counts().reindex(range(self.n_clusters), fill_value=0)

    def composition(self, cells: CellTable) -> pd.DataFrame:
        """
        Fraction of each cell's own type within every cluster.

        Rows are clusters, columns the vocabulary; cells with a missing
        label are left out.
        """
        cell_types = pd.Series(cells.labels, index=cells.cell_ids, name='cell_type')
        cell_types = cell_types.reindex(self.labels.index)
        composition = pd.crosstab(self.labels, cell_types, normalize='index')
        return composition.reindex(columns=list(cells.vocabulary), fill_value=0.0)

    def profile_zscores(self) -> pd.DataFrame:
        """Cluster profiles z-scored per type column."""
        return self.profiles.apply(lambda x: (x - x.mean()) / x.std(), axis=0)


class NeighborhoodClusterer:
    """
    Partitions ProbabilityMatrix rows into a fixed number of neighborhoods.

    Parameters:
    -----------
    n_clusters : int
        Number of cellular neighborhoods, 0 < n_clusters <= number of cells
    algorithm : str, default='kmeans'
        'kmeans' (Lloyd k-means) or 'minibatch' (mini-batch k-means for
        large datasets)
    metric : str, default='euclidean'
        'euclidean' on the probability rows, or 'hellinger' (Euclidean
        distance between element-wise square roots)
    random_state : int, default=220705
        Seed; identical input, seed and n_clusters give identical labels
    n_init : int, default=10
        Number of k-means initializations
    max_iter : int, default=300
        Iteration cap per initialization
    """

    def __init__(
            self,
            n_clusters: int,
            algorithm: str = 'kmeans',
            metric: str = 'euclidean',
            random_state: int = RANDOM_STATE,
            n_init: int = 10,
            max_iter: int = 300
    ):
        if algorithm not in ALGORITHMS:
            raise ValueError(f"Unknown algorithm '{algorithm}'. Choose from {list(ALGORITHMS)}")
        if metric not in METRICS:
            raise ValueError(f"Unknown metric '{metric}'. Choose from {list(METRICS)}")
        self.n_clusters = n_clusters
        self.algorithm = algorithm
        self.metric = metric
        self.random_state = random_state
        self.n_init = n_init
        self.max_iter = max_iter

    def _features(self, values: np.ndarray) -> np.ndarray:
        if self.metric == 'hellinger':
            return np.sqrt(values)
        return np.asarray(values, dtype=np.float64)

    def _model(self, n_clusters: int):
        if self.algorithm == 'minibatch':
            return MiniBatchKMeans(
                n_clusters=n_clusters,
                random_state=self.random_state,
                n_init=self.n_init,
                max_iter=self.max_iter,
                batch_size=1024
            )
        return KMeans(
            n_clusters=n_clusters,
            random_state=self.random_state,
            n_init=self.n_init,
            max_iter=self.max_iter
        )

    def fit(self, matrix: ProbabilityMatrix, verbose: bool = True) -> ClusterAssignment:
        n_cells = matrix.shape[0]
        n_clusters = check_n_clusters(self.n_clusters, n_cells)
        if verbose:
            print(f"Detecting {n_clusters} cellular neighborhoods using "
                  f"{self.algorithm} ({self.metric})...")

        features = self._features(matrix.values)
        model = self._model(n_clusters)
        model.fit(features)

        # Nearest center with ties to the lowest cluster index.
        centers = model.cluster_centers_
        distances = cdist(features, centers, 'sqeuclidean')
        labels = distances.argmin(axis=1)
        inertia = float(distances[np.arange(n_cells), labels].sum())

        profiles = np.full((n_clusters, matrix.shape[1]), np.nan)
        for cluster in range(n_clusters):
            members = labels == cluster
            if members.any():
                profiles[cluster] = matrix.values[members].mean(axis=0)

        result = ClusterAssignment(
            labels=pd.Series(labels, index=matrix.cell_ids.copy(), name='cluster'),
            profiles=pd.DataFrame(profiles, index=pd.RangeIndex(n_clusters, name='cluster'),
                                  columns=list(matrix.vocabulary)),
            n_clusters=n_clusters,
            inertia=inertia,
            algorithm=self.algorithm,
            metric=self.metric,
            random_state=self.random_state
        )

        if verbose:
            print(f"  - CN sizes:")
            for cluster, count in result.sizes.items():
                print(f"    CN {cluster}: {count} cells")
        return result


def evaluate_cluster_numbers(
        matrix: ProbabilityMatrix,
        k_range: Optional[Iterable[int]] = None,
        algorithm: str = 'kmeans',
        metric: str = 'euclidean',
        random_state: int = RANDOM_STATE,
        sample_size: Optional[int] = 10000
) -> pd.DataFrame:
    """
    Clustering quality metrics for several candidate numbers of clusters.

    Parameters:
    -----------
    matrix : ProbabilityMatrix
        Probability rows to cluster
    k_range : iterable of int, optional
        Candidate cluster counts. Default: 2 to 15, capped below the number
        of cells
    algorithm, metric, random_state
        As for NeighborhoodClusterer
    sample_size : int, optional
        Cells sampled for the silhouette score; None uses all cells

    Returns:
    --------
    metrics_df : DataFrame
        One row per candidate with inertia (elbow method), silhouette score
        (higher is better), Calinski-Harabasz index (higher is better) and
        Davies-Bouldin index (lower is better). Scores are NaN when fewer
        than two distinct clusters were found.
    """
    n_cells = matrix.shape[0]
    if k_range is None:
        k_range = range(2, min(16, n_cells))
    k_values = list(k_range)

    print(f"Computing clustering metrics for {len(k_values)} candidate cluster numbers...")

    results = []
    for n_clusters in k_values:
        clusterer = NeighborhoodClusterer(
            n_clusters, algorithm=algorithm, metric=metric, random_state=random_state
        )
        assignment = clusterer.fit(matrix, verbose=False)
        features = clusterer._features(matrix.values)
        labels = assignment.labels.to_numpy()

        n_found = len(np.unique(labels))
        if 2 <= n_found < n_cells:
            silhouette = silhouette_score(
                features, labels,
                sample_size=None if sample_size is None or sample_size >= n_cells else sample_size,
                random_state=random_state
            )
            calinski = calinski_harabasz_score(features, labels)
            davies_bouldin = davies_bouldin_score(features, labels)
        else:
            silhouette = calinski = davies_bouldin = np.nan

        print(f"  Testing k = {n_clusters}: inertia={assignment.inertia:.3f}")
        results.append({
            'n_clusters': n_clusters,
            'inertia': assignment.inertia,
            'silhouette_score': silhouette,
            'calinski_harabasz': calinski,
            'davies_bouldin': davies_bouldin
        })

    return pd.DataFrame(results, columns=['n_clusters', 'inertia', 'silhouette_score',
                                          'calinski_harabasz', 'davies_bouldin'])
