"""
Per-cell neighborhood diversity: Shannon entropy and perplexity.
"""

import numpy as np
import pandas as pd
from scipy.special import entr

from .aggregation import ProbabilityMatrix


def compute_entropy(probabilities: np.ndarray) -> np.ndarray:
    """
    Shannon entropy (natural log) of each row.

    Zero probabilities contribute 0, so all-zero rows have entropy 0.
    Values are clipped to [0, log(n_types)] to absorb rounding.
    """
    probabilities = np.atleast_2d(np.asarray(probabilities, dtype=np.float64))
    entropy = entr(probabilities).sum(axis=1)
    upper = np.log(probabilities.shape[1]) if probabilities.shape[1] else 0.0
    return np.clip(entropy, 0.0, upper)


def compute_perplexity(entropy: np.ndarray) -> np.ndarray:
    """Effective number of types, exp(entropy)."""
    return np.exp(np.asarray(entropy, dtype=np.float64))


class MetricsCalculator:
    """
    Entropy and perplexity for every row of a ProbabilityMatrix.

    Degenerate rows get entropy 0 and perplexity 1 and keep their
    `degenerate` flag in the output.
    """

    def compute(self, matrix: ProbabilityMatrix) -> pd.DataFrame:
        print("Computing neighborhood entropy and perplexity...")

        entropy = compute_entropy(matrix.values)
        degenerate = matrix.degenerate.to_numpy()
        entropy[degenerate] = 0.0
        perplexity = compute_perplexity(entropy)

        metrics = pd.DataFrame({
            'entropy': entropy,
            'perplexity': perplexity,
            'degenerate': degenerate
        }, index=matrix.cell_ids.copy())

        valid = metrics.loc[~metrics['degenerate']]
        if len(valid):
            print(f"  - Mean entropy: {valid['entropy'].mean():.3f}")
            print(f"  - Mean perplexity: {valid['perplexity'].mean():.3f} "
                  f"(max possible {len(matrix.vocabulary)})")
        return metrics
