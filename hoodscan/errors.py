"""
Error and warning kinds raised by the neighborhood scan.

Structural input problems (bad k, missing coordinates, labels outside the
vocabulary) are exceptions and abort the run. Per-row or per-pair conditions
(degenerate neighborhoods, undefined correlations) are warnings: the run
completes and the affected entries are flagged in the results.
"""


class HoodscanError(Exception):
    """Base class for fatal neighborhood scan errors."""


class InvalidK(HoodscanError, ValueError):
    """A neighbor count or cluster count is out of range for the dataset."""


class MissingCoordinates(HoodscanError, ValueError):
    """A cell lacks a finite (x, y) coordinate pair."""


class UnknownType(HoodscanError, ValueError):
    """A cell type label is not part of the declared vocabulary."""

    def __init__(self, labels, message=None):
        self.labels = sorted({str(label) for label in labels})
        if message is None:
            message = f"Cell type label(s) not in vocabulary: {self.labels}"
        super().__init__(message)


class HoodscanWarning(UserWarning):
    """Base class for recoverable neighborhood scan conditions."""


class DegenerateNeighborhood(HoodscanWarning):
    """Every neighbor of a cell has a missing type label."""


class UndefinedCorrelation(HoodscanWarning):
    """A probability column has zero variance, so its correlation is undefined."""
