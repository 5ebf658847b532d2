import numpy as np
import pytest

from hoodscan.cells import CellTable
from hoodscan.errors import DegenerateNeighborhood, UnknownType
from hoodscan.neighborhoods import NeighborhoodFinder
from hoodscan.probability import (
    GaussianKernel,
    HoodProbabilityEstimator,
    InverseDistanceKernel,
    UniformKernel,
    get_kernel
)


def test_uniform_kernel_gives_composition_fractions():
    estimator = HoodProbabilityEstimator(['A', 'B', 'C'], kernel='uniform')
    row, degenerate = estimator.estimate_row(['A', 'B', 'A', 'A'], [1, 2, 3, 4])
    assert not degenerate
    assert row.to_dict() == pytest.approx({'A': 0.75, 'B': 0.25, 'C': 0.0})


def test_gaussian_kernel_weights():
    estimator = HoodProbabilityEstimator(['A', 'B'], kernel='gaussian', tau=1.0)
    row, _ = estimator.estimate_row(['A', 'B'], [0.0, 1.0])
    expected_a = 1.0 / (1.0 + np.exp(-1.0))
    assert row['A'] == pytest.approx(expected_a)
    assert row['B'] == pytest.approx(1.0 - expected_a)


def test_inverse_kernel_weights():
    estimator = HoodProbabilityEstimator(['A', 'B'], kernel='inverse')
    row, _ = estimator.estimate_row(['A', 'B'], [0.0, 1.0])
    assert row['A'] == pytest.approx(2.0 / 3.0)
    assert row['B'] == pytest.approx(1.0 / 3.0)


@pytest.mark.parametrize('kernel', ['gaussian', 'inverse'])
def test_closer_neighbors_weigh_more(kernel):
    estimator = HoodProbabilityEstimator(['A', 'B'], kernel=kernel)
    row, _ = estimator.estimate_row(['A', 'B'], [2.0, 5.0])
    assert row['A'] > row['B']
    assert row.sum() == pytest.approx(1.0, abs=1e-12)


def test_far_neighborhood_does_not_underflow():
    estimator = HoodProbabilityEstimator(['A', 'B'], kernel='gaussian', tau=1.0)
    row, degenerate = estimator.estimate_row(['A', 'B'], [1000.0, 1000.5])
    assert not degenerate
    assert row.sum() == pytest.approx(1.0, abs=1e-12)
    assert row['A'] == pytest.approx(1.0)


def test_missing_labels_contribute_nothing():
    estimator = HoodProbabilityEstimator(['A', 'B'], kernel='uniform')
    row, degenerate = estimator.estimate_row(['A', None, 'B', None], [1, 1, 1, 1])
    assert not degenerate
    assert row.tolist() == pytest.approx([0.5, 0.5])


def test_all_missing_labels_give_degenerate_row():
    estimator = HoodProbabilityEstimator(['A', 'B'], kernel='gaussian', tau=2.0)
    row, degenerate = estimator.estimate_row([None, None], [1.0, 2.0])
    assert degenerate
    assert row.tolist() == [0.0, 0.0]


def test_unknown_neighbor_type_raises():
    estimator = HoodProbabilityEstimator(['A', 'B'])
    with pytest.raises(UnknownType):
        estimator.estimate_row(['A', 'Unknown'], [1.0, 2.0])


def test_estimate_batch_rows_sum_to_one():
    rng = np.random.default_rng(3)
    codes = rng.integers(-1, 4, size=(200, 8))
    codes[0] = -1
    distances = np.sort(rng.uniform(0, 40, size=(200, 8)), axis=1)
    estimator = HoodProbabilityEstimator(['A', 'B', 'C', 'D'], kernel='gaussian', tau=50.0)
    probabilities, degenerate = estimator.estimate_batch(codes, distances)
    sums = probabilities.sum(axis=1)
    assert degenerate[0]
    np.testing.assert_allclose(sums[~degenerate], 1.0, atol=1e-9)
    np.testing.assert_array_equal(sums[degenerate], 0.0)
    assert ((probabilities >= 0) & (probabilities <= 1)).all()


def test_estimate_batch_shape_mismatch():
    estimator = HoodProbabilityEstimator(['A'])
    with pytest.raises(ValueError):
        estimator.estimate_batch(np.zeros((2, 3), dtype=int), np.zeros((2, 2)))


def test_gaussian_fit_uses_median_squared_distance():
    kernel = GaussianKernel().fit(np.array([[0.0, 1.0], [2.0, 3.0]]))
    assert kernel.tau == pytest.approx(4.0)
    assert GaussianKernel().fit(np.zeros((3, 2))).tau == 1.0
    assert GaussianKernel(tau=7.0).fit(np.ones((2, 2))).tau == 7.0


def test_gaussian_needs_tau():
    with pytest.raises(ValueError):
        GaussianKernel().log_weights(np.ones(3))


def test_kernel_parameter_validation():
    with pytest.raises(ValueError):
        GaussianKernel(tau=0)
    with pytest.raises(ValueError):
        InverseDistanceKernel(offset=0)
    with pytest.raises(ValueError):
        InverseDistanceKernel(power=-1)


def test_get_kernel():
    assert isinstance(get_kernel('uniform'), UniformKernel)
    kernel = InverseDistanceKernel(power=2.0)
    assert get_kernel(kernel) is kernel
    with pytest.raises(ValueError, match='Unknown kernel'):
        get_kernel('epanechnikov')


def test_empty_vocabulary_raises():
    with pytest.raises(ValueError):
        HoodProbabilityEstimator([])


def test_estimate_over_table(tissue_cells):
    neighbors = NeighborhoodFinder(8).find(tissue_cells)
    estimator = HoodProbabilityEstimator(tissue_cells.vocabulary, batch_size=25)
    blocks = estimator.estimate(tissue_cells, neighbors)
    assert len(blocks) == 5
    assert sum(len(block.positions) for block in blocks) == 120
    assert estimator.kernel_.tau == pytest.approx(np.median(neighbors.distances ** 2))
    for block in blocks:
        np.testing.assert_allclose(block.probabilities.sum(axis=1), 1.0, atol=1e-9)


def test_estimate_rejects_types_outside_estimator_vocabulary(four_cells):
    neighbors = NeighborhoodFinder(2).find(four_cells)
    estimator = HoodProbabilityEstimator(['A'])
    with pytest.raises(UnknownType):
        estimator.estimate(four_cells, neighbors)


def test_estimate_warns_on_degenerate_neighborhoods():
    cells = CellTable(
        ['n0', 'n1', 'n2', 'a', 'b'],
        [[0, 0], [1, 0], [2, 0], [100, 0], [101, 0]],
        [None, None, None, 'A', 'B']
    )
    neighbors = NeighborhoodFinder(2).find(cells)
    estimator = HoodProbabilityEstimator(cells.vocabulary, kernel='uniform')
    with pytest.warns(DegenerateNeighborhood, match='3 cell'):
        blocks = estimator.estimate(cells, neighbors)
    assert blocks[0].degenerate.tolist() == [True, True, True, False, False]
