"""
Tests for GaussianFactor against dense numpy results.
"""

import numpy as np
import pytest

from treemap_slam.backend.fusion.gaussian_info import (
    GaussianFactor,
    multiply,
    multiply_all,
    update_cost,
)
from treemap_slam.common import constants


def _spd(rng, k):
    A = rng.standard_normal((k, k))
    return A @ A.T + k * np.eye(k)


class TestConstruction:
    """Tests for the constructors."""

    def test_from_moments_round_trip(self, rng):
        cov = np.linalg.inv(_spd(rng, 3))
        mean = np.array([1.0, -2.0, 0.5])
        f = GaussianFactor.from_moments((4, 7, 9), mean, cov)
        assert np.allclose(f.Lambda, np.linalg.inv(cov))
        m = f.mean()
        assert np.allclose([m[4], m[7], m[9]], mean)

    def test_duplicate_ids_rejected(self):
        with pytest.raises(ValueError):
            GaussianFactor.from_information((1, 1), np.eye(2), np.zeros(2))

    def test_shape_mismatch_rejected(self):
        with pytest.raises(ValueError):
            GaussianFactor.from_information((1, 2), np.eye(2), np.zeros(3))

    def test_empty(self):
        f = GaussianFactor.empty()
        assert f.dimension == 0
        assert f.mean() == {}


class TestMultiply:
    """Tests for multiply/multiply_all."""

    def test_multiply_adds_embedded_information(self, rng):
        a = GaussianFactor.from_information((1, 3), _spd(rng, 2), rng.standard_normal(2))
        b = GaussianFactor.from_information((2, 3), _spd(rng, 2), rng.standard_normal(2))
        c = multiply(a, b)
        assert c.features == (1, 2, 3)
        expected = np.zeros((3, 3))
        expected[np.ix_([0, 2], [0, 2])] += a.Lambda
        expected[np.ix_([1, 2], [1, 2])] += b.Lambda
        assert np.allclose(c.Lambda, expected)
        assert np.allclose(c.eta, [a.eta[0], b.eta[0], a.eta[1] + b.eta[1]])

    def test_multiply_is_commutative(self, rng):
        a = GaussianFactor.from_information((1, 3), _spd(rng, 2), rng.standard_normal(2))
        b = GaussianFactor.from_information((0, 3), _spd(rng, 2), rng.standard_normal(2))
        ab, ba = multiply(a, b), multiply(b, a)
        assert ab.features == ba.features
        assert np.allclose(ab.Lambda, ba.Lambda)

    def test_multiply_all_matches_pairwise(self, rng):
        factors = [
            GaussianFactor.from_information(ids, _spd(rng, len(ids)), rng.standard_normal(len(ids)))
            for ids in ((0, 1), (1, 2), (0, 2, 3))
        ]
        pairwise = multiply(multiply(factors[0], factors[1]), factors[2])
        together = multiply_all(factors)
        assert together.features == pairwise.features
        assert np.allclose(together.Lambda, pairwise.Lambda)
        assert np.allclose(together.eta, pairwise.eta)


class TestMarginalize:
    """Tests for marginalize/conditional_mean."""

    def test_marginal_matches_covariance_block(self, rng):
        L = _spd(rng, 4)
        f = GaussianFactor.from_information((0, 1, 2, 3), L, rng.standard_normal(4))
        m = f.marginalize([1, 3])
        assert m.features == (0, 2)
        cov = np.linalg.inv(L)
        assert np.allclose(np.linalg.inv(m.Lambda), cov[np.ix_([0, 2], [0, 2])])
        full_mean = f.mean()
        marginal_mean = m.mean()
        assert np.isclose(marginal_mean[0], full_mean[0])
        assert np.isclose(marginal_mean[2], full_mean[2])

    def test_unknown_ids_are_ignored(self, rng):
        f = GaussianFactor.from_information((0, 1), _spd(rng, 2), rng.standard_normal(2))
        m = f.marginalize([5])
        assert m.features == f.features
        assert np.allclose(m.Lambda, f.Lambda)

    def test_conditional_mean_back_substitution(self, rng):
        """Conditioning on the marginal mean reproduces the joint mean."""
        f = GaussianFactor.from_information((0, 1, 2), _spd(rng, 3), rng.standard_normal(3))
        joint = f.mean()
        cond = f.conditional_mean([0, 1], {2: joint[2]})
        assert np.isclose(cond[0], joint[0])
        assert np.isclose(cond[1], joint[1])

    def test_conditional_mean_needs_assignment(self, rng):
        f = GaussianFactor.from_information((0, 1), _spd(rng, 2), rng.standard_normal(2))
        with pytest.raises(ValueError, match="conditional_mean"):
            f.conditional_mean([0], {})

    def test_singular_block_raises(self):
        f = GaussianFactor.from_information((0, 1), np.array([[1.0, 1.0], [1.0, 1.0]]), np.zeros(2))
        with pytest.raises(np.linalg.LinAlgError):
            f.marginalize([0, 1])


class TestReorderAndRename:
    """Tests for restrict_order/rename."""

    def test_restrict_order_permutes(self, rng):
        f = GaussianFactor.from_information((0, 1, 2), _spd(rng, 3), rng.standard_normal(3))
        g = f.restrict_order((2, 0, 1))
        assert g.features == (2, 0, 1)
        assert np.isclose(g.Lambda[0, 1], f.Lambda[2, 0])
        assert f.mean() == pytest.approx(g.mean())

    def test_restrict_order_rejects_other_sets(self, rng):
        f = GaussianFactor.from_information((0, 1), _spd(rng, 2), rng.standard_normal(2))
        with pytest.raises(ValueError):
            f.restrict_order((0, 2))

    def test_rename_merges_identified_variables(self):
        L = np.array([[2.0, 0.5, 0.0], [0.5, 3.0, 0.1], [0.0, 0.1, 1.0]])
        f = GaussianFactor.from_information((0, 1, 2), L, np.array([1.0, 2.0, 3.0]))
        g = f.rename({2: 0})
        assert g.features == (0, 1)
        assert np.allclose(g.Lambda, [[2.0 + 0.0 + 0.0 + 1.0, 0.5 + 0.1], [0.6, 3.0]])
        assert np.allclose(g.eta, [4.0, 2.0])


class TestUpdateCost:
    """Tests for the cubic cost model."""

    def test_polynomial(self):
        c = (1.0, 2.0, 3.0, 4.0)
        assert update_cost(0, c) == 1.0
        assert update_cost(2, c) == 1.0 + 4.0 + 12.0 + 32.0

    def test_default_calibration_is_increasing(self):
        costs = [update_cost(n, constants.UPDATE_COST_COEFFICIENTS_DEFAULT) for n in range(10)]
        assert all(a < b for a, b in zip(costs, costs[1:]))
