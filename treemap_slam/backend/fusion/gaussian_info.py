"""
Gaussian factors in information (natural parameter) form.

A factor is a Gaussian over an ordered tuple of feature ids, stored as
    θ = (Λ, η) where Λ = Σ⁻¹, η = Σ⁻¹μ
This is the numeric collaborator of the treemap: the tree only combines,
marginalizes and back-substitutes factors and never looks inside them.

- Combination is EXACT addition in natural parameters after embedding both
  factors into the union of their variables.
- Marginalization is the Schur complement on Λ (strict Cholesky, raises
  numpy.linalg.LinAlgError when the eliminated block is not SPD).
- The conditional mean of eliminated variables given the remaining ones is
  one triangular back-substitution.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, Mapping, Sequence, Tuple

import numpy as np


def _as_vector(x: np.ndarray) -> np.ndarray:
    """Normalize any (n,), (n,1), (1,n) into a flat (n,) float vector."""
    x = np.asarray(x, dtype=float)
    return x.reshape(-1)


def _spd_solve(A: np.ndarray, b: np.ndarray, name: str) -> np.ndarray:
    """Strict SPD solve via Cholesky (raises LinAlgError on failure)."""
    A = np.asarray(A, dtype=float)
    b = np.asarray(b, dtype=float)
    if A.ndim != 2 or A.shape[0] != A.shape[1]:
        raise ValueError(f"{name}: expected square matrix, got {A.shape}")
    if b.shape[0] != A.shape[0]:
        raise ValueError(f"{name}: rhs shape {b.shape} incompatible with {A.shape}")
    L_chol = np.linalg.cholesky(A)
    y = np.linalg.solve(L_chol, b)
    return np.linalg.solve(L_chol.T, y)


def update_cost(dimension: int, coefficients: Sequence[float]) -> float:
    """
    Cost of recomputing a Gaussian over ``dimension`` features.

        c0 + c1*n + c2*n^2 + c3*n^3
    """
    n = float(dimension)
    c0, c1, c2, c3 = coefficients
    return c0 + n * (c1 + n * (c2 + n * c3))


@dataclass
class GaussianFactor:
    """
    Gaussian over ``features`` in information form.

    Attributes:
        features: Feature ids, one per row/column of Lambda
        Lambda: (k, k) precision matrix
        eta: (k,) information vector (= Lambda @ mu)
    """
    features: Tuple[int, ...]
    Lambda: np.ndarray
    eta: np.ndarray

    def __post_init__(self) -> None:
        self.features = tuple(int(f) for f in self.features)
        self.Lambda = np.asarray(self.Lambda, dtype=float).reshape(len(self.features), len(self.features))
        self.eta = _as_vector(self.eta)
        if self.eta.shape[0] != len(self.features):
            raise ValueError(
                f"GaussianFactor: eta has {self.eta.shape[0]} entries for {len(self.features)} features"
            )
        if len(set(self.features)) != len(self.features):
            raise ValueError(f"GaussianFactor: duplicate feature ids {self.features}")

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_information(cls, features: Iterable[int], Lambda: np.ndarray, eta: np.ndarray) -> "GaussianFactor":
        return cls(tuple(features), np.array(Lambda, dtype=float), np.array(eta, dtype=float))

    @classmethod
    def from_moments(cls, features: Iterable[int], mean: np.ndarray, cov: np.ndarray) -> "GaussianFactor":
        """
        Convert (mean, covariance) to information form (Lambda, eta).

            Λ = Σ⁻¹, η = Σ⁻¹μ
        """
        features = tuple(features)
        cov = np.atleast_2d(np.asarray(cov, dtype=float))
        mean = _as_vector(mean)
        eye = np.eye(cov.shape[0], dtype=float)
        L = _spd_solve(cov, eye, "GaussianFactor.from_moments")
        L = 0.5 * (L + L.T)
        return cls(features, L, L @ mean)

    @classmethod
    def empty(cls) -> "GaussianFactor":
        return cls((), np.zeros((0, 0)), np.zeros(0))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def dimension(self) -> int:
        return len(self.features)

    def involves(self, feature_id: int) -> bool:
        return feature_id in self.features

    def index_of(self, ids: Sequence[int]) -> np.ndarray:
        position = {f: i for i, f in enumerate(self.features)}
        try:
            return np.array([position[f] for f in ids], dtype=int)
        except KeyError as exc:
            raise ValueError(f"GaussianFactor: feature {exc.args[0]} not in {self.features}") from exc

    # ------------------------------------------------------------------
    # Contract operations used by the treemap
    # ------------------------------------------------------------------

    def embed(self, features: Sequence[int]) -> Tuple[np.ndarray, np.ndarray]:
        """
        Embed into the larger variable list ``features``.

        Rows/columns of variables not in this factor are zero, i.e. those
        variables receive no information.
        """
        idx = np.array([list(features).index(f) for f in self.features], dtype=int)
        n = len(features)
        L_full = np.zeros((n, n), dtype=float)
        h_full = np.zeros(n, dtype=float)
        if idx.size:
            L_full[np.ix_(idx, idx)] = self.Lambda
            h_full[idx] = self.eta
        return L_full, h_full

    def restrict_order(self, features: Sequence[int]) -> "GaussianFactor":
        """Same distribution with the variables permuted into ``features`` order."""
        features = tuple(features)
        if set(features) != set(self.features) or len(features) != len(self.features):
            raise ValueError(f"restrict_order: {features} is not a permutation of {self.features}")
        idx = self.index_of(features)
        return GaussianFactor(features, self.Lambda[np.ix_(idx, idx)], self.eta[idx])

    def marginalize(self, eliminate: Iterable[int]) -> "GaussianFactor":
        """
        Marginalize out ``eliminate`` (ids not in the factor are ignored).

            Λ' = Λ_KK − Λ_KE Λ_EE⁻¹ Λ_EK
            η' = η_K − Λ_KE Λ_EE⁻¹ η_E
        """
        elim_set = set(eliminate)
        elim = [f for f in self.features if f in elim_set]
        if not elim:
            return GaussianFactor(self.features, self.Lambda.copy(), self.eta.copy())
        keep = [f for f in self.features if f not in elim_set]
        e = self.index_of(elim)
        k = self.index_of(keep)
        L_ee = self.Lambda[np.ix_(e, e)]
        L_ke = self.Lambda[np.ix_(k, e)]
        rhs = np.concatenate([L_ke.T, self.eta[e].reshape(-1, 1)], axis=1)
        sol = _spd_solve(L_ee, rhs, "GaussianFactor.marginalize")
        L = self.Lambda[np.ix_(k, k)] - L_ke @ sol[:, :-1]
        h = self.eta[k] - L_ke @ sol[:, -1]
        return GaussianFactor(tuple(keep), 0.5 * (L + L.T), h)

    def conditional_mean(self, eliminated: Sequence[int], assignment: Mapping[int, float]) -> Dict[int, float]:
        """
        Mean of ``eliminated`` conditioned on the remaining variables.

            x_E = Λ_EE⁻¹ (η_E − Λ_EK x_K)

        ``assignment`` must provide a value for every remaining variable.
        """
        elim_set = set(eliminated)
        elim = [f for f in self.features if f in elim_set]
        if not elim:
            return {}
        keep = [f for f in self.features if f not in elim_set]
        e = self.index_of(elim)
        rhs = self.eta[e].copy()
        if keep:
            try:
                x_k = np.array([assignment[f] for f in keep], dtype=float)
            except KeyError as exc:
                raise ValueError(f"conditional_mean: no value for feature {exc.args[0]}") from exc
            rhs -= self.Lambda[np.ix_(e, self.index_of(keep))] @ x_k
        x_e = _spd_solve(self.Lambda[np.ix_(e, e)], rhs, "GaussianFactor.conditional_mean")
        return {f: float(v) for f, v in zip(elim, x_e)}

    def mean(self) -> Dict[int, float]:
        """Joint mean μ = Λ⁻¹η of all variables."""
        return self.conditional_mean(self.features, {})

    def rename(self, mapping: Mapping[int, int]) -> "GaussianFactor":
        """
        Replace feature ids according to ``mapping``.

        If two variables end up with the same id they are the same random
        variable, so their rows/columns are added.
        """
        new_ids = [int(mapping.get(f, f)) for f in self.features]
        unique = sorted(set(new_ids))
        P = np.zeros((len(unique), len(new_ids)), dtype=float)
        row = {f: i for i, f in enumerate(unique)}
        for col, f in enumerate(new_ids):
            P[row[f], col] = 1.0
        return GaussianFactor(tuple(unique), P @ self.Lambda @ P.T, P @ self.eta)


def multiply(a: GaussianFactor, b: GaussianFactor) -> GaussianFactor:
    """
    Product of two factors over the sorted union of their variables.

    Properties:
    - Commutative: multiply(A, B) = multiply(B, A)
    - Associative up to floating point rounding
    """
    features = tuple(sorted(set(a.features) | set(b.features)))
    L_a, h_a = a.embed(features)
    L_b, h_b = b.embed(features)
    return GaussianFactor(features, L_a + L_b, h_a + h_b)


def multiply_all(factors: Iterable[GaussianFactor]) -> GaussianFactor:
    """Product of many factors, embedding each only once."""
    factors = list(factors)
    features = tuple(sorted(set().union(*(f.features for f in factors)))) if factors else ()
    n = len(features)
    L = np.zeros((n, n), dtype=float)
    h = np.zeros(n, dtype=float)
    for f in factors:
        L_f, h_f = f.embed(features)
        L += L_f
        h += h_f
    return GaussianFactor(features, L, h)
