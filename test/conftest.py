import os
import sys

import numpy as np
import pytest

# Ensure local package import works for pytest collection.
_TEST_DIR = os.path.dirname(__file__)
_PKG_ROOT = os.path.abspath(os.path.join(_TEST_DIR, ".."))
if _PKG_ROOT not in sys.path:
    sys.path.insert(0, _PKG_ROOT)

from treemap_slam.backend.fusion.gaussian_info import GaussianFactor  # noqa: E402
from treemap_slam.backend.structures.node_arena import NodeFlag  # noqa: E402
from treemap_slam.backend.treemap import Treemap  # noqa: E402
from treemap_slam.common.param_models import default_config_path, load_treemap_params  # noqa: E402


# =============================================================================
# Config Fixtures
# =============================================================================


@pytest.fixture
def default_params():
    """TreemapParams loaded from the bundled config/treemap_default.yaml."""
    return load_treemap_params(default_config_path())


# =============================================================================
# Test Utility Fixtures
# =============================================================================


@pytest.fixture
def rng():
    return np.random.default_rng(42)


@pytest.fixture
def make_factor(rng):
    """
    Builder for random well-conditioned factors.

    Usage:
        f = make_factor((0, 1))
    """
    def _make(ids, scale=1.0):
        ids = tuple(ids)
        k = len(ids)
        A = rng.standard_normal((k, k))
        Lambda = scale * (A @ A.T + k * np.eye(k))
        eta = rng.standard_normal(k)
        return GaussianFactor.from_information(ids, Lambda, eta)
    return _make


@pytest.fixture
def chain_tree(make_factor):
    """
    Builder for a tree whose leaves form a chain x0-x1, x1-x2, ...

    Leaves are added one by one, so the tree starts as a left-deep chain.
    """
    def _build(n_leaves, flags=NodeFlag.CAN_BE_INTEGRATED, params=None, prior=True):
        tree = Treemap(params)
        first = tree.new_feature_block(n_leaves + 1)
        if prior:
            tree.add_leaf(make_factor((first,)), flags)
        for i in range(n_leaves):
            tree.add_leaf(make_factor((first + i, first + i + 1)), flags)
        return tree
    return _build


@pytest.fixture
def random_tree(make_factor, rng):
    """
    Builder for a tree over a random connected factor graph.

    The first feature gets a prior leaf and every further feature is tied
    to a random earlier one, so the graph stays connected. The remaining
    leaves connect two or three random features.
    """
    def _build(n_features, n_leaves, flags=NodeFlag.CAN_BE_INTEGRATED, params=None):
        tree = Treemap(params)
        first = tree.new_feature_block(n_features)
        tree.add_leaf(make_factor((first,)), flags)
        for i in range(1, n_features):
            j = int(rng.integers(0, i))
            tree.add_leaf(make_factor((first + j, first + i)), flags)
        for _ in range(n_leaves - n_features):
            ids = rng.choice(n_features, size=int(rng.integers(2, 4)), replace=False)
            tree.add_leaf(make_factor(sorted(first + int(i) for i in ids)), flags)
        return tree
    return _build
