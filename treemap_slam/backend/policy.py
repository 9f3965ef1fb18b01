"""
Application hooks of the treemap.

The treemap treats every feature as a plain scalar random variable. What a
feature means, when it may be sparsified and how the cost of recomputing a
Gaussian is estimated is decided by a policy object passed to the Treemap
constructor. Hooks run synchronously inside treemap operations; they may read
the tree and may call Treemap.sparsify_out but must not change topology.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Sequence, Tuple

from treemap_slam.backend.fusion.gaussian_info import update_cost
from treemap_slam.common import constants

if TYPE_CHECKING:
    from treemap_slam.backend.structures.node_arena import Node
    from treemap_slam.backend.treemap import Treemap


class TreemapPolicy:
    """Default policy: no sparsification, cubic cost model, linear estimate."""

    def __init__(self, cost_coefficients: Sequence[float] = constants.UPDATE_COST_COEFFICIENTS_DEFAULT) -> None:
        self.cost_coefficients = tuple(float(c) for c in cost_coefficients)

    def update_cost(self, dimension: int) -> float:
        """Cost of recomputing a node Gaussian over ``dimension`` features."""
        return update_cost(dimension, self.cost_coefficients)

    def has_been_sparsified_out(self, tree: "Treemap", feature_id: int) -> None:
        """Called when ``feature_id`` was dropped from one leaf but is still involved elsewhere."""

    def has_been_marginalized_out(self, tree: "Treemap", feature_id: int) -> None:
        """Called right before ``feature_id`` is deleted after its last leaf dropped it."""

    def can_be_sparsified_out(self, tree: "Treemap", feature_id: int) -> bool:
        return False

    def check_for_sparsification(self, tree: "Treemap", node: "Node") -> None:
        """
        Called by the optimizer whenever ``node`` is flagged optimized.

        Sparsifies every feature marginalized at ``node`` that
        can_be_sparsified_out allows.
        """
        for feature_id in list(node.feature_marginalized):
            if tree.features.is_live(feature_id) and self.can_be_sparsified_out(tree, feature_id):
                tree.sparsify_out(feature_id, 1)

    def name_of_feature(self, feature_id: int) -> Tuple[str, int]:
        """Printable name of the feature and how many consecutive ids it spans."""
        return f"f{feature_id}", 1

    def compute_nonlinear_estimate(self, tree: "Treemap") -> None:
        tree.compute_linear_estimate()
