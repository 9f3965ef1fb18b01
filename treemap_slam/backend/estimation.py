"""
Top-down estimate propagation.

Every node conditions its joint Gaussian on the current estimates of its
passed features and writes the conditional mean of its marginalized
features. Processing the root first guarantees the passed features are
already estimated when a node is reached, so one pass is linear in the
number of nodes.

Nodes flagged DONT_UPDATE_ESTIMATE are skipped; their features keep their
previous estimate. The flag is cleared up to the root from the
marginalization node of every feature whose estimate is wanted.
"""

from __future__ import annotations

import logging
import math
from typing import TYPE_CHECKING, Dict

from treemap_slam.backend.aggregation import update_feature_passed, update_gaussians
from treemap_slam.backend.fusion.gaussian_info import multiply_all
from treemap_slam.backend.structures.node_arena import NodeFlag
from treemap_slam.common import constants

if TYPE_CHECKING:
    from treemap_slam.backend.treemap import Treemap

_logger = logging.getLogger(__name__)


def compute_linear_estimate(tree: "Treemap") -> int:
    """
    Updates Gaussians, then back-substitutes estimates. Returns the number of nodes estimated.

    The flag is set on every descendant of a flagged node, so the descent
    stops at the first flagged node of each path.
    """
    update_gaussians(tree)
    root = tree.root_node
    if root is None:
        tree.is_estimate_valid = True
        return 0
    features = tree.features
    n = 0
    skipped = 0
    stack = [root]
    while stack:
        node = stack.pop()
        if node.is_flag(NodeFlag.DONT_UPDATE_ESTIMATE):
            skipped += 1
            continue
        gaussian = node.gaussian
        assignment = {f: features[f].estimate for f in node.feature_passed}
        for f, value in gaussian.joint.conditional_mean(gaussian.marginalized, assignment).items():
            features[f].estimate = value
        n += 1
        stack.extend(reversed(tree.nodes.children(node)))
    tree.is_estimate_valid = skipped == 0
    _logger.debug("compute_linear_estimate: %d nodes estimated, %d subtrees skipped", n, skipped)
    return n


def only_update_estimates_for(tree: "Treemap", first_id: int, end_id: int, set_dont_update_flag: bool = True) -> None:
    """
    Restricts the next estimation to features ``first_id`` .. ``end_id - 1``.

    With ``set_dont_update_flag`` every node is flagged first, otherwise the
    range is added to the features already requested. Subsequent calls with
    ``set_dont_update_flag=False`` accumulate.
    """
    update_feature_passed(tree)
    if set_dont_update_flag:
        for node in tree.nodes:
            node.set_flag(NodeFlag.DONT_UPDATE_ESTIMATE)
    for f in range(first_id, end_id):
        if not tree.features.is_live(f):
            continue
        node = tree.nodes.get(tree.features[f].marginalization_node)
        if node is not None:
            tree.nodes.reset_flag_up_to_root(node, NodeFlag.DONT_UPDATE_ESTIMATE)


def update_all_estimates(tree: "Treemap") -> None:
    """Cancels only_update_estimates_for."""
    for node in tree.nodes:
        node.clear_flag(NodeFlag.DONT_UPDATE_ESTIMATE)


def compute_estimate_dense(tree: "Treemap") -> Dict[int, float]:
    """Reference estimate: one dense solve over the product of all leaf factors."""
    leaves = [node for node in tree.nodes if node.is_leaf()]
    return multiply_all(leaf.factor for leaf in leaves).mean()


def assert_estimate(tree: "Treemap", tolerance: float = constants.ESTIMATE_CHECK_TOLERANCE) -> float:
    """
    Checks the tree estimate against the dense reference solution.

    Returns the largest absolute difference, raises AssertionError if it
    exceeds ``tolerance``.
    """
    update_all_estimates(tree)
    compute_linear_estimate(tree)
    reference = compute_estimate_dense(tree)
    worst = 0.0
    for f, value in reference.items():
        estimate = tree.features[f].estimate
        diff = abs(estimate - value) if not math.isnan(estimate) else math.inf
        if diff > worst:
            worst = diff
        if diff > tolerance:
            raise AssertionError(f"assert_estimate: feature {f} is {estimate}, dense solution {value}")
    return worst
