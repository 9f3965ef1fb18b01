"""
Bottom-up aggregation: feature-passed lists, joins and node Gaussians.

For every node n the features involved below n are split into
- marginalized at n: all leaves involving the feature are below n
  (n is the lowest such node, the feature's marginalization node),
- passed to the parent: the feature is also involved outside n.

The Gaussian of n is the product of the children's passed Gaussians (or the
leaf factor), ordered [marginalized..., passed...]. Its marginal over the
passed features is the message to the parent; the joint is kept for the
top-down back-substitution.

All traversals are iterative and only descend into nodes whose
corresponding flag is clear (a valid node has a valid subtree).
"""

from __future__ import annotations

import logging
import math
from typing import TYPE_CHECKING, Dict, Iterator, List, NamedTuple, Optional

from treemap_slam.backend.fusion.gaussian_info import multiply, multiply_all
from treemap_slam.backend.structures.feature_registry import FeatureFlag
from treemap_slam.backend.structures.node_arena import Node, NodeFlag, NodeGaussian

if TYPE_CHECKING:
    from treemap_slam.backend.treemap import Treemap

_logger = logging.getLogger(__name__)


class JoinEffect(NamedTuple):
    """
    Result of effect_of_joining.

    features[:n_pm] are marginalized out permanently, features[n_pm:n_pm+n_m]
    are kept but marginalized at the joined leaf and the rest is passed to
    the parent. n_pm = n_m = n_p = -1 means the subtree cannot be joined.
    """
    features: List[int]
    n_pm: int
    n_m: int
    n_p: int

    def is_aggregable(self) -> bool:
        return self.n_pm >= 0


NOT_AGGREGABLE = JoinEffect([], -1, -1, -1)


def postorder_invalid(tree: "Treemap", start: Optional[Node], flag: NodeFlag) -> Iterator[Node]:
    """Post-order over the nodes below ``start`` that have ``flag`` clear."""
    if start is None or start.is_flag(flag):
        return
    stack = [(start, False)]
    while stack:
        node, expanded = stack.pop()
        if expanded or node.is_leaf():
            yield node
            continue
        stack.append((node, True))
        for child in reversed(tree.nodes.children(node)):
            if not child.is_flag(flag):
                stack.append((child, False))


# =============================================================================
# Feature-passed lists
# =============================================================================


def _involved_with_count(tree: "Treemap", node: Node) -> Dict[int, int]:
    if node.is_leaf():
        return {f: 1 for f in node.factor.features}
    counts: Dict[int, int] = {}
    for child in tree.nodes.children(node):
        for f, c in zip(child.feature_passed, child.feature_passed_count):
            counts[f] = counts.get(f, 0) + c
    return counts


def compute_feature_passed(tree: "Treemap", node: Node) -> None:
    """Recomputes the lists and costs of ``node`` from its (valid) children."""
    marginalized: List[int] = []
    passed: List[int] = []
    passed_count: List[int] = []
    for f, c in sorted(_involved_with_count(tree, node).items()):
        total = tree.features[f].count
        if c > total:
            raise RuntimeError(f"compute_feature_passed: feature {f} counted {c} times below node "
                               f"{node.index} but involved in {total} leaves")
        if c == total:
            marginalized.append(f)
            tree.features[f].marginalization_node = node.index
        else:
            passed.append(f)
            passed_count.append(c)
    node.feature_marginalized = marginalized
    node.feature_passed = passed
    node.feature_passed_count = passed_count
    node.update_cost = tree.policy.update_cost(len(marginalized) + len(passed))
    if node.is_leaf():
        node.worst_case_update_cost = node.update_cost
    else:
        node.worst_case_update_cost = node.update_cost + max(
            child.worst_case_update_cost for child in tree.nodes.children(node)
        )
    node.set_flag(NodeFlag.IS_FEATURE_PASSED_VALID)
    tree.stat.nr_of_feature_passed_updates += 1


def update_feature_passed(tree: "Treemap") -> int:
    """
    Updates feature_passed lists, costs and marginalization nodes.

    Only nodes flagged invalid are recomputed, so calling it on a valid tree
    does nothing. Returns the number of recomputed nodes.
    """
    n = 0
    for node in postorder_invalid(tree, tree.root_node, NodeFlag.IS_FEATURE_PASSED_VALID):
        compute_feature_passed(tree, node)
        n += 1
    return n


# =============================================================================
# Joining
# =============================================================================


def effect_of_joining(tree: "Treemap", subtree: Node) -> JoinEffect:
    """
    Determines which features a joined distribution for ``subtree`` involves.

    Does not change the tree. ``subtree`` must have a valid feature-passed
    list. Returns NOT_AGGREGABLE if any leaf below is not CAN_BE_INTEGRATED.
    """
    if not subtree.is_flag(NodeFlag.IS_FEATURE_PASSED_VALID):
        raise RuntimeError(f"effect_of_joining: node {subtree.index} has invalid feature_passed")
    counts: Dict[int, int] = {}
    for leaf in tree.nodes.leaves_below(subtree):
        if not leaf.is_flag(NodeFlag.CAN_BE_INTEGRATED):
            return NOT_AGGREGABLE
        for f in leaf.factor.features:
            counts[f] = counts.get(f, 0) + 1

    pm: List[int] = []
    m: List[int] = []
    p: List[int] = []
    for f, c in sorted(counts.items()):
        feature = tree.features[f]
        outside = c < feature.count
        can_marginalize = feature.is_flag(FeatureFlag.CAN_BE_MARGINALIZED_OUT)
        if can_marginalize and (not outside or feature.is_flag(FeatureFlag.CAN_BE_SPARSIFIED)):
            pm.append(f)
        elif not outside:
            m.append(f)
        else:
            p.append(f)
    return JoinEffect(pm + m + p, len(pm), len(m), len(p))


def cost_of_joining(tree: "Treemap", subtree: Node) -> float:
    """Update cost ``subtree`` would have after being joined into one leaf."""
    effect = effect_of_joining(tree, subtree)
    if not effect.is_aggregable():
        return math.inf
    return tree.policy.update_cost(effect.n_m + effect.n_p)


def join_subtree(tree: "Treemap", subtree: Node) -> Optional[Node]:
    """
    Joins all leaves below ``subtree`` into a single leaf.

    The joined leaf reuses ``subtree``'s index and position. Features that
    can be marginalized out and are not involved elsewhere, and features
    flagged CAN_BE_SPARSIFIED, are removed from the joined factor. A removed
    feature no longer involved in any leaf is deleted. Returns the joined
    leaf, or None if nothing was left and the leaf was removed.
    """
    tree.update_feature_passed()
    effect = effect_of_joining(tree, subtree)
    if not effect.is_aggregable():
        raise ValueError(f"join_subtree: leaves below node {subtree.index} are not CAN_BE_INTEGRATED")
    permanent = effect.features[:effect.n_pm]
    leaves = tree.nodes.leaves_below(subtree)

    # A sparsified feature still involved outside gets a new marginalization
    # node, which lies on the path from any remaining leaf to the root.
    outside_leaves: List[int] = []
    for f in permanent:
        inside = sum(1 for leaf in leaves if leaf.factor.involves(f))
        if tree.features[f].count > inside:
            for leaf in tree.find_leaves_involving(f):
                if not tree.nodes.is_below(leaf, subtree):
                    outside_leaves.append(leaf.index)
                    break

    joined = multiply_all(leaf.factor for leaf in leaves).marginalize(permanent)
    for leaf in leaves:
        for f in leaf.factor.features:
            tree.features[f].count -= 1
    for node in list(tree.nodes.subtree(subtree)):
        if node.index != subtree.index:
            tree.nodes.free(node.index)

    subtree.child = [None, None]
    subtree.factor = joined
    subtree.gaussian = None
    subtree.status = NodeFlag.CAN_BE_INTEGRATED | NodeFlag.CAN_BE_MOVED
    for f in joined.features:
        tree.features[f].count += 1
    tree.invalidate(subtree)
    tree.optimizer.enqueue(subtree.index)
    tree.stat.nr_of_joins += 1
    _logger.debug("join_subtree: %d leaves into node %d, %d features removed, %d kept",
                  len(leaves), subtree.index, len(permanent), joined.dimension)

    for f in permanent:
        feature = tree.features[f]
        if feature.count == 0:
            tree.policy.has_been_marginalized_out(tree, f)
            tree.features.delete_feature(f)
        else:
            tree.policy.has_been_sparsified_out(tree, f)
    for index in outside_leaves:
        leaf = tree.nodes.get(index)
        if leaf is not None:
            tree.invalidate(leaf)

    if joined.dimension == 0:
        tree.remove_leaf(subtree)
        return None
    return subtree


# =============================================================================
# Gaussians
# =============================================================================


def _message_matches(node: Node) -> bool:
    return node.gaussian is not None and node.gaussian.passed.features == tuple(node.feature_passed)


def compute_gaussian(tree: "Treemap", node: Node) -> None:
    """Recomputes the Gaussian of ``node`` from its children's messages."""
    if node.is_leaf():
        joint = node.factor
    else:
        children = tree.nodes.children(node)
        for child in children:
            if not _message_matches(child):
                # Kept valid through a KL trial but its lists changed
                _logger.debug("compute_gaussian: refreshing stale message of node %d", child.index)
                child.clear_flag(NodeFlag.IS_GAUSSIAN_VALID)
                for n in postorder_invalid(tree, child, NodeFlag.IS_GAUSSIAN_VALID):
                    compute_gaussian(tree, n)
        joint = multiply(children[0].gaussian.passed, children[1].gaussian.passed)
    marginalized = tuple(node.feature_marginalized)
    joint = joint.restrict_order(marginalized + tuple(node.feature_passed))
    node.gaussian = NodeGaussian(joint=joint, marginalized=marginalized, passed=joint.marginalize(marginalized))
    node.set_flag(NodeFlag.IS_GAUSSIAN_VALID)
    tree.stat.accumulated_update_cost += node.update_cost
    tree.stat.nr_of_gaussian_updates += 1


def update_gaussians(tree: "Treemap") -> int:
    """Recomputes all invalid Gaussians (not the estimate). Returns the number of nodes."""
    if not tree.is_gaussian_valid_valid:
        raise RuntimeError("update_gaussians: called while a KL run has moves pending")
    update_feature_passed(tree)
    n = 0
    for node in postorder_invalid(tree, tree.root_node, NodeFlag.IS_GAUSSIAN_VALID):
        compute_gaussian(tree, node)
        n += 1
    return n


def update_gaussians_cost(tree: "Treemap") -> float:
    """Summed update cost of all nodes update_gaussians would recompute."""
    update_feature_passed(tree)
    return sum(
        node.update_cost
        for node in postorder_invalid(tree, tree.root_node, NodeFlag.IS_GAUSSIAN_VALID)
    )
