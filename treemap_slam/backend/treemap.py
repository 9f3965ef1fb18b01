"""
Treemap: hierarchical Gaussian estimation over a binary tree of factors.

Leaves hold the original factors (measurements, priors). Every internal
node aggregates the information of its subtree and passes a marginal over
the features also involved outside its subtree to its parent. Estimates
are obtained by back-substitution from the root.

Typical cycle per step:

    tree = Treemap()
    x = tree.new_feature_block(3)
    tree.add_leaf(GaussianFactor.from_moments((x, x + 1), mean, cov))
    tree.optimize()                   # a few KL moves on queued nodes
    tree.compute_linear_estimate()    # updates Gaussians and estimates
    tree.estimate(x)

Topology changes only invalidate nodes (lazy). update_feature_passed,
update_gaussians and compute_linear_estimate recompute what is invalid.
"""

from __future__ import annotations

import logging
import math
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np
from scipy.sparse import coo_matrix
from scipy.sparse.csgraph import connected_components

from treemap_slam.backend import aggregation, estimation
from treemap_slam.backend.aggregation import JoinEffect
from treemap_slam.backend.fusion.gaussian_info import GaussianFactor
from treemap_slam.backend.optimizer import Move, Optimizer, optimal_kl_step, safe_optimal_kl_step
from treemap_slam.backend.policy import TreemapPolicy
from treemap_slam.backend.statistics import TreemapStatistics
from treemap_slam.backend.structures.feature_registry import FeatureFlag, FeatureRegistry, FeatureState
from treemap_slam.backend.structures.node_arena import Node, NodeArena, NodeFlag
from treemap_slam.common import constants
from treemap_slam.common.op_report import OpReport
from treemap_slam.common.param_models import TreemapParams

_logger = logging.getLogger(__name__)

_PERMANENT_FLAGS = (
    NodeFlag.IS_FEATURE_PASSED_VALID,
    NodeFlag.IS_GAUSSIAN_VALID,
    NodeFlag.IS_OPTIMIZED,
)


class Treemap:
    """
    The tree, its features and its optimizer.

    Attributes:
        params: Optimizer and cost-model parameters
        policy: Application hooks (sparsification, names, cost model)
        nodes: Node storage
        features: Feature storage and id allocation
        root: Index of the root node, None for an empty tree
        optimizer: KL optimizer working on this tree
        stat: Accumulated statistics (see compute_statistics)
        is_estimate_valid: Whether the last estimation covered every node
            and nothing changed since
        is_gaussian_valid_valid: False while a KL run has tentative moves;
            Gaussian flags must not be trusted then
    """

    def __init__(self, params: Optional[TreemapParams] = None, policy: Optional[TreemapPolicy] = None) -> None:
        self.params = params if params is not None else TreemapParams()
        self.policy = policy if policy is not None else TreemapPolicy(self.params.cost_coefficients)
        self.nodes = NodeArena(on_gaussian_invalidated=self._on_gaussian_invalidated)
        self.features = FeatureRegistry()
        self.root: Optional[int] = None
        self.optimizer = Optimizer(self, self.params)
        self.stat = TreemapStatistics()
        self.is_estimate_valid = False
        self.is_gaussian_valid_valid = True

    def _on_gaussian_invalidated(self) -> None:
        self.is_estimate_valid = False

    @property
    def root_node(self) -> Optional[Node]:
        return self.nodes.get(self.root)

    def clear(self) -> None:
        """Removes all nodes and features."""
        self.nodes.clear()
        self.features.clear()
        self.root = None
        self.optimizer.clear()
        self.stat = TreemapStatistics()
        self.is_estimate_valid = False
        self.is_gaussian_valid_valid = True

    def is_feature_passed_valid(self) -> bool:
        root = self.root_node
        return root is None or root.is_flag(NodeFlag.IS_FEATURE_PASSED_VALID)

    def is_gaussian_valid(self) -> bool:
        root = self.root_node
        return root is None or root.is_flag(NodeFlag.IS_GAUSSIAN_VALID)

    # ------------------------------------------------------------------
    # Features
    # ------------------------------------------------------------------

    def new_feature_block(self, n: int, flags: FeatureFlag = FeatureFlag.NONE) -> int:
        """Reserves ``n`` consecutive feature ids and returns the first."""
        return self.features.reserve_block(n, flags)

    def delete_feature(self, feature_id: int) -> None:
        self.features.delete_feature(feature_id)

    def set_initial_estimate(self, feature_id: int, estimate: float) -> None:
        self.features.set_initial_estimate(feature_id, estimate)

    def estimate(self, feature_id: int) -> float:
        return self.features.check_live(feature_id, "estimate").estimate

    def nr_of_features(self, must_flags: FeatureFlag = FeatureFlag.NONE,
                       may_not_flags: FeatureFlag = FeatureFlag.NONE) -> int:
        return self.features.nr_of_features(must_flags, may_not_flags)

    def describe_feature(self, feature_id: int) -> str:
        """One-line description of a feature for logs and debugging."""
        f = self.features[feature_id]
        name, _ = self.policy.name_of_feature(feature_id)
        return (
            f"{name} (id {feature_id}, {f.state.value}): estimate={f.estimate:.6g} count={f.count} "
            f"marginalized at {f.marginalization_node} flags={int(f.flags)} "
            f"block {f.block_start}+{f.block_size}"
        )

    # ------------------------------------------------------------------
    # Topology
    # ------------------------------------------------------------------

    def invalidate(self, node: Node, stop_at_clear: bool = True) -> None:
        """
        Marks ``node`` and its ancestors for recomputation and optimization.

        Nodes whose IS_OPTIMIZED flag is cleared are put into the
        optimization queue.
        """
        for flag in _PERMANENT_FLAGS:
            changed = []
            if node.is_flag(flag):
                node.clear_flag(flag)
                changed.append(node)
            changed += self.nodes.reset_flag_up_to_root(self.nodes.parent(node), flag, stop_at_clear)
            if flag == NodeFlag.IS_OPTIMIZED:
                for n in changed:
                    self.optimizer.enqueue(n.index)
        self.is_estimate_valid = False

    def _invalidate_marginalization_node(self, feature_id: int) -> None:
        # The feature's count grows, so it is no longer marginalized where it was.
        f = self.features[feature_id]
        node = self.nodes.get(f.marginalization_node)
        if f.count > 0 and node is not None:
            self.invalidate(node)

    def add_leaf(self, factor: GaussianFactor, flags: NodeFlag = NodeFlag.CAN_BE_INTEGRATED) -> Node:
        """
        Adds a leaf holding ``factor`` and returns it.

        The leaf is attached next to the root under a new internal root.
        Nodes are only invalidated, so adding several leaves before the
        next update is cheap.
        """
        for feature_id in factor.features:
            self.features.check_live(feature_id, "add_leaf")
        for feature_id in factor.features:
            self._invalidate_marginalization_node(feature_id)
            self.features[feature_id].count += 1

        leaf = self.nodes.allocate()
        leaf.factor = factor
        leaf.status = NodeFlag(flags) | NodeFlag.CAN_BE_MOVED
        old_root = self.root_node
        if old_root is None:
            self.root = leaf.index
        else:
            new_root = self.nodes.allocate()
            new_root.status = NodeFlag.CAN_BE_MOVED
            new_root.child = [old_root.index, leaf.index]
            old_root.parent = new_root.index
            leaf.parent = new_root.index
            self.root = new_root.index
            self.optimizer.enqueue(new_root.index)
        self.optimizer.enqueue(leaf.index)
        self.is_estimate_valid = False
        _logger.debug("add_leaf: node %d with features %s", leaf.index, factor.features)
        return leaf

    def remove_leaf(self, leaf: Node) -> None:
        """Removes ``leaf``; its sibling takes the place of their parent."""
        if not leaf.is_leaf():
            raise ValueError(f"remove_leaf: node {leaf.index} is not a leaf")
        self.update_feature_passed()
        # Where a feature's count drops, its new marginalization node lies on
        # the path from any remaining leaf to the root.
        remaining: List[int] = []
        for feature_id in leaf.factor.features:
            for other in self.find_leaves_involving(feature_id):
                if other.index != leaf.index:
                    remaining.append(other.index)
                    break

        parent = self.nodes.parent(leaf)
        if parent is None:
            self.root = None
        else:
            sibling = self.nodes.sibling(leaf)
            grandparent = self.nodes.parent(parent)
            if grandparent is None:
                self.root = sibling.index
                sibling.parent = None
            else:
                grandparent.child[grandparent.which_child(parent.index)] = sibling.index
                sibling.parent = grandparent.index
                self.invalidate(grandparent)
            self.nodes.free(parent.index)
        self.nodes.free(leaf.index)

        for feature_id in leaf.factor.features:
            f = self.features[feature_id]
            f.count -= 1
            if f.count == 0:
                f.marginalization_node = None
        for index in remaining:
            node = self.nodes.get(index)
            if node is not None:
                self.invalidate(node)
        self.is_estimate_valid = False

    def find_leaves_involving(self, feature_id: int) -> List[Node]:
        """All leaves whose factor involves ``feature_id``."""
        self.update_feature_passed()
        node = self.nodes.get(self.features[feature_id].marginalization_node)
        if node is None:
            return []
        result = []
        stack = [node]
        while stack:
            n = stack.pop()
            if n.is_leaf():
                if n.factor.involves(feature_id):
                    result.append(n)
                continue
            for child in reversed(self.nodes.children(n)):
                if feature_id in child.feature_passed:
                    stack.append(child)
        return result

    def identify_features(self, pairs: Iterable[Tuple[int, int]]) -> None:
        """
        Declares each ``(old, new)`` pair to be the same feature.

        Every factor involving ``old`` is rewritten to involve ``new``
        instead, and ``old`` is deleted.
        """
        for old, new in pairs:
            f_old = self.features.check_live(old, "identify_features")
            f_new = self.features.check_live(new, "identify_features")
            if old == new:
                continue
            leaves = self.find_leaves_involving(old)
            self._invalidate_marginalization_node(new)
            for leaf in leaves:
                if not leaf.factor.involves(new):
                    f_new.count += 1
                leaf.factor = leaf.factor.rename({old: new})
                self.invalidate(leaf)
            if math.isnan(f_new.estimate):
                f_new.estimate = f_old.estimate
            f_old.count = 0
            self.features.delete_feature(old)
            _logger.debug("identify_features: %d -> %d in %d leaves", old, new, len(leaves))

    def sparsify_out(self, feature_id: int, n: int = 1) -> None:
        """
        Removes features ``feature_id`` .. ``feature_id + n - 1`` from every
        leaf by joining each leaf involving them.

        The features must be CAN_BE_MARGINALIZED_OUT. Every leaf involving
        one of them must involve ``feature_id``.
        """
        for i in range(feature_id, feature_id + n):
            f = self.features.check_live(i, "sparsify_out")
            if not f.is_flag(FeatureFlag.CAN_BE_MARGINALIZED_OUT):
                raise ValueError(f"sparsify_out: feature {i} cannot be marginalized out")
            f.flags |= FeatureFlag.CAN_BE_SPARSIFIED
        for leaf in [leaf.index for leaf in self.find_leaves_involving(feature_id)]:
            node = self.nodes.get(leaf)
            if node is not None:
                self.join_subtree(node)

    # ------------------------------------------------------------------
    # Aggregation and estimation
    # ------------------------------------------------------------------

    def update_feature_passed(self) -> int:
        return aggregation.update_feature_passed(self)

    def effect_of_joining(self, subtree: Node) -> JoinEffect:
        self.update_feature_passed()
        return aggregation.effect_of_joining(self, subtree)

    def cost_of_joining(self, subtree: Node) -> float:
        self.update_feature_passed()
        return aggregation.cost_of_joining(self, subtree)

    def join_subtree(self, subtree: Node) -> Optional[Node]:
        return aggregation.join_subtree(self, subtree)

    def update_gaussians(self) -> int:
        return aggregation.update_gaussians(self)

    def update_gaussians_cost(self) -> float:
        return aggregation.update_gaussians_cost(self)

    def compute_linear_estimate(self) -> int:
        return estimation.compute_linear_estimate(self)

    def compute_nonlinear_estimate(self) -> None:
        self.policy.compute_nonlinear_estimate(self)

    def only_update_estimates_for(self, first_id: int, end_id: int, set_dont_update_flag: bool = True) -> None:
        estimation.only_update_estimates_for(self, first_id, end_id, set_dont_update_flag)

    def update_all_estimates(self) -> None:
        estimation.update_all_estimates(self)

    def full_recompute(self) -> None:
        """Invalidates every node and recomputes all Gaussians."""
        for node in self.nodes:
            node.clear_flag(NodeFlag.IS_FEATURE_PASSED_VALID | NodeFlag.IS_GAUSSIAN_VALID)
        self.is_estimate_valid = False
        self.update_gaussians()

    def compute_estimate_dense(self) -> Dict[int, float]:
        return estimation.compute_estimate_dense(self)

    def assert_estimate(self, tolerance: float = constants.ESTIMATE_CHECK_TOLERANCE) -> float:
        return estimation.assert_estimate(self, tolerance)

    # ------------------------------------------------------------------
    # Optimization
    # ------------------------------------------------------------------

    def optimal_kl_step(self, lca: Node, join_only_below: float = math.inf) -> Move:
        return optimal_kl_step(self, lca, join_only_below)

    def safe_optimal_kl_step(self, lca: Node, join_only_below: float = math.inf) -> Move:
        return safe_optimal_kl_step(self, lca, join_only_below)

    def optimize(self, nr_of_moves: Optional[int] = None) -> int:
        return self.optimizer.optimize(nr_of_moves)

    def optimize_full_runs(self, max_runs: Optional[int] = None) -> int:
        return self.optimizer.optimize_full_runs(max_runs)

    def get_and_clear_report(self) -> str:
        return self.optimizer.get_and_clear_report()

    def consume_op_reports(self) -> List[OpReport]:
        return self.optimizer.consume_op_reports()

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def compute_statistics(self) -> TreemapStatistics:
        """Snapshot of the accumulated statistics plus the current tree shape."""
        self.update_feature_passed()
        stat = self.stat.snapshot()
        stat.nr_of_nodes = len(self.nodes)
        stat.nr_of_leaves = sum(1 for n in self.nodes if n.is_leaf())
        stat.nr_of_features = self.features.nr_of_features()
        stat.nr_of_nodes_to_be_optimized = self.optimizer.nr_of_nodes_to_be_optimized()
        root = self.root_node
        if root is not None:
            stat.max_depth = max(self.nodes.depth(n) for n in self.nodes if n.is_leaf())
            stat.root_worst_case_update_cost = root.worst_case_update_cost
        return stat

    def consume_statistics(self) -> TreemapStatistics:
        """compute_statistics, then reset the accumulated counters."""
        stat = self.compute_statistics()
        self.stat = TreemapStatistics()
        return stat

    # ------------------------------------------------------------------
    # Consistency checks
    # ------------------------------------------------------------------

    def assert_it(self) -> None:
        """
        Checks the structural invariants of the tree.

        Raises AssertionError on the first violation.
        """
        root = self.root_node
        if root is None:
            if len(self.nodes) != 0:
                raise AssertionError(f"empty tree has {len(self.nodes)} live nodes")
        else:
            if root.parent is not None:
                raise AssertionError(f"root {root.index} has parent {root.parent}")
            reachable = 0
            for node in self.nodes.subtree(root):
                reachable += 1
                self._assert_node(node)
            if reachable != len(self.nodes):
                raise AssertionError(f"{len(self.nodes) - reachable} live nodes are not in the tree")

        counts = {}
        for node in self.nodes:
            if node.is_leaf():
                for f in node.factor.features:
                    counts[f] = counts.get(f, 0) + 1
        for i, f in enumerate(self.features.feature):
            if f.state is FeatureState.LIVE and f.count != counts.get(i, 0):
                raise AssertionError(f"feature {i} has count {f.count} but {counts.get(i, 0)} leaves involve it")
            if f.state is not FeatureState.LIVE and i in counts:
                raise AssertionError(f"feature {i} is {f.state.value} but involved in a leaf")
        if self.is_feature_passed_valid() and root is not None and root.feature_passed:
            raise AssertionError(f"root passes features {root.feature_passed}")
        self.features.assert_unused_feature_lists()

    def _assert_node(self, node: Node) -> None:
        if node.is_leaf():
            if node.child[1] is not None:
                raise AssertionError(f"node {node.index} has only one child")
            if node.factor is None:
                raise AssertionError(f"leaf {node.index} has no factor")
        else:
            if node.factor is not None:
                raise AssertionError(f"internal node {node.index} has a factor")
            for child in self.nodes.children(node):
                if child.parent != node.index:
                    raise AssertionError(f"node {child.index} has parent {child.parent}, expected {node.index}")
        parent = self.nodes.parent(node)
        if parent is None:
            return
        flags = [NodeFlag.IS_FEATURE_PASSED_VALID]
        if self.is_gaussian_valid_valid:
            flags.append(NodeFlag.IS_GAUSSIAN_VALID)
        for flag in flags:
            if not node.is_flag(flag) and parent.is_flag(flag):
                raise AssertionError(f"node {node.index} has {flag.name} clear but its parent {parent.index} set")

    def assert_connectivity(self, min_dof: int = 1) -> None:
        """
        Checks that the leaves form one connected graph, where two leaves
        are connected if they share at least ``min_dof`` features.
        """
        leaves = [n for n in self.nodes if n.is_leaf()]
        if len(leaves) <= 1:
            return
        rows, cols = [], []
        for i, leaf in enumerate(leaves):
            rows.extend([i] * leaf.factor.dimension)
            cols.extend(leaf.factor.features)
        incidence = coo_matrix(
            (np.ones(len(rows)), (rows, cols)), shape=(len(leaves), len(self.features))
        ).tocsr()
        shared = (incidence @ incidence.T).tocoo()
        keep = shared.data >= min_dof
        adjacency = coo_matrix(
            (np.ones(int(keep.sum())), (shared.row[keep], shared.col[keep])), shape=(len(leaves), len(leaves))
        )
        n_components, labels = connected_components(adjacency, directed=False)
        if n_components > 1:
            isolated = [leaves[i].index for i in range(len(leaves)) if labels[i] != labels[0]]
            raise AssertionError(
                f"assert_connectivity: leaves form {n_components} components (min_dof={min_dof}), "
                f"e.g. nodes {isolated[:10]} are not connected to node {leaves[0].index}"
            )
