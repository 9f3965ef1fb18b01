"""
Kernighan-Lin style optimization of the tree topology.

A KL run picks a node (lca) from the optimization queue and tries to lower
its worst-case update cost. Each step moves a subtree s from one side of
lca to above a node a on the other side (or joins two leaves). Moves that
do not improve the cost are kept tentatively, up to
max_nr_of_unsuccessful_moves of them; the first improving move commits the
whole sequence, otherwise every move is undone in reverse order.

Move geometry, with p = parent(s), o = sibling(s), g = parent(p):

    before:      g                after:   g          q
                 |                         |          |
                 p                         o          p
                / \\                                 / \\
               s   o     ...  q                    a   s
                              |
                              a

The position of lca after a move is o if s was a direct child of lca
(o takes p's place), else lca itself.

Candidates are pruned structurally: s must pass a feature involved at lca
and a (other than the other child of lca) must pass a feature shared with
s. Both predicates are monotone along the tree, so the pruned search
returns the same optimum as the exhaustive one.
"""

from __future__ import annotations

import logging
import math
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Deque, List, Optional, Tuple

from treemap_slam.backend.aggregation import cost_of_joining, update_feature_passed
from treemap_slam.backend.statistics import HTPEntry, htp_cond_prob, record_htp
from treemap_slam.backend.structures.node_arena import Node, NodeFlag
from treemap_slam.common.op_report import OpReport
from treemap_slam.common.param_models import TreemapParams

if TYPE_CHECKING:
    from treemap_slam.backend.treemap import Treemap

_logger = logging.getLogger(__name__)


# =============================================================================
# Moves
# =============================================================================


def _replace_child(tree: "Treemap", parent: Optional[Node], old: Node, new: Node) -> None:
    if parent is None:
        tree.root = new.index
    else:
        parent.child[parent.which_child(old.index)] = new.index
    new.parent = None if parent is None else parent.index


def _relink(tree: "Treemap", subtree: Node, above: Node) -> Tuple[Node, Optional[Node], Optional[Node]]:
    """
    Moves ``subtree`` to above ``above``; its parent p moves along.

    Returns (p, g, q): g lost p as a child (now parent of the old
    sibling), q is the new parent of p. Clears IS_FEATURE_PASSED_VALID on
    every node whose lists change.
    """
    nodes = tree.nodes
    p = nodes[subtree.parent]
    o = nodes[p.child[1 - p.which_child(subtree.index)]]
    g = nodes.parent(p)
    _replace_child(tree, g, p, o)

    q = nodes.parent(above)
    _replace_child(tree, q, above, p)
    above.parent = p.index
    p.child = [above.index, subtree.index]

    p.clear_flag(NodeFlag.IS_FEATURE_PASSED_VALID)
    nodes.reset_flag_up_to_root(nodes.parent(p), NodeFlag.IS_FEATURE_PASSED_VALID)
    nodes.reset_flag_up_to_root(nodes.parent(o), NodeFlag.IS_FEATURE_PASSED_VALID)
    return p, g, nodes.parent(p)


@dataclass
class MoveIndices:
    """Index form of a tried move, kept for commit/undo of a KL run."""
    subtree: int
    above: int
    old_above: int
    which_child: int
    parent: int
    old_grandparent: Optional[int]
    new_grandparent: Optional[int]


@dataclass
class Move:
    """
    Candidate move: put ``subtree`` above ``above``, or join the two leaves.

    ``cost`` is the worst-case update cost at the position of the optimized
    node after the move, ``tie_cost`` the cost at the lca of two equally
    good targets (lower is better).
    """
    subtree: Optional[int] = None
    above: Optional[int] = None
    join: bool = False
    cost: float = math.inf
    tie_cost: float = math.inf

    def is_empty(self) -> bool:
        return self.subtree is None

    def clear(self) -> None:
        self.subtree = None
        self.above = None
        self.join = False
        self.cost = math.inf
        self.tie_cost = math.inf

    def position(self, tree: "Treemap", lca: Node) -> int:
        """Index at which ``lca``'s role is played after this move."""
        s = tree.nodes[self.subtree]
        if s.parent == lca.index:
            return tree.nodes.sibling(s).index
        return lca.index

    def try_it(self, tree: "Treemap") -> MoveIndices:
        """Executes the move tentatively; undo_move reverses it."""
        s = tree.nodes[self.subtree]
        above = tree.nodes[self.above]
        if s.parent is None:
            raise ValueError(f"Move.try_it: node {s.index} is the root")
        if tree.nodes.is_below(above, s) or above.index == s.parent:
            raise ValueError(f"Move.try_it: node {above.index} is not outside the subtree of {s.index}")
        p = tree.nodes[s.parent]
        which = p.which_child(s.index)
        o = tree.nodes[p.child[1 - which]]
        if above.index == o.index:
            raise ValueError(f"Move.try_it: node {s.index} is already next to {above.index}")
        p, g, q = _relink(tree, s, above)
        s.clear_flag(NodeFlag.CAN_BE_MOVED)
        tree.is_gaussian_valid_valid = False
        tree.stat.nr_of_moves += 1
        return MoveIndices(
            subtree=s.index, above=self.above, old_above=o.index, which_child=which,
            parent=p.index, old_grandparent=None if g is None else g.index,
            new_grandparent=None if q is None else q.index,
        )

    def do_it(self, tree: "Treemap") -> Optional[Node]:
        """
        Executes the move permanently.

        Returns the joined leaf for a join move, else the new parent of
        ``subtree``.
        """
        tried = self.try_it(tree)
        commit_moves(tree, [tried])
        p = tree.nodes[tried.parent]
        if self.join:
            return tree.join_subtree(p)
        return p


def undo_move(tree: "Treemap", move: MoveIndices) -> None:
    """Reverses a tried move, restoring the child order of its parent."""
    s = tree.nodes[move.subtree]
    p, _, _ = _relink(tree, s, tree.nodes[move.old_above])
    p.child[move.which_child] = s.index
    p.child[1 - move.which_child] = move.old_above
    s.set_flag(NodeFlag.CAN_BE_MOVED)


def commit_moves(tree: "Treemap", moves: List[MoveIndices]) -> None:
    """
    Makes tried moves permanent.

    During trials only feature-passed flags are maintained, so the nodes
    whose children changed are invalidated up to the root unconditionally.
    """
    for move in moves:
        tree.nodes[move.subtree].set_flag(NodeFlag.CAN_BE_MOVED)
        for index in (move.parent, move.old_grandparent, move.new_grandparent):
            node = tree.nodes.get(index)
            if node is not None:
                tree.invalidate(node, stop_at_clear=False)
                tree.optimizer.enqueue(node.index)
    tree.is_gaussian_valid_valid = True


# =============================================================================
# KL search
# =============================================================================


def _shares(a: List[int], b) -> bool:
    return not set(a).isdisjoint(b)


def _wc_with_override(tree: "Treemap", node: Node, cost: float, stop: Node) -> float:
    """Worst-case cost at ``stop`` if ``node``'s worst-case cost were ``cost``."""
    while node.index != stop.index:
        parent = tree.nodes[node.parent]
        other = tree.nodes[parent.child[1 - parent.which_child(node.index)]]
        cost = parent.update_cost + max(cost, other.worst_case_update_cost)
        node = parent
    return cost


def _kl_candidates(tree: "Treemap", lca: Node, exhaustive: bool) -> List[Tuple[int, List[int]]]:
    """
    (subtree, [targets]) pairs worth evaluating for ``lca``.

    The pruned variant only descends into nodes sharing a feature with
    ``lca`` and only offers targets sharing a feature with the subtree. The
    exhaustive variant pairs every movable node on one side with every node
    on the other side.
    """
    nodes = tree.nodes
    result: List[Tuple[int, List[int]]] = []
    if exhaustive:
        for side in (0, 1):
            other = nodes.child(lca, 1 - side)
            for s in nodes.subtree(nodes.child(lca, side)):
                if not s.is_flag(NodeFlag.CAN_BE_MOVED):
                    continue
                old_above = nodes.sibling(s).index
                targets = [t.index for t in nodes.subtree(other) if t.index != old_above]
                if targets:
                    result.append((s.index, targets))
        return result

    involved = set(lca.features_involved())
    for side in (0, 1):
        other = nodes.child(lca, 1 - side)
        sources = []
        stack = [nodes.child(lca, side)]
        while stack:
            n = stack.pop()
            if not _shares(n.feature_passed, involved):
                continue
            sources.append(n)
            stack.extend(reversed(nodes.children(n)))
        for s in sources:
            if not s.is_flag(NodeFlag.CAN_BE_MOVED):
                continue
            s_features = set(s.feature_passed)
            old_above = nodes.sibling(s).index
            targets: List[int] = []
            stack = [other]
            while stack:
                t = stack.pop()
                if t is not other and not _shares(t.feature_passed, s_features):
                    continue
                if t.index != old_above:
                    targets.append(t.index)
                stack.extend(reversed(nodes.children(t)))
            if targets:
                result.append((s.index, targets))
    return result


def _evaluate(tree: "Treemap", lca: Node, subtree: int, above: int, exhaustive: bool,
              with_join: bool, tie_node: Optional[int] = None) -> Tuple[float, float, float]:
    """
    Costs of moving ``subtree`` above ``above``: (move, join, at tie_node).

    The tree is restored before returning (feature-passed lists are left
    invalid along the changed paths).
    """
    nodes = tree.nodes
    s = nodes[subtree]
    position = nodes.sibling(s) if s.parent == lca.index else lca
    p_old = nodes[s.parent]
    which = p_old.which_child(s.index)
    old_above = p_old.child[1 - which]

    p, _, _ = _relink(tree, s, nodes[above])
    if exhaustive:
        for node in nodes:
            node.clear_flag(NodeFlag.IS_FEATURE_PASSED_VALID)
    update_feature_passed(tree)
    cost = position.worst_case_update_cost
    join_cost = math.inf
    if with_join:
        join_cost = _wc_with_override(tree, p, cost_of_joining(tree, p), position)
    tie_cost = math.inf if tie_node is None else nodes[tie_node].worst_case_update_cost
    tree.stat.accumulated_optimization_cost += 1

    p, _, _ = _relink(tree, s, nodes[old_above])
    p.child[which] = s.index
    p.child[1 - which] = old_above
    return cost, join_cost, tie_cost


def _optimal_kl_step(tree: "Treemap", lca: Node, join_only_below: float, exhaustive: bool) -> Move:
    update_feature_passed(tree)
    best = Move()
    if lca.is_leaf():
        return best
    nodes = tree.nodes
    for subtree, targets in _kl_candidates(tree, lca, exhaustive):
        s = nodes[subtree]
        for above in targets:
            a = nodes[above]
            with_join = (
                s.is_leaf() and a.is_leaf()
                and s.is_flag(NodeFlag.CAN_BE_INTEGRATED) and a.is_flag(NodeFlag.CAN_BE_INTEGRATED)
            )
            cost, join_cost, _ = _evaluate(tree, lca, subtree, above, exhaustive, with_join)
            if join_cost < join_only_below and join_cost < cost:
                if join_cost < best.cost:
                    best = Move(subtree, above, join=True, cost=join_cost)
                continue
            if cost < best.cost:
                best = Move(subtree, above, cost=cost)
            elif cost == best.cost and not best.join and best.subtree == subtree:
                # Prefer the target keeping the lca of both targets cheaper
                update_feature_passed(tree)
                tie = nodes.lca(nodes[best.above], a).index
                best_tie = _evaluate(tree, lca, subtree, best.above, exhaustive, False, tie)[2]
                cand_tie = _evaluate(tree, lca, subtree, above, exhaustive, False, tie)[2]
                if cand_tie < best_tie:
                    best = Move(subtree, above, cost=cost, tie_cost=cand_tie)
            update_feature_passed(tree)
    if exhaustive:
        for node in nodes:
            node.clear_flag(NodeFlag.IS_FEATURE_PASSED_VALID)
    update_feature_passed(tree)
    return best


def optimal_kl_step(tree: "Treemap", lca: Node, join_only_below: float = math.inf) -> Move:
    """
    Best single move for lowering the worst-case update cost of ``lca``.

    Joins of two leaves are only considered if their cost is below
    ``join_only_below``. Returns an empty Move if no candidate exists. The
    tree is unchanged afterwards.
    """
    return _optimal_kl_step(tree, lca, join_only_below, exhaustive=False)


def safe_optimal_kl_step(tree: "Treemap", lca: Node, join_only_below: float = math.inf) -> Move:
    """Brute-force reference of optimal_kl_step: every movable pair, whole tree recomputed per candidate."""
    return _optimal_kl_step(tree, lca, join_only_below, exhaustive=True)


# =============================================================================
# Optimizer
# =============================================================================


class OptimizerState(Enum):
    IDLE = "idle"
    SELECTING = "selecting"
    RUNNING = "running"


class Optimizer:
    """
    Runs KL optimization on the nodes queued by topology changes.

    A run is atomic: when one_kl_run returns, every move has either been
    committed or undone.
    """

    def __init__(self, tree: "Treemap", params: TreemapParams) -> None:
        self.tree = tree
        self.params = params
        self.optimization_queue: Deque[int] = deque()
        self.state = OptimizerState.IDLE
        self.lca_index: Optional[int] = None
        self.initial_cost = math.inf
        self.unsuccessful_moves: List[MoveIndices] = []
        # Histogram driving the min_success_probability stopping rule,
        # not reset with the statistics.
        self.htp: List[HTPEntry] = []
        self.report = ""
        self._op_reports: List[OpReport] = []

    def clear(self) -> None:
        self.optimization_queue.clear()
        self.state = OptimizerState.IDLE
        self.lca_index = None
        self.initial_cost = math.inf
        self.unsuccessful_moves = []
        self.htp = []
        self.report = ""
        self._op_reports = []

    def enqueue(self, index: int) -> None:
        self.optimization_queue.append(index)

    def nr_of_nodes_to_be_optimized(self) -> int:
        nodes = self.tree.nodes
        return sum(
            1 for index in set(self.optimization_queue)
            if nodes.is_live(index) and not nodes[index].is_flag(NodeFlag.IS_OPTIMIZED)
        )

    def next_node_to_be_optimized(self) -> Optional[Node]:
        """Pops the queue until a live node that is not optimized comes up."""
        nodes = self.tree.nodes
        while self.optimization_queue:
            node = nodes.get(self.optimization_queue.popleft())
            if node is not None and not node.is_flag(NodeFlag.IS_OPTIMIZED):
                return node
        return None

    def one_kl_run(self) -> Optional[OpReport]:
        """Performs one complete KL run. Returns None if no node needs optimization."""
        tree = self.tree
        nodes = tree.nodes
        update_feature_passed(tree)
        self.state = OptimizerState.SELECTING
        selected = self.next_node_to_be_optimized()
        if selected is None:
            self.state = OptimizerState.IDLE
            return None

        self.state = OptimizerState.RUNNING
        self.lca_index = selected.index
        self.initial_cost = selected.worst_case_update_cost
        self.unsuccessful_moves = []
        threshold = self.initial_cost - self.params.cost_tolerance
        tried: List[MoveIndices] = []
        success = joined = False
        final_cost = self.initial_cost
        final_index = selected.index

        while True:
            lca = nodes[self.lca_index]
            move = optimal_kl_step(tree, lca, join_only_below=threshold)
            if move.is_empty():
                break
            position = move.position(tree, lca)
            tried.append(move.try_it(tree))
            self.lca_index = position
            if move.join:
                commit_moves(tree, tried)
                tree.join_subtree(nodes[tried[-1].parent])
                update_feature_passed(tree)
                final_index = position
                # Removing an empty joined leaf may free the position node
                final_cost = nodes[position].worst_case_update_cost if nodes.is_live(position) else move.cost
                success = joined = True
                break
            update_feature_passed(tree)
            cost = nodes[position].worst_case_update_cost
            if cost < threshold:
                commit_moves(tree, tried)
                final_index = position
                final_cost = cost
                success = True
                break
            n = len(self.unsuccessful_moves)
            if n >= self.params.max_nr_of_unsuccessful_moves:
                break
            if htp_cond_prob(self.htp, n + 1) < self.params.min_success_probability:
                break
            self.unsuccessful_moves.append(tried[-1])

        if success:
            self.optimization_statistics(len(self.unsuccessful_moves), True)
            for index in (final_index, selected.index):
                if nodes.is_live(index):
                    self.enqueue(index)
        else:
            for tried_move in reversed(tried):
                undo_move(tree, tried_move)
            tree.is_gaussian_valid_valid = True
            update_feature_passed(tree)
            final_cost = selected.worst_case_update_cost
            self.optimization_statistics(len(tried), False)
            selected.set_flag(NodeFlag.IS_OPTIMIZED)
            tree.policy.check_for_sparsification(tree, selected)

        report = OpReport(
            name="KLRun",
            lca_index=selected.index,
            initial_cost=self.initial_cost,
            final_cost=final_cost,
            nr_of_moves=len(tried),
            success=success,
            joined=joined,
            metrics={"final_index": final_index},
        )
        self._record(report)
        self.unsuccessful_moves = []
        self.state = OptimizerState.IDLE
        return report

    def optimization_statistics(self, nr_of_unsuccessful_moves: int, success: bool) -> None:
        record_htp(self.htp, nr_of_unsuccessful_moves, success)
        self.tree.stat.optimization_statistics(nr_of_unsuccessful_moves, success)
        self.tree.stat.nr_of_kl_runs += 1
        if success:
            self.tree.stat.nr_of_successful_kl_runs += 1

    def optimization_cond_prob(self, nr_of_unsuccessful_moves: int) -> float:
        return htp_cond_prob(self.htp, nr_of_unsuccessful_moves)

    def _record(self, report: OpReport) -> None:
        self._op_reports.append(report)
        if len(self.report) < self.params.report_max_length:
            self.report += report.summary()
        _logger.debug(
            "KL run at node %d: %s after %d moves, cost %.6g -> %.6g",
            report.lca_index, "joined" if report.joined else "committed" if report.success else "rolled back",
            report.nr_of_moves, report.initial_cost, report.final_cost,
        )

    def optimize(self, nr_of_moves: Optional[int] = None) -> int:
        """
        Runs complete KL runs until ``nr_of_moves`` trial moves are spent
        (default nr_of_moves_per_step) or the queue is empty.

        A run is never interrupted, so the budget may be exceeded by the
        last run. A run without any move counts as one. Returns the moves
        spent.
        """
        budget = self.params.nr_of_moves_per_step if nr_of_moves is None else nr_of_moves
        spent = 0
        while spent < budget:
            report = self.one_kl_run()
            if report is None:
                break
            spent += max(1, report.nr_of_moves)
        return spent

    def optimize_full_runs(self, max_runs: Optional[int] = None) -> int:
        """
        Runs KL runs until no node needs optimization. Returns the number of runs.

        ``max_runs`` bounds the loop; by default it is a generous multiple of
        the number of nodes.
        """
        if max_runs is None:
            max_runs = 100 * (len(self.tree.nodes) + 1)
        runs = 0
        while runs < max_runs and self.one_kl_run() is not None:
            runs += 1
        if runs >= max_runs and self.nr_of_nodes_to_be_optimized() > 0:
            _logger.warning("optimize_full_runs: stopped after %d runs with nodes still queued", runs)
        return runs

    def get_and_clear_report(self) -> str:
        report, self.report = self.report, ""
        return report

    def consume_op_reports(self) -> List[OpReport]:
        reports, self._op_reports = self._op_reports, []
        return reports
