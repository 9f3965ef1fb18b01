"""
Pull-based statistics of a treemap.

Counters accumulate while the tree works and are read through
Treemap.compute_statistics (snapshot) or Treemap.consume_statistics
(snapshot, then reset), the same snapshot/consume pattern used for
runtime counters elsewhere in the backend.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import List


@dataclass
class HTPEntry:
    """How many KL runs succeeded / gave up after a given number of unsuccessful moves."""
    success: int = 0
    no_success: int = 0


@dataclass
class TreemapStatistics:
    """
    Statistics about the tree and the work done on it.

    Attributes:
        nr_of_nodes: Live nodes
        nr_of_leaves: Live leaves
        nr_of_features: Live features
        nr_of_nodes_to_be_optimized: Queue entries still waiting for a KL run
        max_depth: Depth of the deepest leaf
        root_worst_case_update_cost: Worst-case update cost of the root
        accumulated_update_cost: Sum of update costs of all Gaussian recomputations
        accumulated_optimization_cost: Nodes evaluated by KL searches
        nr_of_gaussian_updates: Gaussian recomputations
        nr_of_feature_passed_updates: Feature-passed recomputations
        nr_of_kl_runs: Completed KL runs
        nr_of_successful_kl_runs: Committed KL runs
        nr_of_moves: Trial moves executed
        nr_of_joins: Subtrees joined into a leaf
        htp: Per-attempt-count success histogram
    """
    nr_of_nodes: int = 0
    nr_of_leaves: int = 0
    nr_of_features: int = 0
    nr_of_nodes_to_be_optimized: int = 0
    max_depth: int = 0
    root_worst_case_update_cost: float = 0.0
    accumulated_update_cost: float = 0.0
    accumulated_optimization_cost: float = 0.0
    nr_of_gaussian_updates: int = 0
    nr_of_feature_passed_updates: int = 0
    nr_of_kl_runs: int = 0
    nr_of_successful_kl_runs: int = 0
    nr_of_moves: int = 0
    nr_of_joins: int = 0
    htp: List[HTPEntry] = field(default_factory=list)

    def optimization_statistics(self, nr_of_unsuccessful_moves: int, success: bool) -> None:
        """Records the outcome of a KL run that had ``nr_of_unsuccessful_moves`` before it ended."""
        record_htp(self.htp, nr_of_unsuccessful_moves, success)

    def optimization_cond_prob(self, nr_of_unsuccessful_moves: int) -> float:
        return htp_cond_prob(self.htp, nr_of_unsuccessful_moves)

    def snapshot(self) -> "TreemapStatistics":
        return copy.deepcopy(self)


def record_htp(htp: List[HTPEntry], n: int, success: bool) -> None:
    while len(htp) <= n:
        htp.append(HTPEntry())
    if success:
        htp[n].success += 1
    else:
        htp[n].no_success += 1


def htp_cond_prob(htp: List[HTPEntry], n: int) -> float:
    """
    Probability that a run which already made ``n`` unsuccessful moves
    still ends in success.

        P(n) = S(>=n) / (S(>=n) + F(>=n))

    Returns 1.0 while there is no data for runs that long.
    """
    successes = sum(e.success for e in htp[n:])
    failures = sum(e.no_success for e in htp[n:])
    if successes + failures == 0:
        return 1.0
    return successes / (successes + failures)
