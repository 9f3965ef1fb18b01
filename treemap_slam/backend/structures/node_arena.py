"""
NodeArena: index-addressed storage of treemap nodes.

Every node lives in one slot of the arena and is referenced everywhere else
(parent/child links, feature marginalization nodes, optimizer queue) by its
integer index. Freed indices are recycled LIFO.

Status flags and their propagation:

    flag                      cleared by                     propagates
    ------------------------  -----------------------------  -----------------
    IS_FEATURE_PASSED_VALID   topology or leaf change        up to root
    IS_GAUSSIAN_VALID         permanent topology/leaf change up to root
    IS_OPTIMIZED              permanent topology/leaf change up to root
    CAN_BE_MOVED              KL trial move of the node      none
    DONT_UPDATE_ESTIMATE      only_update_estimates_for      up to root
    CAN_BE_INTEGRATED         set by the caller for leaves   none

Invariant: for the propagating flags, a cleared flag on a node implies the
flag is cleared on every ancestor. reset_flag_up_to_root therefore stops at
the first ancestor where the flag is already clear.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Callable, Iterator, List, Optional

from treemap_slam.backend.fusion.gaussian_info import GaussianFactor


class NodeFlag(enum.IntFlag):
    NONE = 0
    IS_FEATURE_PASSED_VALID = 1
    IS_GAUSSIAN_VALID = 2
    IS_OPTIMIZED = 4
    CAN_BE_MOVED = 8
    DONT_UPDATE_ESTIMATE = 16
    CAN_BE_INTEGRATED = 32


@dataclass
class NodeGaussian:
    """
    Aggregated Gaussian of a node.

    joint is the Gaussian over marginalized + passed features at the time
    it was computed; passed is its marginal over the passed features (the
    message to the parent).
    """
    joint: GaussianFactor
    marginalized: tuple
    passed: GaussianFactor


@dataclass
class Node:
    """
    Single treemap node.

    Attributes:
        index: Slot in the arena (stable identity)
        parent: Index of the parent or None for the root
        child: Indices of the two children, (None, None) for a leaf
        status: NodeFlag bit set
        factor: Original factor of a leaf (None for internal nodes)
        feature_passed: Sorted ids of features passed to the parent
        feature_passed_count: Leaves below involving each passed feature
        feature_marginalized: Sorted ids of features marginalized here
        update_cost: Cost of recomputing this node alone
        worst_case_update_cost: Cost of recomputing the worst path below
        gaussian: Aggregated Gaussian (None until computed)
    """
    index: int
    parent: Optional[int] = None
    child: List[Optional[int]] = field(default_factory=lambda: [None, None])
    status: NodeFlag = NodeFlag.NONE
    factor: Optional[GaussianFactor] = None
    feature_passed: List[int] = field(default_factory=list)
    feature_passed_count: List[int] = field(default_factory=list)
    feature_marginalized: List[int] = field(default_factory=list)
    update_cost: float = 0.0
    worst_case_update_cost: float = 0.0
    gaussian: Optional[NodeGaussian] = None

    def is_leaf(self) -> bool:
        return self.child[0] is None

    def is_flag(self, flag: NodeFlag) -> bool:
        return (self.status & flag) == flag

    def set_flag(self, flag: NodeFlag) -> None:
        self.status |= flag

    def clear_flag(self, flag: NodeFlag) -> None:
        self.status &= ~flag

    def which_child(self, child_index: int) -> int:
        if self.child[0] == child_index:
            return 0
        if self.child[1] == child_index:
            return 1
        raise RuntimeError(f"Node.which_child: {child_index} is not a child of {self.index}")

    def features_involved(self) -> List[int]:
        return sorted(self.feature_marginalized + self.feature_passed)


class NodeArena:
    """Owns all nodes, recycles freed indices, navigates the tree."""

    def __init__(self, on_gaussian_invalidated: Optional[Callable[[], None]] = None) -> None:
        self.node: List[Optional[Node]] = []
        self.unused_nodes: List[int] = []
        self._on_gaussian_invalidated = on_gaussian_invalidated

    def __len__(self) -> int:
        return len(self.node) - len(self.unused_nodes)

    def __getitem__(self, index: int) -> Node:
        node = self.get(index)
        if node is None:
            raise RuntimeError(f"NodeArena: index {index} does not refer to a live node")
        return node

    def __iter__(self) -> Iterator[Node]:
        return (n for n in self.node if n is not None)

    def get(self, index: Optional[int]) -> Optional[Node]:
        """Returns the node with ``index`` or None for free/out-of-range indices."""
        if index is None or not 0 <= index < len(self.node):
            return None
        return self.node[index]

    def is_live(self, index: Optional[int]) -> bool:
        return self.get(index) is not None

    # ------------------------------------------------------------------
    # Allocation
    # ------------------------------------------------------------------

    def allocate(self) -> Node:
        """Returns a fresh node in a recycled slot if available, else a new slot."""
        if self.unused_nodes:
            index = self.unused_nodes.pop()
        else:
            index = len(self.node)
            self.node.append(None)
        node = Node(index=index)
        self.node[index] = node
        return node

    def free(self, index: int) -> None:
        if self.get(index) is None:
            raise RuntimeError(f"NodeArena.free: index {index} is already free")
        self.node[index] = None
        self.unused_nodes.append(index)

    def clear(self) -> None:
        self.node.clear()
        self.unused_nodes.clear()

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    def parent(self, node: Node) -> Optional[Node]:
        return self.get(node.parent)

    def child(self, node: Node, which: int) -> Node:
        return self[node.child[which]]

    def children(self, node: Node) -> List[Node]:
        if node.is_leaf():
            return []
        return [self[node.child[0]], self[node.child[1]]]

    def sibling(self, node: Node) -> Optional[Node]:
        parent = self.parent(node)
        if parent is None:
            return None
        return self[parent.child[1 - parent.which_child(node.index)]]

    def ancestors(self, node: Node) -> Iterator[Node]:
        """The node itself followed by all its ancestors up to the root."""
        n: Optional[Node] = node
        while n is not None:
            yield n
            n = self.get(n.parent)

    def is_below(self, node: Node, ancestor: Node) -> bool:
        """Whether ``node`` is ``ancestor`` or in its subtree."""
        return any(n.index == ancestor.index for n in self.ancestors(node))

    def depth(self, node: Node) -> int:
        return sum(1 for _ in self.ancestors(node)) - 1

    def lca(self, a: Node, b: Node) -> Node:
        """Least common ancestor of ``a`` and ``b``."""
        path = {n.index for n in self.ancestors(a)}
        for n in self.ancestors(b):
            if n.index in path:
                return n
        raise RuntimeError(f"NodeArena.lca: nodes {a.index} and {b.index} are not connected")

    def subtree(self, node: Node) -> Iterator[Node]:
        """Pre-order traversal of the subtree below ``node``."""
        stack = [node]
        while stack:
            n = stack.pop()
            yield n
            if not n.is_leaf():
                stack.append(self[n.child[1]])
                stack.append(self[n.child[0]])

    def leaves_below(self, node: Node) -> List[Node]:
        return [n for n in self.subtree(node) if n.is_leaf()]

    # ------------------------------------------------------------------
    # Flag propagation
    # ------------------------------------------------------------------

    def reset_flag_up_to_root(self, node: Optional[Node], flag: NodeFlag, stop_at_clear: bool = True) -> List[Node]:
        """
        Clear ``flag`` on ``node`` and its ancestors.

        Walks up only while the flag is set (the invariant guarantees it is
        clear above). With ``stop_at_clear=False`` the walk always reaches
        the root; this is needed when links were changed without keeping
        the invariant for ``flag``. Returns the nodes whose flag changed.
        """
        changed: List[Node] = []
        n = node
        while n is not None:
            if n.is_flag(flag):
                n.clear_flag(flag)
                changed.append(n)
            elif stop_at_clear:
                break
            n = self.get(n.parent)
        if flag & NodeFlag.IS_GAUSSIAN_VALID and self._on_gaussian_invalidated is not None:
            self._on_gaussian_invalidated()
        return changed
