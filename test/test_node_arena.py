"""
Tests for the node arena: allocation, navigation and flag propagation.
"""

import pytest

from treemap_slam.backend.structures.node_arena import NodeArena, NodeFlag


def _link(arena, parent, left, right):
    arena[parent].child = [left, right]
    arena[left].parent = parent
    arena[right].parent = parent


@pytest.fixture
def small_arena():
    """
    Arena holding

            0
           / \\
          1   2
             / \\
            3   4
    """
    arena = NodeArena()
    for _ in range(5):
        arena.allocate()
    _link(arena, 0, 1, 2)
    _link(arena, 2, 3, 4)
    return arena


class TestAllocation:
    """Tests for allocate/free."""

    def test_fresh_indices_are_consecutive(self):
        arena = NodeArena()
        assert [arena.allocate().index for _ in range(3)] == [0, 1, 2]
        assert len(arena) == 3

    def test_freed_index_is_reused_lifo(self):
        arena = NodeArena()
        for _ in range(4):
            arena.allocate()
        arena.free(1)
        arena.free(3)
        assert len(arena) == 2
        assert arena.allocate().index == 3
        assert arena.allocate().index == 1
        assert arena.allocate().index == 4

    def test_reused_node_is_fresh(self):
        arena = NodeArena()
        node = arena.allocate()
        node.status = NodeFlag.IS_OPTIMIZED
        node.feature_passed = [1, 2]
        arena.free(node.index)
        again = arena.allocate()
        assert again.index == node.index
        assert again.status == NodeFlag.NONE
        assert again.feature_passed == []

    def test_double_free_raises(self):
        arena = NodeArena()
        arena.allocate()
        arena.free(0)
        with pytest.raises(RuntimeError):
            arena.free(0)

    def test_access_to_free_slot_raises(self):
        arena = NodeArena()
        arena.allocate()
        arena.free(0)
        assert arena.get(0) is None
        assert not arena.is_live(0)
        with pytest.raises(RuntimeError):
            arena[0]

    def test_iteration_skips_free_slots(self):
        arena = NodeArena()
        for _ in range(3):
            arena.allocate()
        arena.free(1)
        assert [n.index for n in arena] == [0, 2]


class TestNavigation:
    """Tests for parent/child/sibling navigation."""

    def test_sibling(self, small_arena):
        assert small_arena.sibling(small_arena[3]).index == 4
        assert small_arena.sibling(small_arena[1]).index == 2
        assert small_arena.sibling(small_arena[0]) is None

    def test_which_child(self, small_arena):
        assert small_arena[2].which_child(3) == 0
        assert small_arena[2].which_child(4) == 1
        with pytest.raises(RuntimeError):
            small_arena[2].which_child(1)

    def test_depth_and_ancestors(self, small_arena):
        assert small_arena.depth(small_arena[0]) == 0
        assert small_arena.depth(small_arena[4]) == 2
        assert [n.index for n in small_arena.ancestors(small_arena[4])] == [4, 2, 0]

    def test_lca(self, small_arena):
        assert small_arena.lca(small_arena[3], small_arena[4]).index == 2
        assert small_arena.lca(small_arena[1], small_arena[4]).index == 0
        assert small_arena.lca(small_arena[2], small_arena[3]).index == 2

    def test_is_below(self, small_arena):
        assert small_arena.is_below(small_arena[3], small_arena[2])
        assert small_arena.is_below(small_arena[2], small_arena[2])
        assert not small_arena.is_below(small_arena[1], small_arena[2])

    def test_subtree_is_preorder(self, small_arena):
        assert [n.index for n in small_arena.subtree(small_arena[0])] == [0, 1, 2, 3, 4]
        assert [n.index for n in small_arena.leaves_below(small_arena[0])] == [1, 3, 4]


class TestFlagPropagation:
    """Tests for reset_flag_up_to_root."""

    def test_clears_up_to_root(self, small_arena):
        for node in small_arena:
            node.set_flag(NodeFlag.IS_FEATURE_PASSED_VALID)
        changed = small_arena.reset_flag_up_to_root(small_arena[3], NodeFlag.IS_FEATURE_PASSED_VALID)
        assert [n.index for n in changed] == [3, 2, 0]
        assert small_arena[4].is_flag(NodeFlag.IS_FEATURE_PASSED_VALID)
        assert small_arena[1].is_flag(NodeFlag.IS_FEATURE_PASSED_VALID)

    def test_stops_at_first_clear_ancestor(self, small_arena):
        for node in small_arena:
            node.set_flag(NodeFlag.IS_OPTIMIZED)
        # Node 2 clear below a set root breaks the invariant on purpose
        small_arena[2].clear_flag(NodeFlag.IS_OPTIMIZED)
        changed = small_arena.reset_flag_up_to_root(small_arena[3], NodeFlag.IS_OPTIMIZED)
        assert [n.index for n in changed] == [3]
        assert small_arena[0].is_flag(NodeFlag.IS_OPTIMIZED)

    def test_full_walk_ignores_clear_ancestors(self, small_arena):
        small_arena[0].set_flag(NodeFlag.IS_OPTIMIZED)
        small_arena[3].set_flag(NodeFlag.IS_OPTIMIZED)
        changed = small_arena.reset_flag_up_to_root(small_arena[3], NodeFlag.IS_OPTIMIZED, stop_at_clear=False)
        assert [n.index for n in changed] == [3, 0]

    def test_gaussian_flag_calls_hook(self):
        calls = []
        arena = NodeArena(on_gaussian_invalidated=lambda: calls.append(1))
        arena.allocate()
        arena.reset_flag_up_to_root(arena[0], NodeFlag.IS_FEATURE_PASSED_VALID)
        assert calls == []
        arena.reset_flag_up_to_root(arena[0], NodeFlag.IS_GAUSSIAN_VALID)
        assert calls == [1]
