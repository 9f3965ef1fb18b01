"""
Tests for feature-passed lists, joins and bottom-up Gaussians.
"""

import math

import numpy as np
import pytest

from treemap_slam.backend.aggregation import NOT_AGGREGABLE
from treemap_slam.backend.fusion.gaussian_info import multiply
from treemap_slam.backend.policy import TreemapPolicy
from treemap_slam.backend.structures.feature_registry import FeatureFlag
from treemap_slam.backend.structures.node_arena import NodeFlag
from treemap_slam.backend.treemap import Treemap


@pytest.fixture
def three_leaves(make_factor):
    """
    Leaves (0, 1), (0, 2), (0, 3) added in this order:

            r2
           /  \\
          r1   c
         /  \\
        a    b
    """
    tree = Treemap()
    tree.new_feature_block(4)
    a = tree.add_leaf(make_factor((0, 1)))
    b = tree.add_leaf(make_factor((0, 2)))
    c = tree.add_leaf(make_factor((0, 3)))
    return tree, a, b, c


class TestFeaturePassed:
    """Tests for update_feature_passed."""

    def test_lists_and_marginalization_nodes(self, three_leaves):
        tree, a, b, c = three_leaves
        tree.update_feature_passed()
        r1 = tree.nodes.parent(a)
        r2 = tree.root_node
        assert a.feature_marginalized == [1]
        assert a.feature_passed == [0]
        assert r1.feature_marginalized == []
        assert r1.feature_passed == [0]
        assert r1.feature_passed_count == [2]
        assert r2.feature_marginalized == [0]
        assert r2.feature_passed == []
        assert tree.features[0].marginalization_node == r2.index
        assert tree.features[3].marginalization_node == c.index

    def test_worst_case_cost(self, three_leaves):
        tree, a, b, c = three_leaves
        tree.update_feature_passed()
        r1 = tree.nodes.parent(a)
        cost = tree.policy.update_cost
        assert a.update_cost == cost(2)
        assert r1.worst_case_update_cost == pytest.approx(cost(1) + cost(2))
        assert tree.root_node.worst_case_update_cost == pytest.approx(cost(1) + cost(1) + cost(2))

    def test_idempotent(self, three_leaves):
        tree, _, _, _ = three_leaves
        assert tree.update_feature_passed() == 5
        before = [(n.index, list(n.feature_passed), n.status) for n in tree.nodes]
        assert tree.update_feature_passed() == 0
        assert [(n.index, list(n.feature_passed), n.status) for n in tree.nodes] == before

    def test_adding_a_leaf_moves_marginalization_node(self, three_leaves, make_factor):
        tree, a, _, _ = three_leaves
        tree.update_feature_passed()
        assert tree.features[1].marginalization_node == a.index
        d = tree.add_leaf(make_factor((1, 2)))
        tree.update_feature_passed()
        assert a.feature_passed == [0, 1]
        assert tree.features[1].marginalization_node == tree.nodes.lca(a, d).index
        tree.assert_it()


class TestEffectOfJoining:
    """Tests for effect_of_joining/cost_of_joining."""

    def test_three_groups(self, make_factor):
        tree = Treemap()
        tree.new_feature_block(2, FeatureFlag.CAN_BE_MARGINALIZED_OUT)
        tree.new_feature_block(2)
        a = tree.add_leaf(make_factor((0, 1, 2)))
        b = tree.add_leaf(make_factor((1, 2, 3)))
        tree.add_leaf(make_factor((3,)))
        r1 = tree.nodes.parent(a)
        assert tree.nodes.parent(b).index == r1.index
        effect = tree.effect_of_joining(r1)
        # 0, 1 local and marginalizable, 2 local, 3 involved outside
        assert effect.features == [0, 1, 2, 3]
        assert (effect.n_pm, effect.n_m, effect.n_p) == (2, 1, 1)
        assert tree.cost_of_joining(r1) == tree.policy.update_cost(2)

    def test_sparsified_feature_is_permanent_even_if_shared(self, make_factor):
        tree = Treemap()
        tree.new_feature_block(2, FeatureFlag.CAN_BE_MARGINALIZED_OUT)
        a = tree.add_leaf(make_factor((0, 1)))
        tree.add_leaf(make_factor((0,)))
        tree.features[0].flags |= FeatureFlag.CAN_BE_SPARSIFIED
        effect = tree.effect_of_joining(a)
        assert effect.features[:effect.n_pm] == [0, 1]

    def test_not_aggregable(self, make_factor):
        tree = Treemap()
        tree.new_feature_block(2)
        a = tree.add_leaf(make_factor((0, 1)), NodeFlag.NONE)
        tree.add_leaf(make_factor((1,)))
        root = tree.root_node
        assert tree.effect_of_joining(root) == NOT_AGGREGABLE
        assert tree.cost_of_joining(a) == math.inf
        with pytest.raises(ValueError, match="join_subtree"):
            tree.join_subtree(root)


class TestJoinSubtree:
    """Tests for join_subtree."""

    def test_join_keeps_estimate(self, three_leaves):
        tree, a, b, c = three_leaves
        tree.compute_linear_estimate()
        before = {f: tree.estimate(f) for f in range(4)}
        r1 = tree.nodes.parent(a)
        leaf = tree.join_subtree(r1)
        assert leaf.index == r1.index
        assert leaf.is_leaf()
        assert leaf.factor.features == (0, 1, 2)
        assert len(tree.nodes) == 3
        assert tree.features[0].count == 2
        tree.assert_it()
        tree.compute_linear_estimate()
        for f in range(4):
            assert tree.estimate(f) == pytest.approx(before[f])

    def test_join_marginalizes_and_deletes_local_features(self, make_factor):
        tree = Treemap()
        tree.new_feature_block(3, FeatureFlag.CAN_BE_MARGINALIZED_OUT)
        a = tree.add_leaf(make_factor((0, 1)))
        tree.add_leaf(make_factor((1, 2)))
        tree.add_leaf(make_factor((2,)))
        tree.compute_linear_estimate()
        x2 = tree.estimate(2)
        r1 = tree.nodes.parent(a)
        leaf = tree.join_subtree(r1)
        assert leaf.factor.features == (2,)
        assert not tree.features.is_live(0)
        assert not tree.features.is_live(1)
        tree.assert_it()
        tree.compute_linear_estimate()
        assert tree.estimate(2) == pytest.approx(x2)
        tree.assert_estimate()

    def test_join_reports_to_policy(self, make_factor):
        events = []

        class RecordingPolicy(TreemapPolicy):
            def has_been_marginalized_out(self, tree, feature_id):
                events.append(("marginalized", feature_id))

            def has_been_sparsified_out(self, tree, feature_id):
                events.append(("sparsified", feature_id))

        tree = Treemap(policy=RecordingPolicy())
        tree.new_feature_block(2, FeatureFlag.CAN_BE_MARGINALIZED_OUT)
        a = tree.add_leaf(make_factor((0, 1)))
        tree.add_leaf(make_factor((0,)))
        tree.features[0].flags |= FeatureFlag.CAN_BE_SPARSIFIED
        tree.join_subtree(a)
        assert events == [("sparsified", 0), ("marginalized", 1)]
        assert tree.features.is_live(0)
        tree.assert_it()

    def test_empty_joined_leaf_is_removed(self, make_factor):
        tree = Treemap()
        tree.new_feature_block(2, FeatureFlag.CAN_BE_MARGINALIZED_OUT)
        tree.new_feature_block(1)
        a = tree.add_leaf(make_factor((0, 1)))
        tree.add_leaf(make_factor((2,)))
        assert tree.join_subtree(a) is None
        assert len(tree.nodes) == 1
        assert tree.root_node.factor.features == (2,)
        tree.assert_it()


class TestGaussians:
    """Tests for update_gaussians/update_gaussians_cost."""

    def test_cost_counts_exactly_the_invalid_nodes(self, three_leaves):
        tree, _, _, _ = three_leaves
        expected = tree.update_gaussians_cost()
        assert expected == pytest.approx(sum(n.update_cost for n in tree.nodes))
        tree.stat.accumulated_update_cost = 0.0
        assert tree.update_gaussians() == 5
        assert tree.stat.accumulated_update_cost == pytest.approx(expected)
        assert tree.update_gaussians_cost() == 0.0

    def test_idempotent(self, three_leaves):
        tree, _, _, _ = three_leaves
        tree.update_gaussians()
        before = {n.index: n.gaussian for n in tree.nodes}
        assert tree.update_gaussians() == 0
        assert all(n.gaussian is before[n.index] for n in tree.nodes)

    def test_root_message_is_empty(self, three_leaves):
        tree, _, _, _ = three_leaves
        tree.update_gaussians()
        root = tree.root_node
        assert root.gaussian.passed.dimension == 0
        assert root.gaussian.marginalized == (0,)

    def test_messages_are_marginals_of_the_subtree(self, three_leaves):
        tree, a, b, _ = three_leaves
        tree.update_gaussians()
        r1 = tree.nodes.parent(a)
        dense = multiply(a.factor, b.factor).marginalize([1, 2])
        assert r1.gaussian.passed.features == (0,)
        assert np.allclose(r1.gaussian.passed.Lambda, dense.Lambda)
        assert np.allclose(r1.gaussian.passed.eta, dense.eta)

    def test_leaf_change_invalidates_path_only(self, three_leaves, make_factor):
        tree, a, b, c = three_leaves
        tree.update_gaussians()
        c.factor = make_factor((0, 3))
        tree.invalidate(c)
        assert a.is_flag(NodeFlag.IS_GAUSSIAN_VALID)
        assert not tree.root_node.is_flag(NodeFlag.IS_GAUSSIAN_VALID)
        assert tree.update_gaussians() == 2
