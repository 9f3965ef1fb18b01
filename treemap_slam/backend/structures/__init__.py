"""
Data structures of the treemap.

NodeArena owns the tree nodes, FeatureRegistry the per-feature metadata and
the free lists of feature ids.
"""

from treemap_slam.backend.structures.node_arena import (
    Node,
    NodeArena,
    NodeFlag,
    NodeGaussian,
)
from treemap_slam.backend.structures.feature_registry import (
    Feature,
    FeatureFlag,
    FeatureRegistry,
    FeatureState,
)

__all__ = [
    "Node",
    "NodeArena",
    "NodeFlag",
    "NodeGaussian",
    "Feature",
    "FeatureFlag",
    "FeatureRegistry",
    "FeatureState",
]
