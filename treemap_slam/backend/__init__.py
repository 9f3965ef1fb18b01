"""
Treemap backend.

- structures/: NodeArena (index-addressed nodes) and FeatureRegistry
- fusion/: GaussianFactor and its product/marginal/conditional operations
- aggregation.py: feature-passed lists, joins, bottom-up Gaussians
- estimation.py: top-down back-substitution of estimates
- optimizer.py: KL moves, search and the run state machine
- statistics.py: pull-based statistics
- policy.py: application hooks
- treemap.py: Treemap facade
"""

# Lazy imports to avoid circular dependencies
__all__ = [
    "Treemap",
    "TreemapPolicy",
    "GaussianFactor",
]


def __getattr__(name):
    if name == "Treemap":
        from treemap_slam.backend.treemap import Treemap
        return Treemap
    elif name == "TreemapPolicy":
        from treemap_slam.backend.policy import TreemapPolicy
        return TreemapPolicy
    elif name == "GaussianFactor":
        from treemap_slam.backend.fusion.gaussian_info import GaussianFactor
        return GaussianFactor
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
