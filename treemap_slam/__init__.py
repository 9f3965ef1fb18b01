"""
Treemap SLAM backend.

Hierarchical Gaussian estimation over a balanced binary tree of factors,
rebalanced online by Kernighan-Lin moves.

Structure:
- common/: constants, parameter models (pydantic), operation reports
- backend/structures/: node arena and feature registry
- backend/fusion/: Gaussian factors in information form
- backend/aggregation.py, estimation.py, optimizer.py: the tree algorithms
- backend/treemap.py: the Treemap facade
"""

# Lazy imports to avoid circular dependencies
__all__ = [
    "Treemap",
    "TreemapParams",
]


def __getattr__(name):
    if name == "Treemap":
        from treemap_slam.backend.treemap import Treemap
        return Treemap
    elif name == "TreemapParams":
        from treemap_slam.common.param_models import TreemapParams
        return TreemapParams
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
