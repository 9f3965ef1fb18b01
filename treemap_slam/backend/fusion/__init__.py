"""Gaussian factors in information form."""

from treemap_slam.backend.fusion.gaussian_info import (
    GaussianFactor,
    multiply,
    multiply_all,
    update_cost,
)

__all__ = [
    "GaussianFactor",
    "multiply",
    "multiply_all",
    "update_cost",
]
