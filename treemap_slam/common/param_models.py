"""Pydantic parameter models for the treemap backend."""

from __future__ import annotations

import os
from typing import List

from pydantic import BaseModel, ConfigDict, Field

from treemap_slam.common import constants


class TreemapParams(BaseModel):
    """Optimizer and cost-model parameters of one treemap instance."""

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    nr_of_moves_per_step: int = Field(constants.NR_OF_MOVES_PER_STEP_DEFAULT, ge=1)
    max_nr_of_unsuccessful_moves: int = Field(constants.MAX_NR_OF_UNSUCCESSFUL_MOVES_DEFAULT, ge=0)
    min_success_probability: float = Field(constants.MIN_SUCCESS_PROBABILITY_DEFAULT, ge=0.0, le=1.0)
    report_max_length: int = Field(constants.REPORT_MAX_LENGTH_DEFAULT, ge=0)
    cost_tolerance: float = Field(constants.COST_TOLERANCE_DEFAULT, ge=0.0)

    cost_coefficients: List[float] = Field(
        default_factory=lambda: list(constants.UPDATE_COST_COEFFICIENTS_DEFAULT),
        min_length=4,
        max_length=4,
    )


def load_treemap_params(path: str) -> TreemapParams:
    """Load ``TreemapParams`` from the ``treemap:`` section of a YAML file."""
    import yaml

    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    section = data.get("treemap")
    if not section:
        raise ValueError(f"treemap config missing section 'treemap' (from {path})")
    return TreemapParams(**section)


def default_config_path() -> str:
    # Installed share dir first, then the source checkout.
    import sys

    installed = os.path.join(sys.prefix, "share", "treemap_slam", "config", "treemap_default.yaml")
    if os.path.exists(installed):
        return installed
    return os.path.join(
        os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))),
        "config",
        "treemap_default.yaml",
    )
