"""
Operation reports for the treemap optimizer.

Every completed Kernighan-Lin run emits an OpReport that:
1. Names the node that was optimized (lca_index) and its cost before the run
2. States whether the run was committed (success) or rolled back
3. Gives the cost after the run and the number of trial moves spent
4. Declares whether an irreversible join was executed

Consistency rules (checked by validate()):
    - A committed run must have lowered the cost below the initial cost.
    - A rolled-back run restores the initial cost exactly.
    - A join can only happen in a committed run.
"""

import json
import math
import time
from dataclasses import dataclass, field
from typing import Optional


def _json_safe(obj):
    """
    Convert common scientific types to JSON-serializable Python types.

    Non-finite floats are written as strings so the JSON stays strict.
    """
    if obj is None or isinstance(obj, (str, int, bool)):
        return obj
    if isinstance(obj, float):
        return obj if math.isfinite(obj) else repr(obj)

    if isinstance(obj, (list, tuple)):
        return [_json_safe(x) for x in obj]
    if isinstance(obj, dict):
        return {str(k): _json_safe(v) for k, v in obj.items()}

    import numpy as np

    if isinstance(obj, np.ndarray):
        return [_json_safe(x) for x in obj.tolist()]
    if isinstance(obj, np.generic):
        return _json_safe(obj.item())

    return repr(obj)


@dataclass
class OpReport:
    """
    Report of one KL optimization run.

    Attributes:
        name: Operation name (e.g., "KLRun")
        lca_index: Index of the node whose worst-case update cost was optimized
        initial_cost: Worst-case update cost before the run
        final_cost: Worst-case update cost at the same tree position after the run
        nr_of_moves: Number of trial moves executed in the run
        success: True if the run was committed
        joined: True if the committing move joined two leaves
        metrics: Additional numbers for debugging
        notes: Human-readable explanation
        timestamp: When the report was generated
    """
    name: str
    lca_index: int
    initial_cost: float
    final_cost: float
    nr_of_moves: int = 0
    success: bool = False
    joined: bool = False
    metrics: dict = field(default_factory=dict)
    notes: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    def validate(self) -> None:
        """
        Validate the report against the run semantics.

        Raises ValueError if validation fails.
        """
        if self.nr_of_moves < 0:
            raise ValueError("nr_of_moves must be non-negative.")
        if self.success and not self.final_cost < self.initial_cost:
            raise ValueError(
                f"Committed run must improve the cost ({self.final_cost} >= {self.initial_cost})."
            )
        if not self.success and self.final_cost != self.initial_cost:
            raise ValueError("Rolled-back run must restore the initial cost.")
        if self.joined and not self.success:
            raise ValueError("A join can only be part of a committed run.")

    def summary(self) -> str:
        """Short text used for the optimizer's textual report."""
        if self.success:
            tag = "J" if self.joined else "+"
            return f"{tag}{self.lca_index}:{self.nr_of_moves} "
        return f"-{self.lca_index}:{self.nr_of_moves} "

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "lca_index": self.lca_index,
            "initial_cost": _json_safe(self.initial_cost),
            "final_cost": _json_safe(self.final_cost),
            "nr_of_moves": self.nr_of_moves,
            "success": self.success,
            "joined": self.joined,
            "metrics": _json_safe(dict(self.metrics)),
            "notes": self.notes,
            "timestamp": self.timestamp,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)
