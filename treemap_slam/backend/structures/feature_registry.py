"""
FeatureRegistry: per-feature metadata and block allocation of feature ids.

Features are reserved in blocks of consecutive ids (one block per pose,
landmark, ...). Released ids go to size-classed free lists so that a later
request for a block of the same size reuses them.

Fragmentation rules:
- Blocks of up to MAX_FEATURE_BLOCK_SIZE ids have a free list per size.
- A request of size n takes an exact free block first, then splits a free
  block whose size is an integer multiple of n, else appends fresh ids.
- Larger requests always append fresh ids.
- Deleting the ids of a block in increasing order reassembles the block.
  Any other order frees the pieces as separate smaller blocks.
"""

from __future__ import annotations

import enum
import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Optional

from treemap_slam.common import constants

_logger = logging.getLogger(__name__)


class FeatureFlag(enum.IntFlag):
    NONE = 0
    CAN_BE_MARGINALIZED_OUT = 1
    CAN_BE_SPARSIFIED = 2


class FeatureState(enum.Enum):
    LIVE = "live"
    DELETED = "deleted"  # released, waiting for the rest of its block
    FREE = "free"  # in a free list


@dataclass
class Feature:
    """
    Global information for one feature.

    Attributes:
        estimate: Current estimate (NaN until set)
        flags: FeatureFlag bit set
        marginalization_node: Index of the node where the feature is
            marginalized out (lowest node with all leaves involving it below)
        count: Number of leaves whose factor involves the feature
        block_start: First id of the block this id was allocated in
        block_size: Size of that block
        state: Allocation state
    """
    estimate: float = math.nan
    flags: FeatureFlag = FeatureFlag.NONE
    marginalization_node: Optional[int] = None
    count: int = 0
    block_start: int = 0
    block_size: int = 1
    state: FeatureState = FeatureState.LIVE

    def is_flag(self, flag: FeatureFlag) -> bool:
        return (self.flags & flag) == flag


class FeatureRegistry:
    """Owns all Feature entries and the free lists of unused feature blocks."""

    def __init__(self) -> None:
        self.feature: List[Feature] = []
        # first_unused[n] is a stack of start ids of free blocks of size n
        self.first_unused: Dict[int, List[int]] = {
            n: [] for n in range(1, constants.MAX_FEATURE_BLOCK_SIZE + 1)
        }
        # block start -> first id not yet deleted in increasing-order deletion
        self._pending_runs: Dict[int, int] = {}

    def __len__(self) -> int:
        return len(self.feature)

    def __getitem__(self, feature_id: int) -> Feature:
        return self.feature[feature_id]

    def clear(self) -> None:
        self.feature.clear()
        for stack in self.first_unused.values():
            stack.clear()
        self._pending_runs.clear()

    def is_live(self, feature_id: int) -> bool:
        return 0 <= feature_id < len(self.feature) and self.feature[feature_id].state is FeatureState.LIVE

    def check_live(self, feature_id: int, op: str) -> Feature:
        if not self.is_live(feature_id):
            raise ValueError(f"{op}: feature {feature_id} is not a live feature")
        return self.feature[feature_id]

    # ------------------------------------------------------------------
    # Block allocation
    # ------------------------------------------------------------------

    def reserve_block(self, n: int, flags: FeatureFlag = FeatureFlag.NONE) -> int:
        """Reserves ``n`` consecutive features and returns the first id."""
        if n <= 0:
            raise ValueError(f"reserve_block: block size must be positive, got {n}")
        start = None
        if n <= constants.MAX_FEATURE_BLOCK_SIZE:
            if self.first_unused[n]:
                start = self.first_unused[n].pop()
                _logger.debug("reserve_block: reused block %d of size %d", start, n)
            else:
                for m in range(2 * n, constants.MAX_FEATURE_BLOCK_SIZE + 1, n):
                    if self.first_unused[m]:
                        start = self.first_unused[m].pop()
                        self._push_free(start + n, m - n)
                        _logger.debug("reserve_block: split block %d of size %d for size %d", start, m, n)
                        break
        if start is None:
            start = len(self.feature)
            self.feature.extend(Feature() for _ in range(n))

        for i in range(start, start + n):
            self.feature[i] = Feature(flags=FeatureFlag(flags), block_start=start, block_size=n)
        return start

    def _push_free(self, start: int, size: int) -> None:
        while size > 0:
            chunk = min(size, constants.MAX_FEATURE_BLOCK_SIZE)
            for i in range(start, start + chunk):
                f = self.feature[i]
                f.state = FeatureState.FREE
                f.block_start = start
                f.block_size = chunk
                f.count = 0
                f.marginalization_node = None
                f.flags = FeatureFlag.NONE
                f.estimate = math.nan
            self.first_unused[chunk].append(start)
            start += chunk
            size -= chunk

    def delete_feature(self, feature_id: int) -> None:
        """
        Frees feature ``feature_id``.

        If the features of a block are deleted in increasing order they are
        merged again into one free block.
        """
        f = self.check_live(feature_id, "delete_feature")
        if f.count > 0:
            raise ValueError(f"delete_feature: feature {feature_id} is still involved in {f.count} leaves")
        f.state = FeatureState.DELETED
        f.marginalization_node = None

        start, size = f.block_start, f.block_size
        run_end = self._pending_runs.get(start)
        if run_end is None and feature_id == start:
            run_end = start
        if run_end is not None and feature_id == run_end:
            run_end += 1
            if run_end == start + size:
                self._pending_runs.pop(start, None)
                self._push_free(start, size)
            else:
                self._pending_runs[start] = run_end
            return

        # Out of order: keep what was reassembled so far and this id as
        # separate smaller blocks.
        flushed = self._pending_runs.pop(start, None)
        if flushed is not None:
            self._push_free(start, flushed - start)
        self._push_free(feature_id, 1)

    # ------------------------------------------------------------------
    # Per-feature data
    # ------------------------------------------------------------------

    def set_initial_estimate(self, feature_id: int, estimate: float) -> None:
        """Sets the estimate of ``feature_id`` if it is not yet set."""
        f = self.check_live(feature_id, "set_initial_estimate")
        if math.isnan(f.estimate):
            f.estimate = float(estimate)

    def nr_of_features(self, must_flags: FeatureFlag = FeatureFlag.NONE,
                       may_not_flags: FeatureFlag = FeatureFlag.NONE) -> int:
        """Counts live features with all ``must_flags`` and none of ``may_not_flags``."""
        return sum(
            1 for f in self.feature
            if f.state is FeatureState.LIVE and f.is_flag(must_flags) and not (f.flags & may_not_flags)
        )

    def free_block_summary(self) -> Dict[int, int]:
        return {n: len(stack) for n, stack in self.first_unused.items() if stack}

    def print_feature_fragmentation(self) -> None:
        summary = self.free_block_summary()
        pending = sum(end - start for start, end in self._pending_runs.items())
        _logger.info(
            "feature ids: %d total, free blocks %s, %d deleted ids waiting for their block",
            len(self.feature), summary, pending,
        )

    def assert_unused_feature_lists(self) -> None:
        """Asserts the internal consistency of the free lists."""
        seen = set()
        for size, stack in self.first_unused.items():
            for start in stack:
                for i in range(start, start + size):
                    if i in seen:
                        raise AssertionError(f"feature {i} is in more than one free block")
                    seen.add(i)
                    f = self.feature[i]
                    if f.state is not FeatureState.FREE:
                        raise AssertionError(f"feature {i} in free block {start} is {f.state.value}")
                    if f.block_start != start or f.block_size != size:
                        raise AssertionError(f"feature {i} has wrong block {f.block_start}/{f.block_size}")
        for i, f in enumerate(self.feature):
            if f.state is FeatureState.FREE:
                if i not in seen:
                    raise AssertionError(f"free feature {i} is in no free block")
                if f.count != 0 or f.marginalization_node is not None:
                    raise AssertionError(f"free feature {i} still has references")
        for start, end in self._pending_runs.items():
            for i in range(start, end):
                if self.feature[i].state is not FeatureState.DELETED:
                    raise AssertionError(f"feature {i} in pending run {start} is not deleted")
