#!/usr/bin/env python3
"""Pick the DRAM (fast) and PMEM (slow) nodes a VM is interleaved over."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence, Tuple


@dataclass(frozen=True)
class NodeSelection:
    fast: Tuple
    slow: Tuple

    @property
    def interleave(self) -> Tuple:
        return self.fast + self.slow

    def interleave_arg(self) -> str:
        return ",".join(str(nid) for nid in self.interleave)


def allocate_counts(d0: int, p0: int, ratio: int, single_fast: bool = False) -> Tuple[int, int]:
    """Return (fast, slow) node counts for ``ratio`` slow nodes per fast node.

    Examples with (d0, p0, ratio):
        2, 4, 4 -> 1, 4
        2, 4, 1 -> 2, 2   (1, 1 with single_fast)
        2, 2, 0 -> 2, 0   pure DRAM
        1, 2, 4 -> 0, 2   pure PMEM
    """
    if ratio < 0:
        raise ValueError(f"ratio must be non-negative, got {ratio}")
    d, p = d0, p0
    if ratio > 0 and d0 * ratio > p0:
        d = p0 // ratio
    if d > 0:
        p = d * ratio
    # 1:1, 1:2, 1:4 compare better than 2:2, 2:4, 1:4
    if single_fast and d > 1:
        p //= d
        d = 1
    return d, p


def allocate_nodes(
    fast_nodes: Sequence,
    slow_nodes: Sequence,
    ratio: int,
    single_fast: bool = False,
) -> NodeSelection:
    d, p = allocate_counts(len(fast_nodes), len(slow_nodes), ratio, single_fast)
    return NodeSelection(fast=tuple(fast_nodes[:d]), slow=tuple(slow_nodes[:p]))
