"""
Batch sharding for matching jobs.
"""

from typing import List, Sequence, TypeVar

T = TypeVar("T")


def chunk_ids(ids: Sequence[T], chunk_size: int) -> List[List[T]]:
    """
    Split ids into consecutive chunks of chunk_size (the last one may be
    shorter). Order is preserved and nothing is dropped or duplicated.
    """
    if chunk_size < 1:
        raise ValueError(f"chunk_size must be at least 1, got {chunk_size}")
    return [list(ids[i:i + chunk_size]) for i in range(0, len(ids), chunk_size)]
