from __future__ import annotations

from typing import List, Sequence, Tuple

from .errors import SectionBoundaryError


def validate_boundaries(total_chunks: int, boundaries: Sequence[int]) -> List[int]:
    """Check cut indices: integers, strictly increasing, inside [0, total_chunks]."""
    cuts: List[int] = []
    for raw in boundaries:
        if isinstance(raw, bool) or not isinstance(raw, int):
            raise SectionBoundaryError(f"section boundary {raw!r} is not an integer")
        if raw < 0 or raw > total_chunks:
            raise SectionBoundaryError(f"section boundary {raw} outside [0, {total_chunks}]")
        if cuts and raw <= cuts[-1]:
            raise SectionBoundaryError(f"section boundaries must be strictly increasing, got {raw} after {cuts[-1]}")
        cuts.append(raw)
    return cuts


def section_ranges(total_chunks: int, boundaries: Sequence[int]) -> List[Tuple[int, int]]:
    """Half-open chunk ranges for every section, one more than there are cuts.

    ``[]`` over 7 chunks gives ``[(0, 7)]``; ``[2, 5]`` gives
    ``[(0, 2), (2, 5), (5, 7)]``. Ranges may be empty when a cut sits at 0 or N.
    """
    if total_chunks < 1:
        raise SectionBoundaryError("at least one chunk is required")
    cuts = validate_boundaries(total_chunks, boundaries)
    edges = [0, *cuts, total_chunks]
    return [(edges[i], edges[i + 1]) for i in range(len(edges) - 1)]


def boundaries_for(chunk_counts: Sequence[int]) -> List[int]:
    """Cut indices over the flattened chunk list for per-section chunk counts."""
    cuts: List[int] = []
    running = 0
    for count in chunk_counts[:-1]:
        running += count
        cuts.append(running)
    return cuts


__all__ = ["validate_boundaries", "section_ranges", "boundaries_for"]
