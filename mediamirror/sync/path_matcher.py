"""
File path matching between the source and destination catalogs.

Both servers usually see the same files through different mount points
(container bind mounts, different host prefixes), so paths are compared from
the filename backward instead of for equality.
"""

from typing import List, Optional

# Filename plus its immediate parent folder must agree.
MIN_MATCHING_SEGMENTS = 2


def _segments(path: str) -> List[str]:
    normalized = path.replace("\\", "/").lower()
    return [part for part in normalized.split("/") if part]


def score(path_a: Optional[str], path_b: Optional[str]) -> int:
    """
    Count identical trailing path segments.

    Args:
        path_a: Path as seen by one server
        path_b: Path as seen by the other server

    Returns:
        Number of segments that match, counted from the filename backward
        until the first difference. 0 when either path is missing.
    """
    if not path_a or not path_b:
        return 0

    parts_a = _segments(path_a)
    parts_b = _segments(path_b)

    matches = 0
    for part_a, part_b in zip(reversed(parts_a), reversed(parts_b)):
        if part_a != part_b:
            break
        matches += 1

    return matches


def is_match(
    path_a: Optional[str],
    path_b: Optional[str],
    min_segments: int = MIN_MATCHING_SEGMENTS,
) -> bool:
    """Return True when two paths likely point at the same file."""
    return score(path_a, path_b) >= min_segments
