"""
Duplicate detection and merging for venues, events, vendors and promoters.

Flow: scan (find likely pairs) -> preview (what a merge would move) ->
operator confirms -> execute (one transaction, duplicate deleted).

Exports:
  scan_for_duplicates  -- pairwise similarity over a bounded batch
  get_merge_preview    -- read-only merge impact
  execute_merge        -- transactional merge
"""

from services.api.duplicates.merge import MergePreview, MergeResult, execute_merge, get_merge_preview
from services.api.duplicates.scanner import DuplicateScan, scan_for_duplicates

__all__ = [
    "DuplicateScan",
    "MergePreview",
    "MergeResult",
    "execute_merge",
    "get_merge_preview",
    "scan_for_duplicates",
]
