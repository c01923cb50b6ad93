"""
Item matching logic for the sync engine.

Resolves a source item to destination candidates through the identity index,
falling back to file path overlap when an identifier is shared by several
destination items.
"""

from typing import List, Optional, Tuple

from mediamirror.sync import path_matcher
from mediamirror.sync.index import IdentityIndex
from mediamirror.sync.models import (
    DestinationItem,
    IdNamespace,
    MatchOutcome,
    MatchResult,
    SourceItem,
)
from mediamirror.utils.logging import get_logger

logger = get_logger(__name__)


class ItemMatcher:
    """
    Matches source items against the destination identity index.

    Matching priority:
    1. IMDb identifier
    2. TMDb identifier
    3. TVDb identifier

    The first identifier with any candidates wins. Several candidates are
    narrowed by file path overlap; when that does not settle it, the first
    candidate is selected and the match is reported as ambiguous.
    """

    def __init__(
        self,
        index: IdentityIndex,
        min_segments: int = path_matcher.MIN_MATCHING_SEGMENTS,
    ):
        self.index = index
        self.min_segments = min_segments

    def match(self, item: SourceItem) -> MatchResult:
        """
        Match a source item.

        Args:
            item: SourceItem from the source catalog

        Returns:
            MatchResult with outcome and selected destination item
        """
        namespace, candidates = self._find_candidates(item)

        if not candidates:
            logger.debug(
                "No match found",
                title=item.display_title,
                matchable=item.is_matchable
            )
            return MatchResult(source=item, outcome=MatchOutcome.UNMATCHED)

        if len(candidates) == 1:
            logger.debug(
                "Matched by identifier",
                title=item.display_title,
                namespace=namespace.value,
                destination_id=candidates[0].id
            )
            return MatchResult(
                source=item,
                outcome=MatchOutcome.UNIQUE,
                candidates=candidates,
                selected=candidates[0],
                namespace=namespace,
            )

        return self._disambiguate(item, namespace, candidates)

    def _find_candidates(
        self,
        item: SourceItem
    ) -> Tuple[Optional[IdNamespace], List[DestinationItem]]:
        for namespace, value in item.external_ids.pairs():
            candidates = self.index.lookup(namespace, value)
            if candidates:
                return namespace, self._prefer_same_kind(item, candidates)
        return None, []

    @staticmethod
    def _prefer_same_kind(
        item: SourceItem,
        candidates: List[DestinationItem]
    ) -> List[DestinationItem]:
        # An episode carrying its series' TVDb id also hits the series itself.
        same_kind = [c for c in candidates if c.kind == item.kind]
        return same_kind or candidates

    def _disambiguate(
        self,
        item: SourceItem,
        namespace: IdNamespace,
        candidates: List[DestinationItem]
    ) -> MatchResult:
        best: Optional[DestinationItem] = None
        best_score = 0

        if item.file_path:
            for candidate in candidates:
                candidate_score = path_matcher.score(item.file_path, candidate.path)
                # Strictly greater keeps the first-encountered candidate on ties.
                if candidate_score > best_score:
                    best, best_score = candidate, candidate_score

        if best is not None and best_score >= self.min_segments:
            logger.debug(
                "Matched by path among duplicates",
                title=item.display_title,
                candidates=len(candidates),
                score=best_score,
                destination_id=best.id
            )
            return MatchResult(
                source=item,
                outcome=MatchOutcome.DISAMBIGUATED_BY_PATH,
                candidates=candidates,
                selected=best,
                namespace=namespace,
                path_score=best_score,
            )

        logger.warning(
            "Ambiguous match, using first candidate",
            title=item.display_title,
            candidates=len(candidates),
            has_path=bool(item.file_path),
            destination_id=candidates[0].id
        )
        return MatchResult(
            source=item,
            outcome=MatchOutcome.AMBIGUOUS,
            candidates=candidates,
            selected=candidates[0],
            namespace=namespace,
            path_score=best_score,
        )
