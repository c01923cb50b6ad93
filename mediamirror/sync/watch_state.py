"""
Watch-state reconciliation between matched source and destination items.
"""

from typing import Iterable, List, Tuple

from mediamirror.api.base import APIError
from mediamirror.config import WatchStateDirection
from mediamirror.sync.models import DestinationItem, SourceItem, WatchStateChange
from mediamirror.utils.logging import get_logger

logger = get_logger(__name__)

# Resume positions closer than this are treated as equal
POSITION_TOLERANCE_SECONDS = 10.0

TARGET_SOURCE = "source"
TARGET_DESTINATION = "destination"


def _positions_differ(a: float, b: float) -> bool:
    return abs(a - b) > POSITION_TOLERANCE_SECONDS


class WatchStateSync:
    """Plans and applies played-flag and resume-position updates."""

    def __init__(self, source, destination):
        self.source = source
        self.destination = destination

    def plan(
        self,
        pairs: Iterable[Tuple[SourceItem, DestinationItem]],
        direction: WatchStateDirection,
    ) -> List[WatchStateChange]:
        """
        Decide which side needs updating for each matched pair.

        Pairs whose destination item carries no user data are skipped.
        """
        changes: List[WatchStateChange] = []

        for source_item, dest_item in pairs:
            if dest_item.played is None:
                continue

            if direction is WatchStateDirection.SOURCE_TO_DESTINATION:
                changes.extend(self._one_way(source_item, dest_item, TARGET_DESTINATION))
            elif direction is WatchStateDirection.DESTINATION_TO_SOURCE:
                changes.extend(self._one_way(source_item, dest_item, TARGET_SOURCE))
            else:
                changes.extend(self._bidirectional(source_item, dest_item))

        logger.info(
            "Planned watch state changes",
            direction=direction.value,
            changes=len(changes)
        )
        return changes

    @staticmethod
    def _change(
        source_item: SourceItem,
        dest_item: DestinationItem,
        target: str,
        watched: bool,
        position: float = 0.0
    ) -> WatchStateChange:
        return WatchStateChange(
            title=source_item.display_title,
            source_id=source_item.id,
            destination_id=dest_item.id,
            target=target,
            watched=watched,
            position_seconds=position,
        )

    def _one_way(
        self,
        source_item: SourceItem,
        dest_item: DestinationItem,
        target: str
    ) -> List[WatchStateChange]:
        if target == TARGET_DESTINATION:
            from_watched, from_pos = source_item.watched, source_item.position_seconds
            to_watched, to_pos = bool(dest_item.played), dest_item.position_seconds or 0.0
        else:
            from_watched, from_pos = bool(dest_item.played), dest_item.position_seconds or 0.0
            to_watched, to_pos = source_item.watched, source_item.position_seconds

        if from_watched != to_watched:
            position = 0.0 if from_watched else from_pos
            return [self._change(source_item, dest_item, target, from_watched, position)]

        if not from_watched and from_pos > 0 and _positions_differ(from_pos, to_pos):
            return [self._change(source_item, dest_item, target, False, from_pos)]

        return []

    def _bidirectional(
        self,
        source_item: SourceItem,
        dest_item: DestinationItem
    ) -> List[WatchStateChange]:
        source_watched = source_item.watched
        dest_watched = bool(dest_item.played)

        if source_watched or dest_watched:
            changes = []
            if not source_watched:
                changes.append(self._change(source_item, dest_item, TARGET_SOURCE, True))
            if not dest_watched:
                changes.append(self._change(source_item, dest_item, TARGET_DESTINATION, True))
            return changes

        source_pos = source_item.position_seconds
        dest_pos = dest_item.position_seconds or 0.0
        if not _positions_differ(source_pos, dest_pos):
            return []

        if source_pos > dest_pos:
            return [self._change(source_item, dest_item, TARGET_DESTINATION, False, source_pos)]
        return [self._change(source_item, dest_item, TARGET_SOURCE, False, dest_pos)]

    def apply(self, changes: Iterable[WatchStateChange]) -> Tuple[int, int]:
        """
        Write planned changes.

        Returns:
            (applied, failed)
        """
        applied = failed = 0

        for change in changes:
            try:
                if change.target == TARGET_DESTINATION:
                    self.destination.set_user_data(
                        change.destination_id,
                        change.watched,
                        change.position_seconds
                    )
                else:
                    self.source.set_watch_state(
                        change.source_id,
                        change.watched,
                        change.position_seconds
                    )
                applied += 1
            except APIError as e:
                failed += 1
                logger.error(
                    "Failed to update watch state",
                    title=change.title,
                    target=change.target,
                    error=str(e)
                )

        return applied, failed
