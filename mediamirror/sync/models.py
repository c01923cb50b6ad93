"""
Data models for sync operations.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Iterator, List, Optional, Tuple


class MediaKind(str, Enum):
    """Kinds of media items handled by both catalogs."""
    MOVIE = "movie"
    SHOW = "show"
    SEASON = "season"
    EPISODE = "episode"

    @classmethod
    def from_value(cls, value: Optional[str], default: "MediaKind") -> "MediaKind":
        if not value:
            return default
        try:
            return cls(value.strip().lower())
        except ValueError:
            return default


class IdNamespace(str, Enum):
    """External identifier namespaces, in lookup priority order."""
    IMDB = "imdb"
    TMDB = "tmdb"
    TVDB = "tvdb"


class MatchOutcome(str, Enum):
    UNIQUE = "unique"
    DISAMBIGUATED_BY_PATH = "disambiguated_by_path"
    AMBIGUOUS = "ambiguous"
    UNMATCHED = "unmatched"


class CollectionAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"


def normalize_id(namespace: IdNamespace, value: Optional[str]) -> Optional[str]:
    """Normalize an identifier value so both catalogs key it the same way."""
    if value is None:
        return None
    value = str(value).strip()
    if not value:
        return None
    if namespace is IdNamespace.IMDB:
        return value.lower()
    return value


@dataclass(frozen=True)
class ExternalIds:
    """At most one value per identifier namespace."""
    imdb: Optional[str] = None
    tmdb: Optional[str] = None
    tvdb: Optional[str] = None

    def __post_init__(self):
        for namespace in IdNamespace:
            raw = getattr(self, namespace.value)
            object.__setattr__(self, namespace.value, normalize_id(namespace, raw))

    def get(self, namespace: IdNamespace) -> Optional[str]:
        return getattr(self, namespace.value)

    def pairs(self) -> Iterator[Tuple[IdNamespace, str]]:
        """Yield present identifiers in priority order (IMDb, TMDb, TVDb)."""
        for namespace in IdNamespace:
            value = self.get(namespace)
            if value:
                yield namespace, value

    def with_tvdb(self, tvdb: Optional[str]) -> "ExternalIds":
        return ExternalIds(imdb=self.imdb, tmdb=self.tmdb, tvdb=tvdb)

    def __bool__(self) -> bool:
        return any(True for _ in self.pairs())


@dataclass(frozen=True)
class SourceLibrary:
    """A library section on the source server."""
    id: str
    title: str
    kind: MediaKind


@dataclass(frozen=True)
class SourceCollection:
    """A collection in a source library."""
    id: str
    title: str
    library_id: str
    sort_title: Optional[str] = None
    summary: Optional[str] = None
    thumb_url: Optional[str] = None
    art_url: Optional[str] = None
    child_count: Optional[int] = None


@dataclass
class SourceItem:
    """A movie, show, season or episode from the source server."""
    id: str
    title: str
    kind: MediaKind
    external_ids: ExternalIds = field(default_factory=ExternalIds)
    file_path: Optional[str] = None
    thumb_url: Optional[str] = None
    art_url: Optional[str] = None
    year: Optional[int] = None

    # Seasons and episodes only
    series_id: Optional[str] = None
    series_title: Optional[str] = None

    # Watch state as reported by the source
    view_count: int = 0
    view_offset_ms: int = 0

    @property
    def is_matchable(self) -> bool:
        """Items with neither identifiers nor a file path can never match."""
        return bool(self.external_ids) or bool(self.file_path)

    @property
    def display_title(self) -> str:
        if self.series_title and self.kind in (MediaKind.SEASON, MediaKind.EPISODE):
            return f"{self.series_title} - {self.title}"
        return self.title

    @property
    def watched(self) -> bool:
        return self.view_count > 0

    @property
    def position_seconds(self) -> float:
        return self.view_offset_ms / 1000


@dataclass(frozen=True)
class DestinationItem:
    """An item in the destination catalog. Consumed read-only."""
    id: str
    name: str
    kind: MediaKind
    external_ids: ExternalIds = field(default_factory=ExternalIds)
    path: Optional[str] = None
    library_id: Optional[str] = None

    # Present only when the listing carried user data
    played: Optional[bool] = None
    position_seconds: Optional[float] = None


@dataclass
class DestinationCollection:
    """A collection (box set) in the destination catalog."""
    id: str
    name: str
    member_ids: List[str] = field(default_factory=list)


@dataclass
class MatchResult:
    """Resolution of one source item against the destination catalog."""
    source: SourceItem
    outcome: MatchOutcome
    candidates: List[DestinationItem] = field(default_factory=list)
    selected: Optional[DestinationItem] = None
    namespace: Optional[IdNamespace] = None
    path_score: int = 0

    @property
    def is_resolved(self) -> bool:
        return self.selected is not None

    def key(self) -> Tuple[str, str, Optional[str]]:
        """Comparable identity of the result, used to compare runs."""
        return (
            self.source.id,
            self.outcome.value,
            self.selected.id if self.selected else None,
        )


@dataclass
class CollectionPlan:
    """Matched membership for one source collection."""
    collection: SourceCollection
    library_title: str
    matches: List[MatchResult] = field(default_factory=list)
    action: CollectionAction = CollectionAction.CREATE
    destination_id: Optional[str] = None

    @property
    def resolved_ids(self) -> List[str]:
        """Destination ids of resolved members, de-duplicated, in source order."""
        seen = set()
        ids = []
        for match in self.matches:
            if match.selected and match.selected.id not in seen:
                seen.add(match.selected.id)
                ids.append(match.selected.id)
        return ids


@dataclass
class CollectionDetail:
    """Per-collection summary included in the run result."""
    title: str
    library: str
    action: str
    items: List[str] = field(default_factory=list)
    unmatched: List[str] = field(default_factory=list)


@dataclass
class WatchStateChange:
    """A planned watch-state update on one side."""
    title: str
    source_id: str
    destination_id: str
    target: str  # "source" or "destination"
    watched: bool
    position_seconds: float = 0.0


@dataclass
class SyncRunResult:
    """Result of a complete sync run."""
    run_id: str
    started_at: datetime
    dry_run: bool = False
    completed_at: Optional[datetime] = None

    # Discovery
    libraries_processed: int = 0
    collections_found: int = 0

    # Collections
    collections_created: int = 0
    collections_updated: int = 0
    collections_failed: int = 0

    # Items
    items_processed: int = 0
    items_unique: int = 0
    items_disambiguated: int = 0
    items_ambiguous: int = 0
    items_unmatched: int = 0
    ambiguous_titles: List[str] = field(default_factory=list)
    unmatched_titles: List[str] = field(default_factory=list)

    # Artwork
    artwork_updated: int = 0
    artwork_failed: int = 0

    # Watch state
    watch_states_changed: int = 0
    watch_state_changes: List[WatchStateChange] = field(default_factory=list)

    # Status
    state: str = "running"
    success: bool = True
    error_message: Optional[str] = None

    collections: List[CollectionDetail] = field(default_factory=list)
    matches: List[MatchResult] = field(default_factory=list)

    @property
    def items_matched(self) -> int:
        return self.items_unique + self.items_disambiguated + self.items_ambiguous

    def record_match(self, match: MatchResult) -> None:
        """Count a match result and remember titles worth reporting."""
        self.matches.append(match)
        self.items_processed += 1

        if match.outcome is MatchOutcome.UNIQUE:
            self.items_unique += 1
        elif match.outcome is MatchOutcome.DISAMBIGUATED_BY_PATH:
            self.items_disambiguated += 1
        elif match.outcome is MatchOutcome.AMBIGUOUS:
            self.items_ambiguous += 1
            self.ambiguous_titles.append(match.source.display_title)
        else:
            self.items_unmatched += 1
            self.unmatched_titles.append(match.source.display_title)

    def summary(self) -> dict:
        """Counts only, as exposed over the API."""
        return {
            "run_id": self.run_id,
            "dry_run": self.dry_run,
            "state": self.state,
            "success": self.success,
            "error": self.error_message,
            "libraries_processed": self.libraries_processed,
            "collections_found": self.collections_found,
            "collections_created": self.collections_created,
            "collections_updated": self.collections_updated,
            "collections_failed": self.collections_failed,
            "items_processed": self.items_processed,
            "items_matched": self.items_matched,
            "items_unique": self.items_unique,
            "items_disambiguated": self.items_disambiguated,
            "items_ambiguous": self.items_ambiguous,
            "items_unmatched": self.items_unmatched,
            "ambiguous_titles": list(self.ambiguous_titles),
            "unmatched_titles": list(self.unmatched_titles),
            "artwork_updated": self.artwork_updated,
            "artwork_failed": self.artwork_failed,
            "watch_states_changed": self.watch_states_changed,
            "collections": [
                {
                    "title": c.title,
                    "library": c.library,
                    "action": c.action,
                    "items": list(c.items),
                    "unmatched": list(c.unmatched),
                }
                for c in self.collections
            ],
        }
