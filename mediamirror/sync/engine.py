"""
Main sync engine for mediamirror.

Orchestrates a run from the Plex source into the Jellyfin destination:
discovery, matching, then mutation of collections, artwork and watch state.
"""

import dataclasses
import os
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import List, Optional, Tuple

from mediamirror.api.base import APIError
from mediamirror.api.jellyfin import ImageKind, JellyfinClient
from mediamirror.api.plex import PlexClient
from mediamirror.config import ConfigManager, ConfigurationError, SyncConfig
from mediamirror.db.database import get_db_session
from mediamirror.db.models import MatchRecord, SyncRun
from mediamirror.sync.index import IdentityIndex
from mediamirror.sync.matcher import ItemMatcher
from mediamirror.sync.models import (
    CollectionAction,
    CollectionDetail,
    CollectionPlan,
    MatchOutcome,
    MediaKind,
    SourceCollection,
    SourceItem,
    SourceLibrary,
    SyncRunResult,
)
from mediamirror.sync.status import (
    ProcessedSet,
    RunRegistry,
    RunState,
    RunStatus,
    run_registry,
)
from mediamirror.sync.watch_state import WatchStateSync
from mediamirror.utils.logging import get_logger, SyncLogger

logger = get_logger(__name__)

# Progress bands per phase, as (start, end) percentages
DISCOVERY_BAND = (0.0, 10.0)
MATCHING_BAND = (10.0, 50.0)
DRY_RUN_MATCHING_BAND = (10.0, 95.0)
APPLYING_BAND = (50.0, 95.0)
WATCH_STATE_BAND = (95.0, 99.0)

# Matched items between progress updates
MATCH_BATCH_SIZE = 100

_CONTENT_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
}


class RunAborted(Exception):
    """Ends a run in the failed state with a user-facing reason."""


class RunCancelled(Exception):
    """Raised inside the worker when cancellation was requested."""


class SyncEngine:
    """
    Main sync engine that coordinates a run.

    Responsibilities:
    - Discover source libraries, collections and their items
    - Match source items against the destination identity index
    - Create or update destination collections and copy artwork
    - Reconcile watch state
    - Track run status and history
    """

    def __init__(
        self,
        config: SyncConfig,
        source: Optional[PlexClient] = None,
        destination: Optional[JellyfinClient] = None,
        registry: Optional[RunRegistry] = None,
    ):
        """
        Initialize sync engine.

        Args:
            config: Sync configuration
            source: Source client (built from config when omitted)
            destination: Destination client (built from config when omitted)
            registry: Run registry (process-wide one when omitted)
        """
        self.config = config
        self.source = source
        self.destination = destination
        self.registry = registry or run_registry

    def initialize(self) -> bool:
        """
        Initialize API clients.

        Returns:
            True if initialization successful, False otherwise
        """
        try:
            if self.source is None:
                self.source = PlexClient(
                    self.config.plex_url,
                    self.config.plex_token,
                    timeout=self.config.request_timeout,
                )
                logger.info("Initialized Plex client", url=self.config.plex_url)

            if self.destination is None:
                self.destination = JellyfinClient(
                    self.config.jellyfin_url,
                    self.config.jellyfin_api_key,
                    user_id=self.config.jellyfin_user_id,
                    timeout=self.config.request_timeout,
                )
                logger.info("Initialized Jellyfin client", url=self.config.jellyfin_url)

            return True

        except ValueError as e:
            logger.error("Failed to initialize sync engine", error=str(e))
            return False

    def test_connections(self) -> dict:
        """
        Test connections to both servers.

        Returns:
            Dict with connection status for each service
        """
        results = {"plex": None, "jellyfin": None}

        if self.source:
            results["plex"] = self.source.test_connection()
        if self.destination:
            results["jellyfin"] = self.destination.test_connection()

        return results

    # ------------------------------------------------------------------
    # Entry points

    def _prepare(self, dry_run: bool) -> RunStatus:
        self.config.validate_for_run()
        if not self.initialize():
            raise ConfigurationError("Failed to initialize sync engine")

        status = RunStatus(str(uuid.uuid4())[:8], dry_run=dry_run)
        self.registry.acquire(status)
        return status

    def start_run(self, dry_run: bool = False) -> RunStatus:
        """
        Start a run on a background thread.

        Returns:
            RunStatus for polling

        Raises:
            ConfigurationError: If required settings are missing
            RunInProgressError: If another run is active
        """
        status = self._prepare(dry_run)

        worker = threading.Thread(
            target=self._execute,
            args=(status,),
            name=f"sync-{status.run_id}",
            daemon=True,
        )
        worker.start()
        return status

    def sync(self, dry_run: bool = False) -> SyncRunResult:
        """
        Run a full sync on the calling thread.

        Returns:
            SyncRunResult with sync details

        Raises:
            ConfigurationError: If required settings are missing
            RunInProgressError: If another run is active
        """
        status = self._prepare(dry_run)
        return self._execute(status)

    def cancel(self, run_id: str) -> bool:
        """Request cancellation of a run. Returns False if unknown or finished."""
        status = self.registry.get(run_id)
        if status is None:
            return False
        return status.request_cancel()

    # ------------------------------------------------------------------
    # Worker

    def _execute(self, status: RunStatus) -> SyncRunResult:
        sync_logger = SyncLogger(status.run_id)
        result = SyncRunResult(
            run_id=status.run_id,
            started_at=status.start_time,
            dry_run=status.dry_run,
        )

        self._save_run_started(result)
        sync_logger.info("Starting sync run", run_id=status.run_id, dry_run=status.dry_run)

        state, message = RunState.COMPLETED, "Sync completed"
        try:
            self._run(status, result, sync_logger)
        except RunCancelled:
            state, message = RunState.CANCELLED, "Sync cancelled"
            sync_logger.warning("Sync run cancelled", run_id=status.run_id)
        except RunAborted as e:
            state, message = RunState.FAILED, str(e)
            sync_logger.error("Sync run failed", error=str(e))
        except Exception as e:
            state, message = RunState.FAILED, f"Unexpected error: {e}"
            sync_logger.exception("Sync run failed", error=str(e))
        finally:
            result.completed_at = datetime.utcnow()
            result.state = state.value
            if state is not RunState.COMPLETED:
                result.success = False
                result.error_message = message

            status.finish(state, message, result)
            self._save_run_finished(result)
            self.registry.release(status)

        sync_logger.info(
            "Sync run finished",
            run_id=status.run_id,
            state=result.state,
            collections=result.collections_found,
            created=result.collections_created,
            updated=result.collections_updated,
            matched=result.items_matched,
            unmatched=result.items_unmatched,
            ambiguous=result.items_ambiguous
        )
        return result

    @staticmethod
    def _check_cancel(status: RunStatus) -> None:
        if status.cancel_requested:
            raise RunCancelled()

    def _run(self, status: RunStatus, result: SyncRunResult, sync_logger: SyncLogger) -> None:
        dry_run = status.dry_run

        # Discovering
        status.set_phase(RunState.DISCOVERING, "Connecting to Plex", progress=DISCOVERY_BAND[0])
        if not self.source.test_connection():
            raise RunAborted("Plex server is unreachable")

        libraries = self._select_libraries(self.source.list_libraries())
        status.set_total(len(libraries))

        discovered: List[Tuple[SourceLibrary, SourceCollection, List[SourceItem]]] = []
        if self.config.sync_collections:
            for library in libraries:
                self._check_cancel(status)
                discovered.extend(self._discover_library(library, sync_logger))
                result.libraries_processed += 1
                status.advance(band=DISCOVERY_BAND, message=f"Scanned library {library.title}")
        else:
            result.libraries_processed = len(libraries)

        result.collections_found = len(discovered)

        try:
            destination_items = self.destination.list_items(self.config.destination_libraries or None)
        except APIError as e:
            raise RunAborted(f"Jellyfin catalog unavailable: {e}")

        index = IdentityIndex.build(destination_items)
        matcher = ItemMatcher(index)

        # Matching
        self._check_cancel(status)
        matching_band = DRY_RUN_MATCHING_BAND if dry_run else MATCHING_BAND
        status.set_phase(
            RunState.MATCHING,
            "Matching items",
            total=sum(len(items) for _, _, items in discovered),
            progress=matching_band[0]
        )

        plans: List[CollectionPlan] = []
        for library, collection, items in discovered:
            self._check_cancel(status)
            plan = CollectionPlan(collection=collection, library_title=library.title)
            pending = 0
            for item in items:
                match = matcher.match(item)
                plan.matches.append(match)
                result.record_match(match)
                pending += 1
                if pending == MATCH_BATCH_SIZE:
                    status.advance(pending, band=matching_band, message=f"Matching {collection.title}")
                    pending = 0
            plans.append(plan)
            status.advance(pending, band=matching_band, message=f"Matched {collection.title}")

        # Applying
        processed = ProcessedSet()
        targets = self._group_by_destination(plans)
        if dry_run:
            for plan in targets:
                self._check_cancel(status)
                self._plan_collection(plan, result, processed, sync_logger)
        else:
            status.set_phase(
                RunState.APPLYING,
                "Updating collections",
                total=len(targets),
                progress=APPLYING_BAND[0]
            )
            for plan in targets:
                self._check_cancel(status)
                self._apply_collection(plan, result, processed, sync_logger)
                status.advance(band=APPLYING_BAND, message=f"Updated {plan.collection.title}")

        # Watch state
        if self.config.sync_watch_state:
            self._check_cancel(status)
            status.update(WATCH_STATE_BAND[0], "Syncing watch state")
            self._sync_watch_state(libraries, matcher, result, dry_run, sync_logger)
            status.update(WATCH_STATE_BAND[1])

        self._save_match_records(result, plans)

    # ------------------------------------------------------------------
    # Discovery

    def _select_libraries(self, libraries: List[SourceLibrary]) -> List[SourceLibrary]:
        selected = set(self.config.selected_libraries)
        if not selected:
            return libraries
        return [lib for lib in libraries if lib.id in selected or lib.title in selected]

    def _discover_library(
        self,
        library: SourceLibrary,
        sync_logger: SyncLogger
    ) -> List[Tuple[SourceLibrary, SourceCollection, List[SourceItem]]]:
        collections = self.source.list_collections(library.id)
        if not collections:
            sync_logger.info("No collections in library", library=library.title)
            return []

        with ThreadPoolExecutor(max_workers=self.config.source_concurrency) as executor:
            item_lists = list(executor.map(
                self.source.list_collection_items,
                [collection.id for collection in collections]
            ))

        sync_logger.info(
            "Discovered collections",
            library=library.title,
            collections=len(collections),
            items=sum(len(items) for items in item_lists)
        )
        return [
            (library, collection, items)
            for collection, items in zip(collections, item_lists)
        ]

    # ------------------------------------------------------------------
    # Collections

    @staticmethod
    def _group_by_destination(plans: List[CollectionPlan]) -> List[CollectionPlan]:
        """
        Merge plans that land in the same destination collection.

        Jellyfin box sets are looked up by name, so same-titled collections
        from different libraries are written once with their combined
        membership. Metadata comes from the first collection, artwork from
        the first one that has it.
        """
        groups = {}
        for plan in plans:
            key = plan.collection.title.strip().lower()
            merged = groups.get(key)
            if merged is None:
                groups[key] = CollectionPlan(
                    collection=plan.collection,
                    library_title=plan.library_title,
                    matches=list(plan.matches),
                )
                continue

            merged.matches.extend(plan.matches)
            if plan.library_title not in merged.library_title.split(", "):
                merged.library_title = f"{merged.library_title}, {plan.library_title}"
            merged.collection = dataclasses.replace(
                merged.collection,
                thumb_url=merged.collection.thumb_url or plan.collection.thumb_url,
                art_url=merged.collection.art_url or plan.collection.art_url,
            )

        return list(groups.values())

    def _record_collection(
        self,
        plan: CollectionPlan,
        result: SyncRunResult,
        action: str
    ) -> None:
        result.collections.append(CollectionDetail(
            title=plan.collection.title,
            library=plan.library_title,
            action=action,
            items=[m.selected.name for m in plan.matches if m.selected],
            unmatched=[m.source.display_title for m in plan.matches if not m.selected],
        ))

    def _plan_collection(
        self,
        plan: CollectionPlan,
        result: SyncRunResult,
        processed: ProcessedSet,
        sync_logger: SyncLogger
    ) -> None:
        """Dry-run counterpart of _apply_collection: reads only."""
        member_ids = plan.resolved_ids
        if not member_ids:
            sync_logger.warning("No matched items, skipping collection", collection=plan.collection.title)
            self._record_collection(plan, result, "skipped")
            return

        try:
            existing = self.destination.find_collection(plan.collection.title)
        except APIError as e:
            result.collections_failed += 1
            sync_logger.error("Failed to look up collection", collection=plan.collection.title, error=str(e))
            self._record_collection(plan, result, "failed")
            return

        if existing is None:
            plan.action = CollectionAction.CREATE
            result.collections_created += 1
        else:
            plan.action = CollectionAction.UPDATE
            plan.destination_id = existing.id
            result.collections_updated += 1

        if self.config.sync_artwork:
            # A collection created in a real run has a fresh id, so it cannot collide.
            if existing is None or processed.claim(existing.id):
                result.artwork_updated += len(self._source_images(plan.collection.thumb_url, plan.collection.art_url))

        if self.config.sync_item_artwork:
            for match in plan.matches:
                if match.selected and processed.claim(match.selected.id):
                    result.artwork_updated += len(self._source_images(match.source.thumb_url, match.source.art_url))

        sync_logger.info(
            "Would sync collection",
            collection=plan.collection.title,
            action=plan.action.value,
            members=len(member_ids)
        )
        self._record_collection(plan, result, plan.action.value)

    def _apply_collection(
        self,
        plan: CollectionPlan,
        result: SyncRunResult,
        processed: ProcessedSet,
        sync_logger: SyncLogger
    ) -> None:
        member_ids = plan.resolved_ids
        if not member_ids:
            sync_logger.warning("No matched items, skipping collection", collection=plan.collection.title)
            self._record_collection(plan, result, "skipped")
            return

        collection = plan.collection
        try:
            destination_collection, action = self.destination.create_or_update_collection(
                collection.title,
                member_ids,
                replace=self.config.delete_before_sync,
            )
        except APIError as e:
            result.collections_failed += 1
            sync_logger.error("Failed to sync collection", collection=collection.title, error=str(e))
            self._record_collection(plan, result, "failed")
            return

        plan.action = action
        plan.destination_id = destination_collection.id
        if action is CollectionAction.CREATE:
            result.collections_created += 1
        else:
            result.collections_updated += 1

        try:
            self.destination.update_item_metadata(
                destination_collection.id,
                overview=collection.summary,
                sort_name=collection.sort_title,
            )
        except APIError as e:
            sync_logger.warning("Failed to update collection metadata", collection=collection.title, error=str(e))

        if self.config.sync_artwork and processed.claim(destination_collection.id):
            self._copy_artwork(destination_collection.id, collection.thumb_url, collection.art_url, result)

        if self.config.sync_item_artwork:
            for match in plan.matches:
                if match.selected and processed.claim(match.selected.id):
                    self._copy_artwork(match.selected.id, match.source.thumb_url, match.source.art_url, result)

        sync_logger.info(
            "Synced collection",
            collection=collection.title,
            action=action.value,
            members=len(member_ids)
        )
        self._record_collection(plan, result, action.value)

    # ------------------------------------------------------------------
    # Artwork

    @staticmethod
    def _source_images(
        thumb_url: Optional[str],
        art_url: Optional[str]
    ) -> List[Tuple[ImageKind, str]]:
        images = []
        if thumb_url:
            images.append((ImageKind.PRIMARY, thumb_url))
        if art_url:
            images.append((ImageKind.BACKDROP, art_url))
        return images

    def _copy_artwork(
        self,
        destination_id: str,
        thumb_url: Optional[str],
        art_url: Optional[str],
        result: SyncRunResult
    ) -> None:
        """Replace destination images with the source's, one kind at a time."""
        for kind, url in self._source_images(thumb_url, art_url):
            try:
                data, content_type = self.source.download_image(url)
                self._keep_debug_image(destination_id, kind, data, content_type)
                self.destination.clear_images(destination_id, kind)
                self.destination.set_image(destination_id, kind, data, content_type)
                result.artwork_updated += 1
            except APIError as e:
                result.artwork_failed += 1
                logger.error(
                    "Failed to copy artwork",
                    destination_id=destination_id,
                    kind=kind.value,
                    error=str(e)
                )

    def _keep_debug_image(
        self,
        destination_id: str,
        kind: ImageKind,
        data: bytes,
        content_type: str
    ) -> None:
        if not self.config.debug_images:
            return

        extension = _CONTENT_EXTENSIONS.get(content_type, "img")
        path = os.path.join(
            self.config.debug_image_dir,
            f"{destination_id}_{kind.value.lower()}.{extension}"
        )
        try:
            os.makedirs(self.config.debug_image_dir, exist_ok=True)
            with open(path, "wb") as f:
                f.write(data)
        except OSError as e:
            logger.warning("Failed to write debug image", path=path, error=str(e))

    # ------------------------------------------------------------------
    # Watch state

    def _sync_watch_state(
        self,
        libraries: List[SourceLibrary],
        matcher: ItemMatcher,
        result: SyncRunResult,
        dry_run: bool,
        sync_logger: SyncLogger
    ) -> None:
        pairs = []
        for library in libraries:
            kind = MediaKind.MOVIE if library.kind is MediaKind.MOVIE else MediaKind.EPISODE
            for item in self.source.list_library_items(library.id, kind=kind):
                match = matcher.match(item)
                if match.selected is not None and match.outcome is not MatchOutcome.AMBIGUOUS:
                    pairs.append((item, match.selected))

        watch_sync = WatchStateSync(self.source, self.destination)
        changes = watch_sync.plan(pairs, self.config.watch_state_direction)
        result.watch_state_changes = changes

        if dry_run:
            result.watch_states_changed = len(changes)
            return

        applied, failed = watch_sync.apply(changes)
        result.watch_states_changed = applied
        sync_logger.info("Synced watch state", applied=applied, failed=failed)

    # ------------------------------------------------------------------
    # Persistence

    def _save_run_started(self, result: SyncRunResult) -> None:
        try:
            with get_db_session() as session:
                session.add(SyncRun(
                    run_id=result.run_id,
                    dry_run=result.dry_run,
                    started_at=result.started_at,
                    status="running",
                ))
        except Exception as e:
            logger.error("Failed to save sync run", run_id=result.run_id, error=str(e))

    def _save_run_finished(self, result: SyncRunResult) -> None:
        try:
            with get_db_session() as session:
                sync_run = session.query(SyncRun).filter(
                    SyncRun.run_id == result.run_id
                ).first()
                if not sync_run:
                    return

                sync_run.completed_at = result.completed_at
                sync_run.status = result.state
                sync_run.libraries_processed = result.libraries_processed
                sync_run.collections_found = result.collections_found
                sync_run.collections_created = result.collections_created
                sync_run.collections_updated = result.collections_updated
                sync_run.collections_failed = result.collections_failed
                sync_run.items_processed = result.items_processed
                sync_run.items_matched = result.items_matched
                sync_run.items_ambiguous = result.items_ambiguous
                sync_run.items_unmatched = result.items_unmatched
                sync_run.artwork_updated = result.artwork_updated
                sync_run.artwork_failed = result.artwork_failed
                sync_run.watch_states_changed = result.watch_states_changed
                sync_run.error_message = result.error_message
        except Exception as e:
            logger.error("Failed to update sync run", run_id=result.run_id, error=str(e))

    def _save_match_records(self, result: SyncRunResult, plans: List[CollectionPlan]) -> None:
        try:
            with get_db_session() as session:
                for plan in plans:
                    for match in plan.matches:
                        if match.outcome not in (MatchOutcome.AMBIGUOUS, MatchOutcome.UNMATCHED):
                            continue
                        session.add(MatchRecord(
                            run_id=result.run_id,
                            source_id=match.source.id,
                            title=match.source.display_title,
                            collection=plan.collection.title,
                            outcome=match.outcome.value,
                            destination_id=match.selected.id if match.selected else None,
                            namespace=match.namespace.value if match.namespace else None,
                            candidates=len(match.candidates),
                        ))
        except Exception as e:
            logger.error("Failed to save match records", run_id=result.run_id, error=str(e))

    def close(self) -> None:
        """Close all clients."""
        if self.source:
            self.source.close()
        if self.destination:
            self.destination.close()


def load_config() -> SyncConfig:
    """Current configuration, database values over environment."""
    with get_db_session() as db_session:
        return ConfigManager(db_session=db_session).get_config()


def create_sync_engine_from_config() -> SyncEngine:
    """
    Create a sync engine from the current configuration.

    Configuration is validated when a run starts, not here.
    """
    return SyncEngine(load_config())
