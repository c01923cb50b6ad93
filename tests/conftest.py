"""Shared test fixtures."""

from typing import Dict, List, Optional

import pytest

from mediamirror.config import SyncConfig
from mediamirror.db import database
from mediamirror.sync.models import (
    CollectionAction,
    DestinationCollection,
    DestinationItem,
    ExternalIds,
    MediaKind,
    SourceCollection,
    SourceItem,
    SourceLibrary,
)
from mediamirror.sync.status import RunRegistry


@pytest.fixture(autouse=True)
def temp_database(tmp_path, monkeypatch):
    """Point the database at a throwaway SQLite file for every test."""
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'test.db'}")
    database.close_db()
    database.init_db()
    yield
    database.close_db()


@pytest.fixture
def make_config():
    """Factory fixture for a runnable SyncConfig with overrides."""

    def _make(**overrides):
        defaults = dict(
            plex_url="http://plex.local:32400",
            plex_token="plex-token",
            jellyfin_url="http://jellyfin.local:8096",
            jellyfin_api_key="jf-key",
            jellyfin_user_id="user-1",
        )
        defaults.update(overrides)
        return SyncConfig(**defaults)

    return _make


@pytest.fixture
def make_source_item():
    def _make(item_id="1", title="Avatar", kind=MediaKind.MOVIE, imdb=None,
              tmdb=None, tvdb=None, file_path=None, **kwargs):
        return SourceItem(
            id=item_id,
            title=title,
            kind=kind,
            external_ids=ExternalIds(imdb=imdb, tmdb=tmdb, tvdb=tvdb),
            file_path=file_path,
            **kwargs,
        )

    return _make


@pytest.fixture
def make_dest_item():
    def _make(item_id="d1", name="Avatar", kind=MediaKind.MOVIE, imdb=None,
              tmdb=None, tvdb=None, path=None, **kwargs):
        return DestinationItem(
            id=item_id,
            name=name,
            kind=kind,
            external_ids=ExternalIds(imdb=imdb, tmdb=tmdb, tvdb=tvdb),
            path=path,
            **kwargs,
        )

    return _make


class FakeSource:
    """In-memory stand-in for PlexClient."""

    def __init__(self):
        self.reachable = True
        self.libraries: List[SourceLibrary] = []
        self.collections: Dict[str, List[SourceCollection]] = {}
        self.collection_items: Dict[str, List[SourceItem]] = {}
        self.library_items: Dict[str, List[SourceItem]] = {}
        self.downloads: List[str] = []
        self.watch_updates: List[tuple] = []
        self.on_list_collections = None

    def test_connection(self):
        return self.reachable

    def list_libraries(self):
        return list(self.libraries)

    def list_collections(self, library_id):
        if self.on_list_collections:
            self.on_list_collections(library_id)
        return list(self.collections.get(library_id, []))

    def list_collection_items(self, collection_id):
        return list(self.collection_items.get(collection_id, []))

    def list_library_items(self, library_id, kind=None):
        return list(self.library_items.get(library_id, []))

    def download_image(self, url):
        self.downloads.append(url)
        return b"image:" + url.encode(), "image/jpeg"

    def set_watch_state(self, item_id, watched, position_seconds=0.0):
        self.watch_updates.append((item_id, watched, position_seconds))

    def close(self):
        pass


class FakeDestination:
    """In-memory stand-in for JellyfinClient that records every write."""

    def __init__(self, items: Optional[List[DestinationItem]] = None):
        self.items = list(items or [])
        self.boxsets: Dict[str, DestinationCollection] = {}
        self.mutations: List[tuple] = []
        self.list_error = None
        self._next_id = 100

    def test_connection(self):
        return True

    def list_items(self, library_ids=None):
        if self.list_error:
            raise self.list_error
        return list(self.items)

    def find_collection(self, name):
        return self.boxsets.get(name.lower())

    def create_or_update_collection(self, name, member_ids, replace=False):
        existing = self.boxsets.get(name.lower())
        if existing is None:
            self._next_id += 1
            existing = DestinationCollection(id=f"c{self._next_id}", name=name, member_ids=list(member_ids))
            self.boxsets[name.lower()] = existing
            self.mutations.append(("create_collection", name, tuple(member_ids)))
            return existing, CollectionAction.CREATE

        self.mutations.append(("update_collection", name, tuple(member_ids), replace))
        return existing, CollectionAction.UPDATE

    def update_item_metadata(self, item_id, overview=None, sort_name=None):
        self.mutations.append(("metadata", item_id, overview, sort_name))

    def clear_images(self, item_id, kind):
        self.mutations.append(("clear_images", item_id, kind))

    def set_image(self, item_id, kind, data, content_type="image/jpeg"):
        self.mutations.append(("set_image", item_id, kind))

    def set_user_data(self, item_id, played, position_seconds=0.0):
        self.mutations.append(("user_data", item_id, played, position_seconds))

    def close(self):
        pass


@pytest.fixture
def fake_source():
    return FakeSource()


@pytest.fixture
def fake_destination():
    return FakeDestination()


@pytest.fixture
def registry():
    return RunRegistry()
