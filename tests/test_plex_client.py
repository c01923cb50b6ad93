from unittest.mock import MagicMock

import pytest
import requests

from mediamirror.api.plex import COLLECTION_ITEM_TEMPLATES, PlexClient, parse_guid
from mediamirror.sync.models import IdNamespace, MediaKind

BASE = "http://plex.local:32400"

MOVIES_XML = """
<MediaContainer size="2">
  <Video ratingKey="101" type="movie" title="Avatar" year="2009"
         thumb="/library/metadata/101/thumb/1" viewCount="1">
    <Media><Part file="/data/movies/Avatar (2009)/Avatar.mkv"/></Media>
    <Guid id="imdb://tt0499549"/>
    <Guid id="tmdb://19995"/>
  </Video>
  <Video ratingKey="102" type="movie" title="Titanic" viewOffset="60000">
    <Guid id="plex://movie/5d776"/>
    <Guid id="tmdb://597"/>
  </Video>
</MediaContainer>
"""


def _response(status=200, text=""):
    response = MagicMock()
    response.status_code = status
    response.text = text
    response.content = text.encode()
    response.headers = {}
    return response


@pytest.fixture
def client():
    return PlexClient(BASE, "secret")


@pytest.fixture
def routes(mocker, client):
    """Map request paths to (status, body); records every requested path."""
    table = {}
    calls = []

    def _request(method, url, **kwargs):
        path = url[len(BASE):] if url.startswith(BASE) else url
        calls.append((path, kwargs.get("params")))
        if path not in table:
            return _response(404, "Not Found")
        result = table[path]
        if isinstance(result, Exception):
            raise result
        status, body = result
        return _response(status, body)

    mocker.patch.object(client.session, "request", side_effect=_request)
    return table, calls


class TestSetup:
    def test_headers(self, client):
        headers = client.session.headers
        assert headers["X-Plex-Token"] == "secret"
        assert headers["Accept"] == "application/xml"
        for name in ("X-Plex-Client-Identifier", "X-Plex-Product", "X-Plex-Version",
                     "X-Plex-Device", "X-Plex-Platform"):
            assert headers[name]

    def test_scheme_added_and_slash_trimmed(self):
        assert PlexClient("plex.local:32400/", "t").base_url == "http://plex.local:32400"

    def test_missing_url_rejected(self):
        with pytest.raises(ValueError):
            PlexClient("", "t")


class TestCollectionItems:
    def test_stops_at_first_template_with_items(self, client, routes):
        table, calls = routes
        table["/library/metadata/42/children"] = (200, '<MediaContainer size="0"/>')
        table["/library/collections/42/all"] = (200, MOVIES_XML)
        table["/library/metadata/42/items"] = (200, MOVIES_XML)

        items = client.list_collection_items("42")

        assert [i.id for i in items] == ["101", "102"]
        assert [path for path, _ in calls] == [
            "/library/collections/42/children",
            "/library/metadata/42/children",
            "/library/collections/42/all",
        ]

    def test_all_templates_exhausted(self, client, routes):
        table, calls = routes
        table["/library/collections/7/children"] = requests.exceptions.ConnectionError("down")
        table["/library/metadata/7/children"] = (200, "<not xml")

        assert client.list_collection_items("7") == []
        assert len(calls) == len(COLLECTION_ITEM_TEMPLATES)

    def test_collection_key_reduced_to_id(self, client, routes):
        table, calls = routes
        table["/library/collections/42/children"] = (200, MOVIES_XML)

        items = client.list_collection_items("/library/collections/42/children")

        assert len(items) == 2
        assert calls[0][0] == "/library/collections/42/children"

    def test_item_fields(self, client, routes):
        table, _ = routes
        table["/library/collections/1/children"] = (200, MOVIES_XML)

        avatar, titanic = client.list_collection_items("1")

        assert avatar.kind is MediaKind.MOVIE
        assert avatar.external_ids.imdb == "tt0499549"
        assert avatar.external_ids.tmdb == "19995"
        assert avatar.file_path == "/data/movies/Avatar (2009)/Avatar.mkv"
        assert avatar.year == 2009
        assert avatar.watched
        assert avatar.thumb_url == f"{BASE}/library/metadata/101/thumb/1?X-Plex-Token=secret"
        # plex:// guids are not an external namespace
        assert titanic.external_ids.imdb is None
        assert titanic.external_ids.tmdb == "597"
        assert titanic.position_seconds == 60.0

    def test_metadata_secondary_format(self, client, routes):
        table, _ = routes
        table["/library/collections/3/children"] = (200, """
            <MediaContainer>
              <Metadata ratingKey="5" type="show" title="Lost">
                <Guid id="tvdb://73739"/>
                <Location path="/tv/Lost"/>
              </Metadata>
            </MediaContainer>
        """)

        [item] = client.list_collection_items("3")

        assert item.kind is MediaKind.SHOW
        assert item.external_ids.tvdb == "73739"
        assert item.file_path == "/tv/Lost"

    def test_legacy_guid_attribute(self, client, routes):
        table, _ = routes
        table["/library/collections/4/children"] = (200, """
            <MediaContainer>
              <Video ratingKey="9" type="movie" title="Heat"
                     guid="com.plexapp.agents.imdb://tt0113277?lang=en"/>
            </MediaContainer>
        """)

        [item] = client.list_collection_items("4")

        assert item.external_ids.imdb == "tt0113277"

    def test_episode_inherits_series_tvdb_once(self, client, routes):
        table, calls = routes
        table["/library/collections/8/children"] = (200, """
            <MediaContainer>
              <Video ratingKey="201" type="episode" title="Pilot" grandparentRatingKey="77"
                     grandparentTitle="Lost"/>
              <Video ratingKey="202" type="episode" title="Tabula Rasa" grandparentRatingKey="77"
                     grandparentTitle="Lost"/>
            </MediaContainer>
        """)
        table["/library/metadata/77"] = (200, """
            <MediaContainer>
              <Directory ratingKey="77" type="show" title="Lost"><Guid id="tvdb://73739"/></Directory>
            </MediaContainer>
        """)

        items = client.list_collection_items("8")

        assert [i.external_ids.tvdb for i in items] == ["73739", "73739"]
        assert items[0].display_title == "Lost - Pilot"
        assert [path for path, _ in calls].count("/library/metadata/77") == 1


class TestListings:
    def test_list_libraries_keeps_movie_and_show(self, client, routes):
        table, _ = routes
        table["/library/sections"] = (200, """
            <MediaContainer>
              <Directory key="1" type="movie" title="Movies"/>
              <Directory key="2" type="show" title="TV Shows"/>
              <Directory key="3" type="artist" title="Music"/>
            </MediaContainer>
        """)

        libraries = client.list_libraries()

        assert [(lib.id, lib.kind) for lib in libraries] == [("1", MediaKind.MOVIE), ("2", MediaKind.SHOW)]

    def test_list_libraries_failure_returns_empty(self, client, routes):
        assert client.list_libraries() == []

    def test_list_collections_falls_back_to_type_18(self, client, routes):
        table, calls = routes
        table["/library/sections/1/all"] = (200, """
            <MediaContainer>
              <Directory ratingKey="42" type="collection" title="Marvel" titleSort="MCU"
                         summary="Heroes" childCount="23" thumb="/library/collections/42/composite/1"/>
            </MediaContainer>
        """)

        [collection] = client.list_collections("1")

        assert collection.id == "42"
        assert collection.sort_title == "MCU"
        assert collection.child_count == 23
        assert collection.library_id == "1"
        assert calls[-1] == ("/library/sections/1/all", {"type": "18"})

    def test_list_library_items_passes_type(self, client, routes):
        table, calls = routes
        table["/library/sections/1/all"] = (200, MOVIES_XML)

        items = client.list_library_items("1", kind=MediaKind.MOVIE)

        assert len(items) == 2
        params = calls[0][1]
        assert params["type"] == "1"
        assert params["includeGuids"] == "1"

    def test_connection_probe(self, client, routes):
        table, _ = routes
        assert client.test_connection() is False
        table["/identity"] = (200, '<MediaContainer machineIdentifier="abc"/>')
        assert client.test_connection() is True


class TestImageUrls:
    def test_relative_ref(self, client):
        assert client.qualify_image_url("/photo/1") == f"{BASE}/photo/1?X-Plex-Token=secret"

    def test_existing_query_uses_ampersand(self, client):
        url = client.qualify_image_url("/photo?width=300")
        assert url == f"{BASE}/photo?width=300&X-Plex-Token=secret"

    def test_idempotent(self, client):
        once = client.qualify_image_url("/photo/1")
        assert client.qualify_image_url(once) == once

    def test_empty_ref(self, client):
        assert client.qualify_image_url(None) is None


class TestParseGuid:
    @pytest.mark.parametrize("guid,expected", [
        ("imdb://tt0133093", (IdNamespace.IMDB, "tt0133093")),
        ("tmdb://603", (IdNamespace.TMDB, "603")),
        ("tvdb://81189", (IdNamespace.TVDB, "81189")),
        ("com.plexapp.agents.thetvdb://81189/1/2?lang=en", (IdNamespace.TVDB, "81189")),
        ("plex://movie/5d776", None),
        ("local://12", None),
        ("", None),
        (None, None),
    ])
    def test_parse(self, guid, expected):
        assert parse_guid(guid) == expected
