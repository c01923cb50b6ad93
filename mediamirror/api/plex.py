"""
Plex Media Server client for the source catalog.

Plex answers with XML MediaContainer documents. The shape of the
"items in a collection" endpoint has moved between server versions, so
collection membership is fetched through an ordered list of URL templates.
"""

import re
import threading
from functools import partial
from typing import Callable, Dict, Iterable, List, Optional, Tuple, TypeVar
import xml.etree.ElementTree as ET

from mediamirror.api.base import (
    APIError,
    BaseClient,
    FetchResult,
    ParseError,
    TransportError,
)
from mediamirror.config import APP_NAME, APP_VERSION
from mediamirror.sync.models import (
    ExternalIds,
    IdNamespace,
    MediaKind,
    SourceCollection,
    SourceItem,
    SourceLibrary,
)
from mediamirror.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

TOKEN_PARAM = "X-Plex-Token"

# Tried strictly in this order; the first one yielding media wins.
COLLECTION_ITEM_TEMPLATES: Tuple[str, ...] = (
    "/library/collections/{id}/children",
    "/library/metadata/{id}/children",
    "/library/collections/{id}/all",
    "/library/metadata/{id}/items",
    "/library/collections/{id}/items",
)

COLLECTION_LIST_TEMPLATES: Tuple[Tuple[str, Optional[Dict[str, str]]], ...] = (
    ("/library/sections/{id}/collections", None),
    ("/library/sections/{id}/all", {"type": "18"}),
)

# Plex numeric type codes for /library/sections/{id}/all
_TYPE_CODES = {
    MediaKind.MOVIE: "1",
    MediaKind.SHOW: "2",
    MediaKind.SEASON: "3",
    MediaKind.EPISODE: "4",
}

_GUID_SCHEMES = {
    "imdb": IdNamespace.IMDB,
    "tmdb": IdNamespace.TMDB,
    "tvdb": IdNamespace.TVDB,
    "com.plexapp.agents.imdb": IdNamespace.IMDB,
    "com.plexapp.agents.themoviedb": IdNamespace.TMDB,
    "com.plexapp.agents.thetvdb": IdNamespace.TVDB,
}

_COLLECTION_ID_PATTERN = re.compile(r"/(?:collections|metadata)/(\d+)")
_KNOWN_KINDS = {kind.value for kind in MediaKind}


def parse_guid(guid: Optional[str]) -> Optional[Tuple[IdNamespace, str]]:
    """
    Parse a scheme-prefixed guid such as ``imdb://tt0133093``.

    Returns:
        (namespace, value) or None for unknown schemes
    """
    if not guid or "://" not in guid:
        return None

    scheme, _, rest = guid.partition("://")
    namespace = _GUID_SCHEMES.get(scheme.strip().lower())
    if namespace is None:
        return None

    # Legacy agent guids carry "?lang=xx" and, for episodes, "/season/episode".
    value = rest.split("?", 1)[0].split("/", 1)[0].strip()
    if not value:
        return None
    return namespace, value


def extract_collection_id(key: str) -> str:
    """Reduce a collection key like /library/collections/123/children to 123."""
    match = _COLLECTION_ID_PATTERN.search(key or "")
    if match:
        return match.group(1)
    return (key or "").strip("/")


def _as_int(value: Optional[str]) -> Optional[int]:
    try:
        return int(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


class PlexClient(BaseClient):
    """
    Client for the Plex Media Server API.

    All list operations swallow transport and parse failures: they are
    logged and an empty list is returned, so a single failed call never
    aborts a run.
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        client_identifier: str = APP_NAME,
        timeout: int = 30,
    ):
        """
        Initialize Plex client.

        Args:
            base_url: Plex server URL (e.g., http://localhost:32400)
            token: X-Plex-Token for authentication
            client_identifier: Value sent as X-Plex-Client-Identifier
            timeout: Request timeout in seconds
        """
        if not base_url:
            raise ValueError("Plex server URL is required")
        if not base_url.lower().startswith(("http://", "https://")):
            base_url = "http://" + base_url
            logger.info("Added http:// scheme to Plex server URL", url=base_url)

        super().__init__(base_url, timeout=timeout)
        self.token = token
        self._series_ids: Dict[str, Optional[str]] = {}
        self._series_lock = threading.Lock()

        self.session.headers.update({
            "Accept": "application/xml",
            TOKEN_PARAM: token,
            "X-Plex-Client-Identifier": client_identifier,
            "X-Plex-Product": APP_NAME,
            "X-Plex-Version": APP_VERSION,
            "X-Plex-Device": APP_NAME,
            "X-Plex-Platform": "Python",
        })

    # ------------------------------------------------------------------
    # Transport

    def _fetch_xml(
        self,
        endpoint: str,
        params: Optional[Dict[str, str]] = None
    ) -> FetchResult:
        """Fetch one endpoint and classify the outcome without raising."""
        url = self._build_url(endpoint)

        try:
            response = self._send("GET", endpoint, params=params)
        except TransportError as e:
            return FetchResult.failure(url, e)

        if not 200 <= response.status_code < 300:
            return FetchResult.failure(
                url,
                APIError("Unexpected status from Plex", status_code=response.status_code)
            )

        text = response.text or ""
        if not text.strip():
            return FetchResult.empty(url)

        try:
            root = ET.fromstring(text)
        except ET.ParseError as e:
            return FetchResult.failure(url, ParseError(f"Malformed XML: {e}"))

        return FetchResult.success(url, root)

    def _fetch_parsed(
        self,
        endpoint: str,
        parse: Callable[[ET.Element], List[T]],
        params: Optional[Dict[str, str]] = None,
    ) -> Tuple[FetchResult, List[T]]:
        """Fetch and parse; a response without recognized elements counts as empty."""
        result = self._fetch_xml(endpoint, params)
        if not result.ok:
            return result, []

        parsed = parse(result.root)
        if not parsed:
            return FetchResult.empty(result.url, result.root), []
        return result, parsed

    def _first_non_empty(
        self,
        attempts: Iterable[Callable[[], Tuple[FetchResult, List[T]]]],
        what: str,
        ref: str,
    ) -> List[T]:
        """Run attempts in order and stop at the first that yields elements."""
        for attempt in attempts:
            result, parsed = attempt()
            if parsed:
                logger.debug(
                    "Fetched from Plex",
                    what=what,
                    ref=ref,
                    url=result.url,
                    count=len(parsed)
                )
                return parsed

            logger.debug(
                "Plex endpoint yielded nothing, trying next",
                what=what,
                ref=ref,
                url=result.url,
                status=result.status.value,
                error=str(result.error) if result.error else None
            )

        logger.warning(
            "All Plex endpoints exhausted, treating as empty",
            what=what,
            ref=ref
        )
        return []

    # ------------------------------------------------------------------
    # Public API

    def test_connection(self) -> bool:
        """
        Test connection to the Plex server.

        Returns:
            True if connection successful, False otherwise
        """
        result = self._fetch_xml("/identity")
        if not result.ok:
            logger.error(
                "Failed to connect to Plex",
                url=self.base_url,
                error=str(result.error) if result.error else "empty response"
            )
        return result.ok

    def list_libraries(self) -> List[SourceLibrary]:
        """
        Get movie and show library sections.

        Returns:
            List of SourceLibrary objects (empty on failure)
        """
        result = self._fetch_xml("/library/sections")
        if not result.ok:
            logger.error(
                "Failed to list Plex libraries",
                error=str(result.error) if result.error else "empty response"
            )
            return []

        libraries = []
        for directory in result.root.findall("Directory"):
            kind_attr = (directory.get("type") or "").lower()
            if kind_attr not in (MediaKind.MOVIE.value, MediaKind.SHOW.value):
                logger.debug(
                    "Skipping unsupported library",
                    title=directory.get("title"),
                    type=kind_attr
                )
                continue

            libraries.append(SourceLibrary(
                id=directory.get("key", ""),
                title=directory.get("title", ""),
                kind=MediaKind(kind_attr),
            ))

        logger.info("Retrieved Plex libraries", count=len(libraries))
        return libraries

    def list_collections(self, library_id: str) -> List[SourceCollection]:
        """
        Get collections in a library section.

        Args:
            library_id: Plex library section key

        Returns:
            List of SourceCollection objects (empty on failure)
        """
        parse = partial(self._parse_collections, library_id=library_id)
        attempts = [
            partial(self._fetch_parsed, template.format(id=library_id), parse, params)
            for template, params in COLLECTION_LIST_TEMPLATES
        ]
        collections = self._first_non_empty(attempts, "collections", library_id)

        logger.info(
            "Retrieved Plex collections",
            library_id=library_id,
            count=len(collections)
        )
        return collections

    def list_collection_items(self, collection_id: str) -> List[SourceItem]:
        """
        Get the items in a collection.

        Args:
            collection_id: Collection rating key or full collection key

        Returns:
            List of SourceItem objects; empty when no template yields media
        """
        if not collection_id:
            return []

        key = extract_collection_id(collection_id)
        attempts = (
            partial(self._fetch_parsed, template.format(id=key), self._parse_items)
            for template in COLLECTION_ITEM_TEMPLATES
        )
        items = self._first_non_empty(attempts, "collection items", key)
        return self._inherit_series_ids(items)

    def list_library_items(
        self,
        library_id: str,
        kind: Optional[MediaKind] = None
    ) -> List[SourceItem]:
        """
        Get all items of a library section with external identifiers.

        Args:
            library_id: Plex library section key
            kind: Restrict to one media kind (e.g. episodes of a show library)

        Returns:
            List of SourceItem objects (empty on failure)
        """
        params = {"includeGuids": "1", "includeExternalMedia": "1"}
        if kind is not None:
            params["type"] = _TYPE_CODES[kind]

        result, items = self._fetch_parsed(
            f"/library/sections/{library_id}/all",
            self._parse_items,
            params,
        )
        if result.error:
            logger.error(
                "Failed to list Plex library items",
                library_id=library_id,
                error=str(result.error)
            )
            return []

        logger.info(
            "Retrieved Plex library items",
            library_id=library_id,
            kind=kind.value if kind else None,
            count=len(items)
        )
        return self._inherit_series_ids(items)

    def qualify_image_url(self, ref: Optional[str]) -> Optional[str]:
        """
        Turn an image reference into an authenticated absolute URL.

        Relative paths are prefixed with the server URL. The token is
        appended only when the URL does not already carry one.
        """
        if not ref:
            return None

        if ref.lower().startswith(("http://", "https://")):
            url = ref
        else:
            url = self._build_url(ref)

        if f"{TOKEN_PARAM}=" in url:
            return url

        separator = "&" if "?" in url else "?"
        return f"{url}{separator}{TOKEN_PARAM}={self.token}"

    def download_image(self, url: str) -> Tuple[bytes, str]:
        """
        Download an image.

        Args:
            url: Absolute image URL (see qualify_image_url)

        Returns:
            (image bytes, content type)

        Raises:
            APIError: If the image could not be fetched
        """
        response = self._send("GET", url, headers={"Accept": "image/*"})
        if response.status_code >= 400 or not response.content:
            raise APIError(
                "Failed to download image",
                status_code=response.status_code
            )
        content_type = response.headers.get("Content-Type", "image/jpeg").split(";")[0]
        return response.content, content_type

    def set_watch_state(
        self,
        item_id: str,
        watched: bool,
        position_seconds: float = 0.0
    ) -> None:
        """
        Mark an item watched/unwatched and optionally set its resume point.

        Raises:
            APIError: If Plex rejects the update
        """
        params = {"identifier": "com.plexapp.plugins.library", "key": item_id}
        self.get("/:/scrobble" if watched else "/:/unscrobble", params=params)

        if not watched and position_seconds > 0:
            self.get("/:/progress", params={
                **params,
                "time": str(int(position_seconds * 1000)),
                "state": "stopped",
            })

    # ------------------------------------------------------------------
    # Parsing

    def _parse_collections(
        self,
        root: ET.Element,
        library_id: str
    ) -> List[SourceCollection]:
        elements = root.findall("Directory") or root.findall("Metadata")
        collections = []

        for element in elements:
            element_type = (element.get("type") or "collection").lower()
            if element_type != "collection":
                continue

            collection_id = element.get("ratingKey") or extract_collection_id(element.get("key", ""))
            if not collection_id:
                continue

            child_count = None
            for attr in ("childCount", "leafCount", "size"):
                child_count = _as_int(element.get(attr))
                if child_count is not None:
                    break

            collections.append(SourceCollection(
                id=collection_id,
                title=element.get("title", ""),
                library_id=library_id,
                sort_title=element.get("titleSort") or None,
                summary=element.get("summary") or None,
                thumb_url=self.qualify_image_url(element.get("thumb")),
                art_url=self.qualify_image_url(element.get("art")),
                child_count=child_count,
            ))

        return collections

    def _parse_items(self, root: ET.Element) -> List[SourceItem]:
        videos = root.findall("Video")
        directories = root.findall("Directory")

        if videos or directories:
            elements = [(e, MediaKind.MOVIE) for e in videos]
            elements += [(e, MediaKind.SHOW) for e in directories]
        else:
            # Some server versions return a flat Metadata list instead.
            metadata = root.findall("Metadata")
            if metadata:
                logger.debug("Parsing Metadata elements", count=len(metadata))
            elements = [(e, MediaKind.MOVIE) for e in metadata]

        items = []
        for element, default_kind in elements:
            item = self._parse_item(element, default_kind)
            if item is not None:
                items.append(item)
        return items

    def _parse_item(
        self,
        element: ET.Element,
        default_kind: MediaKind
    ) -> Optional[SourceItem]:
        type_attr = (element.get("type") or "").lower()
        if type_attr and type_attr not in _KNOWN_KINDS:
            return None

        item_id = element.get("ratingKey") or extract_collection_id(element.get("key", ""))
        if not item_id:
            return None

        kind = MediaKind.from_value(type_attr, default_kind)

        series_id = series_title = None
        if kind is MediaKind.SEASON:
            series_id = element.get("parentRatingKey")
            series_title = element.get("parentTitle")
        elif kind is MediaKind.EPISODE:
            series_id = element.get("grandparentRatingKey")
            series_title = element.get("grandparentTitle")

        return SourceItem(
            id=item_id,
            title=element.get("title", ""),
            kind=kind,
            external_ids=self._parse_external_ids(element),
            file_path=self._parse_file_path(element),
            thumb_url=self.qualify_image_url(element.get("thumb")),
            art_url=self.qualify_image_url(element.get("art")),
            year=_as_int(element.get("year")),
            series_id=series_id,
            series_title=series_title,
            view_count=_as_int(element.get("viewCount")) or 0,
            view_offset_ms=_as_int(element.get("viewOffset")) or 0,
        )

    @staticmethod
    def _parse_external_ids(element: ET.Element) -> ExternalIds:
        found: Dict[IdNamespace, str] = {}

        for guid in element.findall("Guid"):
            parsed = parse_guid(guid.get("id"))
            if parsed and parsed[0] not in found:
                found[parsed[0]] = parsed[1]

        if not found:
            parsed = parse_guid(element.get("guid"))
            if parsed:
                found[parsed[0]] = parsed[1]

        return ExternalIds(
            imdb=found.get(IdNamespace.IMDB),
            tmdb=found.get(IdNamespace.TMDB),
            tvdb=found.get(IdNamespace.TVDB),
        )

    @staticmethod
    def _parse_file_path(element: ET.Element) -> Optional[str]:
        part = element.find("Media/Part")
        if part is not None and part.get("file"):
            return part.get("file")

        location = element.find("Location")
        if location is not None and location.get("path"):
            return location.get("path")

        return None

    # ------------------------------------------------------------------
    # Series identifiers

    def _inherit_series_ids(self, items: List[SourceItem]) -> List[SourceItem]:
        """Give seasons and episodes their series' TVDb id when they lack one."""
        for item in items:
            if item.kind not in (MediaKind.SEASON, MediaKind.EPISODE):
                continue
            if item.external_ids.tvdb or not item.series_id:
                continue

            tvdb = self._series_tvdb(item.series_id)
            if tvdb:
                item.external_ids = item.external_ids.with_tvdb(tvdb)

        return items

    def _series_tvdb(self, series_id: str) -> Optional[str]:
        with self._series_lock:
            if series_id in self._series_ids:
                return self._series_ids[series_id]

        tvdb = None
        result = self._fetch_xml(
            f"/library/metadata/{series_id}",
            {"includeGuids": "1"}
        )
        if result.ok:
            series = result.root.find("Directory")
            if series is not None:
                tvdb = self._parse_external_ids(series).tvdb
        else:
            logger.debug(
                "Could not load series metadata",
                series_id=series_id,
                error=str(result.error) if result.error else None
            )

        with self._series_lock:
            self._series_ids[series_id] = tvdb
        return tvdb
