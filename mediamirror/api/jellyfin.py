"""
Jellyfin API client for the destination catalog.
"""

import base64
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from mediamirror.api.base import APIError, BaseClient
from mediamirror.config import APP_NAME, APP_VERSION
from mediamirror.sync.models import (
    CollectionAction,
    DestinationCollection,
    DestinationItem,
    ExternalIds,
    MediaKind,
)
from mediamirror.utils.logging import get_logger

logger = get_logger(__name__)

PAGE_SIZE = 500
TICKS_PER_SECOND = 10_000_000

_ITEM_TYPES = {
    "movie": MediaKind.MOVIE,
    "series": MediaKind.SHOW,
    "season": MediaKind.SEASON,
    "episode": MediaKind.EPISODE,
}


class ImageKind(str, Enum):
    PRIMARY = "Primary"
    BACKDROP = "Backdrop"


def _provider_ids(raw: Optional[Dict[str, Any]]) -> ExternalIds:
    if not isinstance(raw, dict):
        return ExternalIds()
    lowered = {str(k).lower(): v for k, v in raw.items() if v}
    return ExternalIds(
        imdb=lowered.get("imdb"),
        tmdb=lowered.get("tmdb"),
        tvdb=lowered.get("tvdb"),
    )


class JellyfinClient(BaseClient):
    """
    Client for the Jellyfin server API.

    Unlike the source client, failures propagate as APIError so the
    sync engine can count them per collection or item.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        user_id: Optional[str] = None,
        timeout: int = 30,
    ):
        """
        Initialize Jellyfin client.

        Args:
            base_url: Jellyfin server URL (e.g., http://localhost:8096)
            api_key: API key created in the Jellyfin dashboard
            user_id: User whose played state is read and written
            timeout: Request timeout in seconds
        """
        if not base_url:
            raise ValueError("Jellyfin server URL is required")
        if not base_url.lower().startswith(("http://", "https://")):
            base_url = "http://" + base_url

        super().__init__(base_url, timeout=timeout)
        self.api_key = api_key
        self.user_id = user_id

        self.session.headers.update({
            "Accept": "application/json",
            "X-Emby-Token": api_key,
            "Authorization": (
                f'MediaBrowser Client="{APP_NAME}", Device="{APP_NAME}", '
                f'DeviceId="{APP_NAME}", Version="{APP_VERSION}", Token="{api_key}"'
            ),
        })

    @property
    def _items_endpoint(self) -> str:
        if self.user_id:
            return f"/Users/{self.user_id}/Items"
        return "/Items"

    def test_connection(self) -> bool:
        """
        Test connection to the Jellyfin server.

        Returns:
            True if connection successful, False otherwise
        """
        try:
            info = self.get("/System/Info")
            logger.info(
                "Connected to Jellyfin",
                server=info.get("ServerName"),
                version=info.get("Version")
            )
            return True
        except APIError as e:
            logger.error("Failed to connect to Jellyfin", error=str(e))
            return False

    def list_libraries(self) -> List[Dict[str, Optional[str]]]:
        """
        Get library folders.

        Returns:
            List of dicts with id, name and type
        """
        folders = self.get("/Library/VirtualFolders")
        if not isinstance(folders, list):
            folders = folders.get("Items", []) if isinstance(folders, dict) else []

        return [
            {
                "id": folder.get("ItemId") or folder.get("Id"),
                "name": folder.get("Name"),
                "type": folder.get("CollectionType"),
            }
            for folder in folders
        ]

    def list_items(self, library_ids: Optional[Iterable[str]] = None) -> List[DestinationItem]:
        """
        Get every movie, series, season and episode with provider ids and path.

        Args:
            library_ids: Restrict the listing to these libraries (None = all)

        Returns:
            List of DestinationItem objects in listing order

        Raises:
            APIError: If a page cannot be fetched
        """
        scopes: List[Optional[str]] = list(library_ids or []) or [None]
        items: List[DestinationItem] = []

        for library_id in scopes:
            items.extend(self._list_scope(library_id))

        logger.info(
            "Retrieved Jellyfin items",
            libraries=len(scopes) if scopes != [None] else "all",
            count=len(items)
        )
        return items

    def _list_scope(self, library_id: Optional[str]) -> List[DestinationItem]:
        items = []
        start, total = 0, None

        while True:
            params: Dict[str, Any] = {
                "IncludeItemTypes": "Movie,Series,Season,Episode",
                "Recursive": "true",
                "Fields": "ProviderIds,Path",
                "StartIndex": start,
                "Limit": PAGE_SIZE,
                "EnableTotalRecordCount": "true",
                "EnableUserData": "true" if self.user_id else "false",
            }
            if library_id:
                params["ParentId"] = library_id

            body = self.get(self._items_endpoint, params=params)
            rows = body.get("Items") or []
            if total is None:
                total = int(body.get("TotalRecordCount") or 0)

            for row in rows:
                item = self._parse_item(row, library_id)
                if item is not None:
                    items.append(item)

            start += len(rows)
            if not rows or start >= total:
                break

        return items

    @staticmethod
    def _parse_item(row: Dict[str, Any], library_id: Optional[str]) -> Optional[DestinationItem]:
        kind = _ITEM_TYPES.get(str(row.get("Type") or "").lower())
        if kind is None or not row.get("Id"):
            return None

        played = position = None
        user_data = row.get("UserData")
        if isinstance(user_data, dict):
            played = bool(user_data.get("Played"))
            position = (user_data.get("PlaybackPositionTicks") or 0) / TICKS_PER_SECOND

        return DestinationItem(
            id=str(row["Id"]),
            name=row.get("Name") or "",
            kind=kind,
            external_ids=_provider_ids(row.get("ProviderIds")),
            path=row.get("Path"),
            library_id=library_id,
            played=played,
            position_seconds=position,
        )

    def find_collection(self, name: str) -> Optional[DestinationCollection]:
        """
        Find a box set by exact, case-insensitive name.

        Args:
            name: Collection name

        Returns:
            DestinationCollection (without members) or None
        """
        body = self.get(self._items_endpoint, params={
            "IncludeItemTypes": "BoxSet",
            "Recursive": "true",
            "SearchTerm": name,
        })

        wanted = (name or "").strip().lower()
        for row in body.get("Items") or []:
            if str(row.get("Name") or "").strip().lower() == wanted:
                return DestinationCollection(id=str(row["Id"]), name=row.get("Name") or name)
        return None

    def get_collection_member_ids(self, collection_id: str) -> List[str]:
        body = self.get(self._items_endpoint, params={
            "ParentId": collection_id,
            "Recursive": "true",
        })
        return [str(row["Id"]) for row in body.get("Items") or [] if row.get("Id")]

    def create_or_update_collection(
        self,
        name: str,
        member_ids: List[str],
        replace: bool = False
    ) -> Tuple[DestinationCollection, CollectionAction]:
        """
        Make a box set contain the given members.

        Args:
            name: Collection name
            member_ids: Destination item ids, in order
            replace: Remove existing members not in member_ids

        Returns:
            (collection, action taken)

        Raises:
            APIError: If any call fails
        """
        existing = self.find_collection(name)

        if existing is None:
            params = {"Name": name}
            if member_ids:
                params["Ids"] = ",".join(member_ids)
            body = self.post("/Collections", params=params)
            collection_id = body.get("Id") or body.get("id")
            if not collection_id:
                raise APIError(f"Collection create returned no id for '{name}'")

            logger.info("Created collection", name=name, members=len(member_ids))
            collection = DestinationCollection(
                id=str(collection_id),
                name=name,
                member_ids=list(member_ids)
            )
            return collection, CollectionAction.CREATE

        current = self.get_collection_member_ids(existing.id)
        to_add = [m for m in member_ids if m not in current]
        to_remove = [m for m in current if m not in member_ids] if replace else []

        if to_add:
            self.post(f"/Collections/{existing.id}/Items", params={"Ids": ",".join(to_add)})
        if to_remove:
            self.delete(f"/Collections/{existing.id}/Items", params={"Ids": ",".join(to_remove)})

        logger.info(
            "Updated collection",
            name=name,
            added=len(to_add),
            removed=len(to_remove)
        )
        members = [m for m in current if m not in to_remove] + to_add
        existing.member_ids = members
        return existing, CollectionAction.UPDATE

    def update_item_metadata(
        self,
        item_id: str,
        overview: Optional[str] = None,
        sort_name: Optional[str] = None
    ) -> None:
        """
        Set overview and sort name on an item, keeping its other fields.

        Raises:
            APIError: If the item cannot be loaded or saved
        """
        if overview is None and sort_name is None:
            return

        body = self.get("/Items", params={"Ids": item_id, "Fields": "Overview,SortName"})
        rows = body.get("Items") or []
        if not rows:
            raise APIError(f"Item {item_id} not found", status_code=404)

        item = dict(rows[0])
        if overview is not None:
            item["Overview"] = overview
        if sort_name is not None:
            item["ForcedSortName"] = sort_name
            item["SortName"] = sort_name

        self.post(f"/Items/{item_id}", json=item)

    def clear_images(self, item_id: str, kind: ImageKind) -> None:
        """Delete an item's image of one kind. A missing image is not an error."""
        try:
            self.delete(f"/Items/{item_id}/Images/{kind.value}")
        except APIError as e:
            if e.status_code != 404:
                raise

    def set_image(
        self,
        item_id: str,
        kind: ImageKind,
        data: bytes,
        content_type: str = "image/jpeg"
    ) -> None:
        """
        Upload an image for an item.

        Raises:
            APIError: If the upload fails
        """
        self.post(
            f"/Items/{item_id}/Images/{kind.value}",
            data=base64.b64encode(data),
            headers={"Content-Type": content_type},
        )

    def set_user_data(
        self,
        item_id: str,
        played: bool,
        position_seconds: float = 0.0
    ) -> None:
        """
        Set played flag and resume position for the configured user.

        Raises:
            APIError: If no user is configured or the update fails
        """
        if not self.user_id:
            raise APIError("A Jellyfin user id is required for watch state")

        self.post(
            f"/Items/{item_id}/UserData",
            params={"userId": self.user_id},
            json={
                "Played": played,
                "PlaybackPositionTicks": int(position_seconds * TICKS_PER_SECOND),
            },
        )
