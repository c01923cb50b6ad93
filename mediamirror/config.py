"""
Configuration management for mediamirror.
Supports both environment variables and database-stored configuration.
"""

import os
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field
from dotenv import load_dotenv

load_dotenv()

APP_NAME = "mediamirror"
APP_VERSION = "0.1.0"


class ConfigurationError(Exception):
    """Required configuration is missing or invalid."""


class WatchStateDirection(str, Enum):
    SOURCE_TO_DESTINATION = "source_to_destination"
    DESTINATION_TO_SOURCE = "destination_to_source"
    BIDIRECTIONAL = "bidirectional"


class SyncConfig(BaseModel):
    """Configuration for the sync service. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    # Plex (source) settings
    plex_url: Optional[str] = Field(default=None, description="Plex server URL")
    plex_token: Optional[str] = Field(default=None, description="Plex authentication token")

    # Jellyfin (destination) settings
    jellyfin_url: Optional[str] = Field(default=None, description="Jellyfin server URL")
    jellyfin_api_key: Optional[str] = Field(default=None, description="Jellyfin API key")
    jellyfin_user_id: Optional[str] = Field(default=None, description="Jellyfin user for watch state")

    # Scope
    selected_libraries: List[str] = Field(default_factory=list, description="Source library ids; empty means all")
    destination_libraries: List[str] = Field(default_factory=list, description="Destination library ids; empty means all")

    # Feature toggles
    sync_collections: bool = Field(default=True, description="Mirror collection membership")
    sync_artwork: bool = Field(default=True, description="Copy collection artwork")
    sync_item_artwork: bool = Field(default=False, description="Copy artwork of collection members")
    delete_before_sync: bool = Field(default=False, description="Remove members missing from the source collection")
    debug_images: bool = Field(default=False, description="Keep downloaded images on disk")
    debug_image_dir: str = Field(default="data/debug-images", description="Where debug images are written")
    sync_watch_state: bool = Field(default=False, description="Reconcile played state")
    watch_state_direction: WatchStateDirection = Field(
        default=WatchStateDirection.SOURCE_TO_DESTINATION,
        description="Which side wins watch-state differences"
    )

    # Scheduling
    enable_scheduled_sync: bool = Field(default=False, description="Run periodically")
    sync_interval_hours: int = Field(default=24, ge=1, description="Sync interval in hours")

    # Runtime
    source_concurrency: int = Field(default=4, ge=1, description="Parallel source reads per library")
    request_timeout: int = Field(default=30, ge=1, description="HTTP timeout in seconds")

    # Application settings
    database_url: str = Field(
        default="sqlite:///data/mediamirror.db",
        description="Database connection URL"
    )
    log_level: str = Field(default="INFO", description="Logging level")

    def validate_for_run(self) -> None:
        """
        Check that a sync run can start.

        Raises:
            ConfigurationError: If a required setting is missing
        """
        missing = []
        if not self.plex_url:
            missing.append("plex_url")
        if not self.plex_token:
            missing.append("plex_token")
        if not self.jellyfin_url:
            missing.append("jellyfin_url")
        if not self.jellyfin_api_key:
            missing.append("jellyfin_api_key")
        if missing:
            raise ConfigurationError(f"Missing configuration: {', '.join(missing)}")

        if self.sync_watch_state and not self.jellyfin_user_id:
            raise ConfigurationError("Watch state sync requires jellyfin_user_id")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str) -> List[str]:
    value = os.getenv(name, "")
    return [part.strip() for part in value.split(",") if part.strip()]


def get_config_from_env() -> SyncConfig:
    """Load configuration from environment variables."""
    return SyncConfig(
        plex_url=os.getenv("PLEX_URL"),
        plex_token=os.getenv("PLEX_TOKEN"),
        jellyfin_url=os.getenv("JELLYFIN_URL"),
        jellyfin_api_key=os.getenv("JELLYFIN_API_KEY"),
        jellyfin_user_id=os.getenv("JELLYFIN_USER_ID"),
        selected_libraries=_env_list("SELECTED_LIBRARIES"),
        destination_libraries=_env_list("DESTINATION_LIBRARIES"),
        sync_collections=_env_bool("SYNC_COLLECTIONS", True),
        sync_artwork=_env_bool("SYNC_ARTWORK", True),
        sync_item_artwork=_env_bool("SYNC_ITEM_ARTWORK", False),
        delete_before_sync=_env_bool("DELETE_BEFORE_SYNC", False),
        debug_images=_env_bool("DEBUG_IMAGES", False),
        debug_image_dir=os.getenv("DEBUG_IMAGE_DIR", "data/debug-images"),
        sync_watch_state=_env_bool("SYNC_WATCH_STATE", False),
        watch_state_direction=os.getenv("WATCH_STATE_DIRECTION", "source_to_destination").lower(),
        enable_scheduled_sync=_env_bool("ENABLE_SCHEDULED_SYNC", False),
        sync_interval_hours=int(os.getenv("SYNC_INTERVAL_HOURS", "24")),
        source_concurrency=int(os.getenv("SOURCE_CONCURRENCY", "4")),
        request_timeout=int(os.getenv("REQUEST_TIMEOUT", "30")),
        database_url=os.getenv("DATABASE_URL", "sqlite:///data/mediamirror.db"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )


# Config table columns that overlay SyncConfig fields of the same name
_DB_FIELDS = (
    "plex_url",
    "plex_token",
    "jellyfin_url",
    "jellyfin_api_key",
    "jellyfin_user_id",
    "selected_libraries",
    "destination_libraries",
    "sync_artwork",
    "sync_item_artwork",
    "delete_before_sync",
    "sync_watch_state",
    "watch_state_direction",
    "enable_scheduled_sync",
    "sync_interval_hours",
)


class ConfigManager:
    """
    Manages configuration with fallback from database to environment variables.
    """

    def __init__(self, db_session=None):
        self.db_session = db_session
        self._env_config = get_config_from_env()

    def load_from_db(self):
        """Load configuration row from database if available."""
        if not self.db_session:
            return None

        from mediamirror.db.models import Config
        return self.db_session.query(Config).first()

    def get_config(self) -> SyncConfig:
        """
        Get configuration, merging database values with environment variables.
        Database values take precedence over environment variables.
        """
        db_config = self.load_from_db()
        if not db_config:
            return self._env_config

        overrides: Dict[str, Any] = {}
        for name in _DB_FIELDS:
            value = getattr(db_config, name)
            if value is None or value == "":
                continue
            overrides[name] = value

        if not overrides:
            return self._env_config

        return SyncConfig(**{**self._env_config.model_dump(), **overrides})

    def save_config(self, config: SyncConfig) -> None:
        """Save configuration to database."""
        if not self.db_session:
            raise RuntimeError("Database session not available")

        from mediamirror.db.models import Config

        db_config = self.load_from_db()
        if not db_config:
            db_config = Config()
            self.db_session.add(db_config)

        for name in _DB_FIELDS:
            value = getattr(config, name)
            if isinstance(value, Enum):
                value = value.value
            setattr(db_config, name, value)

        self.db_session.commit()

    def save_selected_libraries(self, library_ids: List[str]) -> None:
        """Store the source library selection, leaving other settings alone."""
        if not self.db_session:
            raise RuntimeError("Database session not available")

        from mediamirror.db.models import Config

        db_config = self.load_from_db()
        if not db_config:
            db_config = Config()
            self.db_session.add(db_config)

        db_config.selected_libraries = list(library_ids)
        self.db_session.commit()

    def is_configured(self) -> bool:
        """Check if the minimum required configuration is present."""
        try:
            self.get_config().validate_for_run()
        except ConfigurationError:
            return False
        return True
