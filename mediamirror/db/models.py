"""
SQLAlchemy database models for mediamirror.
"""

from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, Boolean
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class Config(Base):
    """Application configuration stored in database."""
    __tablename__ = 'config'

    id = Column(Integer, primary_key=True)
    plex_url = Column(String(500), nullable=True)
    plex_token = Column(String(500), nullable=True)
    jellyfin_url = Column(String(500), nullable=True)
    jellyfin_api_key = Column(String(500), nullable=True)
    jellyfin_user_id = Column(String(100), nullable=True)
    selected_libraries = Column(JSON, nullable=True)  # list of source library ids
    destination_libraries = Column(JSON, nullable=True)

    # Null means "use the environment value"
    sync_artwork = Column(Boolean, nullable=True)
    sync_item_artwork = Column(Boolean, nullable=True)
    delete_before_sync = Column(Boolean, nullable=True)
    sync_watch_state = Column(Boolean, nullable=True)
    watch_state_direction = Column(String(50), nullable=True)
    enable_scheduled_sync = Column(Boolean, nullable=True)
    sync_interval_hours = Column(Integer, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class SyncRun(Base):
    """Represents a single sync run (execution)."""
    __tablename__ = 'sync_run'

    id = Column(Integer, primary_key=True)
    run_id = Column(String(50), unique=True, index=True, nullable=False)
    dry_run = Column(Boolean, default=False)
    started_at = Column(DateTime, default=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)
    status = Column(String(20), default='running')  # running, completed, cancelled, failed
    libraries_processed = Column(Integer, default=0)
    collections_found = Column(Integer, default=0)
    collections_created = Column(Integer, default=0)
    collections_updated = Column(Integer, default=0)
    collections_failed = Column(Integer, default=0)
    items_processed = Column(Integer, default=0)
    items_matched = Column(Integer, default=0)
    items_ambiguous = Column(Integer, default=0)
    items_unmatched = Column(Integer, default=0)
    artwork_updated = Column(Integer, default=0)
    artwork_failed = Column(Integer, default=0)
    watch_states_changed = Column(Integer, default=0)
    error_message = Column(Text, nullable=True)


class MatchRecord(Base):
    """Items of a run that did not resolve cleanly."""
    __tablename__ = 'match_record'

    id = Column(Integer, primary_key=True)
    run_id = Column(String(50), index=True, nullable=False)
    source_id = Column(String(100), nullable=False)
    title = Column(String(500), nullable=True)
    collection = Column(String(500), nullable=True)
    outcome = Column(String(50), nullable=False)  # ambiguous, unmatched
    destination_id = Column(String(100), nullable=True)
    namespace = Column(String(20), nullable=True)
    candidates = Column(Integer, default=0)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)


class SyncLog(Base):
    """Detailed logs for sync operations."""
    __tablename__ = 'sync_log'

    id = Column(Integer, primary_key=True)
    level = Column(String(20), nullable=False)  # DEBUG, INFO, WARNING, ERROR
    message = Column(Text, nullable=False)
    details = Column(JSON, nullable=True)
    sync_run_id = Column(String(50), index=True, nullable=True)  # Group logs by sync run
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
