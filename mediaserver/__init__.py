"""Read-only media-server integration (Jellyfin) and catalog reconciliation."""

from .jellyfin import JellyfinClient, JellyfinError, MediaServerItem
from .sync import SyncOptions, SyncResult, refresh_movie, sync_catalog, sync_from_jellyfin

__all__ = [
    "JellyfinClient",
    "JellyfinError",
    "MediaServerItem",
    "SyncOptions",
    "SyncResult",
    "refresh_movie",
    "sync_catalog",
    "sync_from_jellyfin",
]
