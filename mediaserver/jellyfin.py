"""Read-only Jellyfin API client.

Only GET endpoints are used; nothing here writes to the media server.
"""
from __future__ import annotations

import logging
import os
import posixpath
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple

import requests

from core.logging_utils import redact_secret

LOGGER = logging.getLogger("curatarr.jellyfin")

DEFAULT_BATCH_SIZE = 250
DEFAULT_TIMEOUT_S = 30.0
CACHE_TTL_S = 30.0

MOVIE_FIELDS = (
    "Path",
    "ProviderIds",
    "CriticRating",
    "CommunityRating",
    "Genres",
    "Overview",
    "OfficialRating",
    "MediaSources",
)
_SINGLE_MOVIE_FIELDS = "Path,ProviderIds,CriticRating,CommunityRating,Genres,Overview,MediaSources"

FetchProgress = Callable[[int, int], None]


class JellyfinError(RuntimeError):
    """Raised when Jellyfin is unreachable or answers with an error status."""


def _safe_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _safe_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


@dataclass(slots=True)
class MediaServerItem:
    id: str
    title: str
    year: Optional[int] = None
    imdb_id: Optional[str] = None
    tmdb_id: Optional[str] = None
    path: Optional[str] = None
    critic_rating: Optional[float] = None
    community_rating: Optional[float] = None
    genres: List[str] = field(default_factory=list)
    overview: Optional[str] = None

    @property
    def folder_path(self) -> Optional[str]:
        if not self.path:
            return None
        if "\\" in self.path and "/" not in self.path:
            return self.path.rsplit("\\", 1)[0]
        return posixpath.dirname(self.path)

    @property
    def label(self) -> str:
        return f"{self.title} ({self.year if self.year is not None else '?'})"

    @classmethod
    def from_jellyfin(cls, payload: Mapping[str, Any]) -> "MediaServerItem":
        providers = payload.get("ProviderIds") if isinstance(payload.get("ProviderIds"), dict) else {}
        path = payload.get("Path")
        if not path:
            sources = payload.get("MediaSources")
            if isinstance(sources, list) and sources and isinstance(sources[0], dict):
                path = sources[0].get("Path")
        genres = payload.get("Genres") if isinstance(payload.get("Genres"), list) else []
        return cls(
            id=str(payload.get("Id") or ""),
            title=str(payload.get("Name") or ""),
            year=_safe_int(payload.get("ProductionYear")),
            imdb_id=providers.get("Imdb") or None,
            tmdb_id=providers.get("Tmdb") or None,
            path=str(path) if path else None,
            critic_rating=_safe_float(payload.get("CriticRating")),
            community_rating=_safe_float(payload.get("CommunityRating")),
            genres=[str(genre) for genre in genres],
            overview=payload.get("Overview") or None,
        )


class JellyfinClient:
    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout: float = DEFAULT_TIMEOUT_S,
        batch_size: int = DEFAULT_BATCH_SIZE,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not base_url:
            raise JellyfinError("Jellyfin URL not set. Set JELLYFIN_URL or jellyfin.url in settings.")
        if not api_key:
            raise JellyfinError("Jellyfin API key not set. Set JELLYFIN_API_KEY or jellyfin.api_key in settings.")
        self.base_url = base_url.rstrip("/")
        self.timeout = float(timeout)
        self.batch_size = max(1, int(batch_size))
        self.session = session or requests.Session()
        self.session.headers.update({"X-Emby-Token": api_key, "Accept": "application/json"})
        self._api_key = api_key
        self._cache: Dict[str, Tuple[float, Any]] = {}
        self._cache_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Mapping[str, Any] | None) -> "JellyfinClient":
        block = dict((settings or {}).get("jellyfin") or {})
        url = block.get("url") or os.environ.get("JELLYFIN_URL") or os.environ.get("JELLYFIN_BASE_URL") or ""
        key = block.get("api_key") or os.environ.get("JELLYFIN_API_KEY") or ""
        return cls(
            url,
            key,
            timeout=float(block.get("timeout_s") or DEFAULT_TIMEOUT_S),
            batch_size=int(block.get("batch_size") or DEFAULT_BATCH_SIZE),
        )

    def __repr__(self) -> str:
        return f"JellyfinClient({self.base_url!r}, api_key={redact_secret(self._api_key)!r})"

    def clear_cache(self) -> None:
        with self._cache_lock:
            self._cache.clear()

    def _get(self, path: str, params: Optional[Mapping[str, Any]] = None, *, cacheable: bool = False) -> Any:
        key = path + "?" + "&".join(f"{k}={v}" for k, v in sorted((params or {}).items()))
        if cacheable:
            with self._cache_lock:
                entry = self._cache.get(key)
            if entry is not None and entry[0] > time.monotonic():
                return entry[1]
        url = f"{self.base_url}{path}"
        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
        except requests.RequestException as exc:
            raise JellyfinError(f"Request to {url} failed: {exc}") from exc
        if response.status_code >= 400:
            raise JellyfinError(f"HTTP {response.status_code} {response.reason} for {url}")
        try:
            data = response.json()
        except ValueError as exc:
            raise JellyfinError(f"Invalid JSON from {url}") from exc
        if cacheable:
            with self._cache_lock:
                self._cache[key] = (time.monotonic() + CACHE_TTL_S, data)
        return data

    def get_libraries(self) -> List[Dict[str, Any]]:
        data = self._get("/Library/VirtualFolders", cacheable=True)
        return [item for item in data or [] if isinstance(item, dict)]

    def get_movie_libraries(self) -> List[Dict[str, Any]]:
        return [lib for lib in self.get_libraries() if lib.get("CollectionType") == "movies"]

    def _iter_pages(
        self,
        errors: List[str],
        on_progress: Optional[FetchProgress] = None,
    ) -> Iterator[MediaServerItem]:
        fetched = 0
        for library in self.get_movie_libraries():
            start = 0
            while True:
                params = {
                    "ParentId": library.get("ItemId"),
                    "IncludeItemTypes": "Movie",
                    "Recursive": "true",
                    "StartIndex": start,
                    "Limit": self.batch_size,
                    "Fields": ",".join(MOVIE_FIELDS),
                }
                try:
                    data = self._get("/Items", params)
                except JellyfinError as exc:
                    message = f"Library {library.get('Name')} batch {start}: {exc}"
                    LOGGER.warning(message)
                    errors.append(message)
                    break
                items = data.get("Items") if isinstance(data, dict) else None
                total = _safe_int(data.get("TotalRecordCount") if isinstance(data, dict) else None) or 0
                for payload in items or []:
                    if isinstance(payload, dict):
                        fetched += 1
                        yield MediaServerItem.from_jellyfin(payload)
                start += self.batch_size
                if on_progress is not None:
                    on_progress(fetched, total)
                if start >= total:
                    break

    def iter_movies(self, on_progress: Optional[FetchProgress] = None) -> Iterator[MediaServerItem]:
        """Page through every movies library; failed pages are logged and skipped."""

        yield from self._iter_pages([], on_progress)

    def get_all_movies(
        self, on_progress: Optional[FetchProgress] = None
    ) -> Tuple[List[MediaServerItem], List[str]]:
        errors: List[str] = []
        items = list(self._iter_pages(errors, on_progress))
        LOGGER.info("Fetched %d movies from Jellyfin (%d page errors)", len(items), len(errors))
        return items, errors

    def get_movie(self, jellyfin_id: str) -> MediaServerItem:
        data = self._get(f"/Items/{jellyfin_id}", {"Fields": _SINGLE_MOVIE_FIELDS}, cacheable=True)
        if not isinstance(data, dict):
            raise JellyfinError(f"Unexpected payload for item {jellyfin_id}")
        return MediaServerItem.from_jellyfin(data)


__all__ = [
    "JellyfinClient",
    "JellyfinError",
    "MOVIE_FIELDS",
    "MediaServerItem",
]
