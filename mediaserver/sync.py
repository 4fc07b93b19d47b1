"""Reconcile media-server items with catalog movies and enrich matches.

Matching runs through the disambiguation engine (path, IMDb id, title and
year, title only, fuzzy title). Ambiguous matches are still applied but are
reported for review, and every attempt lands in the disambiguation log.
"""
from __future__ import annotations

import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from catalog.store import CatalogStore, Enrichment, MovieRow
from disambiguation.engine import DisambiguationEngine
from disambiguation.types import DisambiguateRequest
from robust import CancellationToken, is_cancelled

from .jellyfin import JellyfinClient, JellyfinError, MediaServerItem

LOGGER = logging.getLogger("curatarr.sync")

SyncProgress = Callable[[int, int, int, int], None]
AmbiguousCallback = Callable[["AmbiguousMatch"], None]


@dataclass(slots=True)
class SyncOptions:
    resync: bool = False


@dataclass(slots=True)
class AmbiguousMatch:
    item_title: str
    item_year: Optional[int]
    folder_name: str
    parsed_year: Optional[int]
    reason: str
    method: str


@dataclass(slots=True)
class SyncResult:
    total: int = 0
    matched: int = 0
    unmatched: int = 0
    ambiguous: int = 0
    errors: List[str] = field(default_factory=list)
    unmatched_titles: List[str] = field(default_factory=list)
    ambiguous_matches: List[AmbiguousMatch] = field(default_factory=list)
    cancelled: bool = False


def _year(value: Optional[int]) -> str:
    return str(value) if value is not None else "?"


def enrichment_from_item(item: MediaServerItem) -> Enrichment:
    return Enrichment(
        jellyfin_id=item.id,
        jellyfin_title=item.title,
        jellyfin_year=item.year,
        imdb_id=item.imdb_id,
        tmdb_id=item.tmdb_id,
        critic_rating=item.critic_rating,
        community_rating=item.community_rating,
        genres=list(item.genres),
        overview=item.overview,
        jellyfin_path=item.path,
    )


def sync_catalog(
    items: Iterable[MediaServerItem],
    store: CatalogStore,
    options: Optional[SyncOptions] = None,
    *,
    job_id: Optional[str] = None,
    on_progress: Optional[SyncProgress] = None,
    on_ambiguous: Optional[AmbiguousCallback] = None,
    cancellation: Optional[CancellationToken] = None,
) -> SyncResult:
    options = options or SyncOptions()
    job_id = job_id or f"sync-{uuid.uuid4().hex[:12]}"
    items = list(items)
    movies = store.get_all_movies()
    by_folder: Dict[str, MovieRow] = {movie.folder_path: movie for movie in movies}
    by_id: Dict[int, MovieRow] = {movie.id: movie for movie in movies}
    engine = DisambiguationEngine(movies)
    result = SyncResult(total=len(items))
    LOGGER.info("Syncing %d media-server items against %d catalog movies", len(items), len(movies))

    synced = 0
    for item in items:
        if is_cancelled(cancellation):
            result.cancelled = True
            break
        folder_path = item.folder_path
        if not options.resync and folder_path:
            existing = by_folder.get(folder_path)
            if existing is not None and existing.jf_synced_at:
                result.matched += 1
                synced += 1
                continue

        decision = engine.disambiguate(
            DisambiguateRequest(
                id=item.id,
                title=item.title,
                year=item.year,
                imdb_id=item.imdb_id,
                folder_path=folder_path,
            )
        )
        try:
            store.log_disambiguation(decision, job_id, item.title, item.year, item.imdb_id)
        except Exception:
            LOGGER.exception("Could not record disambiguation for %s", item.label)

        movie = by_id.get(decision.match.movie_id) if decision.match is not None else None
        if movie is None:
            result.unmatched += 1
            result.unmatched_titles.append(item.label)
            continue

        if decision.ambiguous and decision.ambiguous_reason:
            ambiguous = AmbiguousMatch(
                item_title=item.title,
                item_year=item.year,
                folder_name=movie.folder_name,
                parsed_year=movie.parsed_year,
                reason=decision.ambiguous_reason,
                method=decision.method,
            )
            result.ambiguous += 1
            result.ambiguous_matches.append(ambiguous)
            result.errors.append(
                f'Ambiguous ({ambiguous.reason}): JF "{item.title}" ({_year(item.year)}) '
                f'→ DB "{movie.folder_name}" ({_year(movie.parsed_year)})'
            )
            if on_ambiguous is not None:
                try:
                    on_ambiguous(ambiguous)
                except Exception:
                    LOGGER.exception("Ambiguous-match callback failed")

        try:
            enriched = store.enrich_movie(movie.folder_path, enrichment_from_item(item))
        except sqlite3.Error as exc:
            LOGGER.warning("Enrichment write failed for %s: %s", movie.folder_path, exc)
            enriched = False
        if enriched:
            result.matched += 1
        else:
            result.errors.append(f"DB update failed for: {movie.folder_path}")

        synced += 1
        if on_progress is not None:
            try:
                on_progress(synced, result.total, result.matched, result.unmatched)
            except Exception:
                LOGGER.exception("Sync progress callback failed")

    LOGGER.info(
        "Sync done: %d matched, %d unmatched, %d ambiguous",
        result.matched,
        result.unmatched,
        result.ambiguous,
    )
    return result


def sync_from_jellyfin(
    client: JellyfinClient,
    store: CatalogStore,
    options: Optional[SyncOptions] = None,
    **kwargs: Any,
) -> SyncResult:
    """Fetch every movie from *client* and reconcile it with the catalog."""

    try:
        items, fetch_errors = client.get_all_movies()
    except JellyfinError as exc:
        LOGGER.error("Failed to fetch Jellyfin movies: %s", exc)
        return SyncResult(errors=[f"Failed to fetch Jellyfin movies: {exc}"])
    result = sync_catalog(items, store, options, **kwargs)
    result.errors[:0] = fetch_errors
    return result


def refresh_movie(store: CatalogStore, client: JellyfinClient, movie_id: int) -> bool:
    """Re-pull enrichment for one movie from its known Jellyfin id."""

    movie = store.get_movie(movie_id)
    if movie is None or not movie.jellyfin_id:
        return False
    item = client.get_movie(movie.jellyfin_id)
    return store.enrich_movie_by_id(movie_id, enrichment_from_item(item))


__all__ = [
    "AmbiguousMatch",
    "SyncOptions",
    "SyncResult",
    "enrichment_from_item",
    "refresh_movie",
    "sync_catalog",
    "sync_from_jellyfin",
]
