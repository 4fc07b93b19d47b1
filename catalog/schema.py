"""SQLite schema and in-place migrations for the movie catalog."""
from __future__ import annotations

import logging
import sqlite3
from typing import Dict, Set

LOGGER = logging.getLogger("curatarr.catalog")

SCHEMA_VERSION = 9

_TABLES = (
    """
    CREATE TABLE IF NOT EXISTS schema_version (
        version INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS catalog_meta (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_utc TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS movies (
        id INTEGER PRIMARY KEY,
        folder_path TEXT UNIQUE NOT NULL,
        folder_name TEXT NOT NULL,
        parsed_title TEXT,
        parsed_year INTEGER,
        jellyfin_id TEXT,
        jellyfin_title TEXT,
        jellyfin_year INTEGER,
        imdb_id TEXT,
        tmdb_id TEXT,
        critic_rating REAL,
        community_rating REAL,
        genres TEXT,
        overview TEXT,
        jellyfin_path TEXT,
        jf_synced_at TEXT,
        tags TEXT NOT NULL DEFAULT '[]',
        notes TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS files (
        id INTEGER PRIMARY KEY,
        movie_id INTEGER NOT NULL REFERENCES movies(id) ON DELETE CASCADE,
        file_path TEXT UNIQUE NOT NULL,
        filename TEXT NOT NULL,
        resolution TEXT,
        resolution_cat TEXT,
        width INTEGER,
        height INTEGER,
        video_codec TEXT,
        video_bitrate INTEGER,
        bit_depth INTEGER,
        frame_rate REAL,
        color_transfer TEXT,
        color_primaries TEXT,
        hdr_formats TEXT NOT NULL DEFAULT '[]',
        dv_profile INTEGER,
        audio_codec TEXT,
        audio_profile TEXT,
        audio_channels INTEGER,
        audio_layout TEXT,
        audio_bitrate INTEGER,
        audio_tracks TEXT NOT NULL DEFAULT '[]',
        subtitle_langs TEXT NOT NULL DEFAULT '[]',
        file_size INTEGER,
        duration REAL,
        container TEXT,
        mb_per_minute REAL,
        release_group TEXT,
        ffprobe_raw TEXT,
        scanned_at TEXT,
        scan_error TEXT,
        verify_status TEXT,
        verify_errors TEXT,
        verified_at TEXT,
        quality_flags TEXT NOT NULL DEFAULT '[]',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS scan_runs (
        id INTEGER PRIMARY KEY,
        started_at TEXT NOT NULL,
        finished_at TEXT,
        root_path TEXT NOT NULL,
        total_folders INTEGER,
        total_files INTEGER,
        scanned_ok INTEGER,
        scan_errors INTEGER,
        duration_sec REAL,
        notes TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS disambiguation_log (
        id INTEGER PRIMARY KEY,
        job_id TEXT NOT NULL,
        request_id TEXT NOT NULL,
        input_title TEXT NOT NULL,
        input_year INTEGER,
        input_imdb_id TEXT,
        method TEXT,
        confidence REAL,
        matched_movie_id INTEGER REFERENCES movies(id) ON DELETE SET NULL,
        ambiguous INTEGER NOT NULL DEFAULT 0,
        reason TEXT,
        reviewed INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    )
    """,
)

_INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_movies_jellyfin_id ON movies(jellyfin_id)",
    "CREATE INDEX IF NOT EXISTS idx_movies_imdb_id ON movies(imdb_id)",
    "CREATE INDEX IF NOT EXISTS idx_movies_parsed_year ON movies(parsed_year)",
    "CREATE INDEX IF NOT EXISTS idx_files_movie_id ON files(movie_id)",
    "CREATE INDEX IF NOT EXISTS idx_files_resolution_cat ON files(resolution_cat)",
    "CREATE INDEX IF NOT EXISTS idx_files_video_codec ON files(video_codec)",
    "CREATE INDEX IF NOT EXISTS idx_files_release_group ON files(release_group)",
    "CREATE INDEX IF NOT EXISTS idx_files_scanned_at ON files(scanned_at)",
    "CREATE INDEX IF NOT EXISTS idx_dis_log_job ON disambiguation_log(job_id)",
    "CREATE INDEX IF NOT EXISTS idx_dis_log_pending ON disambiguation_log(reviewed) WHERE reviewed = 0",
)

# Columns introduced after the first catalogs shipped; added in place.
_LATE_COLUMNS: Dict[str, Dict[str, str]] = {
    "movies": {
        "tags": "TEXT NOT NULL DEFAULT '[]'",
        "notes": "TEXT",
    },
    "files": {
        "verify_status": "TEXT",
        "verify_errors": "TEXT",
        "verified_at": "TEXT",
        "quality_flags": "TEXT NOT NULL DEFAULT '[]'",
    },
    "disambiguation_log": {
        "input_imdb_id": "TEXT",
    },
}

_RESOLUTION_RECLASSIFY = """
    UPDATE files SET resolution_cat = CASE
        WHEN (height >= 2160 OR width >= 3800) THEN '2160p'
        WHEN (height >= 1080 OR width >= 1880) THEN '1080p'
        WHEN (height >= 720 OR width >= 1240) THEN '720p'
        WHEN height > 0 THEN '480p'
        ELSE 'other'
    END
    WHERE width IS NOT NULL AND height IS NOT NULL
"""


def _columns(conn: sqlite3.Connection, table: str) -> Set[str]:
    return {str(row[1]) for row in conn.execute(f"PRAGMA table_info({table})")}


def _add_late_columns(conn: sqlite3.Connection) -> None:
    for table, columns in _LATE_COLUMNS.items():
        existing = _columns(conn, table)
        for name, ddl in columns.items():
            if name in existing:
                continue
            LOGGER.info("Adding column %s.%s", table, name)
            conn.execute(f"ALTER TABLE {table} ADD COLUMN {name} {ddl}")


def _run_once(conn: sqlite3.Connection, marker: str, sql: str, now: str) -> None:
    row = conn.execute("SELECT value FROM catalog_meta WHERE key = ?", (marker,)).fetchone()
    if row is not None:
        return
    cursor = conn.execute(sql)
    LOGGER.info("Applied one-shot migration %s (%d rows)", marker, max(cursor.rowcount, 0))
    conn.execute(
        "INSERT OR REPLACE INTO catalog_meta (key, value, updated_utc) VALUES (?, '1', ?)",
        (marker, now),
    )


def ensure_tables(conn: sqlite3.Connection, *, now: str) -> None:
    for statement in _TABLES:
        conn.execute(statement)
    _add_late_columns(conn)
    for statement in _INDEXES:
        conn.execute(statement)
    # Widescreen scope encodes (e.g. 1916x796) were stored as 720p by the
    # height-only classifier.
    _run_once(conn, "resolution_cat_v7", _RESOLUTION_RECLASSIFY, now)

    row = conn.execute("SELECT version FROM schema_version").fetchone()
    if row is None:
        conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
    elif int(row[0]) < SCHEMA_VERSION:
        conn.execute("UPDATE schema_version SET version = ?", (SCHEMA_VERSION,))


__all__ = ["SCHEMA_VERSION", "ensure_tables"]
