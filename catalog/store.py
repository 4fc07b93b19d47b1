"""SQLite-backed movie catalog shared by scan, verify and sync."""
from __future__ import annotations

import json
import logging
import sqlite3
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Sequence

from core.db import connect, pragma_optimize, transaction

from .schema import ensure_tables

if TYPE_CHECKING:  # pragma: no cover - typing only
    from disambiguation.types import DisambiguateResult

LOGGER = logging.getLogger("curatarr.catalog")

VERIFY_STATUSES = ("pending", "pass", "fail", "error")

FileRow = Dict[str, Any]


class CatalogError(RuntimeError):
    """Raised when the catalog database cannot be opened or migrated."""


@dataclass(slots=True)
class MovieRecord:
    folder_path: str
    folder_name: str
    parsed_title: Optional[str] = None
    parsed_year: Optional[int] = None


@dataclass(slots=True)
class MovieRow:
    id: int
    folder_path: str
    folder_name: str
    parsed_title: Optional[str] = None
    parsed_year: Optional[int] = None
    jellyfin_id: Optional[str] = None
    jellyfin_title: Optional[str] = None
    jellyfin_year: Optional[int] = None
    imdb_id: Optional[str] = None
    tmdb_id: Optional[str] = None
    critic_rating: Optional[float] = None
    community_rating: Optional[float] = None
    genres: List[str] = field(default_factory=list)
    overview: Optional[str] = None
    jellyfin_path: Optional[str] = None
    jf_synced_at: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    notes: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "MovieRow":
        data = dict(row)
        return cls(
            id=int(data["id"]),
            folder_path=data["folder_path"],
            folder_name=data["folder_name"],
            parsed_title=data.get("parsed_title"),
            parsed_year=data.get("parsed_year"),
            jellyfin_id=data.get("jellyfin_id"),
            jellyfin_title=data.get("jellyfin_title"),
            jellyfin_year=data.get("jellyfin_year"),
            imdb_id=data.get("imdb_id"),
            tmdb_id=data.get("tmdb_id"),
            critic_rating=data.get("critic_rating"),
            community_rating=data.get("community_rating"),
            genres=decode_json_list(data.get("genres")),
            overview=data.get("overview"),
            jellyfin_path=data.get("jellyfin_path"),
            jf_synced_at=data.get("jf_synced_at"),
            tags=decode_json_list(data.get("tags")),
            notes=data.get("notes"),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )


@dataclass(slots=True)
class Enrichment:
    jellyfin_id: str
    jellyfin_title: Optional[str] = None
    jellyfin_year: Optional[int] = None
    imdb_id: Optional[str] = None
    tmdb_id: Optional[str] = None
    critic_rating: Optional[float] = None
    community_rating: Optional[float] = None
    genres: Optional[List[str]] = None
    overview: Optional[str] = None
    jellyfin_path: Optional[str] = None


@dataclass(slots=True)
class FileRecord:
    movie_id: int
    file_path: str
    filename: str
    resolution: Optional[str] = None
    resolution_cat: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    video_codec: Optional[str] = None
    video_bitrate: Optional[int] = None
    bit_depth: Optional[int] = None
    frame_rate: Optional[float] = None
    color_transfer: Optional[str] = None
    color_primaries: Optional[str] = None
    hdr_formats: List[str] = field(default_factory=list)
    dv_profile: Optional[int] = None
    audio_codec: Optional[str] = None
    audio_profile: Optional[str] = None
    audio_channels: Optional[int] = None
    audio_layout: Optional[str] = None
    audio_bitrate: Optional[int] = None
    audio_tracks: List[Dict[str, Any]] = field(default_factory=list)
    subtitle_langs: List[str] = field(default_factory=list)
    file_size: Optional[int] = None
    duration: Optional[float] = None
    container: Optional[str] = None
    mb_per_minute: Optional[float] = None
    release_group: Optional[str] = None
    ffprobe_raw: Optional[str] = None
    scan_error: Optional[str] = None


@dataclass(slots=True)
class ScanTotals:
    total_folders: int
    total_files: int
    scanned_ok: int
    scan_errors: int
    duration_sec: float
    notes: Optional[str] = None


def decode_json_list(value: Any) -> List[Any]:
    """Decode a JSON-array text column; anything malformed reads as empty."""

    if value is None or value == "":
        return []
    if isinstance(value, list):
        return list(value)
    try:
        decoded = json.loads(value)
    except (TypeError, ValueError):
        return []
    return decoded if isinstance(decoded, list) else []


def _encode(values: Optional[Iterable[Any]]) -> str:
    return json.dumps(list(values or []), ensure_ascii=False)


_FILE_COLUMNS = (
    "movie_id",
    "filename",
    "resolution",
    "resolution_cat",
    "width",
    "height",
    "video_codec",
    "video_bitrate",
    "bit_depth",
    "frame_rate",
    "color_transfer",
    "color_primaries",
    "hdr_formats",
    "dv_profile",
    "audio_codec",
    "audio_profile",
    "audio_channels",
    "audio_layout",
    "audio_bitrate",
    "audio_tracks",
    "subtitle_langs",
    "file_size",
    "duration",
    "container",
    "mb_per_minute",
    "release_group",
    "ffprobe_raw",
    "scanned_at",
    "scan_error",
)


class CatalogStore:
    """Typed access to the catalog tables.

    A single connection is shared by every worker thread; statements run
    under ``_lock`` so each upsert and its follow-up read are atomic.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        try:
            with self._lock:
                ensure_tables(self.conn, now=self.utc_now())
        except sqlite3.Error as exc:
            raise CatalogError(f"Cannot initialise catalog schema: {exc}") from exc

    @classmethod
    def open(cls, db_path: str | Path) -> "CatalogStore":
        try:
            conn = connect(db_path, check_same_thread=False)
        except sqlite3.Error as exc:
            raise CatalogError(f"Cannot open catalog {db_path}: {exc}") from exc
        return cls(conn)

    @staticmethod
    def utc_now() -> str:
        return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")

    def close(self) -> None:
        with self._lock:
            try:
                pragma_optimize(self.conn)
            except sqlite3.Error:
                pass
            self.conn.close()

    def _fetchall(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, params).fetchall()

    def _fetchone(self, sql: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, params).fetchone()

    def _count(self, sql: str, params: Sequence[Any] = ()) -> int:
        row = self._fetchone(sql, params)
        return int(row[0]) if row is not None and row[0] is not None else 0

    # ------------------------------------------------------------------
    # Movies

    def upsert_movie(self, record: MovieRecord) -> int:
        now = self.utc_now()
        with self._lock, transaction(self.conn):
            self.conn.execute(
                """
                INSERT INTO movies (folder_path, folder_name, parsed_title, parsed_year, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(folder_path) DO UPDATE SET
                    folder_name=excluded.folder_name,
                    parsed_title=excluded.parsed_title,
                    parsed_year=excluded.parsed_year,
                    updated_at=excluded.updated_at
                """,
                (
                    record.folder_path,
                    record.folder_name,
                    record.parsed_title,
                    record.parsed_year,
                    now,
                    now,
                ),
            )
            row = self.conn.execute(
                "SELECT id FROM movies WHERE folder_path = ?", (record.folder_path,)
            ).fetchone()
        return int(row[0])

    def get_all_movies(self) -> List[MovieRow]:
        rows = self._fetchall("SELECT * FROM movies ORDER BY parsed_year DESC, folder_name ASC")
        return [MovieRow.from_row(row) for row in rows]

    def get_movie(self, movie_id: int) -> Optional[MovieRow]:
        row = self._fetchone("SELECT * FROM movies WHERE id = ?", (movie_id,))
        return MovieRow.from_row(row) if row is not None else None

    def get_movie_by_path(self, folder_path: str) -> Optional[MovieRow]:
        row = self._fetchone(
            "SELECT * FROM movies WHERE folder_path = ? OR jellyfin_path = ?",
            (folder_path, folder_path),
        )
        return MovieRow.from_row(row) if row is not None else None

    def get_movie_by_jellyfin_id(self, jellyfin_id: str) -> Optional[MovieRow]:
        row = self._fetchone("SELECT * FROM movies WHERE jellyfin_id = ?", (jellyfin_id,))
        return MovieRow.from_row(row) if row is not None else None

    def _enrich(self, where: str, key: Any, enrich: Enrichment) -> bool:
        now = self.utc_now()
        with self._lock, transaction(self.conn):
            cursor = self.conn.execute(
                f"""
                UPDATE movies SET
                    jellyfin_id=?,
                    jellyfin_title=?,
                    jellyfin_year=?,
                    imdb_id=?,
                    tmdb_id=?,
                    critic_rating=?,
                    community_rating=?,
                    genres=?,
                    overview=?,
                    jellyfin_path=?,
                    jf_synced_at=?,
                    updated_at=?
                WHERE {where} = ?
                """,
                (
                    enrich.jellyfin_id,
                    enrich.jellyfin_title,
                    enrich.jellyfin_year,
                    enrich.imdb_id,
                    enrich.tmdb_id,
                    enrich.critic_rating,
                    enrich.community_rating,
                    _encode(enrich.genres) if enrich.genres is not None else None,
                    enrich.overview,
                    enrich.jellyfin_path,
                    now,
                    now,
                    key,
                ),
            )
        return cursor.rowcount > 0

    def enrich_movie(self, folder_path: str, enrich: Enrichment) -> bool:
        return self._enrich("folder_path", folder_path, enrich)

    def enrich_movie_by_id(self, movie_id: int, enrich: Enrichment) -> bool:
        return self._enrich("id", movie_id, enrich)

    def update_movie_meta(
        self,
        movie_id: int,
        *,
        tags: Optional[Sequence[str]] = None,
        notes: Optional[str] = None,
    ) -> bool:
        sets: List[str] = []
        values: List[Any] = []
        if tags is not None:
            sets.append("tags = ?")
            values.append(_encode(tags))
        if notes is not None:
            sets.append("notes = ?")
            values.append(notes)
        if not sets:
            return False
        sets.append("updated_at = ?")
        values.append(self.utc_now())
        with self._lock, transaction(self.conn):
            cursor = self.conn.execute(
                f"UPDATE movies SET {', '.join(sets)} WHERE id = ?", (*values, movie_id)
            )
        return cursor.rowcount > 0

    def delete_movie(self, movie_id: int) -> bool:
        with self._lock, transaction(self.conn):
            cursor = self.conn.execute("DELETE FROM movies WHERE id = ?", (movie_id,))
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Files

    def upsert_file(self, record: FileRecord) -> int:
        now = self.utc_now()
        values = {
            "movie_id": record.movie_id,
            "filename": record.filename,
            "resolution": record.resolution,
            "resolution_cat": record.resolution_cat,
            "width": record.width,
            "height": record.height,
            "video_codec": record.video_codec,
            "video_bitrate": record.video_bitrate,
            "bit_depth": record.bit_depth,
            "frame_rate": record.frame_rate,
            "color_transfer": record.color_transfer,
            "color_primaries": record.color_primaries,
            "hdr_formats": _encode(record.hdr_formats),
            "dv_profile": record.dv_profile,
            "audio_codec": record.audio_codec,
            "audio_profile": record.audio_profile,
            "audio_channels": record.audio_channels,
            "audio_layout": record.audio_layout,
            "audio_bitrate": record.audio_bitrate,
            "audio_tracks": _encode(record.audio_tracks),
            "subtitle_langs": _encode(record.subtitle_langs),
            "file_size": record.file_size,
            "duration": record.duration,
            "container": record.container,
            "mb_per_minute": record.mb_per_minute,
            "release_group": record.release_group,
            "ffprobe_raw": record.ffprobe_raw,
            # scanned_at and scan_error are mutually exclusive.
            "scanned_at": None if record.scan_error else now,
            "scan_error": record.scan_error or None,
        }
        columns = ", ".join(("file_path",) + _FILE_COLUMNS + ("created_at", "updated_at"))
        placeholders = ", ".join("?" for _ in range(len(_FILE_COLUMNS) + 3))
        updates = ",\n".join(f"{name}=excluded.{name}" for name in _FILE_COLUMNS + ("updated_at",))
        params = [record.file_path] + [values[name] for name in _FILE_COLUMNS] + [now, now]
        with self._lock, transaction(self.conn):
            self.conn.execute(
                f"""
                INSERT INTO files ({columns}) VALUES ({placeholders})
                ON CONFLICT(file_path) DO UPDATE SET
                {updates}
                """,
                params,
            )
            row = self.conn.execute(
                "SELECT id FROM files WHERE file_path = ?", (record.file_path,)
            ).fetchone()
        return int(row[0])

    def get_file(self, file_id: int) -> Optional[FileRow]:
        row = self._fetchone("SELECT * FROM files WHERE id = ?", (file_id,))
        return dict(row) if row is not None else None

    def get_file_by_path(self, file_path: str) -> Optional[FileRow]:
        row = self._fetchone("SELECT * FROM files WHERE file_path = ?", (file_path,))
        return dict(row) if row is not None else None

    def get_files_for_movie(self, movie_id: int) -> List[FileRow]:
        rows = self._fetchall(
            "SELECT * FROM files WHERE movie_id = ? ORDER BY file_size DESC", (movie_id,)
        )
        return [dict(row) for row in rows]

    def get_all_files(self) -> List[FileRow]:
        return [dict(row) for row in self._fetchall("SELECT * FROM files ORDER BY id")]

    def get_files_by_ids(self, file_ids: Sequence[int]) -> List[FileRow]:
        ids = [int(value) for value in file_ids]
        if not ids:
            return []
        marks = ",".join("?" for _ in ids)
        rows = self._fetchall(f"SELECT * FROM files WHERE id IN ({marks}) ORDER BY id", ids)
        return [dict(row) for row in rows]

    def get_unverified_files(self, limit: int = 500) -> List[FileRow]:
        rows = self._fetchall(
            """
            SELECT * FROM files
            WHERE scanned_at IS NOT NULL AND scan_error IS NULL
              AND (verify_status IS NULL OR verify_status = 'pending')
            ORDER BY id
            LIMIT ?
            """,
            (int(limit),),
        )
        return [dict(row) for row in rows]

    def get_verifiable_files(self) -> List[FileRow]:
        rows = self._fetchall(
            "SELECT * FROM files WHERE scanned_at IS NOT NULL AND scan_error IS NULL ORDER BY id"
        )
        return [dict(row) for row in rows]

    def set_verify_result(
        self,
        file_id: int,
        *,
        status: str,
        errors: Sequence[str],
        quality_flags: Sequence[Dict[str, Any]] = (),
    ) -> bool:
        if status not in VERIFY_STATUSES:
            raise ValueError(f"Unknown verify status: {status}")
        now = self.utc_now()
        with self._lock, transaction(self.conn):
            cursor = self.conn.execute(
                """
                UPDATE files SET
                    verify_status=?,
                    verify_errors=?,
                    quality_flags=?,
                    verified_at=?,
                    updated_at=?
                WHERE id = ?
                """,
                (status, _encode(errors), _encode(quality_flags), now, now, file_id),
            )
        return cursor.rowcount > 0

    def get_failed_verify_files(self, limit: int = 200, offset: int = 0) -> List[FileRow]:
        rows = self._fetchall(
            "SELECT * FROM files WHERE verify_status = 'fail' ORDER BY verified_at DESC LIMIT ? OFFSET ?",
            (int(limit), int(offset)),
        )
        return [dict(row) for row in rows]

    # ------------------------------------------------------------------
    # Scan runs

    def start_scan_run(self, root_path: str) -> int:
        with self._lock, transaction(self.conn):
            cursor = self.conn.execute(
                "INSERT INTO scan_runs (started_at, root_path) VALUES (?, ?)",
                (self.utc_now(), root_path),
            )
        return int(cursor.lastrowid)

    def finish_scan_run(self, run_id: int, totals: ScanTotals) -> None:
        with self._lock, transaction(self.conn):
            self.conn.execute(
                """
                UPDATE scan_runs SET
                    finished_at=?,
                    total_folders=?,
                    total_files=?,
                    scanned_ok=?,
                    scan_errors=?,
                    duration_sec=?,
                    notes=?
                WHERE id = ?
                """,
                (
                    self.utc_now(),
                    totals.total_folders,
                    totals.total_files,
                    totals.scanned_ok,
                    totals.scan_errors,
                    totals.duration_sec,
                    totals.notes,
                    run_id,
                ),
            )

    def get_scan_runs(self, limit: int = 20) -> List[Dict[str, Any]]:
        rows = self._fetchall("SELECT * FROM scan_runs ORDER BY id DESC LIMIT ?", (int(limit),))
        return [dict(row) for row in rows]

    def get_last_scan_run(self) -> Optional[Dict[str, Any]]:
        runs = self.get_scan_runs(limit=1)
        return runs[0] if runs else None

    # ------------------------------------------------------------------
    # Disambiguation audit log

    def log_disambiguation(
        self,
        result: "DisambiguateResult",
        job_id: str,
        input_title: str,
        input_year: Optional[int] = None,
        input_imdb_id: Optional[str] = None,
    ) -> int:
        matched_id = result.match.movie_id if result.match is not None else None
        with self._lock, transaction(self.conn):
            cursor = self.conn.execute(
                """
                INSERT INTO disambiguation_log (
                    job_id, request_id, input_title, input_year, input_imdb_id, method,
                    confidence, matched_movie_id, ambiguous, reason, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job_id,
                    result.request_id,
                    input_title,
                    input_year,
                    input_imdb_id,
                    result.method,
                    result.confidence,
                    matched_id,
                    1 if result.ambiguous else 0,
                    result.ambiguous_reason,
                    self.utc_now(),
                ),
            )
        return int(cursor.lastrowid)

    def get_pending_disambiguations(self, limit: int = 100) -> List[Dict[str, Any]]:
        rows = self._fetchall(
            "SELECT * FROM disambiguation_log WHERE reviewed = 0 ORDER BY id DESC LIMIT ?",
            (int(limit),),
        )
        return [dict(row) for row in rows]

    def get_ambiguous_disambiguations(self, limit: int = 100) -> List[Dict[str, Any]]:
        rows = self._fetchall(
            """
            SELECT * FROM disambiguation_log
            WHERE reviewed = 0 AND ambiguous = 1
            ORDER BY id DESC LIMIT ?
            """,
            (int(limit),),
        )
        return [dict(row) for row in rows]

    def review_disambiguation(self, entry_id: int, decision: str) -> bool:
        if decision not in ("confirm", "reject"):
            raise ValueError(f"Unknown review decision: {decision}")
        value = 1 if decision == "confirm" else -1
        with self._lock, transaction(self.conn):
            cursor = self.conn.execute(
                "UPDATE disambiguation_log SET reviewed = ? WHERE id = ?", (value, entry_id)
            )
        return cursor.rowcount > 0

    def get_disambiguation_counts(self) -> Dict[str, int]:
        return {
            "pending": self._count(
                "SELECT COUNT(*) FROM disambiguation_log WHERE reviewed = 0 AND ambiguous = 1"
            ),
            "total": self._count("SELECT COUNT(*) FROM disambiguation_log"),
        }

    # ------------------------------------------------------------------
    # Stats

    def get_stats(self) -> Dict[str, Any]:
        resolution = self._fetchall(
            """
            SELECT resolution_cat, COUNT(*) FROM files
            WHERE scanned_at IS NOT NULL GROUP BY resolution_cat
            """
        )
        codecs = self._fetchall(
            """
            SELECT video_codec, COUNT(*) AS n FROM files
            WHERE scanned_at IS NOT NULL GROUP BY video_codec ORDER BY n DESC
            """
        )
        return {
            "total_movies": self._count("SELECT COUNT(*) FROM movies"),
            "total_files": self._count("SELECT COUNT(*) FROM files"),
            "scanned_files": self._count("SELECT COUNT(*) FROM files WHERE scanned_at IS NOT NULL"),
            "error_files": self._count("SELECT COUNT(*) FROM files WHERE scan_error IS NOT NULL"),
            "jf_enriched": self._count("SELECT COUNT(*) FROM movies WHERE jellyfin_id IS NOT NULL"),
            "total_library_size": self._count(
                "SELECT COALESCE(SUM(file_size), 0) FROM files WHERE scanned_at IS NOT NULL"
            ),
            "resolution_dist": {(row[0] or "unknown"): int(row[1]) for row in resolution},
            "codec_dist": {(row[0] or "unknown"): int(row[1]) for row in codecs},
            "hdr_count": self._count(
                "SELECT COUNT(*) FROM files WHERE hdr_formats != '[]' AND scanned_at IS NOT NULL"
            ),
            "dolby_vision_count": self._count(
                """
                SELECT COUNT(*) FROM files
                WHERE hdr_formats LIKE '%DolbyVision%' AND scanned_at IS NOT NULL
                """
            ),
        }

    def get_verify_stats(self) -> Dict[str, int]:
        rows = self._fetchall(
            """
            SELECT verify_status, COUNT(*) FROM files
            WHERE scanned_at IS NOT NULL GROUP BY verify_status
            """
        )
        stats = {"unverified": 0, "pass": 0, "fail": 0, "error": 0}
        for status, count in rows:
            if status in ("pass", "fail", "error"):
                stats[status] = int(count)
            else:
                stats["unverified"] += int(count)
        return stats


__all__ = [
    "CatalogError",
    "CatalogStore",
    "Enrichment",
    "FileRecord",
    "FileRow",
    "MovieRecord",
    "MovieRow",
    "ScanTotals",
    "VERIFY_STATUSES",
    "decode_json_list",
]
