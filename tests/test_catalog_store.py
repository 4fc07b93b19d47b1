from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from catalog.schema import SCHEMA_VERSION
from catalog.store import (
    CatalogStore,
    Enrichment,
    FileRecord,
    MovieRecord,
    ScanTotals,
    decode_json_list,
)
from disambiguation.types import DisambiguateResult, MatchedMovie


def _movie(store: CatalogStore, name: str = "Heat (1995)", year: int = 1995) -> int:
    return store.upsert_movie(
        MovieRecord(folder_path=f"/lib/{name}", folder_name=name, parsed_title=name.split(" (")[0], parsed_year=year)
    )


def test_upsert_movie_is_idempotent(store: CatalogStore) -> None:
    first = _movie(store)
    second = store.upsert_movie(
        MovieRecord(folder_path="/lib/Heat (1995)", folder_name="Heat (1995)", parsed_title="Heat", parsed_year=1995)
    )
    assert first == second
    assert len(store.get_all_movies()) == 1


def test_upsert_file_success_clears_error(store: CatalogStore) -> None:
    movie_id = _movie(store)
    path = "/lib/Heat (1995)/Heat.mkv"
    store.upsert_file(FileRecord(movie_id=movie_id, file_path=path, filename="Heat.mkv", scan_error="boom"))
    row = store.get_file_by_path(path)
    assert row["scan_error"] == "boom"
    assert row["scanned_at"] is None

    file_id = store.upsert_file(
        FileRecord(
            movie_id=movie_id,
            file_path=path,
            filename="Heat.mkv",
            resolution_cat="1080p",
            hdr_formats=["HDR10"],
            audio_tracks=[{"index": 1, "codec": "dts"}],
        )
    )
    row = store.get_file_by_path(path)
    assert row["id"] == file_id
    assert row["scan_error"] is None
    assert row["scanned_at"] is not None
    assert decode_json_list(row["hdr_formats"]) == ["HDR10"]
    assert decode_json_list(row["audio_tracks"])[0]["codec"] == "dts"
    assert len(store.get_all_files()) == 1


def test_delete_movie_cascades_to_files(store: CatalogStore) -> None:
    movie_id = _movie(store)
    store.upsert_file(FileRecord(movie_id=movie_id, file_path="/lib/Heat (1995)/a.mkv", filename="a.mkv"))
    assert store.delete_movie(movie_id) is True
    assert store.get_all_files() == []
    assert store.delete_movie(movie_id) is False


def test_enrich_movie_and_lookups(store: CatalogStore) -> None:
    movie_id = _movie(store)
    ok = store.enrich_movie(
        "/lib/Heat (1995)",
        Enrichment(
            jellyfin_id="jf-1",
            jellyfin_title="Heat",
            jellyfin_year=1995,
            imdb_id="tt0113277",
            genres=["Crime", "Thriller"],
            jellyfin_path="/media/Heat (1995)/Heat.mkv",
        ),
    )
    assert ok is True
    assert store.enrich_movie("/lib/missing", Enrichment(jellyfin_id="x")) is False

    movie = store.get_movie_by_jellyfin_id("jf-1")
    assert movie is not None and movie.id == movie_id
    assert movie.genres == ["Crime", "Thriller"]
    assert movie.jf_synced_at is not None
    assert store.get_movie_by_path("/media/Heat (1995)/Heat.mkv").id == movie_id


def test_update_movie_meta(store: CatalogStore) -> None:
    movie_id = _movie(store)
    assert store.update_movie_meta(movie_id) is False
    assert store.update_movie_meta(movie_id, tags=["favourite"], notes="rewatch") is True
    movie = store.get_movie(movie_id)
    assert movie.tags == ["favourite"]
    assert movie.notes == "rewatch"


def test_verify_result_and_unverified_selection(store: CatalogStore) -> None:
    movie_id = _movie(store)
    good = store.upsert_file(FileRecord(movie_id=movie_id, file_path="/lib/a.mkv", filename="a.mkv"))
    store.upsert_file(FileRecord(movie_id=movie_id, file_path="/lib/b.mkv", filename="b.mkv", scan_error="x"))

    assert [row["id"] for row in store.get_unverified_files()] == [good]

    store.set_verify_result(good, status="fail", errors=["bad frame"], quality_flags=[{"code": "decode_error"}])
    assert store.get_unverified_files() == []
    failed = store.get_failed_verify_files()
    assert failed[0]["id"] == good
    assert decode_json_list(failed[0]["verify_errors"]) == ["bad frame"]
    assert store.get_verify_stats() == {"unverified": 0, "pass": 0, "fail": 1, "error": 0}

    with pytest.raises(ValueError):
        store.set_verify_result(good, status="maybe", errors=[])


def test_scan_run_lifecycle(store: CatalogStore) -> None:
    run_id = store.start_scan_run("/lib")
    store.finish_scan_run(run_id, ScanTotals(3, 4, 3, 1, 1.5, "1 errors"))
    last = store.get_last_scan_run()
    assert last["id"] == run_id
    assert last["finished_at"] is not None
    assert last["scan_errors"] == 1
    assert last["notes"] == "1 errors"


def test_disambiguation_log_review(store: CatalogStore) -> None:
    movie_id = _movie(store)
    result = DisambiguateResult(
        request_id="jf-9",
        match=MatchedMovie(movie_id, "/lib/Heat (1995)", "Heat", 1995),
        confidence=0.75,
        method="title_only",
        ambiguous=True,
        ambiguous_reason="year_mismatch",
    )
    entry_id = store.log_disambiguation(result, "job-1", "Heat", 1996, None)
    store.log_disambiguation(DisambiguateResult(request_id="jf-10"), "job-1", "Unknown")

    assert store.get_disambiguation_counts() == {"pending": 1, "total": 2}
    assert [row["id"] for row in store.get_ambiguous_disambiguations()] == [entry_id]
    assert len(store.get_pending_disambiguations()) == 2

    assert store.review_disambiguation(entry_id, "reject") is True
    row = store.conn.execute("SELECT reviewed FROM disambiguation_log WHERE id = ?", (entry_id,)).fetchone()
    assert row[0] == -1
    assert store.get_disambiguation_counts()["pending"] == 0


def test_stats_counts(store: CatalogStore) -> None:
    movie_id = _movie(store)
    store.upsert_file(
        FileRecord(
            movie_id=movie_id,
            file_path="/lib/a.mkv",
            filename="a.mkv",
            resolution_cat="2160p",
            video_codec="hevc",
            hdr_formats=["DolbyVision", "HDR10"],
            file_size=1000,
        )
    )
    store.upsert_file(FileRecord(movie_id=movie_id, file_path="/lib/b.mkv", filename="b.mkv", scan_error="x"))
    stats = store.get_stats()
    assert stats["total_movies"] == 1
    assert stats["total_files"] == 2
    assert stats["scanned_files"] == 1
    assert stats["error_files"] == 1
    assert stats["total_library_size"] == 1000
    assert stats["resolution_dist"] == {"2160p": 1}
    assert stats["codec_dist"] == {"hevc": 1}
    assert stats["hdr_count"] == 1
    assert stats["dolby_vision_count"] == 1


def test_legacy_catalog_is_migrated(tmp_path: Path) -> None:
    db_path = tmp_path / "legacy.db"
    conn = sqlite3.connect(db_path)
    conn.executescript(
        """
        CREATE TABLE movies (
            id INTEGER PRIMARY KEY,
            folder_path TEXT UNIQUE NOT NULL,
            folder_name TEXT NOT NULL,
            parsed_title TEXT,
            parsed_year INTEGER,
            jellyfin_id TEXT, jellyfin_title TEXT, jellyfin_year INTEGER,
            imdb_id TEXT, tmdb_id TEXT, critic_rating REAL, community_rating REAL,
            genres TEXT, overview TEXT, jellyfin_path TEXT, jf_synced_at TEXT,
            created_at TEXT NOT NULL, updated_at TEXT NOT NULL
        );
        CREATE TABLE files (
            id INTEGER PRIMARY KEY,
            movie_id INTEGER NOT NULL REFERENCES movies(id) ON DELETE CASCADE,
            file_path TEXT UNIQUE NOT NULL,
            filename TEXT NOT NULL,
            resolution TEXT, resolution_cat TEXT, width INTEGER, height INTEGER,
            video_codec TEXT, video_bitrate INTEGER, bit_depth INTEGER, frame_rate REAL,
            color_transfer TEXT, color_primaries TEXT, hdr_formats TEXT NOT NULL DEFAULT '[]',
            dv_profile INTEGER, audio_codec TEXT, audio_profile TEXT, audio_channels INTEGER,
            audio_layout TEXT, audio_bitrate INTEGER, audio_tracks TEXT NOT NULL DEFAULT '[]',
            subtitle_langs TEXT NOT NULL DEFAULT '[]', file_size INTEGER, duration REAL,
            container TEXT, mb_per_minute REAL, release_group TEXT, ffprobe_raw TEXT,
            scanned_at TEXT, scan_error TEXT,
            created_at TEXT NOT NULL, updated_at TEXT NOT NULL
        );
        INSERT INTO movies (id, folder_path, folder_name, created_at, updated_at)
            VALUES (1, '/lib/Scope (2019)', 'Scope (2019)', 'x', 'x');
        INSERT INTO files (movie_id, file_path, filename, width, height, resolution_cat, created_at, updated_at)
            VALUES (1, '/lib/Scope (2019)/scope.mkv', 'scope.mkv', 1916, 796, '720p', 'x', 'x');
        """
    )
    conn.commit()
    conn.close()

    store = CatalogStore.open(db_path)
    try:
        row = store.get_file_by_path("/lib/Scope (2019)/scope.mkv")
        assert row["resolution_cat"] == "1080p"
        assert row["verify_status"] is None
        assert store.get_movie(1).tags == []
        version = store.conn.execute("SELECT version FROM schema_version").fetchone()[0]
        assert version == SCHEMA_VERSION
    finally:
        store.close()


def test_decode_json_list_tolerates_garbage() -> None:
    assert decode_json_list(None) == []
    assert decode_json_list("") == []
    assert decode_json_list("{oops") == []
    assert decode_json_list('{"a": 1}') == []
    assert decode_json_list('["a"]') == ["a"]
