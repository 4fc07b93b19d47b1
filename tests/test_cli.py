from __future__ import annotations

import json
import sqlite3
from pathlib import Path

import pytest

import library_cli
import scanner.scan as scan_module
from scanner.ffprobe import ProbeOutcome, parse_probe_output

from probe_samples import probe_json


def _cli(tmp_path: Path, *args: str) -> int:
    return library_cli.main(["--working-dir", str(tmp_path / "home"), "--quiet", "--log-level", "ERROR", *args])


def test_scan_then_stats(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture) -> None:
    monkeypatch.setattr(
        scan_module,
        "run_ffprobe",
        lambda path, **kwargs: ProbeOutcome(ok=True, probe=parse_probe_output(probe_json())),
    )
    folder = tmp_path / "lib" / "Heat (1995)"
    folder.mkdir(parents=True)
    (folder / "Heat.1995.mkv").write_bytes(b"\0" * 32)

    assert _cli(tmp_path, "scan", str(tmp_path / "lib")) == 0
    assert "1 folders, 1 files, 1 ok, 0 errors" in capsys.readouterr().out

    assert _cli(tmp_path, "stats", "--json") == 0
    stats = json.loads(capsys.readouterr().out)
    assert stats["total_movies"] == 1
    assert stats["verify"]["unverified"] == 1
    assert stats["last_scan"]["scanned_ok"] == 1
    assert (tmp_path / "home" / "data" / "catalog.db").exists()


def test_scan_without_roots_fails(tmp_path: Path, capsys: pytest.CaptureFixture) -> None:
    assert _cli(tmp_path, "scan") == 1
    assert "library.movie_paths is empty" in capsys.readouterr().err


def test_missing_root_is_reported(tmp_path: Path, capsys: pytest.CaptureFixture) -> None:
    assert _cli(tmp_path, "scan", str(tmp_path / "nowhere")) == 1
    assert "Cannot read library root" in capsys.readouterr().err


def test_review_unknown_entry(tmp_path: Path, capsys: pytest.CaptureFixture) -> None:
    assert _cli(tmp_path, "review") == 0
    assert "Nothing to review." in capsys.readouterr().out
    assert _cli(tmp_path, "review", "--confirm", "42") == 1


def test_resolve_matches_catalogued_titles(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture
) -> None:
    monkeypatch.setattr(
        scan_module,
        "run_ffprobe",
        lambda path, **kwargs: ProbeOutcome(ok=True, probe=parse_probe_output(probe_json())),
    )
    folder = tmp_path / "lib" / "Heat (1995)"
    folder.mkdir(parents=True)
    (folder / "Heat.1995.mkv").write_bytes(b"\0" * 32)
    assert _cli(tmp_path, "scan", str(tmp_path / "lib")) == 0
    capsys.readouterr()

    assert _cli(tmp_path, "resolve", "Heat (1995)", "Nothing Like It (2031)") == 0
    out = capsys.readouterr().out.splitlines()
    assert out[0].startswith(f"Heat (1995) -> {folder} [title_year")
    assert out[1] == "Nothing Like It (2031) -> no match"
    assert out[-1] == "Resolved 2 title(s), 0 ambiguous"

    conn = sqlite3.connect(tmp_path / "home" / "data" / "catalog.db")
    try:
        logged = conn.execute("SELECT COUNT(*) FROM disambiguation_log WHERE job_id LIKE 'cli-%'").fetchone()[0]
    finally:
        conn.close()
    assert logged == 2


def test_resolve_worker_count_comes_from_settings(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture
) -> None:
    home = tmp_path / "home"
    home.mkdir()
    (home / "settings.json").write_text(json.dumps({"disambiguation": {"concurrency": 7}}), encoding="utf-8")
    seen = []

    def _fake_queue(job_id, requests, store, *, concurrency, cancellation=None, on_result=None):
        seen.append((concurrency, [(r.title, r.year) for r in requests]))
        return {"total": len(requests), "ambiguous": 0}

    monkeypatch.setattr(library_cli, "run_disambiguation_queue", _fake_queue)
    assert _cli(tmp_path, "resolve", "Alien (1979)", "Untitled") == 0
    assert seen == [(7, [("Alien", 1979), ("Untitled", None)])]

    assert _cli(tmp_path, "resolve", "Alien (1979)", "--concurrency", "2") == 0
    assert seen[-1][0] == 2
