from __future__ import annotations

import threading
from pathlib import Path
from typing import List, Tuple

import pytest

import scanner.scan as scan_module
from catalog.store import CatalogStore
from robust import CancellationToken
from scanner.ffprobe import ProbeOutcome, parse_probe_output
from scanner.scan import ScanContext, ScanOptions, ScanProgress, scan_library
from scanner.walker import LibraryRootError

from probe_samples import probe_json


class FakeProbe:
    def __init__(self, failing: Tuple[str, ...] = ()) -> None:
        self.calls: List[str] = []
        self.failing = failing
        self._lock = threading.Lock()

    def __call__(self, path: str, *, timeout: float, executable=None) -> ProbeOutcome:
        with self._lock:
            self.calls.append(path)
        if any(token in path for token in self.failing):
            return ProbeOutcome(ok=False, error="Invalid data found when processing input", reason="probe_error")
        return ProbeOutcome(ok=True, probe=parse_probe_output(probe_json(width=3840, height=2160, codec="hevc")))


def _library(root: Path) -> Path:
    for folder, files in {
        "Alien (1979)": ["Alien.1979.mkv"],
        "Heat (1995)": ["Heat.1995.Part1.mkv", "Heat.1995.Part2.mkv"],
    }.items():
        (root / folder).mkdir(parents=True)
        for name in files:
            (root / folder / name).write_bytes(b"\0" * 128)
    return root


@pytest.fixture()
def fake_probe(monkeypatch: pytest.MonkeyPatch) -> FakeProbe:
    fake = FakeProbe()
    monkeypatch.setattr(scan_module, "run_ffprobe", fake)
    return fake


def test_scan_persists_probe_results(tmp_path: Path, store: CatalogStore, fake_probe: FakeProbe) -> None:
    root = _library(tmp_path / "lib")
    result = scan_library(root, store, ScanOptions(concurrency=2))

    assert result.state == "finished"
    assert result.total_folders == 2
    assert result.total_files == 3
    assert result.scanned_ok == 3
    assert result.scan_errors == 0
    assert len(fake_probe.calls) == 3
    assert {movie.parsed_title for movie in store.get_all_movies()} == {"Alien", "Heat"}
    row = store.get_file_by_path(str(root / "Alien (1979)" / "Alien.1979.mkv"))
    assert row["resolution_cat"] == "2160p"
    assert row["video_codec"] == "hevc"

    run = store.get_last_scan_run()
    assert run["id"] == result.run_id
    assert run["scanned_ok"] == 3
    assert run["notes"] is None


def test_restart_probes_each_file_once(tmp_path: Path, store: CatalogStore, fake_probe: FakeProbe) -> None:
    root = _library(tmp_path / "lib")
    scan_library(root, store, ScanOptions(concurrency=2))
    second = scan_library(root, store, ScanOptions(concurrency=2))

    assert len(fake_probe.calls) == 3
    assert second.probe_invocations == 0
    assert second.scanned_ok == 3
    assert store.get_last_scan_run()["notes"] == "All files already scanned"

    forced = scan_library(root, store, ScanOptions(concurrency=1, rescan=True))
    assert forced.probe_invocations == 3
    assert len(fake_probe.calls) == 6


def test_probe_errors_are_recorded_and_retried(
    tmp_path: Path, store: CatalogStore, monkeypatch: pytest.MonkeyPatch
) -> None:
    root = _library(tmp_path / "lib")
    fake = FakeProbe(failing=("Part2",))
    monkeypatch.setattr(scan_module, "run_ffprobe", fake)

    result = scan_library(root, store, ScanOptions(concurrency=1))
    assert result.scanned_ok == 2
    assert result.scan_errors == 1
    assert result.error_sample(5) == [
        {"file": str(root / "Heat (1995)" / "Heat.1995.Part2.mkv"), "error": "Invalid data found when processing input"}
    ]
    assert store.get_last_scan_run()["notes"] == "1 errors"

    again = scan_library(root, store, ScanOptions(concurrency=1))
    assert again.probe_invocations == 1


def test_size_cap_skips_probe(tmp_path: Path, store: CatalogStore, fake_probe: FakeProbe) -> None:
    root = _library(tmp_path / "lib")
    result = scan_library(root, store, ScanOptions(concurrency=1, max_file_size_bytes=64))

    assert fake_probe.calls == []
    assert result.scan_errors == 3
    assert {error["error"] for error in result.errors} == {"File too large"}
    row = store.get_file_by_path(str(root / "Alien (1979)" / "Alien.1979.mkv"))
    assert row["scan_error"] == "File too large: 0.0 GB"
    assert row["scanned_at"] is None


def test_cancelled_scan_stops_claiming_work(tmp_path: Path, store: CatalogStore, fake_probe: FakeProbe) -> None:
    root = _library(tmp_path / "lib")
    token = CancellationToken()
    token.set("test")
    result = scan_library(root, store, ScanOptions(concurrency=2), ScanContext(cancellation=token))

    assert result.state == "cancelled"
    assert fake_probe.calls == []
    assert store.get_last_scan_run()["notes"] == "cancelled"


def test_cancelled_scan_resumes_where_it_stopped(
    tmp_path: Path, store: CatalogStore, fake_probe: FakeProbe
) -> None:
    root = _library(tmp_path / "lib")
    token = CancellationToken()
    context = ScanContext(cancellation=token, on_folder_complete=lambda name, count: token.set("stop"))

    first = scan_library(root, store, ScanOptions(concurrency=1), context)
    assert first.state == "cancelled"
    assert first.probe_invocations == 1
    assert fake_probe.calls == [str(root / "Alien (1979)" / "Alien.1979.mkv")]

    second = scan_library(root, store, ScanOptions(concurrency=1))
    assert second.state == "finished"
    assert second.probe_invocations == 2
    assert len(fake_probe.calls) == 3
    assert len(set(fake_probe.calls)) == 3


def test_callbacks_fire_and_failures_are_contained(
    tmp_path: Path, store: CatalogStore, fake_probe: FakeProbe
) -> None:
    root = _library(tmp_path / "lib")
    completed: List[Tuple[str, int]] = []
    progress: List[ScanProgress] = []
    events: List[dict] = []

    def _explode(_: ScanProgress) -> None:
        progress.append(_)
        raise RuntimeError("ui went away")

    context = ScanContext(
        on_progress=_explode,
        on_folder_complete=lambda name, count: completed.append((name, count)),
        on_event=events.append,
    )
    result = scan_library(root, store, ScanOptions(concurrency=1), context)

    assert result.scanned_ok == 3
    assert sorted(completed) == [("Alien (1979)", 1), ("Heat (1995)", 2)]
    assert len(progress) == 3
    last = progress[-1]
    assert last.files_processed == 3
    assert last.folders_done == 2
    assert last.folders_total == 2
    assert last.current_rate == pytest.approx(3 / 30)
    assert events[-1]["type"] == "complete"


def test_unreadable_root_is_fatal(tmp_path: Path, store: CatalogStore, fake_probe: FakeProbe) -> None:
    with pytest.raises(LibraryRootError):
        scan_library(tmp_path / "missing", store)
    run = store.get_last_scan_run()
    assert run["finished_at"] is not None
    assert "Cannot read library root" in run["notes"]


def test_options_from_settings() -> None:
    options = ScanOptions.from_settings(
        {"scan": {"concurrency": 6, "max_file_size_gb": 50, "probe_timeout_s": 90}},
        rescan=True,
    )
    assert options.concurrency == 6
    assert options.max_file_size_bytes == 50_000_000_000
    assert options.probe_timeout_s == 90.0
    assert options.rescan is True
