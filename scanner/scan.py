"""Scan orchestration: walk the library, probe files, persist results."""
from __future__ import annotations

import logging
import os
import queue
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional

from catalog.store import CatalogStore, FileRecord, MovieRecord, ScanTotals
from robust import CancellationToken

from .ffprobe import DEFAULT_PROBE_TIMEOUT, probe_to_file_record, run_ffprobe
from .walker import LibraryRootError, walk_library

LOGGER = logging.getLogger("curatarr.scan")

RATE_WINDOW_S = 30.0
ERROR_SAMPLE_SIZE = 10

ProgressCallback = Callable[["ScanProgress"], None]
FolderCallback = Callable[[str, int], None]
EventCallback = Callable[[Dict[str, Any]], None]


def _default_concurrency() -> int:
    return max(1, (os.cpu_count() or 2) // 2)


@dataclass(slots=True)
class ScanOptions:
    concurrency: int = field(default_factory=_default_concurrency)
    rescan: bool = False
    max_file_size_bytes: Optional[int] = None
    probe_timeout_s: float = DEFAULT_PROBE_TIMEOUT
    ffprobe_path: Optional[str] = None

    @classmethod
    def from_settings(cls, settings: Mapping[str, Any] | None, **overrides: Any) -> "ScanOptions":
        block = dict((settings or {}).get("scan") or {})
        max_gb = block.get("max_file_size_gb")
        options = cls(
            concurrency=int(block.get("concurrency") or _default_concurrency()),
            max_file_size_bytes=int(float(max_gb) * 1e9) if max_gb else None,
            probe_timeout_s=float(block.get("probe_timeout_s") or DEFAULT_PROBE_TIMEOUT),
            ffprobe_path=block.get("ffprobe_path") or None,
        )
        for key, value in overrides.items():
            if value is not None:
                setattr(options, key, value)
        return options


@dataclass(slots=True)
class ScanProgress:
    folder: str
    file: str
    folders_done: int
    folders_total: int
    files_processed: int
    files_ok: int
    files_errored: int
    current_rate: float
    elapsed_sec: float
    cancelled: bool = False


@dataclass(slots=True)
class ScanContext:
    """Per-run collaborators; nothing here outlives a single scan."""

    cancellation: CancellationToken = field(default_factory=CancellationToken)
    on_progress: Optional[ProgressCallback] = None
    on_folder_complete: Optional[FolderCallback] = None
    on_event: Optional[EventCallback] = None

    def _call(self, name: str, callback: Optional[Callable[..., None]], *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            LOGGER.exception("Scan %s callback failed", name)

    def progress(self, payload: "ScanProgress") -> None:
        self._call("progress", self.on_progress, payload)

    def folder_complete(self, folder_name: str, file_count: int) -> None:
        self._call("folder", self.on_folder_complete, folder_name, file_count)

    def event(self, payload: Dict[str, Any]) -> None:
        self._call("event", self.on_event, payload)


@dataclass(slots=True)
class ScanResult:
    root_path: str
    run_id: Optional[int] = None
    state: str = "collecting"
    total_folders: int = 0
    total_files: int = 0
    scanned_ok: int = 0
    scan_errors: int = 0
    duration_sec: float = 0.0
    errors: List[Dict[str, str]] = field(default_factory=list)
    probe_invocations: int = 0

    def error_sample(self, limit: int = ERROR_SAMPLE_SIZE) -> List[Dict[str, str]]:
        return list(self.errors[: max(0, int(limit))])


@dataclass(slots=True)
class _WorkItem:
    movie_id: int
    folder_path: str
    folder_name: str
    file_path: str
    filename: str


class _ScanRun:
    def __init__(
        self,
        root: str,
        store: CatalogStore,
        options: ScanOptions,
        context: ScanContext,
    ) -> None:
        self.root = root
        self.store = store
        self.options = options
        self.context = context
        self.result = ScanResult(root_path=root)
        self._lock = threading.Lock()
        self._start = time.monotonic()
        self._rate_window: Deque[float] = deque()
        self._folder_totals: Dict[str, int] = {}
        self._folder_done: Dict[str, int] = {}
        self._folders_finished = 0
        self._processed = 0

    def _elapsed(self) -> float:
        return time.monotonic() - self._start

    def _finish(self, notes: Optional[str]) -> None:
        result = self.result
        result.duration_sec = self._elapsed()
        if result.run_id is None:
            return
        self.store.finish_scan_run(
            result.run_id,
            ScanTotals(
                total_folders=result.total_folders,
                total_files=result.total_files,
                scanned_ok=result.scanned_ok,
                scan_errors=result.scan_errors,
                duration_sec=result.duration_sec,
                notes=notes,
            ),
        )

    def _collect(self) -> List[_WorkItem]:
        items: List[_WorkItem] = []
        for folder in walk_library(self.root):
            self.result.total_folders += 1
            movie_id = self.store.upsert_movie(
                MovieRecord(
                    folder_path=folder.folder_path,
                    folder_name=folder.folder_name,
                    parsed_title=folder.parsed_title,
                    parsed_year=folder.parsed_year,
                )
            )
            for file_path in folder.video_files:
                self.result.total_files += 1
                if not self.options.rescan:
                    existing = self.store.get_file_by_path(file_path)
                    if existing is not None and existing.get("scanned_at"):
                        self.result.scanned_ok += 1
                        continue
                items.append(
                    _WorkItem(
                        movie_id=movie_id,
                        folder_path=folder.folder_path,
                        folder_name=folder.folder_name,
                        file_path=file_path,
                        filename=os.path.basename(file_path),
                    )
                )
                self._folder_totals[folder.folder_path] = self._folder_totals.get(folder.folder_path, 0) + 1
            if self.context.cancellation.is_set():
                break
        return items

    def _record_error(self, item: _WorkItem, stored: str, reported: Optional[str] = None) -> None:
        try:
            self.store.upsert_file(
                FileRecord(
                    movie_id=item.movie_id,
                    file_path=item.file_path,
                    filename=item.filename,
                    scan_error=stored,
                )
            )
        except Exception:
            LOGGER.exception("Failed to persist scan error for %s", item.file_path)
        with self._lock:
            self.result.scan_errors += 1
            self.result.errors.append({"file": item.file_path, "error": reported or stored})
        LOGGER.warning("Scan error for %s: %s", item.file_path, stored)

    def _probe(self, item: _WorkItem) -> None:
        if self.options.max_file_size_bytes:
            try:
                size = os.stat(item.file_path).st_size
            except OSError:
                size = None
            if size is not None and size > self.options.max_file_size_bytes:
                self._record_error(item, f"File too large: {size / 1e9:.1f} GB", "File too large")
                return
        with self._lock:
            self.result.probe_invocations += 1
        outcome = run_ffprobe(
            item.file_path,
            timeout=self.options.probe_timeout_s,
            executable=self.options.ffprobe_path,
        )
        if not outcome.ok or outcome.probe is None:
            self._record_error(item, outcome.error or "ffprobe failed")
            return
        self.store.upsert_file(probe_to_file_record(outcome.probe, item.movie_id, item.file_path))
        with self._lock:
            self.result.scanned_ok += 1

    def _after_item(self, item: _WorkItem) -> None:
        now = time.monotonic()
        with self._lock:
            self._processed += 1
            self._rate_window.append(now)
            while self._rate_window and self._rate_window[0] < now - RATE_WINDOW_S:
                self._rate_window.popleft()
            done = self._folder_done.get(item.folder_path, 0) + 1
            self._folder_done[item.folder_path] = done
            folder_finished = done >= self._folder_totals.get(item.folder_path, 0)
            if folder_finished:
                self._folders_finished += 1
            progress = ScanProgress(
                folder=item.folder_name,
                file=item.filename,
                folders_done=self._folders_finished,
                folders_total=self.result.total_folders,
                files_processed=self._processed,
                files_ok=self.result.scanned_ok,
                files_errored=self.result.scan_errors,
                current_rate=len(self._rate_window) / RATE_WINDOW_S,
                elapsed_sec=self._elapsed(),
                cancelled=self.context.cancellation.is_set(),
            )
        if folder_finished:
            self.context.folder_complete(item.folder_name, done)
        self.context.progress(progress)
        self.context.event(
            {
                "type": "progress",
                "folder": progress.folder,
                "file": progress.file,
                "files_processed": progress.files_processed,
                "files_ok": progress.files_ok,
                "files_errored": progress.files_errored,
            }
        )

    def _worker(self, work: "queue.Queue[_WorkItem]") -> None:
        while True:
            if self.context.cancellation.is_set():
                return
            try:
                item = work.get_nowait()
            except queue.Empty:
                return
            try:
                self._probe(item)
            except Exception as exc:
                LOGGER.exception("Unexpected failure scanning %s", item.file_path)
                self._record_error(item, f"scan failed: {exc}"[:500])
            finally:
                work.task_done()
            self._after_item(item)

    def run(self) -> ScanResult:
        result = self.result
        result.run_id = self.store.start_scan_run(self.root)
        LOGGER.info("Scan started for %s (run %s)", self.root, result.run_id)
        self.context.event({"type": "state", "state": "collecting", "run_id": result.run_id})
        try:
            items = self._collect()
        except LibraryRootError as exc:
            result.state = "failed"
            self._finish(str(exc))
            raise

        if not items:
            result.state = "cancelled" if self.context.cancellation.is_set() else "finished"
            notes = "cancelled" if result.state == "cancelled" else "All files already scanned"
            self._finish(notes)
            self.context.event({"type": "complete", "state": result.state, "notes": notes})
            return result

        result.state = "processing"
        # Folders whose files were all scanned already count as done.
        self._folders_finished = result.total_folders - len(self._folder_totals)
        self.context.event({"type": "state", "state": "processing", "queued": len(items)})
        work: "queue.Queue[_WorkItem]" = queue.Queue()
        for item in items:
            work.put(item)
        workers: List[threading.Thread] = []
        for idx in range(min(max(1, int(self.options.concurrency)), len(items))):
            thread = threading.Thread(target=self._worker, args=(work,), name=f"scan-worker-{idx + 1}")
            thread.daemon = True
            thread.start()
            workers.append(thread)
        for thread in workers:
            thread.join()

        if self.context.cancellation.is_set():
            result.state = "cancelled"
            notes: Optional[str] = "cancelled"
        else:
            result.state = "finished"
            notes = f"{len(result.errors)} errors" if result.errors else None
        self._finish(notes)
        LOGGER.info(
            "Scan %s: %d folders, %d files, %d ok, %d errors in %.1fs",
            result.state,
            result.total_folders,
            result.total_files,
            result.scanned_ok,
            result.scan_errors,
            result.duration_sec,
        )
        self.context.event(
            {
                "type": "complete",
                "state": result.state,
                "scanned_ok": result.scanned_ok,
                "scan_errors": result.scan_errors,
                "notes": notes,
            }
        )
        return result


def scan_library(
    root: str | Path,
    store: CatalogStore,
    options: Optional[ScanOptions] = None,
    context: Optional[ScanContext] = None,
) -> ScanResult:
    """Scan *root* one level deep and persist every principal video file.

    Files that already carry a successful probe are counted as OK without
    re-probing unless ``options.rescan`` is set. Raises ``LibraryRootError``
    when the root itself cannot be listed.
    """

    run = _ScanRun(str(root), store, options or ScanOptions(), context or ScanContext())
    return run.run()


__all__ = [
    "ScanContext",
    "ScanOptions",
    "ScanProgress",
    "ScanResult",
    "scan_library",
]
