"""Batch deep-verify of catalogued files."""
from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from catalog.store import CatalogStore, FileRow
from robust import CancellationToken

from . import deepcheck
from .deepcheck import DECODE_TIMEOUT_S, GOP_TIMEOUT_S, DeepCheckResult, is_tool_failure

LOGGER = logging.getLogger("curatarr.verify")

DEFAULT_VERIFY_CONCURRENCY = 3
UNVERIFIED_LIMIT = 10_000
ERROR_SAMPLE_SIZE = 10

EventCallback = Callable[[Dict[str, Any]], None]


@dataclass(slots=True)
class VerifyOptions:
    concurrency: int = DEFAULT_VERIFY_CONCURRENCY
    file_ids: Optional[Sequence[int]] = None
    rescan: bool = False
    decode_timeout_s: float = DECODE_TIMEOUT_S
    gop_timeout_s: float = GOP_TIMEOUT_S
    ffmpeg_path: Optional[str] = None
    ffprobe_path: Optional[str] = None

    @classmethod
    def from_settings(cls, settings: Mapping[str, Any] | None, **overrides: Any) -> "VerifyOptions":
        block = dict((settings or {}).get("verify") or {})
        options = cls(
            concurrency=int(block.get("concurrency") or DEFAULT_VERIFY_CONCURRENCY),
            decode_timeout_s=float(block.get("decode_timeout_s") or DECODE_TIMEOUT_S),
            gop_timeout_s=float(block.get("gop_timeout_s") or GOP_TIMEOUT_S),
            ffmpeg_path=block.get("ffmpeg_path") or None,
            ffprobe_path=block.get("ffprobe_path") or None,
        )
        for key, value in overrides.items():
            if value is not None:
                setattr(options, key, value)
        return options


@dataclass(slots=True)
class VerifyContext:
    cancellation: CancellationToken = field(default_factory=CancellationToken)
    on_event: Optional[EventCallback] = None

    def emit(self, event: str, payload: Dict[str, Any]) -> None:
        if self.on_event is None:
            return
        try:
            self.on_event({"type": event, **payload})
        except Exception:
            LOGGER.exception("Verify %s callback failed", event)


@dataclass(slots=True)
class VerifySummary:
    total: int = 0
    checked: int = 0
    passed: int = 0
    failed: int = 0
    errors: int = 0
    cancelled: bool = False
    error_sample: List[Dict[str, Any]] = field(default_factory=list)

    def counters(self) -> Dict[str, int]:
        return {
            "total": self.total,
            "checked": self.checked,
            "passed": self.passed,
            "failed": self.failed,
            "errors": self.errors,
        }


def verify_status(result: DeepCheckResult) -> str:
    if result.ok:
        return "pass"
    if any(is_tool_failure(message) for message in result.errors):
        return "error"
    return "fail"


def select_files(store: CatalogStore, options: VerifyOptions) -> List[FileRow]:
    if options.file_ids:
        files = store.get_files_by_ids(options.file_ids)
        if not options.rescan:
            files = [row for row in files if row.get("verify_status") in (None, "pending")]
        return files
    if options.rescan:
        return store.get_verifiable_files()
    return store.get_unverified_files(UNVERIFIED_LIMIT)


def run_verify_queue(
    store: CatalogStore,
    options: Optional[VerifyOptions] = None,
    context: Optional[VerifyContext] = None,
) -> VerifySummary:
    options = options or VerifyOptions()
    context = context or VerifyContext()
    cancellation = context.cancellation

    files = select_files(store, options)
    summary = VerifySummary(total=len(files))
    lock = threading.Lock()
    started = time.monotonic()
    LOGGER.info("Verify queue starting: %d files, %d workers", summary.total, options.concurrency)
    context.emit("progress", {**summary.counters(), "running": True})

    work: "queue.Queue[FileRow]" = queue.Queue()
    for row in files:
        work.put(row)

    def _check(row: FileRow) -> None:
        result = deepcheck.deep_check(
            row["file_path"],
            timeout=options.decode_timeout_s,
            cancellation=cancellation,
            ffmpeg_path=options.ffmpeg_path,
            ffprobe_path=options.ffprobe_path,
            gop_timeout=options.gop_timeout_s,
        )
        if result.cancelled:
            return
        status = verify_status(result)
        store.set_verify_result(
            int(row["id"]),
            status=status,
            errors=result.errors,
            quality_flags=[flag.to_dict() for flag in result.quality_flags],
        )
        with lock:
            summary.checked += 1
            if status == "pass":
                summary.passed += 1
            elif status == "error":
                summary.errors += 1
            else:
                summary.failed += 1
            if result.errors and len(summary.error_sample) < ERROR_SAMPLE_SIZE:
                summary.error_sample.append({"file": row["file_path"], "errors": result.errors[:3]})
            counters = summary.counters()
        if status != "pass":
            LOGGER.warning("Verify %s for %s: %s", status, row["file_path"], "; ".join(result.errors[:3]))
        context.emit(
            "file_result",
            {
                "file_id": row["id"],
                "file_path": row["file_path"],
                "filename": row.get("filename"),
                "movie_id": row.get("movie_id"),
                "ok": result.ok,
                "errors": result.errors,
                "duration_ms": result.duration_ms,
                "status": status,
            },
        )
        context.emit("progress", {**counters, "running": True})

    def _record_failure(row: FileRow, exc: Exception) -> None:
        message = (str(exc) or exc.__class__.__name__)[:500]
        try:
            store.set_verify_result(int(row["id"]), status="error", errors=[message])
        except Exception:
            LOGGER.exception("Could not record verify error for %s", row.get("file_path"))
        with lock:
            summary.checked += 1
            summary.errors += 1
            if len(summary.error_sample) < ERROR_SAMPLE_SIZE:
                summary.error_sample.append({"file": row["file_path"], "errors": [message]})
            counters = summary.counters()
        context.emit(
            "file_result",
            {
                "file_id": row["id"],
                "file_path": row["file_path"],
                "filename": row.get("filename"),
                "movie_id": row.get("movie_id"),
                "ok": False,
                "errors": [message],
                "duration_ms": 0,
                "status": "error",
            },
        )
        context.emit("progress", {**counters, "running": True})

    def _worker() -> None:
        while not cancellation.is_set():
            try:
                row = work.get_nowait()
            except queue.Empty:
                return
            try:
                _check(row)
            except Exception as exc:
                LOGGER.exception("Verify failed unexpectedly for %s", row.get("file_path"))
                _record_failure(row, exc)
            finally:
                work.task_done()

    workers: List[threading.Thread] = []
    for idx in range(min(max(1, int(options.concurrency)), max(1, len(files)))):
        thread = threading.Thread(target=_worker, name=f"verify-worker-{idx + 1}", daemon=True)
        thread.start()
        workers.append(thread)
    for thread in workers:
        thread.join()

    summary.cancelled = cancellation.is_set()
    LOGGER.info(
        "Verify queue %s: %d/%d checked, %d passed, %d failed, %d errors in %.1fs",
        "cancelled" if summary.cancelled else "complete",
        summary.checked,
        summary.total,
        summary.passed,
        summary.failed,
        summary.errors,
        time.monotonic() - started,
    )
    context.emit("complete", {**summary.counters(), "cancelled": summary.cancelled})
    return summary


__all__ = [
    "VerifyContext",
    "VerifyOptions",
    "VerifySummary",
    "run_verify_queue",
    "select_files",
    "verify_status",
]
