"""Command line entry point for the Curatarr library tools."""
from __future__ import annotations

import argparse
import json
import logging
import sys
import threading
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TypeVar

from tqdm import tqdm

from catalog.store import CatalogError, CatalogStore
from core.logging_utils import add_console_handler, configure_json_logging
from core.paths import ensure_working_dir_structure, get_catalog_db_path, resolve_working_dir
from core.settings import load_settings
from disambiguation.queue import DEFAULT_CONCURRENCY, run_disambiguation_queue
from disambiguation.types import DisambiguateRequest, DisambiguateResult
from mediaserver.jellyfin import JellyfinClient, JellyfinError
from mediaserver.sync import SyncOptions, sync_from_jellyfin
from robust import CancellationToken
from scanner.ffprobe import ffprobe_available
from scanner.scan import ScanContext, ScanOptions, ScanProgress, scan_library
from scanner.verify import VerifyContext, VerifyOptions, run_verify_queue
from scanner.walker import LibraryRootError, parse_folder_name

LOGGER = logging.getLogger("curatarr.cli")

T = TypeVar("T")


def _run_cancellable(func: Callable[[], T], token: CancellationToken) -> T:
    """Run *func* on a worker thread so Ctrl+C can cancel it cleanly."""

    outcome: Dict[str, Any] = {}

    def _target() -> None:
        try:
            outcome["value"] = func()
        except BaseException as exc:  # re-raised on the calling thread
            outcome["error"] = exc

    thread = threading.Thread(target=_target, name="curatarr-job", daemon=True)
    thread.start()
    while thread.is_alive():
        try:
            thread.join(0.5)
        except KeyboardInterrupt:
            print("\nCancelling, waiting for running workers…", file=sys.stderr)
            token.set("keyboard interrupt")
    if "error" in outcome:
        raise outcome["error"]
    return outcome["value"]


def _open_store(settings: Dict[str, Any], working_dir: Path) -> CatalogStore:
    db_path = settings.get("catalog_db") or get_catalog_db_path(working_dir)
    return CatalogStore.open(db_path)


def _cmd_scan(args: argparse.Namespace, settings: Dict[str, Any], store: CatalogStore) -> int:
    roots: List[str] = list(args.paths) or list(settings["library"].get("movie_paths") or [])
    if not roots:
        print("No library path given and library.movie_paths is empty.", file=sys.stderr)
        return 1
    options = ScanOptions.from_settings(
        settings,
        rescan=args.rescan or None,
        concurrency=args.concurrency,
        max_file_size_bytes=int(args.max_size_gb * 1e9) if args.max_size_gb else None,
    )
    if not ffprobe_available(options.ffprobe_path):
        LOGGER.warning("ffprobe not found; every file will be recorded as a scan error")
    token = CancellationToken()
    exit_code = 0
    for root in roots:
        bar = tqdm(desc=Path(root).name or root, unit="file", disable=args.quiet)

        def _on_event(event: Dict[str, Any], bar: tqdm = bar) -> None:
            if event.get("type") == "state" and event.get("state") == "processing":
                bar.reset(total=int(event.get("queued") or 0))

        def _on_progress(progress: ScanProgress, bar: tqdm = bar) -> None:
            bar.set_postfix(ok=progress.files_ok, err=progress.files_errored, rate=f"{progress.current_rate:.1f}/s")
            bar.update(1)

        context = ScanContext(cancellation=token, on_progress=_on_progress, on_event=_on_event)
        try:
            result = _run_cancellable(lambda: scan_library(root, store, options, context), token)
        except LibraryRootError as exc:
            bar.close()
            print(str(exc), file=sys.stderr)
            exit_code = 1
            continue
        bar.close()
        print(
            f"{root}: {result.state}, {result.total_folders} folders, {result.total_files} files, "
            f"{result.scanned_ok} ok, {result.scan_errors} errors ({result.duration_sec:.1f}s)"
        )
        for error in result.error_sample():
            print(f"  ! {error['file']}: {error['error']}")
        if token.is_set():
            break
    return exit_code


def _cmd_verify(args: argparse.Namespace, settings: Dict[str, Any], store: CatalogStore) -> int:
    options = VerifyOptions.from_settings(
        settings,
        concurrency=args.concurrency,
        file_ids=args.file_id or None,
        rescan=args.rescan or None,
    )
    token = CancellationToken()
    bar = tqdm(desc="verify", unit="file", disable=args.quiet)

    def _on_event(event: Dict[str, Any]) -> None:
        if event["type"] == "progress":
            if bar.total != event["total"]:
                bar.reset(total=event["total"])
            bar.n = event["checked"]
            bar.set_postfix(passed=event["passed"], failed=event["failed"], errors=event["errors"])
            bar.refresh()

    summary = _run_cancellable(
        lambda: run_verify_queue(store, options, VerifyContext(cancellation=token, on_event=_on_event)),
        token,
    )
    bar.close()
    state = "cancelled" if summary.cancelled else "complete"
    print(
        f"Verify {state}: {summary.checked}/{summary.total} checked, {summary.passed} passed, "
        f"{summary.failed} failed, {summary.errors} errors"
    )
    for item in summary.error_sample:
        print(f"  ! {item['file']}: {' | '.join(item['errors'])}")
    return 0


def _cmd_sync(args: argparse.Namespace, settings: Dict[str, Any], store: CatalogStore) -> int:
    try:
        client = JellyfinClient.from_settings(settings)
    except JellyfinError as exc:
        print(str(exc), file=sys.stderr)
        return 1
    token = CancellationToken()
    bar = tqdm(desc="sync", unit="movie", disable=args.quiet)

    def _on_progress(done: int, total: int, matched: int, unmatched: int) -> None:
        if bar.total != total:
            bar.reset(total=total)
        bar.n = done
        bar.set_postfix(matched=matched, unmatched=unmatched)
        bar.refresh()

    result = _run_cancellable(
        lambda: sync_from_jellyfin(
            client,
            store,
            SyncOptions(resync=args.resync),
            on_progress=_on_progress,
            cancellation=token,
        ),
        token,
    )
    bar.close()
    print(
        f"Sync: {result.total} items, {result.matched} matched, "
        f"{result.unmatched} unmatched, {result.ambiguous} ambiguous"
    )
    for title in result.unmatched_titles[:20]:
        print(f"  ? {title}")
    for error in result.errors[:20]:
        print(f"  ! {error}")
    return 1 if result.total == 0 and result.errors else 0


def _cmd_stats(args: argparse.Namespace, settings: Dict[str, Any], store: CatalogStore) -> int:
    stats = store.get_stats()
    stats["verify"] = store.get_verify_stats()
    stats["disambiguation"] = store.get_disambiguation_counts()
    stats["last_scan"] = store.get_last_scan_run()
    if args.json:
        print(json.dumps(stats, indent=2))
        return 0
    print(f"Movies: {stats['total_movies']} ({stats['jf_enriched']} enriched)")
    print(
        f"Files: {stats['total_files']} ({stats['scanned_files']} scanned, {stats['error_files']} errors), "
        f"{stats['total_library_size'] / 1e12:.2f} TB"
    )
    print("Resolution: " + ", ".join(f"{k}={v}" for k, v in sorted(stats["resolution_dist"].items())))
    print("Codecs: " + ", ".join(f"{k}={v}" for k, v in stats["codec_dist"].items()))
    print(f"HDR: {stats['hdr_count']} (Dolby Vision {stats['dolby_vision_count']})")
    verify = stats["verify"]
    print(
        f"Verify: {verify['pass']} pass, {verify['fail']} fail, "
        f"{verify['error']} error, {verify['unverified']} unverified"
    )
    print(f"Disambiguation: {stats['disambiguation']['pending']} pending review")
    return 0


def _cmd_review(args: argparse.Namespace, settings: Dict[str, Any], store: CatalogStore) -> int:
    if args.confirm is not None or args.reject is not None:
        entry_id = args.confirm if args.confirm is not None else args.reject
        decision = "confirm" if args.confirm is not None else "reject"
        if not store.review_disambiguation(entry_id, decision):
            print(f"No disambiguation entry {entry_id}", file=sys.stderr)
            return 1
        print(f"Entry {entry_id}: {decision}ed")
        return 0
    entries = store.get_ambiguous_disambiguations(limit=args.limit)
    if not entries:
        print("Nothing to review.")
        return 0
    for entry in entries:
        year = entry["input_year"] if entry["input_year"] is not None else "?"
        print(
            f"#{entry['id']} {entry['input_title']} ({year}) -> movie {entry['matched_movie_id']} "
            f"[{entry['method']} {entry['confidence']:.2f} {entry['reason'] or ''}]"
        )
    return 0


def _cmd_resolve(args: argparse.Namespace, settings: Dict[str, Any], store: CatalogStore) -> int:
    requests: List[DisambiguateRequest] = []
    for index, text in enumerate(args.titles, start=1):
        title, year = parse_folder_name(text)
        requests.append(DisambiguateRequest(id=str(index), title=title, year=year, imdb_id=args.imdb))
    concurrency = args.concurrency or settings.get("disambiguation", {}).get("concurrency") or DEFAULT_CONCURRENCY
    results: List[DisambiguateResult] = []
    lock = threading.Lock()

    def _on_result(result: DisambiguateResult) -> None:
        with lock:
            results.append(result)

    token = CancellationToken()
    counts = _run_cancellable(
        lambda: run_disambiguation_queue(
            f"cli-{uuid.uuid4().hex[:12]}",
            requests,
            store,
            concurrency=int(concurrency),
            cancellation=token,
            on_result=_on_result,
        ),
        token,
    )
    by_id = {request.id: request for request in requests}
    for result in sorted(results, key=lambda item: int(item.request_id)):
        request = by_id[result.request_id]
        label = f"{request.title} ({request.year})" if request.year is not None else request.title
        if result.match is None:
            print(f"{label} -> no match")
            continue
        line = f"{label} -> {result.match.folder_path} [{result.method} {result.confidence:.2f}]"
        if result.ambiguous:
            line += f" ambiguous: {result.ambiguous_reason}"
        print(line)
    print(f"Resolved {counts['total']} title(s), {counts['ambiguous']} ambiguous")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="curatarr", description="Movie library scan, verify and sync tools")
    parser.add_argument("--working-dir", type=Path, default=None, help="Override working directory")
    parser.add_argument("--log-level", default="INFO", help="Console log level (default: INFO)")
    parser.add_argument("--quiet", action="store_true", help="Hide progress bars")
    sub = parser.add_subparsers(dest="command", required=True)

    scan = sub.add_parser("scan", help="Probe every movie folder under the library roots")
    scan.add_argument("paths", nargs="*", help="Library roots (default: library.movie_paths)")
    scan.add_argument("--rescan", action="store_true", help="Re-probe files already scanned")
    scan.add_argument("--concurrency", type=int, default=None, help="Parallel ffprobe workers")
    scan.add_argument("--max-size-gb", type=float, default=None, help="Skip files larger than this")
    scan.set_defaults(handler=_cmd_scan)

    verify = sub.add_parser("verify", help="Decode files end to end to find playback defects")
    verify.add_argument("--rescan", action="store_true", help="Re-verify files already verified")
    verify.add_argument("--file-id", type=int, action="append", default=[], help="Only verify this file id")
    verify.add_argument("--concurrency", type=int, default=None, help="Parallel ffmpeg workers")
    verify.set_defaults(handler=_cmd_verify)

    sync = sub.add_parser("sync", help="Enrich the catalog from Jellyfin")
    sync.add_argument("--resync", action="store_true", help="Re-sync movies already enriched")
    sync.set_defaults(handler=_cmd_sync)

    stats = sub.add_parser("stats", help="Print catalog statistics")
    stats.add_argument("--json", action="store_true", help="Output as JSON")
    stats.set_defaults(handler=_cmd_stats)

    review = sub.add_parser("review", help="List or settle ambiguous matches")
    group = review.add_mutually_exclusive_group()
    group.add_argument("--confirm", type=int, default=None, metavar="ID")
    group.add_argument("--reject", type=int, default=None, metavar="ID")
    review.add_argument("--limit", type=int, default=50)
    review.set_defaults(handler=_cmd_review)

    resolve = sub.add_parser("resolve", help="Match titles against the catalog and log each attempt")
    resolve.add_argument("titles", nargs="+", help="Titles to match, optionally as \"Title (YYYY)\"")
    resolve.add_argument("--imdb", default=None, help="IMDb id applied to every title")
    resolve.add_argument("--concurrency", type=int, default=None, help="Parallel matching workers")
    resolve.set_defaults(handler=_cmd_resolve)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    working_dir = args.working_dir or resolve_working_dir()
    ensure_working_dir_structure(working_dir)
    logger = configure_json_logging(working_dir=working_dir)
    add_console_handler(logger, level=getattr(logging, str(args.log_level).upper(), logging.INFO))
    settings = load_settings(working_dir)
    try:
        store = _open_store(settings, working_dir)
    except CatalogError as exc:
        LOGGER.error("%s", exc)
        return 1
    try:
        return int(args.handler(args, settings, store))
    finally:
        store.close()


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
