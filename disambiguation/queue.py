"""Audited batch disambiguation on a small worker pool."""
from __future__ import annotations

import logging
import queue
import threading
from typing import Callable, Dict, List, Optional, Sequence

from catalog.store import CatalogStore
from robust import CancellationToken, is_cancelled

from .engine import DisambiguationEngine
from .types import DisambiguateRequest, DisambiguateResult

LOGGER = logging.getLogger("curatarr.disambiguation")

DEFAULT_CONCURRENCY = 4

ResultCallback = Callable[[DisambiguateResult], None]


def run_disambiguation_queue(
    job_id: str,
    requests: Sequence[DisambiguateRequest],
    store: CatalogStore,
    *,
    concurrency: int = DEFAULT_CONCURRENCY,
    cancellation: Optional[CancellationToken] = None,
    on_result: Optional[ResultCallback] = None,
) -> Dict[str, int]:
    engine = DisambiguationEngine(store.get_all_movies())
    work: "queue.Queue[DisambiguateRequest]" = queue.Queue()
    for request in requests:
        work.put(request)
    counts = {"total": 0, "ambiguous": 0}
    lock = threading.Lock()

    def _worker() -> None:
        while not is_cancelled(cancellation):
            try:
                request = work.get_nowait()
            except queue.Empty:
                return
            try:
                result = engine.disambiguate(request)
                store.log_disambiguation(
                    result,
                    job_id,
                    request.title,
                    request.year,
                    request.imdb_id,
                )
                with lock:
                    counts["total"] += 1
                    if result.ambiguous:
                        counts["ambiguous"] += 1
                if on_result is not None:
                    try:
                        on_result(result)
                    except Exception:
                        LOGGER.exception("Disambiguation result callback failed")
            except Exception:
                LOGGER.exception("Disambiguation failed for request %s", request.id)
            finally:
                work.task_done()

    workers: List[threading.Thread] = []
    for idx in range(min(max(1, int(concurrency)), len(requests))):
        thread = threading.Thread(target=_worker, name=f"disambiguate-{idx + 1}", daemon=True)
        thread.start()
        workers.append(thread)
    for thread in workers:
        thread.join()

    LOGGER.info(
        "Disambiguation job %s complete: %d resolved, %d ambiguous",
        job_id,
        counts["total"],
        counts["ambiguous"],
    )
    return counts


__all__ = ["run_disambiguation_queue"]
