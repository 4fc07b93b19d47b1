"""Matching strategies, tried in order of decreasing confidence.

Each strategy is a plain function ``(request, movies) -> result | None`` over
an in-memory snapshot of catalog movies; none of them touch the database.
"""
from __future__ import annotations

import re
from typing import Callable, List, Optional, Sequence, Tuple

from catalog.store import MovieRow

from .types import DisambiguateRequest, DisambiguateResult, MatchedMovie

FUZZY_THRESHOLD = 0.85
FUZZY_CONFIDENCE_SCALE = 0.9

Strategy = Callable[[DisambiguateRequest, Sequence[MovieRow]], Optional[DisambiguateResult]]

_TRAILING_YEAR = re.compile(r"\s*\(\d{4}\)\s*$")
_LEADING_THE = re.compile(r"^the\s+")
_PUNCTUATION = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")


def normalize_title(value: str) -> str:
    text = value.lower()
    text = _TRAILING_YEAR.sub("", text)
    text = _LEADING_THE.sub("", text)
    text = _PUNCTUATION.sub("", text)
    text = _WHITESPACE.sub(" ", text)
    return text.strip()


def title_similarity(a: str, b: str) -> float:
    """Greedy character overlap between two normalized titles (0..1).

    Each character of the shorter string claims the first unused matching
    position in the longer one; the match count is divided by the longer
    length.
    """

    if a == b:
        return 1.0
    longer, shorter = (a, b) if len(a) > len(b) else (b, a)
    if not longer:
        return 1.0
    used = [False] * len(longer)
    matches = 0
    for ch in shorter:
        for idx, candidate in enumerate(longer):
            if not used[idx] and candidate == ch:
                used[idx] = True
                matches += 1
                break
    return matches / len(longer)


def _local_title(movie: MovieRow) -> str:
    return normalize_title(movie.parsed_title or movie.folder_name)


def _match(movie: MovieRow) -> MatchedMovie:
    return MatchedMovie(
        movie_id=movie.id,
        folder_path=movie.folder_path,
        parsed_title=movie.parsed_title,
        parsed_year=movie.parsed_year,
    )


def by_path(request: DisambiguateRequest, movies: Sequence[MovieRow]) -> Optional[DisambiguateResult]:
    if not request.folder_path:
        return None
    movie = next((m for m in movies if m.folder_path == request.folder_path), None)
    if movie is None:
        return None
    return DisambiguateResult(request.id, _match(movie), 1.0, "path")


def by_imdb(request: DisambiguateRequest, movies: Sequence[MovieRow]) -> Optional[DisambiguateResult]:
    if not request.imdb_id:
        return None
    movie = next((m for m in movies if m.imdb_id == request.imdb_id), None)
    if movie is None:
        return None
    return DisambiguateResult(request.id, _match(movie), 1.0, "imdb")


def by_title_year(
    request: DisambiguateRequest, movies: Sequence[MovieRow]
) -> Optional[DisambiguateResult]:
    if not request.year:
        return None
    wanted = normalize_title(request.title)
    for movie in movies:
        if movie.parsed_year != request.year and movie.jellyfin_year != request.year:
            continue
        if _local_title(movie) == wanted:
            return DisambiguateResult(request.id, _match(movie), 0.95, "title_year")
    return None


def by_title_only(
    request: DisambiguateRequest, movies: Sequence[MovieRow]
) -> Optional[DisambiguateResult]:
    wanted = normalize_title(request.title)
    movie = next((m for m in movies if _local_title(m) == wanted), None)
    if movie is None:
        return None
    mismatch = (
        request.year is not None
        and movie.parsed_year is not None
        and movie.parsed_year != request.year
    )
    return DisambiguateResult(
        request.id,
        _match(movie),
        0.75,
        "title_only",
        ambiguous=mismatch,
        ambiguous_reason="year_mismatch" if mismatch else None,
    )


def by_fuzzy_title(
    request: DisambiguateRequest, movies: Sequence[MovieRow]
) -> Optional[DisambiguateResult]:
    wanted = normalize_title(request.title)
    scored: List[Tuple[float, MovieRow]] = []
    for movie in movies:
        similarity = title_similarity(wanted, _local_title(movie))
        if similarity >= FUZZY_THRESHOLD:
            scored.append((similarity, movie))
    if not scored:
        return None
    # sorted() is stable: equal scores keep snapshot order.
    similarity, best = sorted(scored, key=lambda item: item[0], reverse=True)[0]
    mismatch = (
        request.year is not None and best.parsed_year is not None and best.parsed_year != request.year
    )
    return DisambiguateResult(
        request.id,
        _match(best),
        similarity * FUZZY_CONFIDENCE_SCALE,
        "fuzzy",
        ambiguous=True,
        ambiguous_reason="year_and_title_fuzzy" if mismatch else "title_fuzzy",
    )


STRATEGIES: Tuple[Strategy, ...] = (
    by_path,
    by_imdb,
    by_title_year,
    by_title_only,
    by_fuzzy_title,
)


__all__ = [
    "FUZZY_THRESHOLD",
    "STRATEGIES",
    "Strategy",
    "by_fuzzy_title",
    "by_imdb",
    "by_path",
    "by_title_only",
    "by_title_year",
    "normalize_title",
    "title_similarity",
]
