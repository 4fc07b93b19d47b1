from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

METHODS = ("path", "imdb", "title_year", "title_only", "fuzzy", "none")
AMBIGUOUS_REASONS = ("year_mismatch", "title_fuzzy", "year_and_title_fuzzy")


@dataclass(slots=True)
class DisambiguateRequest:
    id: str
    title: str
    year: Optional[int] = None
    imdb_id: Optional[str] = None
    folder_path: Optional[str] = None


@dataclass(slots=True)
class MatchedMovie:
    movie_id: int
    folder_path: str
    parsed_title: Optional[str]
    parsed_year: Optional[int]


@dataclass(slots=True)
class DisambiguateResult:
    request_id: str
    match: Optional[MatchedMovie] = None
    confidence: float = 0.0
    method: str = "none"
    ambiguous: bool = False
    ambiguous_reason: Optional[str] = None


__all__ = [
    "AMBIGUOUS_REASONS",
    "DisambiguateRequest",
    "DisambiguateResult",
    "METHODS",
    "MatchedMovie",
]
