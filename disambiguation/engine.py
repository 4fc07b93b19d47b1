from __future__ import annotations

from typing import List, Sequence

from catalog.store import MovieRow

from .strategies import STRATEGIES, Strategy
from .types import DisambiguateRequest, DisambiguateResult


class DisambiguationEngine:
    """Resolve external titles against a fixed snapshot of catalog movies."""

    def __init__(self, movies: Sequence[MovieRow], strategies: Sequence[Strategy] = STRATEGIES) -> None:
        self.movies = list(movies)
        self.strategies = tuple(strategies)

    def disambiguate(self, request: DisambiguateRequest) -> DisambiguateResult:
        for strategy in self.strategies:
            result = strategy(request, self.movies)
            if result is not None:
                return result
        return DisambiguateResult(request_id=request.id)

    def disambiguate_batch(self, requests: Sequence[DisambiguateRequest]) -> List[DisambiguateResult]:
        return [self.disambiguate(request) for request in requests]


__all__ = ["DisambiguationEngine"]
