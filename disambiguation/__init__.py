"""Match media-server titles to catalog movies."""

from .engine import DisambiguationEngine
from .queue import run_disambiguation_queue
from .strategies import STRATEGIES, normalize_title, title_similarity
from .types import DisambiguateRequest, DisambiguateResult, MatchedMovie

__all__ = [
    "DisambiguateRequest",
    "DisambiguateResult",
    "DisambiguationEngine",
    "MatchedMovie",
    "STRATEGIES",
    "normalize_title",
    "run_disambiguation_queue",
    "title_similarity",
]
