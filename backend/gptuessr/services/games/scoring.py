"""Ranking and the guess-scoring seam.

Guess scoring (prompt vs. guess text) is an external capability. The engine
calls a ``GuessScorer``: ``(player_id, prompt, guess_text, response_time_ms)``
returning ``(score, accuracy)``.
"""
from typing import Callable, Iterable, List, Mapping, Optional, Tuple

GuessScorer = Callable[[str, str, str, int], Tuple[int, float]]


def rank_entries(entries: Iterable[Tuple[str, int]]) -> List[Tuple[str, int]]:
    """Sort (player_id, score) pairs by score, highest first.

    Ties keep their insertion order.
    """
    return sorted(entries, key=lambda entry: entry[1], reverse=True)


def best_entry(entries: Iterable[Tuple[str, int]]) -> Optional[Tuple[str, int]]:
    best = None
    for entry in entries:
        if best is None or entry[1] > best[1]:
            best = entry
    return best


def scorer_from_results(results: Mapping[str, Mapping]) -> GuessScorer:
    """Adapt externally computed per-player results to the engine's scorer call.

    ``results`` maps player id to ``{'score': int, 'accuracy': float}``. Players
    absent from the mapping score zero.
    """
    def _score(player_id, prompt, guess_text, response_time_ms):
        result = results.get(player_id) or {}
        return int(result.get('score', 0)), float(result.get('accuracy', 0.0))

    return _score

