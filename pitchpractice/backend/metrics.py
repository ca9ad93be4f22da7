from __future__ import annotations

import re
from collections import Counter
from typing import Iterable, Optional


PAUSE_GAP_SECONDS = 0.6
TOP_FILLER_COUNT = 5
FILLER_WORDS = frozenset({"um", "uh", "like", "actually", "basically", "literally"})
FILLER_PHRASES = frozenset({("you", "know"), ("kind", "of"), ("sort", "of")})
_EDGE_PUNCTUATION = ",.!?;:\"'"


def count_words(text: Optional[str]) -> int:
    return len((text or "").split())


def calculate_wpm(word_count: int, duration_seconds: Optional[float]) -> Optional[int]:
    """Words per minute rounded to an int; ``None`` when the duration is unknown."""
    if not duration_seconds or duration_seconds <= 0:
        return None
    return int(round(word_count * 60.0 / duration_seconds))


def _clean(token: str) -> str:
    return str(token or "").strip().lower().strip(_EDGE_PUNCTUATION)


def _seconds(value) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def count_fillers(tokens: Iterable[str]) -> Counter:
    tokens = list(tokens)
    counts: Counter = Counter(token for token in tokens if token in FILLER_WORDS)
    counts.update(" ".join(pair) for pair in zip(tokens, tokens[1:]) if pair in FILLER_PHRASES)
    return counts


def _pause_stats(words: list[dict]) -> tuple[int, float, list[str]]:
    timed = sorted(
        ((_seconds(w.get("start")), _seconds(w.get("end")), str(w.get("word") or "")) for w in words),
        key=lambda entry: entry[0],
    )
    gaps = [nxt[0] - cur[1] for cur, nxt in zip(timed, timed[1:])]
    pauses = sum(1 for gap in gaps if gap >= PAUSE_GAP_SECONDS)
    longest = max([0.0, *gaps])
    return pauses, longest, [_clean(entry[2]) for entry in timed]


def compute_delivery_metrics(transcript: str, words: Optional[list[dict]] = None) -> dict:
    """Pause and filler-word statistics for a transcript.

    Pauses need word timestamps; without them only filler counts are filled in.
    """
    if words:
        pause_count, longest, tokens = _pause_stats(words)
        longest_pause: Optional[float] = round(longest, 2)
    else:
        pause_count, longest_pause = None, None
        tokens = [_clean(raw) for raw in re.split(r"\s+", transcript or "") if raw]

    fillers = count_fillers(tokens)
    return {
        "pause_count": pause_count,
        "longest_pause_seconds": longest_pause,
        "filler_count": sum(fillers.values()),
        "top_fillers": [{"token": token, "count": n} for token, n in fillers.most_common(TOP_FILLER_COUNT)],
    }
