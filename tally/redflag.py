"""
Uncertainty detector (red-flag scanner).

A candidate that visibly doubts itself is discarded before voting rather
than counted as a full vote. Two signals are combined:

1. Marker phrases: a weighted table of hedging and self-reversal phrases
   ("let me reconsider", "actually", "hmm", ...). Each marker counts once
   no matter how often it repeats.
2. Circular reasoning: when most sentences of the answer are verbatim
   repeats of one another, the answer is treated as degenerate and is
   flagged regardless of the marker score.

The detector only classifies. Resampling a flagged candidate is the
caller's job.
"""

import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .config import RedFlagConfig

logger = logging.getLogger("tally.redflag")

SENTENCE_SPLIT_RE = re.compile(r"[.!?]+")


@dataclass(frozen=True)
class RedFlagResult:
    """Classification of a single raw candidate."""
    is_flagged: bool
    score: float
    markers: Tuple[str, ...] = field(default_factory=tuple)
    circular: bool = False

    def to_dict(self) -> Dict[str, object]:
        return {
            "is_flagged": self.is_flagged,
            "score": self.score,
            "markers": list(self.markers),
            "circular": self.circular,
        }


def split_sentences(text: str) -> List[str]:
    """Split on '.', '!' and '?', dropping empty fragments."""
    return [s.strip() for s in SENTENCE_SPLIT_RE.split(text) if s.strip()]


def duplicate_ratio(sentences: List[str]) -> float:
    """Fraction of sentences that exactly repeat another sentence."""
    if not sentences:
        return 0.0
    counts = Counter(sentences)
    repeated = sum(n for n in counts.values() if n > 1)
    return repeated / len(sentences)


class RedFlagDetector:
    """
    Scores raw candidates for self-doubt and degenerate repetition.

    Stateless after construction, so one detector can be shared by any
    number of concurrent generation workers.
    """

    def __init__(self, config: Optional[RedFlagConfig] = None):
        self.config = config or RedFlagConfig()
        self.config.validate()
        # Longest phrases first so reports list "wait, maybe" before "wait".
        self._markers = sorted(
            ((phrase.casefold(), phrase, weight) for phrase, weight in self.config.markers.items()),
            key=lambda m: (-len(m[0]), m[0]),
        )

    @property
    def threshold(self) -> float:
        return self.config.threshold

    def marker_score(self, raw_text: str) -> Tuple[float, Tuple[str, ...]]:
        """Sum the weights of all markers present, each counted once."""
        haystack = raw_text.casefold()
        found = []
        score = 0.0
        for needle, phrase, weight in self._markers:
            if needle and needle in haystack:
                found.append(phrase)
                score += weight
        return score, tuple(found)

    def is_circular(self, raw_text: str) -> bool:
        """True when at least circular_ratio of the sentences are repeats."""
        sentences = split_sentences(raw_text)
        if len(sentences) < self.config.min_sentences:
            return False
        return duplicate_ratio(sentences) >= self.config.circular_ratio

    def scan(self, raw_text: str) -> RedFlagResult:
        """Classify a raw candidate. Never raises."""
        if not self.config.enabled:
            return RedFlagResult(is_flagged=False, score=0.0)

        score, markers = self.marker_score(raw_text)
        circular = self.is_circular(raw_text)
        if circular:
            score += self.config.threshold

        score = round(score, 6)
        is_flagged = circular or score >= self.config.threshold
        if is_flagged:
            logger.debug(
                f"Red flag: score={score:.2f} markers={list(markers)} circular={circular}"
            )
        return RedFlagResult(
            is_flagged=is_flagged,
            score=score,
            markers=markers,
            circular=circular,
        )
