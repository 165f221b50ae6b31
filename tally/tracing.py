"""
Tracing for voting rounds.

Every terminated round is appended as one JSON line to
<trace_dir>/rounds_<session_id>.jsonl and kept in memory for quick
summaries. Raw answers are not written; buckets are identified by a
digest of their normalized key.
"""

import json
import logging
from collections import defaultdict
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from .normalize import key_digest
from .voting import RoundResult

logger = logging.getLogger("tally.tracing")


@dataclass
class RoundTrace:
    """Trace of a single terminated round."""
    timestamp: str
    task_id: str
    status: str
    winner_hash: Optional[str]
    winner_preview: Optional[str]
    vote_count: int
    margin: int
    candidates_solicited: int
    red_flags_triggered: int
    vote_distribution: Dict[str, int]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


class TraceStore:
    """
    Append-only JSONL storage for round outcomes.

    Features:
    - One file per session
    - In-memory recent traces (bounded)
    - Aggregate summary by terminal status
    """

    def __init__(
        self,
        trace_dir: str = ".tally-traces",
        session_id: Optional[str] = None,
        max_memory_entries: int = 1000,
        preview_chars: int = 80,
    ):
        self.trace_dir = Path(trace_dir)
        self.trace_dir.mkdir(parents=True, exist_ok=True)

        self.session_id = session_id or datetime.now().strftime("%Y%m%d_%H%M%S")
        self.trace_file = self.trace_dir / f"rounds_{self.session_id}.jsonl"

        self.entries: List[RoundTrace] = []
        self.max_memory_entries = max_memory_entries
        self.preview_chars = preview_chars

        self._by_status: Dict[str, int] = defaultdict(int)
        self._total_rounds = 0
        self._total_candidates = 0
        self._total_red_flags = 0

    def _now(self) -> str:
        return datetime.now().isoformat()

    def _append(self, trace: RoundTrace) -> None:
        """Append trace to memory and file."""
        self.entries.append(trace)

        try:
            with open(self.trace_file, "a") as f:
                f.write(trace.to_json() + "\n")
        except OSError as e:
            logger.warning(f"Failed to write trace: {e}")

        if len(self.entries) > self.max_memory_entries:
            self.entries = self.entries[-self.max_memory_entries:]

    def log_round(self, result: RoundResult) -> RoundTrace:
        """Record a terminated round."""
        winner_hash = key_digest(result.normalized_key) if result.normalized_key is not None else None
        preview = None
        if result.winning_text is not None:
            preview = result.winning_text[: self.preview_chars]

        trace = RoundTrace(
            timestamp=self._now(),
            task_id=result.task_id,
            status=result.status.value,
            winner_hash=winner_hash,
            winner_preview=preview,
            vote_count=result.vote_count,
            margin=result.margin,
            candidates_solicited=result.candidates_solicited,
            red_flags_triggered=result.red_flags_triggered,
            vote_distribution={
                key_digest(key): count for key, count in result.vote_distribution.items()
            },
        )
        self._append(trace)

        self._by_status[trace.status] += 1
        self._total_rounds += 1
        self._total_candidates += trace.candidates_solicited
        self._total_red_flags += trace.red_flags_triggered
        return trace

    def log_aborted(self, task_id: str, candidates_solicited: int, red_flags_triggered: int) -> RoundTrace:
        """Record a round that was cancelled before producing a result."""
        trace = RoundTrace(
            timestamp=self._now(),
            task_id=task_id,
            status="aborted",
            winner_hash=None,
            winner_preview=None,
            vote_count=0,
            margin=0,
            candidates_solicited=candidates_solicited,
            red_flags_triggered=red_flags_triggered,
            vote_distribution={},
        )
        self._append(trace)

        self._by_status[trace.status] += 1
        self._total_rounds += 1
        self._total_candidates += candidates_solicited
        self._total_red_flags += red_flags_triggered
        return trace

    def get_recent_entries(self, n: int = 50) -> List[Dict[str, Any]]:
        """Get recent trace entries."""
        return [e.to_dict() for e in self.entries[-n:]]

    def get_summary(self) -> Dict[str, Any]:
        """Aggregate statistics over every round logged this session."""
        return {
            "session_id": self.session_id,
            "total_rounds": self._total_rounds,
            "by_status": dict(self._by_status),
            "total_candidates": self._total_candidates,
            "total_red_flags": self._total_red_flags,
            "avg_candidates_per_round": (
                self._total_candidates / self._total_rounds if self._total_rounds else 0.0
            ),
            "trace_file": str(self.trace_file),
        }
