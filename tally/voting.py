"""
First-to-ahead-by-k voting.

Implements the error-correction step of MAKER ("Solving a Million-Step
LLM Task With Zero Errors"): candidates for one atomic task are tallied
one at a time and the round stops as soon as the leading answer is k
votes ahead of its closest competitor.

Algorithm (per submission):
1. Red-flag screen the raw candidate; flagged candidates are accounted
   for but never tallied
2. Normalize the survivor into a bucket key
3. Increment (or create) the bucket
4. If leader - runner_up >= k: WON
5. If the safety cap is reached: EXHAUSTED with the plurality leader
6. Otherwise PENDING

A VotingRound is owned by a single consumer. Generation may be
concurrent, submission may not.
"""

import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from .config import MarginStrategy, RedFlagConfig, VotingConfig
from .errors import InvalidStateError, RoundAbortedError
from .normalize import key_digest, normalize
from .redflag import RedFlagDetector, RedFlagResult

logger = logging.getLogger("tally.voting")


class RoundStatus(Enum):
    """Lifecycle state of a voting round."""
    PENDING = "pending"
    WON = "won"
    EXHAUSTED = "exhausted"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self is not RoundStatus.PENDING


@dataclass(frozen=True)
class Candidate:
    """A single submitted proposal, as seen by the round."""
    raw_text: str
    normalized_key: str
    uncertainty_score: float
    is_flagged: bool
    sequence: int


@dataclass
class VoteBucket:
    """All accepted candidates sharing one normalized key."""
    normalized_key: str
    exemplar_text: str
    created_seq: int
    count: int = 1


@dataclass(frozen=True)
class RoundResult:
    """Final, immutable outcome of a terminated round."""
    task_id: str
    status: RoundStatus
    winning_text: Optional[str]
    vote_count: int
    normalized_key: Optional[str]
    margin: int
    candidates_solicited: int
    red_flags_triggered: int
    vote_distribution: Dict[str, int] = field(default_factory=dict)

    @property
    def converged(self) -> bool:
        return self.status is RoundStatus.WON

    def to_dict(self) -> Dict[str, object]:
        return {
            "task_id": self.task_id,
            "status": self.status.value,
            "winning_text": self.winning_text,
            "vote_count": self.vote_count,
            "winner_hash": key_digest(self.normalized_key) if self.normalized_key is not None else None,
            "margin": self.margin,
            "candidates_solicited": self.candidates_solicited,
            "red_flags_triggered": self.red_flags_triggered,
            "vote_distribution": {
                key_digest(key): count for key, count in self.vote_distribution.items()
            },
        }


class VotingRound:
    """
    State of one first-to-ahead-by-k consensus process.

    Terminates in WON (a bucket reached the margin), EXHAUSTED (cap
    reached, best-effort plurality answer) or ABORTED (external
    cancellation). A terminated round rejects further submissions.
    """

    def __init__(
        self,
        k_margin: int,
        max_candidates: Optional[int] = None,
        task_id: Optional[str] = None,
        margin_strategy: MarginStrategy = MarginStrategy.RUNNER_UP,
        detector: Optional[RedFlagDetector] = None,
    ):
        config = VotingConfig(
            k_margin=k_margin,
            max_candidates=max_candidates,
            margin_strategy=margin_strategy,
        )
        config.validate()

        self.task_id = task_id or uuid.uuid4().hex[:12]
        self.k_margin = config.k_margin
        self.max_candidates = config.effective_max_candidates
        self.margin_strategy = config.margin_strategy
        self.detector = detector or RedFlagDetector()

        self.buckets: Dict[str, VoteBucket] = {}
        self.candidates_solicited = 0
        self.red_flags_triggered = 0
        self.status = RoundStatus.PENDING
        self.abort_reason = ""
        self._result: Optional[RoundResult] = None

    def __repr__(self) -> str:
        return (
            f"VotingRound(task_id={self.task_id!r}, status={self.status.value}, "
            f"k={self.k_margin}, solicited={self.candidates_solicited}/{self.max_candidates})"
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def remaining(self) -> int:
        """Candidates that may still be solicited before the cap."""
        return self.max_candidates - self.candidates_solicited

    def _ensure_pending(self) -> None:
        if self.status is not RoundStatus.PENDING:
            raise InvalidStateError(
                f"Round {self.task_id} is {self.status.value}; no further candidates accepted"
            )

    # -------------------------------------------------------------------------
    # Ranking
    # -------------------------------------------------------------------------

    def ranked_buckets(self) -> List[VoteBucket]:
        """Buckets by count descending, earliest-created first among ties."""
        return sorted(self.buckets.values(), key=lambda b: (-b.count, b.created_seq))

    def leader_margin(self) -> Tuple[Optional[VoteBucket], int]:
        """Current leader and its margin under the configured strategy."""
        ranked = self.ranked_buckets()
        if not ranked:
            return None, 0
        leader = ranked[0]
        if self.margin_strategy is MarginStrategy.ALL_OTHERS:
            others = sum(b.count for b in ranked[1:])
        else:
            others = ranked[1].count if len(ranked) > 1 else 0
        return leader, leader.count - others

    def vote_distribution(self) -> Dict[str, int]:
        return {b.normalized_key: b.count for b in self.ranked_buckets()}

    # -------------------------------------------------------------------------
    # Submission
    # -------------------------------------------------------------------------

    def submit(self, normalized_key: str, exemplar_text: str) -> RoundStatus:
        """Tally one accepted candidate and re-evaluate termination."""
        self._ensure_pending()

        bucket = self.buckets.get(normalized_key)
        if bucket is None:
            self.buckets[normalized_key] = VoteBucket(
                normalized_key=normalized_key,
                exemplar_text=exemplar_text,
                created_seq=self.candidates_solicited,
            )
        else:
            bucket.count += 1
        self.candidates_solicited += 1

        leader, margin = self.leader_margin()
        logger.debug(
            f"Round {self.task_id}: vote {self.candidates_solicited}/{self.max_candidates} "
            f"for {key_digest(normalized_key)}, leader margin {margin}"
        )

        if margin >= self.k_margin:
            return self._terminate(RoundStatus.WON, leader, margin)
        return self._check_cap()

    def reject(self, score: float = 0.0) -> RoundStatus:
        """Account for a red-flagged candidate: counts toward the cap only."""
        self._ensure_pending()
        self.red_flags_triggered += 1
        self.candidates_solicited += 1
        logger.debug(
            f"Round {self.task_id}: discarded red-flagged candidate "
            f"(score={score:.2f}, flags={self.red_flags_triggered})"
        )
        return self._check_cap()

    def _check_cap(self) -> RoundStatus:
        if self.candidates_solicited >= self.max_candidates:
            leader, margin = self.leader_margin()
            return self._terminate(RoundStatus.EXHAUSTED, leader, margin)
        return RoundStatus.PENDING

    def abort(self, reason: str = "") -> bool:
        """Cancel a pending round. Returns False if it had already terminated."""
        if self.is_terminal:
            return False
        self.status = RoundStatus.ABORTED
        self.abort_reason = reason
        logger.info(f"Round {self.task_id} aborted{': ' + reason if reason else ''}")
        return True

    def _terminate(
        self,
        status: RoundStatus,
        leader: Optional[VoteBucket],
        margin: int,
    ) -> RoundStatus:
        self.status = status
        self._result = RoundResult(
            task_id=self.task_id,
            status=status,
            winning_text=leader.exemplar_text if leader else None,
            vote_count=leader.count if leader else 0,
            normalized_key=leader.normalized_key if leader else None,
            margin=margin,
            candidates_solicited=self.candidates_solicited,
            red_flags_triggered=self.red_flags_triggered,
            vote_distribution=self.vote_distribution(),
        )
        if status is RoundStatus.WON:
            logger.info(
                f"Round {self.task_id} won after {self.candidates_solicited} candidates "
                f"({leader.count} votes, margin {margin})"
            )
        elif leader is None:
            logger.warning(
                f"Round {self.task_id} exhausted after {self.candidates_solicited} candidates "
                f"with no valid votes ({self.red_flags_triggered} red-flagged)"
            )
        else:
            logger.info(
                f"Round {self.task_id} exhausted after {self.candidates_solicited} candidates; "
                f"best effort has {leader.count} votes (margin {margin} < {self.k_margin})"
            )
        return status

    # -------------------------------------------------------------------------
    # Results
    # -------------------------------------------------------------------------

    def result(self) -> RoundResult:
        """Terminal result. Raises while pending or once aborted."""
        if self.status is RoundStatus.ABORTED:
            raise RoundAbortedError(self.task_id, self.abort_reason)
        if self._result is None:
            raise InvalidStateError(f"Round {self.task_id} is still pending")
        return self._result


# =============================================================================
# Boundary interface
# =============================================================================

def create_round(
    k_margin: int,
    max_candidates: Optional[int] = None,
    task_id: Optional[str] = None,
    margin_strategy: MarginStrategy = MarginStrategy.RUNNER_UP,
    detector: Optional[RedFlagDetector] = None,
) -> VotingRound:
    """
    Create a voting round for one atomic task.

    Raises ConfigurationError if k_margin < 1 or max_candidates < 2*k_margin-1.
    When max_candidates is omitted the cap defaults to 2*k_margin-1 plus slack.
    """
    return VotingRound(
        k_margin=k_margin,
        max_candidates=max_candidates,
        task_id=task_id,
        margin_strategy=margin_strategy,
        detector=detector,
    )


def create_round_from_config(
    voting: VotingConfig,
    red_flags: Optional[RedFlagConfig] = None,
    task_id: Optional[str] = None,
) -> VotingRound:
    """Create a round from configuration objects."""
    return create_round(
        k_margin=voting.k_margin,
        max_candidates=voting.max_candidates,
        task_id=task_id,
        margin_strategy=voting.margin_strategy,
        detector=RedFlagDetector(red_flags),
    )


def screen_candidate(
    raw_text: str,
    detector: RedFlagDetector,
    sequence: int = 0,
) -> Tuple[Candidate, RedFlagResult]:
    """Red-flag and normalize a raw candidate without touching any round."""
    flag = detector.scan(raw_text)
    candidate = Candidate(
        raw_text=raw_text,
        normalized_key=normalize(raw_text),
        uncertainty_score=flag.score,
        is_flagged=flag.is_flagged,
        sequence=sequence,
    )
    return candidate, flag


def submit_candidate(round_: VotingRound, raw_text: str) -> RoundStatus:
    """
    Screen, normalize and tally raw generator output.

    Raises InvalidStateError if the round has already terminated.
    """
    round_._ensure_pending()
    candidate, _ = screen_candidate(raw_text, round_.detector, round_.candidates_solicited)
    if candidate.is_flagged:
        return round_.reject(candidate.uncertainty_score)
    return round_.submit(candidate.normalized_key, candidate.raw_text)


def get_result(round_: VotingRound) -> RoundResult:
    """Result of a WON or EXHAUSTED round; the same object on every call."""
    return round_.result()


def abort(round_: VotingRound, reason: str = "") -> bool:
    """External cancellation hook."""
    return round_.abort(reason)
