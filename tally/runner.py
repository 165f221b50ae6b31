"""
Round runner: drives voting rounds against a candidate generator.

Generation may run concurrently, submission may not. run_async() keeps up
to `concurrency` generation calls in flight; each finished call is pushed
onto a queue and a single consumer drains it, stamping submission order
and calling submit_candidate(). Generation requests never exceed the
round's remaining candidate budget, and once the round terminates any
in-flight calls are cancelled and their results discarded.

Generator failures (GenerationError) never reach the round: they are
logged, counted, and abort the round once too many happen in a row.
"""

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, Union

from .config import RedFlagConfig, RunnerConfig, TallyConfig, VotingConfig, configure_logging
from .errors import GenerationError
from .providers import CandidateGenerator, as_generator
from .redflag import RedFlagDetector
from .tracing import TraceStore
from .voting import RoundResult, RoundStatus, VotingRound, create_round, get_result, submit_candidate

logger = logging.getLogger("tally.runner")

GeneratorLike = Union[CandidateGenerator, Callable[[str], str]]


@dataclass
class ExecutionStats:
    """Counters across every round driven by one runner."""
    rounds: int = 0
    won: int = 0
    exhausted: int = 0
    aborted: int = 0
    candidates_solicited: int = 0
    votes_cast: int = 0
    winning_votes: int = 0
    red_flags: int = 0
    generation_failures: int = 0

    def record(self, round_: VotingRound) -> None:
        self.rounds += 1
        self.candidates_solicited += round_.candidates_solicited
        self.red_flags += round_.red_flags_triggered
        self.votes_cast += round_.candidates_solicited - round_.red_flags_triggered

        if round_.status is RoundStatus.WON:
            self.won += 1
        elif round_.status is RoundStatus.EXHAUSTED:
            self.exhausted += 1
        elif round_.status is RoundStatus.ABORTED:
            self.aborted += 1

        if round_.status in (RoundStatus.WON, RoundStatus.EXHAUSTED):
            self.winning_votes += get_result(round_).vote_count

    def estimated_error_rate(self) -> float:
        """Share of tallied votes that went to a losing answer."""
        if self.votes_cast == 0:
            return 0.0
        return round(1 - self.winning_votes / self.votes_cast, 4)

    def reset(self) -> None:
        for name in asdict(self):
            setattr(self, name, 0)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["estimated_error_rate"] = self.estimated_error_rate()
        return d


class VoteRunner:
    """
    Runs first-to-ahead-by-k rounds for atomic tasks.

    Deciding whether a task should be decomposed, and composing subtask
    answers, is left to the caller; every unit handed to the runner is
    voted on the same way.
    """

    def __init__(
        self,
        voting: Optional[VotingConfig] = None,
        red_flags: Optional[RedFlagConfig] = None,
        runner: Optional[RunnerConfig] = None,
        trace_store: Optional[TraceStore] = None,
    ):
        self.voting = voting or VotingConfig()
        self.voting.validate()
        self.runner = runner or RunnerConfig()
        self.runner.validate()
        self.detector = RedFlagDetector(red_flags)
        self.trace_store = trace_store
        self.stats = ExecutionStats()

    @classmethod
    def from_config(cls, config: TallyConfig) -> "VoteRunner":
        configure_logging(config.tracing.log_level)
        trace_store = None
        if config.tracing.enabled:
            trace_store = TraceStore(trace_dir=config.tracing.trace_dir)
        return cls(
            voting=config.voting,
            red_flags=config.red_flags,
            runner=config.runner,
            trace_store=trace_store,
        )

    def new_round(self, task_id: Optional[str] = None) -> VotingRound:
        return create_round(
            k_margin=self.voting.k_margin,
            max_candidates=self.voting.max_candidates,
            task_id=task_id,
            margin_strategy=self.voting.margin_strategy,
            detector=self.detector,
        )

    # -------------------------------------------------------------------------
    # Bookkeeping
    # -------------------------------------------------------------------------

    def _note_failure(self, round_: VotingRound, error: GenerationError, failures: int) -> bool:
        """Count a generator failure. Returns True if the round was aborted."""
        self.stats.generation_failures += 1
        logger.warning(
            f"Round {round_.task_id}: candidate generation failed "
            f"({failures} in a row): {error}"
        )
        if failures > self.runner.max_generation_failures:
            round_.abort(f"{failures} consecutive generation failures")
            return True
        return False

    def _record(self, round_: VotingRound) -> None:
        self.stats.record(round_)
        if self.trace_store is None:
            return
        if round_.status is RoundStatus.ABORTED:
            self.trace_store.log_aborted(
                round_.task_id, round_.candidates_solicited, round_.red_flags_triggered
            )
        else:
            self.trace_store.log_round(get_result(round_))

    def _finish(self, round_: VotingRound) -> RoundResult:
        self._record(round_)
        # Raises RoundAbortedError for aborted rounds.
        return get_result(round_)

    # -------------------------------------------------------------------------
    # Serial driving
    # -------------------------------------------------------------------------

    def run(
        self,
        task: str,
        generator: GeneratorLike,
        task_id: Optional[str] = None,
    ) -> RoundResult:
        """Solicit candidates one at a time until the round terminates."""
        generator = as_generator(generator)
        round_ = self.new_round(task_id)
        timeout = self.runner.round_timeout_sec
        deadline = time.monotonic() + timeout if timeout else None
        failures = 0

        logger.info(
            f"Round {round_.task_id}: voting with k={round_.k_margin}, "
            f"cap={round_.max_candidates}, generator={generator.name}"
        )

        try:
            while not round_.is_terminal:
                if deadline is not None and time.monotonic() >= deadline:
                    round_.abort(f"timed out after {timeout}s")
                    break
                try:
                    raw_text = generator.generate(task)
                except GenerationError as e:
                    failures += 1
                    if self._note_failure(round_, e, failures):
                        break
                    continue
                failures = 0
                submit_candidate(round_, raw_text)
        except BaseException as e:
            round_.abort(f"interrupted by {type(e).__name__}")
            self._record(round_)
            raise

        return self._finish(round_)

    def run_all(
        self,
        tasks: List[str],
        generator: GeneratorLike,
    ) -> List[RoundResult]:
        """Vote on each atomic task in order. Stops at the first aborted round."""
        generator = as_generator(generator)
        return [self.run(task, generator) for task in tasks]

    # -------------------------------------------------------------------------
    # Concurrent generation, single consumer
    # -------------------------------------------------------------------------

    async def run_async(
        self,
        task: str,
        generator: GeneratorLike,
        task_id: Optional[str] = None,
    ) -> RoundResult:
        """Generate candidates concurrently; tally them through one consumer."""
        generator = as_generator(generator)
        round_ = self.new_round(task_id)
        timeout = self.runner.round_timeout_sec

        logger.info(
            f"Round {round_.task_id}: voting with k={round_.k_margin}, "
            f"cap={round_.max_candidates}, concurrency={self.runner.concurrency}, "
            f"generator={generator.name}"
        )

        consumer = asyncio.ensure_future(self._consume(round_, task, generator))
        try:
            # Only the round deadline counts as a timeout; a TimeoutError
            # raised by the generator propagates like any other error.
            done, _ = await asyncio.wait({consumer}, timeout=timeout)
            if consumer in done:
                consumer.result()
            else:
                await self._stop(consumer)
                round_.abort(f"timed out after {timeout}s")
        except BaseException as e:
            await self._stop(consumer)
            round_.abort(f"interrupted by {type(e).__name__}")
            self._record(round_)
            raise

        return self._finish(round_)

    @staticmethod
    async def _stop(consumer: "asyncio.Future[None]") -> None:
        if not consumer.done():
            consumer.cancel()
            await asyncio.gather(consumer, return_exceptions=True)

    async def _consume(
        self,
        round_: VotingRound,
        task: str,
        generator: CandidateGenerator,
    ) -> None:
        queue: "asyncio.Queue[Tuple[Optional[str], Optional[BaseException]]]" = asyncio.Queue()
        in_flight: Set[asyncio.Task] = set()
        outstanding = 0
        failures = 0

        async def produce() -> None:
            try:
                raw_text = await generator.generate_async(task)
            except Exception as e:
                await queue.put((None, e))
            else:
                await queue.put((raw_text, None))

        def fill() -> None:
            nonlocal outstanding
            while (
                outstanding < self.runner.concurrency
                and round_.candidates_solicited + outstanding < round_.max_candidates
            ):
                t = asyncio.ensure_future(produce())
                in_flight.add(t)
                t.add_done_callback(in_flight.discard)
                outstanding += 1

        try:
            fill()
            while not round_.is_terminal:
                raw_text, error = await queue.get()
                outstanding -= 1

                if error is not None:
                    if not isinstance(error, GenerationError):
                        raise error
                    failures += 1
                    if self._note_failure(round_, error, failures):
                        break
                else:
                    failures = 0
                    submit_candidate(round_, raw_text)

                if not round_.is_terminal:
                    fill()
        finally:
            for t in list(in_flight):
                t.cancel()
            if in_flight:
                await asyncio.gather(*in_flight, return_exceptions=True)
            if not queue.empty():
                logger.debug(
                    f"Round {round_.task_id}: discarded {queue.qsize()} late candidates"
                )
