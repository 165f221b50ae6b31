"""
tally - First-to-ahead-by-k voting for decomposed LLM tasks

Implements the error-correction kernel of MAKER ("Solving a Million-Step
LLM Task With Zero Errors"):
- Red-flagging: candidates that hedge, reverse themselves or loop are
  discarded rather than counted
- Normalization: trivially different renderings vote together
- First-to-ahead-by-k voting: stop as soon as one answer leads by k

Candidate generation is an external collaborator; tally only screens,
tallies and decides.
"""

__version__ = "0.1.0"

from .config import (
    TallyConfig, VotingConfig, RedFlagConfig, RunnerConfig, GeneratorConfig,
    TracingConfig, MarginStrategy, DEFAULT_MARKERS, default_max_candidates,
    load_marker_table, configure_logging,
)
from .errors import (
    TallyError, ConfigurationError, InvalidStateError, RoundAbortedError,
    GenerationError,
)
from .normalize import normalize
from .redflag import RedFlagDetector, RedFlagResult
from .voting import (
    RoundStatus, Candidate, VoteBucket, RoundResult, VotingRound,
    create_round, create_round_from_config, submit_candidate, get_result, abort,
)
from .providers import CandidateGenerator, FunctionGenerator, CommandGenerator
from .runner import VoteRunner, ExecutionStats
from .tracing import TraceStore
from .calibration import recommend_k, expected_candidates, calibrate, CalibrationResult

__all__ = [
    # Config
    "TallyConfig",
    "VotingConfig",
    "RedFlagConfig",
    "RunnerConfig",
    "GeneratorConfig",
    "TracingConfig",
    "MarginStrategy",
    "DEFAULT_MARKERS",
    "default_max_candidates",
    "load_marker_table",
    "configure_logging",
    # Errors
    "TallyError",
    "ConfigurationError",
    "InvalidStateError",
    "RoundAbortedError",
    "GenerationError",
    # Normalization / red flags
    "normalize",
    "RedFlagDetector",
    "RedFlagResult",
    # Voting
    "RoundStatus",
    "Candidate",
    "VoteBucket",
    "RoundResult",
    "VotingRound",
    "create_round",
    "create_round_from_config",
    "submit_candidate",
    "get_result",
    "abort",
    # Generators
    "CandidateGenerator",
    "FunctionGenerator",
    "CommandGenerator",
    # Runner
    "VoteRunner",
    "ExecutionStats",
    # Tracing
    "TraceStore",
    # Calibration
    "recommend_k",
    "expected_candidates",
    "calibrate",
    "CalibrationResult",
]
