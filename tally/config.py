"""
Configuration management for tally.
Loads from environment variables with sensible defaults.
"""

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Union

import yaml

from .errors import ConfigurationError

# Slack added on top of the 2k-1 minimum when no explicit cap is given.
DEFAULT_CANDIDATE_SLACK = 10

DEFAULT_MARKERS_FILE = Path(__file__).parent / "conf" / "red_flags.yaml"

# Full self-reversals outweigh mild hedges.
DEFAULT_MARKERS: Dict[str, float] = {
    "wait, maybe": 1.0,
    "not as we think": 1.0,
    "let me reconsider": 1.0,
    "on second thought": 1.0,
    "actually": 0.5,
    "hmm": 0.3,
    "wait": 0.3,
}

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class MarginStrategy(Enum):
    """How the leader's margin is measured."""
    RUNNER_UP = "runner_up"      # leader vs. second-place bucket
    ALL_OTHERS = "all_others"    # leader vs. sum of every other bucket


def default_max_candidates(k_margin: int, slack: int = DEFAULT_CANDIDATE_SLACK) -> int:
    """Conventional safety cap: the 2k-1 minimum plus some slack."""
    return 2 * k_margin - 1 + slack


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, "true" if default else "false").lower() == "true"


def load_marker_table(path: Union[str, Path]) -> Dict[str, float]:
    """
    Load a red-flag marker table from YAML.

    Expected layout:

        markers:
          "let me reconsider": 1.0
          "hmm": 0.3
    """
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Marker file not found: {path}")
    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}

    markers = data.get("markers") if isinstance(data, dict) else None
    if not isinstance(markers, dict) or not markers:
        raise ConfigurationError(f"{path} has no 'markers' mapping")

    table = {}
    for phrase, weight in markers.items():
        try:
            table[str(phrase)] = float(weight)
        except (TypeError, ValueError):
            raise ConfigurationError(f"Marker {phrase!r} has non-numeric weight {weight!r}")
    return table


@dataclass
class VotingConfig:
    """First-to-ahead-by-k parameters for a single round."""
    k_margin: int = 3
    max_candidates: Optional[int] = None  # None -> default_max_candidates(k_margin)
    margin_strategy: MarginStrategy = MarginStrategy.RUNNER_UP

    @property
    def effective_max_candidates(self) -> int:
        if self.max_candidates is None:
            return default_max_candidates(self.k_margin)
        return self.max_candidates

    def validate(self) -> None:
        if self.k_margin < 1:
            raise ConfigurationError(f"k_margin must be >= 1, got {self.k_margin}")
        minimum = 2 * self.k_margin - 1
        if self.effective_max_candidates < minimum:
            raise ConfigurationError(
                f"max_candidates must be >= 2*k_margin-1 = {minimum}, "
                f"got {self.effective_max_candidates}"
            )


@dataclass
class RedFlagConfig:
    """Configuration for the uncertainty detector."""
    enabled: bool = True
    threshold: float = 1.0
    markers: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_MARKERS))
    # Circular reasoning: share of repeated sentences, and the minimum
    # number of sentences before the check applies.
    circular_ratio: float = 0.7
    min_sentences: int = 4

    def validate(self) -> None:
        if self.threshold <= 0:
            raise ConfigurationError(f"threshold must be > 0, got {self.threshold}")
        if not 0 < self.circular_ratio <= 1:
            raise ConfigurationError(f"circular_ratio must be in (0, 1], got {self.circular_ratio}")
        if self.min_sentences < 2:
            raise ConfigurationError(f"min_sentences must be >= 2, got {self.min_sentences}")
        negative = [p for p, w in self.markers.items() if w < 0]
        if negative:
            raise ConfigurationError(f"Marker weights must be >= 0: {negative}")


@dataclass
class RunnerConfig:
    """How rounds are driven against a candidate generator."""
    concurrency: int = 3
    round_timeout_sec: Optional[float] = None
    max_generation_failures: int = 5

    def validate(self) -> None:
        if self.concurrency < 1:
            raise ConfigurationError(f"concurrency must be >= 1, got {self.concurrency}")
        if self.round_timeout_sec is not None and self.round_timeout_sec <= 0:
            raise ConfigurationError(f"round_timeout_sec must be > 0, got {self.round_timeout_sec}")
        if self.max_generation_failures < 0:
            raise ConfigurationError(
                f"max_generation_failures must be >= 0, got {self.max_generation_failures}"
            )


@dataclass
class GeneratorConfig:
    """Configuration for a CLI-backed candidate generator."""
    cmd: Optional[str] = None
    args: List[str] = field(default_factory=list)
    timeout_sec: int = 600
    max_output_chars: int = 20000


@dataclass
class TracingConfig:
    """Configuration for tracing and logging."""
    enabled: bool = True
    trace_dir: str = ".tally-traces"
    log_level: str = "INFO"


@dataclass
class TallyConfig:
    """Master configuration for tally."""

    voting: VotingConfig = field(default_factory=VotingConfig)
    red_flags: RedFlagConfig = field(default_factory=RedFlagConfig)
    runner: RunnerConfig = field(default_factory=RunnerConfig)
    generator: GeneratorConfig = field(default_factory=GeneratorConfig)
    tracing: TracingConfig = field(default_factory=TracingConfig)

    @classmethod
    def from_env(cls) -> "TallyConfig":
        """Load configuration from environment variables."""

        strategy = os.getenv("TALLY_MARGIN_STRATEGY", MarginStrategy.RUNNER_UP.value).lower()
        try:
            margin_strategy = MarginStrategy(strategy)
        except ValueError:
            raise ConfigurationError(
                f"TALLY_MARGIN_STRATEGY must be one of "
                f"{[s.value for s in MarginStrategy]}, got {strategy!r}"
            )

        voting = VotingConfig(
            k_margin=_env_int("TALLY_K_MARGIN", 3),
            max_candidates=_env_int("TALLY_MAX_CANDIDATES", None),
            margin_strategy=margin_strategy,
        )

        markers_file = os.getenv("TALLY_MARKERS_FILE")
        red_flags = RedFlagConfig(
            enabled=_env_bool("TALLY_RED_FLAGGING", True),
            threshold=_env_float("TALLY_RED_FLAG_THRESHOLD", 1.0),
            markers=load_marker_table(markers_file) if markers_file else dict(DEFAULT_MARKERS),
        )

        runner = RunnerConfig(
            concurrency=_env_int("TALLY_CONCURRENCY", 3),
            round_timeout_sec=_env_float("TALLY_ROUND_TIMEOUT", None),
            max_generation_failures=_env_int("TALLY_MAX_GENERATION_FAILURES", 5),
        )

        generator = GeneratorConfig(
            cmd=os.getenv("TALLY_GENERATOR_CMD") or None,
            args=os.getenv("TALLY_GENERATOR_ARGS", "").split(),
            timeout_sec=_env_int("TALLY_GENERATOR_TIMEOUT", 600),
            max_output_chars=_env_int("TALLY_GENERATOR_MAX_OUTPUT", 20000),
        )

        tracing = TracingConfig(
            enabled=_env_bool("TALLY_TRACING_ENABLED", True),
            trace_dir=os.getenv("TALLY_TRACE_DIR", ".tally-traces"),
            log_level=os.getenv("TALLY_LOG_LEVEL", "INFO"),
        )

        config = cls(
            voting=voting,
            red_flags=red_flags,
            runner=runner,
            generator=generator,
            tracing=tracing,
        )
        config.validate()
        return config

    def validate(self) -> None:
        self.voting.validate()
        self.red_flags.validate()
        self.runner.validate()


def configure_logging(level: Union[str, int] = "INFO") -> None:
    """Apply the standard tally log format to the root logger."""
    logging.basicConfig(level=level, format=LOG_FORMAT)
