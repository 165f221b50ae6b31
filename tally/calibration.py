"""
Calibration helpers for choosing k.

From the MAKER analysis: with per-step accuracy p (among valid samples)
the probability that first-to-ahead-by-k picks the right answer is
roughly 1 - ((1-p)/p)^k, and a task of S steps succeeds with that
probability raised to S. These helpers pick the smallest k that meets a
target overall success rate and estimate what it costs.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from .config import default_max_candidates
from .errors import ConfigurationError, GenerationError
from .redflag import RedFlagDetector

logger = logging.getLogger("tally.calibration")


@dataclass
class CalibrationResult:
    """Result of a calibration pass."""
    estimated_p: float      # accuracy among valid samples
    estimated_v: float      # valid (non-red-flagged) rate
    recommended_k: int
    recommended_max_candidates: int
    target_success_rate: float
    total_steps: int
    expected_candidates: float
    samples: int


def recommend_k(
    p: float,
    total_steps: int,
    target_success_rate: float = 0.99,
    max_k: int = 20,
) -> int:
    """Smallest k whose approximate overall success reaches the target."""
    if not 0 < target_success_rate < 1:
        raise ConfigurationError(f"target_success_rate must be in (0, 1), got {target_success_rate}")
    if total_steps < 1:
        raise ConfigurationError(f"total_steps must be >= 1, got {total_steps}")
    if p >= 1.0:
        return 1
    if p <= 0.5:
        raise ConfigurationError(
            f"Voting cannot correct errors when p <= 0.5 (got p={p:.3f})"
        )

    ratio = (1 - p) / p
    for k in range(1, max_k + 1):
        step_accuracy = 1 - ratio ** k
        if step_accuracy ** total_steps >= target_success_rate:
            return k
    logger.warning(f"No k <= {max_k} reaches {target_success_rate} for p={p:.3f}; using {max_k}")
    return max_k


def expected_candidates(k: int, p: float, valid_rate: float = 1.0) -> float:
    """Approximate number of candidates a round consumes before a k-lead."""
    if p <= 0.5 or valid_rate <= 0:
        return float("inf")
    return k / ((2 * p - 1) * valid_rate)


def estimate_step_accuracy(
    sample_fn: Callable[[], str],
    oracle_fn: Callable[[str], bool],
    detector: Optional[RedFlagDetector] = None,
    num_samples: int = 20,
) -> Tuple[float, float]:
    """
    Estimate p (accuracy among valid samples) and v (valid rate).

    Samples whose generation fails count as invalid.
    """
    if num_samples < 1:
        raise ConfigurationError(f"num_samples must be >= 1, got {num_samples}")
    detector = detector or RedFlagDetector()
    valid = 0
    correct = 0

    for _ in range(num_samples):
        try:
            content = sample_fn()
        except GenerationError as e:
            logger.warning(f"Calibration sample failed: {e}")
            continue

        if detector.scan(content).is_flagged:
            continue
        valid += 1
        if oracle_fn(content):
            correct += 1

    v = valid / num_samples
    p = correct / valid if valid else 0.0
    return p, v


def calibrate(
    sample_fn: Callable[[], str],
    oracle_fn: Callable[[str], bool],
    total_steps: int,
    target_success_rate: float = 0.99,
    detector: Optional[RedFlagDetector] = None,
    num_samples: int = 20,
) -> CalibrationResult:
    """Estimate p and v from samples, then recommend k and a candidate cap."""
    p, v = estimate_step_accuracy(sample_fn, oracle_fn, detector, num_samples)
    k = recommend_k(p, total_steps, target_success_rate)
    cost = expected_candidates(k, p, v)

    return CalibrationResult(
        estimated_p=p,
        estimated_v=v,
        recommended_k=k,
        recommended_max_candidates=default_max_candidates(k),
        target_success_rate=target_success_rate,
        total_steps=total_steps,
        expected_candidates=cost,
        samples=num_samples,
    )
