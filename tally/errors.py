"""
Error taxonomy for the voting kernel.

Only structural misuse raises: bad configuration or calling a round in
the wrong state. Red-flagged candidates and exhausted rounds are normal
accounted outcomes and are reported through RoundStatus instead.
"""


class TallyError(Exception):
    """Base class for all tally errors."""


class ConfigurationError(TallyError, ValueError):
    """Invalid voting, red-flag or runner configuration. Not retryable."""


class InvalidStateError(TallyError, RuntimeError):
    """A round was used in a state that does not allow the operation."""


class RoundAbortedError(InvalidStateError):
    """The round was cancelled before any answer was declared final."""

    def __init__(self, task_id: str, reason: str = ""):
        self.task_id = task_id
        self.reason = reason
        message = f"Voting round {task_id} was aborted"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class GenerationError(TallyError):
    """A candidate generator failed to produce an answer."""

    def __init__(self, message: str, generator: str = "", returncode=None):
        self.generator = generator
        self.returncode = returncode
        super().__init__(message)
