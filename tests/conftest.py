from collections.abc import Callable, Iterable
import threading

import pytest

from tally.errors import GenerationError
from tally.providers import CandidateGenerator


class ScriptedGenerator(CandidateGenerator):
    """Replays a fixed list of answers; entries that are exceptions are raised."""

    def __init__(self, answers: Iterable[object]):
        self.answers = list(answers)
        self.calls = 0
        self._lock = threading.Lock()

    def generate(self, task: str) -> str:
        with self._lock:
            if self.calls >= len(self.answers):
                raise AssertionError(f"generator asked for answer #{self.calls + 1}")
            answer = self.answers[self.calls]
            self.calls += 1
        if isinstance(answer, BaseException):
            raise answer
        return answer


@pytest.fixture
def scripted() -> Callable[..., ScriptedGenerator]:
    def _scripted(*answers: object) -> ScriptedGenerator:
        return ScriptedGenerator(answers)

    return _scripted


@pytest.fixture
def failure() -> Callable[[str], GenerationError]:
    def _failure(message: str = "boom") -> GenerationError:
        return GenerationError(message, generator="scripted")

    return _failure
