"""
Candidate generators.

The voting kernel treats "produce one answer for this task" as an opaque
collaborator. This module gives that collaborator a shape:

- CandidateGenerator: base class, sync generate() plus generate_async()
  that runs on a shared thread pool
- FunctionGenerator: wraps any callable (sync or async)
- CommandGenerator: wraps a CLI (codex, gemini, claude, ollama, ...)

Security: CommandGenerator always uses shell=False.
"""

import asyncio
import inspect
import logging
import os
import subprocess
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from typing import Awaitable, Callable, Dict, List, Optional, Tuple, Type, Union

from .config import GeneratorConfig
from .errors import ConfigurationError, GenerationError

logger = logging.getLogger("tally.providers")

# Shared executor for async generation (avoids creating a new executor per call)
_SHARED_EXECUTOR: Optional[ThreadPoolExecutor] = None


def _get_shared_executor() -> ThreadPoolExecutor:
    """Get or create the shared thread pool executor."""
    global _SHARED_EXECUTOR
    if _SHARED_EXECUTOR is None:
        _SHARED_EXECUTOR = ThreadPoolExecutor(max_workers=8, thread_name_prefix="tally-gen")
    return _SHARED_EXECUTOR


class CandidateGenerator(ABC):
    """Produces one raw candidate answer per call. May be nondeterministic."""

    @property
    def name(self) -> str:
        return self.__class__.__name__.replace("Generator", "").lower()

    @abstractmethod
    def generate(self, task: str) -> str:
        """Return one raw candidate for the task, or raise GenerationError."""

    async def generate_async(self, task: str) -> str:
        """Run generate() on the shared thread pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(_get_shared_executor(), self.generate, task)


class FunctionGenerator(CandidateGenerator):
    """
    Adapts a plain function or coroutine function into a generator.

    Exceptions listed in `retry_on` (e.g. ConnectionError) are re-raised
    as GenerationError, so the runner counts them and asks again instead
    of aborting the round.
    """

    def __init__(
        self,
        fn: Callable[[str], Union[str, Awaitable[str]]],
        name: Optional[str] = None,
        retry_on: Tuple[Type[BaseException], ...] = (),
    ):
        self.fn = fn
        self._name = name or getattr(fn, "__name__", "function")
        self._is_async = inspect.iscoroutinefunction(fn)
        self.retry_on = tuple(retry_on)

    @property
    def name(self) -> str:
        return self._name

    def _as_generation_error(self, error: BaseException) -> GenerationError:
        return GenerationError(f"{self.name} failed: {type(error).__name__}: {error}", generator=self.name)

    def generate(self, task: str) -> str:
        try:
            if self._is_async:
                return asyncio.run(self.fn(task))
            return self.fn(task)
        except self.retry_on as e:
            raise self._as_generation_error(e) from e

    async def generate_async(self, task: str) -> str:
        if not self._is_async:
            return await super().generate_async(task)
        try:
            return await self.fn(task)
        except self.retry_on as e:
            raise self._as_generation_error(e) from e


class CommandGenerator(CandidateGenerator):
    """
    CLI-backed generator.
    Command: <cmd> <args...> <task>

    Returns stdout with surrounding whitespace stripped. Non-zero exit,
    timeout and a missing binary raise GenerationError.
    """

    def __init__(
        self,
        cmd: str,
        args: Optional[List[str]] = None,
        timeout_sec: int = 600,
        max_output_chars: int = 20000,
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[str] = None,
    ):
        if not cmd:
            raise ConfigurationError("CommandGenerator requires a command")
        self.cmd = cmd
        self.args = list(args or [])
        self.timeout_sec = timeout_sec
        self.max_output_chars = max_output_chars
        self.env = {**os.environ, **(env or {})}
        self.cwd = cwd

    @property
    def name(self) -> str:
        return os.path.basename(self.cmd)

    @classmethod
    def from_config(cls, config: GeneratorConfig) -> "CommandGenerator":
        return cls(
            cmd=config.cmd or "",
            args=config.args,
            timeout_sec=config.timeout_sec,
            max_output_chars=config.max_output_chars,
        )

    def build_command(self, task: str) -> List[str]:
        return [self.cmd, *self.args, task]

    def generate(self, task: str) -> str:
        cmd = self.build_command(task)
        logger.info(f"Executing {self.name}: timeout={self.timeout_sec}s, task_len={len(task)}")
        start_time = time.time()

        try:
            result = subprocess.run(
                cmd,
                text=True,
                capture_output=True,
                timeout=self.timeout_sec,
                cwd=self.cwd,
                env=self.env,
                shell=False,
            )
        except subprocess.TimeoutExpired:
            raise GenerationError(
                f"{self.name} timed out after {self.timeout_sec}s", generator=self.name
            )
        except FileNotFoundError:
            raise GenerationError(
                f"CLI not found: {self.cmd}. Please ensure it's installed and in PATH.",
                generator=self.name,
            )

        elapsed_ms = (time.time() - start_time) * 1000
        if result.returncode != 0:
            stderr = (result.stderr or "").strip()[:500]
            raise GenerationError(
                f"{self.name} exited with {result.returncode}: {stderr}",
                generator=self.name,
                returncode=result.returncode,
            )

        stdout = result.stdout or ""
        if len(stdout) > self.max_output_chars:
            logger.warning(
                f"{self.name} output truncated from {len(stdout)} to {self.max_output_chars} chars"
            )
            stdout = stdout[: self.max_output_chars]

        logger.debug(f"{self.name} answered in {elapsed_ms:.0f}ms ({len(stdout)} chars)")
        return stdout.strip()


def as_generator(source: Union[CandidateGenerator, Callable[[str], str]]) -> CandidateGenerator:
    """Accept a generator instance or a bare callable."""
    if isinstance(source, CandidateGenerator):
        return source
    if callable(source):
        return FunctionGenerator(source)
    raise ConfigurationError(f"Not a candidate generator: {source!r}")
