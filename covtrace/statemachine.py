"""The state machine that drives a traced test run and its shared types."""

from __future__ import annotations

import abc
import enum
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Generic, Optional, TypeVar, Union


class RunError(Exception):
    """Base class of errors raised while collecting coverage from a test."""


class TestRuntimeError(RunError):
    """The test misbehaved or timed out while being traced."""

    __test__ = False


class TestFailedError(RunError):
    """The test ran to completion but reported failure."""

    __test__ = False


class TestCoverageError(RunError):
    """Coverage data could not be gathered from the test."""

    __test__ = False


class StateMachineError(RunError):
    """The state machine was driven in a way it cannot handle."""


class TraceEngine(enum.Enum):
    """The means used to collect coverage."""

    PTRACE = "ptrace"
    LLVM = "llvm"
    AUTO = "auto"


@dataclass
class TraceConfig:
    """Settings that control how a test is traced."""

    root: Union[str, Path] = Path(".")
    target_dir: Optional[Union[str, Path]] = None
    profraw_dir: Optional[Union[str, Path]] = None
    test_timeout: float = 60.0
    post_test_delay: Optional[float] = None
    forward_signals: bool = True
    follow_exec: bool = False
    count: bool = False
    engine: TraceEngine = TraceEngine.PTRACE
    rust_flags: str = ""

    def __post_init__(self) -> None:
        self.root = Path(self.root)
        self.target_dir = (
            self.root / "target" if self.target_dir is None else Path(self.target_dir)
        )
        if self.profraw_dir is not None:
            self.profraw_dir = Path(self.profraw_dir)


class StateKind(enum.Enum):
    """The stages a traced test passes through."""

    START = "start"
    INITIALISE = "initialise"
    WAITING = "waiting"
    STOPPED = "stopped"
    END = "end"


@dataclass(frozen=True)
class TestState:
    """The current state of a traced test.

    START and WAITING carry the monotonic time they began, END carries the
    exit code of the test executable.
    """

    __test__ = False

    kind: StateKind
    start_time: Optional[float] = None
    exit_code: Optional[int] = None

    @classmethod
    def start_state(cls) -> "TestState":
        """Wait for the test to appear, timing out after the configured limit."""
        return cls(StateKind.START, start_time=time.monotonic())

    @classmethod
    def initialise(cls) -> "TestState":
        """Instrument the test once its process has appeared."""
        return cls(StateKind.INITIALISE)

    @classmethod
    def wait_state(cls) -> "TestState":
        """Wait for a breakpoint to be hit or the test to end."""
        return cls(StateKind.WAITING, start_time=time.monotonic())

    @classmethod
    def stopped(cls) -> "TestState":
        """The test process stopped and coverage should be checked."""
        return cls(StateKind.STOPPED)

    @classmethod
    def end(cls, code: int) -> "TestState":
        """The test exited with the given code."""
        return cls(StateKind.END, exit_code=code)

    def is_finished(self) -> bool:
        return self.kind is StateKind.END

    def _timed_out(self, config: TraceConfig) -> bool:
        started = self.start_time if self.start_time is not None else time.monotonic()
        return time.monotonic() - started >= config.test_timeout

    def step(self, data: "StateData", config: TraceConfig) -> "TestState":
        """Advance the machine by one step, returning the next state."""
        if self.kind is StateKind.START:
            next_state = data.start()
            if next_state is not None:
                return next_state
            if self._timed_out(config):
                raise TestRuntimeError("Error: Timed out when starting test")
            return self
        if self.kind is StateKind.INITIALISE:
            return data.init()
        if self.kind is StateKind.WAITING:
            next_state = data.wait()
            if next_state is not None:
                return next_state
            if self._timed_out(config):
                final = data.last_wait_attempt()
                if final is not None:
                    return final
                raise TestRuntimeError("Error: Timed out waiting for test response")
            return self
        if self.kind is StateKind.STOPPED:
            return data.stop()
        return self


class ActionKind(enum.Enum):
    """What the tracer should do with a process."""

    TRY_CONTINUE = "try_continue"
    CONTINUE = "continue"
    STEP = "step"
    DETACH = "detach"
    NOTHING = "nothing"


T = TypeVar("T")


@dataclass(frozen=True)
class TracerAction(Generic[T]):
    """An action for the tracer together with the process it applies to.

    TRY_CONTINUE is for when it is unknown whether the process is paused,
    but it should move on if it is.
    """

    kind: ActionKind
    data: Optional[T] = None

    def get_data(self) -> Optional[T]:
        if self.kind is ActionKind.NOTHING:
            return None
        return self.data


class StateData(abc.ABC):
    """Platform specific handling of each state of a traced test."""

    @abc.abstractmethod
    def start(self) -> Optional[TestState]:
        """Begin tracing; None while still waiting for the test to start."""

    @abc.abstractmethod
    def init(self) -> TestState:
        """Instrument the test and return the next state."""

    @abc.abstractmethod
    def wait(self) -> Optional[TestState]:
        """Check for something to do; None if there is nothing yet."""

    @abc.abstractmethod
    def last_wait_attempt(self) -> Optional[TestState]:
        """Before timing out, check whether the run has in fact finished."""

    @abc.abstractmethod
    def stop(self) -> TestState:
        """Handle a stop of the test, collecting coverage data."""


class NullStateData(StateData):
    """Used when no coverage collector is available; every step fails."""

    _MESSAGE = "No valid coverage collector"

    def start(self) -> Optional[TestState]:
        raise StateMachineError(self._MESSAGE)

    def init(self) -> TestState:
        raise StateMachineError(self._MESSAGE)

    def wait(self) -> Optional[TestState]:
        raise StateMachineError(self._MESSAGE)

    def last_wait_attempt(self) -> Optional[TestState]:
        raise StateMachineError(self._MESSAGE)

    def stop(self) -> TestState:
        raise StateMachineError(self._MESSAGE)


def _describe(value: Any) -> str:
    return repr(value)