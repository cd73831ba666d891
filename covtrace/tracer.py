"""Process tracing primitives: wait statuses, tracee records and the control interface."""

from __future__ import annotations

import abc
import enum
import os
import signal
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Optional, Set, Tuple, Union

from covtrace.statemachine import TracerAction
from covtrace.traces import TraceMap

SignalLike = Union[signal.Signals, int]

_WNOHANG = getattr(os, "WNOHANG", 1)
# Wait for all children regardless of clone type; Linux only.
_WALL = 0x40000000 if sys.platform.startswith("linux") else 0


def _to_signal(number: int) -> SignalLike:
    try:
        return signal.Signals(number)
    except ValueError:
        return number


@dataclass(frozen=True)
class StillAlive:
    """No child has changed state yet."""

    pid: Optional[int] = None


@dataclass(frozen=True)
class Exited:
    """A process exited normally with the given code."""

    pid: int
    code: int


@dataclass(frozen=True)
class Stopped:
    """A process was stopped by a signal."""

    pid: int
    signal: SignalLike


@dataclass(frozen=True)
class Signaled:
    """A process was terminated by a signal."""

    pid: int
    signal: SignalLike
    core_dumped: bool = False


@dataclass(frozen=True)
class PtraceEvent:
    """A process stopped because of a ptrace event."""

    pid: int
    signal: SignalLike
    event: int


WaitStatus = Union[StillAlive, Exited, Stopped, Signaled, PtraceEvent]


class PtraceEventKind(enum.IntEnum):
    """Ptrace event numbers reported in the high bits of a wait status."""

    FORK = 1
    VFORK = 2
    CLONE = 3
    EXEC = 4
    VFORK_DONE = 5
    EXIT = 6
    SECCOMP = 7


def _decode_status(pid: int, status: int) -> WaitStatus:
    if pid == 0:
        return StillAlive()
    low = status & 0x7F
    if low == 0:
        return Exited(pid, (status >> 8) & 0xFF)
    if status & 0xFF == 0x7F:
        sig = _to_signal((status >> 8) & 0xFF)
        event = (status >> 16) & 0xFF
        if event:
            return PtraceEvent(pid, sig, event)
        return Stopped(pid, sig)
    return Signaled(pid, _to_signal(low), bool(status & 0x80))


@dataclass(frozen=True)
class ProcessInfo:
    """A process to act on, and the signal to deliver when resuming it."""

    pid: int
    signal: Optional[SignalLike] = None


@dataclass
class TracedProcess:
    """Tracing state of one process (not thread) being traced."""

    parent: int
    breakpoints: Set[int] = field(default_factory=set)
    thread_count: int = 0
    offset: int = 0
    traces: Optional[TraceMap] = None
    is_test_proc: bool = False


class ProcessControl(abc.ABC):
    """Operations a tracer performs on traced processes.

    Errors from the underlying system are raised as OSError.
    """

    def waitpid(self, pid: int, nohang: bool = True) -> WaitStatus:
        """Wait for a state change of pid (-1 for any child)."""
        flags = _WALL | (_WNOHANG if nohang else 0)
        got, status = os.waitpid(pid, flags)
        return _decode_status(got, status)

    @abc.abstractmethod
    def continue_exec(self, pid: int, signal: Optional[SignalLike] = None) -> None:
        """Resume a stopped process, optionally delivering a signal."""

    @abc.abstractmethod
    def single_step(self, pid: int) -> None:
        """Execute one instruction of a stopped process."""

    @abc.abstractmethod
    def detach(self, pid: int) -> None:
        """Stop tracing a process and let it run freely."""

    @abc.abstractmethod
    def event_data(self, pid: int) -> int:
        """The data attached to the last ptrace event, such as a new child pid."""

    @abc.abstractmethod
    def instruction_pointer(self, pid: int) -> int:
        """The current instruction pointer of a stopped process."""

    @abc.abstractmethod
    def set_breakpoints(self, pid: int, addresses: Iterable[int]) -> Tuple[int, Set[int]]:
        """Place breakpoints at addresses relative to the load offset.

        Returns the load offset and the absolute addresses instrumented.
        """

    @abc.abstractmethod
    def hit_breakpoint(
        self, pid: int, address: int, count: bool
    ) -> Tuple[bool, TracerAction[Any]]:
        """Handle a breakpoint hit at an absolute address.

        count re-arms the breakpoint so later hits are counted too. Returns
        whether the hit should be recorded and the action to take next.
        """

    @abc.abstractmethod
    def threads_of(self, pid: int) -> Iterable[int]:
        """Thread ids belonging to a process."""

    @abc.abstractmethod
    def executable(self, pid: int) -> Optional[Path]:
        """Path of the executable a process runs, or None if unknown."""