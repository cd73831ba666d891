import os
import signal
from pathlib import Path
from unittest import mock

import pytest

from covtrace.statemachine import ActionKind, TracerAction
from covtrace.traces import TraceMap
from covtrace.tracer import (
    Exited,
    ProcessControl,
    ProcessInfo,
    PtraceEvent,
    PtraceEventKind,
    Signaled,
    StillAlive,
    Stopped,
    TracedProcess,
)


class FakeControl(ProcessControl):
    def __init__(self):
        self.continued = []

    def continue_exec(self, pid, signal=None):
        self.continued.append((pid, signal))

    def single_step(self, pid):
        pass

    def detach(self, pid):
        pass

    def event_data(self, pid):
        return pid + 1

    def instruction_pointer(self, pid):
        return 0x1000

    def set_breakpoints(self, pid, addresses):
        return 0, set(addresses)

    def hit_breakpoint(self, pid, address, count):
        return True, TracerAction(ActionKind.CONTINUE, ProcessInfo(pid))

    def threads_of(self, pid):
        return [pid]

    def executable(self, pid):
        return Path("/bin/test")


def _wait_with(pid, status, nohang=True):
    control = FakeControl()
    with mock.patch("covtrace.tracer.os.waitpid", return_value=(pid, status)) as waiter:
        result = ProcessControl.waitpid(control, -1, nohang)
    return result, waiter


@pytest.mark.parametrize(
    "number,kind",
    [
        (1, PtraceEventKind.FORK),
        (2, PtraceEventKind.VFORK),
        (3, PtraceEventKind.CLONE),
        (4, PtraceEventKind.EXEC),
        (6, PtraceEventKind.EXIT),
    ],
)
def test_ptrace_event_numbers(number, kind):
    status = (number << 16) | (int(signal.SIGTRAP) << 8) | 0x7F
    result, _ = _wait_with(11, status)
    assert result == PtraceEvent(11, signal.SIGTRAP, kind)
    assert result.event == number


def test_process_info_defaults_and_equality():
    info = ProcessInfo(42)
    assert info.signal is None
    assert info == ProcessInfo(42, None)
    assert len({info, ProcessInfo(42)}) == 1
    assert ProcessInfo(42, signal.SIGTERM) != info


def test_traced_process_defaults():
    tm = TraceMap()
    proc = TracedProcess(parent=7, traces=tm)
    assert proc.parent == 7
    assert proc.breakpoints == set()
    assert proc.thread_count == 0
    assert proc.offset == 0
    assert proc.traces is tm
    assert proc.is_test_proc is False


def test_still_alive_has_no_pid():
    assert StillAlive().pid is None


def test_waitpid_no_change_is_still_alive():
    result, _ = _wait_with(0, 0)
    assert result == StillAlive()


def test_waitpid_decodes_exit():
    result, _ = _wait_with(11, 3 << 8)
    assert result == Exited(11, 3)


def test_waitpid_decodes_stop():
    status = (int(signal.SIGTRAP) << 8) | 0x7F
    result, _ = _wait_with(11, status)
    assert result == Stopped(11, signal.SIGTRAP)
    assert isinstance(result.signal, signal.Signals)


def test_waitpid_decodes_ptrace_event():
    status = (PtraceEventKind.CLONE << 16) | (int(signal.SIGTRAP) << 8) | 0x7F
    result, _ = _wait_with(11, status)
    assert result == PtraceEvent(11, signal.SIGTRAP, PtraceEventKind.CLONE)


def test_waitpid_decodes_signaled_with_core():
    status = int(signal.SIGSEGV) | 0x80
    result, _ = _wait_with(11, status)
    assert result == Signaled(11, signal.SIGSEGV, True)


def test_waitpid_decodes_signaled_without_core():
    result, _ = _wait_with(11, int(signal.SIGKILL))
    assert result == Signaled(11, signal.SIGKILL, False)


def test_waitpid_nohang_flag():
    nohang_bit = getattr(os, "WNOHANG", 1)
    result, waiter = _wait_with(0, 0, nohang=True)
    assert result == StillAlive()
    assert waiter.call_args[0][1] & nohang_bit
    result, waiter = _wait_with(5, 0, nohang=False)
    assert result == Exited(5, 0)
    assert not waiter.call_args[0][1] & nohang_bit


def test_waitpid_error_propagates():
    control = FakeControl()
    with mock.patch("covtrace.tracer.os.waitpid", side_effect=ChildProcessError()):
        with pytest.raises(ChildProcessError):
            ProcessControl.waitpid(control, -1)


def test_incomplete_control_cannot_be_created():
    class Partial(ProcessControl):
        def detach(self, pid):
            pass

    with pytest.raises(TypeError):
        ProcessControl()
    with pytest.raises(TypeError):
        Partial()


def test_fake_control_hit_returns_action():
    control = FakeControl()
    counted, action = control.hit_breakpoint(9, 0x10, True)
    assert counted is True
    assert action.get_data() == ProcessInfo(9)
    offset, placed = control.set_breakpoints(9, [1, 2])
    assert (offset, placed) == (0, {1, 2})