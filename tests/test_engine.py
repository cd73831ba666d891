import sys
from unittest import mock

import pytest

from covtrace.engine import create_state_machine
from covtrace.instrumented import CoverageReport, LlvmInstrumentedData, RunningProcess
from covtrace.linux import LinuxData
from covtrace.statemachine import (
    NullStateData,
    StateKind,
    StateMachineError,
    TraceConfig,
    TraceEngine,
)
from covtrace.tracer import ProcessControl, StillAlive
from covtrace.traces import TraceMap

PID = 4242


class QuietControl(ProcessControl):
    def waitpid(self, pid, nohang=True):
        return StillAlive()

    def continue_exec(self, pid, signal=None):
        pass

    def single_step(self, pid):
        pass

    def detach(self, pid):
        pass

    def event_data(self, pid):
        return 0

    def instruction_pointer(self, pid):
        return 0

    def set_breakpoints(self, pid, addresses):
        return 0, set(addresses)

    def hit_breakpoint(self, pid, address, count):
        raise OSError("unused")

    def threads_of(self, pid):
        return []

    def executable(self, pid):
        return None


class FakeChild:
    def wait(self):
        return 0


def empty_report(binaries, profraws):
    return CoverageReport()


def test_auto_engine_is_unsupported():
    state, data = create_state_machine(PID, TraceMap(), TraceConfig(engine=TraceEngine.AUTO))
    assert state.is_finished()
    assert state.exit_code == 1
    with pytest.raises(StateMachineError, match="No valid coverage collector"):
        data.start()


def test_ptrace_on_linux_builds_tracer():
    config = TraceConfig(engine=TraceEngine.PTRACE)
    with mock.patch.object(sys, "platform", "linux"):
        state, data = create_state_machine(PID, TraceMap(), config, QuietControl())
    assert state.kind is StateKind.START
    assert isinstance(data, LinuxData)
    assert data.parent == PID


def test_ptrace_elsewhere_is_unsupported():
    config = TraceConfig(engine=TraceEngine.PTRACE)
    with mock.patch.object(sys, "platform", "darwin"):
        state, data = create_state_machine(PID, TraceMap(), config, QuietControl())
    assert state.exit_code == 1
    assert isinstance(data, NullStateData)


def test_ptrace_without_control_is_unsupported():
    config = TraceConfig(engine=TraceEngine.PTRACE)
    with mock.patch.object(sys, "platform", "linux"):
        state, data = create_state_machine(PID, TraceMap(), config, None)
    assert state.exit_code == 1
    assert isinstance(data, NullStateData)


def test_ptrace_rejects_process_handle():
    config = TraceConfig(engine=TraceEngine.PTRACE)
    handle = RunningProcess(child=FakeChild(), path="bin")
    with mock.patch.object(sys, "platform", "linux"):
        with pytest.raises(StateMachineError, match="PID"):
            create_state_machine(handle, TraceMap(), config, QuietControl())


def test_llvm_with_process_starts(tmp_path):
    config = TraceConfig(root=tmp_path, engine=TraceEngine.LLVM)
    handle = RunningProcess(child=FakeChild(), path=tmp_path / "bin")
    state, data = create_state_machine(
        handle, TraceMap(), config, report_builder=empty_report
    )
    assert state.kind is StateKind.START
    assert isinstance(data, LlvmInstrumentedData)
    following = state.step(data, config)
    assert following.kind is StateKind.WAITING


def test_llvm_with_pid_ends_immediately():
    config = TraceConfig(engine=TraceEngine.LLVM)
    state, data = create_state_machine(PID, TraceMap(), config, report_builder=empty_report)
    assert state.exit_code == 1
    assert isinstance(data, LlvmInstrumentedData)
    assert data.process is None


def test_llvm_without_report_builder_is_unsupported():
    config = TraceConfig(engine=TraceEngine.LLVM)
    state, data = create_state_machine(RunningProcess(FakeChild(), "bin"), TraceMap(), config)
    assert state.exit_code == 1
    assert isinstance(data, NullStateData)