"""Coverage collection by tracing a test process and its children with breakpoints."""

from __future__ import annotations

import errno
import logging
import signal
from pathlib import Path
from typing import Callable, Optional, Tuple, Union

from covtrace.statemachine import (
    ActionKind,
    RunError,
    StateData,
    StateKind,
    StateMachineError,
    TestRuntimeError,
    TestState,
    TraceConfig,
    TracerAction,
)
from covtrace.tracer import (
    Exited,
    ProcessControl,
    ProcessInfo,
    PtraceEvent,
    PtraceEventKind,
    Signaled,
    SignalLike,
    StillAlive,
    Stopped,
    TracedProcess,
    WaitStatus,
)
from covtrace.traces import TraceMap

logger = logging.getLogger(__name__)

SIGILL = getattr(signal, "SIGILL", 4)
SIGTRAP = getattr(signal, "SIGTRAP", 5)
SIGKILL = getattr(signal, "SIGKILL", 9)
SIGSEGV = getattr(signal, "SIGSEGV", 11)
SIGTERM = getattr(signal, "SIGTERM", 15)
SIGCHLD = getattr(signal, "SIGCHLD", 17)
SIGSTOP = getattr(signal, "SIGSTOP", 19)

TracemapBuilder = Callable[[Path], TraceMap]
UpdateContext = Tuple[TestState, TracerAction]

_NOTHING: TracerAction = TracerAction(ActionKind.NOTHING)


def _act(kind: ActionKind, pid: int, sig: Optional[SignalLike] = None) -> TracerAction:
    return TracerAction(kind, ProcessInfo(pid, sig))


def _is_under(path: Path, directory: Path) -> bool:
    return path == directory or directory in path.parents


class LinuxData(StateData):
    """Tracks every traced process of a test and collects breakpoint hits."""

    def __init__(
        self,
        traces: TraceMap,
        config: TraceConfig,
        control: ProcessControl,
        tracemap_builder: Optional[TracemapBuilder] = None,
    ) -> None:
        self.traces = traces
        self.config = config
        self.control = control
        self.tracemap_builder = tracemap_builder
        self.wait_queue: list[WaitStatus] = []
        # Actions that must wait one cycle before they can be applied.
        self.pending_actions: list[TracerAction] = []
        self.parent = 0
        self.current = 0
        self.processes: dict[int, TracedProcess] = {}
        self.pid_map: dict[int, int] = {}
        self.exit_code: Optional[int] = None

    # -- state handlers -------------------------------------------------

    def start(self) -> Optional[TestState]:
        try:
            status = self.control.waitpid(self.current, nohang=True)
        except OSError as exc:
            raise TestRuntimeError(f"Error when starting test: {exc}") from exc
        if isinstance(status, StillAlive):
            return None
        if isinstance(status, Stopped) and status.signal == SIGTRAP:
            self.current = status.pid
            logger.debug("Caught inferior transitioning to Initialise state")
            return TestState.initialise()
        raise TestRuntimeError("Unexpected signal when starting test")

    def init(self) -> TestState:
        traced = self._init_process(self.current, None)
        traced.is_test_proc = True
        try:
            self.control.continue_exec(traced.parent, None)
        except OSError as exc:
            raise TestRuntimeError("Test didn't launch correctly") from exc
        logger.debug("Initialised inferior, transitioning to wait state")
        self.processes[self.current] = traced
        return TestState.wait_state()

    def last_wait_attempt(self) -> Optional[TestState]:
        if self.exit_code is None:
            return None
        for pid, process in self.processes.items():
            if pid != self.parent and process.traces is not None:
                self.traces.merge(process.traces)
        return TestState.end(self.exit_code)

    def wait(self) -> Optional[TestState]:
        result: Optional[TestState] = None
        error: Optional[RunError] = None
        while True:
            try:
                status = self.control.waitpid(-1, nohang=True)
            except OSError as exc:
                if self.exit_code is not None:
                    result = self.last_wait_attempt()
                else:
                    error = TestRuntimeError(
                        f"An error occurred while waiting for response from test: {exc}"
                    )
                break
            if isinstance(status, StillAlive):
                break
            self.wait_queue.append(status)
            result = TestState.stopped()
            if isinstance(status, (Exited, PtraceEvent)):
                break
        if self.wait_queue:
            logger.debug("Result queue is %r", self.wait_queue)
        else:
            self._apply_pending_actions()
        if error is not None:
            raise error
        return result

    def stop(self) -> TestState:
        actions: list[TracerAction] = []
        result: Union[TestState, RunError] = TestState.wait_state()
        pending = list(self.wait_queue)
        pending_len = len(self.pending_actions)
        self.wait_queue.clear()

        for status in pending:
            try:
                outcome = self._handle_status(status)
            except RunError as exc:
                result = exc
                continue
            if isinstance(outcome, TestState):
                return outcome
            state, action = outcome
            if state.kind is not StateKind.WAITING:
                result = state
            actions.append(action)

        continued = self._apply_actions(actions)
        # Pending actions are only fork parents stalled until the child
        # returns, so they cannot belong to anything stopped in this round.
        self._apply_pending_actions(pending_len)

        if not continued and self.exit_code is None:
            logger.debug("No action suggested to continue tracee. Attempting a continue")
            try:
                self.control.continue_exec(self.parent, None)
            except OSError:
                pass
        if isinstance(result, RunError):
            raise result
        return result

    # -- helpers --------------------------------------------------------

    def _apply_actions(self, actions: list) -> bool:
        continued = False
        actioned: set[int] = set()
        for action in actions:
            info = action.get_data()
            if action.kind is ActionKind.NOTHING or info is None:
                continue
            if info.pid in actioned:
                logger.debug("Skipping action %r, pid already sent command", action)
                continue
            continued = True
            actioned.add(info.pid)
            try:
                if action.kind is ActionKind.TRY_CONTINUE:
                    self._quietly(self.control.continue_exec, info.pid, info.signal)
                elif action.kind is ActionKind.CONTINUE:
                    self.control.continue_exec(info.pid, info.signal)
                elif action.kind is ActionKind.STEP:
                    self.control.single_step(info.pid)
                elif action.kind is ActionKind.DETACH:
                    self._quietly(self.control.detach, info.pid)
            except OSError as exc:
                raise TestRuntimeError(f"Failed to resume {info.pid}: {exc}") from exc
        return continued

    @staticmethod
    def _quietly(operation: Callable, *args) -> None:
        try:
            operation(*args)
        except OSError:
            pass

    def _apply_pending_actions(self, limit: Optional[int] = None) -> None:
        count = len(self.pending_actions) if limit is None else limit
        drained = self.pending_actions[:count]
        del self.pending_actions[:count]
        for action in drained:
            info = action.get_data()
            if action.kind in (ActionKind.CONTINUE, ActionKind.TRY_CONTINUE) and info:
                self._quietly(self.control.continue_exec, info.pid, info.signal)
            else:
                logger.error("Pending actions should only be continues: %r", action)

    def _handle_status(self, status: WaitStatus) -> Union[UpdateContext, TestState]:
        if isinstance(status, PtraceEvent):
            try:
                return self._handle_ptrace_event(status.pid, status.signal, status.event)
            except RunError as exc:
                raise TestRuntimeError(
                    f"Error occurred when handling ptrace event: {exc}"
                ) from exc
        if isinstance(status, Stopped):
            return self._handle_stopped(status)
        if isinstance(status, Signaled):
            try:
                return self._handle_signaled(status.pid, status.signal, status.core_dumped)
            except RunError as exc:
                raise TestRuntimeError(
                    "Attempting to handle the tracer being signaled"
                ) from exc
        if isinstance(status, Exited):
            return self._handle_exited(status.pid, status.code)
        raise TestRuntimeError("An unexpected signal has been caught by the tracer!")

    def _handle_stopped(self, status: Stopped) -> UpdateContext:
        child, sig = status.pid, status.signal
        if sig == SIGTRAP:
            self.current = child
            try:
                return self._collect_coverage_data()
            except RunError as exc:
                raise TestRuntimeError(f"Error when collecting coverage: {exc}") from exc
        if sig == SIGSTOP or sig == SIGCHLD:
            return TestState.wait_state(), _act(ActionKind.CONTINUE, child)
        if sig == SIGSEGV:
            raise TestRuntimeError("A segfault occurred while executing tests")
        if sig == SIGILL:
            raise TestRuntimeError(f"Error running test - SIGILL raised in {child}")
        forwarded = sig if self.config.forward_signals else None
        return TestState.wait_state(), _act(ActionKind.TRY_CONTINUE, child, forwarded)

    def _handle_exited(self, child: int, code: int) -> Union[UpdateContext, TestState]:
        process = self._traced_process(child)
        parent = process.parent if process is not None else None
        if parent == child:
            removed = self.processes.pop(parent, None)
            if removed is not None and parent != self.parent and removed.traces is not None:
                self.traces.merge(removed.traces)
        logger.debug("Exited %s parent %s", child, self.parent)
        if child == self.parent:
            if not self.processes or not self.config.follow_exec:
                return TestState.end(code), _NOTHING
            self.exit_code = code
            logger.info(
                "Test process exited, but spawned processes still running. Continuing tracing"
            )
            return TestState.wait_state(), _NOTHING
        if self.exit_code is not None and not self.processes:
            return TestState.end(self.exit_code)
        # The process may already be gone; this is just in case.
        return TestState.wait_state(), _act(ActionKind.TRY_CONTINUE, self.parent)

    def _get_parent(self, pid: int) -> Optional[int]:
        if pid in self.pid_map:
            return self.pid_map[pid]
        for candidate in list(self.processes):
            try:
                threads = self.control.threads_of(candidate)
            except OSError:
                return None
            if pid in threads:
                return candidate
        return None

    def _traced_process(self, pid: int) -> Optional[TracedProcess]:
        parent = self._get_parent(pid)
        if parent is None:
            return None
        return self.processes.get(parent)

    def _active_trace_map(self, pid: int) -> Optional[TraceMap]:
        process = self._traced_process(pid)
        if process is None:
            return None
        return process.traces if process.traces is not None else self.traces

    def _init_process(self, pid: int, trace_map: Optional[TraceMap]) -> TracedProcess:
        traces = trace_map if trace_map is not None else self.traces
        addresses = {a for trace in traces.all_traces() for a in trace.address}
        try:
            offset, breakpoints = self.control.set_breakpoints(pid, addresses)
        except OSError as exc:
            if exc.errno == errno.EIO:
                raise TestRuntimeError(
                    "Cannot find code addresses, check your linker settings."
                ) from exc
            raise TestRuntimeError("Failed to instrument test executable") from exc
        logger.debug("Initialising process: %s, address offset: 0x%x", pid, offset)
        old = self.pid_map.get(pid)
        if old is not None and old != pid:
            logger.debug("%s being promoted to parent. Old parent %s", pid, old)
        self.pid_map[pid] = pid
        return TracedProcess(
            parent=pid,
            breakpoints=set(breakpoints),
            offset=offset,
            traces=trace_map,
        )

    def _handle_exec(self, pid: int) -> UpdateContext:
        logger.debug("Handling process exec")
        fallback = (TestState.wait_state(), _act(ActionKind.CONTINUE, pid))
        try:
            exe = self.control.executable(pid)
        except OSError:
            logger.debug("Failed to get process info from PID")
            return fallback
        if exe is None or not _is_under(Path(exe), Path(self.config.target_dir)):
            return TestState.wait_state(), _act(ActionKind.DETACH, pid)
        try:
            trace_map = (
                self.tracemap_builder(Path(exe)) if self.tracemap_builder else None
            )
        except (OSError, RunError, ValueError):
            trace_map = None
        if trace_map is None or trace_map.is_empty():
            logger.debug("Failed to create trace map for executable, continuing")
            return fallback
        try:
            traced = self._init_process(pid, trace_map)
        except RunError as exc:
            logger.error("Failed to init process (attempting continue): %s", exc)
            return fallback
        self.processes[pid] = traced
        return TestState.wait_state(), _act(ActionKind.CONTINUE, pid)

    def _register_child(self, child: int, new_pid: int) -> None:
        process = self._traced_process(child)
        if process is None:
            logger.warning("Couldn't find parent for %s", child)
            return
        process.thread_count += 1
        self.pid_map[new_pid] = process.parent

    def _handle_ptrace_event(self, child: int, sig: SignalLike, event: int) -> UpdateContext:
        if sig != SIGTRAP:
            logger.debug("Unexpected signal %r with ptrace event %s", sig, event)
            raise TestRuntimeError("Unexpected signal")
        keep_going = (TestState.wait_state(), _act(ActionKind.CONTINUE, child))
        if event == PtraceEventKind.CLONE:
            try:
                thread = self.control.event_data(child)
            except OSError as exc:
                raise TestRuntimeError(
                    "Error occurred upon test executable thread creation"
                ) from exc
            logger.debug("New thread spawned %s", thread)
            self._register_child(child, thread)
            return keep_going
        if event == PtraceEventKind.FORK:
            try:
                fork_child = self.control.event_data(child)
            except OSError:
                logger.debug("No event data for child")
                return keep_going
            self._register_child(child, fork_child)
            return keep_going
        if event == PtraceEventKind.VFORK:
            # Spawning a command goes through vfork, so treat it as an exec.
            try:
                fork_child = self.control.event_data(child)
            except OSError:
                return keep_going
            if not self.config.follow_exec:
                return keep_going
            outcome = self._handle_exec(fork_child)
            if self.config.forward_signals:
                self.pending_actions.append(_act(ActionKind.CONTINUE, child))
            return outcome
        if event == PtraceEventKind.EXEC:
            if self.config.follow_exec:
                return self._handle_exec(child)
            return TestState.wait_state(), _act(ActionKind.DETACH, child)
        if event == PtraceEventKind.EXIT:
            logger.debug("Child exiting")
            process = self._traced_process(child)
            is_parent = False
            if process is not None:
                process.thread_count -= 1
                is_parent = process.parent == child
            if not is_parent:
                self.pid_map.pop(child, None)
            return TestState.wait_state(), _act(ActionKind.TRY_CONTINUE, child)
        raise TestRuntimeError(f"Unrecognised ptrace event {event}")

    def _collect_coverage_data(self) -> UpdateContext:
        current = self.current
        action: Optional[TracerAction] = None
        hits: set[int] = set()
        process = self._traced_process(current)
        if process is None:
            logger.warning("Failed to find process for pid: %s", current)
        else:
            try:
                rip: Optional[int] = self.control.instruction_pointer(current) - 1
            except OSError:
                rip = None
            if rip is not None and rip in process.breakpoints:
                logger.debug("Hit address 0x%x", rip)
                try:
                    record, action = self.control.hit_breakpoint(
                        current, rip, self.config.count
                    )
                except OSError:
                    # Keep going rather than stall the tracee.
                    record, action = False, _act(ActionKind.CONTINUE, current)
                if record:
                    hits.add(rip - process.offset)
        traces = self._active_trace_map(current)
        if traces is None:
            logger.warning("Failed to find traces for pid: %s", current)
        else:
            for address in hits:
                traces.increment_hit(address)
        if action is None:
            action = _act(ActionKind.CONTINUE, current)
        return TestState.wait_state(), action

    def _handle_signaled(self, pid: int, sig: SignalLike, core_dumped: bool) -> UpdateContext:
        process = self._traced_process(pid)
        if process is not None and not process.is_test_proc:
            return TestState.wait_state(), _act(ActionKind.TRY_CONTINUE, pid, sig)
        if sig == SIGKILL:
            return TestState.wait_state(), _act(ActionKind.DETACH, pid)
        if (sig == SIGTRAP and core_dumped) or sig == SIGCHLD:
            return TestState.wait_state(), _act(ActionKind.CONTINUE, pid)
        if sig == SIGTERM:
            return TestState.wait_state(), _act(ActionKind.TRY_CONTINUE, pid, SIGTERM)
        raise StateMachineError("Unexpected stop")


def create_linux_state_machine(
    pid: int,
    traces: TraceMap,
    config: TraceConfig,
    control: ProcessControl,
    tracemap_builder: Optional[TracemapBuilder] = None,
) -> Tuple[TestState, LinuxData]:
    """Build the starting state and data for tracing the test with the given pid."""
    if isinstance(pid, bool) or not isinstance(pid, int):
        raise StateMachineError("Test handle must be a PID for ptrace engine")
    data = LinuxData(traces, config, control, tracemap_builder)
    data.parent = pid
    return TestState.start_state(), data