# covtrace

Coverage trace maps, and the state machines that fill them with hit counts while a test
executable runs.

## Modules

- `covtrace.traces` holds the trace map and its records.
  - `TraceMap` maps source files to lists of `Trace` records, kept sorted by line.
  - A `Trace` has a line, a set of addresses, a length, an optional function name and a
    statistic. The statistic is `LineStat(hits)`, `BranchStat(LogicState)` or
    `ConditionStat(states)`.
  - `merge` adds another map's records, summing the statistics of records that share a
    line and address set.
  - `dedup` collapses records on the same line into the first one and sums their
    statistics. The addresses of the dropped records are lost.
  - `increment_hit`, `get_trace` and `get_location` look records up by address.
  - `total_coverable`, `total_covered`, `coverable_in_path`, `covered_in_path` and
    `coverage_percentage` report amounts. `coverage_percentage` is a fraction from 0.0 to
    1.0, and NaN when nothing is coverable.
  - `amount_coverable`, `amount_covered` and `coverage_percentage` also exist as free
    functions that work on any iterable of traces.
- `covtrace.statemachine` holds the state machine and its shared types.
  - `TestState` has the states START, INITIALISE, WAITING, STOPPED and END.
    `TestState.step(data, config)` advances a run by one step.
  - START and WAITING raise `TestRuntimeError` once `TraceConfig.test_timeout` seconds
    have passed. Before WAITING raises, it gives the collector one `last_wait_attempt`.
  - The module also holds `TracerAction` and `ActionKind`, the abstract `StateData`
    interface, and `NullStateData`, whose every step raises `StateMachineError`.
  - `RunError` is the base of the exceptions. Its subclasses are `TestRuntimeError`,
    `TestFailedError`, `TestCoverageError` and `StateMachineError`.
- `covtrace.instrumented` provides `LlvmInstrumentedData`, a collector for binaries that
  write their own `.profraw` profiles.
  - It waits for the process (a `RunningProcess`) to exit. A non-zero exit code raises
    `TestFailedError` unless `should_panic` is set.
  - It finds the new `*.profraw` files under `TraceConfig.root` and copies them to
    `profraw_dir` when one is set.
  - It passes the binaries and the profiles to your `report_builder`, which returns a
    `CoverageReport` of `FileReport` / `RegionHits`, or None when there are no records.
    The profiles are deleted afterwards.
  - An empty trace map is filled from the report, using the `.rs` sources under the root.
    A map that already has traces gets its line hit counts updated instead.
- `covtrace.tracer` holds the tracing primitives.
  - The wait statuses are `StillAlive`, `Exited`, `Stopped`, `Signaled` and
    `PtraceEvent`, with the event numbers in `PtraceEventKind`.
  - `ProcessInfo` and `TracedProcess` describe the processes being traced.
  - `ProcessControl` is an abstract interface. Its `waitpid` uses `os.waitpid` and decodes
    the status. You implement the rest: `continue_exec`, `single_step`, `detach`,
    `event_data`, `instruction_pointer`, `set_breakpoints`, `hit_breakpoint`,
    `threads_of` and `executable`.
- `covtrace.linux` provides `LinuxData`, a breakpoint-driven collector that works through
  a `ProcessControl`.
  - It follows clones and forks.
  - When `follow_exec` is set, it also follows execs and vforks of executables under
    `target_dir`. Their trace maps come from an optional `tracemap_builder(path)`.
  - It counts hits into the right trace map, and forwards signals when `forward_signals`
    is set.
- `covtrace.engine` provides `create_state_machine`, which picks the collector for
  `TraceConfig.engine`.
  - `TraceEngine.PTRACE` needs a `control` and a Linux host.
  - `TraceEngine.LLVM` needs a `report_builder`.
  - In any other case, including `TraceEngine.AUTO`, it logs an error and returns an END(1)
    state with a `NullStateData`.

## Installing

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Example

```python
from covtrace.traces import Trace, TraceMap, LineStat

traces = TraceMap()
traces.add_trace("src/lib.rs", Trace(line=4, address={0x1000}, stats=LineStat(0)))
traces.add_trace("src/lib.rs", Trace(line=5, address={0x1008}, stats=LineStat(0)))

traces.increment_hit(0x1000)

print(traces.total_covered(), "/", traces.total_coverable())  # 1 / 2
print(traces.coverage_percentage())                           # 0.5
```

Merging the results of two runs adds their statistics together:

```python
other = TraceMap()
other.add_trace("src/lib.rs", Trace(line=5, address={0x1008}, stats=LineStat(3)))
traces.merge(other)
traces.dedup()
```

Driving a run to its end:

```python
from covtrace.engine import create_state_machine
from covtrace.statemachine import TraceConfig

config = TraceConfig(root=".", test_timeout=60.0)
state, data = create_state_machine(handle, traces, config, control=my_control)
while not state.is_finished():
    state = state.step(data, config)
print("exit code:", state.exit_code)
```

## What it does not do

- covtrace has no command-line tool.
- It does not build or launch test executables.
- It does not read debug information to find line addresses.
- It does not decode `.profraw` profiles.
- It does not write breakpoints into processes itself.

You supply these pieces:

- the launched process or PID,
- a `ProcessControl` implementation,
- a `tracemap_builder` for followed executables,
- a `report_builder` for instrumented runs.

`create_state_machine` passes no source analysis to the instrumented collector. Lines
are only filtered when you build an `LlvmInstrumentedData` with an `analysis` mapping
yourself.