"""Coverage collection for binaries built with LLVM source instrumentation."""

from __future__ import annotations

import logging
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterator, Mapping, Optional, Protocol, Sequence, Tuple

from covtrace.statemachine import (
    RunError,
    StateData,
    StateMachineError,
    TestCoverageError,
    TestFailedError,
    TestState,
    TraceConfig,
)
from covtrace.traces import LineStat, Trace, TraceMap

logger = logging.getLogger(__name__)


class LineAnalysis(Protocol):
    """What is known about the lines of a source file."""

    cover: Any

    def should_ignore(self, line: int) -> bool: ...


@dataclass(frozen=True)
class RegionHits:
    """Hit count of a region spanning lines line_start to line_end inclusive."""

    line_start: int
    line_end: int
    hits: int


@dataclass
class FileReport:
    """Region hit counts for one source file."""

    hits: list = field(default_factory=list)

    def hits_for_line(self, line: int) -> Optional[int]:
        """Greatest hit count of the regions covering the line, or None."""
        counts = [r.hits for r in self.hits if r.line_start <= line <= r.line_end]
        return max(counts) if counts else None


@dataclass
class CoverageReport:
    """Per-file region hits produced from merged profiles."""

    files: dict = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.files = {Path(k): v for k, v in self.files.items()}


ReportBuilder = Callable[[Sequence[Path], Sequence[Path]], Optional[CoverageReport]]


@dataclass
class RunningProcess:
    """A launched instrumented test binary."""

    child: Any
    path: Path
    extra_binaries: list = field(default_factory=list)
    existing_profraws: set = field(default_factory=set)
    should_panic: bool = False


def _is_under(path: Path, directory: Optional[Path]) -> bool:
    return directory is not None and (path == directory or directory in path.parents)


def _strip_base_dir(config: TraceConfig, path: Path) -> Path:
    try:
        return path.relative_to(config.root)
    except ValueError:
        return path


def _is_hidden(config: TraceConfig, path: Path) -> bool:
    relative = _strip_base_dir(config, path)
    return any(part.startswith(".") for part in relative.parts[:-1])


def _profile_files(config: TraceConfig) -> Iterator[Path]:
    for path in sorted(Path(config.root).rglob("*.profraw")):
        if path.is_file() and not _is_under(path, config.profraw_dir):
            yield path


def _source_files(config: TraceConfig) -> Iterator[Path]:
    for path in sorted(Path(config.root).rglob("*.rs")):
        if (
            path.is_file()
            and not _is_under(path, config.target_dir)
            and not _is_hidden(config, path)
        ):
            yield path


def _exit_code(returncode: int) -> int:
    return returncode if returncode >= 0 else 1


@dataclass(eq=False)
class LlvmInstrumentedData(StateData):
    """Waits for an instrumented binary to exit and reads its profiles."""

    traces: TraceMap
    analysis: Mapping[Path, Any]
    config: TraceConfig
    report_builder: ReportBuilder
    process: Optional[RunningProcess] = None

    def should_panic(self) -> bool:
        return self.process is not None and self.process.should_panic

    def start(self) -> Optional[TestState]:
        return TestState.wait_state()

    def init(self) -> TestState:
        raise StateMachineError("Instrumented runs have no initialise step")

    def last_wait_attempt(self) -> Optional[TestState]:
        raise StateMachineError("Instrumented runs have no last wait attempt")

    def stop(self) -> TestState:
        raise StateMachineError("Instrumented runs never stop")

    def wait(self) -> Optional[TestState]:
        process = self.process
        if process is None:
            raise TestCoverageError("Test was not launched")
        try:
            returncode = process.child.wait()
        except OSError as exc:
            raise RunError(str(exc)) from exc
        if returncode != 0 and not self.should_panic():
            raise TestFailedError("Test failed during run")
        if self.config.post_test_delay is not None:
            time.sleep(self.config.post_test_delay)

        profraws = [
            p for p in _profile_files(self.config) if p not in process.existing_profraws
        ]
        logger.info("For binary: %s", _strip_base_dir(self.config, Path(process.path)))
        self._back_up(profraws)

        binaries = [*process.extra_binaries, Path(process.path)]
        try:
            report = self.report_builder(binaries, profraws)
        except RunError:
            raise
        except Exception as exc:
            logger.error("Failed to get coverage: %s", exc)
            raise TestCoverageError(str(exc)) from exc
        finally:
            for prof in profraws:
                try:
                    prof.unlink()
                except OSError as exc:
                    logger.warning("Unable to cleanup %s: %s", prof, exc)

        code = _exit_code(returncode)
        self.process = None
        if report is None:
            logger.warning(
                "profraw file has no records after merging. If this is unexpected "
                "it may be caused by a panic or signal used in a test that prevented "
                "the LLVM instrumentation runtime from serialising results"
            )
            return TestState.end(code)

        if self.traces.is_empty():
            self._fill_from_report(report)
        else:
            self._update_from_report(report)
        return TestState.end(code)

    def _back_up(self, profraws: Sequence[Path]) -> None:
        backup_dir = self.config.profraw_dir
        for prof in profraws:
            name = _strip_base_dir(self.config, prof)
            if backup_dir is not None:
                destination = Path(backup_dir) / name
                try:
                    destination.parent.mkdir(parents=True, exist_ok=True)
                    shutil.copyfile(prof, destination)
                except OSError as exc:
                    logger.warning("Unable to copy backup of %s: %s", name, exc)
            logger.info("Generated: %s", name)

    def _fill_from_report(self, report: CoverageReport) -> None:
        for file in _source_files(self.config):
            analysis = self.analysis.get(file)
            result = report.files.get(file)
            if result is not None:
                for region in result.hits:
                    for line in range(region.line_start, region.line_end + 1):
                        if analysis is None or not analysis.should_ignore(line):
                            trace = Trace.stub(line)
                            trace.stats = LineStat(region.hits)
                            self.traces.add_trace(file, trace)
            if analysis is not None:
                for line in sorted(analysis.cover):
                    if not self.traces.contains_location(file, line):
                        self.traces.add_trace(file, Trace.stub(line))

    def _update_from_report(self, report: CoverageReport) -> None:
        self.traces.dedup()
        for file, result in report.files.items():
            traces = self.traces.file_traces(file)
            if traces is None:
                logger.warning("Couldn't find %s in %s", file, self.traces.files())
                continue
            for trace in traces:
                hits = result.hits_for_line(trace.line)
                if hits is not None and isinstance(trace.stats, LineStat):
                    trace.stats = LineStat(hits)


def create_instrumented_state_machine(
    handle: Any,
    traces: TraceMap,
    analysis: Mapping[Path, Any],
    config: TraceConfig,
    report_builder: ReportBuilder,
) -> Tuple[TestState, LlvmInstrumentedData]:
    """Build the starting state and data for an instrumented test run."""
    if isinstance(handle, RunningProcess):
        data = LlvmInstrumentedData(traces, analysis, config, report_builder, handle)
        return TestState.start_state(), data
    logger.error("The llvm cov statemachine requires a running process")
    data = LlvmInstrumentedData(traces, analysis, config, report_builder, None)
    return TestState.end(1), data