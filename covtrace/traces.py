"""Coverage traces: per-line statistics grouped by source file."""

from __future__ import annotations

import copy
import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Iterator, Optional, Tuple, Union

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

_ALIGN_MASK = ~0x7


@dataclass(frozen=True, order=True)
class LogicState:
    """Tracks whether a logical condition has been seen true and/or false."""

    been_true: bool = False
    been_false: bool = False

    def __add__(self, other: "LogicState") -> "LogicState":
        if not isinstance(other, LogicState):
            return NotImplemented
        return LogicState(
            been_true=self.been_true or other.been_true,
            been_false=self.been_false or other.been_false,
        )


class CoverageStat:
    """Base class of the kinds of coverage data a trace may collect."""

    def __add__(self, other: "CoverageStat") -> "CoverageStat":
        if not isinstance(other, CoverageStat):
            return NotImplemented
        if isinstance(self, LineStat) and isinstance(other, LineStat):
            return LineStat(self.hits + other.hits)
        if isinstance(self, BranchStat) and isinstance(other, BranchStat):
            return BranchStat(self.state + other.state)
        return self

    def __str__(self) -> str:
        if isinstance(self, LineStat):
            return f"hits: {self.hits}"
        return ""


@dataclass(frozen=True)
class LineStat(CoverageStat):
    """Line coverage: number of times the line was hit."""

    hits: int = 0

    __add__ = CoverageStat.__add__
    __str__ = CoverageStat.__str__


@dataclass(frozen=True)
class BranchStat(CoverageStat):
    """Branch coverage: whether the branch went both ways."""

    state: LogicState = field(default_factory=LogicState)

    __add__ = CoverageStat.__add__
    __str__ = CoverageStat.__str__


@dataclass(frozen=True)
class ConditionStat(CoverageStat):
    """Condition coverage: the state of each boolean sub-condition."""

    states: Tuple[LogicState, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "states", tuple(self.states))

    __add__ = CoverageStat.__add__
    __str__ = CoverageStat.__str__


@dataclass
class Trace:
    """A coverable point in a source file."""

    line: int
    address: set = field(default_factory=set)
    length: int = 0
    stats: CoverageStat = field(default_factory=LineStat)
    fn_name: Optional[str] = None

    @classmethod
    def stub(cls, line: int) -> "Trace":
        """A trace for a line with no addresses and no hits."""
        return cls(line=line)

    def __lt__(self, other: "Trace") -> bool:
        if not isinstance(other, Trace):
            return NotImplemented
        return self.line < other.line


@dataclass(frozen=True, order=True)
class Location:
    """A line within a source file."""

    file: Path
    line: int


def amount_coverable(traces: Iterable[Trace]) -> int:
    """Number of coverable points in the given traces."""
    total = 0
    for trace in traces:
        stats = trace.stats
        if isinstance(stats, BranchStat):
            total += 2
        elif isinstance(stats, ConditionStat):
            total += 2 * len(stats.states)
        else:
            total += 1
    return total


def _covered(stats: CoverageStat) -> int:
    if isinstance(stats, BranchStat):
        return int(stats.state.been_true) + int(stats.state.been_false)
    if isinstance(stats, ConditionStat):
        return sum(int(s.been_true) + int(s.been_false) for s in stats.states)
    if isinstance(stats, LineStat):
        return int(stats.hits > 0)
    return 0


def amount_covered(traces: Iterable[Trace]) -> int:
    """Number of covered points in the given traces."""
    return sum(_covered(trace.stats) for trace in traces)


def coverage_percentage(traces: Iterable[Trace]) -> float:
    """Fraction covered, from 0.0 to 1.0; NaN when nothing is coverable."""
    collected = list(traces)
    coverable = amount_coverable(collected)
    if coverable == 0:
        return math.nan
    return amount_covered(collected) / coverable


class TraceMap:
    """Traces of a program grouped by source file, kept sorted by line."""

    def __init__(self) -> None:
        self._traces: dict[Path, list[Trace]] = {}

    def is_empty(self) -> bool:
        return not self._traces

    def __iter__(self) -> Iterator[Tuple[Path, list]]:
        """Yield (file, traces) pairs ordered by file path."""
        for path in sorted(self._traces):
            yield path, self._traces[path]

    def __len__(self) -> int:
        return len(self._traces)

    def merge(self, other: "TraceMap") -> None:
        """Add the records of other, summing statistics of matching traces."""
        for path, values in other:
            existing = self._traces.get(path)
            if existing is None:
                self._traces[path] = copy.deepcopy(values)
                continue
            for value in values:
                match = next(
                    (
                        t
                        for t in existing
                        if t.line == value.line and t.address == value.address
                    ),
                    None,
                )
                if match is not None:
                    match.stats = match.stats + value.stats
                else:
                    existing.append(copy.deepcopy(value))
                    existing.sort()

    def dedup(self) -> None:
        """Collapse traces sharing a line into the first one, summing stats.

        Addresses of the dropped traces are lost.
        """
        for traces in self._traces.values():
            merged: dict[int, CoverageStat] = {}
            dirty: set[int] = set()
            for trace in traces:
                if trace.line in merged:
                    dirty.add(trace.line)
                    merged[trace.line] = merged[trace.line] + trace.stats
                else:
                    merged[trace.line] = trace.stats
            if not dirty:
                continue
            kept: list[Trace] = []
            seen: set[int] = set()
            for trace in traces:
                if trace.line in dirty:
                    if trace.line in seen:
                        continue
                    seen.add(trace.line)
                    trace.stats = merged[trace.line]
                kept.append(trace)
            traces[:] = kept

    def add_trace(self, file: PathLike, trace: Trace) -> None:
        """Add a trace for the given file, keeping the file's traces sorted."""
        path = Path(file)
        traces = self._traces.setdefault(path, [])
        traces.append(trace)
        traces.sort()

    def add_file(self, file: PathLike) -> None:
        """Register a file with no traces if it is not already present."""
        self._traces.setdefault(Path(file), [])

    def get_trace(self, address: int) -> Optional[Trace]:
        """The first trace holding the address, or None."""
        return next((t for t in self.all_traces() if address in t.address), None)

    def increment_hit(self, address: int) -> None:
        """Add one hit to every line trace holding the address."""
        for trace in self.all_traces():
            if address in trace.address and isinstance(trace.stats, LineStat):
                logger.debug("Incrementing hit count for trace")
                trace.stats = LineStat(trace.stats.hits + 1)

    def get_location(self, address: int) -> Optional[Location]:
        """Location of the first trace with an address aligned to the given one."""
        for path, traces in self:
            for trace in traces:
                if any((a & _ALIGN_MASK) == address for a in trace.address):
                    return Location(file=path, line=trace.line)
        return None

    def contains_location(self, file: PathLike, line: int) -> bool:
        traces = self._traces.get(Path(file))
        return traces is not None and any(t.line == line for t in traces)

    def contains_file(self, file: PathLike) -> bool:
        return Path(file) in self._traces

    def get_child_traces(self, root: PathLike) -> Iterator[Trace]:
        """All traces in files at or below root."""
        root_path = Path(root)
        for path, traces in self:
            if path == root_path or root_path in path.parents:
                yield from traces

    def get_traces(self, root: PathLike) -> Iterator[Trace]:
        """Traces of a file, or of the files directly inside a folder."""
        root_path = Path(root)
        if root_path.is_file():
            yield from self.get_child_traces(root_path)
            return
        for path, traces in self:
            if path != path.parent and path.parent == root_path:
                yield from traces

    def file_traces(self, file: PathLike) -> Optional[list]:
        """The live list of traces for a file, or None."""
        return self._traces.get(Path(file))

    def all_traces(self) -> Iterator[Trace]:
        for _, traces in self:
            yield from traces

    def files(self) -> list:
        return sorted(self._traces)

    def coverable_in_path(self, path: PathLike) -> int:
        return amount_coverable(self.get_child_traces(path))

    def covered_in_path(self, path: PathLike) -> int:
        return amount_covered(self.get_child_traces(path))

    def total_coverable(self) -> int:
        """Total coverable points across all files."""
        return amount_coverable(self.all_traces())

    def total_covered(self) -> int:
        """Total covered points across all files."""
        return amount_covered(self.all_traces())

    def coverage_percentage(self) -> float:
        """Coverage ranging from 0.0 to 1.0."""
        return coverage_percentage(self.all_traces())