"""Selection of the coverage collector for a test run."""

from __future__ import annotations

import logging
import sys
from typing import Any, Optional, Tuple

from covtrace.instrumented import ReportBuilder, create_instrumented_state_machine
from covtrace.linux import TracemapBuilder, create_linux_state_machine
from covtrace.statemachine import (
    NullStateData,
    StateData,
    TestState,
    TraceConfig,
    TraceEngine,
)
from covtrace.tracer import ProcessControl
from covtrace.traces import TraceMap

logger = logging.getLogger(__name__)


def create_state_machine(
    handle: Any,
    traces: TraceMap,
    config: TraceConfig,
    control: Optional[ProcessControl] = None,
    tracemap_builder: Optional[TracemapBuilder] = None,
    report_builder: Optional[ReportBuilder] = None,
) -> Tuple[TestState, StateData]:
    """Pick the collector for the configured engine and return its first state."""
    if config.engine is TraceEngine.PTRACE:
        if control is not None and sys.platform.startswith("linux"):
            return create_linux_state_machine(
                handle, traces, config, control, tracemap_builder
            )
        logger.error("The ptrace backend is not supported on this system")
        return TestState.end(1), NullStateData()
    if config.engine is TraceEngine.LLVM:
        if report_builder is None:
            logger.error("The llvm backend needs a coverage report builder")
            return TestState.end(1), NullStateData()
        return create_instrumented_state_machine(
            handle, traces, {}, config, report_builder
        )
    logger.error("Coverage collection is not currently supported on this system")
    return TestState.end(1), NullStateData()