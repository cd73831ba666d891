"""Coverage trace maps and the state machines that collect hit counts from test runs."""

__version__ = "0.1.0"
__all__ = ["traces", "statemachine", "instrumented", "tracer", "linux", "engine"]