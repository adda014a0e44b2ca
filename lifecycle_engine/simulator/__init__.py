"""Dry-run simulation of rules: no actions are ever dispatched."""

from lifecycle_engine.simulator.simulator import (
    InvalidContextError,
    parse_context,
    SimulationResult,
    Simulator,
)
from lifecycle_engine.simulator.report import format_report

__all__ = [
    "InvalidContextError",
    "parse_context",
    "SimulationResult",
    "Simulator",
    "format_report",
]
