"""Run lifecycle: state machine, dispatch and launch."""

from run_orchestrator.runs.dispatch import DispatchOutcome, ExecutionDispatcher
from run_orchestrator.runs.launcher import RunLauncher
from run_orchestrator.runs.responses import format_run_response
from run_orchestrator.runs.state import is_terminal, transition

__all__ = [
    "DispatchOutcome",
    "ExecutionDispatcher",
    "RunLauncher",
    "format_run_response",
    "is_terminal",
    "transition",
]
