"""Orchestrator module for stack deploy/undeploy tests.

- StackOrchestrator: Triggers deploy/undeploy and polls the stack to completion
- StallDetector: Tracks how long members sit in one state and resyncs them
- DiagnosticsAggregator: Job logs and unresolved references for failure reports
- StackTestError and subclasses: Entries of the returned error lists
"""

from .models import (
    StackTestError,
    StackTimeoutError,
    StackFailedError,
    MemberFailedError,
    StackStuckError,
    TriggerError,
    DiagnosticsError,
    ResyncError,
    MemberClass,
    DeployOutcome,
    UndeployOutcome,
    format_errors,
)
from .stall_detector import StallDetector, StateRecord
from .diagnostics import DiagnosticsAggregator
from .orchestrator import StackOrchestrator

__all__ = [
    "StackTestError",
    "StackTimeoutError",
    "StackFailedError",
    "MemberFailedError",
    "StackStuckError",
    "TriggerError",
    "DiagnosticsError",
    "ResyncError",
    "MemberClass",
    "DeployOutcome",
    "UndeployOutcome",
    "format_errors",
    "StallDetector",
    "StateRecord",
    "DiagnosticsAggregator",
    "StackOrchestrator",
]
