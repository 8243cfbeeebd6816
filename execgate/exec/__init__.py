"""Secure command execution system."""

from execgate.exec.types import (
    ExecSecurity,
    ExecAsk,
    ExecHost,
    ExecApprovalDecision,
    AllowlistEntry,
    SafeBinProfile,
    TrustEntry,
    Analysis,
    CommandSegment,
    RunRequest,
    RunResult,
    RunResponse,
)
from execgate.exec.errors import (
    ExecError,
    InvalidRequest,
    AnalysisFailed,
    PolicyDenied,
    ExecutionPathDenied,
    CompanionUnavailable,
    ApprovalTimeout,
)
from execgate.exec.safety import analyze_argv_command, is_safe_executable
from execgate.exec.allowlist import DEFAULT_SAFE_BINS, evaluate_allowlist
from execgate.exec.policy import evaluate_run_policy
from execgate.exec.approvals import ExecApprovalStore
from execgate.exec.binding import ApprovalBroker
from execgate.exec.executor import LocalExecutor, ExecHostExecutor
from execgate.exec.invoke import RunRequestHandler

__all__ = [
    "ExecSecurity",
    "ExecAsk",
    "ExecHost",
    "ExecApprovalDecision",
    "AllowlistEntry",
    "SafeBinProfile",
    "TrustEntry",
    "Analysis",
    "CommandSegment",
    "RunRequest",
    "RunResult",
    "RunResponse",
    "ExecError",
    "InvalidRequest",
    "AnalysisFailed",
    "PolicyDenied",
    "ExecutionPathDenied",
    "CompanionUnavailable",
    "ApprovalTimeout",
    "analyze_argv_command",
    "is_safe_executable",
    "DEFAULT_SAFE_BINS",
    "evaluate_allowlist",
    "evaluate_run_policy",
    "ExecApprovalStore",
    "ApprovalBroker",
    "LocalExecutor",
    "ExecHostExecutor",
    "RunRequestHandler",
]
