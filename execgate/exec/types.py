"""Type definitions for exec authorization."""

from dataclasses import dataclass, field
from typing import Literal

# Security modes
ExecSecurity = Literal["deny", "allowlist", "full"]

# Ask modes for approval
ExecAsk = Literal["off", "on-miss", "always"]

# Execution host
ExecHost = Literal["local", "exec-host"]

# Approval decisions
ExecApprovalDecision = Literal["allow-once", "allow-always", "deny"]

# Reasons carried by exec.denied events
DeniedReason = Literal[
    "security=deny",
    "approval-required",
    "allowlist-miss",
    "execution-plan-miss",
    "companion-unavailable",
    "permission:screenRecording",
]

DENIED_REASONS: tuple[str, ...] = (
    "security=deny",
    "approval-required",
    "allowlist-miss",
    "execution-plan-miss",
    "companion-unavailable",
    "permission:screenRecording",
)

_SECURITY_ORDER = {"deny": 0, "allowlist": 1, "full": 2}
_ASK_ORDER = {"off": 0, "on-miss": 1, "always": 2}


def normalize_security(value: str | None, default: ExecSecurity = "deny") -> ExecSecurity:
    """Coerce a loose string into an ExecSecurity value."""
    if value is None:
        return default
    value = value.strip().lower()
    return value if value in _SECURITY_ORDER else default  # type: ignore[return-value]


def normalize_ask(value: str | None, default: ExecAsk = "on-miss") -> ExecAsk:
    """Coerce a loose string into an ExecAsk value."""
    if value is None:
        return default
    value = value.strip().lower()
    return value if value in _ASK_ORDER else default  # type: ignore[return-value]


def normalize_decision(value: str | None) -> ExecApprovalDecision | None:
    """Return the approval decision, or None for anything unrecognized."""
    if value in ("allow-once", "allow-always", "deny"):
        return value  # type: ignore[return-value]
    return None


def min_security(a: ExecSecurity, b: ExecSecurity) -> ExecSecurity:
    return a if _SECURITY_ORDER[a] <= _SECURITY_ORDER[b] else b


def max_ask(a: ExecAsk, b: ExecAsk) -> ExecAsk:
    return a if _ASK_ORDER[a] >= _ASK_ORDER[b] else b


@dataclass
class AllowlistEntry:
    """An entry in the exec allowlist."""
    pattern: str
    id: str | None = None
    created_at: int | None = None
    last_used_at: int | None = None
    use_count: int = 0
    last_used_command: str | None = None
    last_resolved_path: str | None = None


@dataclass(frozen=True)
class SafeBinProfile:
    """Argument constraints for a safe bin."""
    max_positional: int | None = None
    allowed_flags: frozenset[str] | None = None  # None = any flag not denied
    denied_flags: frozenset[str] = frozenset()
    pattern_args: int = 0  # leading args baked into allow-always patterns


@dataclass(frozen=True)
class TrustEntry:
    """A safe bin or skill bin, trusted by canonical path only."""
    name: str
    canonical_path: str
    profile: SafeBinProfile | None = None


@dataclass(frozen=True)
class Resolution:
    """Where a segment's executable actually lives."""
    raw_executable: str
    canonical_path: str
    effective_argv: list[str]
    matched_via: Literal["absolute", "relative", "search"]


@dataclass
class CommandSegment:
    """One resolved sub-command."""
    argv: list[str]
    resolution: Resolution | None = None


@dataclass
class Analysis:
    """Result of unwrapping and resolving a command."""
    ok: bool
    segments: list[CommandSegment] = field(default_factory=list)
    reason: str | None = None


@dataclass(frozen=True)
class PolicyInputs:
    """Everything the decision function looks at."""
    security: ExecSecurity
    ask: ExecAsk
    analysis_ok: bool
    allowlist_satisfied: bool
    approval_decision: ExecApprovalDecision | None = None
    approved: bool = False
    is_windows: bool = False
    cmd_invocation: bool = False
    shell_wrapper: bool = False


@dataclass(frozen=True)
class PolicyVerdict:
    """Immutable outcome of the decision function."""
    allowed: bool
    approved_by_ask: bool
    analysis_ok: bool
    allowlist_satisfied: bool
    approval_decision: ExecApprovalDecision | None = None
    event_reason: DeniedReason | None = None
    error_message: str | None = None
    windows_shell_wrapper_blocked: bool = False


@dataclass
class RunRequest:
    """An inbound request to run a command."""
    command: list[str] | None = None
    raw_command: str | None = None
    cwd: str | None = None
    env: dict[str, str] | None = None
    timeout_ms: int | None = None
    agent_id: str | None = None
    session_key: str | None = None
    approved: bool = False
    approval_decision: str | None = None
    needs_screen_recording: bool = False
    run_id: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "RunRequest":
        return cls(
            command=data.get("command"),
            raw_command=data.get("rawCommand"),
            cwd=data.get("cwd"),
            env=data.get("env"),
            timeout_ms=data.get("timeoutMs"),
            agent_id=data.get("agentId"),
            session_key=data.get("sessionKey"),
            approved=data.get("approved") is True,
            approval_decision=data.get("approvalDecision"),
            needs_screen_recording=data.get("needsScreenRecording") is True,
            run_id=data.get("runId"),
        )


@dataclass
class RunResult:
    """Result of command execution."""
    success: bool
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    truncated: bool = False
    error: str | None = None

    def to_payload(self) -> dict:
        return {
            "exitCode": self.exit_code,
            "timedOut": self.timed_out,
            "success": self.success,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "error": self.error,
        }


@dataclass
class RunResponse:
    """What the caller gets back for a run request."""
    ok: bool
    payload: dict | None = None
    error_code: str | None = None
    error_message: str | None = None

    def to_dict(self) -> dict:
        if self.ok:
            return {"ok": True, "payload": self.payload}
        return {"ok": False, "error": {"code": self.error_code, "message": self.error_message}}
