"""The exec policy decision function and execution plan helpers."""

from execgate.exec.errors import PolicyDenied
from execgate.exec.types import (
    CommandSegment,
    ExecSecurity,
    PolicyInputs,
    PolicyVerdict,
)

MSG_SECURITY_DENY = "SYSTEM_RUN_DISABLED: security=deny"
MSG_APPROVAL_REQUIRED = "SYSTEM_RUN_DENIED: approval required"
MSG_APPROVAL_DENIED = "SYSTEM_RUN_DENIED: approval denied"
MSG_PLAN_MISS = "SYSTEM_RUN_DENIED: execution plan mismatch"


def format_allowlist_miss_message(windows_shell_wrapper_blocked: bool = False) -> str:
    if not windows_shell_wrapper_blocked:
        return "SYSTEM_RUN_DENIED: allowlist miss"
    return (
        "SYSTEM_RUN_DENIED: allowlist miss "
        "(Windows shell wrappers like cmd.exe /c require approval; "
        "approve once/always or run with --ask on-miss|always)"
    )


def _deny(inputs: PolicyInputs, reason: str, message: str, **overrides) -> PolicyVerdict:
    fields = {
        "analysis_ok": inputs.analysis_ok,
        "allowlist_satisfied": inputs.allowlist_satisfied,
        **overrides,
    }
    return PolicyVerdict(
        allowed=False,
        approved_by_ask=False,
        approval_decision=inputs.approval_decision,
        event_reason=reason,
        error_message=message,
        **fields,
    )


def evaluate_run_policy(inputs: PolicyInputs) -> PolicyVerdict:
    """
    Decide whether a run request may execute.

    Pure function of its inputs; every denial carries one of the stable
    exec.denied reason codes.
    """
    if inputs.security == "deny":
        return _deny(inputs, "security=deny", MSG_SECURITY_DENY)

    if inputs.approval_decision == "deny":
        return _deny(inputs, "approval-required", MSG_APPROVAL_DENIED)

    has_approval = inputs.approved or inputs.approval_decision in ("allow-once", "allow-always")
    asks = inputs.ask != "off"

    analysis_ok = inputs.analysis_ok
    allowlist_satisfied = inputs.allowlist_satisfied
    windows_blocked = inputs.is_windows and inputs.cmd_invocation
    if windows_blocked:
        # cmd.exe splits arguments differently; it is never trusted implicitly
        analysis_ok = False
        allowlist_satisfied = False
        if not has_approval:
            if asks:
                return _deny(
                    inputs, "approval-required", MSG_APPROVAL_REQUIRED,
                    analysis_ok=False, allowlist_satisfied=False, windows_shell_wrapper_blocked=True,
                )
            return _deny(
                inputs, "allowlist-miss", format_allowlist_miss_message(True),
                analysis_ok=False, allowlist_satisfied=False, windows_shell_wrapper_blocked=True,
            )

    state = {
        "analysis_ok": analysis_ok,
        "allowlist_satisfied": allowlist_satisfied,
        "windows_shell_wrapper_blocked": windows_blocked,
    }

    if inputs.security == "full":
        if asks and not has_approval:
            return _deny(inputs, "approval-required", MSG_APPROVAL_REQUIRED, **state)
    else:
        trusted = analysis_ok and allowlist_satisfied
        if trusted and inputs.ask == "always" and not has_approval:
            return _deny(inputs, "approval-required", MSG_APPROVAL_REQUIRED, **state)
        if not trusted and not (asks and has_approval):
            if asks:
                return _deny(inputs, "approval-required", MSG_APPROVAL_REQUIRED, **state)
            return _deny(inputs, "allowlist-miss", format_allowlist_miss_message(windows_blocked), **state)

    approved_by_ask = has_approval

    # Shell wrappers never run on allowlist trust alone
    if inputs.security == "allowlist" and inputs.shell_wrapper and not approved_by_ask:
        return _deny(inputs, "approval-required", MSG_APPROVAL_REQUIRED, **state)

    return PolicyVerdict(
        allowed=True,
        approved_by_ask=approved_by_ask,
        approval_decision=inputs.approval_decision,
        **state,
    )


def resolve_planned_allowlist_argv(
    security: ExecSecurity,
    shell_command: str | None,
    verdict: PolicyVerdict,
    segments: list[CommandSegment],
) -> list[str] | None:
    """
    Argv to execute for a pure allowlist hit.

    Returns None when the original argv should run. An allowlist hit with no
    usable effective argv is an execution plan miss.
    """
    if (
        security != "allowlist"
        or verdict.approved_by_ask
        or shell_command
        or not verdict.analysis_ok
        or not verdict.allowlist_satisfied
        or len(segments) != 1
    ):
        return None
    resolution = segments[0].resolution
    if resolution is None or not resolution.effective_argv or not resolution.canonical_path:
        raise PolicyDenied("execution-plan-miss", MSG_PLAN_MISS)
    # Run exactly the binary that was trusted, not whatever PATH finds at spawn
    return [resolution.canonical_path, *resolution.effective_argv[1:]]
