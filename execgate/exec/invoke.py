"""Run request handling: normalize, analyze, decide, harden, execute."""

import sys
import uuid
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, Protocol

from loguru import logger

from execgate.config.schema import ExecToolConfig
from execgate.exec.allowlist import (
    AllowlistEvaluation,
    evaluate_allowlist,
    resolve_safe_bin_runtime_policy,
)
from execgate.exec.approvals import (
    ExecApprovalStore,
    PatternDeriver,
    ResolvedApprovals,
    default_pattern_deriver,
    resolve_allow_always_patterns,
)
from execgate.exec.binding import ApprovalBroker, build_approval_binding
from execgate.exec.command import is_cmd_exe_invocation, resolve_run_command
from execgate.exec.env import sanitize_env_overrides
from execgate.exec.errors import (
    ApprovalTimeout,
    CompanionUnavailable,
    ExecError,
    InvalidRequest,
    PolicyDenied,
)
from execgate.exec.executor import (
    Executor,
    ExecHostExecutor,
    LocalExecutor,
    RunContext,
    apply_output_truncation,
    dispatch_run,
)
from execgate.exec.hardening import harden_approved_execution_paths
from execgate.exec.policy import evaluate_run_policy, resolve_planned_allowlist_argv
from execgate.exec.safety import analyze_argv_command
from execgate.exec.types import (
    Analysis,
    ExecApprovalDecision,
    ExecSecurity,
    PolicyInputs,
    PolicyVerdict,
    RunRequest,
    RunResponse,
    SafeBinProfile,
    TrustEntry,
    min_security,
    normalize_decision,
)

EventSink = Callable[[str, dict], Awaitable[None]]


class SkillBinsProvider(Protocol):
    """Source of the agent's currently registered skill bins."""

    async def current(self) -> list[TrustEntry]:
        ...


@dataclass
class ParsedRun:
    """A validated run request."""
    argv: list[str]
    shell_command: str | None
    cmd_text: str
    agent_id: str | None
    session_key: str
    run_id: str
    approval_decision: ExecApprovalDecision | None
    env: dict[str, str] | None
    cwd: str | None
    timeout_ms: int | None
    needs_screen_recording: bool
    approved: bool


@dataclass
class RunDecision:
    """Everything the policy phase worked out about a request."""
    approvals: ResolvedApprovals
    security: ExecSecurity
    analysis: Analysis
    evaluation: AllowlistEvaluation
    inputs: PolicyInputs
    verdict: PolicyVerdict


@dataclass
class RunPlan:
    """A decision that survived hardening, ready to execute."""
    decision: RunDecision
    argv: list[str]
    cwd: str | None
    planned_argv: list[str] | None


def _denied_reason(error: ExecError) -> str:
    if isinstance(error, PolicyDenied):
        return error.reason
    if isinstance(error, CompanionUnavailable):
        return "companion-unavailable"
    return "approval-required"


def profiles_from_config(config: ExecToolConfig) -> dict[str, SafeBinProfile]:
    return {
        name: SafeBinProfile(
            max_positional=p.max_positional,
            allowed_flags=frozenset(p.allowed_flags) if p.allowed_flags is not None else None,
            denied_flags=frozenset(p.denied_flags),
            pattern_args=p.pattern_args,
        )
        for name, p in config.safe_bin_profiles.items()
    }


class RunRequestHandler:
    """
    Single entry point for run requests.

    Flow:
    1. Validate and normalize the request
    2. Resolve the agent's effective policy
    3. Analyze the command and match it against the allowlist
    4. Decide; optionally wait for a human approval
    5. Harden paths of approved runs
    6. Persist allow-always patterns, dispatch, record allowlist use
    """

    def __init__(
        self,
        config: ExecToolConfig,
        store: ExecApprovalStore | None = None,
        skill_bins: SkillBinsProvider | None = None,
        local: Executor | None = None,
        remote: Executor | None = None,
        broker: ApprovalBroker | None = None,
        on_event: EventSink | None = None,
        pattern_deriver: PatternDeriver = default_pattern_deriver,
        platform: str | None = None,
    ):
        self.config = config
        self.store = store or ExecApprovalStore(config.approvals_file)
        self.skill_bins = skill_bins
        self.local = local or LocalExecutor(config.max_output_bytes, config.timeout_seconds)
        self.remote = remote
        self._owns_remote = False
        if self.remote is None and (config.host.prefer or config.host.enforced):
            self._owns_remote = True
            self.remote = ExecHostExecutor(
                config.host.url,
                token=config.host.token,
                default_timeout_seconds=config.timeout_seconds,
                connect_timeout_seconds=config.host.connect_timeout_seconds,
            )
        self.broker = broker
        self.on_event = on_event
        self.pattern_deriver = pattern_deriver
        self.platform = platform or sys.platform

    async def aclose(self) -> None:
        """Close the exec host client if this handler created it."""
        if self._owns_remote:
            await self.remote.aclose()

    @property
    def host_name(self) -> str:
        if self.config.host.prefer or self.config.host.enforced:
            return "exec-host"
        return "local"

    async def _emit(self, event: str, payload: dict) -> None:
        if self.on_event:
            await self.on_event(event, payload)

    def parse(self, request: RunRequest) -> ParsedRun:
        """Validate a request. Raises InvalidRequest; nothing is repaired."""
        resolved = resolve_run_command(request.command, request.raw_command, self.platform)

        if request.env is not None and not isinstance(request.env, dict):
            raise InvalidRequest("env must be an object of strings")
        if request.timeout_ms is not None and (
            not isinstance(request.timeout_ms, int) or isinstance(request.timeout_ms, bool)
            or request.timeout_ms <= 0
        ):
            raise InvalidRequest("timeoutMs must be a positive integer")

        decision = None
        if request.approval_decision is not None:
            decision = normalize_decision(request.approval_decision)
            if decision is None:
                raise InvalidRequest(f"invalid approvalDecision: {request.approval_decision}")

        return ParsedRun(
            argv=resolved.argv,
            shell_command=resolved.shell_command,
            cmd_text=resolved.cmd_text,
            agent_id=(request.agent_id or "").strip() or None,
            session_key=(request.session_key or "").strip() or "node",
            run_id=(request.run_id or "").strip() or str(uuid.uuid4()),
            approval_decision=decision,
            env=sanitize_env_overrides(request.env, shell_wrapper=resolved.shell_command is not None),
            cwd=(request.cwd or "").strip() or None,
            timeout_ms=request.timeout_ms,
            needs_screen_recording=request.needs_screen_recording,
            approved=request.approved,
        )

    async def decide(self, parsed: ParsedRun, wait_for_approval: bool = True) -> RunDecision:
        """Run the analysis and decision phase. Never raises on denial."""
        cfg = self.config
        approvals = self.store.resolve(parsed.agent_id, cfg.security, cfg.ask, cfg.ask_fallback)
        security = approvals.security

        safe_bin_policy = resolve_safe_bin_runtime_policy(
            safe_bins=approvals.safe_bins if approvals.safe_bins is not None else cfg.safe_bins,
            profiles={**profiles_from_config(cfg), **approvals.safe_bin_profiles},
            trusted_dirs=approvals.trusted_dirs if approvals.trusted_dirs is not None else cfg.trusted_dirs,
        )
        skill_bins: list[TrustEntry] = []
        if approvals.auto_allow_skills and self.skill_bins is not None:
            skill_bins = await self.skill_bins.current()

        analysis = analyze_argv_command(parsed.argv, cwd=parsed.cwd)
        if not analysis.ok:
            logger.debug(f"Analysis failed for run {parsed.run_id}: {analysis.reason}")

        def match(level: ExecSecurity) -> AllowlistEvaluation:
            return evaluate_allowlist(
                analysis,
                level,
                approvals.allowlist,
                safe_bin_policy=safe_bin_policy,
                skill_bins=skill_bins,
                auto_allow_skills=approvals.auto_allow_skills,
                cwd=parsed.cwd,
            )

        evaluation = match(security)

        cmd_invocation = is_cmd_exe_invocation(parsed.argv) or any(
            is_cmd_exe_invocation(segment.argv) for segment in analysis.segments
        )
        inputs = PolicyInputs(
            security=security,
            ask=approvals.ask,
            analysis_ok=analysis.ok,
            allowlist_satisfied=evaluation.allowlist_satisfied,
            approval_decision=parsed.approval_decision,
            approved=parsed.approved,
            is_windows=self.platform == "win32",
            cmd_invocation=cmd_invocation,
            shell_wrapper=parsed.shell_command is not None,
        )
        verdict = evaluate_run_policy(inputs)

        if (
            wait_for_approval
            and not verdict.allowed
            and verdict.event_reason == "approval-required"
            and self.broker is not None
            and parsed.approval_decision is None
            and not parsed.approved
        ):
            inputs, verdict, evaluation = await self._await_approval(
                parsed, inputs, analysis, evaluation, approvals.ask_fallback, match
            )

        return RunDecision(
            approvals=approvals,
            security=inputs.security,
            analysis=analysis,
            evaluation=evaluation,
            inputs=inputs,
            verdict=verdict,
        )

    async def _await_approval(
        self,
        parsed: ParsedRun,
        inputs: PolicyInputs,
        analysis: Analysis,
        evaluation: AllowlistEvaluation,
        ask_fallback: ExecSecurity,
        match: Callable[[ExecSecurity], AllowlistEvaluation],
    ) -> tuple[PolicyInputs, PolicyVerdict, AllowlistEvaluation]:
        binding = build_approval_binding(
            parsed.argv, parsed.cwd, parsed.agent_id, parsed.session_key, parsed.env
        )
        resolution = analysis.segments[0].resolution if analysis.segments else None
        pending = self.broker.create_pending(
            parsed.run_id,
            parsed.cmd_text,
            binding,
            resolved_path=resolution.canonical_path if resolution else None,
        )
        logger.info(f"Awaiting approval for run {parsed.run_id}: {parsed.cmd_text[:80]}")

        try:
            decision = await self.broker.request(pending)
        except ApprovalTimeout:
            logger.warning(f"Approval timed out for run {parsed.run_id}, ask fallback={ask_fallback}")
            if ask_fallback == "full":
                inputs = replace(inputs, approval_decision="allow-once")
                return inputs, evaluate_run_policy(inputs), evaluation
            if ask_fallback == "allowlist":
                # Never grants more than the allowlist would on its own
                level = min_security(inputs.security, "allowlist")
                evaluation = match(level)
                inputs = replace(
                    inputs, security=level, ask="off", allowlist_satisfied=evaluation.allowlist_satisfied
                )
                return inputs, evaluate_run_policy(inputs), evaluation
            return inputs, PolicyVerdict(
                allowed=False,
                approved_by_ask=False,
                analysis_ok=inputs.analysis_ok,
                allowlist_satisfied=inputs.allowlist_satisfied,
                event_reason="approval-required",
                error_message="SYSTEM_RUN_DENIED: approval timed out",
            ), evaluation

        logger.info(f"Approval decision for run {parsed.run_id}: {decision}")
        inputs = replace(inputs, approval_decision=decision)
        return inputs, evaluate_run_policy(inputs), evaluation

    def plan(self, parsed: ParsedRun, decision: RunDecision) -> RunPlan:
        """Turn an allowed decision into concrete argv/cwd. Raises on denial."""
        verdict = decision.verdict
        if not verdict.allowed:
            raise PolicyDenied(verdict.event_reason, verdict.error_message)

        hardened = harden_approved_execution_paths(
            verdict.approved_by_ask,
            parsed.argv,
            parsed.shell_command,
            parsed.cwd,
            root=self.config.workspace_root,
        )
        planned_argv = resolve_planned_allowlist_argv(
            decision.security, parsed.shell_command, verdict, decision.analysis.segments
        )
        return RunPlan(decision=decision, argv=hardened.argv, cwd=hardened.cwd, planned_argv=planned_argv)

    def _persist_allow_always(self, parsed: ParsedRun, decision: RunDecision) -> None:
        verdict = decision.verdict
        if verdict.approval_decision != "allow-always" or decision.security != "allowlist":
            return
        if not verdict.analysis_ok:
            return
        profiles = {**profiles_from_config(self.config), **decision.approvals.safe_bin_profiles}
        patterns = resolve_allow_always_patterns(
            decision.analysis.segments, profiles, self.pattern_deriver
        )
        for pattern in patterns:
            self.store.add_allowlist_entry(parsed.agent_id, pattern)

    def _record_allowlist_use(self, parsed: ParsedRun, decision: RunDecision) -> None:
        segments = decision.analysis.segments
        resolved_path = segments[0].resolution.canonical_path if segments and segments[0].resolution else None
        seen: set[str] = set()
        for match in decision.evaluation.allowlist_matches:
            if match.pattern in seen:
                continue
            seen.add(match.pattern)
            self.store.record_allowlist_use(parsed.agent_id, match.pattern, parsed.cmd_text, resolved_path)

    async def _execute(self, parsed: ParsedRun, plan: RunPlan) -> RunResponse:
        self._persist_allow_always(parsed, plan.decision)

        exec_argv = plan.planned_argv if plan.planned_argv is not None else plan.argv
        context = RunContext(
            run_id=parsed.run_id,
            cmd_text=parsed.cmd_text,
            agent_id=parsed.agent_id,
            session_key=parsed.session_key,
            approval_decision=plan.decision.verdict.approval_decision,
            needs_screen_recording=parsed.needs_screen_recording,
        )
        result, host = await dispatch_run(
            exec_argv,
            plan.cwd,
            parsed.env,
            parsed.timeout_ms,
            context,
            local=self.local,
            remote=self.remote,
            prefer_remote=self.config.host.prefer,
            remote_enforced=self.config.host.enforced,
            fallback_allowed=self.config.host.fallback_allowed,
        )
        apply_output_truncation(result)
        self._record_allowlist_use(parsed, plan.decision)

        logger.info(
            f"Run {parsed.run_id} finished on {host}: exit={result.exit_code} timed_out={result.timed_out}"
        )
        await self._emit("exec.finished", {
            "sessionKey": parsed.session_key,
            "runId": parsed.run_id,
            "host": host,
            "command": parsed.cmd_text,
            **result.to_payload(),
        })
        return RunResponse(ok=True, payload=result.to_payload())

    async def _deny(self, parsed: ParsedRun, reason: str, message: str) -> RunResponse:
        logger.warning(f"Run {parsed.run_id} denied ({reason}): {message}")
        await self._emit("exec.denied", {
            "sessionKey": parsed.session_key,
            "runId": parsed.run_id,
            "host": self.host_name,
            "command": parsed.cmd_text,
            "reason": reason,
        })
        return RunResponse(ok=False, error_code="UNAVAILABLE", error_message=message)

    async def handle(self, request: RunRequest) -> RunResponse:
        """Process one run request end to end."""
        try:
            parsed = self.parse(request)
        except InvalidRequest as e:
            logger.warning(f"Invalid run request: {e.message}")
            return RunResponse(ok=False, error_code=e.code, error_message=e.message)

        logger.info(f"Run request {parsed.run_id} ({parsed.session_key}): {parsed.cmd_text[:80]}")
        try:
            decision = await self.decide(parsed)
            plan = self.plan(parsed, decision)
            return await self._execute(parsed, plan)
        except ExecError as e:
            return await self._deny(parsed, _denied_reason(e), e.message)
