"""Command executors: local process spawn and remote exec host."""

import asyncio
import os
import signal
from dataclasses import dataclass
from typing import Protocol

import httpx
from loguru import logger

from execgate.exec.env import build_host_env
from execgate.exec.errors import CompanionUnavailable, PolicyDenied
from execgate.exec.types import DENIED_REASONS, RunResult

TRUNCATION_MARKER = "... (truncated)"

_READ_CHUNK = 64 * 1024


@dataclass
class RunContext:
    """Request metadata forwarded alongside the argv."""
    run_id: str
    cmd_text: str
    agent_id: str | None = None
    session_key: str | None = None
    approval_decision: str | None = None
    needs_screen_recording: bool = False


class Executor(Protocol):
    """Anything that can run a resolved argv."""

    name: str

    async def run(
        self,
        argv: list[str],
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        timeout_ms: int | None = None,
        context: RunContext | None = None,
    ) -> RunResult:
        ...


def apply_output_truncation(result: RunResult) -> None:
    """Append a visible marker to stderr (or stdout) of a truncated result."""
    if not result.truncated:
        return
    if result.stderr.strip():
        result.stderr = f"{result.stderr}\n{TRUNCATION_MARKER}"
    else:
        result.stdout = f"{result.stdout}\n{TRUNCATION_MARKER}"


def normalize_denied_reason(reason: str | None) -> str:
    return reason if reason in DENIED_REASONS else "approval-required"


class _CappedBuffer:
    """Keeps at most cap bytes of a stream; survives cancellation of drain()."""

    def __init__(self, cap: int):
        self.cap = cap
        self.data = bytearray()
        self.truncated = False

    async def drain(self, stream: asyncio.StreamReader) -> None:
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                return
            room = self.cap - len(self.data)
            if len(chunk) > room:
                self.truncated = True
            if room > 0:
                self.data += chunk[:room]

    def text(self) -> str:
        return self.data.decode("utf-8", errors="replace")


async def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    try:
        if os.name == "posix":
            os.killpg(process.pid, signal.SIGKILL)
        else:
            process.kill()
    except ProcessLookupError:
        pass
    await process.wait()


class LocalExecutor:
    """Spawns the argv directly (no shell) on this host.

    env holds sanitized overrides; they are merged over the scrubbed host env.
    """

    name = "local"

    def __init__(self, max_output_bytes: int = 200_000, default_timeout_seconds: int = 300):
        self.max_output_bytes = max_output_bytes
        self.default_timeout_seconds = default_timeout_seconds

    async def run(
        self,
        argv: list[str],
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        timeout_ms: int | None = None,
        context: RunContext | None = None,
    ) -> RunResult:
        timeout = timeout_ms / 1000 if timeout_ms else self.default_timeout_seconds

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=build_host_env(env),
                start_new_session=os.name == "posix",
            )
        except OSError as e:
            logger.error(f"Command spawn error: {e}")
            return RunResult(success=False, error=str(e))

        stdout = _CappedBuffer(self.max_output_bytes)
        stderr = _CappedBuffer(self.max_output_bytes)

        async def collect() -> None:
            await asyncio.gather(stdout.drain(process.stdout), stderr.drain(process.stderr))
            await process.wait()

        try:
            await asyncio.wait_for(collect(), timeout)
        except asyncio.TimeoutError:
            await _kill(process)
            # Output read before the kill is kept
            return RunResult(
                success=False,
                exit_code=-1,
                timed_out=True,
                stdout=stdout.text(),
                stderr=stderr.text(),
                truncated=stdout.truncated or stderr.truncated,
                error=f"Command timed out after {timeout:g} seconds",
            )
        except asyncio.CancelledError:
            await _kill(process)
            raise

        return RunResult(
            success=process.returncode == 0,
            exit_code=process.returncode,
            stdout=stdout.text(),
            stderr=stderr.text(),
            truncated=stdout.truncated or stderr.truncated,
        )


class ExecHostExecutor:
    """
    Runs commands through a companion exec host over HTTP.

    The exec host has its own privilege boundary and may refuse a run; that
    refusal surfaces as PolicyDenied. An unreachable host is
    CompanionUnavailable.
    """

    name = "exec-host"

    def __init__(
        self,
        url: str,
        token: str = "",
        default_timeout_seconds: int = 300,
        connect_timeout_seconds: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.url = url.rstrip("/")
        self.default_timeout_seconds = default_timeout_seconds
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(None, connect=connect_timeout_seconds),
            headers=headers,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _cancel_remote(self, run_id: str) -> bool:
        """Ask the exec host to kill a run. False if it cannot."""
        try:
            resp = await self._client.post(f"{self.url}/exec/{run_id}/cancel", timeout=5.0)
            return resp.status_code < 400
        except httpx.HTTPError as e:
            logger.warning(f"Exec host cancel failed for {run_id}: {e}")
            return False

    async def run(
        self,
        argv: list[str],
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        timeout_ms: int | None = None,
        context: RunContext | None = None,
    ) -> RunResult:
        context = context or RunContext(run_id="", cmd_text=" ".join(argv))
        payload = {
            "runId": context.run_id,
            "command": argv,
            "rawCommand": context.cmd_text or None,
            "cwd": cwd,
            "env": env,
            "timeoutMs": timeout_ms,
            "needsScreenRecording": context.needs_screen_recording,
            "agentId": context.agent_id,
            "sessionKey": context.session_key,
            "approvalDecision": context.approval_decision,
        }
        timeout = timeout_ms / 1000 if timeout_ms else self.default_timeout_seconds

        try:
            resp = await asyncio.wait_for(self._client.post(f"{self.url}/exec", json=payload), timeout)
        except asyncio.TimeoutError:
            cancelled = await self._cancel_remote(context.run_id)
            error = f"Command timed out after {timeout:g} seconds"
            if not cancelled:
                error += " (exec host could not cancel the run)"
            return RunResult(success=False, exit_code=-1, timed_out=True, error=error)
        except asyncio.CancelledError:
            await self._cancel_remote(context.run_id)
            raise
        except httpx.TransportError as e:
            raise CompanionUnavailable(f"COMPANION_APP_UNAVAILABLE: exec host unreachable ({e})") from e

        try:
            data = resp.json()
        except ValueError as e:
            raise CompanionUnavailable(
                f"COMPANION_APP_UNAVAILABLE: invalid exec host response (HTTP {resp.status_code})"
            ) from e

        if not data.get("ok"):
            error = data.get("error") or {}
            raise PolicyDenied(
                normalize_denied_reason(error.get("reason")),
                error.get("message") or "SYSTEM_RUN_DENIED: exec host refused the request",
            )

        result = data.get("payload") or {}
        return RunResult(
            success=bool(result.get("success")),
            exit_code=result.get("exitCode"),
            stdout=result.get("stdout") or "",
            stderr=result.get("stderr") or "",
            timed_out=bool(result.get("timedOut")),
            truncated=bool(result.get("truncated")),
            error=result.get("error"),
        )


async def dispatch_run(
    argv: list[str],
    cwd: str | None,
    env: dict[str, str] | None,
    timeout_ms: int | None,
    context: RunContext,
    local: Executor,
    remote: Executor | None = None,
    prefer_remote: bool = False,
    remote_enforced: bool = False,
    fallback_allowed: bool = True,
) -> tuple[RunResult, str]:
    """
    Run argv on the preferred executor, falling back to local when allowed.

    Returns (result, executor name).
    """
    if prefer_remote or remote_enforced:
        if remote is None:
            if remote_enforced or not fallback_allowed:
                raise CompanionUnavailable("COMPANION_APP_UNAVAILABLE: no exec host configured")
        else:
            try:
                return await remote.run(argv, cwd, env, timeout_ms, context), remote.name
            except CompanionUnavailable:
                if remote_enforced or not fallback_allowed:
                    raise
                logger.warning("Exec host unreachable, falling back to local execution")

    if context.needs_screen_recording:
        raise PolicyDenied("permission:screenRecording", "PERMISSION_MISSING: screenRecording")

    return await local.run(argv, cwd, env, timeout_ms, context), local.name
