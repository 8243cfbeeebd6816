"""Approval request binding and the bounded wait for a human decision."""

import asyncio
import hashlib
import json
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

from loguru import logger

from execgate.exec.errors import ApprovalTimeout
from execgate.exec.types import ExecApprovalDecision, normalize_decision

DEFAULT_APPROVAL_TIMEOUT_SECONDS = 120


@dataclass(frozen=True)
class ApprovalBinding:
    """What an approval was granted for. A decision only applies to an identical binding."""
    argv: tuple[str, ...]
    cwd: str | None
    agent_id: str | None
    session_key: str | None
    env_hash: str | None


@dataclass
class PendingApproval:
    """A pending approval request."""
    run_id: str
    cmd_text: str
    binding: ApprovalBinding
    created_at: float
    expires_at: float
    resolved_path: str | None = None


ApprovalCallback = Callable[[PendingApproval], Awaitable[ExecApprovalDecision | None]]


def build_env_hash(env: dict[str, str] | None) -> str | None:
    """sha256 over sorted env pairs, or None for no env."""
    if not env:
        return None
    entries = sorted((k.strip(), v) for k, v in env.items() if k.strip())
    if not entries:
        return None
    return hashlib.sha256(json.dumps(entries).encode("utf-8")).hexdigest()


def build_approval_binding(
    argv: list[str],
    cwd: str | None = None,
    agent_id: str | None = None,
    session_key: str | None = None,
    env: dict[str, str] | None = None,
) -> ApprovalBinding:
    return ApprovalBinding(
        argv=tuple(argv),
        cwd=cwd or None,
        agent_id=agent_id or None,
        session_key=session_key or None,
        env_hash=build_env_hash(env),
    )


def match_approval_binding(expected: ApprovalBinding, actual: ApprovalBinding) -> str | None:
    """None when the bindings agree, else the mismatch message."""
    if not expected.argv or expected.argv != actual.argv:
        return "approval id does not match request"
    if (expected.cwd, expected.agent_id, expected.session_key) != (
        actual.cwd, actual.agent_id, actual.session_key
    ):
        return "approval id does not match request"
    if expected.env_hash is None and actual.env_hash is not None:
        return "approval id missing env binding for requested env overrides"
    if expected.env_hash != actual.env_hash:
        return "approval id env binding mismatch"
    return None


class ApprovalBroker:
    """
    Out-of-band approval channel keyed by run id.

    The optional callback announces a pending request (e.g. to a chat
    channel) and may answer it directly; otherwise resolve() answers it.
    """

    def __init__(
        self,
        timeout_seconds: float = DEFAULT_APPROVAL_TIMEOUT_SECONDS,
        callback: ApprovalCallback | None = None,
    ):
        self.timeout_seconds = timeout_seconds
        self._callback = callback
        self._pending: dict[str, tuple[PendingApproval, asyncio.Future]] = {}

    def set_approval_callback(self, callback: ApprovalCallback) -> None:
        """Set callback for requesting approvals."""
        self._callback = callback

    def create_pending(
        self,
        run_id: str,
        cmd_text: str,
        binding: ApprovalBinding,
        resolved_path: str | None = None,
    ) -> PendingApproval:
        now = time.time()
        return PendingApproval(
            run_id=run_id,
            cmd_text=cmd_text,
            binding=binding,
            created_at=now,
            expires_at=now + self.timeout_seconds,
            resolved_path=resolved_path,
        )

    def get_pending(self, run_id: str) -> PendingApproval | None:
        entry = self._pending.get(run_id)
        return entry[0] if entry else None

    def list_pending(self) -> list[PendingApproval]:
        return [pending for pending, _ in self._pending.values()]

    async def _ask_callback(self, pending: PendingApproval) -> None:
        try:
            decision = await self._callback(pending)
        except Exception as e:
            logger.warning(f"Approval callback failed for {pending.run_id}: {e}")
            return
        if decision is not None:
            self.resolve(pending.run_id, decision)

    async def request(self, pending: PendingApproval) -> ExecApprovalDecision:
        """Wait for a decision. Raises ApprovalTimeout when none arrives in time."""
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[pending.run_id] = (pending, future)
        task = asyncio.create_task(self._ask_callback(pending)) if self._callback else None
        if task is None:
            logger.warning("No approval callback set")

        try:
            remaining = max(0.0, pending.expires_at - time.time())
            return await asyncio.wait_for(future, timeout=remaining)
        except asyncio.TimeoutError as e:
            raise ApprovalTimeout(f"approval timed out for run {pending.run_id}") from e
        finally:
            self._pending.pop(pending.run_id, None)
            if task is not None and not task.done():
                task.cancel()

    def resolve(
        self,
        run_id: str,
        decision: str,
        binding: ApprovalBinding | None = None,
    ) -> bool:
        """Answer a pending approval. False if unknown, invalid or bound to another request."""
        entry = self._pending.get(run_id)
        normalized = normalize_decision(decision)
        if entry is None or normalized is None:
            return False

        pending, future = entry
        if binding is not None:
            mismatch = match_approval_binding(pending.binding, binding)
            if mismatch:
                logger.warning(f"Rejected approval for {run_id}: {mismatch}")
                return False

        if not future.done():
            future.set_result(normalized)
        return True
