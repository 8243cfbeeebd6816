"""Exec approvals file, effective agent policy and allowlist persistence."""

import glob
import json
import secrets
import shlex
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator, TypeVar

from filelock import FileLock
from loguru import logger

from execgate.exec.command import executable_name
from execgate.exec.types import (
    AllowlistEntry,
    CommandSegment,
    ExecAsk,
    ExecSecurity,
    SafeBinProfile,
    max_ask,
    min_security,
    normalize_ask,
    normalize_security,
)

APPROVALS_VERSION = 1

T = TypeVar("T")

# Pattern derivation is pluggable; it must produce a pattern that matches the segment it came from
PatternDeriver = Callable[[CommandSegment, SafeBinProfile | None], str | None]


@dataclass
class AgentPolicy:
    """Per-agent (or default) exec policy. None fields inherit."""
    security: ExecSecurity | None = None
    ask: ExecAsk | None = None
    ask_fallback: ExecSecurity | None = None
    auto_allow_skills: bool | None = None
    allowlist: list[AllowlistEntry] = field(default_factory=list)
    safe_bins: list[str] | None = None
    safe_bin_profiles: dict[str, SafeBinProfile] | None = None
    trusted_dirs: list[str] | None = None


@dataclass
class ApprovalsFile:
    """Stored exec approvals configuration."""
    version: int = APPROVALS_VERSION
    defaults: AgentPolicy = field(default_factory=AgentPolicy)
    agents: dict[str, AgentPolicy] = field(default_factory=dict)


@dataclass
class ResolvedApprovals:
    """Effective policy for one agent."""
    agent_id: str | None
    security: ExecSecurity
    ask: ExecAsk
    ask_fallback: ExecSecurity
    auto_allow_skills: bool
    allowlist: list[AllowlistEntry]
    safe_bins: list[str] | None
    safe_bin_profiles: dict[str, SafeBinProfile]
    trusted_dirs: list[str] | None


def _now_ms() -> int:
    return int(time.time() * 1000)


def _entry_from_dict(data: dict) -> AllowlistEntry:
    return AllowlistEntry(
        pattern=str(data.get("pattern", "")),
        id=data.get("id"),
        created_at=data.get("createdAt"),
        last_used_at=data.get("lastUsedAt"),
        use_count=int(data.get("useCount", 0) or 0),
        last_used_command=data.get("lastUsedCommand"),
        last_resolved_path=data.get("lastResolvedPath"),
    )


def _entry_to_dict(entry: AllowlistEntry) -> dict:
    data = {
        "id": entry.id,
        "pattern": entry.pattern,
        "createdAt": entry.created_at,
        "lastUsedAt": entry.last_used_at,
        "useCount": entry.use_count,
        "lastUsedCommand": entry.last_used_command,
        "lastResolvedPath": entry.last_resolved_path,
    }
    return {k: v for k, v in data.items() if v is not None}


def _profile_from_dict(data: dict) -> SafeBinProfile:
    allowed = data.get("allowedFlags")
    return SafeBinProfile(
        max_positional=data.get("maxPositional"),
        allowed_flags=frozenset(allowed) if allowed is not None else None,
        denied_flags=frozenset(data.get("deniedFlags") or []),
        pattern_args=int(data.get("patternArgs", 0) or 0),
    )


def _profile_to_dict(profile: SafeBinProfile) -> dict:
    data: dict = {
        "maxPositional": profile.max_positional,
        "allowedFlags": sorted(profile.allowed_flags) if profile.allowed_flags is not None else None,
        "deniedFlags": sorted(profile.denied_flags),
        "patternArgs": profile.pattern_args,
    }
    return {k: v for k, v in data.items() if v is not None}


def _policy_from_dict(data: dict | None) -> AgentPolicy:
    data = data or {}
    security = data.get("security")
    ask = data.get("ask")
    ask_fallback = data.get("askFallback")
    auto_allow = data.get("autoAllowSkills")
    profiles = data.get("safeBinProfiles")
    return AgentPolicy(
        security=normalize_security(security) if security is not None else None,
        ask=normalize_ask(ask) if ask is not None else None,
        ask_fallback=normalize_security(ask_fallback) if ask_fallback is not None else None,
        auto_allow_skills=bool(auto_allow) if auto_allow is not None else None,
        allowlist=[
            _entry_from_dict(e) for e in data.get("allowlist") or []
            if isinstance(e, dict) and e.get("pattern")
        ],
        safe_bins=data.get("safeBins"),
        safe_bin_profiles=(
            {name: _profile_from_dict(p) for name, p in profiles.items()}
            if isinstance(profiles, dict) else None
        ),
        trusted_dirs=data.get("trustedDirs"),
    )


def _policy_to_dict(policy: AgentPolicy) -> dict:
    data: dict = {
        "security": policy.security,
        "ask": policy.ask,
        "askFallback": policy.ask_fallback,
        "autoAllowSkills": policy.auto_allow_skills,
        "allowlist": [_entry_to_dict(e) for e in policy.allowlist] or None,
        "safeBins": policy.safe_bins,
        "safeBinProfiles": (
            {name: _profile_to_dict(p) for name, p in policy.safe_bin_profiles.items()}
            if policy.safe_bin_profiles is not None else None
        ),
        "trustedDirs": policy.trusted_dirs,
    }
    return {k: v for k, v in data.items() if v is not None}


def approvals_from_dict(data: dict) -> ApprovalsFile:
    agents = data.get("agents") or {}
    return ApprovalsFile(
        version=int(data.get("version", APPROVALS_VERSION)),
        defaults=_policy_from_dict(data.get("defaults")),
        agents={str(k): _policy_from_dict(v) for k, v in agents.items() if isinstance(v, dict)},
    )


def approvals_to_dict(approvals: ApprovalsFile) -> dict:
    return {
        "version": approvals.version,
        "defaults": _policy_to_dict(approvals.defaults),
        "agents": {k: _policy_to_dict(v) for k, v in approvals.agents.items()},
    }


def resolve_exec_approvals(
    approvals: ApprovalsFile,
    agent_id: str | None,
    security: ExecSecurity = "deny",
    ask: ExecAsk = "on-miss",
    ask_fallback: ExecSecurity = "deny",
) -> ResolvedApprovals:
    """
    Effective policy for an agent.

    Agent fields override defaults field by field; the configured security
    is a ceiling and the configured ask a floor.
    """
    defaults = approvals.defaults
    agent = approvals.agents.get(agent_id) if agent_id else None

    def pick(name: str):
        value = getattr(agent, name) if agent is not None else None
        return value if value is not None else getattr(defaults, name)

    file_security = pick("security")
    file_ask = pick("ask")
    file_fallback = pick("ask_fallback")
    auto_allow = pick("auto_allow_skills")

    profiles: dict[str, SafeBinProfile] = {}
    profiles.update(defaults.safe_bin_profiles or {})
    if agent is not None:
        profiles.update(agent.safe_bin_profiles or {})

    allowlist = list(agent.allowlist) if agent is not None else []
    allowlist.extend(defaults.allowlist)

    return ResolvedApprovals(
        agent_id=agent_id,
        security=min_security(file_security or security, security),
        ask=max_ask(file_ask or ask, ask),
        ask_fallback=file_fallback or ask_fallback,
        auto_allow_skills=bool(auto_allow),
        allowlist=allowlist,
        safe_bins=pick("safe_bins"),
        safe_bin_profiles=profiles,
        trusted_dirs=pick("trusted_dirs"),
    )


def default_pattern_deriver(segment: CommandSegment, profile: SafeBinProfile | None) -> str | None:
    """Canonical path, plus the profile's fixed leading args."""
    resolution = segment.resolution
    if resolution is None:
        return None
    fixed = resolution.effective_argv[1:1 + (profile.pattern_args if profile else 0)]
    return shlex.join([glob.escape(resolution.canonical_path), *fixed])


def resolve_allow_always_patterns(
    segments: list[CommandSegment],
    profiles: dict[str, SafeBinProfile] | None = None,
    deriver: PatternDeriver = default_pattern_deriver,
) -> list[str]:
    """Durable allowlist patterns for an allow-always decision."""
    patterns: list[str] = []
    for segment in segments:
        if segment.resolution is None:
            continue
        profile = (profiles or {}).get(executable_name(segment.resolution.raw_executable))
        pattern = deriver(segment, profile)
        if pattern and pattern not in patterns:
            patterns.append(pattern)
    return patterns


def _get_approvals_path() -> Path:
    """Get path to exec approvals file."""
    return Path.home() / ".execgate" / "exec-approvals.json"


class ExecApprovalStore:
    """
    Manages the exec approvals file.

    Reads are unlocked snapshots; every write is a locked
    read-modify-write so concurrent approvals never lose updates.
    """

    def __init__(self, path: Path | None = None):
        self.path = path or _get_approvals_path()

    @property
    def lock_path(self) -> Path:
        return self.path.with_suffix(".lock")

    def _read(self) -> ApprovalsFile:
        if not self.path.exists():
            return ApprovalsFile()
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            return approvals_from_dict(data)
        except (json.JSONDecodeError, OSError, ValueError, TypeError, AttributeError) as e:
            logger.warning(f"Error loading exec approvals from {self.path}: {e}")
            return ApprovalsFile()

    def _write(self, approvals: ApprovalsFile) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(f".{secrets.token_hex(4)}.tmp")
        tmp_path.write_text(json.dumps(approvals_to_dict(approvals), indent=2) + "\n", encoding="utf-8")
        tmp_path.chmod(0o600)
        tmp_path.replace(self.path)

    @contextmanager
    def _locked(self) -> Iterator[None]:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with FileLock(self.lock_path, timeout=10):
            yield

    def load(self) -> ApprovalsFile:
        """Best-effort snapshot for matching."""
        return self._read()

    def save(self, approvals: ApprovalsFile) -> None:
        """Replace the whole file (operator edits)."""
        with self._locked():
            self._write(approvals)

    def update(self, mutate: Callable[[ApprovalsFile], T]) -> T:
        """Apply a delta to the current file under the lock."""
        with self._locked():
            approvals = self._read()
            result = mutate(approvals)
            self._write(approvals)
            return result

    def resolve(
        self,
        agent_id: str | None,
        security: ExecSecurity = "deny",
        ask: ExecAsk = "on-miss",
        ask_fallback: ExecSecurity = "deny",
    ) -> ResolvedApprovals:
        return resolve_exec_approvals(self.load(), agent_id, security, ask, ask_fallback)

    def add_allowlist_entry(self, agent_id: str | None, pattern: str) -> bool:
        """Add a pattern to the agent's (or default) allowlist. False if already present."""
        pattern = pattern.strip()
        if not pattern:
            return False

        def mutate(approvals: ApprovalsFile) -> bool:
            policy = approvals.defaults
            if agent_id:
                policy = approvals.agents.setdefault(agent_id, AgentPolicy())
            if any(e.pattern == pattern for e in policy.allowlist):
                return False
            policy.allowlist.append(AllowlistEntry(
                pattern=pattern,
                id=uuid.uuid4().hex,
                created_at=_now_ms(),
            ))
            return True

        added = self.update(mutate)
        if added:
            logger.info(f"Allowlist entry added for {agent_id or 'defaults'}: {pattern}")
        return added

    def remove_allowlist_entry(self, agent_id: str | None, pattern: str) -> bool:
        """Remove a pattern from the agent's (or default) allowlist."""

        def mutate(approvals: ApprovalsFile) -> bool:
            policy = approvals.agents.get(agent_id) if agent_id else approvals.defaults
            if policy is None:
                return False
            before = len(policy.allowlist)
            policy.allowlist = [e for e in policy.allowlist if e.pattern != pattern]
            return len(policy.allowlist) != before

        return self.update(mutate)

    def record_allowlist_use(
        self,
        agent_id: str | None,
        pattern: str,
        command: str | None = None,
        resolved_path: str | None = None,
    ) -> None:
        """Bump use_count and last-used fields of the entry carrying pattern."""

        def mutate(approvals: ApprovalsFile) -> bool:
            scopes = []
            if agent_id and agent_id in approvals.agents:
                scopes.append(approvals.agents[agent_id])
            scopes.append(approvals.defaults)
            for policy in scopes:
                for entry in policy.allowlist:
                    if entry.pattern == pattern:
                        entry.use_count += 1
                        entry.last_used_at = _now_ms()
                        entry.last_used_command = command
                        entry.last_resolved_path = resolved_path
                        return True
            return False

        if not self.update(mutate):
            logger.debug(f"Allowlist entry vanished before use was recorded: {pattern}")
