"""Allowlist, safe bin and skill bin matching."""

import fnmatch
import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from loguru import logger

from execgate.exec.command import executable_name
from execgate.exec.safety import is_path_like
from execgate.exec.types import (
    AllowlistEntry,
    Analysis,
    CommandSegment,
    ExecSecurity,
    SafeBinProfile,
    TrustEntry,
)

# Safe binaries that only operate on stdin (no file args)
DEFAULT_SAFE_BINS = frozenset([
    "jq", "grep", "cut", "sort", "uniq", "head", "tail", "tr", "wc",
])

DEFAULT_TRUSTED_DIRS = ("/bin", "/usr/bin")

# Flags that make an otherwise stdin-only bin read or write files
DEFAULT_SAFE_BIN_PROFILES: dict[str, SafeBinProfile] = {
    "grep": SafeBinProfile(
        max_positional=1,
        denied_flags=frozenset(["-r", "-R", "--recursive", "-f", "--file", "--include", "--exclude-from"]),
    ),
    "jq": SafeBinProfile(
        max_positional=1,
        denied_flags=frozenset(["-f", "--from-file", "--rawfile", "--slurpfile", "--args", "--jsonargs"]),
    ),
    "sort": SafeBinProfile(
        max_positional=0,
        denied_flags=frozenset(["-o", "--output", "-T", "--temporary-directory", "--files0-from"]),
    ),
    "cut": SafeBinProfile(max_positional=0),
    "uniq": SafeBinProfile(max_positional=0),
    "head": SafeBinProfile(max_positional=0),
    "tail": SafeBinProfile(max_positional=0, denied_flags=frozenset(["-f", "-F", "--follow"])),
    "tr": SafeBinProfile(max_positional=2),
    "wc": SafeBinProfile(max_positional=0, denied_flags=frozenset(["--files0-from"])),
}

SatisfiedBy = Literal["allowlist", "safeBins", "skills"]

_warned_writable_dirs: set[str] = set()


@dataclass
class SafeBinRuntimePolicy:
    """Safe bins resolved against the trusted directories."""
    safe_bins: list[TrustEntry] = field(default_factory=list)
    trusted_dirs: list[str] = field(default_factory=list)


@dataclass
class AllowlistEvaluation:
    """Outcome of matching every segment of an analysis."""
    allowlist_satisfied: bool
    allowlist_matches: list[AllowlistEntry] = field(default_factory=list)
    segment_satisfied_by: list[SatisfiedBy | None] = field(default_factory=list)


def _canonical_dir(path: str) -> str | None:
    try:
        real = os.path.realpath(os.path.expanduser(path), strict=True)
    except OSError:
        return None
    return real if os.path.isdir(real) else None


def _warn_if_writable(trusted_dir: str) -> None:
    if trusted_dir in _warned_writable_dirs:
        return
    if os.access(trusted_dir, os.W_OK):
        _warned_writable_dirs.add(trusted_dir)
        logger.warning(f"Trusted safe-bin dir is writable by this process: {trusted_dir}")


def resolve_safe_bin_runtime_policy(
    safe_bins: list[str] | None = None,
    profiles: dict[str, SafeBinProfile] | None = None,
    trusted_dirs: list[str] | None = None,
) -> SafeBinRuntimePolicy:
    """
    Resolve safe bin names to canonical paths inside the trusted dirs.

    A name with no executable under any trusted dir is simply not trusted.
    """
    names = DEFAULT_SAFE_BINS if safe_bins is None else safe_bins
    merged_profiles = {**DEFAULT_SAFE_BIN_PROFILES, **(profiles or {})}

    dirs: list[str] = []
    for raw in trusted_dirs if trusted_dirs is not None else DEFAULT_TRUSTED_DIRS:
        canonical = _canonical_dir(raw)
        if canonical and canonical not in dirs:
            dirs.append(canonical)
            _warn_if_writable(canonical)

    entries: list[TrustEntry] = []
    seen: set[str] = set()
    for name in names:
        name = name.strip()
        if not name or is_path_like(name):
            continue
        for trusted_dir in dirs:
            candidate = Path(trusted_dir) / name
            try:
                canonical = os.path.realpath(candidate, strict=True)
            except OSError:
                continue
            if not os.path.isfile(canonical) or not os.access(canonical, os.X_OK):
                continue
            if name in seen:
                break
            seen.add(name)
            entries.append(TrustEntry(name=name, canonical_path=canonical, profile=merged_profiles.get(name)))
            break

    return SafeBinRuntimePolicy(safe_bins=entries, trusted_dirs=dirs)


def _is_under(path: str, directory: str) -> bool:
    return path == directory or path.startswith(directory.rstrip(os.sep) + os.sep)


def _long_flag_ok(arg: str, profile: SafeBinProfile) -> bool:
    flag, _, value = arg.partition("=")
    # getopt_long accepts any unambiguous prefix of a long option
    for denied in profile.denied_flags:
        if denied.startswith("--") and denied.startswith(flag):
            return False
    if profile.allowed_flags is not None and flag not in profile.allowed_flags:
        return False
    return not (value and is_path_like(value))


def _short_cluster_ok(arg: str, profile: SafeBinProfile) -> bool:
    """Check "-rn" style clusters letter by letter; "-o/x" carries a value."""
    for i, letter in enumerate(arg[1:], start=1):
        flag = f"-{letter}"
        if flag in profile.denied_flags:
            return False
        if not letter.isalpha():
            # Everything from here on is an attached value such as "-n5"
            return not is_path_like(arg[i:])
        if profile.allowed_flags is not None and flag not in profile.allowed_flags:
            return False
    return not is_path_like(arg[2:])


def safe_bin_args_ok(args: list[str], profile: SafeBinProfile | None, cwd: str | None = None) -> bool:
    """Check that safe bin arguments cannot reference files."""
    profile = profile or SafeBinProfile()
    positional = 0
    base = Path(cwd) if cwd else Path.cwd()
    options_done = False

    for arg in args:
        if not options_done and arg == "--":
            options_done = True
            continue
        if not options_done and arg.startswith("-") and arg != "-":
            ok = _long_flag_ok(arg, profile) if arg.startswith("--") else _short_cluster_ok(arg, profile)
            if not ok:
                return False
            continue

        positional += 1
        if is_path_like(arg):
            return False
        if (base / arg).exists():
            return False

    if profile.max_positional is not None and positional > profile.max_positional:
        return False
    return True


def parse_pattern(pattern: str) -> tuple[str, list[str]] | None:
    """Split an allowlist pattern into (path glob, fixed leading args)."""
    try:
        tokens = shlex.split(pattern)
    except ValueError:
        return None
    if not tokens:
        return None
    path_glob = tokens[0]
    if path_glob.startswith("~"):
        path_glob = str(Path(path_glob).expanduser())
    if "/" not in path_glob:
        # Bare names would trust whatever PATH happens to find
        return None
    return path_glob, tokens[1:]


def match_allowlist_entry(entries: list[AllowlistEntry], segment: CommandSegment) -> AllowlistEntry | None:
    """First entry whose pattern matches the segment's canonical path and leading args."""
    resolution = segment.resolution
    if resolution is None:
        return None

    args = resolution.effective_argv[1:]
    for entry in entries:
        parsed = parse_pattern(entry.pattern)
        if parsed is None:
            continue
        path_glob, fixed_args = parsed
        if not fnmatch.fnmatchcase(resolution.canonical_path, path_glob):
            continue
        if args[:len(fixed_args)] != fixed_args:
            continue
        return entry
    return None


def _match_safe_bin(
    segment: CommandSegment,
    policy: SafeBinRuntimePolicy,
    cwd: str | None,
) -> bool:
    resolution = segment.resolution
    if resolution is None or resolution.matched_via == "relative":
        return False
    for entry in policy.safe_bins:
        if entry.canonical_path != resolution.canonical_path:
            continue
        # Multi-call binaries share one canonical path across names
        if executable_name(resolution.raw_executable) != entry.name:
            continue
        if not any(_is_under(entry.canonical_path, d) for d in policy.trusted_dirs):
            continue
        return safe_bin_args_ok(resolution.effective_argv[1:], entry.profile, cwd)
    return False


def _match_skill_bin(segment: CommandSegment, skill_bins: list[TrustEntry]) -> bool:
    resolution = segment.resolution
    if resolution is None or resolution.matched_via == "relative":
        return False
    for entry in skill_bins:
        try:
            canonical = os.path.realpath(entry.canonical_path, strict=True)
        except OSError:
            continue
        if canonical == resolution.canonical_path:
            return True
    return False


def evaluate_allowlist(
    analysis: Analysis,
    security: ExecSecurity,
    allowlist: list[AllowlistEntry],
    safe_bin_policy: SafeBinRuntimePolicy | None = None,
    skill_bins: list[TrustEntry] | None = None,
    auto_allow_skills: bool = False,
    cwd: str | None = None,
) -> AllowlistEvaluation:
    """
    Match every segment against the allowlist, safe bins and skill bins.

    The command is satisfied only if every single segment matched.
    """
    safe_bin_policy = safe_bin_policy or SafeBinRuntimePolicy()
    matches: list[AllowlistEntry] = []
    satisfied_by: list[SatisfiedBy | None] = []

    for segment in analysis.segments:
        entry = match_allowlist_entry(allowlist, segment)
        if entry is not None:
            if all(m.pattern != entry.pattern for m in matches):
                matches.append(entry)
            satisfied_by.append("allowlist")
        elif _match_safe_bin(segment, safe_bin_policy, cwd):
            satisfied_by.append("safeBins")
        elif auto_allow_skills and _match_skill_bin(segment, skill_bins or []):
            satisfied_by.append("skills")
        else:
            satisfied_by.append(None)

    all_matched = bool(satisfied_by) and all(s is not None for s in satisfied_by)
    satisfied = security == "allowlist" and analysis.ok and all_matched
    logger.debug(f"Allowlist evaluation: satisfied={satisfied} by={satisfied_by}")

    return AllowlistEvaluation(
        allowlist_satisfied=satisfied,
        allowlist_matches=matches,
        segment_satisfied_by=satisfied_by,
    )
