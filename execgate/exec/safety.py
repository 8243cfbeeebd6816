"""Command safety analysis: wrapper unwrapping and executable resolution."""

import os
import re
import shlex
import shutil
from pathlib import Path
from typing import Literal

from execgate.exec.command import POSIX_SHELLS, executable_name
from execgate.exec.env import absolute_path_entries
from execgate.exec.errors import AnalysisFailed
from execgate.exec.types import Analysis, CommandSegment, Resolution

# Maximum number of wrapper layers (env, nohup, sh -c, ...) peeled off a command
MAX_WRAPPER_DEPTH = 5

# Wrappers that forward their remaining argv unchanged when given no options
TRANSPARENT_WRAPPERS = frozenset(["env", "nohup", "nice", "command"])

# Interpreters whose argument splitting we never try to model
OPAQUE_INTERPRETERS = frozenset([
    "cmd", "cmd.exe", "powershell", "powershell.exe", "pwsh", "pwsh.exe",
])

SHELL_METACHARS = re.compile(r'[;&|`$<>]')
CONTROL_CHARS = re.compile(r'[\r\n\x00]')
ENV_ASSIGNMENT = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*=')

# Characters that chain, redirect, substitute or expand when unquoted
_UNQUOTED_FORBIDDEN = frozenset(";&|<>()$`*?[]{}~#!")


def is_safe_executable(value: str | None) -> bool:
    """Check if a string is safe to use as an executable name."""
    if not value:
        return False

    trimmed = value.strip()
    if not trimmed:
        return False

    if CONTROL_CHARS.search(trimmed):
        return False
    if SHELL_METACHARS.search(trimmed):
        return False

    return True


def is_path_like(token: str) -> bool:
    """True when the token names a file by path rather than by PATH lookup."""
    if not token:
        return False
    if token.startswith((".", "/", "\\", "~")):
        return True
    return "/" in token or "\\" in token


def resolve_executable(
    token: str,
    cwd: str | None = None,
    env: dict[str, str] | None = None,
) -> tuple[str, Literal["absolute", "relative", "search"]] | None:
    """
    Resolve an executable token to its canonical (symlink-free) path.

    Path-like tokens resolve against cwd, bare names against PATH. Returns
    (canonical_path, how) or None when nothing executable is there.
    """
    if is_path_like(token):
        candidate = Path(token).expanduser()
        if candidate.is_absolute():
            how = "absolute"
        else:
            how = "relative"
            base = Path(os.path.abspath(cwd)) if cwd else Path.cwd()
            candidate = base / candidate
    else:
        path_value = (env or {}).get("PATH") or os.environ.get("PATH", os.defpath)
        found = shutil.which(token, path=absolute_path_entries(path_value))
        if not found:
            return None
        candidate = Path(found)
        how = "search"

    try:
        canonical = os.path.realpath(candidate, strict=True)
    except OSError:
        return None

    if not os.path.isfile(canonical) or not os.access(canonical, os.X_OK):
        return None
    return canonical, how


def check_shell_payload(payload: str) -> None:
    """
    Reject shell payloads that could run more than one plain command.

    Quote-aware: metacharacters inside single quotes are literal; inside
    double quotes only substitution is dangerous.
    """
    if CONTROL_CHARS.search(payload):
        raise AnalysisFailed("control characters in shell payload")

    quote: str | None = None
    i = 0
    while i < len(payload):
        ch = payload[i]
        if quote == "'":
            if ch == "'":
                quote = None
        elif quote == '"':
            if ch == "\\":
                nxt = payload[i + 1:i + 2]
                if nxt not in ('"', "\\"):
                    raise AnalysisFailed("unsupported escape inside double quotes")
                i += 1
            elif ch == '"':
                quote = None
            elif ch in "$`":
                raise AnalysisFailed(f"substitution not allowed in shell payload: {ch}")
        elif ch == "\\":
            i += 1
        elif ch in ("'", '"'):
            quote = ch
        elif ch in _UNQUOTED_FORBIDDEN:
            raise AnalysisFailed(f"shell metacharacter not allowed: {ch}")
        i += 1

    if quote:
        raise AnalysisFailed("unterminated quote in shell payload")


def _unwrap_dispatch_wrapper(name: str, argv: list[str]) -> list[str] | None:
    """Peel a transparent wrapper, or fail if it changes execution semantics."""
    idx = 1
    if idx < len(argv) and argv[idx] == "--":
        idx += 1
    if idx >= len(argv):
        # `env` on its own prints the environment: it is the command
        return None

    token = argv[idx]
    if token.startswith("-"):
        raise AnalysisFailed(f"{name} option {token} alters execution")
    if ENV_ASSIGNMENT.match(token):
        raise AnalysisFailed(f"{name} environment binding alters execution")
    return argv[idx:]


def _unwrap_shell(argv: list[str]) -> list[str] | None:
    """Turn `sh -c "<payload>"` into the payload's argv."""
    idx = 1
    has_command_flag = False
    while idx < len(argv) and argv[idx].startswith("-"):
        opt = argv[idx]
        idx += 1
        if opt in ("-l", "--login"):
            continue
        if not opt.startswith("--") and "c" in opt and set(opt[1:]) <= {"c", "l"}:
            has_command_flag = True
            break
        raise AnalysisFailed(f"unsupported shell option: {opt}")

    if not has_command_flag:
        # A shell running a script file is an ordinary command
        return None
    if idx >= len(argv):
        raise AnalysisFailed("shell -c without a payload")
    if len(argv) > idx + 1:
        raise AnalysisFailed("positional arguments after a shell payload rebind $0")

    payload = argv[idx]
    check_shell_payload(payload)
    try:
        tokens = shlex.split(payload)
    except ValueError as e:
        raise AnalysisFailed(f"unparseable shell payload: {e}") from e

    if not tokens:
        raise AnalysisFailed("empty shell payload")
    if ENV_ASSIGNMENT.match(tokens[0]):
        raise AnalysisFailed("variable assignment in shell payload")
    return tokens


def _is_system_binary(token: str, cwd: str | None, env: dict[str, str] | None) -> bool:
    """
    True when token is the same file a PATH lookup of its name finds.

    A planted `./sh` is not the system shell and must not be unwrapped.
    """
    if is_path_like(token) and not os.path.isabs(os.path.expanduser(token)):
        return False
    resolved = resolve_executable(token, cwd=cwd, env=env)
    system = resolve_executable(executable_name(token), env=env)
    return resolved is not None and system is not None and resolved[0] == system[0]


def _unwrap_step(
    argv: list[str],
    cwd: str | None,
    env: dict[str, str] | None,
) -> list[str] | None:
    """One unwrapping step. None means argv is the final command."""
    if not argv or not argv[0].strip():
        raise AnalysisFailed("empty command")

    token = argv[0]
    if not is_safe_executable(token):
        raise AnalysisFailed("unsafe characters in executable")

    name = executable_name(token)
    if name.lower() in OPAQUE_INTERPRETERS:
        raise AnalysisFailed(f"{name} wrappers are never unwrapped")
    if name not in POSIX_SHELLS and name not in TRANSPARENT_WRAPPERS:
        return None
    if not _is_system_binary(token, cwd, env):
        return None
    if name in POSIX_SHELLS:
        return _unwrap_shell(argv)
    return _unwrap_dispatch_wrapper(name, argv)


def unwrap_command(
    argv: list[str],
    cwd: str | None = None,
    env: dict[str, str] | None = None,
) -> list[str]:
    """Peel transparent wrappers off argv, at most MAX_WRAPPER_DEPTH layers."""
    current = list(argv)
    for _ in range(MAX_WRAPPER_DEPTH + 1):
        inner = _unwrap_step(current, cwd, env)
        if inner is None:
            return current
        current = inner
    raise AnalysisFailed(f"wrapper depth exceeds {MAX_WRAPPER_DEPTH}")


def analyze_argv_command(
    argv: list[str],
    cwd: str | None = None,
    env: dict[str, str] | None = None,
) -> Analysis:
    """
    Analyze an argv for allowlist evaluation.

    Returns an Analysis with one segment per logical command. Anything that
    cannot be interpreted safely comes back with ok=False.
    """
    try:
        effective = unwrap_command(argv, cwd=cwd, env=env)
    except AnalysisFailed as e:
        return Analysis(ok=False, reason=e.message)

    resolved = resolve_executable(effective[0], cwd=cwd, env=env)
    if resolved is None:
        return Analysis(
            ok=False,
            segments=[CommandSegment(argv=effective)],
            reason=f"unable to resolve executable: {effective[0]}",
        )

    canonical, how = resolved
    segment = CommandSegment(
        argv=effective,
        resolution=Resolution(
            raw_executable=effective[0],
            canonical_path=canonical,
            effective_argv=effective,
            matched_via=how,
        ),
    )
    return Analysis(ok=True, segments=[segment])
