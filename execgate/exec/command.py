"""Turn a run request into a canonical argv and display text."""

import re
import sys
from dataclasses import dataclass
from pathlib import PureWindowsPath

from execgate.exec.errors import InvalidRequest

POSIX_SHELLS = frozenset(["sh", "bash", "zsh", "dash", "ksh"])
CMD_NAMES = frozenset(["cmd", "cmd.exe"])

_NEEDS_QUOTING = re.compile(r'[\s"\'\\]')


@dataclass
class ResolvedCommand:
    """Canonical form of a run request's command."""
    argv: list[str]
    shell_command: str | None
    cmd_text: str


def executable_name(token: str) -> str:
    """Basename of an executable token (handles both path separators)."""
    if "\\" in token:
        return PureWindowsPath(token).name
    return token.rsplit("/", 1)[-1]


def format_exec_command(argv: list[str]) -> str:
    """Human-readable join of argv for audit and approval prompts."""
    parts = []
    for arg in argv:
        if arg == "":
            parts.append('""')
        elif _NEEDS_QUOTING.search(arg):
            escaped = arg.replace("\\", "\\\\").replace('"', '\\"')
            parts.append(f'"{escaped}"')
        else:
            parts.append(arg)
    return " ".join(parts)


def is_cmd_exe_invocation(argv: list[str]) -> bool:
    """True for cmd.exe style wrappers (`cmd /c ...`)."""
    if not argv or executable_name(argv[0]).lower() not in CMD_NAMES:
        return False
    return any(arg.lower() in ("/c", "/k") for arg in argv[1:])


def _shell_flag_index(argv: list[str]) -> int | None:
    """Index of the -c style flag in a POSIX shell invocation, if any."""
    for i, arg in enumerate(argv[1:], start=1):
        if arg in ("-l", "--login"):
            continue
        if arg.startswith("-") and not arg.startswith("--") and "c" in arg[1:]:
            return i
        return None
    return None


def extract_shell_command(argv: list[str]) -> str | None:
    """Return the payload of a direct shell wrapper invocation."""
    if len(argv) < 2:
        return None
    name = executable_name(argv[0])
    if name in POSIX_SHELLS:
        idx = _shell_flag_index(argv)
        if idx is not None and idx + 1 < len(argv):
            return argv[idx + 1]
        return None
    if name.lower() in CMD_NAMES:
        for i, arg in enumerate(argv[1:], start=1):
            if arg.lower() in ("/c", "/k"):
                rest = argv[i + 1:]
                return " ".join(rest) if rest else None
    return None


def platform_shell_argv(raw: str, platform: str | None = None) -> list[str]:
    platform = platform or sys.platform
    if platform == "win32":
        return ["cmd.exe", "/d", "/s", "/c", raw]
    return ["/bin/sh", "-c", raw]


def resolve_run_command(
    command: list[str] | None = None,
    raw_command: str | None = None,
    platform: str | None = None,
) -> ResolvedCommand:
    """
    Normalize a request into (argv, shell_command, cmd_text).

    Exactly one of command / raw_command must be non-empty.
    """
    if command is not None and not isinstance(command, list):
        raise InvalidRequest("command must be an array of strings")
    if command and not all(isinstance(arg, str) for arg in command):
        raise InvalidRequest("command must be an array of strings")
    if raw_command is not None and not isinstance(raw_command, str):
        raise InvalidRequest("rawCommand must be a string")

    has_argv = bool(command)
    has_raw = bool(raw_command and raw_command.strip())

    if has_argv and has_raw:
        raise InvalidRequest("provide either command or rawCommand, not both")
    if not has_argv and not has_raw:
        raise InvalidRequest("command required")

    if has_raw:
        return ResolvedCommand(
            argv=platform_shell_argv(raw_command, platform),
            shell_command=raw_command,
            cmd_text=raw_command,
        )

    argv = list(command)
    return ResolvedCommand(
        argv=argv,
        shell_command=extract_shell_command(argv),
        cmd_text=format_exec_command(argv),
    )
