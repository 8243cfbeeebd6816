"""Host environment sanitization for spawned commands."""

import os

# Variables that change how binaries load code or how shells start
BLOCKED_KEYS = frozenset([
    "BASH_ENV",
    "ENV",
    "IFS",
    "SHELLOPTS",
    "BASHOPTS",
    "PS4",
    "PROMPT_COMMAND",
    "GCONV_PATH",
    "HOSTALIASES",
    "NODE_OPTIONS",
    "NODE_PATH",
    "PYTHONPATH",
    "PYTHONSTARTUP",
    "PYTHONHOME",
    "PERL5LIB",
    "PERL5OPT",
    "PERLLIB",
    "RUBYLIB",
    "RUBYOPT",
    "JAVA_TOOL_OPTIONS",
    "_JAVA_OPTIONS",
    "GIT_SSH_COMMAND",
    "GIT_EXEC_PATH",
])

BLOCKED_PREFIXES = ("LD_", "DYLD_", "BASH_FUNC_")

# Request overrides that are never honoured even though the host may have them
BLOCKED_OVERRIDE_KEYS = frozenset(["PATH", "HOME", "SHELL", "TMPDIR"])

# The only overrides a shell-wrapped command may receive
SHELL_WRAPPER_ALLOWED_KEYS = frozenset([
    "TERM",
    "LANG",
    "LC_ALL",
    "LC_CTYPE",
    "LC_MESSAGES",
    "COLORTERM",
    "NO_COLOR",
    "FORCE_COLOR",
])


def _is_blocked(upper_key: str) -> bool:
    return upper_key in BLOCKED_KEYS or upper_key.startswith(BLOCKED_PREFIXES)


def sanitize_env_overrides(
    overrides: dict[str, str] | None,
    shell_wrapper: bool = False,
) -> dict[str, str] | None:
    """Drop request env overrides that could change what actually runs."""
    if not overrides:
        return None

    sanitized: dict[str, str] = {}
    for raw_key, value in overrides.items():
        if not isinstance(raw_key, str) or not isinstance(value, str):
            continue
        key = raw_key.strip()
        if not key or "=" in key:
            continue
        upper = key.upper()
        if shell_wrapper and upper not in SHELL_WRAPPER_ALLOWED_KEYS:
            continue
        if upper in BLOCKED_OVERRIDE_KEYS or _is_blocked(upper):
            continue
        sanitized[key] = value

    return sanitized or None


def absolute_path_entries(path_value: str) -> str:
    """Drop relative PATH entries, which make lookup depend on cwd."""
    return os.pathsep.join(p for p in path_value.split(os.pathsep) if os.path.isabs(p))


def build_host_env(overrides: dict[str, str] | None = None) -> dict[str, str]:
    """Process env minus blocked keys, with sanitized overrides applied."""
    merged = {k: v for k, v in os.environ.items() if k.strip() and not _is_blocked(k.upper())}
    if overrides:
        merged.update(overrides)
    if "PATH" in merged:
        merged["PATH"] = absolute_path_entries(merged["PATH"])
    return merged
