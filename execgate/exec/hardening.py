"""Path hardening for approval-based execution."""

import os
import stat
from dataclasses import dataclass
from pathlib import Path

from execgate.exec.errors import ExecutionPathDenied
from execgate.exec.safety import is_path_like, resolve_executable


@dataclass
class HardenedPaths:
    """Canonical argv and cwd for an approved run."""
    argv: list[str]
    cwd: str | None


def _path_components(path: str) -> list[str]:
    """Every ancestor of an absolute path, root first, excluding the path itself."""
    parents = [str(p) for p in Path(path).parents]
    return list(reversed(parents))


def _same_identity(a: os.stat_result, b: os.stat_result) -> bool:
    return a.st_dev == b.st_dev and a.st_ino == b.st_ino


def _is_under(path: str, root: str) -> bool:
    return path == root or path.startswith(root.rstrip(os.sep) + os.sep)


def _canonical_root(root: str | None) -> str | None:
    if not root:
        return None
    try:
        return os.path.realpath(os.path.expanduser(root), strict=True)
    except OSError as e:
        raise ExecutionPathDenied("root", "SYSTEM_RUN_DENIED: permitted root does not exist") from e


def harden_cwd(cwd: str, root: str | None = None) -> str:
    """
    Canonicalize cwd for an approved run.

    Symlinks anywhere in the path are rejected rather than followed, so an
    approval cannot be redirected by swapping a directory for a link.
    """
    requested = os.path.abspath(os.path.expanduser(cwd))
    try:
        cwd_lstat = os.lstat(requested)
        cwd_stat = os.stat(requested)
        cwd_real = os.path.realpath(requested, strict=True)
        real_stat = os.stat(cwd_real)
    except OSError as e:
        raise ExecutionPathDenied(
            "missing", "SYSTEM_RUN_DENIED: approval requires an existing canonical cwd"
        ) from e

    if not stat.S_ISDIR(cwd_stat.st_mode):
        raise ExecutionPathDenied("not-directory", "SYSTEM_RUN_DENIED: approval requires cwd to be a directory")

    if stat.S_ISLNK(cwd_lstat.st_mode):
        raise ExecutionPathDenied(
            "symlink-cwd", "SYSTEM_RUN_DENIED: approval requires canonical cwd (no symlink cwd)"
        )

    for component in _path_components(requested):
        try:
            is_link = stat.S_ISLNK(os.lstat(component).st_mode)
        except OSError:
            is_link = True
        if is_link:
            raise ExecutionPathDenied(
                "symlink-component",
                "SYSTEM_RUN_DENIED: approval requires canonical cwd (no symlink path components)",
            )

    if not (_same_identity(cwd_stat, cwd_lstat) and _same_identity(cwd_stat, real_stat)):
        raise ExecutionPathDenied("identity", "SYSTEM_RUN_DENIED: approval cwd identity mismatch")

    canonical_root = _canonical_root(root)
    if canonical_root and not _is_under(cwd_real, canonical_root):
        raise ExecutionPathDenied(
            "outside-root", "SYSTEM_RUN_DENIED: approval cwd is outside the permitted root"
        )
    return cwd_real


def harden_approved_execution_paths(
    approved_by_ask: bool,
    argv: list[str],
    shell_command: str | None,
    cwd: str | None,
    env: dict[str, str] | None = None,
    root: str | None = None,
) -> HardenedPaths:
    """
    Canonicalize cwd and the leading executable of an approved run.

    Pure allowlist hits pass through unchanged. Raises ExecutionPathDenied.
    """
    if not approved_by_ask:
        return HardenedPaths(argv=argv, cwd=cwd)

    hardened_cwd = harden_cwd(cwd, root) if cwd else None

    if shell_command is not None or not argv:
        return HardenedPaths(argv=argv, cwd=hardened_cwd)

    hardened_argv = list(argv)
    raw_executable = hardened_argv[0]
    resolved = resolve_executable(raw_executable, cwd=hardened_cwd, env=env)
    if resolved is None:
        raise ExecutionPathDenied(
            "executable", "SYSTEM_RUN_DENIED: approval requires a stable executable path"
        )
    canonical, _ = resolved

    canonical_root = _canonical_root(root)
    if canonical_root and is_path_like(raw_executable) and not _is_under(canonical, canonical_root):
        raise ExecutionPathDenied(
            "outside-root", "SYSTEM_RUN_DENIED: approval executable is outside the permitted root"
        )

    hardened_argv[0] = canonical
    return HardenedPaths(argv=hardened_argv, cwd=hardened_cwd)
