"""End-to-end tests for run request handling."""

import glob
import os
import shutil
from pathlib import Path

import pytest

from execgate.config.schema import ExecHostConfig, ExecToolConfig
from execgate.exec.approvals import ExecApprovalStore
from execgate.exec.binding import ApprovalBroker
from execgate.exec.errors import CompanionUnavailable
from execgate.exec.executor import TRUNCATION_MARKER, LocalExecutor
from execgate.exec.invoke import RunRequestHandler
from execgate.exec.types import RunRequest, RunResult, TrustEntry

pytestmark = pytest.mark.skipif(os.name != "posix", reason="POSIX commands and paths")


# ── Helpers ─────────────────────────────────────────────────────────


class FakeExecutor:
    """Records what would have run instead of running it."""

    def __init__(self, name: str = "local", result: RunResult | None = None, error: Exception | None = None):
        self.name = name
        self.result = result
        self.error = error
        self.calls: list[dict] = []

    async def run(self, argv, cwd=None, env=None, timeout_ms=None, context=None):
        self.calls.append({"argv": argv, "cwd": cwd, "env": env, "timeout_ms": timeout_ms, "context": context})
        if self.error:
            raise self.error
        return self.result or RunResult(success=True, exit_code=0, stdout="ok")


class FakeSkillBins:
    def __init__(self, entries: list[TrustEntry]):
        self.entries = entries

    async def current(self) -> list[TrustEntry]:
        return self.entries


class Harness:
    def __init__(self, tmp_path: Path, config: ExecToolConfig, **kwargs):
        self.executor = kwargs.pop("local", None) or FakeExecutor()
        self.store = ExecApprovalStore(tmp_path / "exec-approvals.json")
        self.events: list[tuple[str, dict]] = []
        self.handler = RunRequestHandler(
            config,
            store=self.store,
            local=self.executor,
            on_event=self._record,
            platform=kwargs.pop("platform", "linux"),
            **kwargs,
        )

    async def _record(self, event: str, payload: dict) -> None:
        self.events.append((event, payload))

    async def run(self, **fields):
        return await self.handler.handle(RunRequest(**fields))

    @property
    def denied_reasons(self) -> list[str]:
        return [p["reason"] for e, p in self.events if e == "exec.denied"]


@pytest.fixture
def work(tmp_path: Path) -> Path:
    path = Path(os.path.realpath(tmp_path)) / "work"
    path.mkdir()
    return path


def make_executable(path: Path) -> Path:
    path.write_text("#!/bin/sh\nexit 0\n")
    path.chmod(0o755)
    return path


def canonical(name: str) -> str:
    return os.path.realpath(shutil.which(name))


# ── Request validation ──────────────────────────────────────────────


class TestValidation:
    @pytest.mark.asyncio
    async def test_both_command_forms(self, tmp_path, work):
        h = Harness(tmp_path, ExecToolConfig(security="full", ask="off"))
        response = await h.run(command=["ls"], raw_command="ls", cwd=str(work))
        assert not response.ok
        assert response.error_code == "INVALID_REQUEST"
        assert h.events == []
        assert h.executor.calls == []

    @pytest.mark.asyncio
    async def test_missing_command(self, tmp_path):
        h = Harness(tmp_path, ExecToolConfig(security="full", ask="off"))
        response = await h.run()
        assert response.error_code == "INVALID_REQUEST"

    @pytest.mark.asyncio
    async def test_invalid_decision_not_repaired(self, tmp_path):
        h = Harness(tmp_path, ExecToolConfig(security="full", ask="off"))
        response = await h.run(command=["ls"], approval_decision="allow-forever")
        assert response.error_code == "INVALID_REQUEST"

    @pytest.mark.asyncio
    async def test_invalid_timeout(self, tmp_path):
        h = Harness(tmp_path, ExecToolConfig(security="full", ask="off"))
        response = await h.run(command=["ls"], timeout_ms=-5)
        assert response.error_code == "INVALID_REQUEST"

    def test_from_dict(self):
        request = RunRequest.from_dict({
            "command": ["tr", "a"], "cwd": "/w", "timeoutMs": 10,
            "agentId": "main", "approvalDecision": "allow-once", "approved": "yes",
        })
        assert request.command == ["tr", "a"]
        assert request.timeout_ms == 10
        assert request.agent_id == "main"
        assert request.approved is False


# ── Denials ─────────────────────────────────────────────────────────


class TestDenials:
    @pytest.mark.asyncio
    async def test_security_deny(self, tmp_path, work):
        h = Harness(tmp_path, ExecToolConfig(security="deny"))
        response = await h.run(command=["tr", "a", "b"], cwd=str(work), approval_decision="allow-once")

        assert response.to_dict() == {
            "ok": False,
            "error": {"code": "UNAVAILABLE", "message": "SYSTEM_RUN_DISABLED: security=deny"},
        }
        assert h.denied_reasons == ["security=deny"]
        assert h.executor.calls == []

    @pytest.mark.asyncio
    async def test_denied_event_payload(self, tmp_path, work):
        h = Harness(tmp_path, ExecToolConfig(security="deny"))
        await h.run(command=["tr", "a b"], cwd=str(work), session_key="s1", run_id="r1")
        event, payload = h.events[0]
        assert event == "exec.denied"
        assert payload == {
            "sessionKey": "s1", "runId": "r1", "host": "local",
            "command": 'tr "a b"', "reason": "security=deny",
        }

    @pytest.mark.asyncio
    async def test_env_assignment_wrapper_is_a_miss(self, tmp_path, work):
        h = Harness(tmp_path, ExecToolConfig(security="allowlist", ask="off"))
        response = await h.run(command=["env", "FOO=bar", "tr", "a", "b"], cwd=str(work))
        assert response.error_message == "SYSTEM_RUN_DENIED: allowlist miss"
        assert h.denied_reasons == ["allowlist-miss"]

    @pytest.mark.asyncio
    async def test_env_split_string_is_a_miss(self, tmp_path, work):
        h = Harness(tmp_path, ExecToolConfig(security="allowlist", ask="off"))
        await h.run(command=["env", "-S", "tr a b"], cwd=str(work))
        assert h.denied_reasons == ["allowlist-miss"]

    @pytest.mark.asyncio
    async def test_planted_shell_needs_approval(self, tmp_path, work):
        make_executable(work / "sh")
        h = Harness(tmp_path, ExecToolConfig(security="allowlist", ask="on-miss"))
        response = await h.run(command=["./sh", "-c", "tr a b"], cwd=str(work))
        assert response.error_message == "SYSTEM_RUN_DENIED: approval required"
        assert h.denied_reasons == ["approval-required"]
        assert h.executor.calls == []

    @pytest.mark.asyncio
    async def test_shell_wrapper_of_safe_bin_needs_approval(self, tmp_path, work):
        h = Harness(tmp_path, ExecToolConfig(security="allowlist", ask="off"))
        await h.run(raw_command="tr a b", cwd=str(work))
        assert h.denied_reasons == ["approval-required"]

    @pytest.mark.asyncio
    async def test_explicit_deny_decision(self, tmp_path, work):
        h = Harness(tmp_path, ExecToolConfig(security="full", ask="on-miss"))
        response = await h.run(command=["tr", "a", "b"], cwd=str(work), approval_decision="deny")
        assert response.error_message == "SYSTEM_RUN_DENIED: approval denied"
        assert h.denied_reasons == ["approval-required"]

    @pytest.mark.asyncio
    async def test_windows_cmd_wrapper(self, tmp_path, work):
        h = Harness(tmp_path, ExecToolConfig(security="allowlist", ask="off"), platform="win32")
        response = await h.run(raw_command="dir", cwd=str(work))
        assert "cmd.exe /c require approval" in response.error_message
        assert h.denied_reasons == ["allowlist-miss"]

    @pytest.mark.asyncio
    async def test_symlink_cwd_rejected_for_approved_run(self, tmp_path, work):
        link = work.parent / "link"
        link.symlink_to(work)
        h = Harness(tmp_path, ExecToolConfig(security="full", ask="on-miss"))
        response = await h.run(command=["tr", "a", "b"], cwd=str(link), approval_decision="allow-once")
        assert "no symlink cwd" in response.error_message
        assert h.denied_reasons == ["approval-required"]
        assert h.executor.calls == []

    @pytest.mark.asyncio
    async def test_approved_cwd_outside_workspace(self, tmp_path, work):
        jail = work / "jail"
        jail.mkdir()
        config = ExecToolConfig(security="full", ask="on-miss", workspace_root=str(jail))
        h = Harness(tmp_path, config)
        response = await h.run(command=["tr", "a", "b"], cwd=str(work), approval_decision="allow-once")
        assert "outside the permitted root" in response.error_message

    @pytest.mark.asyncio
    async def test_screen_recording_needs_exec_host(self, tmp_path, work):
        h = Harness(tmp_path, ExecToolConfig(security="full", ask="off"))
        response = await h.run(command=["tr", "a", "b"], cwd=str(work), needs_screen_recording=True)
        assert response.error_message == "PERMISSION_MISSING: screenRecording"
        assert h.denied_reasons == ["permission:screenRecording"]

    @pytest.mark.asyncio
    async def test_exec_host_unavailable(self, tmp_path, work):
        config = ExecToolConfig(security="full", ask="off", host=ExecHostConfig(enforced=True))
        remote = FakeExecutor("exec-host", error=CompanionUnavailable("COMPANION_APP_UNAVAILABLE: down"))
        h = Harness(tmp_path, config, remote=remote)
        response = await h.run(command=["tr", "a", "b"], cwd=str(work))
        assert response.error_message == "COMPANION_APP_UNAVAILABLE: down"
        assert h.denied_reasons == ["companion-unavailable"]
        assert h.executor.calls == []


# ── Allowed runs ────────────────────────────────────────────────────


class TestAllowedRuns:
    @pytest.mark.asyncio
    async def test_safe_bin_runs_planned_argv(self, tmp_path, work):
        h = Harness(tmp_path, ExecToolConfig(security="allowlist", ask="off"))
        response = await h.run(command=["tr", "a", "b"], cwd=str(work))

        assert response.ok
        assert response.payload["exitCode"] == 0
        assert h.executor.calls[0]["argv"] == [canonical("tr"), "a", "b"]
        assert [e for e, _ in h.events] == ["exec.finished"]

    @pytest.mark.asyncio
    async def test_safe_bin_through_env_wrapper_runs_inner_argv(self, tmp_path, work):
        h = Harness(tmp_path, ExecToolConfig(security="allowlist", ask="off"))
        response = await h.run(command=["env", "tr", "a", "b"], cwd=str(work))
        assert response.ok
        assert h.executor.calls[0]["argv"] == [canonical("tr"), "a", "b"]

    @pytest.mark.asyncio
    async def test_full_security(self, tmp_path, work):
        h = Harness(tmp_path, ExecToolConfig(security="full", ask="off"))
        response = await h.run(raw_command="echo hi", cwd=str(work))
        assert response.ok
        assert h.executor.calls[0]["argv"] == ["/bin/sh", "-c", "echo hi"]

    @pytest.mark.asyncio
    async def test_env_sanitized(self, tmp_path, work):
        h = Harness(tmp_path, ExecToolConfig(security="full", ask="off"))
        await h.run(command=["tr", "a", "b"], cwd=str(work), env={"PATH": "/evil", "LD_PRELOAD": "x", "FOO": "1"})
        assert h.executor.calls[0]["env"] == {"FOO": "1"}

    @pytest.mark.asyncio
    async def test_truncated_output_marked(self, tmp_path, work):
        executor = FakeExecutor(result=RunResult(success=True, exit_code=0, stdout="partial", truncated=True))
        h = Harness(tmp_path, ExecToolConfig(security="full", ask="off"), local=executor)
        response = await h.run(command=["tr", "a", "b"], cwd=str(work))
        assert response.payload["stdout"].endswith(TRUNCATION_MARKER)

    @pytest.mark.asyncio
    async def test_approved_run_pins_executable(self, tmp_path, work):
        tool = make_executable(work / "tool")
        h = Harness(tmp_path, ExecToolConfig(security="allowlist", ask="on-miss"))
        response = await h.run(command=["./tool", "x"], cwd=str(work), approval_decision="allow-once")
        assert response.ok
        assert h.executor.calls[0]["argv"] == [str(tool), "x"]
        assert h.executor.calls[0]["cwd"] == str(work)

    @pytest.mark.asyncio
    async def test_skill_bin_auto_allowed(self, tmp_path, work):
        tool = make_executable(work / "skill-tool")
        h = Harness(
            tmp_path,
            ExecToolConfig(security="allowlist", ask="off"),
            skill_bins=FakeSkillBins([TrustEntry(name="skill-tool", canonical_path=str(tool))]),
        )
        h.store.update(lambda approvals: setattr(approvals.defaults, "auto_allow_skills", True))
        response = await h.run(command=[str(tool)], cwd=str(work))
        assert response.ok


# ── allow-always ────────────────────────────────────────────────────


class TestAllowAlways:
    @pytest.mark.asyncio
    async def test_persists_and_reuses_pattern(self, tmp_path, work):
        tool = make_executable(work / "tool")
        h = Harness(tmp_path, ExecToolConfig(security="allowlist", ask="on-miss"))

        first = await h.run(command=[str(tool), "x"], cwd=str(work), agent_id="main", approval_decision="allow-always")
        assert first.ok
        entries = h.store.load().agents["main"].allowlist
        assert [e.pattern for e in entries] == [str(tool)]
        assert entries[0].use_count == 0

        second = await h.run(command=[str(tool), "y"], cwd=str(work), agent_id="main")
        assert second.ok
        assert h.executor.calls[1]["argv"] == [str(tool), "y"]

        entry = h.store.load().agents["main"].allowlist[0]
        assert entry.use_count == 1
        assert entry.last_used_command == f"{tool} y"
        assert entry.last_resolved_path == str(tool)

    @pytest.mark.asyncio
    async def test_repeated_approval_is_idempotent(self, tmp_path, work):
        tool = make_executable(work / "tool")
        h = Harness(tmp_path, ExecToolConfig(security="allowlist", ask="always"))
        for _ in range(2):
            response = await h.run(command=[str(tool)], cwd=str(work), agent_id="main", approval_decision="allow-always")
            assert response.ok
        assert len(h.store.load().agents["main"].allowlist) == 1

    @pytest.mark.asyncio
    async def test_not_persisted_in_full_mode(self, tmp_path, work):
        tool = make_executable(work / "tool")
        h = Harness(tmp_path, ExecToolConfig(security="full", ask="on-miss"))
        await h.run(command=[str(tool)], cwd=str(work), agent_id="main", approval_decision="allow-always")
        assert h.store.load().agents == {}


# ── Approval broker ─────────────────────────────────────────────────


class TestApprovalWait:
    @pytest.mark.asyncio
    async def test_callback_approves(self, tmp_path, work):
        asked = []

        async def callback(pending):
            asked.append(pending.cmd_text)
            return "allow-once"

        h = Harness(
            tmp_path,
            ExecToolConfig(security="allowlist", ask="on-miss"),
            broker=ApprovalBroker(timeout_seconds=5, callback=callback),
        )
        response = await h.run(command=["tr", "a", "b", "c"], cwd=str(work))
        assert response.ok
        assert asked == ["tr a b c"]

    @pytest.mark.asyncio
    async def test_callback_denies(self, tmp_path, work):
        async def callback(pending):
            return "deny"

        h = Harness(
            tmp_path,
            ExecToolConfig(security="allowlist", ask="on-miss"),
            broker=ApprovalBroker(timeout_seconds=5, callback=callback),
        )
        response = await h.run(command=["tr", "a", "b", "c"], cwd=str(work))
        assert response.error_message == "SYSTEM_RUN_DENIED: approval denied"

    @pytest.mark.asyncio
    async def test_timeout_falls_back_to_deny(self, tmp_path, work):
        h = Harness(
            tmp_path,
            ExecToolConfig(security="allowlist", ask="on-miss", ask_fallback="deny"),
            broker=ApprovalBroker(timeout_seconds=0.05),
        )
        response = await h.run(command=["tr", "a", "b", "c"], cwd=str(work))
        assert response.error_message == "SYSTEM_RUN_DENIED: approval timed out"
        assert h.denied_reasons == ["approval-required"]

    @pytest.mark.asyncio
    async def test_timeout_falls_back_to_allowlist(self, tmp_path, work):
        h = Harness(
            tmp_path,
            ExecToolConfig(security="allowlist", ask="always", ask_fallback="allowlist"),
            broker=ApprovalBroker(timeout_seconds=0.05),
        )
        response = await h.run(command=["tr", "a", "b"], cwd=str(work))
        assert response.ok

    @pytest.mark.asyncio
    async def test_timeout_allowlist_fallback_still_needs_match(self, tmp_path, work):
        h = Harness(
            tmp_path,
            ExecToolConfig(security="allowlist", ask="on-miss", ask_fallback="allowlist"),
            broker=ApprovalBroker(timeout_seconds=0.05),
        )
        await h.run(command=["tr", "a", "b", "c"], cwd=str(work))
        assert h.denied_reasons == ["allowlist-miss"]

    @pytest.mark.asyncio
    async def test_timeout_allowlist_fallback_caps_full_security(self, tmp_path, work):
        tool = make_executable(work / "tool")
        h = Harness(
            tmp_path,
            ExecToolConfig(security="full", ask="always", ask_fallback="allowlist"),
            broker=ApprovalBroker(timeout_seconds=0.05),
        )
        response = await h.run(command=[str(tool), "-rf", "x"], cwd=str(work))
        assert not response.ok
        assert h.denied_reasons == ["allowlist-miss"]
        assert h.executor.calls == []

    @pytest.mark.asyncio
    async def test_timeout_allowlist_fallback_under_full_runs_safe_bin(self, tmp_path, work):
        h = Harness(
            tmp_path,
            ExecToolConfig(security="full", ask="always", ask_fallback="allowlist"),
            broker=ApprovalBroker(timeout_seconds=0.05),
        )
        response = await h.run(command=["tr", "a", "b"], cwd=str(work))
        assert response.ok
        assert h.executor.calls[0]["argv"] == [canonical("tr"), "a", "b"]


# ── Real local execution ────────────────────────────────────────────


class TestLocalExecution:
    @pytest.mark.asyncio
    async def test_allowlisted_echo_runs(self, tmp_path, work):
        echo = canonical("echo")
        if os.path.basename(echo) != "echo":
            pytest.skip("echo is a multi-call binary here")
        h = Harness(tmp_path, ExecToolConfig(security="allowlist", ask="on-miss"), local=LocalExecutor())
        h.store.add_allowlist_entry(None, glob.escape(echo))

        response = await h.run(command=["echo", "ok"], cwd=str(work))
        assert response.ok
        assert "ok" in response.payload["stdout"]
        assert response.payload["exitCode"] == 0

    @pytest.mark.asyncio
    async def test_unlisted_echo_needs_approval(self, tmp_path, work):
        h = Harness(tmp_path, ExecToolConfig(security="allowlist", ask="on-miss"), local=LocalExecutor())
        response = await h.run(command=["echo", "ok"], cwd=str(work))
        assert not response.ok
        assert h.denied_reasons == ["approval-required"]

    @pytest.mark.asyncio
    async def test_planted_shell_never_spawns(self, tmp_path, work):
        marker = work / "marker"
        planted = work / "sh"
        planted.write_text(f"#!/bin/sh\ntouch {marker}\n")
        planted.chmod(0o755)
        h = Harness(tmp_path, ExecToolConfig(security="allowlist", ask="on-miss"), local=LocalExecutor())

        response = await h.run(command=["./sh", "-lc", "/bin/echo x"], cwd=str(work))
        assert not response.ok
        assert h.denied_reasons == ["approval-required"]
        assert not marker.exists()

    @pytest.mark.asyncio
    async def test_relative_path_entry_cannot_shadow_safe_bin(self, tmp_path, work, monkeypatch):
        marker = work / "marker"
        planted = work / "tr"
        planted.write_text(f"#!/bin/sh\ntouch {marker}\n")
        planted.chmod(0o755)
        monkeypatch.setenv("PATH", os.pathsep.join([".", os.environ.get("PATH", os.defpath)]))
        h = Harness(tmp_path, ExecToolConfig(security="allowlist", ask="off"), local=LocalExecutor())

        response = await h.run(command=["tr", "a", "b"], cwd=str(work))
        assert response.ok
        assert response.payload["exitCode"] == 0
        assert not marker.exists()

    @pytest.mark.asyncio
    async def test_sort_output_flag_cannot_write(self, tmp_path, work):
        victim = work / "victim"
        victim.write_text("keep me")
        h = Harness(tmp_path, ExecToolConfig(security="allowlist", ask="off"), local=LocalExecutor())

        response = await h.run(command=["sort", f"-o{victim}"], cwd=str(work))
        assert not response.ok
        assert h.denied_reasons == ["allowlist-miss"]
        assert victim.read_text() == "keep me"

    @pytest.mark.asyncio
    async def test_recursive_grep_cluster_denied(self, tmp_path, work):
        (work / "sub").mkdir()
        (work / "sub" / "secret.env").write_text("API_KEY=hunter2\n")
        h = Harness(tmp_path, ExecToolConfig(security="allowlist", ask="off"), local=LocalExecutor())

        response = await h.run(command=["grep", "-rn", "API_KEY"], cwd=str(work))
        assert not response.ok
        assert h.denied_reasons == ["allowlist-miss"]


# ── Lifecycle ───────────────────────────────────────────────────────


class TestHandlerClose:
    @pytest.mark.asyncio
    async def test_closes_exec_host_client_it_created(self, tmp_path):
        config = ExecToolConfig(host=ExecHostConfig(prefer=True))
        handler = RunRequestHandler(config, store=ExecApprovalStore(tmp_path / "a.json"))
        client = handler.remote._client
        await handler.aclose()
        assert client.is_closed

    @pytest.mark.asyncio
    async def test_leaves_injected_executor_alone(self, tmp_path):
        remote = FakeExecutor("exec-host")
        remote.aclose = None
        config = ExecToolConfig(host=ExecHostConfig(prefer=True))
        handler = RunRequestHandler(config, store=ExecApprovalStore(tmp_path / "a.json"), remote=remote)
        await handler.aclose()
        assert handler.remote is remote
