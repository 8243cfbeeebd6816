"""Tests for approval binding and the approval broker."""

import asyncio

import pytest

from execgate.exec.binding import (
    ApprovalBroker,
    build_approval_binding,
    build_env_hash,
    match_approval_binding,
)
from execgate.exec.errors import ApprovalTimeout


# ── Binding ─────────────────────────────────────────────────────────


class TestEnvHash:
    def test_empty(self):
        assert build_env_hash(None) is None
        assert build_env_hash({}) is None
        assert build_env_hash({"  ": "x"}) is None

    def test_order_independent(self):
        assert build_env_hash({"A": "1", "B": "2"}) == build_env_hash({"B": "2", "A": "1"})

    def test_value_sensitive(self):
        assert build_env_hash({"A": "1"}) != build_env_hash({"A": "2"})


class TestMatchApprovalBinding:
    def test_identical(self):
        a = build_approval_binding(["tr", "a"], "/work", "main", "s1", {"A": "1"})
        b = build_approval_binding(["tr", "a"], "/work", "main", "s1", {"A": "1"})
        assert match_approval_binding(a, b) is None

    def test_argv_mismatch(self):
        a = build_approval_binding(["tr", "a"])
        b = build_approval_binding(["tr", "b"])
        assert match_approval_binding(a, b) == "approval id does not match request"

    def test_cwd_mismatch(self):
        a = build_approval_binding(["tr"], "/work")
        b = build_approval_binding(["tr"], "/other")
        assert match_approval_binding(a, b) == "approval id does not match request"

    def test_env_added_after_approval(self):
        a = build_approval_binding(["tr"])
        b = build_approval_binding(["tr"], env={"A": "1"})
        assert "missing env binding" in match_approval_binding(a, b)

    def test_env_changed(self):
        a = build_approval_binding(["tr"], env={"A": "1"})
        b = build_approval_binding(["tr"], env={"A": "2"})
        assert match_approval_binding(a, b) == "approval id env binding mismatch"


# ── ApprovalBroker ──────────────────────────────────────────────────


class TestApprovalBroker:
    @pytest.mark.asyncio
    async def test_resolve(self):
        broker = ApprovalBroker(timeout_seconds=5)
        binding = build_approval_binding(["tr", "a"])
        pending = broker.create_pending("run-1", "tr a", binding)

        task = asyncio.create_task(broker.request(pending))
        await asyncio.sleep(0)
        assert broker.get_pending("run-1") is pending
        assert broker.resolve("run-1", "allow-once", binding) is True

        assert await task == "allow-once"
        assert broker.list_pending() == []

    @pytest.mark.asyncio
    async def test_timeout(self):
        broker = ApprovalBroker(timeout_seconds=0.05)
        pending = broker.create_pending("run-1", "tr a", build_approval_binding(["tr", "a"]))
        with pytest.raises(ApprovalTimeout):
            await broker.request(pending)
        assert broker.get_pending("run-1") is None

    @pytest.mark.asyncio
    async def test_rejects_mismatched_binding(self):
        broker = ApprovalBroker(timeout_seconds=0.2)
        pending = broker.create_pending("run-1", "tr a", build_approval_binding(["tr", "a"]))

        task = asyncio.create_task(broker.request(pending))
        await asyncio.sleep(0)
        assert broker.resolve("run-1", "allow-once", build_approval_binding(["rm", "-rf"])) is False
        with pytest.raises(ApprovalTimeout):
            await task

    @pytest.mark.asyncio
    async def test_rejects_unknown_and_invalid(self):
        broker = ApprovalBroker(timeout_seconds=0.2)
        pending = broker.create_pending("run-1", "tr a", build_approval_binding(["tr", "a"]))

        task = asyncio.create_task(broker.request(pending))
        await asyncio.sleep(0)
        assert broker.resolve("run-2", "allow-once") is False
        assert broker.resolve("run-1", "yes please") is False
        assert broker.resolve("run-1", "deny") is True
        assert await task == "deny"

    @pytest.mark.asyncio
    async def test_callback_answers(self):
        seen = []

        async def callback(pending):
            seen.append(pending.run_id)
            return "allow-always"

        broker = ApprovalBroker(timeout_seconds=5, callback=callback)
        pending = broker.create_pending("run-1", "tr a", build_approval_binding(["tr", "a"]))
        assert await broker.request(pending) == "allow-always"
        assert seen == ["run-1"]

    @pytest.mark.asyncio
    async def test_failing_callback_times_out(self):
        async def callback(pending):
            raise RuntimeError("channel down")

        broker = ApprovalBroker(timeout_seconds=0.05, callback=callback)
        pending = broker.create_pending("run-1", "tr a", build_approval_binding(["tr", "a"]))
        with pytest.raises(ApprovalTimeout):
            await broker.request(pending)
