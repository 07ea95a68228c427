"""
Unit tests for the pending tool approval table
"""
import asyncio

import pytest

from polymux.services.approvals import ApprovalDecision, ApprovalTable


class TestApprovalTable:
    """One-shot rendezvous keyed by request id"""

    @pytest.mark.asyncio
    async def test_resolve_wakes_waiter(self):
        table = ApprovalTable(timeout_seconds=5)
        request_id = table.create("Bash", {"command": "ls"})
        waiter = asyncio.create_task(table.wait(request_id))
        await asyncio.sleep(0)

        assert table.resolve(request_id, ApprovalDecision(allow=True, updated_input={"command": "ls -la"}))
        decision = await waiter

        assert decision.allow is True
        assert decision.updated_input == {"command": "ls -la"}
        assert request_id not in table

    @pytest.mark.asyncio
    async def test_timeout_denies(self):
        table = ApprovalTable(timeout_seconds=0.01)
        decision = await table.wait(table.create("Write", {"path": "x"}))

        assert decision.allow is False
        assert decision.message == "Tool approval timed out"
        assert len(table) == 0

    @pytest.mark.asyncio
    async def test_unknown_request_is_ignored(self):
        table = ApprovalTable()
        assert table.resolve("nope", ApprovalDecision(allow=True)) is False

    @pytest.mark.asyncio
    async def test_second_answer_is_ignored(self):
        table = ApprovalTable(timeout_seconds=5)
        request_id = table.create("Bash", {})
        waiter = asyncio.create_task(table.wait(request_id))
        await asyncio.sleep(0)

        assert table.resolve(request_id, ApprovalDecision(allow=False, message="no"))
        assert table.resolve(request_id, ApprovalDecision(allow=True)) is False
        assert (await waiter).message == "no"

    @pytest.mark.asyncio
    async def test_wait_on_unknown_request_denies(self):
        table = ApprovalTable()
        decision = await table.wait("missing")
        assert decision.allow is False

    @pytest.mark.asyncio
    async def test_cancel(self):
        table = ApprovalTable(timeout_seconds=5)
        first = table.create("Bash", {})
        second = table.create("Edit", {})

        assert table.cancel(first) is True
        assert table.cancel(first) is False
        assert second in table
