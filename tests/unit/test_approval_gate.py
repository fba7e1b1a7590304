"""Tests for plan_orchestrator/engine/approval_gate.py."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from plan_orchestrator.engine.approval_gate import ApprovalGate, ticket_key
from plan_orchestrator.engine.cancellation import CancellationToken
from plan_orchestrator.enums import ApprovalStatus
from plan_orchestrator.exceptions import ApprovalAlreadyPendingError
from tests.helpers import wait_until


def test_ticket_key():
    assert ticket_key("plan-1", "deploy") == ("plan-1", "deploy")
    assert ticket_key("tenant:a", "deploy") != ticket_key("tenant", "a:deploy")


class TestApprovalDecisions:
    """Tests for approve/deny delivery."""

    @pytest.mark.asyncio
    async def test_approve(self, gate):
        request = asyncio.create_task(gate.request("plan-1", "deploy", "Deploy to prod", {"env": "prod"}))
        await wait_until(lambda: gate.get_pending("plan-1", "deploy") is not None)

        assert gate.decide("plan-1", "deploy", True, decided_by="alice") is True
        assert await request is True
        assert gate.get_pending("plan-1", "deploy") is None

    @pytest.mark.asyncio
    async def test_deny(self, gate):
        request = asyncio.create_task(gate.request_ticket("plan-1", "deploy"))
        await wait_until(lambda: gate.get_pending("plan-1", "deploy") is not None)

        gate.decide("plan-1", "deploy", False, decided_by="bob", comment="not today")
        ticket = await request

        assert ticket.status is ApprovalStatus.DENIED
        assert ticket.approved is False
        assert ticket.decided_by == "bob"
        assert ticket.comment == "not today"
        assert ticket.responded_at is not None

    @pytest.mark.asyncio
    async def test_ids_containing_separators_do_not_collide(self, gate):
        first = asyncio.create_task(gate.request_ticket("tenant:a", "deploy"))
        second = asyncio.create_task(gate.request_ticket("tenant", "a:deploy"))
        await wait_until(lambda: len(gate.list_pending()) == 2)

        assert gate.decide("tenant", "a:deploy", True) is True
        assert (await second).status is ApprovalStatus.APPROVED
        assert gate.get_pending("tenant:a", "deploy").is_pending

        assert gate.decide("tenant:a", "deploy", False) is True
        assert (await first).status is ApprovalStatus.DENIED

    @pytest.mark.asyncio
    async def test_decide_without_pending_ticket_returns_false(self, gate):
        assert gate.decide("plan-1", "unknown", True) is False

    @pytest.mark.asyncio
    async def test_duplicate_decision_returns_false(self, gate):
        request = asyncio.create_task(gate.request("plan-1", "deploy"))
        await wait_until(lambda: gate.get_pending("plan-1", "deploy") is not None)

        assert gate.decide("plan-1", "deploy", True) is True
        assert gate.decide("plan-1", "deploy", False) is False
        assert await request is True

    @pytest.mark.asyncio
    async def test_context_is_snapshotted(self, gate):
        state = {"rows": [1, 2]}
        request = asyncio.create_task(gate.request("plan-1", "deploy", context=state))
        await wait_until(lambda: gate.get_pending("plan-1", "deploy") is not None)

        state["rows"].append(3)

        assert gate.get_pending("plan-1", "deploy").context == {"rows": [1, 2]}
        gate.decide("plan-1", "deploy", True)
        await request


class TestApprovalTimeoutAndCancellation:
    """Tests for tickets that end without a decision."""

    @pytest.mark.asyncio
    async def test_timeout_returns_false(self):
        gate = ApprovalGate(timeout=0.05)

        ticket = await gate.request_ticket("plan-1", "deploy")

        assert ticket.status is ApprovalStatus.TIMED_OUT
        assert gate.get_pending("plan-1", "deploy") is None
        assert gate.decide("plan-1", "deploy", True) is False

    @pytest.mark.asyncio
    async def test_per_request_timeout_overrides_default(self, gate):
        assert await gate.request("plan-1", "deploy", timeout=0.05) is False

    @pytest.mark.asyncio
    async def test_cancellation_returns_false_with_errored_status(self, gate):
        token = CancellationToken()
        request = asyncio.create_task(gate.request_ticket("plan-1", "deploy", cancel_token=token))
        await wait_until(lambda: gate.get_pending("plan-1", "deploy") is not None)

        token.cancel()
        ticket = await asyncio.wait_for(request, timeout=1)

        assert ticket.status is ApprovalStatus.ERRORED
        assert gate.get_pending("plan-1", "deploy") is None

    @pytest.mark.asyncio
    async def test_task_cancellation_removes_ticket(self, gate):
        request = asyncio.create_task(gate.request("plan-1", "deploy"))
        await wait_until(lambda: gate.get_pending("plan-1", "deploy") is not None)

        request.cancel()
        with pytest.raises(asyncio.CancelledError):
            await request

        assert gate.list_pending() == []
        assert gate.recent()[-1].status is ApprovalStatus.ERRORED


class TestApprovalBookkeeping:
    """Tests for pending lists, history and listeners."""

    @pytest.mark.asyncio
    async def test_second_request_for_pending_key_raises(self, gate):
        first = asyncio.create_task(gate.request("plan-1", "deploy"))
        await wait_until(lambda: gate.get_pending("plan-1", "deploy") is not None)

        with pytest.raises(ApprovalAlreadyPendingError):
            await gate.request("plan-1", "deploy")

        gate.decide("plan-1", "deploy", True)
        assert await first is True

    @pytest.mark.asyncio
    async def test_tickets_are_independent(self, gate):
        a = asyncio.create_task(gate.request("plan-1", "a"))
        b = asyncio.create_task(gate.request("plan-2", "a"))
        await wait_until(lambda: len(gate.list_pending()) == 2)

        assert [t.plan_id for t in gate.list_pending("plan-2")] == ["plan-2"]
        gate.decide("plan-2", "a", False)
        gate.decide("plan-1", "a", True)

        assert await a is True
        assert await b is False

    @pytest.mark.asyncio
    async def test_history_is_bounded(self):
        gate = ApprovalGate(timeout=0.01, history_size=2)

        for step_id in ("a", "b", "c"):
            await gate.request("plan-1", step_id)

        assert [t.step_id for t in gate.recent()] == ["b", "c"]
        assert gate.recent("other-plan") == []

    @pytest.mark.asyncio
    async def test_sync_listener_can_decide_immediately(self, gate):
        gate.add_listener(lambda ticket: gate.decide(ticket.plan_id, ticket.step_id, True))

        assert await asyncio.wait_for(gate.request("plan-1", "deploy"), timeout=1) is True

    @pytest.mark.asyncio
    async def test_async_listener_is_scheduled(self, gate):
        listener = AsyncMock()
        gate.add_listener(listener)

        request = asyncio.create_task(gate.request("plan-1", "deploy"))
        await wait_until(lambda: listener.await_count == 1)

        ticket = listener.await_args.args[0]
        assert ticket.step_id == "deploy"
        gate.decide("plan-1", "deploy", True)
        await request

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_block_request(self, gate):
        gate.add_listener(MagicMock(side_effect=RuntimeError("channel down")))
        approver = MagicMock(side_effect=lambda t: gate.decide(t.plan_id, t.step_id, True))
        gate.add_listener(approver)

        assert await asyncio.wait_for(gate.request("plan-1", "deploy"), timeout=1) is True

    @pytest.mark.asyncio
    async def test_remove_listener(self, gate):
        listener = MagicMock()
        gate.add_listener(listener)
        gate.remove_listener(listener)

        await gate.request("plan-1", "deploy", timeout=0.01)

        listener.assert_not_called()

    @pytest.mark.asyncio
    async def test_ticket_to_dict(self, gate):
        ticket = await gate.request_ticket("plan-1", "deploy", "Ship it", timeout=0.01)

        data = ticket.to_dict()

        assert data["plan_id"] == "plan-1"
        assert data["step_id"] == "deploy"
        assert data["status"] == "timed_out"
        assert data["responded_at"] is not None
