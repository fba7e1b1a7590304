"""Tests for plan_orchestrator/utils."""

import asyncio
import json
import threading
from unittest.mock import patch

import pytest
import structlog

from plan_orchestrator.engine.approval_gate import ApprovalGate, ApprovalTicket
from plan_orchestrator.enums import ApprovalStatus
from plan_orchestrator.exceptions import ConfigurationError
from plan_orchestrator.utils.interactive import ConsoleApprover
from plan_orchestrator.utils.logging_config import configure_logging
from tests.helpers import wait_until


class TestConsoleApprover:
    @pytest.mark.asyncio
    async def test_auto_approve(self):
        gate = ApprovalGate(timeout=2)
        gate.add_listener(ConsoleApprover(gate, auto_approve=True))

        approved = await gate.request("plan-1", "deploy", "Ship it")

        assert approved
        assert gate.recent()[0].decided_by == "auto-approve"

    @pytest.mark.parametrize("answer,status", [(True, ApprovalStatus.APPROVED), (False, ApprovalStatus.DENIED)])
    @pytest.mark.asyncio
    async def test_prompt_answer_is_reported(self, answer, status, capsys):
        gate = ApprovalGate(timeout=2)
        gate.add_listener(ConsoleApprover(gate, decided_by="alice"))

        with patch("plan_orchestrator.utils.interactive.click.confirm", return_value=answer):
            await gate.request("plan-1", "deploy", "Ship it", {"version": "1.4"})

        ticket = gate.recent()[0]
        assert ticket.status is status
        assert ticket.decided_by == "alice"
        out = capsys.readouterr().out
        assert "Approval required for step 'deploy' of plan 'plan-1'" in out
        assert '"version": "1.4"' in out

    @pytest.mark.asyncio
    async def test_resolved_ticket_is_not_prompted(self):
        gate = ApprovalGate(timeout=2)
        approver = ConsoleApprover(gate, decided_by="alice")
        ticket = ApprovalTicket(plan_id="plan-1", step_id="deploy")
        ticket.close(ApprovalStatus.TIMED_OUT)

        with patch("plan_orchestrator.utils.interactive.click.confirm") as confirm:
            await approver(ticket)

        confirm.assert_not_called()

    @pytest.mark.asyncio
    async def test_timed_out_ticket_abandons_prompt(self, capsys):
        gate = ApprovalGate(timeout=0.2)
        approver = ConsoleApprover(gate, decided_by="alice")
        nobody_answers = threading.Event()

        def never_answered(*args, **kwargs):
            return nobody_answers.wait()

        with patch("plan_orchestrator.utils.interactive.click.confirm", side_effect=never_answered):
            request = asyncio.create_task(gate.request_ticket("plan-1", "deploy"))
            await wait_until(lambda: gate.get_pending("plan-1", "deploy") is not None)
            await asyncio.wait_for(approver(gate.get_pending("plan-1", "deploy")), timeout=2)

            ticket = await request
            prompt_threads = [t for t in threading.enumerate() if t.name == "approval-prompt"]
            nobody_answers.set()

        assert ticket.status is ApprovalStatus.TIMED_OUT
        assert ticket.decided_by is None
        assert prompt_threads and all(t.daemon for t in prompt_threads)
        assert "no longer pending" in capsys.readouterr().err


class TestConfigureLogging:
    @pytest.fixture(autouse=True)
    def reset_structlog(self):
        yield
        structlog.reset_defaults()

    def test_json_lines_on_stderr(self, capsys):
        configure_logging("debug")

        structlog.get_logger("test").info("run_started", plan_id="plan-1")

        line = json.loads(capsys.readouterr().err.strip())
        assert line["event"] == "run_started"
        assert line["plan_id"] == "plan-1"
        assert line["level"] == "info"

    def test_level_filters(self, capsys):
        configure_logging("WARNING")

        structlog.get_logger("test").info("ignored")

        assert capsys.readouterr().err == ""

    def test_unknown_level(self):
        with pytest.raises(ConfigurationError):
            configure_logging("LOUD")
