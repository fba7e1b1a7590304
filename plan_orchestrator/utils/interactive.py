"""Terminal approval channel for the approval gate.

``ConsoleApprover`` listens for new approval tickets and asks the person at
the terminal to approve or deny each one, then reports the decision back to
the gate. The CLI's ``run`` command installs it (or, with
``--auto-approve``, installs it in automatic mode).

Example:
    >>> approver = ConsoleApprover(gate)
    >>> gate.add_listener(approver)
    >>> await coordinator.execute_plan("plan-42")

Note:
    Prompts are serialized: parallel branches that request approval at the
    same time are asked one after another. Terminal input is read on a
    daemon thread, so a prompt whose ticket times out (or whose run is
    cancelled) is abandoned without keeping the process alive. A line typed
    after that answers the next ticket shown, if any.
"""

import asyncio
import getpass
import json
import threading
from collections.abc import Callable
from typing import Any

import click
import structlog

from plan_orchestrator.engine.approval_gate import ApprovalGate, ApprovalTicket

log = structlog.get_logger(__name__)


class ConsoleApprover:
    """Approval gate listener that prompts on the terminal.

    Attributes:
        gate: Gate that receives the decisions.
        auto_approve: Approve every ticket without prompting.
        decided_by: Identity recorded on decisions.
    """

    def __init__(self, gate: ApprovalGate, auto_approve: bool = False, decided_by: str | None = None) -> None:
        self.gate = gate
        self.auto_approve = auto_approve
        self.decided_by = decided_by or _current_user()
        self._prompt_lock = asyncio.Lock()
        self._answer: asyncio.Future[bool] | None = None

    async def __call__(self, ticket: ApprovalTicket) -> None:
        if self.auto_approve:
            log.info("approval_auto_approved", plan_id=ticket.plan_id, step_id=ticket.step_id)
            self.gate.decide(ticket.plan_id, ticket.step_id, True, decided_by="auto-approve")
            return

        async with self._prompt_lock:
            if not ticket.is_pending:
                return
            self._show(ticket)
            if self._answer is None or self._answer.done():
                self._answer = self._read_answer()
            else:
                click.echo("Approve? [y/N]: ", nl=False)

            answer = self._answer
            closed = asyncio.ensure_future(ticket.wait())
            try:
                await asyncio.wait([answer, closed], return_when=asyncio.FIRST_COMPLETED)
            finally:
                closed.cancel()

            if not answer.done():
                click.echo(f"\nApproval for step '{ticket.step_id}' is no longer pending.", err=True)
                log.info("approval_prompt_abandoned", plan_id=ticket.plan_id, step_id=ticket.step_id)
                return

            approved = answer.result()
            if not self.gate.decide(ticket.plan_id, ticket.step_id, approved, decided_by=self.decided_by):
                click.echo(f"Approval for step '{ticket.step_id}' is no longer pending.", err=True)

    def _show(self, ticket: ApprovalTicket) -> None:
        click.echo("")
        click.echo(f"Approval required for step '{ticket.step_id}' of plan '{ticket.plan_id}'")
        if ticket.description:
            click.echo(f"  {ticket.description}")
        if ticket.context:
            click.echo("  Shared state:")
            click.echo(_indent(json.dumps(ticket.context, indent=2, default=str), 4))

    def _read_answer(self) -> "asyncio.Future[bool]":
        """Read one yes/no answer on a daemon thread."""
        loop = asyncio.get_running_loop()
        answer: asyncio.Future[bool] = loop.create_future()

        def read() -> None:
            try:
                approved = click.confirm("Approve?", default=False)
            except Exception as e:
                outcome: tuple[Callable[[Any], None], Any] = (answer.set_exception, e)
            else:
                outcome = (answer.set_result, approved)
            try:
                loop.call_soon_threadsafe(_settle, answer, *outcome)
            except RuntimeError:
                # Loop closed: the run ended before anyone answered
                pass

        threading.Thread(target=read, name="approval-prompt", daemon=True).start()
        return answer


def _settle(answer: "asyncio.Future[bool]", setter: Callable[[Any], None], value: Any) -> None:
    if not answer.done():
        setter(value)


def _indent(text: str, width: int) -> str:
    pad = " " * width
    return "\n".join(pad + line for line in text.splitlines())


def _current_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "console"
