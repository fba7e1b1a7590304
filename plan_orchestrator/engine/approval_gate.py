"""
Human approval gate for execution steps.

This module bridges an asynchronous human decision into the flow of step
execution. When the Flow Executor reaches a step that requires sign-off it
calls ``ApprovalGate.request``, which opens an ``ApprovalTicket`` and blocks
that execution path until one of:

- a matching ``decide`` call arrives (approve or deny)
- the approval timeout elapses (default 5 minutes), status ``timed_out``
- the run is cancelled while waiting, status ``errored``

Tickets are keyed by ``(plan_id, step_id)`` and are single use: the ticket is
removed from the pending table on every return path.

Concurrency Model:
    Each ticket owns its own completion future. Tickets never share a lock,
    so approvals for different runs, or different steps of the same run, do
    not contend with each other. ``decide`` resolves the future directly;
    there is no lock/condition map to clean up.

Notification:
    Listeners registered with ``add_listener`` are called with every new
    ticket. This is how a human-approval channel (terminal prompt, chat
    message, web UI) learns that a decision is needed; the channel answers
    by calling ``decide``.

Example:
    >>> gate = ApprovalGate(timeout=300)
    >>> gate.add_listener(lambda ticket: notify_reviewers(ticket))
    >>> approved = await gate.request("plan-42", "deploy", "Deploy to prod", {})
    >>> # elsewhere, when the reviewer answers:
    >>> gate.decide("plan-42", "deploy", approved=True, decided_by="alice")
"""

import asyncio
import copy
import inspect
from collections import deque
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog

from plan_orchestrator.engine.cancellation import CancellationToken
from plan_orchestrator.enums import ApprovalStatus
from plan_orchestrator.exceptions import ApprovalAlreadyPendingError, OperationCancelledError

log = structlog.get_logger(__name__)

DEFAULT_APPROVAL_TIMEOUT = 300.0

ApprovalListener = Callable[["ApprovalTicket"], Awaitable[None] | None]


def ticket_key(plan_id: str, step_id: str) -> tuple[str, str]:
    return (plan_id, step_id)


@dataclass
class ApprovalTicket:
    """A pending human decision blocking one step.

    Attributes:
        plan_id: Plan owning the step
        step_id: Step waiting for the decision
        description: Text shown to the human
        context: Snapshot of shared run state at request time
        status: Current ticket status
        requested_at: When the ticket was opened
        responded_at: When the ticket was resolved
        decided_by: Identity reported by the deciding channel
        comment: Optional reason given with the decision
    """

    plan_id: str
    step_id: str
    description: str = ""
    context: dict[str, Any] = field(default_factory=dict)
    status: ApprovalStatus = ApprovalStatus.PENDING
    requested_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    responded_at: datetime | None = None
    decided_by: str | None = None
    comment: str | None = None
    _decision: "asyncio.Future[bool]" = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._decision = asyncio.get_running_loop().create_future()

    @property
    def key(self) -> tuple[str, str]:
        return ticket_key(self.plan_id, self.step_id)

    @property
    def approved(self) -> bool:
        return self.status is ApprovalStatus.APPROVED

    @property
    def is_pending(self) -> bool:
        return self.status is ApprovalStatus.PENDING

    def resolve(self, approved: bool, decided_by: str | None = None, comment: str | None = None) -> bool:
        """Deliver a decision. Returns False if the ticket was already resolved."""
        if not self.is_pending or self._decision.done():
            return False
        self.status = ApprovalStatus.APPROVED if approved else ApprovalStatus.DENIED
        self.responded_at = datetime.now(UTC)
        self.decided_by = decided_by
        self.comment = comment
        self._decision.set_result(approved)
        return True

    async def wait(self) -> None:
        """Return once the ticket is decided, timed out or cancelled."""
        await asyncio.wait([self._decision])

    def close(self, status: ApprovalStatus) -> None:
        """Terminate a still-pending ticket without a decision."""
        if not self.is_pending:
            return
        self.status = status
        self.responded_at = datetime.now(UTC)
        if not self._decision.done():
            self._decision.cancel()

    def to_dict(self) -> dict[str, Any]:
        return {
            "plan_id": self.plan_id,
            "step_id": self.step_id,
            "description": self.description,
            "status": self.status.value,
            "requested_at": self.requested_at.isoformat(),
            "responded_at": self.responded_at.isoformat() if self.responded_at else None,
            "decided_by": self.decided_by,
            "comment": self.comment,
        }


class ApprovalGate:
    """Blocks steps on human decisions with timeout and cancellation.

    Attributes:
        timeout: Default seconds to wait for a decision.
    """

    def __init__(self, timeout: float = DEFAULT_APPROVAL_TIMEOUT, history_size: int = 100) -> None:
        """Initialize the gate.

        Args:
            timeout: Default wait for a decision in seconds (5 minutes).
            history_size: Number of resolved tickets kept for inspection.
        """
        self.timeout = timeout
        self._pending: dict[tuple[str, str], ApprovalTicket] = {}
        self._history: deque[ApprovalTicket] = deque(maxlen=history_size)
        self._listeners: list[ApprovalListener] = []
        self._notifications: set[asyncio.Task[Any]] = set()

    def add_listener(self, listener: ApprovalListener) -> None:
        """Register a callback invoked with every new ticket (sync or async)."""
        self._listeners.append(listener)

    def remove_listener(self, listener: ApprovalListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def request(
        self,
        plan_id: str,
        step_id: str,
        description: str = "",
        context: Mapping[str, Any] | None = None,
        cancel_token: CancellationToken | None = None,
        timeout: float | None = None,
    ) -> bool:
        """Open a ticket and block until it is decided, times out or is cancelled.

        Returns:
            True if approved; False on denial, timeout or cancellation.

        Raises:
            ApprovalAlreadyPendingError: A ticket for the same key is open.
        """
        ticket = await self.request_ticket(
            plan_id,
            step_id,
            description,
            context,
            cancel_token=cancel_token,
            timeout=timeout,
        )
        return ticket.approved

    async def request_ticket(
        self,
        plan_id: str,
        step_id: str,
        description: str = "",
        context: Mapping[str, Any] | None = None,
        cancel_token: CancellationToken | None = None,
        timeout: float | None = None,
    ) -> ApprovalTicket:
        """Like ``request`` but return the resolved ticket.

        The ticket's terminal status tells denial (``denied``) apart from
        timeout (``timed_out``) and cancellation (``errored``).
        """
        key = ticket_key(plan_id, step_id)
        if key in self._pending:
            raise ApprovalAlreadyPendingError(plan_id, step_id)

        ticket = ApprovalTicket(
            plan_id=plan_id,
            step_id=step_id,
            description=description,
            context=copy.deepcopy(dict(context or {})),
        )
        self._pending[key] = ticket
        wait_seconds = self.timeout if timeout is None else timeout

        log.info("approval_requested", plan_id=plan_id, step_id=step_id, timeout=wait_seconds)
        self._notify(ticket)

        try:
            if cancel_token is not None:
                await cancel_token.run(asyncio.shield(ticket._decision), timeout=wait_seconds)
            else:
                await asyncio.wait_for(asyncio.shield(ticket._decision), timeout=wait_seconds)
        except TimeoutError:
            ticket.close(ApprovalStatus.TIMED_OUT)
            log.warning("approval_timed_out", plan_id=plan_id, step_id=step_id)
        except OperationCancelledError:
            ticket.close(ApprovalStatus.ERRORED)
            log.info("approval_cancelled", plan_id=plan_id, step_id=step_id)
        except asyncio.CancelledError:
            ticket.close(ApprovalStatus.ERRORED)
            raise
        finally:
            self._pending.pop(key, None)
            self._history.append(ticket)

        if ticket.status in (ApprovalStatus.APPROVED, ApprovalStatus.DENIED):
            log.info(
                "approval_decided",
                plan_id=plan_id,
                step_id=step_id,
                status=ticket.status.value,
                decided_by=ticket.decided_by,
            )
        return ticket

    def decide(
        self,
        plan_id: str,
        step_id: str,
        approved: bool,
        decided_by: str | None = None,
        comment: str | None = None,
    ) -> bool:
        """Resolve a pending ticket.

        Returns:
            True if a pending ticket was resolved; False when no ticket is
            pending for the key (never requested, already decided, timed out).
        """
        ticket = self._pending.get(ticket_key(plan_id, step_id))
        if ticket is None:
            log.warning("approval_not_pending", plan_id=plan_id, step_id=step_id)
            return False
        resolved = ticket.resolve(approved, decided_by=decided_by, comment=comment)
        if not resolved:
            log.warning("approval_already_resolved", plan_id=plan_id, step_id=step_id)
        return resolved

    def get_pending(self, plan_id: str, step_id: str) -> ApprovalTicket | None:
        return self._pending.get(ticket_key(plan_id, step_id))

    def list_pending(self, plan_id: str | None = None) -> list[ApprovalTicket]:
        return [t for t in self._pending.values() if plan_id is None or t.plan_id == plan_id]

    def recent(self, plan_id: str | None = None) -> list[ApprovalTicket]:
        """Resolved tickets, oldest first, bounded by ``history_size``."""
        return [t for t in self._history if plan_id is None or t.plan_id == plan_id]

    def _notify(self, ticket: ApprovalTicket) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(ticket)
            except Exception as e:
                log.error("approval_listener_failed", step_id=ticket.step_id, error=str(e), exc_info=True)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._notifications.add(task)
                task.add_done_callback(self._notification_done)

    def _notification_done(self, task: "asyncio.Future[Any]") -> None:
        self._notifications.discard(task)  # type: ignore[arg-type]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error("approval_listener_failed", error=str(exc))
