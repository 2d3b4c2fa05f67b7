"""
Correlated Request Gateway

Turns fire-and-forget Socket.IO emits into awaitable operations that settle
exactly once.

Correlation table:
- Every request gets a generated command id, sent as `requestId` in the
  command payload, and a PendingCorrelation entry keyed by that id.
- A response echoing `requestId` settles that entry. A response without one
  settles the oldest pending entry for its response event (FIFO).
- A request that was sent and then ends without an answer (timeout or
  cancellation) leaves a tombstone for its response event. The next
  uncorrelated response for that event consumes the oldest tombstone and is
  dropped instead of settling a newer request. Tombstones expire after the
  original request's timeout and are cleared by cancel_all() when the
  connection is gone.
- One transport listener exists per response event name while a request is
  waiting on it or a tombstone is outstanding for it.

Timer wheel: deadlines live in a heap and a single loop.call_at() handle is
armed for the earliest one. Settlement pops the entry from the table first,
so whichever of {response, timeout, abort} arrives second finds nothing to
settle and becomes a no-op.
"""

import asyncio
import heapq
import logging
import time
import uuid
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from roundsync.models.enums import ResultStatus
from roundsync.models.results import OperationResult

logger = logging.getLogger(__name__)

REQUEST_ID_FIELD = "requestId"


class Transport(Protocol):
    """What the gateway needs from the connection manager."""

    async def emit(self, event_name: str, payload: Any = None) -> bool: ...

    def on(self, event_name: str, handler: Callable) -> Callable[[], None]: ...


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class PendingCorrelation:
    """One in-flight request. Never exposed outside the gateway."""

    command_id: str
    operation: str
    command_name: str
    response_event: str
    timeout_ms: int
    deadline: float  # loop.time() seconds
    future: asyncio.Future
    created_at: int = field(default_factory=_now_ms)
    sent_ts: int | None = None


class CorrelatedRequestGateway:
    """
    Generic "send command, await exactly one tagged response or time out".

    Usage:
        gateway = CorrelatedRequestGateway(connection_manager)
        result = await gateway.request("placeBet", {"amount": "0.1"}, "betResult", 30_000)
        if result.ok:
            ...
    """

    def __init__(self, transport: Transport, id_factory: Callable[[], str] | None = None):
        """
        Args:
            transport: Object with async emit(name, payload) and on(name, handler)
            id_factory: Command id generator (uuid4 hex by default)
        """
        self._transport = transport
        self._id_factory = id_factory or (lambda: uuid.uuid4().hex)

        self._pending: dict[str, PendingCorrelation] = {}
        self._queues: dict[str, deque[str]] = {}
        self._listeners: dict[str, Callable[[], None]] = {}
        # response_event -> (expiry loop time, command_id), oldest first
        self._tombstones: dict[str, deque[tuple[float, str]]] = {}

        self._deadlines: list[tuple[float, str]] = []
        self._timer: asyncio.TimerHandle | None = None
        self._timer_deadline: float | None = None

        self.metrics = {
            "requests": 0,
            "succeeded": 0,
            "rejected": 0,
            "timeouts": 0,
            "cancelled": 0,
            "send_failures": 0,
            "unmatched_responses": 0,
            "late_responses": 0,
        }

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def has_pending(self, response_event: str) -> bool:
        return bool(self._queues.get(response_event))

    # ========================================================================
    # PUBLIC API
    # ========================================================================

    async def request(
        self,
        command_name: str,
        payload: dict[str, Any] | None,
        response_event: str,
        timeout_ms: int,
        abort: asyncio.Event | None = None,
        operation: str | None = None,
    ) -> OperationResult:
        """
        Emit `command_name` and wait for `response_event`.

        Args:
            command_name: Outbound Socket.IO event
            payload: Command payload; `requestId` is added to it
            response_event: Inbound event that answers the command
            timeout_ms: Time allowed for the answer
            abort: Setting this event cancels the request
            operation: Label used in the result (defaults to command_name)

        Returns:
            OperationResult; never raises for timeouts, rejections or aborts
        """
        operation = operation or command_name
        self.metrics["requests"] += 1

        if abort is not None and abort.is_set():
            self.metrics["cancelled"] += 1
            return OperationResult.failure(ResultStatus.CANCELLED, operation, "aborted before send")

        loop = asyncio.get_running_loop()
        command_id = self._id_factory()
        pending = PendingCorrelation(
            command_id=command_id,
            operation=operation,
            command_name=command_name,
            response_event=response_event,
            timeout_ms=timeout_ms,
            deadline=loop.time() + timeout_ms / 1000.0,
            future=loop.create_future(),
        )
        # Register before emitting so an immediate response cannot be missed
        self._register(pending)

        abort_task = None
        if abort is not None:
            abort_task = asyncio.ensure_future(abort.wait())
            abort_task.add_done_callback(
                lambda task: None if task.cancelled() else self.cancel(command_id, "aborted")
            )

        try:
            message = dict(payload or {})
            message[REQUEST_ID_FIELD] = command_id
            pending.sent_ts = _now_ms()
            sent = await self._transport.emit(command_name, message)
            if not sent and not pending.future.done():
                self.metrics["send_failures"] += 1
                self._settle(
                    command_id,
                    OperationResult.failure(
                        ResultStatus.PRECONDITION_FAILED,
                        operation,
                        "not connected",
                        request_id=command_id,
                        sent_ts=pending.sent_ts,
                    ),
                )
            return await pending.future
        finally:
            if abort_task is not None and not abort_task.done():
                abort_task.cancel()
            if command_id in self._pending:
                # Caller cancelled after sending; the answer may still arrive
                self._leave_tombstone(pending)
            self._discard(command_id)

    def cancel(self, command_id: str, reason: str = "cancelled", expect_late: bool = True) -> bool:
        """
        Settle a pending request as CANCELLED.

        Args:
            command_id: Request to cancel
            reason: Reason reported in the result
            expect_late: Leave a tombstone so the server's eventual answer is dropped

        Returns:
            False if the request was already settled
        """
        pending = self._pending.get(command_id)
        if pending is None:
            return False
        logger.info(f"Request {pending.operation} ({command_id[:8]}) cancelled: {reason}")
        return self._settle(
            command_id,
            OperationResult.failure(
                ResultStatus.CANCELLED,
                pending.operation,
                reason,
                request_id=command_id,
                sent_ts=pending.sent_ts,
            ),
            expect_late=expect_late,
        )

    def cancel_all(self, reason: str = "cancelled") -> int:
        """
        Cancel every pending request once the connection is gone.

        No answer can arrive on a closed socket, so outstanding tombstones are
        dropped as well. Returns how many requests were settled.
        """
        settled = sum(
            1
            for command_id in list(self._pending)
            if self.cancel(command_id, reason, expect_late=False)
        )
        self._tombstones.clear()
        for response_event in list(self._listeners):
            self._release_listener(response_event)
        return settled

    # ========================================================================
    # CORRELATION TABLE
    # ========================================================================

    def _register(self, pending: PendingCorrelation) -> None:
        self._pending[pending.command_id] = pending
        self._queues.setdefault(pending.response_event, deque()).append(pending.command_id)

        if pending.response_event not in self._listeners:
            event = pending.response_event
            self._listeners[event] = self._transport.on(
                event, lambda payload: self._on_response(event, payload)
            )

        heapq.heappush(self._deadlines, (pending.deadline, pending.command_id))
        self._arm_timer()

    def _on_response(self, response_event: str, payload: Any) -> None:
        request_id = payload.get(REQUEST_ID_FIELD) if isinstance(payload, dict) else None

        if request_id is not None:
            pending = self._pending.get(request_id)
            if pending is None or pending.response_event != response_event:
                if self._consume_tombstone(response_event, request_id):
                    self._drop_late(response_event)
                else:
                    self.metrics["unmatched_responses"] += 1
                    logger.debug(f"Ignoring '{response_event}' for unknown request {request_id}")
                self._release_listener(response_event)
                return
        else:
            if self._consume_tombstone(response_event):
                self._drop_late(response_event)
                self._release_listener(response_event)
                return
            queue = self._queues.get(response_event)
            if not queue:
                self.metrics["unmatched_responses"] += 1
                logger.debug(f"Ignoring '{response_event}' with no pending request")
                self._release_listener(response_event)
                return
            pending = self._pending[queue[0]]

        result = OperationResult.from_response(
            pending.operation, payload, request_id=pending.command_id, sent_ts=pending.sent_ts
        )
        if result.ok:
            self.metrics["succeeded"] += 1
        else:
            self.metrics["rejected"] += 1
            logger.info(f"{pending.operation} rejected by server: {result.reason}")
        self._settle(pending.command_id, result)

    def _settle(self, command_id: str, result: OperationResult, expect_late: bool = False) -> bool:
        pending = self._pending.get(command_id)
        if pending is None:
            return False
        if expect_late:
            self._leave_tombstone(pending)
        self._discard(command_id)

        if result.status is ResultStatus.CANCELLED:
            self.metrics["cancelled"] += 1

        if not pending.future.done():
            pending.future.set_result(result)
        return True

    def _discard(self, command_id: str) -> PendingCorrelation | None:
        """Remove an entry and any listener/timer it alone was keeping alive."""
        pending = self._pending.pop(command_id, None)
        if pending is None:
            return None

        queue = self._queues.get(pending.response_event)
        if queue is not None:
            try:
                queue.remove(command_id)
            except ValueError:
                pass
            if not queue:
                del self._queues[pending.response_event]
        self._release_listener(pending.response_event)

        if not self._pending:
            self._deadlines.clear()
            self._cancel_timer()
        return pending

    def _release_listener(self, response_event: str) -> None:
        """Unsubscribe once nothing is waiting on the event and no tombstone is live."""
        self._expire_tombstones(response_event)
        if self._queues.get(response_event) or self._tombstones.get(response_event):
            return
        unsubscribe = self._listeners.pop(response_event, None)
        if unsubscribe is not None:
            unsubscribe()

    # ========================================================================
    # LATE RESPONSES
    # ========================================================================

    def _leave_tombstone(self, pending: PendingCorrelation) -> None:
        expires = asyncio.get_running_loop().time() + pending.timeout_ms / 1000.0
        self._tombstones.setdefault(pending.response_event, deque()).append(
            (expires, pending.command_id)
        )

    def _expire_tombstones(self, response_event: str) -> None:
        tombstones = self._tombstones.get(response_event)
        if tombstones is None:
            return
        now = asyncio.get_running_loop().time()
        while tombstones and tombstones[0][0] <= now:
            tombstones.popleft()
        if not tombstones:
            del self._tombstones[response_event]

    def _consume_tombstone(self, response_event: str, command_id: str | None = None) -> bool:
        """Remove the tombstone for command_id, or the oldest one when None."""
        self._expire_tombstones(response_event)
        tombstones = self._tombstones.get(response_event)
        if not tombstones:
            return False

        if command_id is None:
            tombstones.popleft()
        else:
            match = next((t for t in tombstones if t[1] == command_id), None)
            if match is None:
                return False
            tombstones.remove(match)

        if not tombstones:
            del self._tombstones[response_event]
        return True

    def _drop_late(self, response_event: str) -> None:
        self.metrics["late_responses"] += 1
        logger.info(f"Dropping late '{response_event}' for a request that already ended")

    # ========================================================================
    # TIMER WHEEL
    # ========================================================================

    def _arm_timer(self) -> None:
        while self._deadlines and self._deadlines[0][1] not in self._pending:
            heapq.heappop(self._deadlines)

        if not self._deadlines:
            self._cancel_timer()
            return

        deadline = self._deadlines[0][0]
        if self._timer is not None and self._timer_deadline == deadline:
            return

        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_at(deadline, self._on_timer)
        self._timer_deadline = deadline

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        self._timer = None
        self._timer_deadline = None

    def _on_timer(self) -> None:
        self._timer = None
        self._timer_deadline = None
        # call_at may fire up to one clock tick early
        now = asyncio.get_running_loop().time() + 0.001

        while self._deadlines and self._deadlines[0][0] <= now:
            _, command_id = heapq.heappop(self._deadlines)
            pending = self._pending.get(command_id)
            if pending is None:
                continue
            self.metrics["timeouts"] += 1
            logger.warning(
                f"{pending.operation} ({command_id[:8]}) timed out after {pending.timeout_ms}ms "
                f"waiting for '{pending.response_event}'"
            )
            self._settle(
                command_id,
                OperationResult.failure(
                    ResultStatus.TIMEOUT,
                    pending.operation,
                    f"no '{pending.response_event}' within {pending.timeout_ms}ms",
                    request_id=command_id,
                    sent_ts=pending.sent_ts,
                ),
                expect_late=True,
            )

        self._arm_timer()

    def get_stats(self) -> dict[str, Any]:
        return {
            **self.metrics,
            "pending": len(self._pending),
            "listening_for": sorted(self._queues),
            "awaiting_late": sum(len(t) for t in self._tombstones.values()),
        }
