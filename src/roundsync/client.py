"""
RoundSyncClient - facade over the round sync engine

Wires the connection manager, clock synchronizer, reconciler, history buffer
and request gateway together, and exposes the only mutating entry points:
place_wager(), cash_out() and query_balance().

Usage:
    client = RoundSyncClient(ClientConfig(server_url="https://game.example.com",
                                          wallet_address="..."))
    client.subscribe(lambda snapshot: print(snapshot))
    await client.connect()
    if client.can_bet:
        result = await client.place_wager("0.05")
"""

import asyncio
import logging
from collections.abc import Callable
from decimal import Decimal, InvalidOperation
from typing import Any

from roundsync.config import ClientConfig
from roundsync.core.betting_window import can_bet_now, remaining_countdown_ms
from roundsync.core.clock_sync import ClockSynchronizer
from roundsync.core.reconciler import RoundReconciler
from roundsync.core.round_history import RoundHistoryBuffer
from roundsync.models.enums import ResultStatus, RoundStatus
from roundsync.models.events import is_round_event
from roundsync.models.results import OperationResult
from roundsync.models.round_snapshot import HistoryEntry, RoundSnapshot
from roundsync.sources.connection_manager import (
    ANY_EVENT,
    CONNECT_EVENT,
    DISCONNECT_EVENT,
    ConnectionManager,
)
from roundsync.sources.connection_state import ConnectionState
from roundsync.sources.request_gateway import CorrelatedRequestGateway

logger = logging.getLogger(__name__)

# Outbound command -> correlated response
RESYNC_COMMAND, RESYNC_RESPONSE = "requestGameSync", "gameSync"
WAGER_COMMAND, WAGER_RESPONSE = "placeBet", "betResult"
CASH_OUT_COMMAND, CASH_OUT_RESPONSE = "cashOut", "cashOutResult"
BALANCE_COMMAND, BALANCE_RESPONSE = "getCustodialBalance", "custodialBalanceResponse"


class RoundSyncClient:
    """Client-side view of the current round plus correlated round actions."""

    def __init__(
        self,
        config: ClientConfig | None = None,
        connection: ConnectionManager | None = None,
        clock: ClockSynchronizer | None = None,
    ):
        """
        Args:
            config: Client settings (ClientConfig() reads the environment)
            connection: Transport to use (a ConnectionManager for config.server_url if None)
            clock: Clock synchronizer (wall clock if None)

        Raises:
            ConfigError: config fails validation
        """
        self.config = (config or ClientConfig()).validate()
        self.clock = clock or ClockSynchronizer()
        self._history = RoundHistoryBuffer(self.config.history_size)
        self.connection = connection or ConnectionManager(
            self.config.server_url,
            reconnect_delay=self.config.reconnect_delay_sec,
            max_reconnect_delay=self.config.max_reconnect_delay_sec,
            reconnect_multiplier=self.config.reconnect_multiplier,
            downgrade_after=self.config.downgrade_after,
            max_connect_attempts=self.config.max_connect_attempts,
        )
        self.reconciler = RoundReconciler(
            self.clock,
            self._history,
            request_resync=self.request_resync,
            lockout_ms=self.config.bet_lockout_ms,
        )
        self.gateway = CorrelatedRequestGateway(self.connection)

        self._resync_task: asyncio.Task | None = None
        self._heartbeat_task: asyncio.Task | None = None

        self.connection.on(ANY_EVENT, self._on_event)
        self.connection.on(CONNECT_EVENT, self._on_connect)
        self.connection.on(DISCONNECT_EVENT, self._on_disconnect)

    # ========================================================================
    # READ VIEW
    # ========================================================================

    @property
    def snapshot(self) -> RoundSnapshot | None:
        """Current round, or None between a crash and the next full-state event."""
        return self.reconciler.snapshot

    @property
    def connection_state(self) -> ConnectionState:
        return self.connection.state

    @property
    def is_connected(self) -> bool:
        return self.connection.is_connected

    @property
    def can_bet(self) -> bool:
        """Re-derived on every read from the live countdown and connection."""
        return can_bet_now(
            self.reconciler.snapshot,
            self.clock,
            self.connection.is_connected,
            self.config.bet_lockout_ms,
        )

    @property
    def history(self) -> list[HistoryEntry]:
        """Completed rounds, most recent last."""
        return self._history.all()

    def remaining_countdown_ms(self) -> int:
        return remaining_countdown_ms(self.reconciler.snapshot, self.clock)

    def subscribe(self, callback: Callable[[RoundSnapshot | None], None]) -> Callable[[], None]:
        """Observe snapshot changes; returns an unsubscribe function."""
        return self.reconciler.subscribe(callback)

    def subscribe_crashes(self, callback: Callable[[HistoryEntry], None]) -> Callable[[], None]:
        return self.reconciler.subscribe_crashes(callback)

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    async def connect(self) -> bool:
        return await self.connection.connect()

    async def close(self) -> None:
        """Stop background tasks, cancel pending requests, disconnect."""
        self._stop_heartbeat()
        self.gateway.cancel_all("client closed")
        if self._resync_task is not None and not self._resync_task.done():
            self._resync_task.cancel()
        self._resync_task = None
        await self.connection.disconnect()

    async def __aenter__(self) -> "RoundSyncClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _on_event(self, event_name: str, payload: Any) -> None:
        if is_round_event(event_name):
            # Reconciler syncs the clock from the decoded serverTime
            self.reconciler.apply_raw(event_name, payload)
        else:
            self.clock.sync_from_payload(payload)

    def _on_connect(self, state: ConnectionState) -> None:
        # A fresh connection is never assumed to be caught up
        self.request_resync()
        self._start_heartbeat()

    def _on_disconnect(self, reason: str) -> None:
        self._stop_heartbeat()
        cancelled = self.gateway.cancel_all(f"connection lost ({reason})")
        if cancelled:
            logger.warning(f"Cancelled {cancelled} pending request(s) after disconnect")

    # ========================================================================
    # RESYNC + HEARTBEAT
    # ========================================================================

    def request_resync(self) -> bool:
        """
        Schedule a full resync unless one is already in flight.

        Returns:
            True if a new resync was started
        """
        if not self.connection.is_connected:
            return False
        if self._resync_task is not None and not self._resync_task.done():
            logger.debug("Resync already in flight, coalescing")
            return False
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, resync skipped")
            return False
        self._resync_task = loop.create_task(self._resync())
        return True

    async def resync(self) -> OperationResult:
        """Request a full resync and wait for the gameSync answer."""
        if self._resync_task is None or self._resync_task.done():
            self._resync_task = asyncio.get_running_loop().create_task(self._resync())
        return await asyncio.shield(self._resync_task)

    async def _resync(self) -> OperationResult:
        logger.debug("Requesting full resync")
        result = await self.gateway.request(
            RESYNC_COMMAND,
            {},
            RESYNC_RESPONSE,
            self.config.resync_timeout_ms,
            operation="resync",
        )
        if not result.ok:
            logger.warning(f"Resync failed: {result.status.value} ({result.reason})")
        return result

    def _start_heartbeat(self) -> None:
        if self.config.heartbeat_sec <= 0:
            return
        if self._heartbeat_task is not None and not self._heartbeat_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, heartbeat not started")
            return
        self._heartbeat_task = loop.create_task(self._heartbeat_loop())

    def _stop_heartbeat(self) -> None:
        task = self._heartbeat_task
        self._heartbeat_task = None
        if task is not None and not task.done():
            task.cancel()

    async def _heartbeat_loop(self) -> None:
        interval = self.config.heartbeat_sec
        while self.connection.is_connected:
            await asyncio.sleep(interval)
            if self.connection.is_connected:
                self.request_resync()

    # ========================================================================
    # CORRELATED OPERATIONS
    # ========================================================================

    async def place_wager(
        self, amount: Decimal | float | str, abort: asyncio.Event | None = None
    ) -> OperationResult:
        """
        Place a wager on the current round.

        Rejected with PRECONDITION_FAILED, before anything is sent, when
        disconnected, outside the betting window, or for a non-positive amount.
        """
        operation = "place_wager"
        try:
            bet_amount = Decimal(str(amount))
        except InvalidOperation:
            return self._precondition_failed(operation, f"invalid amount {amount!r}")

        if not self.connection.is_connected:
            return self._precondition_failed(operation, "not connected")
        if not bet_amount.is_finite() or bet_amount <= 0:
            return self._precondition_failed(operation, "amount must be positive")
        if not self.config.wallet_address:
            return self._precondition_failed(operation, "no wallet address")
        if not self.can_bet:
            return self._precondition_failed(operation, "betting window closed")

        issued_for = self.reconciler.snapshot
        payload = {
            "walletAddress": self.config.wallet_address,
            "betAmount": float(bet_amount),
            "userId": self.config.user_id,
        }
        result = await self.gateway.request(
            WAGER_COMMAND,
            payload,
            WAGER_RESPONSE,
            self.config.wager_timeout_ms,
            abort=abort,
            operation=operation,
        )
        self._merge_round_totals(result, issued_for)
        return result

    async def cash_out(self, abort: asyncio.Event | None = None) -> OperationResult:
        """Cash out of the current ACTIVE round."""
        operation = "cash_out"
        snapshot = self.reconciler.snapshot

        if not self.connection.is_connected:
            return self._precondition_failed(operation, "not connected")
        if not self.config.wallet_address:
            return self._precondition_failed(operation, "no wallet address")
        if snapshot is None or snapshot.status is not RoundStatus.ACTIVE:
            return self._precondition_failed(operation, "no active round")

        result = await self.gateway.request(
            CASH_OUT_COMMAND,
            {"walletAddress": self.config.wallet_address},
            CASH_OUT_RESPONSE,
            self.config.wager_timeout_ms,
            abort=abort,
            operation=operation,
        )
        self._merge_round_totals(result, snapshot)
        return result

    async def query_balance(self, abort: asyncio.Event | None = None) -> OperationResult:
        operation = "query_balance"
        if not self.connection.is_connected:
            return self._precondition_failed(operation, "not connected")

        return await self.gateway.request(
            BALANCE_COMMAND,
            {"userId": self.config.user_id, "walletAddress": self.config.wallet_address},
            BALANCE_RESPONSE,
            self.config.balance_timeout_ms,
            abort=abort,
            operation=operation,
        )

    def _merge_round_totals(self, result: OperationResult, issued_for: RoundSnapshot | None) -> None:
        """Apply totals from a successful response only to the round it was issued in."""
        if not result.ok or issued_for is None:
            return
        game_state = result.data.get("gameState")
        if isinstance(game_state, dict):
            self.reconciler.apply_wager_result(
                issued_for.round_number, issued_for.round_id, game_state
            )

    def _precondition_failed(self, operation: str, reason: str) -> OperationResult:
        logger.info(f"{operation} refused: {reason}")
        return OperationResult.failure(ResultStatus.PRECONDITION_FAILED, operation, reason)

    def get_stats(self) -> dict[str, Any]:
        return {
            "connection": self.connection.get_stats(),
            "clock": self.clock.get_stats(),
            "reconciler": self.reconciler.get_stats(),
            "gateway": self.gateway.get_stats(),
        }
