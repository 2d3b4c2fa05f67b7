"""
Round Reconciler - single owner of the canonical round snapshot

Acceptance rule:
- Full-state events (gameState, gameWaiting, gameStarted, gameSync) are always
  accepted. gameWaiting and gameStarted open a new phase and replace the
  canonical snapshot wholesale. gameState and gameSync replace it only when
  they describe a different round; for the canonical round they merge the
  fields the payload carries and keep the rest.
  gameHistory replaces the history buffer.
- Partial updates (ticks, wagers, liquidity, cash-outs, gameCrashed) apply only
  when their identifiers match the canonical round. Anything else is dropped
  and exactly one resync is requested.

Merge discipline: a partial update builds a new frozen snapshot from the
current one plus the fields present in the payload, then swaps the reference
in one assignment. Observers never see a half-applied update.

Crash: the matching snapshot is marked CRASHED, copied into the history
buffer, and the canonical reference becomes None ("no current round") until
the next full-state event.
"""

import logging
from collections.abc import Callable
from dataclasses import replace
from typing import Any

from pydantic import BaseModel, ValidationError

from roundsync.core.betting_window import BETTING_LOCKOUT_MS, derive_can_bet
from roundsync.core.clock_sync import ClockSynchronizer
from roundsync.core.round_history import RoundHistoryBuffer
from roundsync.models.enums import RoundStatus
from roundsync.models.events import (
    CountdownTick,
    FullRoundState,
    LiquidityUpdate,
    MalformedEventError,
    MultiplierTick,
    PartialUpdateEvent,
    PlayerCashedOut,
    ResyncResponse,
    RoundCrashed,
    RoundHistoryBatch,
    RoundStarted,
    RoundWaiting,
    ServerSync,
    WagerAccepted,
    WaitingRoundUpdate,
    decode_event,
)
from roundsync.models.round_snapshot import HistoryEntry, LiquiditySnapshot, RoundSnapshot

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[RoundSnapshot | None], None]
CrashCallback = Callable[[HistoryEntry], None]


class RoundReconciler:
    """
    Applies every inbound round event through one merge discipline.

    Usage:
        reconciler = RoundReconciler(clock, history, request_resync=client.request_resync)
        reconciler.subscribe(lambda snap: print(snap))
        reconciler.apply_raw("multiplierUpdate", {"gameNumber": 42, "multiplier": 1.37})
    """

    def __init__(
        self,
        clock: ClockSynchronizer,
        history: RoundHistoryBuffer | None = None,
        request_resync: Callable[[], None] | None = None,
        lockout_ms: int = BETTING_LOCKOUT_MS,
    ):
        """
        Args:
            clock: Clock synchronizer refreshed from each event's serverTime
            history: Buffer receiving crashed rounds (a 50-entry buffer if None)
            request_resync: Called once per dropped mismatched event
            lockout_ms: Pre-round betting lockout threshold
        """
        self._clock = clock
        self.history = history if history is not None else RoundHistoryBuffer()
        self._request_resync = request_resync
        self.lockout_ms = lockout_ms

        self._snapshot: RoundSnapshot | None = None
        self._subscribers: list[SnapshotCallback] = []
        self._crash_subscribers: list[CrashCallback] = []

        self._handlers: dict[type, Callable[[Any], bool]] = {
            FullRoundState: self._apply_full_state,
            ResyncResponse: self._apply_full_state,
            RoundWaiting: self._apply_round_waiting,
            RoundStarted: self._apply_round_started,
            RoundHistoryBatch: self._apply_history_batch,
            RoundCrashed: self._apply_crash,
            MultiplierTick: self._apply_partial,
            CountdownTick: self._apply_partial,
            WaitingRoundUpdate: self._apply_partial,
            ServerSync: self._apply_partial,
            WagerAccepted: self._apply_partial,
            LiquidityUpdate: self._apply_partial,
            PlayerCashedOut: self._apply_partial,
        }

        self.metrics = {
            "applied": 0,
            "dropped_mismatch": 0,
            "dropped_malformed": 0,
            "resyncs_requested": 0,
            "rounds_completed": 0,
        }

    # ========================================================================
    # READ VIEW
    # ========================================================================

    @property
    def snapshot(self) -> RoundSnapshot | None:
        """Current canonical snapshot, or None when there is no current round."""
        return self._snapshot

    def subscribe(self, callback: SnapshotCallback) -> Callable[[], None]:
        """
        Register a snapshot observer.

        Returns:
            Unsubscribe function
        """
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def subscribe_crashes(self, callback: CrashCallback) -> Callable[[], None]:
        """Register an observer for completed rounds."""
        self._crash_subscribers.append(callback)

        def unsubscribe():
            if callback in self._crash_subscribers:
                self._crash_subscribers.remove(callback)

        return unsubscribe

    # ========================================================================
    # ENTRY POINTS
    # ========================================================================

    def apply_raw(self, event_name: str, payload: Any) -> bool:
        """
        Decode and apply a raw Socket.IO event.

        Returns:
            True if the canonical state (snapshot or history) changed
        """
        try:
            event = decode_event(event_name, payload)
        except MalformedEventError as e:
            self.metrics["dropped_malformed"] += 1
            logger.warning(f"Dropping malformed event: {e}")
            return False

        if event is None:
            logger.debug(f"Ignoring non-round event '{event_name}'")
            return False

        return self.apply(event)

    def apply(self, event: BaseModel) -> bool:
        """Apply an already-decoded event."""
        handler = self._handlers.get(type(event))
        if handler is None:
            logger.debug(f"No reconciliation handler for {type(event).__name__}")
            return False

        self._clock.sync(getattr(event, "serverTime", None))

        changed = handler(event)
        if changed:
            self.metrics["applied"] += 1
        return changed

    def apply_wager_result(
        self, round_number: int | None, round_id: str | None, game_state: dict[str, Any] | None
    ) -> bool:
        """
        Merge round totals reported in a wager/cash-out response.

        Applied only while the canonical round is still the one that was
        current when the request was issued; otherwise ignored. The caller's
        result is unaffected either way.
        """
        if not game_state:
            return False

        current = self._snapshot
        if current is None or not current.matches(round_number, round_id):
            logger.info(
                f"Ignoring wager response totals for round {round_number}: "
                f"canonical round is {current.round_number if current else None}"
            )
            return False

        try:
            update = WaitingRoundUpdate.model_validate(
                {
                    key: value
                    for key, value in game_state.items()
                    if key in ("totalBets", "totalPlayers", "countdown")
                }
                | {"gameNumber": current.round_number, "gameId": current.round_id}
            )
        except ValidationError as e:
            logger.warning(f"Dropping malformed wager response totals: {e}")
            return False

        return self._apply_partial(update)

    def clear(self) -> None:
        """Drop the canonical snapshot (e.g. on session teardown)."""
        self._commit(None)

    # ========================================================================
    # FULL-STATE EVENTS
    # ========================================================================

    def _apply_full_state(self, event: FullRoundState) -> bool:
        current = self._snapshot
        if current is not None and current.matches(event.gameNumber, event.gameId):
            snapshot = self._merge_full_state(current, event)
        else:
            snapshot = self._build_full_state(event)

        if snapshot.status is RoundStatus.CRASHED:
            # Joined after the crash: record it, there is no live round
            if not self.history.contains_round(snapshot.round_number):
                self._record_crash(snapshot, event.serverTime)
            self._commit(None)
            return True

        self._replace(snapshot, event.EVENT_NAME)
        return True

    def _build_full_state(self, event: FullRoundState) -> RoundSnapshot:
        status = RoundStatus.parse(event.status, default=RoundStatus.WAITING)
        countdown_ms = event.countdown or 0
        return RoundSnapshot(
            round_id=event.gameId or "",
            round_number=event.gameNumber,
            multiplier=event.multiplier,
            status=status,
            total_players=event.totalPlayers,
            liquidity=LiquiditySnapshot(
                real=event.totalBets,
                synthetic=event.boostedTotalBets,
                synthetic_players=event.boostedPlayerCount,
            ),
            countdown_ms=countdown_ms,
            countdown_deadline=self._deadline(countdown_ms) if status is RoundStatus.WAITING else None,
            can_bet=derive_can_bet(status, countdown_ms, self.lockout_ms),
            server_timestamp=event.serverTime,
            started_at=event.startTime,
        )

    def _merge_full_state(self, current: RoundSnapshot, event: FullRoundState) -> RoundSnapshot:
        """Same round: overlay only the fields present in the payload."""
        status = current.status
        if event.supplied("status"):
            status = RoundStatus.parse(event.status, default=current.status)

        changes: dict[str, Any] = {"status": status}
        liquidity_changes: dict[str, Any] = {}

        if event.supplied("gameId"):
            changes["round_id"] = event.gameId

        if event.supplied("multiplier"):
            changes["multiplier"] = event.multiplier

        if event.supplied("totalPlayers"):
            changes["total_players"] = event.totalPlayers

        if event.supplied("startTime"):
            changes["started_at"] = event.startTime

        if event.supplied("serverTime"):
            changes["server_timestamp"] = event.serverTime

        if event.supplied("totalBets"):
            liquidity_changes["real"] = event.totalBets

        if event.supplied("boostedTotalBets"):
            liquidity_changes["synthetic"] = event.boostedTotalBets

        if event.supplied("boostedPlayerCount"):
            liquidity_changes["synthetic_players"] = event.boostedPlayerCount

        if liquidity_changes:
            changes["liquidity"] = replace(current.liquidity, **liquidity_changes)

        countdown_ms = current.countdown_ms
        if event.supplied("countdown"):
            countdown_ms = event.countdown
            changes["countdown_ms"] = countdown_ms
            changes["countdown_deadline"] = (
                self._deadline(countdown_ms) if status is RoundStatus.WAITING else None
            )
        elif status is not RoundStatus.WAITING:
            changes["countdown_deadline"] = None

        changes["can_bet"] = derive_can_bet(status, countdown_ms, self.lockout_ms)
        return replace(current, **changes)

    def _apply_round_waiting(self, event: RoundWaiting) -> bool:
        snapshot = RoundSnapshot(
            round_id=event.gameId or "",
            round_number=event.gameNumber,
            multiplier=1.0,
            status=RoundStatus.WAITING,
            countdown_ms=event.countdown,
            countdown_deadline=self._deadline(event.countdown),
            can_bet=derive_can_bet(RoundStatus.WAITING, event.countdown, self.lockout_ms),
            server_timestamp=event.serverTime,
        )
        self._replace(snapshot, event.EVENT_NAME)
        return True

    def _apply_round_started(self, event: RoundStarted) -> bool:
        snapshot = RoundSnapshot(
            round_id=event.gameId or "",
            round_number=event.gameNumber,
            multiplier=1.0,
            status=RoundStatus.ACTIVE,
            total_players=event.totalPlayers,
            liquidity=LiquiditySnapshot(),
            countdown_ms=0,
            can_bet=derive_can_bet(RoundStatus.ACTIVE, 0, self.lockout_ms),
            server_timestamp=event.serverTime,
            started_at=event.startTime,
        )
        self._replace(snapshot, event.EVENT_NAME)
        return True

    def _apply_history_batch(self, event: RoundHistoryBatch) -> bool:
        entries = [
            HistoryEntry(
                round_id=record.id,
                round_number=record.gameNumber,
                crash_multiplier=record.final_multiplier,
                total_wagered=record.totalBets,
                total_players=record.totalPlayers,
                liquidity=LiquiditySnapshot(real=record.totalBets),
                started_at=record.startTime,
                crashed_at=record.endTime,
            )
            for record in event.games
        ]
        self.history.replace_all(entries)
        logger.info(f"Round history rehydrated ({len(entries)} rounds)")
        return True

    # ========================================================================
    # ROUND-TERMINAL EVENT
    # ========================================================================

    def _apply_crash(self, event: RoundCrashed) -> bool:
        current = self._snapshot
        if current is None or not current.matches(event.gameNumber, event.gameId):
            return self._drop_mismatched(event, current)

        multiplier = current.multiplier
        if event.crashMultiplier is not None:
            multiplier = event.crashMultiplier
        elif event.finalMultiplier is not None:
            multiplier = event.finalMultiplier

        liquidity = current.liquidity
        if event.totalBets is not None:
            liquidity = replace(liquidity, real=event.totalBets)

        crashed = replace(
            current,
            status=RoundStatus.CRASHED,
            multiplier=multiplier,
            liquidity=liquidity,
            total_players=event.totalPlayers if event.totalPlayers is not None else current.total_players,
            countdown_ms=0,
            countdown_deadline=None,
            can_bet=False,
            server_timestamp=event.serverTime if event.serverTime is not None else current.server_timestamp,
        )

        self._record_crash(crashed, event.serverTime)
        logger.info(f"Round {crashed.round_number} crashed at {crashed.multiplier:.2f}x")
        self._commit(None)
        return True

    def _record_crash(self, crashed: RoundSnapshot, crashed_at: int | None) -> None:
        entry = HistoryEntry.from_snapshot(crashed, crashed_at=crashed_at)
        self.history.push(entry)
        self.metrics["rounds_completed"] += 1

        for callback in list(self._crash_subscribers):
            try:
                callback(entry)
            except Exception as e:
                logger.error(f"Error in crash subscriber: {e}", exc_info=True)

    # ========================================================================
    # PARTIAL UPDATES
    # ========================================================================

    def _apply_partial(self, event: PartialUpdateEvent) -> bool:
        current = self._snapshot
        if current is None or not current.matches(event.gameNumber, event.gameId):
            return self._drop_mismatched(event, current)

        changes: dict[str, Any] = {}
        liquidity_changes: dict[str, Any] = {}

        if event.supplied("multiplier"):
            changes["multiplier"] = event.multiplier

        if event.supplied("countdown"):
            changes["countdown_ms"] = event.countdown
            changes["countdown_deadline"] = self._deadline(event.countdown)

        if event.supplied("totalBets"):
            liquidity_changes["real"] = event.totalBets

        if event.supplied("totalPlayers"):
            changes["total_players"] = event.totalPlayers

        if event.supplied("realLiquidity"):
            liquidity_changes["real"] = event.realLiquidity

        if event.supplied("boostedLiquidity"):
            liquidity_changes["synthetic"] = event.boostedLiquidity

        if event.supplied("boostedPlayerCount"):
            liquidity_changes["synthetic_players"] = event.boostedPlayerCount

        if liquidity_changes:
            changes["liquidity"] = replace(current.liquidity, **liquidity_changes)

        if event.serverTime is not None:
            changes["server_timestamp"] = event.serverTime

        if not changes:
            return False

        countdown_ms = changes.get("countdown_ms", current.countdown_ms)
        changes["can_bet"] = derive_can_bet(current.status, countdown_ms, self.lockout_ms)

        self._commit(replace(current, **changes))
        return True

    # ========================================================================
    # INTERNALS
    # ========================================================================

    def _deadline(self, countdown_ms: int | None) -> float | None:
        if countdown_ms is None:
            return None
        return self._clock.now() + countdown_ms

    def _drop_mismatched(self, event: BaseModel, current: RoundSnapshot | None) -> bool:
        self.metrics["dropped_mismatch"] += 1
        logger.debug(
            f"Dropping {type(event).__name__} for round "
            f"{getattr(event, 'gameNumber', None)}/{getattr(event, 'gameId', None)}; "
            f"canonical is {current.round_number if current else 'none'}"
        )
        self._trigger_resync()
        return False

    def _trigger_resync(self) -> None:
        self.metrics["resyncs_requested"] += 1
        if self._request_resync is None:
            return
        try:
            self._request_resync()
        except Exception as e:
            logger.error(f"Error requesting resync: {e}", exc_info=True)

    def _replace(self, snapshot: RoundSnapshot, source: str) -> None:
        previous = self._snapshot
        if previous is None or previous.round_number != snapshot.round_number:
            logger.info(
                f"Round {snapshot.round_number} ({snapshot.status.value}) adopted from {source}"
            )
        self._commit(snapshot)

    def _commit(self, snapshot: RoundSnapshot | None) -> None:
        self._snapshot = snapshot

        for callback in list(self._subscribers):
            try:
                callback(snapshot)
            except Exception as e:
                logger.error(f"Error in snapshot subscriber: {e}", exc_info=True)

    def get_stats(self) -> dict[str, Any]:
        current = self._snapshot
        return {
            **self.metrics,
            "current_round": current.round_number if current else None,
            "current_status": current.status.value if current else None,
            "history_size": len(self.history),
        }
