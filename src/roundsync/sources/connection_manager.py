"""
ConnectionManager - Socket.IO transport lifecycle for the round feed

Owns the socketio.AsyncClient, the connection state machine and the transport
fallback policy. Built-in Socket.IO reconnection is disabled; reconnects run
through our own backoff loop so every attempt is visible in ConnectionState
and can downgrade the transport to long-polling.

Failure semantics: nothing here raises to the caller. connect() returns a
bool, emit() returns a bool, and errors land in ConnectionState.last_error.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from enum import Enum
from typing import Any

import socketio

from roundsync.models.enums import TransportMode
from roundsync.sources.connection_state import (
    ConnectionState,
    ConnectionStateMachine,
    ConnectionStatus,
)
from roundsync.sources.transport_fallback import TransportFallbackPolicy

logger = logging.getLogger(__name__)

# Pseudo-events dispatched to handlers registered with on()
CONNECT_EVENT = "connect"
DISCONNECT_EVENT = "disconnect"
ANY_EVENT = "*"

SERVER_INITIATED_REASONS = frozenset({"io server disconnect", "server disconnect"})
CLIENT_INITIATED_REASONS = frozenset({"io client disconnect", "client disconnect"})


class DisconnectKind(Enum):
    """How a disconnect is handled."""

    SERVER = "server"  # surfaced, not retried
    CLIENT = "client"  # final
    TRANSIENT = "transient"  # backoff reconnect


def classify_disconnect(reason: Any) -> DisconnectKind:
    """Map a Socket.IO disconnect reason to how we react to it."""
    reason_str = str(reason).strip().lower() if reason is not None else ""
    if reason_str in SERVER_INITIATED_REASONS:
        return DisconnectKind.SERVER
    if reason_str in CLIENT_INITIATED_REASONS:
        return DisconnectKind.CLIENT
    return DisconnectKind.TRANSIENT


class ConnectionManager:
    """
    Connects to the round server and delivers its events.

    Usage:
        manager = ConnectionManager("https://game.example.com")
        manager.on("multiplierUpdate", lambda payload: print(payload))
        manager.on("*", lambda name, payload: print(name))
        await manager.connect()
        await manager.emit("requestGameSync", {})
    """

    def __init__(
        self,
        url: str,
        reconnect_delay: float = 1.0,
        max_reconnect_delay: float = 30.0,
        reconnect_multiplier: float = 1.5,
        downgrade_after: int = 3,
        max_connect_attempts: int | None = None,
        connect_timeout: float = 20.0,
        headers: dict[str, str] | None = None,
        auth: dict[str, Any] | None = None,
    ):
        """
        Args:
            url: Socket.IO server URL
            reconnect_delay: Initial reconnect delay in seconds
            max_reconnect_delay: Maximum reconnect delay in seconds
            reconnect_multiplier: Backoff multiplier for reconnection
            downgrade_after: Consecutive failures before falling back to polling
            max_connect_attempts: Give up after this many attempts (None = never)
            connect_timeout: Seconds to wait for the namespace handshake
            headers: Extra HTTP headers for the handshake
            auth: Socket.IO auth payload
        """
        self.url = url
        self.max_connect_attempts = max_connect_attempts
        self.connect_timeout = connect_timeout
        self.headers = headers or {}
        self.auth = auth

        self.state_machine = ConnectionStateMachine()
        self.fallback = TransportFallbackPolicy(
            downgrade_after=downgrade_after,
            reconnect_delay=reconnect_delay,
            max_reconnect_delay=max_reconnect_delay,
            reconnect_multiplier=reconnect_multiplier,
        )
        self.fallback.on_mode_change = self._on_mode_change

        self._sio: socketio.AsyncClient | None = None
        self._handlers: dict[str, list[Callable]] = {}
        self._intentional_close = False
        self._closing = asyncio.Event()
        self._reconnect_task: asyncio.Task | None = None

        self.metrics = {
            "messages_received": 0,
            "messages_emitted": 0,
            "connect_attempts": 0,
            "disconnects": 0,
            "errors": 0,
        }

    # ========================================================================
    # READ VIEW
    # ========================================================================

    @property
    def state(self) -> ConnectionState:
        return self.state_machine.state

    @property
    def is_connected(self) -> bool:
        return self.state_machine.state.is_connected

    # ========================================================================
    # HANDLER REGISTRATION
    # ========================================================================

    def on(self, event_name: str, handler: Callable) -> Callable[[], None]:
        """
        Register an event handler.

        Handlers for a server event receive the payload. "*" handlers receive
        (event_name, payload) for every server event. "connect" handlers receive
        the ConnectionState, "disconnect" handlers the reason string.

        Returns:
            Unsubscribe function
        """
        self._handlers.setdefault(event_name, []).append(handler)

        def unsubscribe():
            handlers = self._handlers.get(event_name)
            if handlers and handler in handlers:
                handlers.remove(handler)
                if not handlers:
                    del self._handlers[event_name]

        return unsubscribe

    def on_state_change(
        self, callback: Callable[[ConnectionState, ConnectionState], None]
    ) -> Callable[[], None]:
        return self.state_machine.on_change(callback)

    def _dispatch(self, event_name: str, *args: Any) -> None:
        for handler in list(self._handlers.get(event_name, ())):
            try:
                handler(*args)
            except Exception as e:
                self.metrics["errors"] += 1
                logger.error(
                    f"Error in handler for '{event_name}' "
                    f"({getattr(handler, '__name__', handler)}): {e}",
                    exc_info=True,
                )

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    async def connect(self) -> bool:
        """
        Connect, retrying with backoff until connected, attempts are
        exhausted, or disconnect() is called.

        Returns:
            True once connected
        """
        if self.is_connected:
            return True

        if self._reconnect_task is not None and not self._reconnect_task.done():
            return await asyncio.shield(self._reconnect_task)

        self._intentional_close = False
        self._closing.clear()
        self.fallback.reset()
        return await self._connect_with_retry()

    async def disconnect(self) -> None:
        """Close the connection and stop reconnecting."""
        self._intentional_close = True
        self._closing.set()

        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        sio = self._sio
        self._sio = None
        if sio is not None:
            try:
                await sio.disconnect()
            except Exception as e:
                logger.debug(f"Error closing Socket.IO client: {e}")

        if self.state.status is not ConnectionStatus.DISCONNECTED:
            reason = "client disconnect"
            self.state_machine.transition(ConnectionStatus.DISCONNECTED, disconnect_reason=reason)
            self.metrics["disconnects"] += 1
            logger.info("Disconnected (client initiated)")
            self._dispatch(DISCONNECT_EVENT, reason)

    async def emit(self, event_name: str, payload: Any = None) -> bool:
        """
        Send an event to the server.

        Returns:
            True if the event was handed to the transport
        """
        sio = self._sio
        if sio is None or not self.is_connected:
            logger.debug(f"Not connected, cannot emit '{event_name}'")
            return False

        try:
            await sio.emit(event_name, payload)
        except Exception as e:
            self.metrics["errors"] += 1
            self.state_machine.update(last_error=str(e))
            logger.warning(f"Failed to emit '{event_name}': {e}")
            return False

        self.metrics["messages_emitted"] += 1
        return True

    # ========================================================================
    # CONNECT / RECONNECT LOOP
    # ========================================================================

    async def _connect_with_retry(self) -> bool:
        attempts = 0
        while not self._intentional_close:
            attempts += 1
            if await self._attempt_connect():
                return True

            if self.max_connect_attempts is not None and attempts >= self.max_connect_attempts:
                logger.error(f"Giving up after {attempts} connect attempts")
                self.state_machine.transition(ConnectionStatus.DISCONNECTED)
                return False

            delay = self.fallback.next_delay()
            logger.info(f"Reconnecting in {delay:.1f}s...")
            try:
                await asyncio.wait_for(self._closing.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

        if self.state.status is ConnectionStatus.CONNECTING:
            self.state_machine.transition(ConnectionStatus.DISCONNECTED)
        return False

    async def _attempt_connect(self) -> bool:
        mode = self.fallback.current_mode
        self.state_machine.transition(ConnectionStatus.CONNECTING, active_transport=mode)
        self.metrics["connect_attempts"] += 1
        logger.info(f"Connecting to {self.url} ({mode.value})...")

        sio = self._create_client()
        self._sio = sio
        try:
            await sio.connect(
                self.url,
                headers=self.headers,
                auth=self.auth,
                transports=mode.engineio_transports,
                wait_timeout=self.connect_timeout,
            )
        except Exception as e:
            self._sio = None
            self.fallback.record_failure()
            self.state_machine.update(
                last_error=str(e),
                consecutive_failures=self.fallback.consecutive_failures,
                active_transport=self.fallback.current_mode,
            )
            logger.warning(
                f"Connect attempt failed ({self.fallback.consecutive_failures} in a row): {e}"
            )
            return False

        if self._intentional_close:
            # disconnect() raced the handshake
            self._sio = None
            try:
                await sio.disconnect()
            except Exception as e:
                logger.debug(f"Error closing Socket.IO client: {e}")
            return False

        self.fallback.record_success()
        status = (
            ConnectionStatus.DEGRADED_POLLING
            if mode is TransportMode.FALLBACK_POLLING
            else ConnectionStatus.CONNECTED
        )
        self.state_machine.transition(
            status, last_error=None, consecutive_failures=0, disconnect_reason=None
        )
        logger.info(f"Connected to {self.url} via {mode.value}")
        self._dispatch(CONNECT_EVENT, self.state)
        return True

    def _create_client(self) -> socketio.AsyncClient:
        sio = socketio.AsyncClient(reconnection=False, logger=False, engineio_logger=False)
        sio.on("disconnect", self._on_sio_disconnect)
        sio.on("connect_error", self._on_sio_connect_error)
        sio.on("*", self._on_sio_event)
        return sio

    # ========================================================================
    # SOCKET.IO CALLBACKS
    # ========================================================================

    async def _on_sio_event(self, event_name: str, *args: Any) -> None:
        # Socket.IO can pass trace object + data
        payload = args[-1] if args else None
        self.metrics["messages_received"] += 1
        self._dispatch(event_name, payload)
        self._dispatch(ANY_EVENT, event_name, payload)

    async def _on_sio_connect_error(self, data: Any = None) -> None:
        logger.debug(f"Socket.IO connect_error: {data}")

    async def _on_sio_disconnect(self, reason: Any = None) -> None:
        kind = classify_disconnect(reason)
        reason_str = str(reason) if reason else "unknown"

        if self._intentional_close:
            return

        self._sio = None
        self.metrics["disconnects"] += 1

        if kind is not DisconnectKind.TRANSIENT:
            if kind is DisconnectKind.SERVER:
                logger.warning(f"Server closed the connection ({reason_str}); not reconnecting")
            else:
                logger.warning(f"Socket closed locally ({reason_str}); not reconnecting")
            self.state_machine.transition(
                ConnectionStatus.DISCONNECTED, disconnect_reason=reason_str
            )
            self._dispatch(DISCONNECT_EVENT, reason_str)
            return

        logger.warning(f"Connection lost ({reason_str}); reconnecting")
        self.state_machine.transition(ConnectionStatus.CONNECTING, disconnect_reason=reason_str)
        self._dispatch(DISCONNECT_EVENT, reason_str)
        self._reconnect_task = asyncio.create_task(self._connect_with_retry())

    def _on_mode_change(self, old_mode: TransportMode, new_mode: TransportMode) -> None:
        logger.warning(f"Transport mode changed: {old_mode.value} -> {new_mode.value}")

    def get_stats(self) -> dict[str, Any]:
        return {
            **self.metrics,
            "connection": self.state_machine.get_state_summary(),
            "transport": self.fallback.get_status(),
            "timestamp": time.time(),
        }
