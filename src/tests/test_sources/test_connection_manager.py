"""
Tests for ConnectionManager

socketio.AsyncClient is patched out; Socket.IO callbacks are driven by
calling the manager's _on_sio_* coroutines directly.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from roundsync.models import TransportMode
from roundsync.sources.connection_manager import (
    ConnectionManager,
    DisconnectKind,
    classify_disconnect,
)
from roundsync.sources.connection_state import ConnectionStatus


@pytest.fixture
def mock_sio():
    """Patched socketio.AsyncClient; every attempt gets the same instance"""
    with patch("roundsync.sources.connection_manager.socketio.AsyncClient") as mock_cls:
        client = MagicMock()
        client.connect = AsyncMock()
        client.disconnect = AsyncMock()
        client.emit = AsyncMock()
        mock_cls.return_value = client
        yield client


def make_manager(**kwargs) -> ConnectionManager:
    params = {"reconnect_delay": 0.001, "max_reconnect_delay": 0.002}
    params.update(kwargs)
    return ConnectionManager("http://localhost:3001", **params)


class TestClassifyDisconnect:

    @pytest.mark.parametrize("reason,expected", [
        ("io server disconnect", DisconnectKind.SERVER),
        ("server disconnect", DisconnectKind.SERVER),
        ("io client disconnect", DisconnectKind.CLIENT),
        ("client disconnect", DisconnectKind.CLIENT),
        ("transport close", DisconnectKind.TRANSIENT),
        ("ping timeout", DisconnectKind.TRANSIENT),
        (None, DisconnectKind.TRANSIENT),
    ])
    def test_classification(self, reason, expected):
        assert classify_disconnect(reason) is expected


class TestConnect:
    """Initial connection"""

    @pytest.mark.asyncio
    async def test_connect_success(self, mock_sio):
        manager = make_manager()
        on_connect = MagicMock()
        manager.on("connect", on_connect)

        assert await manager.connect() is True

        assert manager.state.status is ConnectionStatus.CONNECTED
        assert manager.state.active_transport is TransportMode.REALTIME
        assert manager.is_connected
        on_connect.assert_called_once_with(manager.state)

    @pytest.mark.asyncio
    async def test_connect_uses_websocket_transport(self, mock_sio):
        manager = make_manager()

        await manager.connect()

        kwargs = mock_sio.connect.call_args.kwargs
        assert mock_sio.connect.call_args.args == ("http://localhost:3001",)
        assert kwargs["transports"] == ["websocket"]

    @pytest.mark.asyncio
    async def test_builtin_reconnection_disabled(self, mock_sio):
        with patch("roundsync.sources.connection_manager.socketio.AsyncClient") as mock_cls:
            mock_cls.return_value = mock_sio
            await make_manager().connect()

        assert mock_cls.call_args.kwargs["reconnection"] is False

    @pytest.mark.asyncio
    async def test_connect_when_connected_is_noop(self, mock_sio):
        manager = make_manager()
        await manager.connect()

        assert await manager.connect() is True
        assert mock_sio.connect.await_count == 1


class TestRetryAndFallback:
    """Backoff, attempt cap and long-polling downgrade"""

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, mock_sio):
        mock_sio.connect.side_effect = ConnectionError("refused")
        manager = make_manager(max_connect_attempts=3, downgrade_after=10)

        assert await manager.connect() is False

        assert mock_sio.connect.await_count == 3
        assert manager.state.status is ConnectionStatus.DISCONNECTED
        assert manager.state.consecutive_failures == 3
        assert manager.state.last_error == "refused"

    @pytest.mark.asyncio
    async def test_downgrades_to_polling(self, mock_sio):
        mock_sio.connect.side_effect = ConnectionError("refused")
        manager = make_manager(max_connect_attempts=3, downgrade_after=2)

        await manager.connect()

        transports = [c.kwargs["transports"] for c in mock_sio.connect.call_args_list]
        assert transports == [["websocket"], ["websocket"], ["polling"]]
        assert manager.state.active_transport is TransportMode.FALLBACK_POLLING

    @pytest.mark.asyncio
    async def test_connected_over_polling_is_degraded(self, mock_sio):
        mock_sio.connect.side_effect = [ConnectionError("refused"), None]
        manager = make_manager(downgrade_after=1)

        assert await manager.connect() is True

        assert manager.state.status is ConnectionStatus.DEGRADED_POLLING
        assert manager.state.active_transport is TransportMode.FALLBACK_POLLING
        assert manager.state.consecutive_failures == 0
        assert manager.is_connected

    @pytest.mark.asyncio
    async def test_fresh_connect_retries_websocket(self, mock_sio):
        mock_sio.connect.side_effect = [ConnectionError("refused"), None, None]
        manager = make_manager(downgrade_after=1)
        await manager.connect()
        await manager.disconnect()

        await manager.connect()

        assert manager.state.status is ConnectionStatus.CONNECTED
        assert mock_sio.connect.call_args.kwargs["transports"] == ["websocket"]


class TestDisconnects:
    """Server, client and transient disconnects"""

    @pytest.mark.asyncio
    async def test_client_disconnect(self, mock_sio):
        manager = make_manager()
        on_disconnect = MagicMock()
        manager.on("disconnect", on_disconnect)
        await manager.connect()

        await manager.disconnect()

        mock_sio.disconnect.assert_awaited_once()
        assert manager.state.status is ConnectionStatus.DISCONNECTED
        assert manager.state.disconnect_reason == "client disconnect"
        on_disconnect.assert_called_once_with("client disconnect")

    @pytest.mark.asyncio
    async def test_server_disconnect_not_retried(self, mock_sio):
        manager = make_manager()
        on_disconnect = MagicMock()
        manager.on("disconnect", on_disconnect)
        await manager.connect()

        await manager._on_sio_disconnect("io server disconnect")

        assert manager.state.status is ConnectionStatus.DISCONNECTED
        assert manager.state.disconnect_reason == "io server disconnect"
        assert manager._reconnect_task is None
        on_disconnect.assert_called_once_with("io server disconnect")

    @pytest.mark.asyncio
    async def test_transient_drop_reconnects(self, mock_sio):
        manager = make_manager()
        on_connect = MagicMock()
        manager.on("connect", on_connect)
        await manager.connect()

        await manager._on_sio_disconnect("transport close")

        assert manager.state.status is ConnectionStatus.CONNECTING
        assert manager.state.disconnect_reason == "transport close"

        assert await manager._reconnect_task is True
        assert manager.state.status is ConnectionStatus.CONNECTED
        assert on_connect.call_count == 2
        assert manager.metrics["disconnects"] == 1

    @pytest.mark.asyncio
    async def test_connect_joins_running_reconnect(self, mock_sio):
        manager = make_manager()
        await manager.connect()
        await manager._on_sio_disconnect("ping timeout")

        assert await manager.connect() is True
        assert mock_sio.connect.await_count == 2

    @pytest.mark.asyncio
    async def test_disconnect_stops_reconnect_loop(self, mock_sio):
        manager = make_manager(reconnect_delay=5.0, max_reconnect_delay=5.0)
        await manager.connect()
        mock_sio.connect.side_effect = ConnectionError("refused")
        await manager._on_sio_disconnect("transport close")
        await asyncio.sleep(0.01)

        await manager.disconnect()

        assert manager.state.status is ConnectionStatus.DISCONNECTED
        assert manager._reconnect_task is None

    @pytest.mark.asyncio
    async def test_unrequested_client_close_is_final(self, mock_sio):
        manager = make_manager()
        on_disconnect = MagicMock()
        manager.on("disconnect", on_disconnect)
        await manager.connect()

        await manager._on_sio_disconnect("io client disconnect")

        assert manager.state.status is ConnectionStatus.DISCONNECTED
        assert manager.state.disconnect_reason == "io client disconnect"
        assert manager._reconnect_task is None
        assert manager._sio is None
        on_disconnect.assert_called_once_with("io client disconnect")

    @pytest.mark.asyncio
    async def test_own_close_not_reported_twice(self, mock_sio):
        manager = make_manager()
        on_disconnect = MagicMock()
        manager.on("disconnect", on_disconnect)
        await manager.connect()
        await manager.disconnect()

        await manager._on_sio_disconnect("io client disconnect")

        on_disconnect.assert_called_once_with("client disconnect")
        assert manager.metrics["disconnects"] == 1


class TestEmit:

    @pytest.mark.asyncio
    async def test_emit_when_disconnected(self, mock_sio):
        manager = make_manager()

        assert await manager.emit("requestGameSync", {}) is False
        mock_sio.emit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_emit_when_connected(self, mock_sio):
        manager = make_manager()
        await manager.connect()

        assert await manager.emit("requestGameSync", {}) is True

        mock_sio.emit.assert_awaited_once_with("requestGameSync", {})
        assert manager.metrics["messages_emitted"] == 1

    @pytest.mark.asyncio
    async def test_emit_failure_recorded(self, mock_sio):
        manager = make_manager()
        await manager.connect()
        mock_sio.emit.side_effect = RuntimeError("socket closed")

        assert await manager.emit("placeBet", {}) is False
        assert manager.state.last_error == "socket closed"


class TestDispatch:
    """Event handler fan-out"""

    @pytest.mark.asyncio
    async def test_specific_then_wildcard(self, mock_sio):
        manager = make_manager()
        calls = []
        manager.on("gameState", lambda payload: calls.append(("gameState", payload)))
        manager.on("*", lambda name, payload: calls.append(("*", name, payload)))

        await manager._on_sio_event("gameState", {"gameNumber": 1})

        assert calls == [
            ("gameState", {"gameNumber": 1}),
            ("*", "gameState", {"gameNumber": 1}),
        ]
        assert manager.metrics["messages_received"] == 1

    @pytest.mark.asyncio
    async def test_last_arg_is_payload(self, mock_sio):
        manager = make_manager()
        handler = MagicMock()
        manager.on("multiplierUpdate", handler)

        await manager._on_sio_event("multiplierUpdate", {"trace": 1}, {"multiplier": 2.0})

        handler.assert_called_once_with({"multiplier": 2.0})

    @pytest.mark.asyncio
    async def test_handler_error_isolated(self, mock_sio):
        manager = make_manager()
        second = MagicMock()
        manager.on("gameState", MagicMock(side_effect=ValueError("bad")))
        manager.on("gameState", second)

        await manager._on_sio_event("gameState", {})

        second.assert_called_once()
        assert manager.metrics["errors"] == 1

    def test_unsubscribe(self):
        manager = make_manager()
        handler = MagicMock()
        unsubscribe = manager.on("gameState", handler)

        unsubscribe()
        manager._dispatch("gameState", {})

        handler.assert_not_called()

    def test_stats(self):
        stats = make_manager().get_stats()

        assert stats["connection"]["status"] == "DISCONNECTED"
        assert stats["transport"]["mode"] == "realtime"
