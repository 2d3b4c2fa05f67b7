"""
Tests for CorrelatedRequestGateway
"""

import asyncio

import pytest

from roundsync.models import ResultStatus
from roundsync.sources.request_gateway import REQUEST_ID_FIELD, CorrelatedRequestGateway


async def start_request(gateway, command="placeBet", response="betResult", timeout_ms=1000, **kwargs):
    """Start a request and let it reach the point of waiting for its answer"""
    task = asyncio.create_task(gateway.request(command, {"betAmount": 1}, response, timeout_ms, **kwargs))
    await asyncio.sleep(0)
    return task


class TestSettlement:
    """A response settles its request exactly once"""

    @pytest.mark.asyncio
    async def test_response_settles(self, gateway, fake_transport):
        task = await start_request(gateway)

        fake_transport.deliver("betResult", {"success": True, "balance": 9})
        result = await task

        assert result.status is ResultStatus.SUCCESS
        assert result.data["balance"] == 9
        assert result.request_id == "req-1"
        assert gateway.pending_count == 0

    @pytest.mark.asyncio
    async def test_command_carries_request_id(self, gateway, fake_transport):
        task = await start_request(gateway)
        fake_transport.deliver("betResult", {"success": True})
        await task

        assert fake_transport.emitted == [("placeBet", {"betAmount": 1, REQUEST_ID_FIELD: "req-1"})]

    @pytest.mark.asyncio
    async def test_rejected_response(self, gateway, fake_transport):
        task = await start_request(gateway)

        fake_transport.deliver("betResult", {"success": False, "reason": "Betting closed"})
        result = await task

        assert result.status is ResultStatus.REJECTED
        assert result.reason == "Betting closed"
        assert gateway.metrics["rejected"] == 1

    @pytest.mark.asyncio
    async def test_second_response_ignored(self, gateway, fake_transport):
        task = await start_request(gateway)
        fake_transport.deliver("betResult", {"success": True})
        await task

        fake_transport.deliver("betResult", {"success": False})

        assert gateway.metrics["unmatched_responses"] == 0
        assert fake_transport.listener_count("betResult") == 0
        assert gateway.metrics["succeeded"] == 1

    @pytest.mark.asyncio
    async def test_response_payload_is_operation_label(self, gateway, fake_transport):
        task = asyncio.create_task(
            gateway.request("cashOut", {}, "cashOutResult", 1000, operation="cash_out")
        )
        await asyncio.sleep(0)
        fake_transport.deliver("cashOutResult", {"success": True})

        assert (await task).operation == "cash_out"


class TestCorrelation:
    """requestId echo and FIFO fallback"""

    @pytest.mark.asyncio
    async def test_fifo_without_request_id(self, gateway, fake_transport):
        first = await start_request(gateway)
        second = await start_request(gateway)

        fake_transport.deliver("betResult", {"success": True, "n": 1})
        fake_transport.deliver("betResult", {"success": True, "n": 2})

        assert (await first).data["n"] == 1
        assert (await second).data["n"] == 2

    @pytest.mark.asyncio
    async def test_request_id_echo_wins_over_order(self, gateway, fake_transport):
        first = await start_request(gateway)
        second = await start_request(gateway)

        fake_transport.deliver("betResult", {"success": True, REQUEST_ID_FIELD: "req-2"})

        assert (await second).request_id == "req-2"
        assert not first.done()
        assert gateway.pending_count == 1

        gateway.cancel_all()
        await first

    @pytest.mark.asyncio
    async def test_unknown_request_id_ignored(self, gateway, fake_transport):
        task = await start_request(gateway)

        fake_transport.deliver("betResult", {"success": True, REQUEST_ID_FIELD: "nope"})

        assert not task.done()
        assert gateway.metrics["unmatched_responses"] == 1
        gateway.cancel_all()
        await task

    @pytest.mark.asyncio
    async def test_one_listener_per_response_event(self, gateway, fake_transport):
        first = await start_request(gateway)
        second = await start_request(gateway)

        assert fake_transport.listener_count("betResult") == 1
        assert gateway.has_pending("betResult")

        gateway.cancel_all()
        await asyncio.gather(first, second)

        assert fake_transport.listener_count("betResult") == 0
        assert not gateway.has_pending("betResult")


class TestTimeout:
    """Deadline expiry"""

    @pytest.mark.asyncio
    async def test_times_out(self, gateway, fake_transport):
        result = await gateway.request("placeBet", {}, "betResult", timeout_ms=20)

        assert result.status is ResultStatus.TIMEOUT
        assert "betResult" in result.reason
        assert gateway.metrics["timeouts"] == 1

    @pytest.mark.asyncio
    async def test_late_response_after_timeout_is_noop(self, gateway, fake_transport):
        result = await gateway.request("placeBet", {}, "betResult", timeout_ms=20)

        fake_transport.deliver("betResult", {"success": True})

        assert result.status is ResultStatus.TIMEOUT
        assert fake_transport.listener_count("betResult") == 0
        assert gateway.metrics["succeeded"] == 0
        assert gateway.metrics["late_responses"] == 1

    @pytest.mark.asyncio
    async def test_independent_deadlines(self, gateway, fake_transport):
        slow = await start_request(gateway, timeout_ms=5000)
        fast = await start_request(gateway, command="getCustodialBalance",
                                   response="custodialBalanceResponse", timeout_ms=20)

        assert (await fast).status is ResultStatus.TIMEOUT
        assert not slow.done()

        fake_transport.deliver("betResult", {"success": True})
        assert (await slow).ok

    @pytest.mark.asyncio
    async def test_timer_cleared_when_idle(self, gateway, fake_transport):
        task = await start_request(gateway)
        fake_transport.deliver("betResult", {"success": True})
        await task

        assert gateway._timer is None


class TestCancellation:
    """Abort signals, cancel_all and caller cancellation"""

    @pytest.mark.asyncio
    async def test_abort_signal(self, gateway, fake_transport):
        abort = asyncio.Event()
        task = await start_request(gateway, abort=abort)

        abort.set()
        result = await task

        assert result.status is ResultStatus.CANCELLED
        assert result.reason == "aborted"
        assert gateway.pending_count == 0

    @pytest.mark.asyncio
    async def test_abort_before_send(self, gateway, fake_transport):
        abort = asyncio.Event()
        abort.set()

        result = await gateway.request("placeBet", {}, "betResult", 1000, abort=abort)

        assert result.status is ResultStatus.CANCELLED
        assert fake_transport.emitted == []

    @pytest.mark.asyncio
    async def test_response_then_abort(self, gateway, fake_transport):
        abort = asyncio.Event()
        task = await start_request(gateway, abort=abort)

        fake_transport.deliver("betResult", {"success": True})
        abort.set()

        assert (await task).ok
        assert gateway.metrics["cancelled"] == 0

    @pytest.mark.asyncio
    async def test_cancel_all(self, gateway, fake_transport):
        tasks = [await start_request(gateway) for _ in range(2)]

        assert gateway.cancel_all("connection lost") == 2

        results = await asyncio.gather(*tasks)
        assert all(r.status is ResultStatus.CANCELLED for r in results)
        assert all(r.reason == "connection lost" for r in results)

    @pytest.mark.asyncio
    async def test_cancel_unknown(self, gateway):
        assert gateway.cancel("missing") is False

    @pytest.mark.asyncio
    async def test_caller_cancellation_cleans_up(self, gateway, fake_transport):
        task = await start_request(gateway)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert gateway.pending_count == 0
        assert fake_transport.listener_count("betResult") == 1

        fake_transport.deliver("betResult", {"success": True})

        assert gateway.metrics["late_responses"] == 1
        assert fake_transport.listener_count("betResult") == 0


class TestLateResponses:
    """Answers to requests that already ended never settle a newer request"""

    @pytest.mark.asyncio
    async def test_late_answer_does_not_settle_retry(self, gateway, fake_transport):
        first = await gateway.request("placeBet", {}, "betResult", timeout_ms=20)
        assert first.status is ResultStatus.TIMEOUT

        second = await start_request(gateway, timeout_ms=5000)
        fake_transport.deliver("betResult", {"success": False, "reason": "late answer to first"})
        await asyncio.sleep(0)

        assert not second.done()
        assert gateway.metrics["late_responses"] == 1

        fake_transport.deliver("betResult", {"success": True})
        assert (await second).ok

    @pytest.mark.asyncio
    async def test_late_answer_after_abort_dropped(self, gateway, fake_transport):
        abort = asyncio.Event()
        first = await start_request(gateway, abort=abort)
        abort.set()
        assert (await first).status is ResultStatus.CANCELLED

        second = await start_request(gateway)
        fake_transport.deliver("betResult", {"success": True})
        await asyncio.sleep(0)

        assert not second.done()
        fake_transport.deliver("betResult", {"success": True})
        assert (await second).ok

    @pytest.mark.asyncio
    async def test_echoed_id_consumes_its_own_tombstone(self, gateway, fake_transport):
        await gateway.request("placeBet", {}, "betResult", timeout_ms=20)
        second = await start_request(gateway, timeout_ms=5000)

        fake_transport.deliver("betResult", {"success": True, REQUEST_ID_FIELD: "req-1"})
        await asyncio.sleep(0)
        assert not second.done()

        fake_transport.deliver("betResult", {"success": True})
        result = await second
        assert result.ok
        assert result.request_id == "req-2"

    @pytest.mark.asyncio
    async def test_tombstone_expires(self, gateway, fake_transport):
        await gateway.request("placeBet", {}, "betResult", timeout_ms=20)
        await asyncio.sleep(0.05)

        second = await start_request(gateway)
        fake_transport.deliver("betResult", {"success": True})

        assert (await second).ok
        assert gateway.metrics["late_responses"] == 0

    @pytest.mark.asyncio
    async def test_cancel_all_forgets_tombstones(self, gateway, fake_transport):
        await gateway.request("placeBet", {}, "betResult", timeout_ms=20)
        assert gateway.get_stats()["awaiting_late"] == 1

        gateway.cancel_all("connection lost")

        assert gateway.get_stats()["awaiting_late"] == 0
        assert fake_transport.listener_count("betResult") == 0
        second = await start_request(gateway)
        fake_transport.deliver("betResult", {"success": True})
        assert (await second).ok

    @pytest.mark.asyncio
    async def test_other_response_events_unaffected(self, gateway, fake_transport):
        await gateway.request("placeBet", {}, "betResult", timeout_ms=20)

        balance = await start_request(
            gateway, command="getCustodialBalance", response="custodialBalanceResponse"
        )
        fake_transport.deliver("custodialBalanceResponse", {"success": True, "balance": 3})

        assert (await balance).ok


class TestSendFailure:

    @pytest.mark.asyncio
    async def test_not_connected(self, offline_transport):
        transport = offline_transport
        gateway = CorrelatedRequestGateway(transport)

        result = await gateway.request("placeBet", {}, "betResult", 1000)

        assert result.status is ResultStatus.PRECONDITION_FAILED
        assert result.reason == "not connected"
        assert gateway.pending_count == 0
        assert transport.listener_count("betResult") == 0
        assert gateway.get_stats()["send_failures"] == 1
