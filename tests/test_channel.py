"""Tests for the JSON-RPC message channel."""

from __future__ import annotations

import asyncio

import pytest

from fsixbridge.errors import (
    ProtocolViolation,
    RemoteError,
    RequestCancelledError,
    ResponseError,
    TransportClosedError,
    TransportError,
)
from fsixbridge.rpc import CANCEL_METHOD, CancellationTokenSource
from fsixbridge.rpc import channel as channel_module

from tests.helpers import channel_with_daemon, exception_payload


class TestRequests:
    """Request/response correlation."""

    @pytest.mark.asyncio
    async def test_request_round_trip(self, pair) -> None:
        channel, daemon = pair

        task = asyncio.create_task(channel.request("diagnostics", ["let x = 1"]))
        msg = await daemon.receive()
        await daemon.respond(msg["id"], [])

        assert msg["jsonrpc"] == "2.0"
        assert msg["method"] == "diagnostics"
        assert msg["params"] == ["let x = 1"]
        assert await task == []
        assert channel.pending_count == 0

    @pytest.mark.asyncio
    async def test_ids_are_unique_and_increasing(self, pair) -> None:
        channel, daemon = pair

        tasks = [asyncio.create_task(channel.request("eval", {"code": str(i)})) for i in range(3)]
        ids = [(await daemon.receive())["id"] for _ in range(3)]
        for request_id in ids:
            await daemon.respond(request_id, None)
        await asyncio.gather(*tasks)

        assert ids == sorted(set(ids))

    @pytest.mark.asyncio
    async def test_out_of_order_responses_reach_their_callers(self, pair) -> None:
        channel, daemon = pair

        first = asyncio.create_task(channel.request("autocomplete", ["List.", 5, ""]))
        second = asyncio.create_task(channel.request("autocomplete", ["Seq.", 4, ""]))
        msg_first = await daemon.receive()
        msg_second = await daemon.receive()

        await daemon.respond(msg_second["id"], [{"displayText": "Seq.map"}])
        await daemon.respond(msg_first["id"], [{"displayText": "List.map"}])

        assert (await first)[0]["displayText"] == "List.map"
        assert (await second)[0]["displayText"] == "Seq.map"

    @pytest.mark.asyncio
    async def test_many_concurrent_requests(self, pair) -> None:
        channel, daemon = pair

        tasks = [asyncio.create_task(channel.request("eval", {"code": f"{i}"})) for i in range(20)]
        received = [await daemon.receive() for _ in range(20)]
        for msg in reversed(received):
            await daemon.respond(msg["id"], msg["params"]["code"])

        assert await asyncio.gather(*tasks) == [f"{i}" for i in range(20)]

    @pytest.mark.asyncio
    async def test_error_response_raises_response_error(self, pair) -> None:
        channel, daemon = pair

        task = asyncio.create_task(channel.request("eval", {"code": "x"}))
        msg = await daemon.receive()
        await daemon.respond_error(msg["id"], code=-32000, message="Evaluation crashed")

        with pytest.raises(ResponseError, match="Evaluation crashed") as exc_info:
            await task
        assert exc_info.value.code == -32000
        assert exc_info.value.remote is None
        assert not channel.closed

    @pytest.mark.asyncio
    async def test_error_response_with_daemon_exception(self, pair) -> None:
        channel, daemon = pair

        task = asyncio.create_task(channel.request("eval", {"code": "x"}))
        msg = await daemon.receive()
        data = exception_payload("System.InvalidOperationException", "Not now")
        await daemon.respond_error(msg["id"], message="Request failed", data=data)

        with pytest.raises(ResponseError) as exc_info:
            await task
        remote = exc_info.value.remote
        assert isinstance(remote, RemoteError)
        assert remote.name == "System.InvalidOperationException"
        assert remote.message == "Not now"

    @pytest.mark.asyncio
    async def test_notify_has_no_id(self, pair) -> None:
        channel, daemon = pair

        await channel.notify("custom", {"value": 1})
        msg = await daemon.receive()

        assert "id" not in msg
        assert msg["method"] == "custom"


class TestNotifications:
    """Inbound notifications and requests."""

    @pytest.mark.asyncio
    async def test_handler_receives_params(self, pair) -> None:
        channel, daemon = pair
        received: asyncio.Queue = asyncio.Queue()
        channel.on_notification("logging", received.put_nowait)

        await daemon.log("Info", "Loading project")

        params = await asyncio.wait_for(received.get(), timeout=2.0)
        assert params == {"level": "Info", "message": "Loading project"}

    @pytest.mark.asyncio
    async def test_async_handler_runs(self, pair) -> None:
        channel, daemon = pair
        seen = asyncio.Event()

        async def handler(params) -> None:
            seen.set()

        channel.on_notification("initialized", handler)
        await daemon.initialized_ok()

        await asyncio.wait_for(seen.wait(), timeout=2.0)

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_close_channel(self, pair) -> None:
        channel, daemon = pair
        received: asyncio.Queue = asyncio.Queue()

        def broken(params) -> None:
            raise RuntimeError("handler bug")

        channel.on_notification("logging", broken)
        channel.on_notification("initialized", received.put_nowait)
        await daemon.log("Info", "first")
        await daemon.initialized_ok()

        await asyncio.wait_for(received.get(), timeout=2.0)
        assert not channel.closed

    @pytest.mark.asyncio
    async def test_unhandled_notification_is_ignored(self, pair) -> None:
        channel, daemon = pair

        await daemon.notify("somethingNew", {})
        task = asyncio.create_task(channel.request("diagnostics", [""]))
        msg = await daemon.receive()
        await daemon.respond(msg["id"], [])

        assert await task == []

    @pytest.mark.asyncio
    async def test_inbound_request_gets_method_not_found(self, pair) -> None:
        channel, daemon = pair

        await daemon.send({"jsonrpc": "2.0", "id": 99, "method": "workspace/configuration"})
        reply = await daemon.receive()

        assert reply["id"] == 99
        assert reply["error"]["code"] == -32601
        assert not channel.closed


class TestCancellation:
    """Cancellation tokens and task cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_settles_immediately_and_notifies_daemon(self, pair) -> None:
        channel, daemon = pair
        source = CancellationTokenSource()

        task = asyncio.create_task(channel.request("eval", {"code": "slow"}, token=source.token))
        msg = await daemon.receive()
        source.cancel()
        await asyncio.sleep(0)

        assert task.done()
        with pytest.raises(RequestCancelledError):
            await task

        notice = await daemon.receive(skip_cancels=False)
        assert notice["method"] == CANCEL_METHOD
        assert notice["params"] == {"id": msg["id"]}

    @pytest.mark.asyncio
    async def test_late_response_after_cancel_is_dropped(self, pair) -> None:
        channel, daemon = pair
        source = CancellationTokenSource()

        task = asyncio.create_task(channel.request("eval", {"code": "slow"}, token=source.token))
        msg = await daemon.receive()
        source.cancel()
        with pytest.raises(RequestCancelledError):
            await task

        await daemon.respond(msg["id"], {"late": True})
        follow_up = asyncio.create_task(channel.request("diagnostics", [""]))
        next_msg = await daemon.receive()
        await daemon.respond(next_msg["id"], [])

        assert await follow_up == []
        assert not channel.closed

    @pytest.mark.asyncio
    async def test_only_recent_cancellations_are_remembered(
        self, pair, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(channel_module, "MAX_CANCELLED_IDS", 2)
        channel, daemon = pair
        ids = []
        for _ in range(3):
            source = CancellationTokenSource()
            task = asyncio.create_task(channel.request("eval", {"code": "slow"}, token=source.token))
            ids.append((await daemon.receive())["id"])
            source.cancel()
            with pytest.raises(RequestCancelledError):
                await task

        await daemon.respond(ids[-1], "late")
        await daemon.respond(ids[0], "too late")
        error = await asyncio.wait_for(channel.wait_closed(), timeout=2.0)

        assert isinstance(error, ProtocolViolation)
        assert "unknown id" in str(error)

    @pytest.mark.asyncio
    async def test_close_forgets_cancellations(self, pair) -> None:
        channel, daemon = pair
        source = CancellationTokenSource()
        task = asyncio.create_task(channel.request("eval", {"code": "slow"}, token=source.token))
        await daemon.receive()
        source.cancel()
        with pytest.raises(RequestCancelledError):
            await task

        await channel.close()

        assert channel._cancelled_ids == set()

    @pytest.mark.asyncio
    async def test_cancel_after_response_is_noop(self, pair) -> None:
        channel, daemon = pair
        source = CancellationTokenSource()

        task = asyncio.create_task(channel.request("eval", {"code": "1+1"}, token=source.token))
        msg = await daemon.receive()
        await daemon.respond(msg["id"], "2")
        assert await task == "2"

        source.cancel()
        await channel.notify("marker")
        marker = await daemon.receive(skip_cancels=False)

        assert marker["method"] == "marker"
        assert daemon.cancelled == []

    @pytest.mark.asyncio
    async def test_already_cancelled_token_sends_nothing(self, pair) -> None:
        channel, daemon = pair
        source = CancellationTokenSource()
        source.cancel()

        with pytest.raises(RequestCancelledError):
            await channel.request("eval", {"code": "x"}, token=source.token)
        await channel.notify("marker")

        assert (await daemon.receive(skip_cancels=False))["method"] == "marker"

    @pytest.mark.asyncio
    async def test_task_cancellation_notifies_daemon(self, pair) -> None:
        channel, daemon = pair

        task = asyncio.create_task(channel.request("eval", {"code": "slow"}))
        msg = await daemon.receive()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        notice = await daemon.receive(skip_cancels=False)
        assert notice["params"]["id"] == msg["id"]


class TestClosing:
    """Transport loss and protocol violations."""

    @pytest.mark.asyncio
    async def test_transport_loss_fails_every_pending_request(self, pair) -> None:
        channel, daemon = pair
        closes: list[BaseException] = []
        channel.on_close(closes.append)

        tasks = [asyncio.create_task(channel.request("eval", {"code": str(i)})) for i in range(5)]
        for _ in range(5):
            await daemon.receive()
        await daemon.close()

        results = await asyncio.wait_for(
            asyncio.gather(*tasks, return_exceptions=True), timeout=2.0
        )
        assert all(isinstance(r, TransportClosedError) for r in results)
        assert channel.closed
        assert len(closes) == 1
        assert channel.pending_count == 0

    @pytest.mark.asyncio
    async def test_unmatched_response_id_is_protocol_violation(self, pair) -> None:
        channel, daemon = pair

        task = asyncio.create_task(channel.request("eval", {"code": "x"}))
        await daemon.receive()
        await daemon.respond(12345, "stray")

        with pytest.raises(ProtocolViolation, match="unknown id"):
            await asyncio.wait_for(task, timeout=2.0)
        assert isinstance(channel.close_error, ProtocolViolation)

    @pytest.mark.asyncio
    async def test_malformed_frame_is_protocol_violation(self, pair) -> None:
        channel, daemon = pair

        daemon.writer.write(b"Content-Length: 4\r\n\r\nnope")
        await daemon.writer.drain()

        error = await asyncio.wait_for(channel.wait_closed(), timeout=2.0)
        assert isinstance(error, ProtocolViolation)

    @pytest.mark.asyncio
    async def test_request_after_close_raises(self, pair) -> None:
        channel, _ = pair
        await channel.close()

        with pytest.raises(TransportError):
            await channel.request("eval", {"code": "x"})

    @pytest.mark.asyncio
    async def test_on_close_after_close_runs_immediately(self, pair) -> None:
        channel, _ = pair
        await channel.close()
        closes: list[BaseException] = []

        channel.on_close(closes.append)

        assert len(closes) == 1
        assert isinstance(closes[0], TransportClosedError)

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, pair) -> None:
        channel, _ = pair
        closes: list[BaseException] = []
        channel.on_close(closes.append)

        await channel.close()
        await channel.close()
        channel.abort(TransportClosedError("again"))

        assert len(closes) == 1

    @pytest.mark.asyncio
    async def test_error_response_without_id_is_logged(self, pair, caplog) -> None:
        channel, daemon = pair

        await daemon.respond_error(None, message="Parse error")
        task = asyncio.create_task(channel.request("diagnostics", [""]))
        msg = await daemon.receive()
        await daemon.respond(msg["id"], [])

        assert await task == []
        assert "Parse error" in caplog.text


@pytest.mark.asyncio
async def test_channel_not_started_does_not_read() -> None:
    channel, daemon = await channel_with_daemon()
    try:
        await daemon.log("Info", "early")
        received: list = []
        channel.on_notification("logging", received.append)
        await asyncio.sleep(0.05)
        assert received == []

        channel.start()
        await asyncio.sleep(0.05)
        assert received == [{"level": "Info", "message": "early"}]
    finally:
        await channel.close()
        await daemon.close()
