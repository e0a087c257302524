"""Tests for the request telemetry sink."""

import asyncio

import pytest

from chatbridge.events import ApiError, ApiRequest, ApiResponse, TelemetrySink, session_scope


def _request(**overrides) -> ApiRequest:
    fields = {"model": "m", "stream": False, "messages": 2, "max_tokens": 100}
    fields.update(overrides)
    return ApiRequest(**fields)


class TestTelemetrySink:
    @pytest.mark.asyncio
    async def test_subscribers_receive_events_in_order(self):
        sink = TelemetrySink()
        received = []

        async def subscriber(event):
            received.append(event)

        sink.subscribe(subscriber)
        await sink.start()
        sink.record(_request())
        sink.record(ApiResponse(model="m", usage={"prompt_token_count": 3}))
        await asyncio.sleep(0.05)
        await sink.stop()

        assert [type(e) for e in received] == [ApiRequest, ApiResponse]
        assert received[1].usage == {"prompt_token_count": 3}

    @pytest.mark.asyncio
    async def test_sync_subscriber(self):
        sink = TelemetrySink()
        received = []
        sink.subscribe(received.append)
        sink.record(ApiError(model="m", error="down", status=503))
        await sink.stop()
        assert received[0].status == 503

    @pytest.mark.asyncio
    async def test_failing_subscriber_isolated(self):
        sink = TelemetrySink()
        received = []

        def broken(event):
            raise RuntimeError("subscriber bug")

        sink.subscribe(broken)
        sink.subscribe(received.append)
        await sink.start()
        sink.record(_request())
        await asyncio.sleep(0.05)
        await sink.stop()

        assert len(received) == 1

    def test_full_buffer_drops_instead_of_raising(self):
        sink = TelemetrySink(max_buffered=2)
        for _ in range(5):
            sink.record(_request())
        assert sink.pending == 2
        assert sink.dropped == 3
        assert sink.counts["ApiRequest"] == 5

    @pytest.mark.asyncio
    async def test_stop_delivers_buffered_events(self):
        sink = TelemetrySink()
        received = []
        sink.subscribe(received.append)
        sink.record(_request())
        sink.record(_request(stream=True))
        await sink.stop()

        assert [e.stream for e in received] == [False, True]
        assert sink.pending == 0

    def test_drain_nowait(self):
        sink = TelemetrySink()
        sink.record(_request())
        sink.record(ApiError(model="m", error="x"))
        assert [type(e) for e in sink.drain_nowait()] == [ApiRequest, ApiError]
        assert sink.pending == 0


class TestSessionScope:
    def test_events_tagged_inside_scope_only(self):
        assert _request().session_id is None
        with session_scope("s1"):
            assert _request().session_id == "s1"
            assert ApiError(model="m", error="x").session_id == "s1"
        assert ApiResponse(model="m").session_id is None

    def test_timestamp_is_aware(self):
        assert _request().timestamp.tzinfo is not None
