import asyncio

import pytest

from manifold.errors import PoolClosedError

CREATE_SESSION = "test.Sessions/CreateSession"
EXECUTE_STREAMING_SQL = "test.Sessions/ExecuteStreamingSql"
DELETE_SESSION = "test.Sessions/DeleteSession"
BATCH_CREATE_SESSIONS = "test.Sessions/BatchCreateSessions"
LIST_SESSIONS = "test.Sessions/ListSessions"


async def bind_two_sessions(channel, factory):
    """Bind S0 to channel 0 and S1 to channel 1."""
    factory.hold()
    creates = [
        asyncio.create_task(channel.unary_unary(CREATE_SESSION, {"name": name}))
        for name in ("S0", "S1")
    ]
    await asyncio.sleep(0.01)
    factory.release()
    await asyncio.gather(*creates)
    factory.gate = None


class TestUnaryStream:
    async def test_streams_all_responses_on_bound_channel(self, make_channel, factory):
        # Arrange
        channel = make_channel(max_size=3, max_concurrent=1)
        await bind_two_sessions(channel, factory)

        # Act
        rows = [
            row
            async for row in channel.unary_stream(
                EXECUTE_STREAMING_SQL, {"session": "S1", "sql": "SELECT 1"}
            )
        ]

        # Assert
        assert rows == [{"row": 0}, {"row": 1}]
        assert factory.channels[1].calls[-1][0] == EXECUTE_STREAMING_SQL
        assert [r.active_call_count for r in channel.channel_refs] == [0, 0]

    async def test_call_is_counted_while_stream_is_open(self, make_channel):
        # Arrange
        channel = make_channel()
        stream = channel.unary_stream(LIST_SESSIONS, {})

        # Act & Assert
        assert await anext(stream) == {"row": 0}
        assert channel.channel_refs[0].active_call_count == 1

        assert await anext(stream) == {"row": 1}
        with pytest.raises(StopAsyncIteration):
            await anext(stream)
        assert channel.channel_refs[0].active_call_count == 0

    async def test_closing_stream_early_releases_channel(self, make_channel):
        channel = make_channel()
        stream = channel.unary_stream(LIST_SESSIONS, {})
        await anext(stream)

        await stream.aclose()

        assert channel.channel_refs[0].active_call_count == 0

    async def test_bind_uses_first_response_with_a_key(self, make_channel, factory):
        # Arrange
        channel = make_channel()
        factory.stream_responder = lambda method, request: [
            {"progress": 50},
            {"session": {"name": "S7"}},
            {"session": {"name": "S8"}},
        ]

        # Act
        responses = [r async for r in channel.unary_stream(BATCH_CREATE_SESSIONS, {})]

        # Assert
        assert len(responses) == 3
        assert channel.affinity_index.refcount("S7") == 1
        assert "S8" not in channel.affinity_index
        assert channel.channel_refs[0].affinity_count == 1

    async def test_bind_is_not_applied_before_stream_completes(
        self, make_channel, factory
    ):
        channel = make_channel()
        factory.stream_responder = lambda method, request: [
            {"session": {"name": "S7"}},
            {"progress": 100},
        ]

        stream = channel.unary_stream(BATCH_CREATE_SESSIONS, {})
        await anext(stream)
        assert channel.affinity_key_count == 0

        await stream.aclose()
        assert channel.affinity_key_count == 0
        assert channel.channel_refs[0].active_call_count == 0

    async def test_failed_stream_binds_nothing(self, make_channel, factory):
        # Arrange
        channel = make_channel()

        def failing_stream(method, request):
            yield {"session": {"name": "S7"}}
            raise ConnectionError("stream reset")

        factory.stream_responder = failing_stream

        # Act
        received = []
        with pytest.raises(ConnectionError):
            async for response in channel.unary_stream(BATCH_CREATE_SESSIONS, {}):
                received.append(response)

        # Assert
        assert received == [{"session": {"name": "S7"}}]
        assert channel.affinity_key_count == 0
        assert channel.channel_refs[0].active_call_count == 0

    async def test_stream_after_shutdown_is_refused(self, make_channel):
        channel = make_channel()
        await channel.shutdown()

        stream = channel.unary_stream(LIST_SESSIONS, {})

        with pytest.raises(PoolClosedError):
            await anext(stream)


class TestClientStreaming:
    async def test_stream_unary_unbinds_key_of_first_request(
        self, make_channel, factory
    ):
        # Arrange
        channel = make_channel(max_size=3, max_concurrent=1)
        await bind_two_sessions(channel, factory)

        # Act
        await channel.stream_unary(
            DELETE_SESSION, [{"name": "S1"}, {"name": "S0"}]
        )

        # Assert
        assert factory.channels[1].calls[-1] == (
            DELETE_SESSION,
            [{"name": "S1"}, {"name": "S0"}],
        )
        assert "S1" not in channel.affinity_index
        assert channel.affinity_index.refcount("S0") == 1

    async def test_stream_unary_accepts_async_requests(self, make_channel, factory):
        # Arrange
        channel = make_channel(max_size=3, max_concurrent=1)
        await bind_two_sessions(channel, factory)

        async def requests():
            yield {"name": "S1"}
            yield {"name": "extra"}

        # Act
        await channel.stream_unary(DELETE_SESSION, requests())

        # Assert - peeked request was replayed to the transport
        assert factory.channels[1].calls[-1] == (
            DELETE_SESSION,
            [{"name": "S1"}, {"name": "extra"}],
        )
        assert "S1" not in channel.affinity_index

    async def test_stream_unary_bind_from_response(self, make_channel):
        channel = make_channel()

        response = await channel.stream_unary(CREATE_SESSION, iter([{"name": "S5"}]))

        assert response == {"name": "S5"}
        assert channel.affinity_index.refcount("S5") == 1

    async def test_empty_request_stream_falls_through(self, make_channel, factory):
        channel = make_channel()

        await channel.stream_unary(DELETE_SESSION, [])

        assert factory.channels[0].calls == [(DELETE_SESSION, [])]
        assert channel.affinity_key_count == 0

    async def test_stream_stream_routes_by_first_request(self, make_channel, factory):
        # Arrange
        channel = make_channel(max_size=3, max_concurrent=1)
        await bind_two_sessions(channel, factory)

        async def requests():
            yield {"session": "S1", "sql": "SELECT 1"}
            yield {"session": "S1", "sql": "SELECT 2"}

        # Act
        rows = [r async for r in channel.stream_stream(EXECUTE_STREAMING_SQL, requests())]

        # Assert
        assert rows == [{"row": 0}, {"row": 1}]
        method, sent = factory.channels[1].calls[-1]
        assert method == EXECUTE_STREAMING_SQL
        assert [r["sql"] for r in sent] == ["SELECT 1", "SELECT 2"]
        assert [r.active_call_count for r in channel.channel_refs] == [0, 0]
