"""Tests for the connection history log."""

from unittest.mock import AsyncMock

import pytest

from connection.models import ConnectionState, ConnectionStateEvent, Outcome, ProtocolType
from connection.reconnection import ReconnectionEvent, ReconnectionState
from database.models import decode_record
from services.connection_log import ConnectionEventLog


def state_event(camera_id="cam1", state=ConnectionState.CONNECTED, previous=ConnectionState.CONNECTING):
    return ConnectionStateEvent(camera_id=camera_id, previous=previous, state=state,
                                protocol=ProtocolType.ONVIF, timestamp=1_700_000_000.0)


class TestConnectionEventLog:
    """In-memory history and database write-through."""

    @pytest.mark.asyncio
    async def test_memory_history_newest_first(self):
        log = ConnectionEventLog(max_events=3)
        log.on_connection_event(state_event())
        log.on_connection_event(state_event(camera_id="cam2"))
        log.on_reconnection_event(ReconnectionEvent("cam1", ReconnectionState.BACKING_OFF, attempt=2,
                                                    error="refused"))

        records = await log.recent("cam1")

        assert [r.source for r in records] == ["reconnection", "connection"]
        assert records[0].attempt == 2
        assert records[0].message == "refused"
        assert records[1].protocol == "onvif"
        assert records[1].previous_state == "connecting"

    @pytest.mark.asyncio
    async def test_buffer_is_bounded(self):
        log = ConnectionEventLog(max_events=2)
        for state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED, ConnectionState.AUTHENTICATED):
            log.on_connection_event(state_event(state=state))

        records = await log.recent(limit=10)

        assert [r.state for r in records] == ["authenticated", "connected"]

    @pytest.mark.asyncio
    async def test_database_write_through(self):
        db = AsyncMock()
        db.get_connection_events.return_value = []
        log = ConnectionEventLog(db_manager=db)

        log.on_connection_event(ConnectionStateEvent(
            camera_id="cam1", previous=ConnectionState.AUTHENTICATED, state=ConnectionState.ERROR,
            message="socket closed", outcome=Outcome.NETWORK_ERROR
        ))
        await log.flush()
        await log.recent("cam1", 5)

        record = db.record_connection_event.await_args.args[0]
        assert record.outcome == "network_error"
        assert record.ts.tzinfo is not None
        db.get_connection_events.assert_awaited_once_with("cam1", 5)

    def test_without_event_loop_keeps_memory_copy(self):
        db = AsyncMock()
        log = ConnectionEventLog(db_manager=db)

        log.on_connection_event(state_event())

        db.record_connection_event.assert_not_called()
        assert len(log._recent) == 1


class TestRecordDecoding:
    """JSONB values returned by asyncpg."""

    @pytest.mark.parametrize("value", ['{"ip": "192.168.1.5"}', b'{"ip": "192.168.1.5"}', {"ip": "192.168.1.5"}])
    def test_decode(self, value):
        assert decode_record(value) == {"ip": "192.168.1.5"}

    def test_empty(self):
        assert decode_record(None) == {}
