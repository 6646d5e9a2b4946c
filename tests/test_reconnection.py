"""Tests for backoff calculation and the reconnection supervisor."""

import asyncio
import random
from unittest.mock import AsyncMock

import pytest

from connection.models import ConnectionState, ConnectionStateEvent, OperationResult, Outcome
from connection.reconnection import (
    ReconnectionConfig,
    ReconnectionState,
    ReconnectionSupervisor,
    calculate_backoff_delay,
)
from events import EventChannel


class FakeManager:
    """Connection manager stand-in driven by canned reconnect() results."""

    def __init__(self, camera_id="cam1", results=None, healthy=True, connected=True):
        self.camera_id = camera_id
        self.state_events = EventChannel(f"connection:{camera_id}")
        self.is_connected = connected
        self.reconnect = AsyncMock(side_effect=results or self._default_results())
        self.test_connection = AsyncMock(return_value=healthy)

    @staticmethod
    def _default_results():
        while True:
            yield OperationResult.fail(Outcome.NETWORK_ERROR, "connection refused")

    def drop(self, previous=ConnectionState.AUTHENTICATED, outcome=Outcome.NETWORK_ERROR):
        self.is_connected = False
        self.state_events.publish(ConnectionStateEvent(
            camera_id=self.camera_id, previous=previous, state=ConnectionState.ERROR,
            message="socket closed", outcome=outcome
        ))


def failures(count):
    return [OperationResult.fail(Outcome.NETWORK_ERROR, "connection refused")] * count


def no_jitter(**overrides):
    return ReconnectionConfig(jitter_enabled=False, **overrides)


def make_supervisor(scheduler, manager, config=None):
    supervisor = ReconnectionSupervisor(scheduler, no_jitter() if config is None else config,
                                        health_check_interval=30.0)
    supervisor.register_camera(manager)
    return supervisor


def backoff_delays(scheduler, camera_id="cam1"):
    return [delay for name, delay in scheduler.history if name == f"reconnect:{camera_id}"]


class TestBackoff:
    """Delay curve."""

    def test_exponential_curve_is_capped(self):
        config = no_jitter(initial_delay=1, backoff_multiplier=2, max_delay=300)
        delays = [calculate_backoff_delay(config, n) for n in range(1, 12)]
        assert delays == [1, 2, 4, 8, 16, 32, 64, 128, 256, 300, 300]

    def test_custom_delays_override_leading_attempts(self):
        config = no_jitter(custom_delays=[5, 5, 30], initial_delay=1)
        assert [calculate_backoff_delay(config, n) for n in range(1, 6)] == [5, 5, 30, 8, 16]

    def test_jitter_stays_within_ratio(self):
        config = ReconnectionConfig(initial_delay=10, jitter_enabled=True, jitter_ratio=0.05)
        rng = random.Random(7)
        delays = [calculate_backoff_delay(config, 1, rng) for _ in range(50)]
        assert all(9.5 <= d <= 10.5 for d in delays)
        assert len(set(delays)) > 1

    def test_from_dict(self):
        config = ReconnectionConfig.from_dict({
            'initial_delay_seconds': 2, 'max_attempts': 20, 'custom_delays': [1, 3], 'jitter_enabled': False
        })
        assert config.initial_delay == 2.0
        assert config.max_attempts == 20
        assert config.custom_delays == [1.0, 3.0]
        assert not config.jitter_enabled


class TestSupervisorSessions:
    """Session lifecycle driven through the manual scheduler."""

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, manual_scheduler):
        manager = FakeManager()
        supervisor = make_supervisor(manual_scheduler, manager, no_jitter(max_attempts=10))

        assert await supervisor.start_reconnection("cam1", "test")
        await manual_scheduler.advance(10_000)

        assert manager.reconnect.await_count == 10
        assert backoff_delays(manual_scheduler) == [1, 2, 4, 8, 16, 32, 64, 128, 256]
        session = supervisor.get_session("cam1")
        assert session.state == ReconnectionState.FAILED
        assert not session.is_active
        assert session.last_error == "connection refused"
        assert supervisor.active_sessions() == []

    @pytest.mark.asyncio
    async def test_failed_session_is_not_restarted_automatically(self, manual_scheduler):
        manager = FakeManager(healthy=False)
        supervisor = make_supervisor(manual_scheduler, manager, no_jitter(max_attempts=2))
        await supervisor.start()
        await supervisor.start_reconnection("cam1")
        await manual_scheduler.advance(10)
        assert supervisor.get_state("cam1") == ReconnectionState.FAILED
        attempts = manager.reconnect.await_count

        manager.drop()
        manager.is_connected = True
        await manual_scheduler.advance(120)

        assert manager.reconnect.await_count == attempts
        assert supervisor.get_state("cam1") == ReconnectionState.FAILED

    @pytest.mark.asyncio
    async def test_success_clears_session(self, manual_scheduler):
        manager = FakeManager(results=failures(2) + [OperationResult.ok({'state': 'authenticated'})])
        supervisor = make_supervisor(manual_scheduler, manager)
        events = []
        supervisor.session_events.subscribe(lambda event: events.append(event.state))

        await supervisor.start_reconnection("cam1")
        await manual_scheduler.advance(10)

        assert manager.reconnect.await_count == 3
        assert supervisor.get_session("cam1") is None
        assert supervisor.get_state("cam1") == ReconnectionState.IDLE
        assert events[-1] == ReconnectionState.IDLE
        stats = supervisor.statistics()
        assert stats['successful_reconnections'] == 1
        assert stats['total_attempts'] == 3

    @pytest.mark.asyncio
    async def test_auth_failure_fails_immediately(self, manual_scheduler):
        manager = FakeManager(results=[OperationResult.fail(Outcome.AUTH_FAILED, "bad password")])
        supervisor = make_supervisor(manual_scheduler, manager)

        await supervisor.start_reconnection("cam1")

        assert supervisor.get_state("cam1") == ReconnectionState.FAILED
        assert manual_scheduler.pending("reconnect:") == []

    @pytest.mark.asyncio
    async def test_force_skips_backoff(self, manual_scheduler):
        manager = FakeManager()
        supervisor = make_supervisor(manual_scheduler, manager, no_jitter(initial_delay=60))
        await supervisor.start_reconnection("cam1")
        assert supervisor.get_state("cam1") == ReconnectionState.BACKING_OFF

        assert await supervisor.force_reconnection("cam1")

        assert manager.reconnect.await_count == 2
        assert supervisor.get_session("cam1").current_attempt == 2
        # The superseded timer is cancelled; only the new backoff is pending
        assert len(manual_scheduler.pending("reconnect:cam1")) == 1
        assert manual_scheduler.next_due() == 120

    @pytest.mark.asyncio
    async def test_force_without_active_session(self, manual_scheduler):
        manager = FakeManager(results=[OperationResult.fail(Outcome.AUTH_FAILED, "bad password")])
        supervisor = make_supervisor(manual_scheduler, manager)
        assert not await supervisor.force_reconnection("cam1")

        await supervisor.start_reconnection("cam1")
        assert not await supervisor.force_reconnection("cam1")

    @pytest.mark.asyncio
    async def test_force_during_attempt_is_rejected(self, manual_scheduler):
        gate = asyncio.Event()
        in_flight = []

        async def blocked_reconnect():
            in_flight.append(True)
            await gate.wait()
            return OperationResult.fail(Outcome.NETWORK_ERROR, "connection refused")

        manager = FakeManager()
        manager.reconnect = AsyncMock(side_effect=blocked_reconnect)
        supervisor = make_supervisor(manual_scheduler, manager)

        starting = asyncio.create_task(supervisor.start_reconnection("cam1"))
        for _ in range(10):
            if in_flight:
                break
            await asyncio.sleep(0)
        assert supervisor.get_state("cam1") == ReconnectionState.ATTEMPTING

        assert not await supervisor.force_reconnection("cam1")
        assert not await supervisor.start_reconnection("cam1")

        gate.set()
        assert await starting
        assert len(in_flight) == 1
        assert supervisor.get_session("cam1").current_attempt == 1
        assert len(manual_scheduler.pending("reconnect:cam1")) == 1

    @pytest.mark.asyncio
    async def test_stop_reconnection(self, manual_scheduler):
        manager = FakeManager()
        supervisor = make_supervisor(manual_scheduler, manager)
        await supervisor.start_reconnection("cam1")

        assert supervisor.stop_reconnection("cam1")
        assert not supervisor.stop_reconnection("cam1")
        await manual_scheduler.advance(100)

        assert manager.reconnect.await_count == 1

    @pytest.mark.asyncio
    async def test_disable_disposes_sessions(self, manual_scheduler):
        manager = FakeManager()
        supervisor = make_supervisor(manual_scheduler, manager)
        events = []
        supervisor.session_events.subscribe(lambda event: events.append(event.state))
        await supervisor.start_reconnection("cam1")

        await supervisor.set_enabled(False)

        assert supervisor.statistics()['total_sessions'] == 0
        assert events[-1] == ReconnectionState.DISABLED
        assert not await supervisor.start_reconnection("cam1")
        await manual_scheduler.advance(100)
        assert manager.reconnect.await_count == 1

    @pytest.mark.asyncio
    async def test_unknown_camera(self, manual_scheduler):
        supervisor = make_supervisor(manual_scheduler, FakeManager())
        assert not await supervisor.start_reconnection("nope")

    @pytest.mark.asyncio
    async def test_per_camera_config(self, manual_scheduler):
        manager = FakeManager()
        supervisor = make_supervisor(manual_scheduler, manager)
        supervisor.configure_camera("cam1", no_jitter(custom_delays=[5]))

        await supervisor.start_reconnection("cam1")

        assert backoff_delays(manual_scheduler) == [5]


class TestSupervisorObservation:
    """Sessions started from state events and health checks."""

    @pytest.mark.asyncio
    async def test_drop_from_live_state_starts_session(self, manual_scheduler):
        manager = FakeManager(results=[OperationResult.ok()])
        supervisor = make_supervisor(manual_scheduler, manager)

        manager.drop()
        assert manual_scheduler.pending("reconnect-start:cam1")
        await manual_scheduler.run_due()

        manager.reconnect.assert_awaited_once()
        assert supervisor.get_session("cam1") is None

    @pytest.mark.asyncio
    async def test_connect_failure_and_auth_drop_are_ignored(self, manual_scheduler):
        manager = FakeManager()
        make_supervisor(manual_scheduler, manager)

        manager.drop(previous=ConnectionState.CONNECTING)
        manager.drop(outcome=Outcome.AUTH_FAILED)

        assert manual_scheduler.pending("reconnect-start:") == []

    @pytest.mark.asyncio
    async def test_reconnect_clears_failed_session(self, manual_scheduler):
        manager = FakeManager()
        supervisor = make_supervisor(manual_scheduler, manager, no_jitter(max_attempts=1))
        await supervisor.start_reconnection("cam1")
        assert supervisor.get_state("cam1") == ReconnectionState.FAILED

        manager.state_events.publish(ConnectionStateEvent(
            camera_id="cam1", previous=ConnectionState.CONNECTING, state=ConnectionState.CONNECTED
        ))

        assert supervisor.get_session("cam1") is None

    @pytest.mark.asyncio
    async def test_health_check_starts_session_for_unhealthy_camera(self, manual_scheduler):
        healthy = FakeManager("cam1", healthy=True)
        sick = FakeManager("cam2", healthy=False)
        offline = FakeManager("cam3", connected=False)
        supervisor = ReconnectionSupervisor(manual_scheduler, no_jitter(), health_check_interval=30.0)
        for manager in (healthy, sick, offline):
            supervisor.register_camera(manager)
        await supervisor.start()

        await manual_scheduler.advance(30)

        assert supervisor.get_session("cam1") is None
        assert supervisor.get_session("cam2").reason == "health check failed"
        assert supervisor.get_session("cam3") is None
        offline.test_connection.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stop_unsubscribes(self, manual_scheduler):
        manager = FakeManager()
        supervisor = make_supervisor(manual_scheduler, manager)
        await supervisor.start()

        await supervisor.stop()

        assert manager.state_events.subscriber_count == 0
        assert manual_scheduler.pending("reconnection_health_check") == []
