"""
Automatic reconnection: per-camera backoff sessions and periodic health checks
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from events import EventChannel, Subscription
from scheduler import ScheduledJob, Scheduler
from .models import LIVE_STATES, ConnectionState, ConnectionStateEvent, Outcome

logger = logging.getLogger(__name__)


class ReconnectionState(Enum):
    IDLE = "idle"
    ATTEMPTING = "attempting"
    BACKING_OFF = "backing_off"
    FAILED = "failed"
    DISABLED = "disabled"


@dataclass
class ReconnectionConfig:
    """Backoff parameters for one camera"""
    initial_delay: float = 1.0            # Seconds before the second attempt
    max_delay: float = 300.0              # Cap on any computed delay
    backoff_multiplier: float = 2.0
    max_attempts: int = 10
    connection_timeout: float = 30.0      # Per-attempt limit on manager.reconnect()
    jitter_enabled: bool = True
    custom_delays: List[float] = field(default_factory=list)   # Overrides the curve for the first N attempts
    jitter_ratio: float = 0.05            # +/- fraction applied when jitter is enabled

    @classmethod
    def from_dict(cls, section: Optional[Dict[str, Any]]) -> 'ReconnectionConfig':
        section = section or {}
        return cls(
            initial_delay=float(section.get('initial_delay_seconds', 1.0)),
            max_delay=float(section.get('max_delay_seconds', 300.0)),
            backoff_multiplier=float(section.get('backoff_multiplier', 2.0)),
            max_attempts=int(section.get('max_attempts', 10)),
            connection_timeout=float(section.get('connection_timeout_seconds', 30.0)),
            jitter_enabled=bool(section.get('jitter_enabled', True)),
            custom_delays=[float(d) for d in section.get('custom_delays', []) or []],
            jitter_ratio=float(section.get('jitter_ratio', 0.05))
        )


@dataclass
class ReconnectionAttempt:
    attempt_number: int
    timestamp: float
    backoff_delay: float
    success: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'attempt_number': self.attempt_number,
            'timestamp': self.timestamp,
            'backoff_delay': self.backoff_delay,
            'success': self.success,
            'error': self.error
        }


@dataclass
class ReconnectionSession:
    camera_id: str
    config: ReconnectionConfig
    start_time: float
    reason: Optional[str] = None
    state: ReconnectionState = ReconnectionState.IDLE
    attempts: List[ReconnectionAttempt] = field(default_factory=list)
    current_attempt: int = 0
    last_error: Optional[str] = None
    job: Optional[ScheduledJob] = field(default=None, repr=False)

    @property
    def is_active(self) -> bool:
        return self.state in (ReconnectionState.IDLE, ReconnectionState.ATTEMPTING, ReconnectionState.BACKING_OFF)

    @property
    def last_attempt_time(self) -> Optional[float]:
        return self.attempts[-1].timestamp if self.attempts else None

    def cancel_timer(self) -> None:
        if self.job is not None:
            self.job.cancel()
            self.job = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'camera_id': self.camera_id,
            'state': self.state.value,
            'reason': self.reason,
            'start_time': self.start_time,
            'current_attempt': self.current_attempt,
            'max_attempts': self.config.max_attempts,
            'last_attempt_time': self.last_attempt_time,
            'last_error': self.last_error,
            'attempts': [attempt.to_dict() for attempt in self.attempts]
        }


@dataclass
class ReconnectionEvent:
    """Published whenever a session changes state"""
    camera_id: str
    state: ReconnectionState
    attempt: int = 0
    next_delay: Optional[float] = None
    error: Optional[str] = None
    timestamp: float = field(default_factory=time.time)


def calculate_backoff_delay(config: ReconnectionConfig, attempt_number: int,
                            rng: Optional[random.Random] = None) -> float:
    """Delay following failed attempt n (1-based)"""
    if config.custom_delays and attempt_number <= len(config.custom_delays):
        delay = config.custom_delays[attempt_number - 1]
    else:
        delay = config.initial_delay * (config.backoff_multiplier ** (attempt_number - 1))
        delay = min(delay, config.max_delay)

    if config.jitter_enabled and config.jitter_ratio > 0:
        rng = rng or random
        delay *= 1.0 + rng.uniform(-config.jitter_ratio, config.jitter_ratio)
    return max(0.0, delay)


class ReconnectionSupervisor:
    """
    Keeps supervised cameras connected

    One session per camera ID. A session that exhausts max_attempts (or hits an
    authentication failure) stays in the map as FAILED: it no longer counts as
    active and neither the health check nor state events restart it. Only an
    explicit start_reconnection() does.
    """

    def __init__(self, scheduler: Scheduler, default_config: Optional[ReconnectionConfig] = None,
                 health_check_interval: float = 30.0, rng: Optional[random.Random] = None):
        self.scheduler = scheduler
        self.default_config = default_config or ReconnectionConfig()
        self.health_check_interval = health_check_interval
        self.rng = rng or random.Random()
        self.global_enabled = True
        self.session_events: EventChannel[ReconnectionEvent] = EventChannel("reconnection")

        self._managers: Dict[str, Any] = {}
        self._subscriptions: Dict[str, Subscription] = {}
        self._configs: Dict[str, ReconnectionConfig] = {}
        self._sessions: Dict[str, ReconnectionSession] = {}
        self._health_job: Optional[ScheduledJob] = None
        self._total_attempts = 0
        self._successful_reconnections = 0

    # ---------- registration ----------

    def register_camera(self, manager, config: Optional[ReconnectionConfig] = None) -> None:
        """Observe a connection manager; the caller keeps ownership"""
        camera_id = manager.camera_id
        if camera_id in self._subscriptions:
            self._subscriptions[camera_id].unsubscribe()
        self._managers[camera_id] = manager
        self._subscriptions[camera_id] = manager.state_events.subscribe(self._on_state_event)
        if config is not None:
            self._configs[camera_id] = config

    def unregister_camera(self, camera_id: str) -> None:
        self.stop_reconnection(camera_id)
        subscription = self._subscriptions.pop(camera_id, None)
        if subscription:
            subscription.unsubscribe()
        self._managers.pop(camera_id, None)
        self._configs.pop(camera_id, None)

    def configure_camera(self, camera_id: str, config: ReconnectionConfig) -> None:
        self._configs[camera_id] = config
        logger.info(f"Reconnection configured for {camera_id}: max_attempts={config.max_attempts}, "
                    f"initial={config.initial_delay}s, max={config.max_delay}s")

    def config_for(self, camera_id: str) -> ReconnectionConfig:
        return self._configs.get(camera_id, self.default_config)

    # ---------- lifecycle ----------

    async def start(self) -> None:
        if self._health_job is None and self.health_check_interval > 0:
            self._health_job = self.scheduler.call_every(
                self.health_check_interval, self.run_health_check, name="reconnection_health_check"
            )
        logger.info(f"Reconnection supervisor started (health check every {self.health_check_interval}s)")

    async def stop(self) -> None:
        if self._health_job is not None:
            self._health_job.cancel()
            self._health_job = None
        for camera_id in list(self._sessions):
            self._dispose_session(camera_id, ReconnectionState.DISABLED)
        for subscription in self._subscriptions.values():
            subscription.unsubscribe()
        self._subscriptions.clear()
        logger.info("Reconnection supervisor stopped")

    async def set_enabled(self, enabled: bool) -> None:
        """Disabling disposes every session, failed ones included"""
        self.global_enabled = enabled
        if not enabled:
            for camera_id in list(self._sessions):
                self._dispose_session(camera_id, ReconnectionState.DISABLED)
        logger.info(f"Automatic reconnection {'enabled' if enabled else 'disabled'}")

    # ---------- sessions ----------

    async def start_reconnection(self, camera_id: str, reason: Optional[str] = None) -> bool:
        """Start (or restart) a session and make the first attempt immediately"""
        if not self.global_enabled:
            logger.info(f"Reconnection disabled, not starting session for {camera_id}")
            return False
        if camera_id not in self._managers:
            logger.warning(f"Cannot reconnect unknown camera {camera_id}")
            return False

        existing = self._sessions.get(camera_id)
        if existing is not None and existing.state == ReconnectionState.ATTEMPTING:
            logger.info(f"[RETRY] {camera_id}: attempt already in flight, not restarting")
            return False
        if existing is not None:
            self._dispose_session(camera_id, None)

        session = ReconnectionSession(
            camera_id=camera_id,
            config=self.config_for(camera_id),
            start_time=self.scheduler.now(),
            reason=reason
        )
        self._sessions[camera_id] = session
        logger.info(f"[RETRY] Starting reconnection for {camera_id}" + (f" ({reason})" if reason else ""))
        await self._attempt(session)
        return True

    def stop_reconnection(self, camera_id: str) -> bool:
        if camera_id not in self._sessions:
            return False
        self._dispose_session(camera_id, ReconnectionState.IDLE)
        logger.info(f"Reconnection stopped for {camera_id}")
        return True

    async def force_reconnection(self, camera_id: str) -> bool:
        """Skip the pending backoff and attempt now"""
        session = self._sessions.get(camera_id)
        if session is None or not session.is_active:
            return False
        if session.state == ReconnectionState.ATTEMPTING:
            logger.info(f"[RETRY] {camera_id}: attempt already in flight, not forcing another")
            return False
        session.cancel_timer()
        logger.info(f"[RETRY] Forcing reconnection attempt for {camera_id}")
        await self._attempt(session)
        return True

    def _dispose_session(self, camera_id: str, final_state: Optional[ReconnectionState]) -> None:
        session = self._sessions.pop(camera_id, None)
        if session is None:
            return
        session.cancel_timer()
        if final_state is not None:
            session.state = final_state
            self._publish(session, final_state)

    async def _attempt(self, session: ReconnectionSession) -> None:
        camera_id = session.camera_id
        if self._sessions.get(camera_id) is not session or not session.is_active:
            return
        if session.state == ReconnectionState.ATTEMPTING:
            return
        session.job = None

        session.current_attempt += 1
        number = session.current_attempt
        delay = calculate_backoff_delay(session.config, number, self.rng)
        attempt = ReconnectionAttempt(number, self.scheduler.now(), delay)
        session.attempts.append(attempt)
        session.state = ReconnectionState.ATTEMPTING
        self._total_attempts += 1
        self._publish(session, ReconnectionState.ATTEMPTING)
        logger.info(f"[RETRY] {camera_id}: attempt {number}/{session.config.max_attempts}")

        manager = self._managers.get(camera_id)
        outcome = None
        try:
            result = await asyncio.wait_for(manager.reconnect(), session.config.connection_timeout)
            success, error, outcome = result.success, result.error, result.outcome
        except asyncio.TimeoutError:
            success, error = False, f"attempt timed out after {session.config.connection_timeout}s"
        except Exception as e:
            success, error = False, str(e) or type(e).__name__

        # Session stopped or replaced while the attempt was running
        if self._sessions.get(camera_id) is not session:
            return

        if success:
            attempt.success = True
            self._successful_reconnections += 1
            self._sessions.pop(camera_id, None)
            session.state = ReconnectionState.IDLE
            self._publish(session, ReconnectionState.IDLE)
            logger.info(f"[OK] {camera_id} reconnected after {number} attempt(s)")
            return

        attempt.error = error
        session.last_error = error

        if outcome == Outcome.AUTH_FAILED:
            session.state = ReconnectionState.FAILED
            self._publish(session, ReconnectionState.FAILED, error=error)
            logger.error(f"[FAIL] {camera_id}: authentication rejected, not retrying: {error}")
            return

        if number >= session.config.max_attempts:
            session.state = ReconnectionState.FAILED
            self._publish(session, ReconnectionState.FAILED, error=error)
            logger.error(f"[FAIL] {camera_id}: giving up after {number} attempt(s): {error}")
            return

        session.state = ReconnectionState.BACKING_OFF
        self._publish(session, ReconnectionState.BACKING_OFF, next_delay=delay, error=error)
        logger.info(f"[RETRY] {camera_id}: attempt {number} failed ({error}); next in {delay:.1f}s")
        session.cancel_timer()
        session.job = self.scheduler.call_later(delay, lambda: self._attempt(session), name=f"reconnect:{camera_id}")

    def _publish(self, session: ReconnectionSession, state: ReconnectionState,
                 next_delay: Optional[float] = None, error: Optional[str] = None) -> None:
        self.session_events.publish(ReconnectionEvent(
            camera_id=session.camera_id,
            state=state,
            attempt=session.current_attempt,
            next_delay=next_delay,
            error=error
        ))

    # ---------- observation ----------

    def _on_state_event(self, event: ConnectionStateEvent) -> None:
        camera_id = event.camera_id
        session = self._sessions.get(camera_id)

        # Camera came back through an explicit connect: forget the failed session
        if event.state in (ConnectionState.CONNECTED, ConnectionState.AUTHENTICATED) \
                and session is not None and session.state == ReconnectionState.FAILED:
            self._sessions.pop(camera_id, None)
            return

        if not self.global_enabled or session is not None:
            return
        if event.state != ConnectionState.ERROR or event.previous not in LIVE_STATES:
            return
        if event.outcome == Outcome.AUTH_FAILED:
            return

        logger.info(f"{camera_id} dropped from {event.previous.value}; scheduling reconnection")
        self.scheduler.call_later(
            0, lambda: self._start_if_idle(camera_id, "connection lost"), name=f"reconnect-start:{camera_id}"
        )

    async def _start_if_idle(self, camera_id: str, reason: str) -> None:
        if camera_id not in self._sessions:
            await self.start_reconnection(camera_id, reason)

    async def run_health_check(self) -> None:
        """Probe connected cameras without a session; start sessions for unhealthy ones"""
        if not self.global_enabled:
            return
        candidates = [
            (camera_id, manager) for camera_id, manager in self._managers.items()
            if camera_id not in self._sessions and manager.is_connected
        ]
        if not candidates:
            return

        results = await asyncio.gather(
            *(manager.test_connection() for _, manager in candidates), return_exceptions=True
        )
        for (camera_id, _), healthy in zip(candidates, results):
            if healthy is True:
                continue
            logger.warning(f"Health check failed for {camera_id}")
            if camera_id not in self._sessions:
                await self.start_reconnection(camera_id, "health check failed")

    # ---------- queries ----------

    def get_state(self, camera_id: str) -> ReconnectionState:
        session = self._sessions.get(camera_id)
        return session.state if session else ReconnectionState.IDLE

    def get_session(self, camera_id: str) -> Optional[ReconnectionSession]:
        return self._sessions.get(camera_id)

    def active_sessions(self) -> List[ReconnectionSession]:
        return [session for session in self._sessions.values() if session.is_active]

    def statistics(self) -> Dict[str, Any]:
        sessions = list(self._sessions.values())
        return {
            'global_enabled': self.global_enabled,
            'supervised_cameras': len(self._managers),
            'total_sessions': len(sessions),
            'active_sessions': sum(1 for s in sessions if s.is_active),
            'failed_sessions': sum(1 for s in sessions if s.state == ReconnectionState.FAILED),
            'total_attempts': self._total_attempts,
            'successful_reconnections': self._successful_reconnections,
            'sessions': {s.camera_id: s.to_dict() for s in sessions}
        }
