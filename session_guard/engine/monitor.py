from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Deque, Dict, Iterable, List, Optional, Tuple

from ..core.models import (
    EvaluationResult,
    MonitorConfig,
    Rule,
    Server,
    ServerUser,
    Session,
    SessionContext,
    SessionState,
    SessionStopResult,
    ensure_utc,
    utc_now,
)
from ..core.rules import RuleEngine
from ..logging_config import get_logger
from . import state_tracker
from .circuit_breaker import CircuitBreaker

logger = get_logger("session_guard.monitor")

ResultCallback = Callable[[EvaluationResult, Session], Awaitable[None]]


class SessionMonitor:
    """
    Orchestrator: wires the session state tracker, RuleEngine and CircuitBreaker
    together behind an async telemetry interface for one media server.

    Responsibilities
    ----------------
    1. Keep the live sessions of the server and a bounded stopped-session
       history per user.
    2. Serialise every mutation of a session behind its own asyncio.Lock.
    3. On session start, link resumed playback to its chain and evaluate the
       ruleset; matches are queued in a micro-batch.
    4. Every ``config.sweep_interval_seconds``, hand queued matches to the
       result callback (guarded by CircuitBreaker), force-stop silent
       sessions and prune old history.
    """

    def __init__(
        self,
        server: Server,
        rules: Iterable[Rule] = (),
        config: MonitorConfig = MonitorConfig(),
        result_callback: Optional[ResultCallback] = None,
        rule_engine: Optional[RuleEngine] = None,
    ) -> None:
        self._server = server
        self._rules: List[Rule] = list(rules)
        self._config = config
        self._result_callback = result_callback
        self._engine = rule_engine or RuleEngine()

        self._active: Dict[str, Session] = {}
        self._users: Dict[str, ServerUser] = {}
        # server_user_id -> stopped sessions, oldest first
        self._history: Dict[str, Deque[Session]] = defaultdict(deque)
        # Locks exist only for active sessions; _stop_locked removes them.
        self._session_locks: Dict[str, asyncio.Lock] = {}

        self._pending: List[Tuple[EvaluationResult, Session]] = []
        self._batch_lock = asyncio.Lock()

        self._sweep_task: Optional[asyncio.Task] = None
        self._running = False

        self._circuit_breaker = CircuitBreaker(
            threshold=config.circuit_breaker_threshold,
            cooldown_seconds=config.circuit_breaker_cooldown_seconds,
        )

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    @property
    def active_sessions(self) -> List[Session]:
        return list(self._active.values())

    def recent_sessions(self, server_user_id: str) -> List[Session]:
        return list(self._history.get(server_user_id, ()))

    def set_rules(self, rules: Iterable[Rule]) -> None:
        """Swap the ruleset; evaluations already in flight keep the old one."""
        self._rules = list(rules)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Spawn the background flush-and-sweep loop."""
        self._running = True
        self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        """Cancel the loop, then dispatch whatever is still queued."""
        self._running = False
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
        await self._flush_pending()

    # ------------------------------------------------------------------
    # Telemetry ingestion
    # ------------------------------------------------------------------

    async def start_session(
        self,
        session: Session,
        server_user: ServerUser,
        now: Optional[datetime] = None,
    ) -> List[EvaluationResult]:
        """
        Register a new session and evaluate the ruleset against it.

        Returns the matched results; they are also queued for the callback.
        """
        now = ensure_utc(now) if now else utc_now()

        async with self._session_locks.setdefault(session.id, asyncio.Lock()):
            if session.last_seen_at is None:
                session = session.model_copy(update={"last_seen_at": now})

            if session.reference_id is None:
                reference_id = self._resume_reference(session, now)
                if reference_id is not None:
                    session = session.model_copy(update={"reference_id": reference_id})

            self._users[server_user.id] = server_user
            self._active[session.id] = session

            context = SessionContext(
                session=session,
                server_user=server_user,
                server=self._server,
                active_sessions=self.active_sessions,
                recent_sessions=self.recent_sessions(server_user.id),
                now=now,
            )

        results = await self._engine.evaluate_rules_async(context, self._rules)
        if results:
            async with self._batch_lock:
                self._pending.extend((result, session) for result in results)
            logger.info(
                "Rules matched",
                session_id=session.id,
                server_user_id=session.server_user_id,
                rule_ids=[r.rule_id for r in results],
            )
        return results

    async def update_session(
        self,
        session_id: str,
        new_state: SessionState | str,
        progress_ms: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Optional[Session]:
        """
        Apply one telemetry tick. A ``stopped`` state stops the session.

        Unknown session ids and unknown states are logged and ignored.
        """
        now = ensure_utc(now) if now else utc_now()

        try:
            state = SessionState(new_state)
        except ValueError:
            logger.warning("Telemetry with unknown state", session_id=session_id, state=str(new_state))
            return None

        lock = self._session_locks.get(session_id)
        if lock is None:
            logger.warning("Telemetry for unknown session", session_id=session_id)
            return None

        async with lock:
            session = self._active.get(session_id)
            if session is None:
                logger.warning("Telemetry for unknown session", session_id=session_id)
                return None

            updated = state_tracker.apply_state_change(session, state, now, progress_ms)
            if updated.state == SessionState.STOPPED:
                return self._stop_locked(updated, now, force_stopped=False).session

            self._active[session_id] = updated
            return updated

    async def stop_session(
        self,
        session_id: str,
        stopped_at: Optional[datetime] = None,
        force_stopped: bool = False,
    ) -> Optional[SessionStopResult]:
        stopped_at = ensure_utc(stopped_at) if stopped_at else utc_now()

        lock = self._session_locks.get(session_id)
        if lock is None:
            logger.warning("Stop for unknown session", session_id=session_id)
            return None

        async with lock:
            session = self._active.get(session_id)
            if session is None:
                logger.warning("Stop for unknown session", session_id=session_id)
                return None
            return self._stop_locked(session, stopped_at, force_stopped)

    async def sweep_stale_sessions(self, now: Optional[datetime] = None) -> List[SessionStopResult]:
        """
        Force-stop every session whose telemetry has gone silent.

        A stale session is stopped at its last-seen time, so the silent tail
        does not count as watch time.
        """
        now = ensure_utc(now) if now else utc_now()
        timeout = self._config.limits.stale_session_timeout_seconds
        stopped: List[SessionStopResult] = []

        for session_id in list(self._active):
            lock = self._session_locks.get(session_id)
            if lock is None:
                continue
            async with lock:
                session = self._active.get(session_id)
                if session is None:
                    continue
                last_seen = session.last_seen_at or session.started_at
                if not state_tracker.should_force_stop_stale_session(last_seen, timeout, now):
                    continue
                logger.info("Force-stopping stale session", session_id=session_id)
                stopped.append(self._stop_locked(session, last_seen, force_stopped=True))

        self._prune_history(now)
        return stopped

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _resume_reference(self, session: Session, now: datetime) -> Optional[str]:
        if session.rating_key is None:
            return None
        for previous in reversed(self._history.get(session.server_user_id, ())):
            if previous.rating_key == session.rating_key:
                return state_tracker.should_group_with_previous_session(
                    previous,
                    session.progress_ms or 0,
                    now=now,
                    limits=self._config.limits,
                )
        return None

    def _stop_locked(
        self, session: Session, stopped_at: datetime, force_stopped: bool
    ) -> SessionStopResult:
        """Caller must hold the session's lock."""
        watch_threshold = self._config.watch_thresholds.get(session.media_type or "")
        result = state_tracker.stop_session(
            session,
            stopped_at,
            force_stopped=force_stopped,
            limits=self._config.limits,
            watch_threshold=watch_threshold,
        )
        self._active.pop(session.id, None)
        self._session_locks.pop(session.id, None)
        self._history[session.server_user_id].append(result.session)
        return result

    def _prune_history(self, now: datetime) -> None:
        """Drop history older than recent_history_hours or beyond max_recent_sessions."""
        cutoff = now - timedelta(hours=self._config.recent_history_hours)
        for user_id in list(self._history):
            history = self._history[user_id]
            while history and (history[0].stopped_at or history[0].started_at) < cutoff:
                history.popleft()
            while len(history) > self._config.max_recent_sessions:
                history.popleft()
            if not history:
                del self._history[user_id]

    async def _sweep_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._config.sweep_interval_seconds)
            await self._flush_pending()
            await self.sweep_stale_sessions()

    async def _flush_pending(self) -> None:
        """
        Drain queued matches into the result callback.

        While the breaker is open the queue is left intact for a later flush.
        A failing callback is logged and counted; its match is dropped.
        If the flush is cancelled mid-batch, undelivered matches are re-queued.
        """
        async with self._batch_lock:
            if self._result_callback is None:
                self._pending.clear()
                return
            if self._circuit_breaker.is_open:
                return
            batch = self._pending[:]
            self._pending.clear()

        index = 0
        try:
            for index, (result, session) in enumerate(batch):
                if self._circuit_breaker.is_open:
                    async with self._batch_lock:
                        self._pending[:0] = batch[index:]
                    return
                try:
                    await self._result_callback(result, session)
                    self._circuit_breaker.record_success()
                except Exception as exc:
                    self._circuit_breaker.record_failure()
                    logger.error(
                        "Result dispatch failed",
                        rule_id=result.rule_id,
                        session_id=session.id,
                        error=str(exc),
                    )
        except asyncio.CancelledError:
            # The interrupted match and everything after it go back to the
            # front of the queue for stop() to drain. No await before raise.
            self._pending[:0] = batch[index:]
            logger.info("Dispatch interrupted, re-queued matches", requeued=len(batch) - index)
            raise
