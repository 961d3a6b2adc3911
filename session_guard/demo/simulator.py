from __future__ import annotations

import asyncio
import os
from datetime import timedelta
from typing import List, Tuple

from ..core.models import (
    Condition,
    ConditionGroup,
    EvaluationResult,
    MonitorConfig,
    Rule,
    RuleActions,
    RuleConditions,
    Server,
    ServerUser,
    Session,
    utc_now,
)
from ..engine import SessionMonitor
from ..logging_config import configure_logging


async def run_simulation(
    monitor: SessionMonitor,
    sessions: List[Tuple[Session, ServerUser]],
    inter_event_delay: float = 0.01,
) -> None:
    """
    Push session starts into the monitor as if they arrived from a poller.
    In production this is driven by the media-server polling job.
    """
    for session, server_user in sessions:
        await monitor.start_session(session, server_user, now=session.started_at)
        await asyncio.sleep(inter_event_delay)


def build_demo_rules() -> List[Rule]:
    return [
        Rule(
            id="simultaneous-locations",
            name="Simultaneous locations",
            conditions=RuleConditions(groups=[
                ConditionGroup(conditions=[
                    Condition(field="active_session_distance_km", operator="gt", value=500),
                ]),
            ]),
            actions=RuleActions(actions=[
                {"type": "create_violation", "severity": "high"},
                {"type": "notify", "channels": ["push"]},
            ]),
        ),
        Rule(
            id="concurrent-streams",
            name="Too many streams",
            conditions=RuleConditions(groups=[
                ConditionGroup(conditions=[
                    Condition(field="concurrent_streams", operator="gte", value=3),
                ]),
                ConditionGroup(conditions=[
                    Condition(field="is_local_network", operator="eq", value=False),
                ]),
            ]),
            actions=RuleActions(actions=[{"type": "create_violation", "severity": "warning"}]),
        ),
        Rule(
            id="geo-restriction",
            name="Blocked country",
            conditions=RuleConditions(groups=[
                ConditionGroup(conditions=[
                    Condition(field="country", operator="in", value=["KP", "IR"]),
                ]),
            ]),
            actions=RuleActions(actions=[{"type": "log_only", "message": "Blocked country"}]),
        ),
    ]


def build_demo_sessions() -> List[Tuple[Session, ServerUser]]:
    now = utc_now()
    alice = ServerUser(id="user-alice", username="alice", trust_score=90,
                       created_at=now - timedelta(days=400))
    bob = ServerUser(id="user-bob", username="bob", trust_score=70,
                     created_at=now - timedelta(days=20))

    def session(sid: str, user: ServerUser, offset_s: int, **fields) -> Session:
        return Session(id=sid, server_user_id=user.id, server_id="server-1",
                       media_type="movie", started_at=now + timedelta(seconds=offset_s),
                       **fields)

    return [
        # alice: New York, then London a minute later, then a third device
        (session("s-1", alice, 0, ip_address="24.29.18.175", geo_lat=40.7128,
                 geo_lon=-74.0060, geo_country="US", device="Living Room TV"), alice),
        (session("s-2", alice, 60, ip_address="81.2.69.160", geo_lat=51.5074,
                 geo_lon=-0.1278, geo_country="GB", device="iPhone", platform="iOS"), alice),
        (session("s-3", alice, 120, ip_address="81.2.69.192", geo_lat=51.5074,
                 geo_lon=-0.1278, geo_country="GB", device="Chrome", platform="Windows"), alice),
        # bob: a single stream from a blocked country
        (session("s-4", bob, 30, ip_address="175.45.176.3", geo_country="KP",
                 device="Android TV", platform="Android TV"), bob),
    ]


async def main() -> None:
    """End-to-end demo over an in-memory scripted scenario."""
    configure_logging(os.environ.get("SESSION_GUARD_LOG_LEVEL", "warning"))

    config = MonitorConfig(sweep_interval_seconds=0.5)
    alerts: List[EvaluationResult] = []

    async def on_result(result: EvaluationResult, session: Session) -> None:
        alerts.append(result)
        actions = ", ".join(a.type for a in result.actions)
        print(
            f"[ALERT] {result.rule_name} | user={session.server_user_id} | "
            f"session={session.id} | groups={result.matched_groups} | actions={actions}"
        )

    monitor = SessionMonitor(
        server=Server(id="server-1", name="Home Plex", type="plex"),
        rules=build_demo_rules(),
        config=config,
        result_callback=on_result,
    )

    await monitor.start()
    try:
        await run_simulation(monitor, build_demo_sessions(), inter_event_delay=0.05)
        await asyncio.sleep(config.sweep_interval_seconds + 0.1)
    finally:
        await monitor.stop()

    print(f"\nTotal alerts generated: {len(alerts)}")


def run_main() -> None:
    """Synchronous entry point for the console script."""
    asyncio.run(main())  # pragma: no cover - exercised by console script


if __name__ == "__main__":  # pragma: no cover
    run_main()
