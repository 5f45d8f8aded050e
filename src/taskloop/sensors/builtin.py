"""Built-in sensors watching the loop's own health and spend."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path

from taskloop.config import Settings
from taskloop.dispatch.lock import is_pid_alive, read_dispatch_lock
from taskloop.sensors.scheduler import Sensor, SensorLeases, SensorRegistry, SensorStatus
from taskloop.storage.common import utc_now
from taskloop.tasks.models import TaskCreate
from taskloop.tasks.repository import TaskStore

logger = logging.getLogger(__name__)

HEARTBEAT_SENSOR = "heartbeat"
HEARTBEAT_INTERVAL_MINUTES = 360
HEARTBEAT_SOURCE = "sensor:heartbeat"

HEALTH_SENSOR = "health"
HEALTH_INTERVAL_MINUTES = 5
HEALTH_SOURCE = "sensor:health"
HEALTH_STALE_LOCK_SOURCE = "sensor:health:stale-lock"
HEALTH_PRIORITY = 9

COST_SENSOR = "cost-alerting"
COST_INTERVAL_MINUTES = 10
COST_PRIORITY = 3

_OK = SensorStatus.OK.value
_SKIP = SensorStatus.SKIP.value


def heartbeat_sensor(store: TaskStore, leases: SensorLeases) -> Sensor:
    """Enqueue a "system alive check" every six hours unless one is still open."""

    def run() -> str:
        if not leases.claim_sensor_run(HEARTBEAT_SENSOR, HEARTBEAT_INTERVAL_MINUTES):
            return _SKIP
        if store.exists_for_source(HEARTBEAT_SOURCE, active_only=True):
            return _SKIP
        store.enqueue(
            TaskCreate(subject="system alive check", source=HEARTBEAT_SOURCE, priority=1),
        )
        return _OK

    return Sensor(name=HEARTBEAT_SENSOR, interval_minutes=HEARTBEAT_INTERVAL_MINUTES, run=run)


def health_sensor(  # noqa: PLR0913
    store: TaskStore,
    leases: SensorLeases,
    *,
    lock_path: Path,
    stale_cycle_minutes: int = 30,
    clock: Callable[[], datetime] = utc_now,
    pid_alive: Callable[[int], bool] = is_pid_alive,
) -> Sensor:
    """Alert when dispatch looks stuck or a dead process left its lock behind."""

    def stale_cycle() -> bool:
        cycles = store.list_recent_cycles(limit=1)
        if not cycles:
            return False
        age = clock() - cycles[0].started_at
        if age <= timedelta(minutes=stale_cycle_minutes):
            return False
        return bool(store.list_pending())

    def stale_lock() -> bool:
        if not lock_path.exists():
            return False
        lock = read_dispatch_lock(lock_path)
        if lock is None:
            return True
        return not pid_alive(lock.owner_pid)

    def run() -> str:
        if not leases.claim_sensor_run(HEALTH_SENSOR, HEALTH_INTERVAL_MINUTES):
            return _SKIP

        if stale_cycle() and not store.exists_for_source(HEALTH_SOURCE, active_only=True):
            store.enqueue(
                TaskCreate(
                    subject="health alert: dispatch stale or stuck",
                    description=(
                        f"The last dispatch cycle started more than {stale_cycle_minutes} "
                        "minutes ago and there are pending tasks. Check `taskloop status`, "
                        "the scheduler timers and the dispatch logs."
                    ),
                    source=HEALTH_SOURCE,
                    priority=HEALTH_PRIORITY,
                ),
            )

        if stale_lock() and not store.exists_for_source(
            HEALTH_STALE_LOCK_SOURCE,
            active_only=True,
        ):
            store.enqueue(
                TaskCreate(
                    subject="health alert: stale dispatch lock detected",
                    description=(
                        f"A dispatch lock file exists at {lock_path} but its owner process is "
                        "no longer alive. The next `taskloop run` discards it."
                    ),
                    source=HEALTH_STALE_LOCK_SOURCE,
                    priority=HEALTH_PRIORITY,
                ),
            )
        return _OK

    return Sensor(name=HEALTH_SENSOR, interval_minutes=HEALTH_INTERVAL_MINUTES, run=run)


def cost_alerting_sensor(
    store: TaskStore,
    leases: SensorLeases,
    *,
    threshold_usd: float = 15.0,
    clock: Callable[[], datetime] = utc_now,
) -> Sensor:
    """One alert per UTC day once the day's task spend crosses the threshold."""

    def run() -> str:
        if not leases.claim_sensor_run(COST_SENSOR, COST_INTERVAL_MINUTES):
            return _SKIP

        now = clock()
        source = f"sensor:cost-alerting:{now:%Y-%m-%d}"
        if store.exists_for_source(source):
            return _SKIP

        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        spend = store.spend_since(day_start)
        if spend.cost_usd < threshold_usd:
            return _OK

        store.enqueue(
            TaskCreate(
                subject=(
                    f"cost alert: daily spend ${spend.cost_usd:.2f} exceeds "
                    f"${threshold_usd:.2f} threshold"
                ),
                description=(
                    f"Daily worker spend has reached ${spend.cost_usd:.2f} "
                    f"(API estimate: ${spend.api_cost_usd:.2f}). "
                    f"Threshold: ${threshold_usd:.2f}/day. "
                    "Review active tasks and consider deferring low-priority work. "
                    "Run `taskloop status` for details."
                ),
                source=source,
                priority=COST_PRIORITY,
            ),
        )
        return _OK

    return Sensor(name=COST_SENSOR, interval_minutes=COST_INTERVAL_MINUTES, run=run)


def build_registry(
    store: TaskStore,
    leases: SensorLeases,
    settings: Settings,
    *,
    clock: Callable[[], datetime] = utc_now,
) -> SensorRegistry:
    """Assemble the enabled built-in sensors in configuration order."""

    factories: dict[str, Callable[[], Sensor]] = {
        HEARTBEAT_SENSOR: lambda: heartbeat_sensor(store, leases),
        HEALTH_SENSOR: lambda: health_sensor(
            store,
            leases,
            lock_path=settings.lock_path,
            stale_cycle_minutes=settings.sensors.health_stale_cycle_minutes,
            clock=clock,
        ),
        COST_SENSOR: lambda: cost_alerting_sensor(
            store,
            leases,
            threshold_usd=settings.sensors.cost_alert_threshold_usd,
            clock=clock,
        ),
    }
    registry = SensorRegistry()
    for name in settings.sensors.enabled:
        factory = factories.get(name)
        if factory is None:
            raise ValueError(
                f"Unknown sensor in TASKLOOP_SENSORS: {name!r}. "
                f"Known sensors: {', '.join(sorted(factories))}.",
            )
        registry.register(factory())
    logger.debug("Registered sensors: %s", ", ".join(registry.names()))
    return registry
