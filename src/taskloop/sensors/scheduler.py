"""Sensor registry, cadence leases and the concurrent scheduler tick."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Iterator
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum

from taskloop.storage.common import utc_now
from taskloop.tasks.models import SensorLease
from taskloop.tasks.repository import TaskStore

logger = logging.getLogger(__name__)

_NEVER_RAN = datetime(1970, 1, 1, tzinfo=UTC)


class SensorStatus(str, Enum):
    """Per-sensor tick result."""

    OK = "ok"
    SKIP = "skip"
    ERROR = "error"


@dataclass(slots=True, frozen=True)
class Sensor:
    """A named, self-gating check that may enqueue tasks.

    ``run`` returns ``"skip"`` when the sensor was gated out; any other return
    value counts as ok. Exceptions are reported as errors.
    """

    name: str
    interval_minutes: int
    run: Callable[[], str | None]


@dataclass(slots=True)
class SensorReport:
    name: str
    status: SensorStatus
    duration_ms: int
    error: str | None = None


class SensorRegistry:
    """Explicit, ordered set of sensors assembled at startup."""

    def __init__(self, sensors: Iterable[Sensor] = ()) -> None:
        self._sensors: dict[str, Sensor] = {}
        for sensor in sensors:
            self.register(sensor)

    def register(self, sensor: Sensor) -> None:
        if sensor.name in self._sensors:
            raise ValueError(f"Sensor already registered: {sensor.name}")
        if sensor.interval_minutes <= 0:
            raise ValueError(f"Sensor {sensor.name} interval must be > 0 minutes.")
        self._sensors[sensor.name] = sensor

    def names(self) -> list[str]:
        return list(self._sensors)

    def __iter__(self) -> Iterator[Sensor]:
        return iter(list(self._sensors.values()))

    def __len__(self) -> int:
        return len(self._sensors)


class SensorLeases:
    """Cadence gate backed by the per-sensor lease records in the store."""

    def __init__(self, store: TaskStore, *, clock: Callable[[], datetime] = utc_now) -> None:
        self.store = store
        self._clock = clock

    def claim_sensor_run(self, name: str, interval_minutes: int) -> bool:
        """Claim this run window; ``False`` (and no write) while the last claim is fresh."""

        now = self._clock()
        lease = self.store.read_sensor_lease(name)
        if lease is not None and now < lease.last_ran + timedelta(minutes=interval_minutes):
            return False
        self.store.write_sensor_lease(
            SensorLease(
                name=name,
                last_ran=now,
                last_result=SensorStatus.OK.value,
                version=(lease.version if lease is not None else 0) + 1,
                consecutive_failures=0,
            ),
        )
        return True

    def record_failure(self, name: str) -> SensorLease:
        lease = self.store.read_sensor_lease(name)
        updated = SensorLease(
            name=name,
            last_ran=lease.last_ran if lease is not None else _NEVER_RAN,
            last_result=SensorStatus.ERROR.value,
            version=(lease.version if lease is not None else 0) + 1,
            consecutive_failures=(lease.consecutive_failures if lease is not None else 0) + 1,
        )
        self.store.write_sensor_lease(updated)
        return updated

    def record_success(self, name: str) -> None:
        """Reset the failure streak; no write when there is none."""

        lease = self.store.read_sensor_lease(name)
        if lease is None or lease.consecutive_failures == 0:
            return
        self.store.write_sensor_lease(
            SensorLease(
                name=name,
                last_ran=lease.last_ran,
                last_result=SensorStatus.OK.value,
                version=lease.version + 1,
                consecutive_failures=0,
            ),
        )


class SensorScheduler:
    """Runs every registered sensor concurrently, isolating failures per sensor."""

    def __init__(
        self,
        registry: SensorRegistry,
        leases: SensorLeases,
        *,
        max_workers: int = 8,
    ) -> None:
        self.registry = registry
        self.leases = leases
        self.max_workers = max_workers

    def run_tick(self) -> list[SensorReport]:
        sensors = list(self.registry)
        if not sensors:
            logger.info("Ran 0 sensors")
            return []

        started = time.monotonic()
        workers = max(1, min(self.max_workers, len(sensors)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="sensor") as executor:
            futures = [executor.submit(self._run_sensor, sensor) for sensor in sensors]
            reports = [future.result() for future in futures]

        for report in reports:
            detail = f" ({report.error})" if report.error else ""
            logger.info(
                "Sensor %s: %s %dms%s",
                report.name,
                report.status.value,
                report.duration_ms,
                detail,
            )
        logger.info(
            "Ran %d sensor(s) in %dms",
            len(reports),
            int((time.monotonic() - started) * 1000),
        )
        return reports

    def _run_sensor(self, sensor: Sensor) -> SensorReport:
        started = time.monotonic()
        try:
            result = sensor.run()
        except Exception as error:  # noqa: BLE001
            logger.exception("Sensor %s failed", sensor.name)
            self._record_failure(sensor.name)
            return SensorReport(
                name=sensor.name,
                status=SensorStatus.ERROR,
                duration_ms=_elapsed_ms(started),
                error=str(error) or type(error).__name__,
            )
        status = SensorStatus.SKIP if result == SensorStatus.SKIP.value else SensorStatus.OK
        if status is SensorStatus.OK:
            try:
                self.leases.record_success(sensor.name)
            except Exception:  # noqa: BLE001
                logger.exception("Cannot reset failure counter for sensor %s", sensor.name)
        return SensorReport(name=sensor.name, status=status, duration_ms=_elapsed_ms(started))

    def _record_failure(self, name: str) -> None:
        try:
            lease = self.leases.record_failure(name)
        except Exception:  # noqa: BLE001
            logger.exception("Cannot record failure for sensor %s", name)
            return
        if lease.consecutive_failures > 1:
            logger.warning(
                "Sensor %s has failed %d times in a row",
                name,
                lease.consecutive_failures,
            )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
