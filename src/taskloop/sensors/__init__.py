"""Sensor registry and scheduler."""

from taskloop.sensors.scheduler import (
    Sensor,
    SensorLeases,
    SensorRegistry,
    SensorReport,
    SensorScheduler,
    SensorStatus,
)

__all__ = [
    "Sensor",
    "SensorLeases",
    "SensorRegistry",
    "SensorReport",
    "SensorScheduler",
    "SensorStatus",
]
