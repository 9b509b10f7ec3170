"""Domain layer - Things, orgs y variantes."""

from .interfaces import BusClient, MeasurementSink, MessageHandler
from .thing import (
    DEFAULT_UNITS,
    THING_CLASS_HUMIDITY,
    THING_CLASS_PRESSURE,
    THING_CLASS_TEMPERATURE,
    DeviceData,
    Location,
    Org,
    SensorData,
    SwitchData,
    Thing,
    ThingType,
    apply_field_updates,
)

__all__ = [
    "BusClient",
    "MeasurementSink",
    "MessageHandler",
    "DEFAULT_UNITS",
    "THING_CLASS_HUMIDITY",
    "THING_CLASS_PRESSURE",
    "THING_CLASS_TEMPERATURE",
    "DeviceData",
    "Location",
    "Org",
    "SensorData",
    "SwitchData",
    "Thing",
    "ThingType",
    "apply_field_updates",
]
