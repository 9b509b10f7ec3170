"""Directorio de Things: store + resolución / auto-aprovisionamiento."""

from .store import InMemoryThingStore, ThingStore
from .thing_directory import (
    DEFAULT_AVAILABILITY_NO,
    DEFAULT_AVAILABILITY_TOPIC,
    DEFAULT_AVAILABILITY_YES,
    DEFAULT_MEASUREMENT_TOPIC,
    ThingDirectory,
    build_new_thing,
)

__all__ = [
    "DEFAULT_AVAILABILITY_NO",
    "DEFAULT_AVAILABILITY_TOPIC",
    "DEFAULT_AVAILABILITY_YES",
    "DEFAULT_MEASUREMENT_TOPIC",
    "InMemoryThingStore",
    "ThingDirectory",
    "ThingStore",
    "build_new_thing",
]
