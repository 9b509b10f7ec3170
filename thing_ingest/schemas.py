from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field

from .core.domain.thing import (
    THING_CLASS_HUMIDITY,
    THING_CLASS_PRESSURE,
    THING_CLASS_TEMPERATURE,
)
from .core.extraction.value_extractor import format_number

# Orden de inferencia de clase cuando hay varios campos poblados
READING_CLASSES = (THING_CLASS_TEMPERATURE, THING_CLASS_HUMIDITY, THING_CLASS_PRESSURE)


class SensorReading(BaseModel):
    address: str = Field(..., min_length=1)
    temperature: Optional[float] = Field(default=None, allow_inf_nan=False)
    humidity: Optional[float] = Field(default=None, allow_inf_nan=False)
    pressure: Optional[float] = Field(default=None, allow_inf_nan=False)

    def populated_class(self) -> Optional[str]:
        """Clase inferida del primer campo tipado con valor."""
        for cls in READING_CLASSES:
            if getattr(self, cls) is not None:
                return cls
        return None

    def value_for(self, sensor_class: str = "") -> Optional[str]:
        """Valor canónico para la clase del sensor.

        Si la clase no está poblada en la lectura se usa el primer campo
        con valor.
        """
        if sensor_class in READING_CLASSES:
            raw = getattr(self, sensor_class)
            if raw is not None:
                return format_number(raw)
        cls = self.populated_class()
        if cls is None:
            return None
        return format_number(getattr(self, cls))


class DevicePacket(BaseModel):
    device: str = Field(..., min_length=1)
    wifi_ssid: Optional[str] = None
    readings: List[SensorReading] = Field(default_factory=list)


class PacketIngestResult(BaseModel):
    accepted: bool
    device: str
    readings: int
