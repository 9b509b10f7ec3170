"""Modelo de dominio de Things (dispositivos, sensores, switches).

Un Thing lleva exactamente una variante de datos según su tipo:
- device → DeviceData (telemetría, localización)
- sensor → SensorData (medición, unidad, sinks)
- switch → SwitchData (estado, comandos)

Los accesores `device`, `sensor` y `switch` devuelven None para la variante
que no corresponde, así que leer o escribir la variante equivocada es inerte.

El formato documento (to_document / from_document) usa las mismas rutas de
campo que las actualizaciones parciales del store (p.ej. `sensor.measurement_topic`).
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Union

from ...errors import ValidationError


class ThingType(str, Enum):
    DEVICE = "device"
    SENSOR = "sensor"
    SWITCH = "switch"

    @classmethod
    def parse(cls, value: Union[str, "ThingType"]) -> "ThingType":
        if isinstance(value, ThingType):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValidationError(f"Unknown type of Thing: {value!r}") from None


THING_CLASS_TEMPERATURE = "temperature"
THING_CLASS_HUMIDITY = "humidity"
THING_CLASS_PRESSURE = "pressure"

DEFAULT_UNITS: Dict[str, str] = {
    THING_CLASS_TEMPERATURE: "C",
    THING_CLASS_HUMIDITY: "%",
    THING_CLASS_PRESSURE: "hPa",
}

DEFAULT_LOCATION_LAT_VALUE = "lat"
DEFAULT_LOCATION_LNG_VALUE = "lng"


@dataclass
class Location:
    latitude: float = 0.0
    longitude: float = 0.0


@dataclass
class DeviceData:
    telemetry_topic: str = ""
    telemetry: str = ""
    location_topic: str = ""
    location: Optional[Location] = None
    # Plantillas para extraer cada coordenada del payload JSON
    location_lat_value: str = ""
    location_lng_value: str = ""

    @property
    def lat_template(self) -> str:
        return self.location_lat_value or DEFAULT_LOCATION_LAT_VALUE

    @property
    def lng_template(self) -> str:
        return self.location_lng_value or DEFAULT_LOCATION_LNG_VALUE

    def to_document(self) -> Dict[str, Any]:
        doc: Dict[str, Any] = {
            "telemetry_topic": self.telemetry_topic,
            "telemetry": self.telemetry,
            "location_topic": self.location_topic,
            "location_lat_value": self.location_lat_value,
            "location_lng_value": self.location_lng_value,
        }
        if self.location is not None:
            doc["location"] = {
                "latitude": self.location.latitude,
                "longitude": self.location.longitude,
            }
        return doc

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "DeviceData":
        location = None
        loc = doc.get("location")
        if isinstance(loc, dict):
            location = Location(
                latitude=float(loc.get("latitude") or 0.0),
                longitude=float(loc.get("longitude") or 0.0),
            )
        return cls(
            telemetry_topic=doc.get("telemetry_topic") or "",
            telemetry=doc.get("telemetry") or "",
            location_topic=doc.get("location_topic") or "",
            location=location,
            location_lat_value=doc.get("location_lat_value") or "",
            location_lng_value=doc.get("location_lng_value") or "",
        )


@dataclass
class SensorData:
    measurement_topic: str = ""
    # Plantilla de ruta (vacía = el payload es el valor literal)
    measurement_value: str = ""
    value: str = ""
    measurement_last: int = 0
    sensor_class: str = ""
    unit: str = ""
    # Segundos tras los cuales la última medición se considera caducada
    validity: int = 0
    store_influxdb: bool = False
    store_mysqldb: bool = False
    store_mysqldb_interval: int = 0

    @property
    def effective_unit(self) -> str:
        return self.unit or DEFAULT_UNITS.get(self.sensor_class, "")

    def is_valid(self, now: float) -> bool:
        if not self.measurement_last:
            return False
        if self.validity <= 0:
            return True
        return now - self.measurement_last <= self.validity

    def to_document(self) -> Dict[str, Any]:
        return {
            "measurement_topic": self.measurement_topic,
            "measurement_value": self.measurement_value,
            "value": self.value,
            "measurement_last": self.measurement_last,
            "class": self.sensor_class,
            "unit": self.unit,
            "validity": self.validity,
            "store_influxdb": self.store_influxdb,
            "store_mysqldb": self.store_mysqldb,
            "store_mysqldb_interval": self.store_mysqldb_interval,
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "SensorData":
        return cls(
            measurement_topic=doc.get("measurement_topic") or "",
            measurement_value=doc.get("measurement_value") or "",
            value=doc.get("value") or "",
            measurement_last=int(doc.get("measurement_last") or 0),
            sensor_class=doc.get("class") or "",
            unit=doc.get("unit") or "",
            validity=int(doc.get("validity") or 0),
            store_influxdb=bool(doc.get("store_influxdb", False)),
            store_mysqldb=bool(doc.get("store_mysqldb", False)),
            store_mysqldb_interval=int(doc.get("store_mysqldb_interval") or 0),
        )


@dataclass
class SwitchData:
    state: bool = False
    state_topic: str = ""
    state_on: str = ""
    state_off: str = ""
    command_topic: str = ""
    command_on: str = ""
    command_off: str = ""
    store_influxdb: bool = False

    def to_document(self) -> Dict[str, Any]:
        return {
            "state": self.state,
            "state_topic": self.state_topic,
            "state_on": self.state_on,
            "state_off": self.state_off,
            "command_topic": self.command_topic,
            "command_on": self.command_on,
            "command_off": self.command_off,
            "store_influxdb": self.store_influxdb,
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "SwitchData":
        return cls(
            state=bool(doc.get("state", False)),
            state_topic=doc.get("state_topic") or "",
            state_on=doc.get("state_on") or "",
            state_off=doc.get("state_off") or "",
            command_topic=doc.get("command_topic") or "",
            command_on=doc.get("command_on") or "",
            command_off=doc.get("command_off") or "",
            store_influxdb=bool(doc.get("store_influxdb", False)),
        )


ThingData = Union[DeviceData, SensorData, SwitchData]

_VARIANTS = {
    ThingType.DEVICE: DeviceData,
    ThingType.SENSOR: SensorData,
    ThingType.SWITCH: SwitchData,
}


@dataclass
class Org:
    name: str
    id: Optional[str] = None
    created: int = 0


@dataclass
class Thing:
    name: str
    type: ThingType
    id: Optional[str] = None
    org_id: Optional[str] = None
    alias: str = ""
    enabled: bool = False
    created: int = field(default_factory=lambda: int(time.time()))
    available: bool = False
    last_seen: int = 0
    # Segundos sin actividad tras los cuales el Thing se marca no disponible (0 = nunca)
    last_seen_interval: int = 0

    availability_topic: str = ""
    availability_yes: str = ""
    availability_no: str = ""

    data: Optional[ThingData] = None

    def __post_init__(self) -> None:
        self.type = ThingType.parse(self.type)
        expected = _VARIANTS[self.type]
        if not isinstance(self.data, expected):
            self.data = expected()

    # ------------------------------------------------------------------
    # Variant accessors (fail closed)
    # ------------------------------------------------------------------

    @property
    def device(self) -> Optional[DeviceData]:
        return self.data if self.type is ThingType.DEVICE else None

    @property
    def sensor(self) -> Optional[SensorData]:
        return self.data if self.type is ThingType.SENSOR else None

    @property
    def switch(self) -> Optional[SwitchData]:
        return self.data if self.type is ThingType.SWITCH else None

    @property
    def assigned(self) -> bool:
        """True si el Thing pertenece a una org (participa en eco y fan-out)."""
        return bool(self.org_id)

    # ------------------------------------------------------------------
    # Document format
    # ------------------------------------------------------------------

    def to_document(self) -> Dict[str, Any]:
        doc: Dict[str, Any] = {
            "name": self.name,
            "type": self.type.value,
            "org_id": self.org_id,
            "alias": self.alias,
            "enabled": self.enabled,
            "created": self.created,
            "available": self.available,
            "last_seen": self.last_seen,
            "last_seen_interval": self.last_seen_interval,
            "availability_topic": self.availability_topic,
            "availability_yes": self.availability_yes,
            "availability_no": self.availability_no,
        }
        if self.type is ThingType.DEVICE:
            doc.update(self.data.to_document())
        else:
            doc[self.type.value] = self.data.to_document()
        return doc

    @classmethod
    def from_document(cls, doc: Dict[str, Any], thing_id: Optional[str] = None) -> "Thing":
        thing_type = ThingType.parse(doc.get("type") or "")
        if thing_type is ThingType.DEVICE:
            data: ThingData = DeviceData.from_document(doc)
        elif thing_type is ThingType.SENSOR:
            data = SensorData.from_document(doc.get("sensor") or {})
        else:
            data = SwitchData.from_document(doc.get("switch") or {})

        return cls(
            id=thing_id if thing_id is not None else doc.get("id"),
            name=doc["name"],
            type=thing_type,
            org_id=doc.get("org_id") or None,
            alias=doc.get("alias") or "",
            enabled=bool(doc.get("enabled", False)),
            created=int(doc.get("created") or 0),
            available=bool(doc.get("available", False)),
            last_seen=int(doc.get("last_seen") or 0),
            last_seen_interval=int(doc.get("last_seen_interval") or 0),
            availability_topic=doc.get("availability_topic") or "",
            availability_yes=doc.get("availability_yes") or "",
            availability_no=doc.get("availability_no") or "",
            data=data,
        )


def apply_field_updates(doc: Dict[str, Any], fields: Dict[str, Any]) -> Dict[str, Any]:
    """Aplica actualizaciones parciales con rutas de punto (`sensor.value`).

    Los nodos intermedios que falten se crean como dicts.
    """
    for path, value in fields.items():
        parts = path.split(".")
        node = doc
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[parts[-1]] = value
    return doc
