"""Resolución de identidad y auto-aprovisionamiento de Things por nombre.

- resolve(): búsqueda por nombre único; el alcance de org se aplica
  rechazando Things de otra org (o sin org).
- resolve_or_create(): idempotente bajo concurrencia. La unicidad la
  garantiza el store (NameConflict en insert); quien pierde la carrera
  relee y continúa con el registro del ganador.
"""

from __future__ import annotations

import copy
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Union

from ..core.domain.thing import Org, Thing, ThingType, apply_field_updates
from ..errors import NameConflict, NotFound, StorageError
from .store import ThingStore

logger = logging.getLogger(__name__)

DEFAULT_AVAILABILITY_TOPIC = "available"
DEFAULT_AVAILABILITY_YES = "yes"
DEFAULT_AVAILABILITY_NO = "no"
DEFAULT_MEASUREMENT_TOPIC = "value"

MAX_CREATE_ATTEMPTS = 3


def build_new_thing(
    name: str,
    thing_type: Union[str, ThingType],
    defaults: Optional[Dict[str, Any]] = None,
    *,
    now: Optional[float] = None,
) -> Thing:
    """Construye un Thing nuevo con los valores por defecto de su tipo.

    `defaults` usa las mismas rutas de campo que update_fields
    (p.ej. {"sensor.class": "temperature"}) y se aplica al final.
    """
    thing_type = ThingType.parse(thing_type)
    thing = Thing(name=name, type=thing_type, created=int(now if now is not None else time.time()))

    if thing_type is ThingType.DEVICE:
        thing.availability_topic = DEFAULT_AVAILABILITY_TOPIC
        thing.availability_yes = DEFAULT_AVAILABILITY_YES
        thing.availability_no = DEFAULT_AVAILABILITY_NO
    elif thing_type is ThingType.SENSOR:
        thing.sensor.measurement_topic = DEFAULT_MEASUREMENT_TOPIC

    if defaults:
        doc = apply_field_updates(thing.to_document(), copy.deepcopy(defaults))
        # name y type son inmutables
        doc["name"] = name
        doc["type"] = thing_type.value
        thing = Thing.from_document(doc)

    return thing


class ThingDirectory:
    """Directorio de Things respaldado por un ThingStore."""

    def __init__(
        self,
        store: ThingStore,
        *,
        clock: Callable[[], float] = time.time,
        max_create_attempts: int = MAX_CREATE_ATTEMPTS,
    ):
        self._store = store
        self._clock = clock
        self._max_create_attempts = max_create_attempts

    @property
    def store(self) -> ThingStore:
        return self._store

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve(self, name: str, org_id: Optional[str] = None) -> Thing:
        """Resuelve un Thing por nombre.

        Si se indica `org_id`, un Thing de otra org o sin org se trata
        como inexistente.

        Raises:
            NotFound
        """
        thing = self._store.find_by_name(name)
        if thing is None:
            raise NotFound(f"Thing {name!r} does not exist")
        if org_id is not None and thing.org_id != org_id:
            raise NotFound(f"Thing {name!r} does not belong to org {org_id!r}")
        return thing

    def get(self, thing_id: str) -> Thing:
        thing = self._store.find_by_id(thing_id)
        if thing is None:
            raise NotFound(f"Thing {thing_id!r} does not exist")
        return thing

    def refresh(self, thing: Thing) -> Thing:
        """Relee el estado actual del Thing desde el store."""
        if thing.id is None:
            return self.resolve(thing.name)
        return self.get(thing.id)

    def resolve_or_create(
        self,
        name: str,
        thing_type: Union[str, ThingType],
        defaults: Optional[Dict[str, Any]] = None,
    ) -> Thing:
        """Devuelve el Thing existente o lo crea con los valores por defecto.

        Raises:
            ValidationError: tipo desconocido
            StorageError: el store falla o la carrera no converge
        """
        thing_type = ThingType.parse(thing_type)

        for attempt in range(1, self._max_create_attempts + 1):
            existing = self._store.find_by_name(name)
            if existing is not None:
                if existing.type is not thing_type:
                    logger.warning(
                        "[DIRECTORY] Thing %s exists with type=%s (requested %s)",
                        name, existing.type.value, thing_type.value,
                    )
                return existing

            candidate = build_new_thing(name, thing_type, defaults, now=self._clock())
            try:
                created = self._store.insert(candidate)
            except NameConflict:
                logger.info(
                    "[DIRECTORY] Create race lost name=%s attempt=%d, re-reading",
                    name, attempt,
                )
                continue

            logger.info("[DIRECTORY] Created thing name=%s type=%s", name, thing_type.value)
            return created

        raise StorageError(f"Could not resolve or create thing {name!r}")

    def create(self, name: str, thing_type: Union[str, ThingType]) -> Thing:
        """Crea un Thing explícitamente (falla si el nombre ya existe).

        Raises:
            ValidationError, NameConflict
        """
        thing_type = ThingType.parse(thing_type)
        logger.info("[DIRECTORY] Creating thing %s of type %s", name, thing_type.value)
        return self._store.insert(Thing(name=name, type=thing_type, created=int(self._clock())))

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def update(self, thing: Thing, fields: Dict[str, Any]) -> None:
        if not fields:
            return
        if thing.id is None:
            raise NotFound(f"Thing {thing.name!r} has no id")
        self._store.update_fields(thing.id, fields)

    def liveness_fields(self, now: Optional[float] = None) -> Dict[str, Any]:
        """Campos de vida que toca toda ingesta exitosa: LastSeen y Available."""
        return {"last_seen": int(now if now is not None else self._clock()), "available": True}

    def rename(self, thing_id: str, new_name: str) -> Thing:
        """Renombra un Thing verificando que el nombre nuevo no esté en uso.

        Raises:
            NotFound, NameConflict
        """
        thing = self.get(thing_id)
        if self._store.find_by_name_and_id_ne(new_name, thing_id) is not None:
            raise NameConflict(new_name)
        self._store.update_fields(thing_id, {"name": new_name})
        logger.info("[DIRECTORY] Renamed thing %s -> %s", thing.name, new_name)
        return self.get(thing_id)

    # ------------------------------------------------------------------
    # Orgs
    # ------------------------------------------------------------------

    def resolve_org(self, key: str) -> Optional[Org]:
        return self._store.find_org(key)

    def things_in_org(self, org_id: str) -> List[Thing]:
        return self._store.find_by_org(org_id)

    def all_things(self) -> List[Thing]:
        return self._store.find_all()
