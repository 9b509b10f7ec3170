"""Interface del store de documentos de Things y una implementación en memoria.

Implementations:
- InMemoryThingStore: tests y desarrollo local
- SqlThingStore (infrastructure.persistence): SQLAlchemy, nombre único a nivel de BD
"""

from __future__ import annotations

import copy
import threading
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from ..core.domain.thing import Org, Thing, apply_field_updates
from ..errors import NameConflict, NotFound


class ThingStore(ABC):
    """Persistencia de Things y orgs.

    `insert` debe apoyarse en una restricción de unicidad sobre `name` y
    fallar con NameConflict, no en un check-then-insert de aplicación.
    """

    @abstractmethod
    def find_by_name(self, name: str) -> Optional[Thing]:
        pass

    @abstractmethod
    def find_by_name_and_id_ne(self, name: str, exclude_id: str) -> Optional[Thing]:
        """Busca otro Thing con el mismo nombre (chequeo de unicidad)."""

    @abstractmethod
    def find_by_id(self, thing_id: str) -> Optional[Thing]:
        pass

    @abstractmethod
    def find_by_org(self, org_id: str) -> List[Thing]:
        pass

    @abstractmethod
    def find_all(self) -> List[Thing]:
        pass

    @abstractmethod
    def insert(self, thing: Thing) -> Thing:
        """Inserta y devuelve el Thing con `id` asignado.

        Raises:
            NameConflict: ya existe un Thing con ese nombre
        """

    @abstractmethod
    def update_fields(self, thing_id: str, fields: Dict[str, Any]) -> None:
        """Actualización parcial con rutas de punto (`sensor.value`).

        Raises:
            NotFound: el Thing no existe
        """

    @abstractmethod
    def find_org(self, key: str) -> Optional[Org]:
        """Resuelve una org por id o, si no, por nombre."""

    @abstractmethod
    def insert_org(self, org: Org) -> Org:
        pass

    def health_check(self) -> dict:
        return {"healthy": True}


class InMemoryThingStore(ThingStore):
    """Store en memoria; guarda documentos, no objetos, para imitar al store real."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._docs: Dict[str, Dict[str, Any]] = {}
        self._ids_by_name: Dict[str, str] = {}
        self._orgs: Dict[str, Org] = {}

    def _load(self, thing_id: str) -> Thing:
        return Thing.from_document(copy.deepcopy(self._docs[thing_id]), thing_id=thing_id)

    def find_by_name(self, name: str) -> Optional[Thing]:
        with self._lock:
            thing_id = self._ids_by_name.get(name)
            return self._load(thing_id) if thing_id is not None else None

    def find_by_name_and_id_ne(self, name: str, exclude_id: str) -> Optional[Thing]:
        with self._lock:
            thing_id = self._ids_by_name.get(name)
            if thing_id is None or thing_id == exclude_id:
                return None
            return self._load(thing_id)

    def find_by_id(self, thing_id: str) -> Optional[Thing]:
        with self._lock:
            return self._load(thing_id) if thing_id in self._docs else None

    def find_by_org(self, org_id: str) -> List[Thing]:
        with self._lock:
            return [
                self._load(thing_id)
                for thing_id, doc in self._docs.items()
                if doc.get("org_id") == org_id
            ]

    def find_all(self) -> List[Thing]:
        with self._lock:
            return [self._load(thing_id) for thing_id in self._docs]

    def insert(self, thing: Thing) -> Thing:
        with self._lock:
            if thing.name in self._ids_by_name:
                raise NameConflict(thing.name)
            thing_id = uuid.uuid4().hex
            self._docs[thing_id] = thing.to_document()
            self._ids_by_name[thing.name] = thing_id
            return self._load(thing_id)

    def update_fields(self, thing_id: str, fields: Dict[str, Any]) -> None:
        with self._lock:
            doc = self._docs.get(thing_id)
            if doc is None:
                raise NotFound(f"Thing {thing_id} does not exist")
            new_name = fields.get("name")
            if new_name is not None and new_name != doc["name"]:
                if new_name in self._ids_by_name:
                    raise NameConflict(new_name)
                del self._ids_by_name[doc["name"]]
                self._ids_by_name[new_name] = thing_id
            apply_field_updates(doc, copy.deepcopy(fields))

    def find_org(self, key: str) -> Optional[Org]:
        with self._lock:
            org = self._orgs.get(key)
            if org is not None:
                return copy.copy(org)
            for candidate in self._orgs.values():
                if candidate.name == key:
                    return copy.copy(candidate)
            return None

    def insert_org(self, org: Org) -> Org:
        with self._lock:
            for candidate in self._orgs.values():
                if candidate.name == org.name:
                    raise NameConflict(org.name)
            stored = Org(name=org.name, id=org.id or uuid.uuid4().hex, created=org.created)
            self._orgs[stored.id] = stored
            return copy.copy(stored)

    def health_check(self) -> dict:
        with self._lock:
            return {"healthy": True, "backend": "memory", "things": len(self._docs), "orgs": len(self._orgs)}
