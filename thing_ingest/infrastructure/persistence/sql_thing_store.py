"""ThingStore sobre SQLAlchemy Core.

Cada Thing es una fila con el documento completo serializado (orjson) y
las columnas de búsqueda desnormalizadas: `name` (UNIQUE) y `org_id`.
La unicidad de nombre la impone la restricción UNIQUE, no un
check-then-insert: IntegrityError → NameConflict.

Errores de SQLAlchemy se traducen a StorageError en este borde.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Dict, List, Optional

import orjson
from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    insert,
    select,
    text,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ...core.domain.thing import Org, Thing, apply_field_updates
from ...directory.store import ThingStore
from ...errors import NameConflict, NotFound, StorageError

logger = logging.getLogger(__name__)

metadata = MetaData()

things_table = Table(
    "things",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("name", String(255), nullable=False, unique=True),
    Column("type", String(16), nullable=False),
    Column("org_id", String(32), nullable=True, index=True),
    Column("doc", Text, nullable=False),
)

orgs_table = Table(
    "orgs",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("name", String(255), nullable=False, unique=True),
    Column("created", Integer, nullable=False, default=0),
)


def _dump(doc: Dict[str, Any]) -> str:
    return orjson.dumps(doc).decode("utf-8")


def _row_to_thing(row) -> Thing:
    return Thing.from_document(orjson.loads(row.doc), thing_id=row.id)


class SqlThingStore(ThingStore):
    """Directorio de Things persistido en cualquier URL SQLAlchemy."""

    def __init__(self, engine: Engine):
        self._engine = engine

    def create_schema(self) -> None:
        try:
            metadata.create_all(self._engine)
        except SQLAlchemyError as e:
            raise StorageError(f"Could not create thing schema: {e}") from e
        logger.info("[DIRECTORY] Thing schema ready")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _fetch_one(self, stmt) -> Optional[Thing]:
        try:
            with self._engine.connect() as conn:
                row = conn.execute(stmt).first()
        except SQLAlchemyError as e:
            raise StorageError(f"Thing query failed: {e}") from e
        return _row_to_thing(row) if row is not None else None

    def _fetch_all(self, stmt) -> List[Thing]:
        try:
            with self._engine.connect() as conn:
                rows = conn.execute(stmt).fetchall()
        except SQLAlchemyError as e:
            raise StorageError(f"Thing query failed: {e}") from e
        return [_row_to_thing(row) for row in rows]

    def find_by_name(self, name: str) -> Optional[Thing]:
        return self._fetch_one(select(things_table).where(things_table.c.name == name))

    def find_by_name_and_id_ne(self, name: str, exclude_id: str) -> Optional[Thing]:
        return self._fetch_one(
            select(things_table).where(
                things_table.c.name == name,
                things_table.c.id != exclude_id,
            )
        )

    def find_by_id(self, thing_id: str) -> Optional[Thing]:
        return self._fetch_one(select(things_table).where(things_table.c.id == thing_id))

    def find_by_org(self, org_id: str) -> List[Thing]:
        return self._fetch_all(
            select(things_table)
            .where(things_table.c.org_id == org_id)
            .order_by(things_table.c.name)
        )

    def find_all(self) -> List[Thing]:
        return self._fetch_all(select(things_table).order_by(things_table.c.name))

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def insert(self, thing: Thing) -> Thing:
        thing_id = uuid.uuid4().hex
        doc = thing.to_document()
        try:
            with self._engine.begin() as conn:
                conn.execute(
                    insert(things_table).values(
                        id=thing_id,
                        name=thing.name,
                        type=thing.type.value,
                        org_id=thing.org_id,
                        doc=_dump(doc),
                    )
                )
        except IntegrityError as e:
            raise NameConflict(thing.name) from e
        except SQLAlchemyError as e:
            raise StorageError(f"Thing insert failed: {e}") from e
        return Thing.from_document(doc, thing_id=thing_id)

    def update_fields(self, thing_id: str, fields: Dict[str, Any]) -> None:
        try:
            with self._engine.begin() as conn:
                row = conn.execute(
                    select(things_table.c.doc).where(things_table.c.id == thing_id)
                ).first()
                if row is None:
                    raise NotFound(f"Thing {thing_id!r} does not exist")

                doc = apply_field_updates(orjson.loads(row.doc), fields)
                values: Dict[str, Any] = {"doc": _dump(doc)}
                if "name" in fields:
                    values["name"] = fields["name"]
                if "org_id" in fields:
                    values["org_id"] = fields["org_id"] or None
                conn.execute(
                    update(things_table).where(things_table.c.id == thing_id).values(**values)
                )
        except IntegrityError as e:
            raise NameConflict(str(fields.get("name"))) from e
        except SQLAlchemyError as e:
            raise StorageError(f"Thing update failed: {e}") from e

    # ------------------------------------------------------------------
    # Orgs
    # ------------------------------------------------------------------

    def find_org(self, key: str) -> Optional[Org]:
        try:
            with self._engine.connect() as conn:
                row = conn.execute(select(orgs_table).where(orgs_table.c.id == key)).first()
                if row is None:
                    row = conn.execute(select(orgs_table).where(orgs_table.c.name == key)).first()
        except SQLAlchemyError as e:
            raise StorageError(f"Org query failed: {e}") from e
        if row is None:
            return None
        return Org(name=row.name, id=row.id, created=int(row.created or 0))

    def insert_org(self, org: Org) -> Org:
        org_id = org.id or uuid.uuid4().hex
        created = org.created or int(time.time())
        try:
            with self._engine.begin() as conn:
                conn.execute(insert(orgs_table).values(id=org_id, name=org.name, created=created))
        except IntegrityError as e:
            raise NameConflict(org.name) from e
        except SQLAlchemyError as e:
            raise StorageError(f"Org insert failed: {e}") from e
        return Org(name=org.name, id=org_id, created=created)

    def health_check(self) -> dict:
        start = time.time()
        try:
            with self._engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError:
            # No exponer detalles de conexión al cliente
            return {"healthy": False, "backend": "sql"}
        return {
            "healthy": True,
            "backend": "sql",
            "latency_ms": round((time.time() - start) * 1000, 2),
        }
