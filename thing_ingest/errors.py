"""Taxonomía de errores del núcleo de ingesta.

- DuplicatePacket: rechazo del RateGuard (no es fallo del servidor)
- NotFound / NameConflict: resolución y creación en el directorio
- ExtractionError: payload malformado, recuperable (se omite la escritura)
- StorageError: fallo de persistencia (documentos, series temporales, relacional)
- ValidationError: tipo de Thing desconocido
- PublishError: fallo publicando en el bus, aislado por destino
- DeadlineExceeded: el mensaje/paquete agotó su tiempo antes de la escritura primaria
"""

from __future__ import annotations


class IngestError(Exception):
    """Base de todos los errores del núcleo."""


class DuplicatePacket(IngestError):
    def __init__(self, key: str):
        super().__init__(f"Duplicate packet for {key!r} inside rate window")
        self.key = key


class NotFound(IngestError):
    pass


class NameConflict(IngestError):
    def __init__(self, name: str):
        super().__init__(f"Thing of such name already exists: {name!r}")
        self.name = name


class ExtractionError(IngestError):
    pass


class StorageError(IngestError):
    pass


class DeadlineExceeded(StorageError):
    pass


class ValidationError(IngestError):
    pass


class PublishError(IngestError):
    pass
