"""Extracción de valores escalares desde payloads MQTT.

Plantilla vacía → el payload (recortado) es el valor literal.
Plantilla con ruta de puntos (`DS18B20.Temperature`) → el payload se parsea
como JSON y se desciende clave a clave por objetos anidados.

La hoja numérica se renderiza en su forma decimal más corta (23.0 → "23",
4.5 → "4.5", 1e-7 → "0.0000001"); una hoja string se devuelve tal cual.
Cualquier otra cosa es ExtractionError: payloads malformados son tráfico
esperado, no un fallo del sistema.
"""

from __future__ import annotations

import math
from decimal import Decimal
from typing import Any, Union

import orjson

from ...errors import ExtractionError

Payload = Union[str, bytes, bytearray]


def _as_text(payload: Payload) -> str:
    if isinstance(payload, (bytes, bytearray)):
        try:
            return bytes(payload).decode("utf-8")
        except UnicodeDecodeError as e:
            raise ExtractionError(f"Payload is not valid UTF-8: {e}") from e
    return payload


def format_number(value: Union[int, float]) -> str:
    """Forma decimal más corta, sin exponente."""
    if isinstance(value, int):
        return str(value)
    if math.isnan(value) or math.isinf(value):
        raise ExtractionError(f"Non-finite numeric value: {value}")
    text = format(Decimal(repr(value)), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    if text in ("-0", ""):
        text = "0"
    return text


def render_leaf(leaf: Any) -> str:
    # bool es subclase de int: se descarta antes de tratarlo como número
    if isinstance(leaf, bool) or leaf is None:
        raise ExtractionError(f"Unsupported leaf value: {leaf!r}")
    if isinstance(leaf, (int, float)):
        return format_number(leaf)
    if isinstance(leaf, str):
        return leaf
    raise ExtractionError(f"Leaf is not a scalar: {type(leaf).__name__}")


def extract(payload: Payload, template: str = "") -> str:
    """Extrae el valor escalar canónico de `payload` según `template`.

    Raises:
        ExtractionError: JSON inválido, nodo intermedio no-objeto, clave
            ausente u hoja no escalar.
    """
    text = _as_text(payload)

    template = (template or "").strip()
    if not template:
        return text.strip()

    try:
        node = orjson.loads(text)
    except orjson.JSONDecodeError as e:
        raise ExtractionError(f"Invalid JSON payload: {e}") from e

    for key in template.split("."):
        if not isinstance(node, dict):
            raise ExtractionError(f"Cannot descend into non-object at {key!r} (template={template!r})")
        if key not in node:
            raise ExtractionError(f"Missing key {key!r} (template={template!r})")
        node = node[key]

    return render_leaf(node)


def extract_float(payload: Payload, template: str = "") -> float:
    """Como extract() pero convierte el resultado a float."""
    value = extract(payload, template)
    try:
        return float(value)
    except ValueError as e:
        raise ExtractionError(f"Value {value!r} is not numeric (template={template!r})") from e


class ValueExtractor:
    """Fachada inyectable sobre extract()/extract_float()."""

    def extract(self, payload: Payload, template: str = "") -> str:
        return extract(payload, template)

    def extract_float(self, payload: Payload, template: str = "") -> float:
        return extract_float(payload, template)
