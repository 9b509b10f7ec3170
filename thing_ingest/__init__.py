"""Núcleo de ingesta y enrutamiento de telemetría de Things."""

__version__ = "0.4.0"
