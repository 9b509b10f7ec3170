"""Core - dominio, extracción de valores y RateGuard."""
