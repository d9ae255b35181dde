"""Utility helpers for IO, schemas and logging."""

from . import io, logging_setup, schema

__all__ = ["io", "logging_setup", "schema"]
