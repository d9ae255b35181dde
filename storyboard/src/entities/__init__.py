"""Global and per-sequence entity tracking."""

from .registry import EntityRegistry, format_tag, normalize_name, parse_tag

__all__ = ["EntityRegistry", "format_tag", "normalize_name", "parse_tag"]
