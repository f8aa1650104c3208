"""Output redaction shared by the live and durable output paths."""

from termrelay.security.filter import DEFAULT_MARKER, RedactionPattern, SecurityFilter

__all__ = ["DEFAULT_MARKER", "RedactionPattern", "SecurityFilter"]
