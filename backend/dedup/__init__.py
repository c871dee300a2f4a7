"""Reversible duplicate-record consolidation for organizations and contacts."""

__version__ = "0.1.0"
