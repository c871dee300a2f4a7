"""Pydantic schemas for snapshot documents and consolidation I/O."""
