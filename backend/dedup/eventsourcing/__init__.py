"""Domain events and event bus wiring."""
