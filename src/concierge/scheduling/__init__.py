"""Conflict-aware placement of new calendar events."""
