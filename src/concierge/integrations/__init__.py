"""Collaborator contracts consumed by the automation core.

Each module defines a ``Protocol`` plus a reference implementation:
calendar read/write, structured extraction and notification delivery.
"""
