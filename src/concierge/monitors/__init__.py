"""Supervised polling loops that feed external events into the engines."""
