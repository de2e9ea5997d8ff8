"""HTTP adapter over the runtime's public operations."""
