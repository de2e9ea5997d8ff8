"""Rule catalog, action executors and the automation engine."""
