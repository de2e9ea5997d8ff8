"""Multi-step workflows with approval gates."""
