"""Trigger sources that turn inbound signals into rule executions."""
