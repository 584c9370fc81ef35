"""Core infrastructure: configuration, storage, logging, metrics, tasks."""
