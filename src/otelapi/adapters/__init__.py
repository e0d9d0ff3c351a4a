"""Adapters binding the telemetry core to logging, storage and ASGI frameworks."""
