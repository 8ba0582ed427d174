"""Kaspa All-in-One orchestrator — profiles, validation, deployment, sync."""

__version__ = "0.1.0"
