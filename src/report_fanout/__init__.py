"""Batch report fan-out orchestrator with per-workload private queues."""

__version__ = "0.1.0"
