"""Operational jobs and endpoints: baseline snapshots and the assessment listing."""

__version__ = "0.1.0"
