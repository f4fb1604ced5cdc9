"""Scheduled detection run for role-assignment changes.

This module provides:
- Best-effort context resolution for role-assignment writes
- The per-event unit of work (enrich, store, score, record)
- The scheduled Lambda entry point and the operator CLI
"""

__version__ = "0.1.0"
