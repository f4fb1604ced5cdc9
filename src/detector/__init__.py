"""Detection core for Azure role-assignment changes.

This package provides:
- Canonical event, assessment and reference-data models
- Configuration loading and logging setup
- Activity-log querying and row normalization
- Rule-based risk scoring
- The DynamoDB persistence gateway
"""

__version__ = "0.1.0"
