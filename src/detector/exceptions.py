"""Error taxonomy for the IAM change detector.

Each class maps to one failure domain of a detection or snapshot run so that
entry points can decide whether a failure is fatal for the run or isolated to
a single row or event.
"""


class DetectorError(Exception):
    """Base class for all detector errors."""


class ConfigurationError(DetectorError):
    """Required configuration is missing or invalid. Fatal for the run."""


class SourceQueryError(DetectorError):
    """The audit-log query failed. Fatal for the run."""


class RowParseError(DetectorError):
    """A single audit-log row could not be normalized."""

    def __init__(self, message: str, row_index: int = -1):
        super().__init__(message)
        self.row_index = row_index


class EnrichmentError(DetectorError):
    """Resolving role-assignment context for one event failed."""


class PersistenceError(DetectorError):
    """A read or write against the persistent store failed."""


class SnapshotError(DetectorError):
    """A baseline snapshot run did not complete."""


class AuthenticationError(DetectorError):
    """No Azure access token could be obtained."""
