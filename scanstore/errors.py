"""Error taxonomy for the scan store.

Backend exceptions are translated into these classes only where the caller
is expected to react differently (retry, re-read, fix input). Everything else
propagates from the driver unchanged.
"""


class ScanStoreError(Exception):
    """Base class for all scan store errors."""


class ConfigurationError(ScanStoreError):
    """Unknown backend name or unusable connection settings. Not retryable."""


class ConnectionError(ScanStoreError):  # noqa: A001
    """The backend could not be reached. Callers retry with backoff."""


class ConstraintViolation(ScanStoreError):
    """A uniqueness constraint rejected a create. Callers re-read and proceed."""


class NotFound(ScanStoreError):
    """A write referenced a site or scan that does not exist."""


class ValidationError(ScanStoreError, ValueError):
    """Malformed input to a store operation."""


class InvalidStateTransition(ValidationError):
    """The scan is not in a state the requested transition can start from."""

    def __init__(self, scan_id, current, target):
        self.scan_id = scan_id
        self.current = getattr(current, "value", current)
        self.target = getattr(target, "value", target)
        super().__init__(
            f"Scan {scan_id} cannot move from {self.current} to {self.target}"
        )
