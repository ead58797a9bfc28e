from __future__ import annotations

from typing import Optional


class CleanerError(Exception):
    pass


class ConfigValidationError(CleanerError):
    pass


class ClientRequestError(CleanerError):
    """Transient transport or HTTP failure talking to a download client or Arr."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class FatalClientError(CleanerError):
    """The client backend is broken; abort that client's work for the current run."""
