"""Exception hierarchy shared by the detection and delivery pipeline."""

from __future__ import annotations

from typing import Optional


class ScorewatchError(Exception):
    """Base class for all scorewatch failures."""


class SourceUnavailable(ScorewatchError):
    """Raised when an upstream data source cannot supply a snapshot."""

    def __init__(self, message: str, *, snapshot_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.snapshot_id = snapshot_id


class InvalidAddress(ScorewatchError):
    """A push address the gateway reports as permanently unreachable."""

    def __init__(self, address: str, reason: Optional[str] = None) -> None:
        super().__init__(f"Invalid push address: {reason or 'unregistered'}")
        self.address = address
        self.reason = reason


class TransientDeliveryFailure(ScorewatchError):
    """Raised when a gateway batch fails for a retryable reason."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class GatewayError(ScorewatchError):
    """Raised when the push gateway rejects a batch in a non-retryable way."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class LedgerWriteFailure(ScorewatchError):
    """Raised when the ledger cannot record an event or mark it notified."""

    def __init__(self, message: str, *, event_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.event_id = event_id
