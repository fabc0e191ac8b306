"""
Error taxonomy for the CDC projector.

Every failure a projection runner has to make a decision about maps to one
of these classes:

- DecodeError: the payload cannot be turned into a ChangeRecord. The offset
  is still committed, an unparseable payload never gets better on retry.
- ValidationSkip: well-formed record missing required domain fields. The
  projection logs it and reports SKIPPED; the offset is committed.
- DownstreamTransientError: network failure or 5xx from the downstream
  store. Never acknowledged; retried with backoff, then redelivered.
- DownstreamNotFoundOnDelete: the row is already gone downstream. Treated
  as converged.
- DownstreamRejectedError: the downstream refused the write for a reason a
  retry will not fix. The runner halts.
- FatalConfigurationError: the process cannot start (bad settings, Kafka
  unreachable).
"""

from typing import Optional


class CDCProjectorError(Exception):
    """Base class for all projector errors."""
    pass


class DecodeError(CDCProjectorError):
    """Raised when a raw change-stream payload cannot be decoded."""
    pass


class ValidationSkip(CDCProjectorError):
    """Raised when a record lacks the fields a projection needs."""

    def __init__(self, reason: str, row_id: Optional[int] = None):
        super().__init__(reason)
        self.reason = reason
        self.row_id = row_id


class DownstreamError(CDCProjectorError):
    """Base class for failures talking to a downstream store."""

    def __init__(self, message: str, downstream: str, row_id: Optional[int] = None):
        super().__init__(message)
        self.downstream = downstream
        self.row_id = row_id


class DownstreamTransientError(DownstreamError):
    """Downstream unavailable; the record must be redelivered."""
    pass


class DownstreamNotFoundOnDelete(DownstreamError):
    """Delete targeted an id the downstream does not hold."""
    pass


class DownstreamRejectedError(DownstreamError):
    """Downstream rejected the request permanently."""
    pass


class FatalConfigurationError(CDCProjectorError):
    """Raised when the process cannot be started safely."""
    pass
