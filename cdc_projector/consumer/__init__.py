"""
Consumer package for the CDC projector.

This package provides:
- The Change Record data model
- Debezium envelope decoding
- The projection runner: subscription, retry/backoff, offset commits and
  graceful shutdown
"""

from ..records import (
    ChangeRecord,
    Operation,
    Row,
    SourceInfo,
)

from .decoder import (
    EventDecoder,
    decode_change_event,
)

from .runner import (
    RecordState,
    RunnerMetrics,
    ProjectionRunner,
    create_projection_runner,
)

__all__ = [
    # Data model
    "ChangeRecord",
    "Operation",
    "Row",
    "SourceInfo",

    # Decoding
    "EventDecoder",
    "decode_change_event",

    # Runner
    "RecordState",
    "RunnerMetrics",
    "ProjectionRunner",
    "create_projection_runner",
]
