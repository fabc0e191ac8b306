"""
Change Record data model.

A ChangeRecord is the normalized form of one Debezium envelope: one
committed row mutation in the source store. Records are never persisted by
the projector; Kafka retention is what makes them replayable.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


Row = Dict[str, Any]


class Operation(str, Enum):
    """Debezium operation codes."""
    CREATE = "c"
    UPDATE = "u"
    DELETE = "d"
    SNAPSHOT = "r"

    @property
    def writes_row(self) -> bool:
        """True when the record means "row now exists with this state"."""
        return self is not Operation.DELETE

    @classmethod
    def from_code(cls, code: Any) -> "Operation":
        """Resolve an `op` code; raises ValueError for anything unknown."""
        return cls(code)


@dataclass(frozen=True)
class SourceInfo:
    """Origin metadata of a change."""
    db: Optional[str]
    schema: Optional[str]
    table: Optional[str]
    ts_ms: Optional[int]
    ordering_token: Optional[str] = None
    connector: Optional[str] = None
    snapshot: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "db": self.db,
            "schema": self.schema,
            "table": self.table,
            "ts_ms": self.ts_ms,
            "ordering_token": self.ordering_token,
            "connector": self.connector,
            "snapshot": self.snapshot,
        }
        return {k: v for k, v in data.items() if v is not None}


@dataclass(frozen=True)
class ChangeRecord:
    """One decoded row mutation."""
    operation: Operation
    before: Optional[Row]
    after: Optional[Row]
    source: SourceInfo
    ts_ms: int
    transaction_id: Optional[str] = None

    # Kafka coordinates, set when decoded from a consumed message
    topic: Optional[str] = None
    partition: Optional[int] = None
    offset: Optional[int] = None
    key: Optional[str] = field(default=None, compare=False)

    @property
    def row_id(self) -> Optional[Any]:
        """Identifier of the affected row, from `after` or else `before`."""
        for state in (self.after, self.before):
            if state and state.get("id") is not None:
                return state["id"]
        return None

    @property
    def position(self) -> str:
        """topic:partition:offset, for log lines."""
        return f"{self.topic}:{self.partition}:{self.offset}"
