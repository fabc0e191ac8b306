"""
Shared contract for projection consumers.

A projection applies change records to exactly one downstream store. Every
apply is a full-document replace keyed by row id, and deleting an id the
downstream does not hold counts as success, so replaying a record leaves
the downstream exactly as a single delivery would.

Records that cannot be projected (missing row state, empty required fields)
are skipped rather than failed: malformed upstream data must not block the
partition. Downstream failures are never swallowed here; they propagate to
the runner, which owns the retry and offset decisions.
"""

import logging
import time
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, Tuple

from ..records import ChangeRecord, Operation, Row
from ..core.exceptions import DownstreamNotFoundOnDelete, ValidationSkip
from ..core.logging import performance_logger

logger = logging.getLogger(__name__)

PROJECTED_FIELDS = ("id", "title", "content", "author", "created_at", "updated_at")


class ApplyOutcome(str, Enum):
    """Result of a successful apply. Both outcomes advance the offset."""
    APPLIED = "applied"
    SKIPPED = "skipped"


def project_row(row: Row) -> Dict[str, Any]:
    """Select the projected fields of a row, in a stable order."""
    return {name: row.get(name) for name in PROJECTED_FIELDS}


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    return isinstance(value, str) and not value.strip()


class Projection(ABC):
    """
    Base class for a projection consumer.

    Subclasses implement `upsert` and `delete` against their downstream
    client, which is injected through the constructor.
    """

    name: str = "projection"
    required_fields: Tuple[str, ...] = ("id",)

    async def apply(self, record: ChangeRecord) -> ApplyOutcome:
        """
        Apply one change record to the downstream store.

        Returns:
            APPLIED or SKIPPED

        Raises:
            DownstreamTransientError: Downstream unavailable; do not commit
            DownstreamRejectedError: Downstream refused the write permanently
        """
        handler = self._handler_for(record.operation)
        start_time = time.perf_counter()

        try:
            outcome = await handler(record)
        except ValidationSkip as skip:
            logger.warning(
                f"[{self.name}] Skipping {record.operation.name} at {record.position}: {skip.reason}"
            )
            return ApplyOutcome.SKIPPED

        performance_logger.log_operation(
            f"{self.name}_{record.operation.name.lower()}",
            (time.perf_counter() - start_time) * 1000,
        )
        return outcome

    def _handler_for(self, operation: Operation):
        if operation.writes_row:
            return self._apply_upsert
        if operation is Operation.DELETE:
            return self._apply_delete
        raise AssertionError(f"Unhandled operation: {operation!r}")

    async def _apply_upsert(self, record: ChangeRecord) -> ApplyOutcome:
        row = record.after
        if row is None:
            raise ValidationSkip('No "after" state in event')

        missing = [name for name in self.required_fields if _is_empty(row.get(name))]
        if missing:
            raise ValidationSkip(
                f"Missing required fields: {', '.join(missing)}", row_id=row.get("id")
            )

        await self.upsert(row, record)
        logger.info(f"[{self.name}] Upserted row {row['id']} ({record.operation.name})")
        return ApplyOutcome.APPLIED

    async def _apply_delete(self, record: ChangeRecord) -> ApplyOutcome:
        row = record.before
        if row is None:
            raise ValidationSkip('No "before" state in delete event')
        if _is_empty(row.get("id")):
            raise ValidationSkip('Delete event "before" state has no id')

        try:
            await self.delete(row, record)
        except DownstreamNotFoundOnDelete:
            logger.info(f"[{self.name}] Row {row['id']} already absent, treating as converged")
            return ApplyOutcome.APPLIED

        logger.info(f"[{self.name}] Deleted row {row['id']}")
        return ApplyOutcome.APPLIED

    @abstractmethod
    async def upsert(self, row: Row, record: ChangeRecord) -> None:
        """Replace the downstream document for `row['id']` with `row`."""

    @abstractmethod
    async def delete(self, row: Row, record: ChangeRecord) -> None:
        """Remove `row['id']`; raise DownstreamNotFoundOnDelete if absent."""

    async def ping(self) -> bool:
        """Check downstream reachability."""
        return True

    async def close(self) -> None:
        """Release the downstream connection."""
