"""
Event decoder for Debezium change events.

This module provides:
- Parsing of raw Kafka payloads into ChangeRecord instances
- Envelope structure validation
- Strict operation code handling

Nothing is coerced: an unknown operation, a wrongly typed field or a record
without any row state fails with DecodeError, and the caller decides whether
to drop the payload and continue or to halt.
"""

import json
import logging
from json import JSONDecodeError
from typing import Any, Dict, Optional

from ..core.exceptions import DecodeError
from ..records import ChangeRecord, Operation, Row, SourceInfo

logger = logging.getLogger(__name__)


class EventDecoder:
    """
    Decoder for Debezium envelopes.

    Accepts both the full `{"schema": ..., "payload": ...}` envelope and the
    schemaless `{"payload": ...}` form produced when the JSON converter runs
    with `schemas.enable=false`.
    """

    required_payload_fields = ("op", "source", "ts_ms")

    def __init__(self, require_schema: bool = False):
        """
        Initialize the decoder.

        Args:
            require_schema: Reject envelopes that carry no `schema` section
        """
        self.require_schema = require_schema

    def decode_message(self, message) -> ChangeRecord:
        """Decode a confluent-kafka Message."""
        return self.decode(
            message.value(),
            topic=message.topic(),
            partition=message.partition(),
            offset=message.offset(),
            key=self._parse_message_key(message.key()),
        )

    def decode(
        self,
        value: Optional[bytes],
        topic: Optional[str] = None,
        partition: Optional[int] = None,
        offset: Optional[int] = None,
        key: Optional[str] = None,
    ) -> ChangeRecord:
        """
        Decode a raw payload into a ChangeRecord.

        Raises:
            DecodeError: If the payload is malformed, carries an unknown
                operation code or does not match the envelope schema
        """
        data = self._parse_message_value(value)
        payload = self._extract_payload(data)

        try:
            operation = Operation.from_code(payload["op"])
        except ValueError:
            raise DecodeError(f"Unknown operation code: {payload['op']!r}")

        before = self._row_state(payload, "before")
        after = self._row_state(payload, "after")
        if before is None and after is None:
            raise DecodeError(
                f"Record for operation {operation.name} has neither 'before' nor 'after'"
            )

        ts_ms = payload["ts_ms"]
        if not isinstance(ts_ms, int) or isinstance(ts_ms, bool):
            raise DecodeError(f"Envelope ts_ms must be an integer, got {ts_ms!r}")

        return ChangeRecord(
            operation=operation,
            before=before,
            after=after,
            source=self._source_info(payload["source"]),
            ts_ms=ts_ms,
            transaction_id=self._transaction_id(payload.get("transaction")),
            topic=topic,
            partition=partition,
            offset=offset,
            key=key,
        )

    def _parse_message_value(self, value: Optional[bytes]) -> Dict[str, Any]:
        """Parse the message value from bytes to dict."""
        if not value:
            # Debezium follows every delete with a null-valued tombstone
            raise DecodeError("Message value is empty")

        try:
            data = json.loads(value.decode("utf-8"))
        except (UnicodeDecodeError, JSONDecodeError) as e:
            raise DecodeError(f"Failed to parse message value: {e}") from e

        if not isinstance(data, dict):
            raise DecodeError(f"Envelope must be a JSON object, got {type(data).__name__}")
        return data

    def _parse_message_key(self, key: Optional[bytes]) -> Optional[str]:
        if key is None:
            return None
        try:
            return key.decode("utf-8")
        except UnicodeDecodeError:
            return key.hex()

    def _extract_payload(self, data: Dict[str, Any]) -> Dict[str, Any]:
        if self.require_schema and "schema" not in data:
            raise DecodeError("Missing required field: schema")

        payload = data.get("payload")
        if not isinstance(payload, dict):
            raise DecodeError("Missing required field: payload")

        for name in self.required_payload_fields:
            if name not in payload:
                raise DecodeError(f"Missing required payload field: {name}")

        if not isinstance(payload["source"], dict):
            raise DecodeError("Payload field 'source' must be an object")

        return payload

    def _row_state(self, payload: Dict[str, Any], name: str) -> Optional[Row]:
        state = payload.get(name)
        if state is not None and not isinstance(state, dict):
            raise DecodeError(f"Payload field '{name}' must be an object or null")
        return state

    def _source_info(self, source: Dict[str, Any]) -> SourceInfo:
        token = source.get("lsn")
        if token is None:
            token = source.get("txId")

        return SourceInfo(
            db=source.get("db"),
            schema=source.get("schema"),
            table=source.get("table"),
            ts_ms=source.get("ts_ms"),
            ordering_token=str(token) if token is not None else None,
            connector=source.get("connector"),
            snapshot=str(source["snapshot"]) if source.get("snapshot") is not None else None,
        )

    def _transaction_id(self, transaction: Any) -> Optional[str]:
        if isinstance(transaction, dict) and transaction.get("id") is not None:
            return str(transaction["id"])
        return None


default_decoder = EventDecoder()


def decode_change_event(message) -> ChangeRecord:
    """Convenience function to decode a Kafka message with the default decoder."""
    return default_decoder.decode_message(message)
