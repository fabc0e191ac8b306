"""
Convergence checker.

Polls the downstream projections until a row reaches an expected state or a
wait budget runs out, and reports per-downstream time to first match. It is
an operational and test utility; nothing on the write or read path uses it.

Usage:
    checker = ConvergenceChecker([SearchProbe(es), CacheProbe(redis)])
    report = await checker.wait_for(42, {
        "search": Expectation.present_with(title="A"),
        "cache": Expectation.present_with(title="A"),
    })
    assert report.converged, report.to_dict()
"""

import json
import time
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Optional

from elasticsearch import ApiError, AsyncElasticsearch, NotFoundError, TransportError
from redis.exceptions import RedisError
from tenacity import AsyncRetrying, retry_if_result, stop_after_attempt, stop_after_delay, stop_any, wait_fixed

from .core.exceptions import DownstreamError, DownstreamTransientError
from .projections.cache import row_key

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Expectation:
    """Expected downstream state of one row."""
    present: bool
    fields: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def present_with(cls, **fields) -> "Expectation":
        return cls(present=True, fields=fields)

    @classmethod
    def absent(cls) -> "Expectation":
        return cls(present=False)

    def matches(self, value: Optional[Dict[str, Any]]) -> bool:
        if not self.present:
            return value is None
        if value is None:
            return False
        return all(value.get(name) == expected for name, expected in self.fields.items())


@dataclass
class ProbeResult:
    """Outcome of polling one downstream."""
    downstream: str
    matched: bool
    elapsed_ms: float
    attempts: int
    last_value: Optional[Dict[str, Any]] = None
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "downstream": self.downstream,
            "matched": self.matched,
            "elapsed_ms": round(self.elapsed_ms, 1),
            "attempts": self.attempts,
            "last_value": self.last_value,
            "last_error": self.last_error,
        }


@dataclass
class ConvergenceReport:
    """Per-downstream results for one row."""
    row_id: Any
    results: Dict[str, ProbeResult]

    @property
    def converged(self) -> bool:
        return all(result.matched for result in self.results.values())

    @property
    def timed_out(self) -> Dict[str, ProbeResult]:
        return {name: result for name, result in self.results.items() if not result.matched}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "row_id": self.row_id,
            "converged": self.converged,
            "results": {name: result.to_dict() for name, result in self.results.items()},
        }


class Probe(ABC):
    """Reads the current downstream state of a row."""

    name: str = "probe"

    @abstractmethod
    async def fetch(self, row_id: Any) -> Optional[Dict[str, Any]]:
        """Return the row as the downstream holds it, or None if absent."""


class SearchProbe(Probe):
    """Reads a document from the search index; 404 means absent."""

    name = "search"

    def __init__(self, client: AsyncElasticsearch, index: str = "posts"):
        self.client = client
        self.index = index

    async def fetch(self, row_id: Any) -> Optional[Dict[str, Any]]:
        try:
            response = await self.client.get(index=self.index, id=str(row_id))
        except NotFoundError:
            return None
        except (ApiError, TransportError) as e:
            raise DownstreamTransientError(str(e), self.name, row_id) from e
        return response["_source"]


class CacheProbe(Probe):
    """Reads the cached JSON row; a missing key means absent."""

    name = "cache"

    def __init__(self, client, row_key_prefix: str = "row"):
        self.client = client
        self.row_key_prefix = row_key_prefix

    async def fetch(self, row_id: Any) -> Optional[Dict[str, Any]]:
        try:
            cached = await self.client.get(row_key(self.row_key_prefix, row_id))
        except RedisError as e:
            raise DownstreamTransientError(str(e), self.name, row_id) from e
        if cached is None:
            return None
        try:
            return json.loads(cached)
        except ValueError as e:
            raise DownstreamTransientError(f"cached value is not JSON: {e}", self.name, row_id) from e


@dataclass
class _Observation:
    attempts: int = 0
    matched_at: Optional[float] = None
    last_value: Optional[Dict[str, Any]] = None
    last_error: Optional[str] = None


class ConvergenceChecker:
    """Bounded polling of downstream probes."""

    def __init__(
        self,
        probes: Iterable[Probe],
        interval_ms: int = 500,
        max_wait_ms: int = 10000,
        clock: Callable[[], float] = time.monotonic,
    ):
        if interval_ms <= 0:
            raise ValueError("interval_ms must be positive")
        self.probes = {probe.name: probe for probe in probes}
        self.interval_ms = interval_ms
        self.max_wait_ms = max_wait_ms
        self.clock = clock

    @property
    def max_attempts(self) -> int:
        return self.max_wait_ms // self.interval_ms + 1

    async def wait_for(self, row_id: Any, expectations: Dict[str, Expectation]) -> ConvergenceReport:
        """Poll every named downstream concurrently until it matches or the budget is spent."""
        unknown = set(expectations) - set(self.probes)
        if unknown:
            raise KeyError(f"No probe registered for: {', '.join(sorted(unknown))}")

        names = list(expectations)
        results = await asyncio.gather(
            *(self._poll(self.probes[name], row_id, expectations[name]) for name in names)
        )
        report = ConvergenceReport(row_id=row_id, results=dict(zip(names, results)))

        if report.converged:
            logger.info(f"Row {row_id} converged: {report.to_dict()['results']}")
        else:
            logger.warning(f"Row {row_id} did not converge within {self.max_wait_ms}ms: {sorted(report.timed_out)}")
        return report

    async def _poll(self, probe: Probe, row_id: Any, expectation: Expectation) -> ProbeResult:
        observation = _Observation()
        start = self.clock()
        deadline = start + self.max_wait_ms / 1000

        retrying = AsyncRetrying(
            stop=stop_any(
                stop_after_attempt(self.max_attempts),
                stop_after_delay(self.max_wait_ms / 1000),
            ),
            wait=wait_fixed(self.interval_ms / 1000),
            retry=retry_if_result(lambda matched: not matched),
            retry_error_callback=lambda retry_state: retry_state.outcome.result(),
        )
        matched = await retrying(self._check, probe, row_id, expectation, observation, deadline)

        end = observation.matched_at if matched else self.clock()
        return ProbeResult(
            downstream=probe.name,
            matched=matched,
            elapsed_ms=(end - start) * 1000,
            attempts=observation.attempts,
            last_value=observation.last_value,
            last_error=observation.last_error,
        )

    async def _check(
        self,
        probe: Probe,
        row_id: Any,
        expectation: Expectation,
        observation: _Observation,
        deadline: float,
    ) -> bool:
        remaining = deadline - self.clock()
        if observation.attempts and remaining <= 0:
            return False
        # The first fetch always gets at least one interval
        timeout = max(remaining, self.interval_ms / 1000)

        observation.attempts += 1
        try:
            observation.last_value = await asyncio.wait_for(probe.fetch(row_id), timeout=timeout)
        except asyncio.TimeoutError:
            observation.last_error = f"TimeoutError: no answer within {timeout * 1000:.0f}ms"
            return False
        except DownstreamError as e:
            observation.last_error = f"{type(e.__cause__ or e).__name__}: {e}"
            return False

        if expectation.matches(observation.last_value):
            observation.matched_at = self.clock()
            return True
        return False
