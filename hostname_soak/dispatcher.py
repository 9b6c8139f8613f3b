from __future__ import annotations

import logging
import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, List, Union

import requests

LOGGER = logging.getLogger("hostname_soak.dispatcher")

# Cannot appear in a pod name, so it marks failures in textual payloads.
FAILURE_SENTINEL = "!"


@dataclass(frozen=True)
class QueryTask:
    iteration: int
    sequence: int


@dataclass(frozen=True)
class Success:
    identity: str

    @property
    def payload(self) -> str:
        return self.identity


@dataclass(frozen=True)
class Failure:
    detail: str

    @property
    def payload(self) -> str:
        return FAILURE_SENTINEL + self.detail


QueryResult = Union[Success, Failure]


def parse_payload(payload: str) -> QueryResult:
    """Classify a textual payload: sentinel-prefixed or empty means failure."""
    if not payload:
        return Failure("empty response")
    if payload.startswith(FAILURE_SENTINEL):
        return Failure(payload[len(FAILURE_SENTINEL):])
    return Success(payload)


def fetch_identity(address: str, timeout: float) -> str:
    response = requests.get(address, timeout=timeout)
    response.raise_for_status()
    return response.text.strip()


class ConcurrencyLimiter:
    """Counting gate on in-flight queries that also records the peak."""

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._slots = threading.BoundedSemaphore(capacity)
        self._lock = threading.Lock()
        self._in_flight = 0
        self._peak = 0

    @property
    def in_flight(self) -> int:
        with self._lock:
            return self._in_flight

    @property
    def peak(self) -> int:
        with self._lock:
            return self._peak

    def acquire(self) -> None:
        self._slots.acquire()
        with self._lock:
            self._in_flight += 1
            self._peak = max(self._peak, self._in_flight)

    def release(self) -> None:
        with self._lock:
            self._in_flight -= 1
        self._slots.release()

    def __enter__(self) -> "ConcurrencyLimiter":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


@dataclass
class IterationResults:
    iteration: int
    total_queries: int
    elapsed_s: float
    results: List[QueryResult] = field(default_factory=list)
    peak_in_flight: int = 0


class QueryDispatcher:
    """Fan ``total_queries`` GETs out to a worker pool and gather every result."""

    def __init__(
        self,
        address: str,
        total_queries: int,
        max_in_flight: int,
        query_timeout: float,
        fetch: Callable[[str, float], str] = fetch_identity,
    ) -> None:
        if total_queries < 1:
            raise ValueError("total_queries must be >= 1")
        self._address = address
        self._total_queries = total_queries
        self._max_in_flight = max_in_flight
        self._query_timeout = query_timeout
        self._fetch = fetch

    @property
    def total_queries(self) -> int:
        return self._total_queries

    def run_iteration(self, iteration: int) -> IterationResults:
        # Sized so that no worker ever waits on the collector to publish.
        channel: "queue.Queue[QueryResult]" = queue.Queue(maxsize=self._total_queries)
        limiter = ConcurrencyLimiter(self._max_in_flight)
        executor = ThreadPoolExecutor(
            max_workers=min(self._max_in_flight, self._total_queries),
            thread_name_prefix=f"soak-query-{iteration}",
        )
        started = time.monotonic()
        try:
            for sequence in range(self._total_queries):
                executor.submit(self._query, QueryTask(iteration, sequence), limiter, channel)

            results: List[QueryResult] = []
            for _ in range(self._total_queries):
                result = channel.get()
                LOGGER.debug("Got response %s", result.payload)
                results.append(result)
        finally:
            executor.shutdown(wait=True, cancel_futures=True)

        return IterationResults(
            iteration=iteration,
            total_queries=self._total_queries,
            elapsed_s=time.monotonic() - started,
            results=results,
            peak_in_flight=limiter.peak,
        )

    def _query(self, task: QueryTask, limiter: ConcurrencyLimiter, channel: "queue.Queue[QueryResult]") -> None:
        try:
            with limiter:
                started = time.monotonic()
                body = self._fetch(self._address, self._query_timeout)
                LOGGER.debug("Call to %s took %.3fs", self._address, time.monotonic() - started)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Call failed during iteration %d query %d: %s", task.iteration, task.sequence, exc)
            result: QueryResult = Failure(
                f"failed in iteration {task.iteration} to issue query {task.sequence}: {exc}"
            )
        else:
            if body:
                result = parse_payload(body)
            else:
                result = Failure(
                    f"failed in iteration {task.iteration} to read body of query {task.sequence}: empty response"
                )
        channel.put(result)
