from __future__ import annotations

import collections
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Sequence

import pandas as pd

from .cluster import ReplicaDescriptor
from .dispatcher import Failure, IterationResults, QueryResult, Success, parse_payload

LOGGER = logging.getLogger("hostname_soak.collector")

HISTORY_COLUMNS = [
    "iteration",
    "total_queries",
    "successes",
    "missing",
    "unresponsive",
    "elapsed_s",
    "qps",
]


@dataclass
class IterationReport:
    iteration: int
    total_queries: int
    missing_count: int
    elapsed_s: float
    response_counts: collections.Counter[str] = field(default_factory=collections.Counter)
    unresponsive_replicas: list[ReplicaDescriptor] = field(default_factory=list)

    @property
    def successes(self) -> int:
        return self.total_queries - self.missing_count

    @property
    def per_replica_counts(self) -> dict[str, int]:
        return {
            payload: count
            for payload, count in self.response_counts.items()
            if isinstance(parse_payload(payload), Success)
        }

    @property
    def throughput(self) -> float:
        if self.elapsed_s <= 0:
            return 0.0
        return self.successes / self.elapsed_s


def aggregate(
    iteration: int,
    results: Iterable[QueryResult],
    expected_replicas: Sequence[ReplicaDescriptor],
    elapsed_s: float,
) -> IterationReport:
    """Tally one iteration's results and find replicas that never answered.

    Every distinct payload gets its own counter slot; failure payloads carry
    their iteration and query number, so they are kept apart for diagnostics.
    """
    counts: collections.Counter[str] = collections.Counter()
    total = 0
    missing = 0
    for result in results:
        total += 1
        counts[result.payload] += 1
        if isinstance(result, Failure):
            LOGGER.debug("Got response %s", result.payload)
            missing += 1

    unresponsive = [replica for replica in expected_replicas if replica.name not in counts]
    return IterationReport(
        iteration=iteration,
        total_queries=total,
        missing_count=missing,
        elapsed_s=elapsed_s,
        response_counts=counts,
        unresponsive_replicas=unresponsive,
    )


def aggregate_iteration(batch: IterationResults, expected_replicas: Sequence[ReplicaDescriptor]) -> IterationReport:
    return aggregate(batch.iteration, batch.results, expected_replicas, batch.elapsed_s)


def log_report(report: IterationReport, logger: logging.Logger = LOGGER) -> None:
    if report.missing_count > 0:
        logger.warning("Missing %d responses out of %d", report.missing_count, report.total_queries)
    for replica in report.unresponsive_replicas:
        logger.warning(
            "No response from pod %s on node %s at iteration %d",
            replica.name,
            replica.node,
            report.iteration,
        )
    logger.info(
        "Iteration %d took %.3fs for %d queries (%.2f QPS) with %d missing",
        report.iteration,
        report.elapsed_s,
        report.successes,
        report.throughput,
        report.missing_count,
    )


class SoakHistory:
    """One summary row per iteration, for CSV export and charts."""

    def __init__(self) -> None:
        self._rows: list[dict[str, Any]] = []

    def __len__(self) -> int:
        return len(self._rows)

    def record(self, report: IterationReport) -> None:
        self._rows.append(
            {
                "iteration": report.iteration,
                "total_queries": report.total_queries,
                "successes": report.successes,
                "missing": report.missing_count,
                "unresponsive": len(report.unresponsive_replicas),
                "elapsed_s": report.elapsed_s,
                "qps": report.throughput,
            }
        )

    def build_dataframe(self) -> pd.DataFrame:
        if not self._rows:
            return pd.DataFrame(columns=HISTORY_COLUMNS)
        return pd.DataFrame(self._rows, columns=HISTORY_COLUMNS)

    def write_csv(self, path: Path) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        df = self.build_dataframe()
        df.to_csv(path, index=False)
        LOGGER.info("Saved %d iteration summaries to %s", len(df), path)
        return path
