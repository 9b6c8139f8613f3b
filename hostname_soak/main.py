from __future__ import annotations

import argparse
import itertools
import logging
import os
import sys
from pathlib import Path
from typing import Callable, Iterable

import requests

from .charts import render_soak_chart
from .cluster import ClusterError, KubernetesCluster
from .collector import SoakHistory, aggregate_iteration, log_report
from .config import DEFAULT_IMAGE, SoakConfig
from .dispatcher import QueryDispatcher, fetch_identity
from .lifecycle import ResourceLifecycleManager, SoakError
from .readiness import ReadinessWaiter

LOGGER = logging.getLogger("hostname_soak")

HISTORY_FILENAME = "soak_iterations.csv"
CHART_FILENAME = "soak_throughput.png"


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Soak test that queries serve-hostname pods on every node through one service"
    )
    parser.add_argument(
        "--queries",
        type=int,
        default=os.environ.get("SOAK_QUERIES", "100"),
        help="Number of hostname queries to make in each iteration per pod on average",
    )
    parser.add_argument(
        "--pods-per-node",
        type=int,
        default=os.environ.get("SOAK_PODS_PER_NODE", "1"),
        help="Number of serve-hostname pods per node",
    )
    parser.add_argument(
        "--up-to",
        type=int,
        default=os.environ.get("SOAK_UP_TO", "1"),
        help="Number of iterations or -1 for no limit",
    )
    parser.add_argument(
        "--max-in-flight",
        type=int,
        default=os.environ.get("SOAK_MAX_IN_FLIGHT", "100"),
        help="Maximum number of queries in flight",
    )
    parser.add_argument(
        "--query-timeout",
        type=float,
        default=os.environ.get("SOAK_QUERY_TIMEOUT", "30"),
        help="Seconds before a single query is counted as failed",
    )
    parser.add_argument(
        "--image",
        default=os.environ.get("SOAK_IMAGE", DEFAULT_IMAGE),
        help="Container image serving its hostname on port 9376",
    )
    parser.add_argument(
        "--output-dir",
        default=os.environ.get("SOAK_OUTPUT_DIR"),
        help="Directory for the per-iteration CSV and throughput chart",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("SOAK_LOG_LEVEL", "INFO"),
        help="Logging level",
    )
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> SoakConfig:
    return SoakConfig(
        queries_per_replica=args.queries,
        replicas_per_node=args.pods_per_node,
        iterations=args.up_to,
        max_in_flight=args.max_in_flight,
        query_timeout=args.query_timeout,
        image=args.image,
        output_dir=Path(args.output_dir) if args.output_dir else None,
    )


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def iteration_numbers(limit: int) -> Iterable[int]:
    if limit < 0:
        return itertools.count()
    return range(limit)


def run_soak(
    config: SoakConfig,
    cluster: KubernetesCluster,
    fetch: Callable[[str, float], str] = fetch_identity,
    http_get: Callable[..., object] = requests.get,
    sleep: Callable[[float], None] | None = None,
) -> SoakHistory:
    """Provision the pods, query them for every iteration, then clean up.

    Raises :class:`SoakError` for fatal conditions; resources created so far
    are deleted before it propagates.
    """
    lifecycle = ResourceLifecycleManager(cluster, config, sleep=sleep)
    nodes = lifecycle.discover_nodes()
    total_queries = config.total_queries(len(nodes))
    history = SoakHistory()

    try:
        with lifecycle.provision(nodes) as env:
            waiter = ReadinessWaiter(
                cluster,
                config.timeouts,
                probe_timeout=config.query_timeout,
                http_get=http_get,
                sleep=sleep,
            )
            waiter.wait_for_replicas(env.namespace, env.replicas)
            waiter.wait_for_service(env.service_address)

            dispatcher = QueryDispatcher(
                address=env.service_address,
                total_queries=total_queries,
                max_in_flight=config.max_in_flight,
                query_timeout=config.query_timeout,
                fetch=fetch,
            )
            for iteration in iteration_numbers(config.iterations):
                batch = dispatcher.run_iteration(iteration)
                report = aggregate_iteration(batch, env.replicas)
                log_report(report)
                history.record(report)
    finally:
        if config.output_dir is not None and len(history):
            try:
                write_artifacts(history, config.output_dir)
            except Exception:  # noqa: BLE001
                LOGGER.exception("Failed to write soak artifacts to %s", config.output_dir)

    return history


def write_artifacts(history: SoakHistory, output_dir: Path) -> None:
    output_dir.mkdir(parents=True, exist_ok=True)
    history.write_csv(output_dir / HISTORY_FILENAME)
    render_soak_chart(history.build_dataframe(), output_dir / CHART_FILENAME)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level)

    try:
        config = build_config(args)
    except ValueError as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        return 2

    LOGGER.info(
        "Starting soak test with queries=%d podsPerNode=%d upTo=%d maxInFlight=%d",
        config.queries_per_replica,
        config.replicas_per_node,
        config.iterations,
        config.max_in_flight,
    )

    try:
        cluster = KubernetesCluster.from_environment()
    except ClusterError as exc:
        LOGGER.error("Failed to make client: %s", exc)
        return 1

    try:
        run_soak(config, cluster)
    except SoakError as exc:
        LOGGER.error("Soak test aborted: %s", exc)
        return 1
    except KeyboardInterrupt:
        LOGGER.warning("Interrupted, soak resources have been cleaned up")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
