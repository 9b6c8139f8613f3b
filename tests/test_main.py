"""
Tests for argument handling and the end-to-end soak loop against a fake cluster.
"""

import importlib
import itertools
import logging

import pandas as pd
import pytest

from conftest import FakeCluster, RoundRobinFetch
from hostname_soak.config import SoakConfig
from hostname_soak.lifecycle import NoNodesError, SoakError
from hostname_soak.main import CHART_FILENAME, HISTORY_FILENAME, build_config, iteration_numbers, parse_args, run_soak

main_module = importlib.import_module("hostname_soak.main")


def reachable(url, timeout):
    return object()


class TestParseArgs:

    def test_defaults(self, monkeypatch):
        for name in ("SOAK_QUERIES", "SOAK_PODS_PER_NODE", "SOAK_UP_TO", "SOAK_MAX_IN_FLIGHT", "SOAK_OUTPUT_DIR"):
            monkeypatch.delenv(name, raising=False)

        config = build_config(parse_args([]))

        assert config.queries_per_replica == 100
        assert config.replicas_per_node == 1
        assert config.iterations == 1
        assert config.max_in_flight == 100
        assert config.query_timeout == 30.0
        assert config.output_dir is None

    def test_environment_and_flags(self, monkeypatch, tmp_path):
        monkeypatch.setenv("SOAK_QUERIES", "7")
        monkeypatch.setenv("SOAK_OUTPUT_DIR", str(tmp_path))

        config = build_config(parse_args(["--pods-per-node", "3", "--up-to", "-1"]))

        assert config.queries_per_replica == 7
        assert config.replicas_per_node == 3
        assert config.unbounded
        assert config.output_dir == tmp_path

    def test_invalid_values_exit_with_usage_code(self):
        assert main_module.main(["--max-in-flight", "0"]) == 2


class TestConfig:

    def test_total_queries_is_linear_in_replicas(self):
        config = SoakConfig(queries_per_replica=10, replicas_per_node=2)
        assert config.total_queries(3) == 60

    def test_rejects_non_positive_timeout(self):
        with pytest.raises(ValueError):
            SoakConfig(query_timeout=0)


class TestIterationNumbers:

    def test_bounded(self):
        assert list(iteration_numbers(3)) == [0, 1, 2]

    def test_zero_runs_nothing(self):
        assert list(iteration_numbers(0)) == []

    def test_negative_is_unbounded(self):
        assert list(itertools.islice(iteration_numbers(-1), 5)) == [0, 1, 2, 3, 4]


class TestRunSoak:

    def test_runs_every_iteration_and_cleans_up(self, cluster, fast_config, tmp_path):
        config = SoakConfig(
            queries_per_replica=5,
            replicas_per_node=2,
            iterations=3,
            max_in_flight=3,
            query_timeout=1.0,
            output_dir=tmp_path,
            timeouts=fast_config.timeouts,
        )
        identities = ["serve-hostname-0-0", "serve-hostname-0-1", "serve-hostname-1-0", "serve-hostname-1-1"]

        history = run_soak(config, cluster, fetch=RoundRobinFetch(identities), http_get=reachable)

        df = history.build_dataframe()
        assert df["iteration"].tolist() == [0, 1, 2]
        assert df["total_queries"].tolist() == [20, 20, 20]
        assert df["missing"].tolist() == [0, 0, 0]
        assert df["unresponsive"].tolist() == [0, 0, 0]
        assert cluster.pods == {}
        assert cluster.namespaces == set()
        assert pd.read_csv(tmp_path / HISTORY_FILENAME).shape[0] == 3
        assert (tmp_path / CHART_FILENAME).exists()

    def test_silent_pod_and_failures_do_not_stop_the_loop(self, cluster, fast_config):
        config = SoakConfig(
            queries_per_replica=10,
            replicas_per_node=1,
            iterations=2,
            max_in_flight=4,
            query_timeout=1.0,
            timeouts=fast_config.timeouts,
        )
        fetch = RoundRobinFetch(["serve-hostname-0-0"], failing_calls={1, 2, 3})

        history = run_soak(config, cluster, fetch=fetch, http_get=reachable)

        df = history.build_dataframe()
        assert df["missing"].tolist() == [3, 0]
        assert df["successes"].tolist() == [17, 20]
        assert df["unresponsive"].tolist() == [1, 1]

    def test_no_nodes_is_fatal_before_provisioning(self, fast_config):
        cluster = FakeCluster(nodes=())

        with pytest.raises(NoNodesError):
            run_soak(fast_config, cluster, fetch=RoundRobinFetch(["x"]), http_get=reachable)

        assert "create_namespace" not in cluster.ops()

    def test_main_returns_one_on_fatal_condition(self, monkeypatch):
        cluster = FakeCluster(nodes=())
        monkeypatch.setattr(main_module.KubernetesCluster, "from_environment", classmethod(lambda cls: cluster))

        assert main_module.main(["--up-to", "1"]) == 1

    def test_artifact_failure_does_not_mask_abort(self, cluster, fast_config, tmp_path, monkeypatch, caplog):
        config = SoakConfig(
            queries_per_replica=2,
            replicas_per_node=1,
            iterations=3,
            max_in_flight=2,
            query_timeout=1.0,
            output_dir=tmp_path,
            timeouts=fast_config.timeouts,
        )
        reports = []

        def stop_after_first(report):
            reports.append(report)
            if len(reports) == 2:
                raise SoakError("operator stopped the run")

        def disk_full(history, output_dir):
            raise OSError("No space left on device")

        monkeypatch.setattr(main_module, "log_report", stop_after_first)
        monkeypatch.setattr(main_module, "write_artifacts", disk_full)

        with caplog.at_level(logging.ERROR, logger="hostname_soak"):
            with pytest.raises(SoakError, match="operator stopped the run"):
                run_soak(config, cluster, fetch=RoundRobinFetch(["serve-hostname-0-0"]), http_get=reachable)

        assert any(r.getMessage().startswith("Failed to write soak artifacts") for r in caplog.records)
        assert cluster.namespaces == set()

    def test_artifact_failure_after_clean_run_is_logged(self, cluster, fast_config, tmp_path, monkeypatch):
        config = SoakConfig(
            queries_per_replica=2,
            replicas_per_node=1,
            iterations=1,
            max_in_flight=2,
            query_timeout=1.0,
            output_dir=tmp_path,
            timeouts=fast_config.timeouts,
        )

        def broken_chart(df, path):
            raise RuntimeError("no display backend")

        monkeypatch.setattr(main_module, "render_soak_chart", broken_chart)

        history = run_soak(config, cluster, fetch=RoundRobinFetch(["serve-hostname-0-0"]), http_get=reachable)

        assert len(history) == 1
        assert (tmp_path / HISTORY_FILENAME).exists()
